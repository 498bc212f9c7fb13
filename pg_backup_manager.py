#!/usr/bin/env python3
"""
PostgreSQL Backup Manager
Backs up and restores PostgreSQL databases running in Docker containers.
Dumps are gzip-compressed, pruned after a retention window and reported to a
webhook. Restores are selected from the backup catalog and must be confirmed.

Configuration keys (env file, overridable by environment variables):
  CONTAINER_NAME=postgres            # Target container (auto-detected when not running)
  PG_USER=postgres                   # Database user
  PG_PASSWORD=secret                 # Database password
  RETENTION_DAYS=30                  # Days to keep backups (0 disables pruning)
  WEBHOOK_URL=https://...            # Endpoint receiving JSON status reports
  BACKUP_DIR=/var/backups/postgres   # Where artifacts are stored
  LOG_FILE=/var/log/pg_backup.log    # Rotated log file
  TEMP_DIR=/var/backups/postgres/temp  # Scratch space for restores
  BACKUP_MODE=full|schema|tables     # Dump mode (default: full)
  BACKUP_TABLES=orders customers     # Tables for BACKUP_MODE=tables
  BACKUP_DATABASES=shop billing      # Databases to back up (default: all non-template)
  SCHEDULE=0 0 * * *                 # Cron schedule for --daemon
  MIN_FREE_BYTES=5368709120          # Minimum free space before dumping
  LOCK_TTL_SECONDS=21600             # Age after which a lock is considered stale
  WEBHOOK_TIMEOUT=30                 # Per-request webhook timeout in seconds
"""

import os
import re
import sys
import time
import json
import gzip
import shutil
import signal
import getpass
import tempfile
import subprocess
import logging
import logging.handlers
import threading
import zlib
from contextlib import contextmanager
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, List, Any, Iterable, Tuple
from dataclasses import dataclass, field

import docker
import requests
from croniter import croniter
from dotenv import dotenv_values, set_key

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

# Constants
ENV_FILE = Path(os.getenv('PG_BACKUP_ENV_FILE', '/root/.pg_backup.env'))
DEFAULT_BACKUP_DIR = Path('/var/backups/postgres')
DEFAULT_LOG_FILE = Path('/var/log/pg_backup.log')
MAX_LOG_SIZE = 50 * 1024 * 1024

ARTIFACT_PREFIX = 'postgres_backup'
ALL_DATABASES = 'ALL'
MAINTENANCE_DATABASE = 'postgres'
TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'
PAYLOAD_DATE_FORMAT = '%d/%m/%Y %H:%M:%S'
PARTIAL_SUFFIX = '.partial'
LOCK_FILENAME = '.pg_backup.lock'
DEAD_LETTER_FILENAME = 'webhook_dead_letter.jsonl'
RETENTION_REASON = 'retention expired'

WEBHOOK_ATTEMPTS = 3
WEBHOOK_BACKOFF_SECONDS = 5

# <prefix>_<timestamp>[_<database>].<sql|backup>[.gz]
ARTIFACT_PATTERN = re.compile(
    r'^' + ARTIFACT_PREFIX +
    r'_(?P<timestamp>\d{14})(?:_(?P<database>.+?))?\.(?P<fmt>sql|backup)(?P<gz>\.gz)?$'
)

CONFIG_KEYS = (
    'CONTAINER_NAME', 'PG_USER', 'PG_PASSWORD', 'RETENTION_DAYS', 'WEBHOOK_URL',
    'BACKUP_DIR', 'LOG_FILE', 'TEMP_DIR', 'BACKUP_MODE', 'BACKUP_TABLES',
    'BACKUP_DATABASES', 'SCHEDULE', 'MIN_FREE_BYTES', 'LOCK_TTL_SECONDS',
    'WEBHOOK_TIMEOUT',
)


# =============================================================================
# ERRORS
# =============================================================================

class BackupError(Exception):
    """Base error for the backup manager."""


class ConfigError(BackupError):
    """Configuration is missing or invalid."""


class TargetNotFound(BackupError):
    """No usable PostgreSQL container."""


class AmbiguousTarget(BackupError):
    """Several PostgreSQL containers are running and none was chosen."""

    def __init__(self, candidates: Iterable[str]):
        self.candidates = list(candidates)
        super().__init__(f"Multiple PostgreSQL containers found: {', '.join(self.candidates)}")


class InvalidInput(BackupError):
    """A request or name cannot be acted on as given."""


class OutOfRange(BackupError):
    """A backup index falls outside the listing."""


class NotConfirmed(BackupError):
    """A destructive action was requested without confirmation."""


class EngineError(BackupError):
    """A query against the database engine failed."""


class DumpFailed(BackupError):
    """pg_dump or pg_dumpall did not produce a usable dump."""


class RestoreFailed(BackupError):
    """psql or pg_restore rejected the artifact."""


class DiskPressure(BackupError):
    """Not enough free space in the backup directory."""


class NotificationFailed(BackupError):
    """The webhook did not accept a report."""


class LockHeld(BackupError):
    """Another run holds the backup directory lock."""


# =============================================================================
# HELPERS
# =============================================================================

def human_size(size_bytes: int) -> str:
    """Format a byte count the way `du -h` does (512B, 4.0K, 12M)."""
    size = float(size_bytes)
    for unit in ('B', 'K', 'M', 'G', 'T'):
        if size < 1024 or unit == 'T':
            if unit == 'B':
                return f"{int(size)}B"
            return f"{size:.1f}{unit}" if size < 10 else f"{size:.0f}{unit}"
        size /= 1024
    return f"{size:.0f}T"


def _decode(output) -> str:
    if output is None:
        return ''
    if isinstance(output, bytes):
        return output.decode('utf-8', errors='replace')
    return output


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item for item in re.split(r'[,\s]+', value.strip()) if item]


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _quote_ident(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def setup_file_logging(log_file: Path):
    """Append log lines to a rotated log file in addition to stdout."""
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(log_file, maxBytes=MAX_LOG_SIZE, backupCount=5)
    except OSError as e:
        logger.warning(f"Cannot write log file {log_file}: {e}")
        return None
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
    return handler


# =============================================================================
# CONFIGURATION
# =============================================================================

class BackupMode(Enum):
    FULL = 'full'
    SCHEMA_ONLY = 'schema'
    TABLE_SUBSET = 'tables'


class RestoreMode(Enum):
    FULL = 'full'          # every database that has a backup
    PARTIAL = 'partial'    # a chosen subset of them


@dataclass
class BackupConfig:
    """Settings shared by every component of a backup or restore run."""
    pg_user: str = 'postgres'
    pg_password: str = ''
    container_name: Optional[str] = None
    retention_days: int = 30
    webhook_url: Optional[str] = None
    backup_dir: Path = DEFAULT_BACKUP_DIR
    log_file: Path = DEFAULT_LOG_FILE
    temp_dir: Optional[Path] = None
    backup_mode: str = BackupMode.FULL.value
    tables: List[str] = field(default_factory=list)
    databases: List[str] = field(default_factory=list)
    schedule: str = '0 0 * * *'
    min_free_bytes: int = 5 * 1024 * 1024 * 1024
    lock_ttl_seconds: int = 6 * 3600
    webhook_timeout: float = 30.0

    def __post_init__(self):
        self.backup_dir = Path(self.backup_dir)
        self.log_file = Path(self.log_file)
        if self.temp_dir is None:
            self.temp_dir = self.backup_dir / 'temp'
        self.temp_dir = Path(self.temp_dir)

        try:
            BackupMode(self.backup_mode)
        except ValueError:
            raise ConfigError(f"Invalid backup mode '{self.backup_mode}'") from None

        if not croniter.is_valid(self.schedule):
            raise ConfigError(f"Invalid cron schedule '{self.schedule}'")

    @property
    def dead_letter_file(self) -> Path:
        return self.backup_dir / DEAD_LETTER_FILENAME

    @classmethod
    def from_mapping(cls, values: Dict[str, str]) -> 'BackupConfig':
        """Build a config from KEY=value pairs."""
        kwargs: Dict[str, Any] = {}
        text_keys = {
            'PG_USER': 'pg_user',
            'PG_PASSWORD': 'pg_password',
            'CONTAINER_NAME': 'container_name',
            'WEBHOOK_URL': 'webhook_url',
            'BACKUP_DIR': 'backup_dir',
            'LOG_FILE': 'log_file',
            'TEMP_DIR': 'temp_dir',
            'BACKUP_MODE': 'backup_mode',
            'SCHEDULE': 'schedule',
        }
        for key, attr in text_keys.items():
            if values.get(key):
                kwargs[attr] = values[key]

        numeric_keys = {
            'RETENTION_DAYS': ('retention_days', int),
            'MIN_FREE_BYTES': ('min_free_bytes', int),
            'LOCK_TTL_SECONDS': ('lock_ttl_seconds', int),
            'WEBHOOK_TIMEOUT': ('webhook_timeout', float),
        }
        for key, (attr, convert) in numeric_keys.items():
            if values.get(key):
                try:
                    kwargs[attr] = convert(values[key])
                except ValueError:
                    raise ConfigError(f"{key} must be a number, got '{values[key]}'") from None

        kwargs['tables'] = _split_list(values.get('BACKUP_TABLES'))
        kwargs['databases'] = _split_list(values.get('BACKUP_DATABASES'))
        return cls(**kwargs)

    @classmethod
    def load(cls, env_file: Path = ENV_FILE, environ: Optional[Dict[str, str]] = None) -> 'BackupConfig':
        """Read the env file, letting environment variables override it."""
        environ = os.environ if environ is None else environ
        env_file = Path(env_file)
        values: Dict[str, str] = {}

        if env_file.exists():
            values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        elif not any(key in environ for key in CONFIG_KEYS):
            raise ConfigError(f"Configuration file {env_file} not found")

        for key in CONFIG_KEYS:
            if key in environ:
                values[key] = environ[key]

        return cls.from_mapping(values)

    def to_env(self) -> Dict[str, str]:
        return {
            'CONTAINER_NAME': self.container_name or '',
            'PG_USER': self.pg_user,
            'PG_PASSWORD': self.pg_password,
            'RETENTION_DAYS': str(self.retention_days),
            'WEBHOOK_URL': self.webhook_url or '',
            'BACKUP_DIR': str(self.backup_dir),
            'LOG_FILE': str(self.log_file),
            'TEMP_DIR': str(self.temp_dir),
            'BACKUP_MODE': self.backup_mode,
            'BACKUP_TABLES': ' '.join(self.tables),
            'BACKUP_DATABASES': ' '.join(self.databases),
            'SCHEDULE': self.schedule,
            'MIN_FREE_BYTES': str(self.min_free_bytes),
            'LOCK_TTL_SECONDS': str(self.lock_ttl_seconds),
            'WEBHOOK_TIMEOUT': str(self.webhook_timeout),
        }

    def save(self, env_file: Path = ENV_FILE):
        """Write the config to an owner-only env file."""
        env_file = Path(env_file)
        env_file.parent.mkdir(parents=True, exist_ok=True)
        env_file.touch(mode=0o600, exist_ok=True)
        for key, value in self.to_env().items():
            set_key(str(env_file), key, value)
        os.chmod(env_file, 0o600)
        logger.info(f"Configuration saved to {env_file}")

    def persist_container(self, env_file: Path = ENV_FILE):
        """Record a newly detected container name in the env file."""
        set_key(str(env_file), 'CONTAINER_NAME', self.container_name or '')
        logger.info(f"Container updated to '{self.container_name}' in {env_file}")


# =============================================================================
# ARTIFACTS
# =============================================================================

def encode_name(database: str, created_at: datetime, fmt: str = 'sql', compressed: bool = True) -> str:
    """Build the artifact filename for a database dump."""
    if not database or '/' in database or database != database.strip():
        raise InvalidInput(f"Invalid database name '{database}'")
    if fmt not in ('sql', 'backup'):
        raise InvalidInput(f"Invalid artifact format '{fmt}'")

    name = f"{ARTIFACT_PREFIX}_{created_at.strftime(TIMESTAMP_FORMAT)}"
    if database != ALL_DATABASES:
        name += f"_{database}"
    name += f".{fmt}"
    if compressed:
        name += '.gz'
    return name


def decode_name(name: str) -> Optional[Tuple[str, datetime, str, bool]]:
    """Parse an artifact filename into (database, created_at, fmt, compressed).

    Returns None for names that are not backup artifacts.
    """
    match = ARTIFACT_PATTERN.match(name)
    if not match:
        return None
    try:
        created_at = datetime.strptime(match.group('timestamp'), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    database = match.group('database') or ALL_DATABASES
    return database, created_at, match.group('fmt'), match.group('gz') is not None


@dataclass(frozen=True)
class BackupArtifact:
    """A published backup file."""
    database_name: str
    created_at: datetime
    path: Path
    size_bytes: int
    compressed: bool
    fmt: str = 'sql'

    @property
    def name(self) -> str:
        return self.path.name

    @classmethod
    def from_path(cls, path: Path) -> Optional['BackupArtifact']:
        decoded = decode_name(path.name)
        if decoded is None:
            return None
        database, created_at, fmt, compressed = decoded
        return cls(
            database_name=database,
            created_at=created_at,
            path=path,
            size_bytes=path.stat().st_size,
            compressed=compressed,
            fmt=fmt,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'database': self.database_name,
            'created_at': self.created_at.isoformat(),
            'size_bytes': self.size_bytes,
            'size': human_size(self.size_bytes),
            'compressed': self.compressed,
        }


class JobStatus(Enum):
    SUCCESS = 'OK'
    FAILURE = 'ERRO'


@dataclass
class BackupJobResult:
    status: JobStatus
    database: str
    artifact: Optional[BackupArtifact] = None
    error_detail: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCESS


@dataclass
class RestoreJobResult:
    status: JobStatus
    database: str
    artifact: BackupArtifact
    error_detail: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCESS


@dataclass
class RestoreRequest:
    """A restore the operator asked for. Nothing runs until `confirmed` is true."""
    target_database: str
    chosen_artifact: BackupArtifact
    confirmed: bool = False

    def ensure_confirmed(self):
        if self.confirmed is not True:
            raise NotConfirmed(
                f"Restore of '{self.target_database}' from {self.chosen_artifact.name} was not confirmed"
            )


@dataclass
class RetentionReport:
    deleted: List[Tuple[str, str]] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    def to_payload(self) -> List[Dict[str, str]]:
        return [
            {'backup_name': name, 'deletion_reason': reason}
            for name, reason in self.deleted
        ]


# =============================================================================
# NOTIFIER
# =============================================================================

@dataclass
class WebhookPayload:
    """Status report posted to the webhook."""
    action: str
    database_name: str
    backup_file: str
    backup_size: str
    retention_days: int
    status: str
    notes: str
    deleted_backup: List[Dict[str, str]] = field(default_factory=list)
    date: datetime = field(default_factory=datetime.now)

    @classmethod
    def for_backup(cls, result: BackupJobResult, report: RetentionReport, retention_days: int) -> 'WebhookPayload':
        artifact = result.artifact
        if result.ok:
            action = 'Backup completed'
            notes = 'Backup completed without errors.'
        else:
            action = 'Backup failed'
            notes = (result.error_detail or 'Backup failed, check the logs for details.')[-1000:]
        return cls(
            action=action,
            database_name=result.database,
            backup_file=artifact.name if artifact else '',
            backup_size=human_size(artifact.size_bytes) if artifact else '0',
            retention_days=retention_days,
            status=result.status.value,
            notes=notes,
            deleted_backup=report.to_payload(),
        )

    @classmethod
    def for_restore(cls, result: RestoreJobResult, retention_days: int) -> 'WebhookPayload':
        if result.ok:
            action = 'Restore completed'
            notes = 'Restore completed without errors.'
        else:
            action = 'Restore failed'
            notes = (result.error_detail or 'Restore failed, check the logs for details.')[-1000:]
        return cls(
            action=action,
            database_name=result.database,
            backup_file=result.artifact.name,
            backup_size=human_size(result.artifact.size_bytes),
            retention_days=retention_days,
            status=result.status.value,
            notes=notes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action,
            'date': self.date.strftime(PAYLOAD_DATE_FORMAT),
            'database_name': self.database_name,
            'backup_file': self.backup_file,
            'backup_size': self.backup_size,
            'retention_days': self.retention_days,
            'deleted_backup': list(self.deleted_backup),
            'status': self.status,
            'notes': self.notes,
        }


class Notifier:
    """Posts JSON reports to the webhook with bounded retries."""

    def __init__(self, url: Optional[str], dead_letter_file: Path, timeout: float = 30.0,
                 attempts: int = WEBHOOK_ATTEMPTS, backoff_seconds: float = WEBHOOK_BACKOFF_SECONDS,
                 session=None, sleep=time.sleep):
        self.url = url
        self.dead_letter_file = Path(dead_letter_file)
        self.timeout = timeout
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.session = session or requests.Session()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: BackupConfig) -> 'Notifier':
        return cls(config.webhook_url, config.dead_letter_file, timeout=config.webhook_timeout)

    def notify(self, payload) -> bool:
        """Deliver the payload. Never raises; returns whether delivery succeeded."""
        body = payload.to_dict() if isinstance(payload, WebhookPayload) else dict(payload)

        if not self.url:
            logger.info("No webhook URL configured, skipping notification")
            return False

        for attempt in range(1, self.attempts + 1):
            try:
                self._deliver(body)
                logger.info(f"Webhook delivered: {body.get('action')} ({body.get('status')})")
                return True
            except (NotificationFailed, requests.RequestException) as e:
                logger.warning(f"Webhook attempt {attempt}/{self.attempts} failed: {e}")
            if attempt < self.attempts:
                self._sleep(self.backoff_seconds)

        logger.error(f"Webhook failed after {self.attempts} attempts")
        self._dead_letter(body)
        return False

    def _deliver(self, body: Dict[str, Any]):
        response = self.session.post(self.url, json=body, timeout=self.timeout)
        if not 200 <= response.status_code < 300:
            raise NotificationFailed(f"HTTP {response.status_code}")

    def _dead_letter(self, body: Dict[str, Any]):
        record = {
            'failed_at': datetime.now().isoformat(timespec='seconds'),
            'url': self.url,
            'payload': body,
        }
        try:
            self.dead_letter_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.dead_letter_file, 'a', encoding='utf-8') as f:
                f.write(json.dumps(record, ensure_ascii=False) + '\n')
        except OSError as e:
            logger.error(f"Cannot write dead-letter file {self.dead_letter_file}: {e}")


# =============================================================================
# CONTAINER LOCATOR
# =============================================================================

class ContainerLocator:
    """Finds the running container that serves PostgreSQL."""

    def __init__(self, docker_client=None, hint: str = 'postgres'):
        self._client = docker_client
        self.hint = hint

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def discover(self) -> List[str]:
        """Names of running containers whose name or image mentions postgres."""
        try:
            containers = self.client.containers.list()
        except docker.errors.DockerException as e:
            raise TargetNotFound(f"Cannot list Docker containers: {e}") from e

        names = []
        for container in containers:
            image = (container.attrs.get('Config') or {}).get('Image') or ''
            if self.hint in container.name.lower() or self.hint in image.lower():
                names.append(container.name)
        return sorted(names)

    @staticmethod
    def locate(candidates: Iterable[str], selection: Optional[str] = None) -> str:
        candidates = sorted(set(candidates))
        if not candidates:
            raise TargetNotFound("No running PostgreSQL container found")
        if selection is not None:
            if selection not in candidates:
                raise TargetNotFound(f"Container '{selection}' is not one of: {', '.join(candidates)}")
            return selection
        if len(candidates) == 1:
            return candidates[0]
        raise AmbiguousTarget(candidates)

    def resolve(self, preferred: Optional[str] = None, selection: Optional[str] = None) -> str:
        """Keep the configured container while it runs, otherwise detect a new one."""
        candidates = self.discover()
        if preferred and preferred in candidates:
            return preferred
        if preferred:
            logger.info(f"Container '{preferred}' not running, detecting a new one")
        return self.locate(candidates, selection)


# =============================================================================
# DATABASE ENGINE
# =============================================================================

class PostgresEngine:
    """Runs the PostgreSQL client tools inside the database container."""

    def __init__(self, container_name: str, user: str, password: str, docker_client=None):
        self.container_name = container_name
        self.user = user
        self.password = password
        self._client = docker_client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _env(self) -> Dict[str, str]:
        env = os.environ.copy()
        if self.password:
            env['PGPASSWORD'] = self.password
        return env

    def _exec_cmd(self, args: List[str], interactive: bool = False) -> List[str]:
        # `-e PGPASSWORD` without a value forwards it from our environment
        cmd = ['docker', 'exec']
        if interactive:
            cmd.append('-i')
        cmd.extend(['-e', 'PGPASSWORD', self.container_name])
        return cmd + args

    def dump(self, database: str, mode: BackupMode, tables: List[str], out_file: Path) -> subprocess.CompletedProcess:
        """Stream a dump of the database into out_file."""
        if database == ALL_DATABASES:
            args = ['pg_dumpall', '-U', self.user]
        else:
            # --clean so the dump replays over an existing database
            args = ['pg_dump', '-U', self.user, '-F', 'p', '--clean', '--if-exists']
            if mode is BackupMode.SCHEMA_ONLY:
                args.append('--schema-only')
            elif mode is BackupMode.TABLE_SUBSET:
                for table in tables:
                    args.extend(['-t', table])
            args.append(database)

        with open(out_file, 'wb') as f:
            return subprocess.run(self._exec_cmd(args), stdout=f, stderr=subprocess.PIPE, env=self._env())

    def replay(self, database: str, source: Path, fmt: str = 'sql',
               stop_on_error: bool = True) -> subprocess.CompletedProcess:
        """Feed an uncompressed artifact to psql or pg_restore.

        With stop_on_error the first failing statement aborts the replay with a
        non-zero exit status. pg_dumpall output recreates existing roles, so
        whole-cluster replays run with it off.
        """
        if fmt == 'backup':
            args = ['pg_restore', '-U', self.user, '-d', database, '--clean', '--if-exists']
            if stop_on_error:
                args.append('--exit-on-error')
        else:
            args = ['psql', '-U', self.user, '-d', database]
            if stop_on_error:
                args.extend(['-v', 'ON_ERROR_STOP=1'])

        with open(source, 'rb') as f:
            return subprocess.run(
                self._exec_cmd(args, interactive=True),
                stdin=f, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, env=self._env(),
            )

    def query(self, sql: str, database: str = MAINTENANCE_DATABASE) -> str:
        """Run a single SQL statement and return its unaligned output."""
        try:
            container = self.client.containers.get(self.container_name)
            result = container.exec_run(
                ['psql', '-U', self.user, '-d', database, '-tAc', sql],
                environment={'PGPASSWORD': self.password},
                demux=True,
            )
        except docker.errors.DockerException as e:
            raise EngineError(f"docker exec failed on {self.container_name}: {e}") from e

        stdout, stderr = result.output if result.output else (None, None)
        if result.exit_code != 0:
            raise EngineError(_decode(stderr).strip() or f"psql exited with {result.exit_code}")
        return _decode(stdout)

    def list_databases(self) -> List[str]:
        output = self.query("SELECT datname FROM pg_database WHERE datistemplate = false;")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def database_exists(self, database: str) -> bool:
        output = self.query(f"SELECT 1 FROM pg_database WHERE datname = {_quote_literal(database)};")
        return output.strip() == '1'

    def create_database(self, database: str):
        self.query(f"CREATE DATABASE {_quote_ident(database)} WITH TEMPLATE template0;")

    def terminate_sessions(self, database: str):
        self.query(
            "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
            f"WHERE datname = {_quote_literal(database)} AND pid <> pg_backend_pid();"
        )


# =============================================================================
# BACKUP CATALOG
# =============================================================================

class BackupCatalog:
    """Lists the artifacts stored in the backup directory."""

    def __init__(self, backup_dir: Path):
        self.backup_dir = Path(backup_dir)

    def list(self, database: Optional[str] = None) -> List[BackupArtifact]:
        """Artifacts newest first, ties broken by filename."""
        if not self.backup_dir.is_dir():
            return []

        artifacts = []
        for path in self.backup_dir.iterdir():
            if not path.is_file():
                continue
            artifact = BackupArtifact.from_path(path)
            if artifact is None:
                continue
            if database is not None and artifact.database_name != database:
                continue
            artifacts.append(artifact)

        artifacts.sort(key=lambda a: a.name)
        artifacts.sort(key=lambda a: a.created_at, reverse=True)
        return artifacts

    def databases(self) -> List[str]:
        """Databases that have at least one artifact."""
        return sorted({a.database_name for a in self.list()})

    @staticmethod
    def select_by_index(artifacts: List[BackupArtifact], index: int) -> BackupArtifact:
        """Pick an artifact by its 1-based position in a listing."""
        if not 1 <= index <= len(artifacts):
            raise OutOfRange(f"Backup index {index} out of range (1-{len(artifacts)})")
        return artifacts[index - 1]

    def delete(self, artifact: BackupArtifact):
        artifact.path.unlink()
        logger.info(f"Removed backup: {artifact.name}")


# =============================================================================
# BACKUP EXECUTOR
# =============================================================================

class BackupExecutor:
    """Executes database dumps into the backup directory."""

    def __init__(self, config: BackupConfig, engine: PostgresEngine):
        self.config = config
        self.engine = engine
        self.backup_dir = config.backup_dir
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def list_databases(self) -> List[str]:
        return self.engine.list_databases()

    def run(self, database: str, mode=BackupMode.FULL, tables: Optional[List[str]] = None,
            now: Optional[datetime] = None) -> BackupJobResult:
        """Dump, compress and publish one database."""
        mode = BackupMode(mode)
        tables = [t for t in (tables or []) if t.strip()]
        if mode is BackupMode.TABLE_SUBSET and not tables:
            raise InvalidInput("Table subset backup requires at least one table")
        if database == ALL_DATABASES and mode is not BackupMode.FULL:
            raise InvalidInput("Whole-cluster backups only support the full mode")

        start_time = time.time()
        created_at = (now or datetime.now()).replace(microsecond=0)
        logger.info(f"Starting backup of '{database}' ({mode.value})")

        try:
            final_file = self.backup_dir / encode_name(database, created_at)
            self._check_free_space()
            if final_file.exists():
                raise DumpFailed(f"Backup already exists: {final_file.name}")

            raw_file = final_file.with_name(final_file.name[:-len('.gz')] + PARTIAL_SUFFIX)
            result = self.engine.dump(database, mode, tables, raw_file)
            if result.returncode != 0:
                raise DumpFailed(_decode(result.stderr).strip() or f"dump exited with {result.returncode}")

            self._compress_backup(raw_file, final_file)
        except (InvalidInput, DumpFailed, DiskPressure, OSError) as e:
            duration = time.time() - start_time
            logger.error(f"Backup failed for '{database}': {e}")
            return BackupJobResult(
                status=JobStatus.FAILURE,
                database=database,
                error_detail=str(e),
                timestamp=created_at,
                duration_seconds=duration,
            )

        size_bytes = final_file.stat().st_size
        duration = time.time() - start_time
        artifact = BackupArtifact(database, created_at, final_file, size_bytes, compressed=True)
        logger.info(f"Backup completed: {final_file.name} ({human_size(size_bytes)}, {duration:.2f}s)")
        return BackupJobResult(
            status=JobStatus.SUCCESS,
            database=database,
            artifact=artifact,
            timestamp=created_at,
            duration_seconds=duration,
        )

    def _check_free_space(self):
        if self.config.min_free_bytes <= 0:
            return
        free = shutil.disk_usage(self.backup_dir).free
        if free < self.config.min_free_bytes:
            raise DiskPressure(
                f"Insufficient disk space in {self.backup_dir}: "
                f"{human_size(free)} free, {human_size(self.config.min_free_bytes)} required"
            )

    def _compress_backup(self, raw_file: Path, final_file: Path):
        """Gzip the raw dump and rename it into place only once complete."""
        partial_file = final_file.with_name(final_file.name + PARTIAL_SUFFIX)
        with open(raw_file, 'rb') as f_in:
            with gzip.open(partial_file, 'wb', compresslevel=6) as f_out:
                shutil.copyfileobj(f_in, f_out)
        os.replace(partial_file, final_file)
        raw_file.unlink()


# =============================================================================
# RETENTION
# =============================================================================

class RetentionManager:
    """Deletes artifacts older than the retention window."""

    def __init__(self, reason: str = RETENTION_REASON):
        self.reason = reason

    def prune(self, catalog: BackupCatalog, retention_days: int, database: Optional[str] = None,
              now: Optional[datetime] = None) -> RetentionReport:
        report = RetentionReport()
        if retention_days <= 0:
            logger.info("Retention disabled, keeping every backup")
            return report

        now = now or datetime.now()
        window = timedelta(days=retention_days)
        scope = f"'{database}'" if database else 'all databases'
        logger.info(f"Checking backups of {scope} older than {retention_days} days")

        for artifact in catalog.list(database):
            if now - artifact.created_at <= window:
                continue
            try:
                catalog.delete(artifact)
            except OSError as e:
                logger.error(f"Could not remove {artifact.name}: {e}")
                report.failed.append((artifact.name, str(e)))
                continue
            report.deleted.append((artifact.name, self.reason))

        if report.deleted:
            logger.info(f"Removed {len(report.deleted)} expired backup(s)")
        return report


# =============================================================================
# RESTORE EXECUTOR
# =============================================================================

class RestoreExecutor:
    """Replays an artifact into a database."""

    def __init__(self, config: BackupConfig, engine: PostgresEngine):
        self.config = config
        self.engine = engine
        self.temp_dir = config.temp_dir

    def execute(self, request: RestoreRequest) -> RestoreJobResult:
        return self.restore(request.target_database, request.chosen_artifact, request.confirmed)

    def restore(self, database: str, artifact: BackupArtifact, confirmed: bool = False) -> RestoreJobResult:
        RestoreRequest(database, artifact, confirmed).ensure_confirmed()

        start_time = time.time()
        whole_cluster = artifact.database_name == ALL_DATABASES
        target = MAINTENANCE_DATABASE if whole_cluster else database
        logger.info(f"Restoring {artifact.name} into '{target}'")

        try:
            if not whole_cluster:
                self._ensure_database(database)
                self._terminate_sessions(database)

            with self._scratch_copy(artifact) as source:
                result = self.engine.replay(target, source, artifact.fmt, stop_on_error=not whole_cluster)
            if result.returncode != 0:
                raise RestoreFailed(_decode(result.stderr).strip() or f"replay exited with {result.returncode}")
        except (RestoreFailed, EngineError, OSError, EOFError, zlib.error) as e:
            duration = time.time() - start_time
            logger.error(f"Restore failed for '{database}': {e}")
            return RestoreJobResult(
                status=JobStatus.FAILURE,
                database=database,
                artifact=artifact,
                error_detail=str(e),
                duration_seconds=duration,
            )

        duration = time.time() - start_time
        logger.info(f"Restore completed: {artifact.name} -> '{target}' ({duration:.2f}s)")
        return RestoreJobResult(
            status=JobStatus.SUCCESS,
            database=database,
            artifact=artifact,
            duration_seconds=duration,
        )

    def _ensure_database(self, database: str):
        if not self.engine.database_exists(database):
            logger.info(f"Creating database '{database}'")
            self.engine.create_database(database)

    def _terminate_sessions(self, database: str):
        try:
            self.engine.terminate_sessions(database)
        except EngineError as e:
            logger.warning(f"Could not terminate sessions on '{database}', continuing: {e}")

    @contextmanager
    def _scratch_copy(self, artifact: BackupArtifact):
        """Yield an uncompressed copy of the artifact, removed afterwards."""
        if not artifact.compressed:
            yield artifact.path
            return

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix='restore_', suffix=f'.{artifact.fmt}', dir=self.temp_dir)
        scratch = Path(name)
        try:
            with os.fdopen(fd, 'wb') as f_out:
                with gzip.open(artifact.path, 'rb') as f_in:
                    shutil.copyfileobj(f_in, f_out)
            yield scratch
        finally:
            scratch.unlink(missing_ok=True)


# =============================================================================
# LOCKING
# =============================================================================

class BackupLock:
    """Advisory lease file held for the duration of a backup, restore or prune."""

    def __init__(self, backup_dir: Path, ttl_seconds: int = 6 * 3600, clock=time.time):
        self.path = Path(backup_dir) / LOCK_FILENAME
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._held = False

    def acquire(self) -> 'BackupLock':
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if not self._is_stale():
                    break
                logger.warning(f"Removing stale lock {self.path}")
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, 'w') as f:
                json.dump({'pid': os.getpid(), 'acquired_at': self._clock()}, f)
            self._held = True
            return self
        raise LockHeld(f"Another backup or restore is running (lock: {self.path})")

    def _is_stale(self) -> bool:
        try:
            acquired_at = float(json.loads(self.path.read_text())['acquired_at'])
        except FileNotFoundError:
            return True
        except (ValueError, KeyError, TypeError):
            acquired_at = self.path.stat().st_mtime
        return self._clock() - acquired_at > self.ttl_seconds

    def release(self):
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()


# =============================================================================
# BACKUP MANAGER
# =============================================================================

class BackupManager:
    """Runs the backup and restore workflows against the located container."""

    def __init__(self, config: BackupConfig, env_file: Optional[Path] = None, locator=None,
                 engine_factory=None, notifier=None):
        self.config = config
        self.env_file = Path(env_file) if env_file else None
        self.locator = locator or ContainerLocator()
        self._engine_factory = engine_factory or self._default_engine
        self.catalog = BackupCatalog(config.backup_dir)
        self.retention = RetentionManager()
        self.notifier = notifier or Notifier.from_config(config)
        self.cancel_event = threading.Event()
        self.engine = None

    def _default_engine(self, container_name: str) -> PostgresEngine:
        return PostgresEngine(container_name, self.config.pg_user, self.config.pg_password,
                              docker_client=self.locator.client)

    def _lock(self) -> BackupLock:
        return BackupLock(self.config.backup_dir, self.config.lock_ttl_seconds)

    def connect(self, selection: Optional[str] = None):
        """Resolve the target container and bind an engine to it."""
        name = self.locator.resolve(self.config.container_name, selection)
        if name != self.config.container_name:
            logger.info(f"Using container '{name}'")
            self.config.container_name = name
            if self.env_file is not None and self.env_file.exists():
                self.config.persist_container(self.env_file)
        self.engine = self._engine_factory(name)
        return self.engine

    def run_backup(self, databases: Optional[List[str]] = None, mode=None,
                   tables: Optional[List[str]] = None) -> List[BackupJobResult]:
        """Back up each database, prune its expired artifacts and report."""
        mode = BackupMode(mode or self.config.backup_mode)
        tables = self.config.tables if tables is None else tables
        if mode is BackupMode.TABLE_SUBSET and not tables:
            raise InvalidInput("Table subset backup requires at least one table")

        with self._lock():
            engine = self.engine or self.connect()
            executor = BackupExecutor(self.config, engine)
            if databases is None:
                databases = self.config.databases or executor.list_databases()

            logger.info("=" * 60)
            logger.info(f"Backup of {len(databases)} database(s) on '{self.config.container_name}'")
            logger.info("=" * 60)

            results = []
            for database in databases:
                if self.cancel_event.is_set():
                    logger.warning("Cancellation requested, skipping remaining databases")
                    break

                result = executor.run(database, mode, tables)
                report = RetentionReport()
                if result.ok:
                    report = self.retention.prune(self.catalog, self.config.retention_days, database)
                self.notifier.notify(WebhookPayload.for_backup(result, report, self.config.retention_days))
                results.append(result)

        failures = sum(1 for r in results if not r.ok)
        logger.info(f"Backup run finished: {len(results) - failures} succeeded, {failures} failed")
        return results

    def run_cluster_backup(self) -> List[BackupJobResult]:
        """Dump every database at once with pg_dumpall."""
        return self.run_backup([ALL_DATABASES], BackupMode.FULL, [])

    def run_restore(self, request: RestoreRequest) -> RestoreJobResult:
        request.ensure_confirmed()
        with self._lock():
            engine = self.engine or self.connect()
            result = RestoreExecutor(self.config, engine).execute(request)
        self.notifier.notify(WebhookPayload.for_restore(result, self.config.retention_days))
        return result

    def restorable_databases(self) -> List[str]:
        """Databases with at least one per-database backup."""
        return [db for db in self.catalog.databases() if db != ALL_DATABASES]

    def run_batch_restore(self, databases: Optional[List[str]] = None,
                          confirmed: bool = False) -> List[RestoreJobResult]:
        """Restore the newest backup of each database, carrying on after failures.

        databases=None restores every database that has a backup (full mode);
        a list restores only those (partial mode).
        """
        available = self.restorable_databases()
        if databases is None:
            databases = available
        missing = [db for db in databases if db not in available]
        if missing:
            raise InvalidInput(f"No backups found for: {', '.join(missing)}")
        if not databases:
            raise InvalidInput(f"No backups found in {self.config.backup_dir}")
        if confirmed is not True:
            raise NotConfirmed(f"Restore of {len(databases)} database(s) was not confirmed")

        with self._lock():
            engine = self.engine or self.connect()
            executor = RestoreExecutor(self.config, engine)

            logger.info("=" * 60)
            logger.info(f"Restore of {len(databases)} database(s) on '{self.config.container_name}'")
            logger.info("=" * 60)

            results = []
            for database in databases:
                if self.cancel_event.is_set():
                    logger.warning("Cancellation requested, skipping remaining databases")
                    break

                artifact = self.catalog.list(database)[0]
                result = executor.restore(database, artifact, confirmed=True)
                self.notifier.notify(WebhookPayload.for_restore(result, self.config.retention_days))
                results.append(result)

        failures = sum(1 for r in results if not r.ok)
        logger.info(f"Restore run finished: {len(results) - failures} succeeded, {failures} failed")
        return results

    def run_prune(self, database: Optional[str] = None) -> RetentionReport:
        with self._lock():
            return self.retention.prune(self.catalog, self.config.retention_days, database)

    def delete_backup(self, artifact: BackupArtifact):
        with self._lock():
            self.catalog.delete(artifact)

    def next_run_time(self, now: Optional[datetime] = None) -> datetime:
        return croniter(self.config.schedule, now or datetime.now()).get_next(datetime)

    def run_forever(self):
        """Run scheduled backups until cancelled."""
        logger.info("=" * 60)
        logger.info("PostgreSQL Backup Manager Starting")
        logger.info("=" * 60)
        logger.info(f"Backup directory: {self.config.backup_dir}")
        logger.info(f"Schedule: {self.config.schedule}")
        logger.info(f"Retention: {self.config.retention_days} days")
        logger.info("=" * 60)

        while not self.cancel_event.is_set():
            next_run = self.next_run_time()
            logger.info(f"Next backup scheduled at {next_run.isoformat()}")
            wait = max(0.0, (next_run - datetime.now()).total_seconds())
            if self.cancel_event.wait(wait):
                break
            try:
                self.engine = None
                self.run_backup()
            except Exception as e:
                logger.error(f"Error in backup loop: {e}")

        logger.info("Backup manager stopped")


# =============================================================================
# COMMAND LINE
# =============================================================================

def install_signal_handlers(cancel_event: threading.Event):
    """Stop between databases on SIGINT/SIGTERM, never mid-dump."""
    def _handle(signum, frame):
        logger.warning(f"Received signal {signum}, stopping after the current database")
        cancel_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _confirm(prompt: str) -> bool:
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in ('yes', 'y', 'sim')


def _interactive() -> bool:
    return sys.stdin.isatty()


def _connect(manager: BackupManager, container: Optional[str] = None):
    try:
        return manager.connect(container)
    except AmbiguousTarget as e:
        if not _interactive():
            raise
        print("Available PostgreSQL containers:")
        for name in e.candidates:
            print(f"  {name}")
        return manager.connect(input("Container name: ").strip())


def _print_artifacts(artifacts: List[BackupArtifact]):
    for i, artifact in enumerate(artifacts, start=1):
        print(f"{i}) {artifact.name} ({human_size(artifact.size_bytes)}, "
              f"{artifact.created_at.strftime('%Y-%m-%d %H:%M:%S')})")


def cmd_list(manager: BackupManager, args) -> int:
    artifacts = manager.catalog.list(args.database)
    if args.json:
        print(json.dumps([a.to_dict() for a in artifacts], indent=2))
    elif not artifacts:
        logger.warning(f"No backups found in {manager.config.backup_dir}")
    else:
        _print_artifacts(artifacts)
    return 0


def cmd_backup(manager: BackupManager, args) -> int:
    install_signal_handlers(manager.cancel_event)
    _connect(manager, args.container)
    if args.all_databases:
        results = manager.run_cluster_backup()
    else:
        databases = [args.database] if args.database else None
        results = manager.run_backup(databases, args.mode, args.tables)
    return 0 if results and all(r.ok for r in results) else 1


def _choose_artifact(artifacts: List[BackupArtifact], index: Optional[int], action: str) -> Optional[BackupArtifact]:
    if index is None:
        if not _interactive():
            raise InvalidInput(f"No backup selected to {action}; pass --index when stdin is not a terminal")
        _print_artifacts(artifacts)
        raw = input(f"Select the backup to {action} (0 to cancel): ").strip()
        if raw == '0':
            return None
        try:
            index = int(raw)
        except ValueError:
            raise InvalidInput(f"Invalid selection '{raw}'") from None
    return BackupCatalog.select_by_index(artifacts, index)


def _choose_databases(available: List[str]) -> List[str]:
    if not _interactive():
        raise InvalidInput("No databases selected; pass --databases when stdin is not a terminal")
    for i, database in enumerate(available, start=1):
        print(f"{i}) {database}")
    raw = input("Databases to restore, numbers separated by spaces ('all' for every one): ").strip()
    if raw.lower() == 'all':
        return list(available)

    selected = []
    for token in raw.split():
        if not token.isdigit():
            raise InvalidInput(f"Invalid selection '{token}'")
        selected.append(BackupCatalog.select_by_index(available, int(token)))
    return selected


def cmd_batch_restore(manager: BackupManager, args) -> int:
    mode = RestoreMode(args.restore_mode)
    available = manager.restorable_databases()
    if not available:
        logger.error(f"No backups found in {manager.config.backup_dir}")
        return 1

    if mode is RestoreMode.FULL:
        databases = available
    else:
        databases = args.databases or _choose_databases(available)

    confirmed = args.yes or _confirm(
        f"This will replace {len(databases)} database(s) ({', '.join(databases)}) "
        f"with their newest backups. Type 'yes' to confirm: "
    )
    if not confirmed:
        raise NotConfirmed(f"Restore of {len(databases)} database(s) was not confirmed")

    install_signal_handlers(manager.cancel_event)
    _connect(manager, args.container)
    results = manager.run_batch_restore(databases, confirmed=True)
    return 0 if results and all(r.ok for r in results) else 1


def cmd_restore(manager: BackupManager, args) -> int:
    if args.restore_mode:
        return cmd_batch_restore(manager, args)

    artifacts = manager.catalog.list(args.database)
    if not artifacts:
        logger.error(f"No backups found in {manager.config.backup_dir}")
        return 1

    artifact = _choose_artifact(artifacts, args.index, 'restore')
    if artifact is None:
        logger.info("Restore cancelled")
        return 0

    target = args.target or artifact.database_name
    confirmed = args.yes or _confirm(
        f"This will replace database '{target}' with {artifact.name}. Type 'yes' to confirm: "
    )
    request = RestoreRequest(target, artifact, confirmed)
    request.ensure_confirmed()

    _connect(manager, args.container)
    result = manager.run_restore(request)
    return 0 if result.ok else 1


def cmd_delete(manager: BackupManager, args) -> int:
    artifacts = manager.catalog.list(args.database)
    artifact = BackupCatalog.select_by_index(artifacts, args.delete)
    if not (args.yes or _confirm(f"Delete {artifact.name}? Type 'yes' to confirm: ")):
        raise NotConfirmed(f"Deletion of {artifact.name} was not confirmed")
    manager.delete_backup(artifact)
    return 0


def cmd_prune(manager: BackupManager, args) -> int:
    report = manager.run_prune(args.database)
    for name, reason in report.deleted:
        print(f"{name}: {reason}")
    return 1 if report.failed else 0


def configure_interactive(env_file: Path, locator: Optional[ContainerLocator] = None) -> int:
    """Prompt for the settings and store them in the env file."""
    if env_file.exists():
        if _confirm(f"Configuration found in {env_file}. Keep it? (yes/no): "):
            return 0

    locator = locator or ContainerLocator()
    candidates = locator.discover()
    try:
        container = locator.locate(candidates)
    except AmbiguousTarget as e:
        print("Available PostgreSQL containers:")
        for name in e.candidates:
            print(f"  {name}")
        container = locator.locate(candidates, input("Container name: ").strip())
    logger.info(f"Container identified: {container}")

    user = input("PostgreSQL user [postgres]: ").strip() or 'postgres'
    while True:
        password = getpass.getpass("PostgreSQL password: ")
        if password == getpass.getpass("Confirm password: "):
            break
        print("Passwords do not match, try again")

    retention = input("Retention in days [30]: ").strip() or '30'
    while True:
        webhook_url = input("Webhook URL: ").strip()
        if re.match(r'^https?://.+', webhook_url):
            break
        print("Invalid URL")

    config = BackupConfig.from_mapping({
        'CONTAINER_NAME': container,
        'PG_USER': user,
        'PG_PASSWORD': password,
        'RETENTION_DAYS': retention,
        'WEBHOOK_URL': webhook_url,
    })
    config.save(env_file)
    return 0


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description='PostgreSQL Backup Manager')
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument('--backup', action='store_true', help='Run a backup now')
    action.add_argument('--restore', action='store_true', help='Restore a backup')
    action.add_argument('--list', action='store_true', help='List available backups')
    action.add_argument('--prune', action='store_true', help='Delete backups past the retention window')
    action.add_argument('--delete', type=int, metavar='INDEX', help='Delete the backup at INDEX of the listing')
    action.add_argument('--configure', action='store_true', help='Create or replace the configuration file')
    action.add_argument('--daemon', action='store_true', help='Run scheduled backups')

    parser.add_argument('--env-file', default=str(ENV_FILE), help='Configuration file')
    parser.add_argument('--container', help='Container to use when several are running')
    parser.add_argument('--database', help='Restrict to one database')
    parser.add_argument('--all-databases', action='store_true', help='Dump the whole cluster with pg_dumpall')
    parser.add_argument('--mode', choices=[m.value for m in BackupMode], help='Backup mode')
    parser.add_argument('--tables', nargs='+', help='Tables for --mode tables')
    parser.add_argument('--index', type=int, help='Backup to restore (1 = newest)')
    parser.add_argument('--restore-mode', choices=[m.value for m in RestoreMode],
                        help='Restore the newest backup of every database (full) or of --databases (partial)')
    parser.add_argument('--databases', nargs='+', help='Databases for --restore-mode partial')
    parser.add_argument('--target', help='Database to restore into (default: the backup\'s database)')
    parser.add_argument('--yes', action='store_true', help='Do not ask for confirmation')
    parser.add_argument('--json', action='store_true', help='JSON output for --list')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    env_file = Path(args.env_file)

    try:
        if args.configure:
            return configure_interactive(env_file)

        try:
            config = BackupConfig.load(env_file)
        except ConfigError as e:
            logger.error(f"{e}. Run with --configure first")
            return 1
        setup_file_logging(config.log_file)

        manager = BackupManager(config, env_file=env_file)

        if args.list:
            return cmd_list(manager, args)
        if args.prune:
            return cmd_prune(manager, args)
        if args.delete is not None:
            return cmd_delete(manager, args)
        if args.restore:
            return cmd_restore(manager, args)
        if args.daemon:
            install_signal_handlers(manager.cancel_event)
            manager.run_forever()
            return 0
        return cmd_backup(manager, args)
    except NotConfirmed as e:
        logger.info(f"{e}, cancelled")
        return 0
    except BackupError as e:
        logger.error(str(e))
        return 1


if __name__ == '__main__':
    sys.exit(main())
