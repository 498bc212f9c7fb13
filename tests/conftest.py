import gzip
import subprocess
from datetime import datetime, timedelta

import pytest

import pg_backup_manager as pbm

_RealContainerLocator = pbm.ContainerLocator


class FakeEngine:
    """Stands in for PostgresEngine and records every call."""

    def __init__(self, databases=None, dump_output=b"CREATE TABLE orders (id int);\n",
                 dump_returncode=0, replay_returncode=0, terminate_error=None,
                 failing_replays=()):
        self.databases = set(databases or [])
        self.dump_output = dump_output
        self.dump_returncode = dump_returncode
        self.replay_returncode = replay_returncode
        self.terminate_error = terminate_error
        self.failing_replays = set(failing_replays)
        self.calls = []
        self.replayed = []

    def dump(self, database, mode, tables, out_file):
        self.calls.append(("dump", database, mode, list(tables)))
        out_file.write_bytes(self.dump_output)
        stderr = b"" if self.dump_returncode == 0 else b"pg_dump: error: connection refused"
        return subprocess.CompletedProcess(["pg_dump"], self.dump_returncode, None, stderr)

    def replay(self, database, source, fmt="sql", stop_on_error=True):
        self.calls.append(("replay", database, fmt))
        self.replayed.append((database, source, source.read_bytes()))
        returncode = 3 if database in self.failing_replays else self.replay_returncode
        stderr = b"" if returncode == 0 else b"ERROR: relation is locked"
        return subprocess.CompletedProcess(["psql"], returncode, None, stderr)

    def list_databases(self):
        self.calls.append(("list_databases",))
        return sorted(self.databases)

    def database_exists(self, database):
        self.calls.append(("database_exists", database))
        return database in self.databases

    def create_database(self, database):
        self.calls.append(("create_database", database))
        self.databases.add(database)

    def terminate_sessions(self, database):
        self.calls.append(("terminate_sessions", database))
        if self.terminate_error:
            raise pbm.EngineError(self.terminate_error)


class FakeLocator:
    def __init__(self, candidates=("pg-main",)):
        self.candidates = list(candidates)
        self.client = None

    def resolve(self, preferred=None, selection=None):
        if preferred in self.candidates:
            return preferred
        return _RealContainerLocator.locate(self.candidates, selection)


class RecordingNotifier:
    def __init__(self):
        self.payloads = []

    def notify(self, payload):
        self.payloads.append(payload.to_dict())
        return True


@pytest.fixture
def config(tmp_path):
    return pbm.BackupConfig(
        pg_user="postgres",
        pg_password="secret",
        container_name="pg-main",
        retention_days=30,
        webhook_url="https://hooks.example.com/backup",
        backup_dir=tmp_path / "backups",
        log_file=tmp_path / "pg_backup.log",
        min_free_bytes=0,
    )


@pytest.fixture
def engine():
    return FakeEngine(databases=["shop", "billing"])


@pytest.fixture
def make_artifact(config):
    """Write a compressed artifact `age_days` old and return its path."""
    def _make(database, age_days=0, now=None, content=b"SELECT 1;\n", fmt="sql", compressed=True):
        now = now or datetime.now().replace(microsecond=0)
        created_at = now - timedelta(days=age_days)
        config.backup_dir.mkdir(parents=True, exist_ok=True)
        path = config.backup_dir / pbm.encode_name(database, created_at, fmt=fmt, compressed=compressed)
        if compressed:
            with gzip.open(path, "wb") as f:
                f.write(content)
        else:
            path.write_bytes(content)
        return path
    return _make
