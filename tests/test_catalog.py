from datetime import datetime

import pytest

import pg_backup_manager as pbm


def test_encode_name_with_database():
    name = pbm.encode_name("shop", datetime(2024, 3, 5, 14, 30, 0))
    assert name == "postgres_backup_20240305143000_shop.sql.gz"


def test_encode_name_whole_cluster_has_no_database_suffix():
    name = pbm.encode_name(pbm.ALL_DATABASES, datetime(2024, 3, 5, 14, 30, 0), fmt="backup", compressed=False)
    assert name == "postgres_backup_20240305143000.backup"


@pytest.mark.parametrize("name,expected", [
    ("postgres_backup_20240305143000_shop.sql.gz", ("shop", datetime(2024, 3, 5, 14, 30), "sql", True)),
    ("postgres_backup_20240305143000_shop.sql", ("shop", datetime(2024, 3, 5, 14, 30), "sql", False)),
    ("postgres_backup_20240305143000.backup", ("ALL", datetime(2024, 3, 5, 14, 30), "backup", False)),
    ("postgres_backup_20240305143000_my_app.db.sql.gz", ("my_app.db", datetime(2024, 3, 5, 14, 30), "sql", True)),
])
def test_decode_name(name, expected):
    assert pbm.decode_name(name) == expected


@pytest.mark.parametrize("name", [
    "notes.txt",
    "postgres_backup_20240305143000_shop.sql.partial",
    "postgres_backup_20240305143000_shop.sql.gz.partial",
    "postgres_backup_2024030514_shop.sql.gz",
    "postgres_backup_20241305143000_shop.sql.gz",
    ".pg_backup.lock",
])
def test_decode_name_rejects_foreign_files(name):
    assert pbm.decode_name(name) is None


@pytest.mark.parametrize("database", ["", "a/b", " shop"])
def test_encode_name_rejects_bad_database(database):
    with pytest.raises(pbm.InvalidInput):
        pbm.encode_name(database, datetime(2024, 1, 1))


@pytest.mark.parametrize("size,expected", [
    (0, "0B"),
    (512, "512B"),
    (4096, "4.0K"),
    (15 * 1024, "15K"),
    (20 * 1024 * 1024, "20M"),
])
def test_human_size(size, expected):
    assert pbm.human_size(size) == expected


def test_list_orders_newest_first_and_skips_foreign_files(config, make_artifact):
    now = datetime(2024, 6, 1, 12, 0, 0)
    make_artifact("shop", age_days=10, now=now)
    make_artifact("shop", age_days=1, now=now)
    make_artifact("billing", age_days=5, now=now)
    (config.backup_dir / "README").write_text("not a backup")
    (config.backup_dir / "postgres_backup_20240601120000_shop.sql.partial").write_bytes(b"half")
    (config.backup_dir / "temp").mkdir()

    catalog = pbm.BackupCatalog(config.backup_dir)
    artifacts = catalog.list()

    assert [a.database_name for a in artifacts] == ["shop", "billing", "shop"]
    assert [a.created_at.day for a in artifacts] == [31, 27, 22]
    assert all(a.size_bytes > 0 for a in artifacts)


def test_list_ties_are_broken_by_name(config, make_artifact):
    now = datetime(2024, 6, 1, 12, 0, 0)
    make_artifact("zeta", now=now)
    make_artifact("alpha", now=now)
    make_artifact("mid", now=now)

    names = [a.database_name for a in pbm.BackupCatalog(config.backup_dir).list()]
    assert names == ["alpha", "mid", "zeta"]


def test_list_filters_by_database(config, make_artifact):
    make_artifact("shop", age_days=2)
    make_artifact("billing", age_days=1)

    artifacts = pbm.BackupCatalog(config.backup_dir).list("shop")
    assert [a.database_name for a in artifacts] == ["shop"]


def test_list_is_idempotent(config, make_artifact):
    for age in (1, 3, 7):
        make_artifact("shop", age_days=age)
    catalog = pbm.BackupCatalog(config.backup_dir)
    assert catalog.list() == catalog.list()


def test_list_missing_directory_is_empty(tmp_path):
    assert pbm.BackupCatalog(tmp_path / "missing").list() == []


def test_databases_with_backups(config, make_artifact):
    make_artifact("shop", age_days=2)
    make_artifact("shop", age_days=1)
    make_artifact("billing", age_days=1)
    assert pbm.BackupCatalog(config.backup_dir).databases() == ["billing", "shop"]


@pytest.mark.parametrize("index", [0, -1, 3])
def test_select_by_index_out_of_range(config, make_artifact, index):
    make_artifact("shop", age_days=2)
    make_artifact("shop", age_days=1)
    catalog = pbm.BackupCatalog(config.backup_dir)
    before = sorted(p.name for p in config.backup_dir.iterdir())

    with pytest.raises(pbm.OutOfRange):
        catalog.select_by_index(catalog.list(), index)

    assert sorted(p.name for p in config.backup_dir.iterdir()) == before


def test_select_by_index_is_one_based(config, make_artifact):
    newest = make_artifact("shop", age_days=1)
    make_artifact("shop", age_days=2)
    catalog = pbm.BackupCatalog(config.backup_dir)
    assert catalog.select_by_index(catalog.list(), 1).path == newest


def test_delete_removes_file(config, make_artifact):
    path = make_artifact("shop", age_days=1)
    catalog = pbm.BackupCatalog(config.backup_dir)
    catalog.delete(catalog.list()[0])
    assert not path.exists()
