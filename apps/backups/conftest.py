"""
Pytest configuration and fixtures for backup tests.
"""

import json
import os
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from apps.backups.artifacts import dump_basename, format_timestamp
from apps.backups.conf import load_config
from apps.backups.dump import create_artifact_file
from apps.backups.exceptions import DumpError, RestoreError

TEST_FERNET_KEY = "0rDGpHbxP0Kb1N8xKqSgDgIsJ2f0m8xCjfhXKqoCOho="


class FakePostgresServer:
    """
    In-memory stand-in for PostgresServer.

    Databases are dictionaries of table names. dump() writes a real
    directory format layout (a toc.dat listing the tables plus a data file)
    so that archives flow through the real compression, encryption and
    tar code; restore() reads it back.
    """

    def __init__(self, databases=None):
        self.databases = {name: list(tables) for name, tables in (databases or {}).items()}
        self.calls = []
        self.failures = {}

    def fail_on(self, operation, error, database=None):
        """Make an operation raise error, optionally only for one database (prefix match)."""
        self.failures[operation] = (error, database)

    def _record(self, operation, *args):
        self.calls.append((operation,) + args)
        if operation in self.failures:
            error, database = self.failures[operation]
            if database is None or (args and str(args[0]).startswith(database)):
                raise error

    def database_exists(self, name):
        self._record("database_exists", name)
        return name in self.databases

    def create_database(self, name):
        self._record("create_database", name)
        if name in self.databases:
            raise RuntimeError(f'database "{name}" already exists')
        self.databases[name] = []

    def drop_database(self, name):
        self._record("drop_database", name)
        self.databases.pop(name, None)

    def rename_database(self, old_name, new_name):
        self._record("rename_database", old_name, new_name)
        self.databases[new_name] = self.databases.pop(old_name)

    def terminate_connections(self, name):
        self._record("terminate_connections", name)
        return 0

    def count_tables(self, name):
        self._record("count_tables", name)
        return len(self.databases[name])

    def dump(self, database, output_dir, jobs):
        self._record("dump", database)
        if database not in self.databases:
            raise DumpError(f'pg_dump failed with exit code 1: database "{database}" does not exist')
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True)
        (output_dir / "3001.dat").write_bytes(os.urandom(64 * 1024))
        (output_dir / "toc.dat").write_text(json.dumps({"database": database, "tables": self.databases[database]}))

    def restore(self, database, dump_dir, jobs):
        self._record("restore", database)
        toc = Path(dump_dir) / "toc.dat"
        if not toc.is_file():
            raise RestoreError("pg_restore failed with exit code 1: could not open input file toc.dat")
        self.databases[database] = list(json.loads(toc.read_text())["tables"])


@pytest.fixture(autouse=True)
def backup_settings(settings, tmp_path):
    """Point every backup setting at a temporary directory tree."""
    settings.CACHES = {"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}}
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
    settings.DATABASE_URL = None
    settings.DB_NAME = "shop"
    settings.DB_HOST = "db.internal"
    settings.DB_PORT = "5432"
    settings.DB_USER = "backup"
    settings.DB_PASSWORD = "secret"
    settings.BACKUP_CONFIG_FILE = None
    settings.BACKUP_DIR = str(tmp_path / "backups")
    settings.LOG_DIR = str(tmp_path / "logs")
    settings.BACKUP_STAGING_DIR = str(tmp_path / "staging")
    settings.BACKUP_FILE_PREFIX = None
    settings.BACKUP_ENCRYPTION_KEY = None
    settings.BACKUP_MIN_FREE_BYTES = "0"
    settings.AWS_S3_BUCKET = None
    settings.ALERT_EMAIL = None
    settings.SLACK_WEBHOOK_URL = None
    settings.DISCORD_WEBHOOK_URL = None
    settings.BACKUP_ALERT_WEBHOOK_URL = None
    settings.VERIFY_BACKUP = None
    return settings


@pytest.fixture
def pg_tools():
    """Pretend pg_dump and pg_restore are installed."""
    with patch("apps.backups.conf.shutil.which", side_effect=lambda tool: f"/usr/bin/{tool}"):
        yield


@pytest.fixture
def config():
    return load_config()


@pytest.fixture
def encrypted_config():
    return load_config(backup_encryption_key=TEST_FERNET_KEY)


@pytest.fixture
def fake_server():
    return FakePostgresServer({"shop": ["customers", "orders", "products"]})


@pytest.fixture
def make_backup(fake_server, config):
    """
    Build a real artifact from the fake server.

    Returns a factory ``make_backup(tier, moment=None, key=None)`` that
    writes ``<backup_root>/<tier>/shop_<ts>.dump.tar.gz[.enc]`` plus its
    checksum sidecar.
    """

    def factory(tier="daily", moment=None, key=None, database="shop"):
        timestamp = format_timestamp(moment or datetime.now())
        return create_artifact_file(
            fake_server,
            database,
            config.backup_root / tier,
            dump_basename("shop", timestamp),
            jobs=1,
            compression_level=1,
            encryption_key=key,
        )

    return factory
