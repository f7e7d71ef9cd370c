"""
PostgreSQL primitives used by the dump, verification and restore steps.

PostgresServer wraps two channels to one server: SQL statements through
psycopg2 on the maintenance database, and the pg_dump / pg_restore client
tools run as subprocesses. Every statement that names a database quotes it
with psycopg2.sql.Identifier.
"""

import logging
import os
import secrets
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import psycopg2
from psycopg2 import sql

from .artifacts import TIMESTAMP_FORMAT
from .exceptions import DumpError, RestoreError

logger = logging.getLogger(__name__)

# PostgreSQL truncates identifiers longer than this
MAX_IDENTIFIER_LENGTH = 63

COUNT_USER_TABLES_SQL = """
    SELECT COUNT(*)
    FROM information_schema.tables
    WHERE table_type = 'BASE TABLE'
      AND table_schema NOT IN ('pg_catalog', 'information_schema')
"""


class PostgresServer:
    """A PostgreSQL server reachable with one set of credentials."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "",
        maintenance_db: str = "postgres",
        pg_dump_bin: str = "pg_dump",
        pg_restore_bin: str = "pg_restore",
        command_timeout: int = 4 * 60 * 60,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.maintenance_db = maintenance_db
        self.pg_dump_bin = pg_dump_bin
        self.pg_restore_bin = pg_restore_bin
        self.command_timeout = command_timeout

    @classmethod
    def from_config(cls, config) -> "PostgresServer":
        db = config.database
        return cls(
            host=db.host,
            port=db.port,
            user=db.user,
            password=db.password,
            maintenance_db=db.maintenance_db,
            pg_dump_bin=config.pg_dump_bin,
            pg_restore_bin=config.pg_restore_bin,
            command_timeout=config.command_timeout,
        )

    def __repr__(self):
        return f"PostgresServer({self.user}@{self.host}:{self.port})"

    # SQL channel

    def _connect(self, dbname: Optional[str] = None):
        conn = psycopg2.connect(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            dbname=dbname or self.maintenance_db,
            connect_timeout=10,
        )
        # CREATE/DROP/ALTER DATABASE cannot run inside a transaction
        conn.autocommit = True
        return conn

    def _execute(self, query, params=None, dbname: Optional[str] = None, fetch: bool = False):
        conn = self._connect(dbname)
        try:
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                if fetch:
                    return cursor.fetchall()
                return None
        finally:
            conn.close()

    def database_exists(self, name: str) -> bool:
        rows = self._execute("SELECT 1 FROM pg_database WHERE datname = %s", [name], fetch=True)
        return bool(rows)

    def create_database(self, name: str) -> None:
        logger.info(f"Creating database {name}")
        self._execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(name)))

    def drop_database(self, name: str) -> None:
        logger.info(f"Dropping database {name}")
        self._execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(name)))

    def rename_database(self, old_name: str, new_name: str) -> None:
        logger.info(f"Renaming database {old_name} -> {new_name}")
        self._execute(
            sql.SQL("ALTER DATABASE {} RENAME TO {}").format(sql.Identifier(old_name), sql.Identifier(new_name))
        )

    def terminate_connections(self, name: str) -> int:
        """
        Terminate every other session connected to a database.

        Returns:
            Number of sessions terminated
        """
        rows = self._execute(
            """
            SELECT pg_terminate_backend(pid)
            FROM pg_stat_activity
            WHERE datname = %s AND pid <> pg_backend_pid()
            """,
            [name],
            fetch=True,
        )
        terminated = len(rows or [])
        if terminated:
            logger.info(f"Terminated {terminated} connection(s) to {name}")
        return terminated

    def count_tables(self, name: str) -> int:
        """Number of user tables in a database (system schemas excluded)."""
        rows = self._execute(COUNT_USER_TABLES_SQL, dbname=name, fetch=True)
        return int(rows[0][0]) if rows else 0

    # Client tools

    def _environment(self) -> dict:
        env = os.environ.copy()
        if self.password:
            env["PGPASSWORD"] = self.password
        return env

    def _connection_args(self) -> List[str]:
        return ["-h", self.host, "-p", str(self.port), "-U", self.user, "--no-password"]

    def _run(self, cmd: List[str], error_class, action: str) -> None:
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                env=self._environment(),
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise error_class(f"{action} timed out after {self.command_timeout} seconds") from e
        except OSError as e:
            raise error_class(f"{action} could not be started: {e}") from e

        if result.stderr:
            logger.debug(result.stderr.strip())

        if result.returncode != 0:
            raise error_class(f"{action} failed with exit code {result.returncode}: {result.stderr.strip()}")

    def dump(self, database: str, output_dir: Path, jobs: int) -> None:
        """
        Dump a database in directory format with parallel workers.

        Args:
            database: Database to dump
            output_dir: Directory pg_dump creates (must not exist yet)
            jobs: Number of parallel dump workers

        Raises:
            DumpError: If pg_dump fails, times out or cannot be started
        """
        cmd = [self.pg_dump_bin] + self._connection_args() + [
            "-d",
            database,
            "-Fd",
            "-j",
            str(jobs),
            "-f",
            str(output_dir),
        ]
        self._run(cmd, DumpError, "pg_dump")

    def restore(self, database: str, dump_dir: Path, jobs: int) -> None:
        """
        Restore a directory format dump into an existing database.

        Raises:
            RestoreError: If pg_restore fails, times out or cannot be started
        """
        cmd = [self.pg_restore_bin] + self._connection_args() + [
            "-d",
            database,
            "-Fd",
            "-j",
            str(jobs),
            "--no-owner",
            "--no-acl",
            "--exit-on-error",
            str(dump_dir),
        ]
        self._run(cmd, RestoreError, "pg_restore")


@dataclass
class DatabaseHandle:
    """
    One named database on a server.

    The restore pipeline passes this handle from step to step instead of
    looking the production database up again, so every step acts on the
    same resource.
    """

    server: PostgresServer
    name: str

    def exists(self) -> bool:
        return self.server.database_exists(self.name)

    def acquire_exclusive(self) -> int:
        """Disconnect every other session so the database can be dropped or renamed."""
        return self.server.terminate_connections(self.name)

    def table_count(self) -> int:
        return self.server.count_tables(self.name)


def unique_database_name(prefix: str, now: Optional[datetime] = None) -> str:
    """
    A database name that cannot collide with concurrent runs.

    Returns:
        ``<prefix>_<YYYYmmdd_HHMMSS>_<hex>``, truncated to PostgreSQL's
        identifier length by shortening the prefix
    """
    suffix = f"_{(now or datetime.now()).strftime(TIMESTAMP_FORMAT)}_{secrets.token_hex(4)}"
    prefix = prefix[: MAX_IDENTIFIER_LENGTH - len(suffix)]
    return f"{prefix}{suffix}".lower()
