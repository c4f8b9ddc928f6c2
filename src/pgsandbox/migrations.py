"""Migration verification strategies.

A sandbox is only as good as the schema it is cloned from, so the source
database is brought up to date (or at least checked) before the template
is provisioned. Any object with an ``ensure_migrated(dsn)`` method can be
plugged in; the strategies below cover the common cases:

- ``BasicMigrationVerifier``: connectivity check plus an advisory look for
  the migration tracking table
- ``FileMigrationVerifier``: applies ``<version>_<title>.up.sql`` files
- ``BinaryMigrationVerifier``: shells out to an external runner (goose)
- ``CallbackMigrationVerifier``: delegates to a user function

Every strategy is idempotent: verifying an up-to-date database twice
succeeds twice and applies nothing.
"""

import logging
import os
import re
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import psycopg2
import psycopg2.extensions
from psycopg2 import sql

from pgsandbox.dsn import connect_kwargs
from pgsandbox.errors import (
    BinaryNotFound,
    ConnectionFailure,
    MigrationApplyFailed,
    MigrationsDirectoryMissing,
)

logger = logging.getLogger(__name__)

MIGRATION_TABLE = "schema_migrations"
MIGRATION_FILE = re.compile(r"^(\d+)_(.+)\.(up|down)\.sql$")
# Seconds allowed for connecting, each statement and each lock wait
DEFAULT_TIMEOUT = 30.0
DEFAULT_BINARY_TIMEOUT = 300


@runtime_checkable
class MigrationVerifier(Protocol):
    """Brings a database to its expected migration state or raises."""

    def ensure_migrated(self, dsn: str) -> None:
        ...


@dataclass
class Migration:
    """A single forward migration file."""

    version: int
    name: str
    path: Path

    def read(self) -> str:
        return self.path.read_text()


def _connect(dsn: str, timeout: float | None) -> psycopg2.extensions.connection:
    if timeout is None:
        timeout = DEFAULT_TIMEOUT
    try:
        return psycopg2.connect(dsn, **connect_kwargs(dsn, timeout))
    except psycopg2.Error as e:
        raise ConnectionFailure(
            code="SOURCE_CONNECTION_FAILED",
            message=f"Failed to connect to source database: {e}",
            suggestion="Check the database server is running and the DSN is correct",
        ) from e


def _resolve_directory(migrations_path: str | Path) -> Path:
    path = Path(migrations_path).resolve()
    if not path.is_dir():
        raise MigrationsDirectoryMissing(
            code="MIGRATIONS_DIR_NOT_FOUND",
            message=f"Migrations directory not found: {path}",
            suggestion="Check the migrations path is correct",
        )
    return path


def discover_migrations(directory: Path) -> list[Migration]:
    """List the ``.up.sql`` migrations in ``directory`` ordered by version."""
    found: dict[int, Migration] = {}
    for path in directory.iterdir():
        match = MIGRATION_FILE.match(path.name)
        if not match or match.group(3) != "up" or not path.is_file():
            continue
        version = int(match.group(1))
        if version in found:
            raise MigrationApplyFailed(
                code="DUPLICATE_MIGRATION",
                message=(
                    f"Duplicate migration version {version}: "
                    f"{found[version].path.name} and {path.name}"
                ),
            )
        found[version] = Migration(version=version, name=match.group(2), path=path)
    return [found[version] for version in sorted(found)]


class BasicMigrationVerifier:
    """Checks the source is reachable and looks for a migration table.

    A missing table is only logged; it never blocks sandbox creation.
    """

    def __init__(
        self,
        table: str = MIGRATION_TABLE,
        schema: str = "public",
        timeout: float | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.table = table
        self.schema = schema
        self.timeout = timeout
        self.log = log or logger

    def ensure_migrated(self, dsn: str) -> None:
        conn = _connect(dsn, self.timeout)
        try:
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            except psycopg2.Error as e:
                raise ConnectionFailure(
                    code="SOURCE_PING_FAILED",
                    message=f"Failed to ping source database: {e}",
                ) from e

            try:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT EXISTS (
                            SELECT FROM information_schema.tables
                            WHERE table_schema = %s
                            AND table_name = %s
                        )
                        """,
                        [self.schema, self.table],
                    )
                    table_exists = bool(cur.fetchone()[0])
            except psycopg2.Error as e:
                self.log.warning("Could not check migration table: %s", e)
                return

            if not table_exists:
                self.log.warning(
                    "No migration table '%s.%s' found. Consider running migrations.",
                    self.schema,
                    self.table,
                )
            self.log.info("Migration check completed")
        finally:
            conn.close()


class FileMigrationVerifier:
    """Applies pending ``.up.sql`` migrations from a directory.

    The applied version is tracked in a single-row ``schema_migrations``
    table (``version``, ``dirty``). Each migration runs in its own
    transaction, and concurrent runs against one database are serialized
    with an advisory lock.
    """

    def __init__(
        self,
        migrations_path: str | Path,
        table: str = MIGRATION_TABLE,
        timeout: float | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.migrations_path = migrations_path
        self.table = table
        self.timeout = timeout
        self.log = log or logger

    def ensure_migrated(self, dsn: str) -> None:
        directory = _resolve_directory(self.migrations_path)
        migrations = discover_migrations(directory)

        conn = _connect(dsn, self.timeout)
        try:
            self._lock(conn)

            current = self._current_version(conn)
            pending = [m for m in migrations if m.version > current]
            if not pending:
                self.log.info("No pending migrations (version %d)", current)
                return

            for migration in pending:
                self._apply(conn, migration)

            self.log.info(
                "Migrations completed successfully (version %d -> %d)",
                current,
                pending[-1].version,
            )
        except psycopg2.Error as e:
            raise MigrationApplyFailed(
                code="MIGRATION_FAILED",
                message=f"Failed to run migrations: {e}",
            ) from e
        finally:
            # Closing the session releases the advisory lock
            conn.close()

    def _lock(self, conn: psycopg2.extensions.connection) -> None:
        """Wait for the per-database migration lock, bounded by lock_timeout."""
        try:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT pg_advisory_lock(hashtext(current_database() || '.' || %s))",
                    [self.table],
                )
            conn.commit()
        except psycopg2.Error as e:
            raise MigrationApplyFailed(
                code="MIGRATION_LOCKED",
                message=f"Failed to take the migration lock: {e}",
                suggestion="Another process may be stuck applying migrations",
            ) from e

    def _current_version(self, conn: psycopg2.extensions.connection) -> int:
        """Create the tracking table if needed and return the applied version."""
        table = sql.Identifier(self.table)
        with conn:
            with conn.cursor() as cur:
                cur.execute(
                    sql.SQL(
                        "CREATE TABLE IF NOT EXISTS {} "
                        "(version bigint NOT NULL PRIMARY KEY, dirty boolean NOT NULL)"
                    ).format(table)
                )
                cur.execute(sql.SQL("SELECT version, dirty FROM {} LIMIT 1").format(table))
                row = cur.fetchone()

        if row is None:
            return 0
        version, dirty = row
        if dirty:
            raise MigrationApplyFailed(
                code="MIGRATION_DIRTY",
                message=f"Database is dirty at migration version {version}",
                suggestion="Fix the failed migration by hand and clear the dirty flag",
            )
        return version

    def _apply(self, conn: psycopg2.extensions.connection, migration: Migration) -> None:
        statements = migration.read()
        self.log.debug("Applying migration %s", migration.path.name)
        try:
            with conn:
                with conn.cursor() as cur:
                    if statements.strip():
                        cur.execute(statements)
                    cur.execute(sql.SQL("DELETE FROM {}").format(sql.Identifier(self.table)))
                    cur.execute(
                        sql.SQL("INSERT INTO {} (version, dirty) VALUES (%s, false)").format(
                            sql.Identifier(self.table)
                        ),
                        [migration.version],
                    )
        except psycopg2.Error as e:
            raise MigrationApplyFailed(
                code="MIGRATION_FAILED",
                message=f"Migration {migration.path.name} failed: {e}",
            ) from e
        self.log.info("Applied migration %s", migration.path.name)


class BinaryMigrationVerifier:
    """Runs an external migration binary (goose by default).

    Invoked as ``<binary> -dir <migrations> postgres <dsn> up``. The whole
    run is killed after ``run_timeout`` seconds; ``timeout`` reaches the
    binary's own sessions through ``PGCONNECT_TIMEOUT`` and ``PGOPTIONS``.
    """

    def __init__(
        self,
        migrations_path: str | Path,
        binary: str = "goose",
        timeout: float | None = None,
        run_timeout: int = DEFAULT_BINARY_TIMEOUT,
        log: logging.Logger | None = None,
    ) -> None:
        self.migrations_path = migrations_path
        self.binary = binary
        self.timeout = timeout
        self.run_timeout = run_timeout
        self.log = log or logger

    def ensure_migrated(self, dsn: str) -> None:
        binary_path = shutil.which(self.binary)
        if binary_path is None:
            raise BinaryNotFound(
                code="MIGRATION_BINARY_NOT_FOUND",
                message=f"{self.binary} binary not found in PATH",
                suggestion=f"Install {self.binary} or pass the full path to it",
            )

        directory = _resolve_directory(self.migrations_path)
        cmd = [binary_path, "-dir", str(directory), "postgres", dsn, "up"]

        run_env = os.environ.copy()
        timeout = DEFAULT_TIMEOUT if self.timeout is None else self.timeout
        session = connect_kwargs(dsn, timeout)
        run_env["PGCONNECT_TIMEOUT"] = str(session["connect_timeout"])
        run_env["PGOPTIONS"] = session["options"]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.run_timeout,
                env=run_env,
            )
        except subprocess.TimeoutExpired as e:
            raise MigrationApplyFailed(
                code="MIGRATION_TIMEOUT",
                message=f"{self.binary} timed out after {self.run_timeout} seconds",
                suggestion="Check for long-running migrations or locks",
            ) from e
        except OSError as e:
            raise MigrationApplyFailed(
                code="MIGRATION_FAILED",
                message=f"Failed to run {self.binary}: {e}",
            ) from e

        output = result.stdout
        if result.stderr:
            output += f"\n{result.stderr}"
        output = output.strip()

        if result.returncode != 0:
            raise MigrationApplyFailed(
                code="MIGRATION_FAILED",
                message=(
                    f"Failed to run migrations: {self.binary} exited with status "
                    f"{result.returncode}, output: {output}"
                ),
            )

        self.log.info("Migrations completed successfully: %s", output)


class CallbackMigrationVerifier:
    """Delegates verification to ``check(dsn)``, which raises on failure."""

    def __init__(
        self,
        check: Callable[[str], None],
        log: logging.Logger | None = None,
    ) -> None:
        self.check = check
        self.log = log or logger

    def ensure_migrated(self, dsn: str) -> None:
        self.check(dsn)
        name = getattr(self.check, "__name__", repr(self.check))
        self.log.debug("Migration callback %s completed", name)
