"""Sandbox lifecycle management.

A sandbox is a throwaway copy of a source database for one test run:

1. the source is verified (and possibly migrated)
2. a shared template database is cloned from it once
3. a uniquely named ephemeral database is cloned from the template
4. a pooled connection to the ephemeral database is handed out
5. on close, sessions are terminated and the ephemeral database dropped

Sandboxes are independent of each other; the only shared resource is the
template, whose creation tolerates concurrent attempts.
"""

import copy
import dataclasses
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

import psycopg2
import psycopg2.extensions
from psycopg2 import sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from pgsandbox.config import SandboxConfig
from pgsandbox.dsn import connect_kwargs, extract_database_name, replace_database_name
from pgsandbox.errors import (
    ConnectionFailure,
    EphemeralCreationFailed,
    MigrationApplyFailed,
    SandboxError,
    TeardownError,
)
from pgsandbox.migrations import BasicMigrationVerifier, MigrationVerifier
from pgsandbox.naming import generate_database_name
from pgsandbox.pool import SandboxPool
from pgsandbox.template import create_database_from, ensure_template

logger = logging.getLogger(__name__)


def open_admin_connection(dsn: str, timeout: float) -> psycopg2.extensions.connection:
    """Open an autocommit connection suitable for CREATE/DROP DATABASE.

    The connection attempt and each statement or lock wait are bounded by
    ``timeout`` seconds.
    """
    try:
        conn = psycopg2.connect(dsn, **connect_kwargs(dsn, timeout))
        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        return conn
    except psycopg2.Error as e:
        raise ConnectionFailure(
            code="ADMIN_CONNECTION_FAILED",
            message=f"Failed to connect to admin database: {e}",
            suggestion="Check PostgreSQL is running and credentials are correct",
        ) from e


def terminate_sessions(conn: psycopg2.extensions.connection, db_name: str) -> int:
    """Terminate every other session connected to ``db_name``."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT pg_terminate_backend(pg_stat_activity.pid)
            FROM pg_stat_activity
            WHERE pg_stat_activity.datname = %s
            AND pid <> pg_backend_pid()
            """,
            [db_name],
        )
        return cur.rowcount


def drop_database(conn: psycopg2.extensions.connection, db_name: str) -> None:
    with conn.cursor() as cur:
        cur.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(db_name)))


class Sandbox:
    """An ephemeral database and the connections that own it.

    Use as a context manager, or call :meth:`close` when done. After close
    the sandbox must not be reused.
    """

    def __init__(
        self,
        admin_conn: psycopg2.extensions.connection,
        pool: SandboxPool,
        database_name: str,
        config: SandboxConfig,
        log: logging.Logger | None = None,
    ) -> None:
        self._admin_conn = admin_conn
        self._pool = pool
        self._database_name = database_name
        self._config = config
        self._log = log or logger

        self._teardown_lock = threading.Lock()
        self._closed = False
        self._teardown_error: TeardownError | None = None

    @property
    def database_name(self) -> str:
        return self._database_name

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def db(self) -> SandboxPool:
        """The pooled connection to the ephemeral database."""
        if self._closed:
            raise SandboxError(
                code="SANDBOX_CLOSED",
                message=f"Sandbox '{self._database_name}' is closed",
            )
        return self._pool

    @contextmanager
    def connection(self) -> Iterator[psycopg2.extensions.connection]:
        """Borrow one connection to the ephemeral database."""
        with self.db.connection() as conn:
            yield conn

    def close(self) -> None:
        """Drop the ephemeral database and release every connection.

        Repeated or concurrent calls are safe: only the first runs the
        teardown, later ones re-raise its error (if any).

        Raises:
            TeardownError: One or more steps failed. If
                ``database_dropped`` is False the database leaked.
        """
        with self._teardown_lock:
            if not self._closed:
                self._teardown_error = self._teardown()
                self._closed = True
            if self._teardown_error is not None:
                raise self._teardown_error

    def _teardown(self) -> TeardownError | None:
        errors: list[str] = []
        dropped = False
        name = self._database_name

        try:
            self._pool.close()
        except psycopg2.Error as e:
            errors.append(f"failed to close test DB connection: {e}")

        try:
            terminated = terminate_sessions(self._admin_conn, name)
            if terminated:
                self._log.debug("Terminated %d session(s) on '%s'", terminated, name)
        except psycopg2.Error as e:
            self._log.warning("Failed to terminate connections to '%s': %s", name, e)

        try:
            drop_database(self._admin_conn, name)
            dropped = True
            self._log.info("Dropped test database '%s'", name)
        except psycopg2.Error as e:
            errors.append(f"failed to drop test database: {e}")

        try:
            self._admin_conn.close()
        except psycopg2.Error as e:
            errors.append(f"failed to close admin DB connection: {e}")

        if errors:
            return TeardownError(name, errors, database_dropped=dropped)
        return None

    def __enter__(self) -> "Sandbox":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Sandbox {self._database_name} ({state})>"


def create_sandbox(
    source_dsn: str,
    config: SandboxConfig | None = None,
    verifier: MigrationVerifier | None = None,
    log: logging.Logger | None = None,
) -> Sandbox:
    """Create a sandbox cloned from the database ``source_dsn`` points at.

    Args:
        source_dsn: Keyword/value or URI descriptor of the source database
        config: Sandbox settings, defaults to ``SandboxConfig()``
        verifier: Migration strategy run against the source first,
            defaults to ``BasicMigrationVerifier``. A verifier whose ``timeout``
            is None runs with ``config.connection_max_lifetime``
        log: Logger to report to, defaults to this module's logger

    Returns:
        An open Sandbox; the caller owns it and must close it

    Raises:
        MigrationError: The source failed migration verification
        ConnectionFailure: The admin or ephemeral connection failed
        TemplateCreationFailed: The template could not be provisioned
        EphemeralCreationFailed: The ephemeral database could not be created
    """
    log = log or logger
    config = dataclasses.replace(config or SandboxConfig(), source_dsn=source_dsn)
    if verifier is None:
        verifier = BasicMigrationVerifier(timeout=config.connection_max_lifetime, log=log)
    elif getattr(verifier, "timeout", 0) is None:
        # Verifiers built without a timeout follow the config's limit
        verifier = copy.copy(verifier)
        verifier.timeout = config.connection_max_lifetime

    try:
        verifier.ensure_migrated(source_dsn)
    except SandboxError:
        raise
    except Exception as e:
        raise MigrationApplyFailed(
            code="MIGRATION_CHECK_FAILED",
            message=f"Failed to ensure source database is migrated: {e}",
        ) from e

    source_name = extract_database_name(source_dsn) or config.fallback_source_name

    # Connect to the maintenance database, never the source being cloned
    admin_dsn = replace_database_name(source_dsn, config.admin_database)
    admin_conn = open_admin_connection(admin_dsn, config.connection_max_lifetime)

    db_name = None
    try:
        ensure_template(admin_conn, source_name, config.template_database_name, log=log)

        try:
            db_name = generate_database_name(config.ephemeral_name_prefix)
        except ValueError as e:
            raise EphemeralCreationFailed(
                code="EPHEMERAL_NAME_INVALID",
                message=str(e),
                suggestion="Use a shorter ephemeral_name_prefix",
            ) from e
        try:
            create_database_from(admin_conn, db_name, config.template_database_name)
        except psycopg2.Error as e:
            db_name = None
            raise EphemeralCreationFailed(
                code="EPHEMERAL_CREATION_FAILED",
                message=f"Failed to create test database: {e}",
                suggestion="Check the server's connection and database limits",
            ) from e
        log.info("Created test database '%s' from template", db_name)

        pool = SandboxPool(
            replace_database_name(source_dsn, db_name),
            max_connections=config.max_pool_connections,
            max_lifetime=config.connection_max_lifetime,
            timeout=config.connection_max_lifetime,
        )
    except BaseException:
        _abandon(admin_conn, db_name, log)
        raise

    return Sandbox(admin_conn, pool, db_name, config, log=log)


def _abandon(
    admin_conn: psycopg2.extensions.connection, db_name: str | None, log: logging.Logger
) -> None:
    """Undo a partially created sandbox without masking the original error."""
    if db_name is not None:
        try:
            terminate_sessions(admin_conn, db_name)
            drop_database(admin_conn, db_name)
            log.info("Dropped test database '%s' after failed setup", db_name)
        except psycopg2.Error as e:
            log.warning("Failed to drop test database '%s' after failed setup: %s", db_name, e)
    try:
        admin_conn.close()
    except psycopg2.Error as e:
        log.warning("Failed to close admin connection: %s", e)


def drop_stale_databases(
    source_dsn: str,
    prefix: str | None = None,
    config: SandboxConfig | None = None,
    log: logging.Logger | None = None,
) -> list[str]:
    """Drop leftover ephemeral databases whose names start with ``prefix``.

    This is the cleanup path for databases leaked by a failed teardown.
    Only run it when no test run is using the server, since live
    sandboxes match the prefix too.

    Returns:
        Names of the databases that were dropped
    """
    log = log or logger
    config = config or SandboxConfig()
    prefix = prefix or config.ephemeral_name_prefix

    admin_dsn = replace_database_name(source_dsn, config.admin_database)
    conn = open_admin_connection(admin_dsn, config.connection_max_lifetime)
    dropped: list[str] = []
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT datname FROM pg_database WHERE NOT datistemplate "
                "AND starts_with(datname, %s) ORDER BY datname",
                [prefix],
            )
            names = [row[0] for row in cur.fetchall()]

        for name in names:
            if name in (config.template_database_name, config.admin_database):
                continue
            terminate_sessions(conn, name)
            drop_database(conn, name)
            dropped.append(name)
            log.info("Dropped stale test database '%s'", name)
    except psycopg2.Error as e:
        raise SandboxError(
            code="STALE_CLEANUP_FAILED",
            message=f"Failed to drop stale test databases (dropped {len(dropped)}): {e}",
        ) from e
    finally:
        conn.close()

    return dropped
