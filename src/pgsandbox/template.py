"""Template database provisioning.

Many test processes may race to create the same template. Creation is
attempted directly and a duplicate-database failure counts as success, so
exactly one template exists afterwards and every caller proceeds.
"""

import logging

import psycopg2
from psycopg2 import errorcodes, sql

from pgsandbox.errors import TemplateCreationFailed

logger = logging.getLogger(__name__)

# Error signatures left by a concurrent CREATE DATABASE that won the race
DUPLICATE_SQLSTATES = (errorcodes.DUPLICATE_DATABASE, errorcodes.UNIQUE_VIOLATION)
DUPLICATE_SIGNATURES = (
    "already exists",
    "duplicate key value violates unique constraint",
    "pg_database_datname_index",
)


def database_exists(conn: psycopg2.extensions.connection, db_name: str) -> bool:
    """Check the catalog for a database by name."""
    with conn.cursor() as cur:
        cur.execute("SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = %s)", [db_name])
        row = cur.fetchone()
    return bool(row and row[0])


def create_database_from(
    conn: psycopg2.extensions.connection, db_name: str, template_name: str
) -> None:
    """Issue CREATE DATABASE <db_name> TEMPLATE <template_name>."""
    with conn.cursor() as cur:
        cur.execute(
            sql.SQL("CREATE DATABASE {} TEMPLATE {}").format(
                sql.Identifier(db_name), sql.Identifier(template_name)
            )
        )


def is_duplicate_error(error: Exception) -> bool:
    """Return True if ``error`` says the database already exists."""
    if getattr(error, "pgcode", None) in DUPLICATE_SQLSTATES:
        return True
    text = str(error).lower()
    return any(signature in text for signature in DUPLICATE_SIGNATURES)


def ensure_template(
    conn: psycopg2.extensions.connection,
    source_name: str,
    template_name: str,
    log: logging.Logger | None = None,
) -> None:
    """Make sure ``template_name`` exists, cloning it from ``source_name``.

    Args:
        conn: Autocommit connection to the maintenance database
        source_name: Database the template is copied from
        template_name: Template database to create if absent
        log: Logger to report to, defaults to this module's logger

    Raises:
        TemplateCreationFailed: The template is still missing after the
            create attempt failed
    """
    log = log or logger

    try:
        create_database_from(conn, template_name, source_name)
    except psycopg2.Error as e:
        if is_duplicate_error(e):
            log.info("Template database '%s' already exists (race condition)", template_name)
            return

        # Differently worded duplicate errors still leave the template behind
        try:
            exists = database_exists(conn, template_name)
        except psycopg2.Error as check_error:
            log.debug("Existence check for '%s' failed: %s", template_name, check_error)
            exists = False
        if exists:
            log.info("Template database '%s' already exists (verified after error)", template_name)
            return

        raise TemplateCreationFailed(
            code="TEMPLATE_CREATION_FAILED",
            message=(
                f"Failed to create template database '{template_name}' "
                f"from '{source_name}': {e}"
            ),
            suggestion=f"Check that '{source_name}' exists and has no other open sessions",
        ) from e

    log.info("Created template database '%s' from '%s'", template_name, source_name)
