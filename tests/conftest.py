"""Shared test fixtures."""

import os
import uuid
from unittest.mock import MagicMock

import psycopg2
import pytest
from psycopg2 import sql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from pgsandbox.dsn import replace_database_name


class FakePgError(psycopg2.Error):
    """psycopg2 error with a settable SQLSTATE."""

    def __init__(self, message: str, pgcode: str | None = None):
        super().__init__(message)
        self._pgcode = pgcode

    @property
    def pgcode(self):
        return self._pgcode


def make_conn() -> MagicMock:
    """Create a mock psycopg2 connection whose cursor is ``conn.cur``.

    Context manager exits return False so exceptions raised inside
    ``with conn:`` / ``with conn.cursor():`` blocks propagate.
    """
    conn = MagicMock()
    cur = MagicMock()
    cur.__exit__.return_value = False
    cur.rowcount = 0
    conn.cursor.return_value.__enter__.return_value = cur
    conn.cursor.return_value.__exit__.return_value = False
    conn.__enter__.return_value = conn
    conn.__exit__.return_value = False
    conn.closed = 0
    conn.cur = cur
    return conn


def identifiers(query) -> list[str]:
    """Return the identifiers composed into a psycopg2.sql query."""
    if not isinstance(query, sql.Composed):
        return []
    return [part.strings[0] for part in query.seq if isinstance(part, sql.Identifier)]


@pytest.fixture
def mock_conn():
    """Create a mock database connection."""
    return make_conn()


# Integration fixtures


@pytest.fixture(scope="session")
def source_dsn():
    """DSN of a real source database, or skip."""
    dsn = os.environ.get("PGSANDBOX_TEST_DSN") or os.environ.get("POSTGRES_URL")
    if not dsn:
        pytest.skip("PGSANDBOX_TEST_DSN or POSTGRES_URL not set")
    return dsn


@pytest.fixture(scope="session")
def source_table(source_dsn):
    """Make sure the source has a table for clones to inherit."""
    conn = psycopg2.connect(source_dsn)
    try:
        with conn:
            with conn.cursor() as cur:
                cur.execute(
                    "CREATE TABLE IF NOT EXISTS pgsandbox_widgets "
                    "(id serial PRIMARY KEY, name text NOT NULL)"
                )
    finally:
        conn.close()
    return "pgsandbox_widgets"


@pytest.fixture
def admin_conn(source_dsn):
    """Autocommit connection to the maintenance database."""
    conn = psycopg2.connect(replace_database_name(source_dsn, "postgres"))
    conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
    yield conn
    conn.close()


@pytest.fixture
def fresh_template(admin_conn):
    """A template database name nobody has created yet; dropped afterwards."""
    name = f"template_it_{uuid.uuid4().hex[:12]}"
    yield name
    with admin_conn.cursor() as cur:
        cur.execute(sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(name)))
