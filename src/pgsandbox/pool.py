"""Bounded connection pool for an ephemeral database."""

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

import psycopg2
import psycopg2.extensions
from psycopg2.pool import ThreadedConnectionPool

from pgsandbox.dsn import connect_kwargs
from pgsandbox.errors import ConnectionFailure

logger = logging.getLogger(__name__)


class TimedConnection(psycopg2.extensions.connection):
    """Connection that remembers when it was opened."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.created_at = time.monotonic()


class SandboxPool:
    """Thread-safe pool capped at ``max_connections`` open connections.

    Connections older than ``max_lifetime`` seconds are closed instead of
    being handed out again.

    With ``timeout`` set, connecting and every statement or lock wait on a
    pooled connection are bounded by that many seconds.
    """

    def __init__(
        self,
        dsn: str,
        max_connections: int,
        max_lifetime: float,
        timeout: float | None = None,
    ) -> None:
        self.dsn = dsn
        self.max_connections = max_connections
        self.max_lifetime = max_lifetime
        self._close_lock = threading.Lock()

        kwargs = {"connection_factory": TimedConnection}
        if timeout is not None:
            kwargs.update(connect_kwargs(dsn, timeout))

        try:
            # One eager connection proves the database is reachable
            self._pool = ThreadedConnectionPool(1, max_connections, dsn, **kwargs)
        except psycopg2.Error as e:
            raise ConnectionFailure(
                code="EPHEMERAL_CONNECTION_FAILED",
                message=f"Failed to connect to ephemeral database: {e}",
                suggestion="Check max_connections on the server",
            ) from e

    @property
    def closed(self) -> bool:
        return self._pool.closed

    def _expired(self, conn: psycopg2.extensions.connection) -> bool:
        created_at = getattr(conn, "created_at", None)
        if created_at is None:
            return False
        return time.monotonic() - created_at >= self.max_lifetime

    def getconn(self) -> psycopg2.extensions.connection:
        """Borrow a connection, replacing any that outlived ``max_lifetime``."""
        for _ in range(self.max_connections + 1):
            conn = self._pool.getconn()
            if not conn.closed and not self._expired(conn):
                return conn
            logger.debug("Recycling connection to %s", conn.dsn)
            self._pool.putconn(conn, close=True)
        # Every idle connection was stale; the pool now opens a fresh one
        return self._pool.getconn()

    def putconn(self, conn: psycopg2.extensions.connection) -> None:
        """Return a borrowed connection to the pool."""
        if self._pool.closed:
            conn.close()
            return
        self._pool.putconn(conn, close=conn.closed or self._expired(conn))

    @contextmanager
    def connection(self) -> Iterator[psycopg2.extensions.connection]:
        """Borrow a connection for the duration of a ``with`` block.

        The transaction is committed when the block exits normally and
        rolled back when it raises.
        """
        conn = self.getconn()
        try:
            yield conn
        except Exception:
            if not conn.closed:
                conn.rollback()
            raise
        else:
            conn.commit()
        finally:
            self.putconn(conn)

    def close(self) -> None:
        """Close every connection, including borrowed ones. Safe to repeat."""
        with self._close_lock:
            if self._pool.closed:
                return
            self._pool.closeall()
