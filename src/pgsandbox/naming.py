"""Unique names for ephemeral databases."""

import os
import threading
import time


# PostgreSQL silently truncates identifiers beyond this many bytes
MAX_IDENTIFIER_LENGTH = 63

# Room left for "_", a 19-digit nanosecond timestamp, "_" and a 7-digit pid
MAX_PREFIX_LENGTH = MAX_IDENTIFIER_LENGTH - 28

_lock = threading.Lock()
_last_timestamp = 0


def _next_timestamp() -> int:
    """Return a nanosecond timestamp strictly greater than the previous one."""
    global _last_timestamp
    with _lock:
        timestamp = time.time_ns()
        if timestamp <= _last_timestamp:
            timestamp = _last_timestamp + 1
        _last_timestamp = timestamp
        return timestamp


def generate_database_name(prefix: str) -> str:
    """Generate a database name from a prefix, the clock and the process id.

    Names look like ``test_db_1718000000123456789_4242``. The timestamp is
    monotonic within a process, so sequential and concurrent calls in one
    process never collide; across processes the pid keeps names apart.
    """
    if prefix and not prefix.endswith("_"):
        prefix += "_"
    name = f"{prefix}{_next_timestamp()}_{os.getpid()}"
    if len(name.encode()) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Database name '{name}' exceeds {MAX_IDENTIFIER_LENGTH} bytes; use a shorter prefix"
        )
    return name
