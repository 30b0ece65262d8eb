# Core Module - Central SQLite Connection Helper
#
# Every Tracr SQLite store should use `connect()` from this module
# instead of raw `sqlite3.connect()`. This ensures:
#
#   - WAL journal mode (concurrent readers + one writer)
#   - busy_timeout so writers queue briefly instead of failing SQLITE_BUSY
#   - foreign_keys enforcement on every connection (device delete cascades)
#
# Timestamps are stored as fixed-width ISO-8601 UTC strings so that
# lexical order in SQL equals chronological order.

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
    busy_timeout_ms: int = 5000,
) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and safe PRAGMAs.

    Args:
        db_path: Path to the database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        check_same_thread: Passed to sqlite3.connect().
        busy_timeout_ms: How long a writer waits for the lock.

    Returns:
        sqlite3.Connection with WAL mode, busy_timeout, and foreign_keys.
    """
    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=check_same_thread,
        timeout=busy_timeout_ms / 1000,
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    """Render a datetime in the storage format (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
