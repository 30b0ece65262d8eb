# Fleet Database
# Persistent SQLite storage for devices, inventory snapshots, commands
# and dashboard users.
#
# One short-lived connection per operation. Writes that read-then-decide
# (registration, last-admin checks, snapshot dedup) run inside
# BEGIN IMMEDIATE so the decision and the write hold the same lock;
# queue transitions use conditional UPDATEs keyed on the current status.
#
# Raw device tokens are never persisted in the clear: the registry keeps
# a SHA-256 hash for verification and an AES-GCM wrapped copy.

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from ..core.db import connect as db_connect

logger = logging.getLogger(__name__)

DEVICE_STATUSES = ("active", "inactive", "offline", "error")

SNAPSHOT_SUMMARY_COLUMNS = (
    "id", "collected_at", "cpu_percent", "memory_used_bytes",
    "memory_total_bytes", "boot_time",
)

# Id of the latest snapshot for the device column named in `{device}`.
LATEST_SNAPSHOT_SQL = """
    SELECT s_latest.id FROM snapshots s_latest
    WHERE s_latest.device_id = {device}
    ORDER BY s_latest.collected_at DESC, s_latest.created_at DESC, s_latest.id DESC
    LIMIT 1
"""


def latest_snapshot_subquery(device_column: str) -> str:
    return LATEST_SNAPSHOT_SQL.format(device=device_column)


def like_pattern(term: str) -> str:
    """Case-insensitive substring pattern with LIKE wildcards escaped."""
    escaped = (
        term.lower()
        .replace("\\", "\\\\")
        .replace("%", "\\%")
        .replace("_", "\\_")
    )
    return f"%{escaped}%"


class FleetDatabase:
    """SQLite persistence shared by the fleet stores.

    Args:
        db_path: Path to SQLite database file. Defaults to data/tracr.db.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else Path("data/tracr.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Connection that commits on success and always closes."""
        conn = db_connect(self.db_path, row_factory=True)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE transaction: takes the write lock up front."""
        conn = db_connect(self.db_path, row_factory=True)
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_database(self):
        """Create tables if they don't exist."""
        conn = db_connect(self.db_path)
        try:
            with conn:
                cursor = conn.cursor()

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS devices (
                        id TEXT PRIMARY KEY,
                        hostname TEXT NOT NULL,
                        domain TEXT,
                        manufacturer TEXT,
                        model TEXT,
                        serial_number TEXT,
                        os_caption TEXT,
                        os_version TEXT,
                        os_build TEXT,
                        agent_version TEXT,
                        first_seen TEXT NOT NULL,
                        last_seen TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'active'
                            CHECK (status IN ('active', 'inactive', 'offline', 'error')),
                        device_token_hash TEXT NOT NULL,
                        device_token_enc TEXT NOT NULL,
                        token_created_at TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                cursor.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_devices_hostname
                    ON devices(hostname)
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_devices_last_seen
                    ON devices(last_seen)
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS snapshots (
                        id TEXT PRIMARY KEY,
                        device_id TEXT NOT NULL
                            REFERENCES devices(id) ON DELETE CASCADE,
                        collected_at TEXT NOT NULL,
                        agent_version TEXT,
                        snapshot_hash TEXT NOT NULL,
                        cpu_percent REAL,
                        memory_used_bytes INTEGER,
                        memory_total_bytes INTEGER,
                        boot_time TEXT,
                        last_interactive_user TEXT,
                        os_caption TEXT,
                        os_version TEXT,
                        os_build TEXT,
                        created_at TEXT NOT NULL
                    )
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_snapshots_device_collected
                    ON snapshots(device_id, collected_at DESC)
                """)
                cursor.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_snapshots_device_hash
                    ON snapshots(device_id, snapshot_hash)
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS snapshot_volumes (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        snapshot_id TEXT NOT NULL
                            REFERENCES snapshots(id) ON DELETE CASCADE,
                        name TEXT NOT NULL,
                        filesystem TEXT,
                        total_bytes INTEGER NOT NULL DEFAULT 0,
                        free_bytes INTEGER NOT NULL DEFAULT 0,
                        used_bytes INTEGER
                    )
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_volumes_snapshot
                    ON snapshot_volumes(snapshot_id)
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS snapshot_software (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        snapshot_id TEXT NOT NULL
                            REFERENCES snapshots(id) ON DELETE CASCADE,
                        name TEXT NOT NULL,
                        version TEXT NOT NULL DEFAULT '',
                        publisher TEXT NOT NULL DEFAULT '',
                        install_date TEXT,
                        size_kb INTEGER
                    )
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_software_snapshot
                    ON snapshot_software(snapshot_id)
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_software_identity
                    ON snapshot_software(name, version, publisher)
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS commands (
                        id TEXT PRIMARY KEY,
                        device_id TEXT NOT NULL
                            REFERENCES devices(id) ON DELETE CASCADE,
                        command_type TEXT NOT NULL,
                        payload TEXT NOT NULL DEFAULT '{}',
                        status TEXT NOT NULL DEFAULT 'queued'
                            CHECK (status IN ('queued', 'in_progress', 'completed', 'failed', 'expired')),
                        created_at TEXT NOT NULL,
                        picked_up_at TEXT,
                        attempts INTEGER NOT NULL DEFAULT 0,
                        executed_at TEXT,
                        result TEXT
                    )
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_commands_device_status
                    ON commands(device_id, status, created_at)
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_commands_status_created
                    ON commands(status, created_at)
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        username TEXT NOT NULL UNIQUE,
                        password_hash TEXT NOT NULL,
                        role TEXT NOT NULL DEFAULT 'viewer'
                            CHECK (role IN ('viewer', 'admin')),
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
        finally:
            conn.close()

        logger.info("Fleet database initialized at %s", self.db_path)
