# Core Module - Audit Log
#
# Append-only record of security-relevant actions (logins, user and
# device management, command creation, device registration).
#
# Writes never block or fail the request that triggered them: entries go
# onto an in-process queue drained by a daemon writer thread. When the
# writer is not running (tests, scripts) entries are written inline.
# Either way a storage failure is logged and the entry dropped.
#
# username/hostname are copied onto the entry at write time so history
# stays readable after the user or device is deleted.

import json
import logging
import queue
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import structlog

from .db import connect as db_connect, format_ts, utc_now
from .errors import BadRequest
from .pagination import Page, normalize, offset_for

logger = logging.getLogger(__name__)

ACTION_LOGIN = "login"
ACTION_LOGIN_FAILED = "login_failed"
ACTION_CREATE_USER = "create_user"
ACTION_UPDATE_USER = "update_user"
ACTION_DELETE_USER = "delete_user"
ACTION_REGISTER_DEVICE = "register_device"
ACTION_DELETE_DEVICE = "delete_device"
ACTION_CREATE_COMMAND = "create_command"


def parse_rfc3339(value: str, field: str) -> str:
    """Validate an RFC 3339 timestamp query value, returning storage format.

    Raises:
        BadRequest: value is not a full date-time with an offset.
    """
    try:
        if "T" not in value.upper():
            raise ValueError(value)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError:
        raise BadRequest(f"Invalid {field} format, use RFC3339")
    if parsed.tzinfo is None:
        raise BadRequest(f"Invalid {field} format, use RFC3339")
    return format_ts(parsed)


class AuditLogger:
    """Buffered, append-only audit store.

    Args:
        db_path: SQLite file holding the ``audit_logs`` table.
        clock: Source of "now" (tests pin it).
    """

    _SENTINEL = object()

    def __init__(
        self,
        db_path: Union[str, Path],
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self.logger = structlog.get_logger("tracr.audit")
        self._init_database()

    def _init_database(self):
        with db_connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    user_id TEXT,
                    username TEXT,
                    device_id TEXT,
                    hostname TEXT,
                    action TEXT NOT NULL,
                    details TEXT NOT NULL DEFAULT '{}',
                    ip_address TEXT,
                    user_agent TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_logs(timestamp)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_logs(action)"
            )
        conn.close()

    # ── Writer thread ────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._thread = threading.Thread(
            target=self._run, name="tracr-audit-writer", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._queue.put(self._SENTINEL)
        self._thread.join(timeout=5)
        self._thread = None

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until queued entries are written. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is self._SENTINEL:
                    return
                self._write(item)
            finally:
                self._queue.task_done()

    # ── Append ───────────────────────────────────────────────────────

    def append(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
        device_id: Optional[str] = None,
        hostname: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Record an action. Never raises; returns the entry id."""
        entry = {
            "id": str(uuid.uuid4()),
            "timestamp": format_ts(self._clock()),
            "user_id": user_id,
            "username": username,
            "device_id": device_id,
            "hostname": hostname,
            "action": action,
            "details": details or {},
            "ip_address": ip_address,
            "user_agent": user_agent,
        }
        try:
            self.logger.info("audit_event", **entry)
            if self.is_running:
                self._queue.put(entry)
            else:
                self._write(entry)
        except Exception:
            logger.exception("Failed to enqueue audit entry %s", action)
        return entry["id"]

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            conn = db_connect(self.db_path)
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO audit_logs
                            (id, timestamp, user_id, username, device_id, hostname,
                             action, details, ip_address, user_agent)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            entry["id"], entry["timestamp"], entry["user_id"],
                            entry["username"], entry["device_id"], entry["hostname"],
                            entry["action"], json.dumps(entry["details"], default=str),
                            entry["ip_address"], entry["user_agent"],
                        ),
                    )
            finally:
                conn.close()
        except Exception:
            self.logger.error(
                "audit_write_failed", action=entry.get("action"), entry_id=entry.get("id"),
                exc_info=True,
            )

    # ── Query ────────────────────────────────────────────────────────

    def query(
        self,
        page: int = 1,
        limit: int = 50,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Page:
        """Filtered audit history, newest first.

        start_date/end_date are RFC 3339 strings; both bounds are inclusive.
        """
        page, limit = normalize(page, limit)
        clauses = []
        params: list = []
        if action:
            clauses.append("action = ?")
            params.append(action)
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if device_id:
            clauses.append("device_id = ?")
            params.append(device_id)
        start = parse_rfc3339(start_date, "start_date") if start_date else None
        end = parse_rfc3339(end_date, "end_date") if end_date else None
        if start and end and start > end:
            raise BadRequest("start_date must not be after end_date")
        if start:
            clauses.append("timestamp >= ?")
            params.append(start)
        if end:
            clauses.append("timestamp <= ?")
            params.append(end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = db_connect(self.db_path, row_factory=True)
        try:
            total = conn.execute(
                f"SELECT COUNT(*) FROM audit_logs {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM audit_logs {where}
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                params + [limit, offset_for(page, limit)],
            ).fetchall()
        finally:
            conn.close()
        return Page([self._row_to_entry(r) for r in rows], total, page, limit)

    @staticmethod
    def _row_to_entry(row) -> Dict[str, Any]:
        entry = dict(row)
        try:
            entry["details"] = json.loads(entry.get("details") or "{}")
        except (json.JSONDecodeError, TypeError):
            entry["details"] = {}
        return entry
