# Command Queue
# Pull-based command delivery from the dashboard to agents.
#
# State machine:
#
#   queued ──poll──▶ in_progress ──report──▶ completed | failed
#     │                  │
#     └──────sweep───────┴──▶ expired
#
# Every transition is a conditional UPDATE keyed on the current status,
# so concurrent pollers claim a command at most once and a report that
# races the expiry sweep has exactly one winner.

import json
import logging
import threading
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..core.db import format_ts, utc_now
from ..core.errors import BadRequest, Conflict, NotFound
from ..core.pagination import Page, normalize, offset_for
from .database import FleetDatabase

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TTL = timedelta(minutes=5)
DEFAULT_SWEEP_INTERVAL = 60

# Upper bound on claim retries when other pollers keep winning the race.
MAX_CLAIM_ATTEMPTS = 10


class CommandType(str, Enum):
    """Commands an agent knows how to execute."""
    REFRESH_NOW = "refresh_now"


class CommandStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    CommandStatus.COMPLETED.value,
    CommandStatus.FAILED.value,
    CommandStatus.EXPIRED.value,
})


def parse_command_type(value: str) -> CommandType:
    try:
        return CommandType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in CommandType)
        raise BadRequest(f"Invalid command type: {value} (allowed: {allowed})")


class CommandQueue:
    """Command lifecycle on top of FleetDatabase.

    Args:
        db: Shared fleet database.
        ttl: Age (from creation) after which an unfinished command expires.
        clock: Source of "now" (tests pin it).
    """

    def __init__(
        self,
        db: FleetDatabase,
        ttl: timedelta = DEFAULT_COMMAND_TTL,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.ttl = ttl
        self._clock = clock

    def create(
        self,
        device_id: str,
        command_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ctype = parse_command_type(command_type)
        command_id = str(uuid.uuid4())
        now = format_ts(self._clock())
        with self.db.connection() as conn:
            if conn.execute("SELECT 1 FROM devices WHERE id = ?", (device_id,)).fetchone() is None:
                raise NotFound("Device not found")
            conn.execute(
                """
                INSERT INTO commands (id, device_id, command_type, payload, status, created_at)
                VALUES (?, ?, ?, ?, 'queued', ?)
                """,
                (command_id, device_id, ctype.value, json.dumps(payload or {}), now),
            )
            row = self._fetch(conn, command_id)
        logger.info("Command %s (%s) queued for %s", command_id, ctype.value, device_id)
        return row

    def poll_next(self, device_id: str) -> Optional[Dict[str, Any]]:
        """Claim the oldest queued command for a device, or None."""
        self.expire_stale(device_id)

        for _ in range(MAX_CLAIM_ATTEMPTS):
            with self.db.connection() as conn:
                candidate = conn.execute(
                    """
                    SELECT id FROM commands
                    WHERE device_id = ? AND status = 'queued'
                    ORDER BY created_at, rowid
                    LIMIT 1
                    """,
                    (device_id,),
                ).fetchone()
                if candidate is None:
                    return None
                cursor = conn.execute(
                    """
                    UPDATE commands
                    SET status = 'in_progress', picked_up_at = ?, attempts = attempts + 1
                    WHERE id = ? AND status = 'queued'
                    """,
                    (format_ts(self._clock()), candidate["id"]),
                )
                if cursor.rowcount == 1:
                    conn.commit()
                    return self._fetch(conn, candidate["id"])
            # Another poller claimed it first; look again.

        logger.warning("Gave up claiming a command for %s after %d attempts",
                       device_id, MAX_CLAIM_ATTEMPTS)
        return None

    def report(
        self,
        device_id: str,
        command_id: str,
        success: bool,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record the outcome of an in-progress command.

        Raises:
            NotFound: unknown command, or owned by another device.
            Conflict: command is not in progress (already reported or expired).
        """
        result: Dict[str, Any] = {"success": bool(success)}
        if message:
            result["message"] = message
        if error:
            result["error"] = error
        new_status = CommandStatus.COMPLETED if success else CommandStatus.FAILED

        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE commands
                SET status = ?, executed_at = ?, result = ?
                WHERE id = ? AND device_id = ? AND status = 'in_progress'
                """,
                (
                    new_status.value, format_ts(self._clock()), json.dumps(result),
                    command_id, device_id,
                ),
            )
            if cursor.rowcount == 1:
                conn.commit()
                logger.info("Command %s reported %s", command_id, new_status.value)
                return self._fetch(conn, command_id)

            row = conn.execute(
                "SELECT status FROM commands WHERE id = ? AND device_id = ?",
                (command_id, device_id),
            ).fetchone()
        if row is None:
            raise NotFound("Command not found")
        if row["status"] in TERMINAL_STATUSES:
            raise Conflict(f"Command already {row['status']}")
        raise Conflict(f"Command is {row['status']}, not in_progress")

    def get(self, device_id: str, command_id: str) -> Dict[str, Any]:
        with self.db.connection() as conn:
            row = self._fetch(conn, command_id)
        if row is None or row["device_id"] != device_id:
            raise NotFound("Command not found")
        return row

    def list(
        self,
        device_id: str,
        page: int = 1,
        limit: int = 50,
        status: Optional[str] = None,
    ) -> Page:
        """Commands for a device, newest first."""
        page, limit = normalize(page, limit)
        clauses = ["device_id = ?"]
        params: list = [device_id]
        if status:
            try:
                clauses.append("status = ?")
                params.append(CommandStatus(status).value)
            except ValueError:
                raise BadRequest(f"Invalid status: {status}")
        where = " AND ".join(clauses)

        with self.db.connection() as conn:
            if conn.execute("SELECT 1 FROM devices WHERE id = ?", (device_id,)).fetchone() is None:
                raise NotFound("Device not found")
            total = conn.execute(
                f"SELECT COUNT(*) FROM commands WHERE {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM commands WHERE {where}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                params + [limit, offset_for(page, limit)],
            ).fetchall()
        return Page([self._row_to_command(r) for r in rows], total, page, limit)

    def expire_stale(self, device_id: Optional[str] = None) -> int:
        """Expire unfinished commands older than the TTL. Returns rows changed."""
        cutoff = format_ts(self._clock() - self.ttl)
        sql = """
            UPDATE commands SET status = 'expired'
            WHERE status IN ('queued', 'in_progress') AND created_at < ?
        """
        params: list = [cutoff]
        if device_id is not None:
            sql += " AND device_id = ?"
            params.append(device_id)
        with self.db.connection() as conn:
            expired = conn.execute(sql, params).rowcount
        if expired:
            logger.info("Expired %d stale command(s)", expired)
        return expired

    def _fetch(self, conn, command_id: str) -> Optional[Dict[str, Any]]:
        row = conn.execute("SELECT * FROM commands WHERE id = ?", (command_id,)).fetchone()
        return self._row_to_command(row) if row is not None else None

    @staticmethod
    def _row_to_command(row) -> Dict[str, Any]:
        command = dict(row)
        command["payload"] = json.loads(command.get("payload") or "{}")
        command["result"] = json.loads(command["result"]) if command.get("result") else None
        return command


class CommandExpirySweeper:
    """Background thread that periodically expires stale commands.

    Failures are logged and retried on the next tick; they never reach
    API callers.
    """

    def __init__(self, queue: CommandQueue, interval: int = DEFAULT_SWEEP_INTERVAL):
        self._queue = queue
        self._interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="tracr-command-sweeper", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def sweep_once(self) -> int:
        try:
            return self._queue.expire_stale()
        except Exception:
            logger.exception("Command expiry sweep failed")
            return 0

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.sweep_once()
            self._stop_event.wait(self._interval)
