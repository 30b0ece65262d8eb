# Device Registry
# Registration, token verification, heartbeat liveness and dashboard
# listing of managed endpoints.
#
# Registration is idempotent by hostname: a re-registering agent gets the
# same device id and token back. `is_online` is derived at read time
# from last_seen and is independent of the stored `status` column.

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from ..core.auth import (
    decrypt_device_token,
    device_token_key,
    device_token_matches,
    encrypt_device_token,
    generate_device_token,
    hash_device_token,
)
from ..core.db import format_ts, parse_ts, utc_now
from ..core.errors import BadRequest, DeviceNotRegistered, NotFound, Unauthorized
from ..core.pagination import Page, normalize, offset_for
from .database import (
    DEVICE_STATUSES,
    SNAPSHOT_SUMMARY_COLUMNS,
    FleetDatabase,
    latest_snapshot_subquery,
    like_pattern,
)

logger = logging.getLogger(__name__)

DEFAULT_ONLINE_THRESHOLD = timedelta(minutes=10)

_PUBLIC_COLUMNS = (
    "id", "hostname", "domain", "manufacturer", "model", "serial_number",
    "os_caption", "os_version", "os_build", "agent_version",
    "first_seen", "last_seen", "status", "created_at", "updated_at",
)

# Latest snapshot summary joined onto each device row as ls_<column>.
_LATEST_SELECT = ", ".join(f"ls.{col} AS ls_{col}" for col in SNAPSHOT_SUMMARY_COLUMNS)


def compute_is_online(
    last_seen: Union[str, datetime, None],
    now: datetime,
    threshold: timedelta = DEFAULT_ONLINE_THRESHOLD,
) -> bool:
    """True when the device checked in less than ``threshold`` ago."""
    if isinstance(last_seen, str):
        last_seen = parse_ts(last_seen)
    if last_seen is None:
        return False
    return (now - last_seen) < threshold


def compute_uptime_hours(boot_time: Union[str, datetime, None], now: datetime) -> Optional[int]:
    if isinstance(boot_time, str):
        boot_time = parse_ts(boot_time)
    if boot_time is None or boot_time > now:
        return None
    return math.floor((now - boot_time).total_seconds() / 3600)


@dataclass
class Registration:
    device_id: str
    device_token: str
    created: bool


class DeviceRegistry:
    """Device identity and liveness on top of FleetDatabase.

    Args:
        db: Shared fleet database.
        secret_key: Server secret; wraps stored device tokens.
        online_threshold: Heartbeat age below which a device is online.
        clock: Source of "now" (tests pin it).
    """

    def __init__(
        self,
        db: FleetDatabase,
        secret_key: str,
        online_threshold: timedelta = DEFAULT_ONLINE_THRESHOLD,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self._token_key = device_token_key(secret_key)
        self.online_threshold = online_threshold
        self._clock = clock

    # ── Agent side ───────────────────────────────────────────────────

    def register(
        self,
        hostname: str,
        os_version: Optional[str] = None,
        agent_version: Optional[str] = None,
    ) -> Registration:
        """Register a device, or return the existing identity for this hostname."""
        hostname = hostname.strip()
        if not hostname:
            raise BadRequest("hostname is required")
        now = format_ts(self._clock())

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT id, device_token_enc FROM devices WHERE hostname = ?",
                (hostname,),
            ).fetchone()

            if row is not None:
                token = decrypt_device_token(row["device_token_enc"], self._token_key)
                if token is None:
                    # Secret changed since this token was issued; rotate it.
                    token = generate_device_token()
                    conn.execute(
                        """
                        UPDATE devices
                        SET device_token_hash = ?, device_token_enc = ?, token_created_at = ?
                        WHERE id = ?
                        """,
                        (
                            hash_device_token(token),
                            encrypt_device_token(token, self._token_key),
                            now,
                            row["id"],
                        ),
                    )
                    logger.warning("Rotated unreadable device token for %s", row["id"])
                conn.execute(
                    """
                    UPDATE devices
                    SET last_seen = ?, status = 'active',
                        os_version = COALESCE(?, os_version),
                        agent_version = COALESCE(?, agent_version),
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (now, os_version, agent_version, now, row["id"]),
                )
                logger.info("Device re-registered: %s (%s)", hostname, row["id"])
                return Registration(row["id"], token, created=False)

            device_id = str(uuid.uuid4())
            token = generate_device_token()
            conn.execute(
                """
                INSERT INTO devices
                    (id, hostname, os_version, agent_version, first_seen, last_seen,
                     status, device_token_hash, device_token_enc, token_created_at,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?, ?, ?, ?)
                """,
                (
                    device_id, hostname, os_version, agent_version, now, now,
                    hash_device_token(token),
                    encrypt_device_token(token, self._token_key),
                    now, now, now,
                ),
            )
        logger.info("Device registered: %s (%s)", hostname, device_id)
        return Registration(device_id, token, created=True)

    def authenticate(self, device_id: str, token: str) -> Dict[str, Any]:
        """Verify a device token.

        Raises:
            DeviceNotRegistered: unknown device id.
            Unauthorized: token does not match.
        """
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT id, hostname, device_token_hash FROM devices WHERE id = ?",
                (device_id,),
            ).fetchone()
        if row is None:
            raise DeviceNotRegistered(device_id)
        if not token or not device_token_matches(token, row["device_token_hash"]):
            raise Unauthorized("Invalid device token")
        return {"id": row["id"], "hostname": row["hostname"]}

    def heartbeat(self, device_id: str) -> bool:
        """Refresh liveness. Returns False if the device is unknown."""
        now = format_ts(self._clock())
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE devices SET last_seen = ?, status = 'active', updated_at = ?
                WHERE id = ?
                """,
                (now, now, device_id),
            )
            return cursor.rowcount > 0

    # ── Dashboard side ───────────────────────────────────────────────

    def list(
        self,
        page: int = 1,
        limit: int = 50,
        search: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Page:
        page, limit = normalize(page, limit)
        clauses = []
        params: list = []
        if search:
            pattern = like_pattern(search)
            clauses.append(
                "(LOWER(d.hostname) LIKE ? ESCAPE '\\' "
                "OR LOWER(COALESCE(d.os_caption, '')) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])
        if status:
            if status not in DEVICE_STATUSES:
                raise BadRequest(f"Invalid status: {status}")
            clauses.append("d.status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self.db.connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM devices d {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT d.*, {_LATEST_SELECT}
                FROM devices d
                LEFT JOIN snapshots ls ON ls.id = ({latest_snapshot_subquery('d.id')})
                {where}
                ORDER BY d.last_seen DESC, d.id
                LIMIT ? OFFSET ?
                """,
                params + [limit, offset_for(page, limit)],
            ).fetchall()

        now = self._clock()
        return Page([self._row_to_device(r, now) for r in rows], total, page, limit)

    def get(self, device_id: str) -> Dict[str, Any]:
        with self.db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT d.*, {_LATEST_SELECT}
                FROM devices d
                LEFT JOIN snapshots ls ON ls.id = ({latest_snapshot_subquery('d.id')})
                WHERE d.id = ?
                """,
                (device_id,),
            ).fetchone()
        if row is None:
            raise NotFound("Device not found")
        return self._row_to_device(row, self._clock())

    def exists(self, device_id: str) -> bool:
        with self.db.connection() as conn:
            row = conn.execute("SELECT 1 FROM devices WHERE id = ?", (device_id,)).fetchone()
        return row is not None

    def delete(self, device_id: str) -> Dict[str, Any]:
        """Delete a device with its snapshots and commands. Returns the removed row."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT id, hostname FROM devices WHERE id = ?", (device_id,)
            ).fetchone()
            if row is None:
                raise NotFound("Device not found")
            conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))
        logger.info("Device deleted: %s (%s)", row["hostname"], device_id)
        return {"id": row["id"], "hostname": row["hostname"]}

    def stats(self) -> Dict[str, int]:
        """Dashboard counters: total, online, offline (not online, not error), error."""
        cutoff = format_ts(self._clock() - self.online_threshold)
        with self.db.connection() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN last_seen > ? THEN 1 ELSE 0 END), 0) AS online,
                    COALESCE(SUM(CASE WHEN last_seen <= ? AND status != 'error'
                                 THEN 1 ELSE 0 END), 0) AS offline,
                    COALESCE(SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END), 0) AS error
                FROM devices
                """,
                (cutoff, cutoff),
            ).fetchone()
        return {
            "total": row["total"],
            "online": row["online"],
            "offline": row["offline"],
            "error": row["error"],
        }

    def set_status(self, device_id: str, status: str) -> bool:
        if status not in DEVICE_STATUSES:
            raise BadRequest(f"Invalid status: {status}")
        now = format_ts(self._clock())
        with self.db.connection() as conn:
            cursor = conn.execute(
                "UPDATE devices SET status = ?, updated_at = ? WHERE id = ?",
                (status, now, device_id),
            )
            return cursor.rowcount > 0

    def _row_to_device(self, row, now: datetime) -> Dict[str, Any]:
        device = {col: row[col] for col in _PUBLIC_COLUMNS}
        device["is_online"] = compute_is_online(row["last_seen"], now, self.online_threshold)
        device["uptime_hours"] = compute_uptime_hours(row["ls_boot_time"], now)
        if row["ls_id"] is None:
            device["latest_snapshot"] = None
        else:
            device["latest_snapshot"] = {
                col: row[f"ls_{col}"] for col in SNAPSHOT_SUMMARY_COLUMNS
            }
        return device
