# Inventory Snapshot Store
# Append-only history of agent inventory submissions.
#
# A submission is written as one snapshot row plus its volumes and
# software, inside one transaction together with the device
# reconciliation, so a reader never sees a half-written snapshot.
# Identical resubmissions (same canonical hash) are not duplicated.

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..core.db import format_ts, utc_now
from ..core.errors import DeviceNotRegistered, NotFound
from ..core.pagination import Page, normalize, offset_for
from .database import SNAPSHOT_SUMMARY_COLUMNS, FleetDatabase

logger = logging.getLogger(__name__)


def compute_snapshot_hash(submission: Dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of a submission."""
    canonical = json.dumps(submission, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def volume_usage(volume: Dict[str, Any]) -> Dict[str, Any]:
    """Fill in used_bytes (when absent) and used_percent."""
    total = volume.get("total_bytes") or 0
    free = volume.get("free_bytes") or 0
    used = volume.get("used_bytes")
    if used is None:
        used = max(total - free, 0)
    volume["used_bytes"] = used
    volume["used_percent"] = (used / total * 100) if total > 0 else 0.0
    return volume


def _ts(value: Optional[Any]) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return format_ts(value)
    return format_ts(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


@dataclass
class SubmitResult:
    snapshot_id: str
    duplicate: bool


class SnapshotStore:
    """Inventory snapshots on top of FleetDatabase."""

    def __init__(self, db: FleetDatabase, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self._clock = clock

    def submit(self, device_id: str, submission: Dict[str, Any]) -> SubmitResult:
        """Persist a submission (JSON-compatible dict) for ``device_id``.

        Raises:
            DeviceNotRegistered: the device no longer exists.
        """
        snapshot_hash = compute_snapshot_hash(submission)
        now = format_ts(self._clock())
        identity = submission.get("identity") or {}
        os_info = submission.get("os") or {}
        hardware = submission.get("hardware") or {}
        perf = submission.get("performance") or {}

        with self.db.transaction() as conn:
            device = conn.execute(
                "SELECT id, hostname FROM devices WHERE id = ?", (device_id,)
            ).fetchone()
            if device is None:
                raise DeviceNotRegistered(device_id)

            existing = conn.execute(
                "SELECT id FROM snapshots WHERE device_id = ? AND snapshot_hash = ?",
                (device_id, snapshot_hash),
            ).fetchone()
            if existing is not None:
                conn.execute(
                    """
                    UPDATE devices SET last_seen = ?, status = 'active', updated_at = ?
                    WHERE id = ?
                    """,
                    (now, now, device_id),
                )
                logger.debug("Duplicate snapshot from %s ignored", device_id)
                return SubmitResult(existing["id"], duplicate=True)

            snapshot_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO snapshots
                    (id, device_id, collected_at, agent_version, snapshot_hash,
                     cpu_percent, memory_used_bytes, memory_total_bytes, boot_time,
                     last_interactive_user, os_caption, os_version, os_build, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snapshot_id, device_id,
                    _ts(submission.get("collected_at")) or now,
                    submission.get("agent_version"), snapshot_hash,
                    perf.get("cpu_percent"), perf.get("memory_used_bytes"),
                    perf.get("memory_total_bytes"),
                    _ts(identity.get("boot_time")),
                    identity.get("last_interactive_user"),
                    os_info.get("caption"), os_info.get("version"),
                    os_info.get("build_number"), now,
                ),
            )
            conn.executemany(
                """
                INSERT INTO snapshot_volumes
                    (snapshot_id, name, filesystem, total_bytes, free_bytes, used_bytes)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        snapshot_id, v.get("name"), v.get("filesystem"),
                        v.get("total_bytes") or 0, v.get("free_bytes") or 0,
                        v.get("used_bytes"),
                    )
                    for v in submission.get("volumes") or []
                ],
            )
            conn.executemany(
                """
                INSERT INTO snapshot_software
                    (snapshot_id, name, version, publisher, install_date, size_kb)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        snapshot_id, s.get("name"), s.get("version") or "",
                        s.get("publisher") or "", s.get("install_date"), s.get("size_kb"),
                    )
                    for s in submission.get("software") or []
                ],
            )

            hostname = (identity.get("hostname") or "").strip() or device["hostname"]
            if hostname != device["hostname"]:
                taken = conn.execute(
                    "SELECT id FROM devices WHERE hostname = ? AND id != ?",
                    (hostname, device_id),
                ).fetchone()
                if taken is not None:
                    logger.warning(
                        "Device %s reported hostname %s owned by %s; keeping %s",
                        device_id, hostname, taken["id"], device["hostname"],
                    )
                    hostname = device["hostname"]

            conn.execute(
                """
                UPDATE devices SET
                    hostname = ?,
                    domain = COALESCE(?, domain),
                    manufacturer = COALESCE(?, manufacturer),
                    model = COALESCE(?, model),
                    serial_number = COALESCE(?, serial_number),
                    os_caption = COALESCE(?, os_caption),
                    os_version = COALESCE(?, os_version),
                    os_build = COALESCE(?, os_build),
                    agent_version = COALESCE(?, agent_version),
                    last_seen = ?,
                    status = 'active',
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    hostname, identity.get("domain"),
                    hardware.get("manufacturer"), hardware.get("model"),
                    hardware.get("serial_number"),
                    os_info.get("caption"), os_info.get("version"),
                    os_info.get("build_number"), submission.get("agent_version"),
                    now, now, device_id,
                ),
            )

        logger.info("Snapshot %s stored for device %s", snapshot_id, device_id)
        return SubmitResult(snapshot_id, duplicate=False)

    def list(self, device_id: str, page: int = 1, limit: int = 50) -> Page:
        """Snapshot summaries for a device, newest first."""
        page, limit = normalize(page, limit)
        with self.db.connection() as conn:
            if conn.execute("SELECT 1 FROM devices WHERE id = ?", (device_id,)).fetchone() is None:
                raise NotFound("Device not found")
            total = conn.execute(
                "SELECT COUNT(*) FROM snapshots WHERE device_id = ?", (device_id,)
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT {', '.join(SNAPSHOT_SUMMARY_COLUMNS)} FROM snapshots
                WHERE device_id = ?
                ORDER BY collected_at DESC, created_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (device_id, limit, offset_for(page, limit)),
            ).fetchall()
        return Page([dict(r) for r in rows], total, page, limit)

    def get_full(self, device_id: str, snapshot_id: str) -> Dict[str, Any]:
        """Full snapshot with volumes and software, both sorted by name."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM snapshots WHERE id = ? AND device_id = ?",
                (snapshot_id, device_id),
            ).fetchone()
            if row is None:
                raise NotFound("Snapshot not found")
            volumes = conn.execute(
                """
                SELECT name, filesystem, total_bytes, free_bytes, used_bytes
                FROM snapshot_volumes WHERE snapshot_id = ?
                ORDER BY name, id
                """,
                (snapshot_id,),
            ).fetchall()
            software = conn.execute(
                """
                SELECT name, version, publisher, install_date, size_kb
                FROM snapshot_software WHERE snapshot_id = ?
                ORDER BY name, version, id
                """,
                (snapshot_id,),
            ).fetchall()

        snapshot = dict(row)
        snapshot.pop("snapshot_hash", None)
        snapshot["volumes"] = [volume_usage(dict(v)) for v in volumes]
        snapshot["software"] = [dict(s) for s in software]
        return snapshot
