"""Fleet-wide software catalog.

Aggregated at read time from each device's latest snapshot only, so a
package uninstalled on a device stops counting as soon as that device
submits a newer inventory. Items are grouped by (name, version,
publisher).
"""

import logging
from typing import Optional

from ..core.pagination import Page, normalize, offset_for
from .database import FleetDatabase, latest_snapshot_subquery, like_pattern

logger = logging.getLogger(__name__)

SORT_DEVICE_COUNT = "device_count"
SORT_NAME = "name"
SORT_LATEST_SEEN = "latest_seen"

# Tie-breakers keep page boundaries stable.
_ORDER_BY = {
    SORT_DEVICE_COUNT: "device_count DESC, name ASC, version ASC, publisher ASC",
    SORT_NAME: "name ASC, version ASC, publisher ASC",
    SORT_LATEST_SEEN: "latest_seen DESC, name ASC, version ASC, publisher ASC",
}


class SoftwareCatalog:

    def __init__(self, db: FleetDatabase):
        self.db = db

    def list(
        self,
        page: int = 1,
        limit: int = 50,
        search: Optional[str] = None,
        publisher: Optional[str] = None,
        sort_by: Optional[str] = None,
    ) -> Page:
        page, limit = normalize(page, limit)
        order_by = _ORDER_BY.get(sort_by or SORT_DEVICE_COUNT, _ORDER_BY[SORT_DEVICE_COUNT])

        clauses = []
        params: list = []
        if search:
            clauses.append("LOWER(sw.name) LIKE ? ESCAPE '\\'")
            params.append(like_pattern(search))
        if publisher:
            clauses.append("sw.publisher = ?")
            params.append(publisher)
        where = f"AND {' AND '.join(clauses)}" if clauses else ""

        grouped = f"""
            SELECT sw.name AS name,
                   sw.version AS version,
                   sw.publisher AS publisher,
                   COUNT(DISTINCT s.device_id) AS device_count,
                   MAX(s.collected_at) AS latest_seen
            FROM devices d
            JOIN snapshots s ON s.id = ({latest_snapshot_subquery('d.id')})
            JOIN snapshot_software sw ON sw.snapshot_id = s.id
            WHERE 1 = 1 {where}
            GROUP BY sw.name, sw.version, sw.publisher
        """

        with self.db.connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM ({grouped})", params
            ).fetchone()[0]
            rows = conn.execute(
                f"{grouped} ORDER BY {order_by} LIMIT ? OFFSET ?",
                params + [limit, offset_for(page, limit)],
            ).fetchall()
        return Page([dict(r) for r in rows], total, page, limit)
