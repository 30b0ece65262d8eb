"""Page/limit normalization and the pagination envelope."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

DEFAULT_LIMIT = 50
MAX_LIMIT = 100


def normalize(page: int, limit: int) -> Tuple[int, int]:
    """Clamp request paging: page < 1 becomes 1, limit outside 1..100 becomes 50."""
    if page is None or page < 1:
        page = 1
    if limit is None or limit < 1 or limit > MAX_LIMIT:
        limit = DEFAULT_LIMIT
    return page, limit


def offset_for(page: int, limit: int) -> int:
    return (page - 1) * limit


@dataclass
class Page:
    items: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = DEFAULT_LIMIT

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit

    def pagination(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
        }

    def envelope(self, key: str) -> Dict[str, Any]:
        return {key: self.items, "pagination": self.pagination()}
