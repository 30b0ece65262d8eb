# Dashboard Software Catalog Route

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..fleet.manager import get_fleet
from .security import require_user

router = APIRouter(prefix="/v1/software", tags=["software"])


@router.get("")
def list_software(
    page: int = Query(1),
    limit: int = Query(50),
    search: Optional[str] = Query(None, max_length=500),
    publisher: Optional[str] = Query(None, max_length=255),
    sort_by: Optional[str] = Query(
        None, alias="sort", description="device_count | name | latest_seen"
    ),
    user: dict = Depends(require_user),
):
    """Software installed across the fleet, from each device's latest snapshot."""
    result = get_fleet().catalog.list(
        page=page, limit=limit, search=search, publisher=publisher, sort_by=sort_by
    )
    return result.envelope("software")
