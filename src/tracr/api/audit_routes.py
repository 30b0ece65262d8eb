# Audit Log Query Route (admin only)

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..fleet.manager import get_fleet
from .security import require_admin

router = APIRouter(prefix="/v1/audit-logs", tags=["audit"])


@router.get("")
def list_audit_logs(
    page: int = Query(1),
    limit: int = Query(50),
    action: Optional[str] = Query(None, max_length=50),
    user_id: Optional[str] = Query(None),
    device_id: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, description="RFC3339"),
    end_date: Optional[str] = Query(None, description="RFC3339"),
    admin: dict = Depends(require_admin),
):
    """Audit history, newest first."""
    audit = get_fleet().audit
    audit.flush()
    result = audit.query(
        page=page,
        limit=limit,
        action=action,
        user_id=user_id,
        device_id=device_id,
        start_date=start_date,
        end_date=end_date,
    )
    return result.envelope("audit_logs")
