# Dashboard Device Routes
#
# Fleet listing and detail, snapshot history, per-device command
# history, and the admin-only writes (queue a command, delete a device).

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from ..core.audit_log import ACTION_CREATE_COMMAND, ACTION_DELETE_DEVICE
from ..fleet.manager import get_fleet
from .schemas import CreateCommandRequest
from .security import audit_context, require_admin, require_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/devices", tags=["devices"])


@router.get("")
def list_devices(
    page: int = Query(1),
    limit: int = Query(50),
    search: Optional[str] = Query(None, max_length=255),
    status_filter: Optional[str] = Query(None, alias="status"),
    user: dict = Depends(require_user),
):
    """Devices, most recently seen first."""
    result = get_fleet().devices.list(page=page, limit=limit, search=search, status=status_filter)
    return result.envelope("devices")


@router.get("/stats")
def device_stats(user: dict = Depends(require_user)):
    return get_fleet().devices.stats()


@router.get("/{device_id}")
def get_device(device_id: str, user: dict = Depends(require_user)):
    return get_fleet().devices.get(device_id)


@router.delete("/{device_id}")
def delete_device(
    device_id: str,
    request: Request,
    admin: dict = Depends(require_admin),
):
    """Delete a device and everything recorded for it."""
    fleet = get_fleet()
    removed = fleet.devices.delete(device_id)
    fleet.audit.append(
        ACTION_DELETE_DEVICE,
        user_id=admin["id"],
        username=admin["username"],
        device_id=device_id,
        hostname=removed["hostname"],
        **audit_context(request),
    )
    return {"success": True, "message": "Device deleted"}


@router.get("/{device_id}/snapshots")
def list_snapshots(
    device_id: str,
    page: int = Query(1),
    limit: int = Query(50),
    user: dict = Depends(require_user),
):
    return get_fleet().snapshots.list(device_id, page=page, limit=limit).envelope("data")


@router.get("/{device_id}/snapshots/{snapshot_id}")
def get_snapshot(device_id: str, snapshot_id: str, user: dict = Depends(require_user)):
    return get_fleet().snapshots.get_full(device_id, snapshot_id)


@router.get("/{device_id}/commands")
def list_commands(
    device_id: str,
    page: int = Query(1),
    limit: int = Query(50),
    status_filter: Optional[str] = Query(None, alias="status"),
    user: dict = Depends(require_user),
):
    result = get_fleet().commands.list(device_id, page=page, limit=limit, status=status_filter)
    return result.envelope("commands")


@router.post("/{device_id}/commands", status_code=status.HTTP_201_CREATED)
def create_command(
    device_id: str,
    body: CreateCommandRequest,
    request: Request,
    admin: dict = Depends(require_admin),
):
    """Queue a command for the device's next poll."""
    fleet = get_fleet()
    command = fleet.commands.create(device_id, body.command_type, body.payload)
    device = fleet.devices.get(device_id)
    fleet.audit.append(
        ACTION_CREATE_COMMAND,
        user_id=admin["id"],
        username=admin["username"],
        device_id=device_id,
        hostname=device["hostname"],
        details={"command_id": command["id"], "command_type": command["command_type"]},
        **audit_context(request),
    )
    return command
