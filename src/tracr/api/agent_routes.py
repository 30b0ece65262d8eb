# Agent API Routes
#
# Endpoints agents call on their loop:
#   register -> heartbeat -> inventory -> poll commands -> ack
#
# Each store call runs in the threadpool under a server-side timeout so
# a stuck database lock surfaces as 503 instead of a hung agent. An
# unknown device id answers 202 {"reregister": true} (see api.main).

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from ..core.audit_log import ACTION_REGISTER_DEVICE
from ..core.config import get_settings
from ..core.errors import DeviceNotRegistered
from ..fleet.manager import get_fleet
from .rate_limiter import rate_limit_register
from .schemas import CommandReport, InventorySubmission, RegisterRequest, RegisterResponse
from .security import audit_context, require_device

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/agents", tags=["agents"])


async def _bounded(func, *args):
    """Run a blocking store call with the agent request timeout."""
    timeout = get_settings().agent_request_timeout
    try:
        return await asyncio.wait_for(run_in_threadpool(func, *args), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Agent request timed out after %.1fs in %s", timeout, func.__name__)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server busy, retry later",
        )


@router.post(
    "/register",
    response_model=RegisterResponse,
    dependencies=[Depends(rate_limit_register)],
)
async def register_device(body: RegisterRequest, request: Request):
    """Register a device (idempotent by hostname) and return its token."""
    fleet = get_fleet()
    registration = await _bounded(
        fleet.devices.register, body.hostname, body.os_version, body.agent_version
    )
    if registration.created:
        fleet.audit.append(
            ACTION_REGISTER_DEVICE,
            device_id=registration.device_id,
            hostname=body.hostname.strip(),
            details={
                "os_version": body.os_version,
                "agent_version": body.agent_version,
            },
            **audit_context(request),
        )
    return RegisterResponse(
        device_id=registration.device_id,
        device_token=registration.device_token,
    )


@router.post("/{device_id}/heartbeat")
async def heartbeat(device_id: str, device: dict = Depends(require_device)):
    found = await _bounded(get_fleet().devices.heartbeat, device_id)
    if not found:
        raise DeviceNotRegistered(device_id)
    return {"success": True}


@router.post("/{device_id}/inventory")
async def submit_inventory(
    device_id: str,
    submission: InventorySubmission,
    device: dict = Depends(require_device),
):
    """Store an inventory snapshot. Identical resubmissions are not duplicated."""
    result = await _bounded(
        get_fleet().snapshots.submit, device_id, submission.model_dump(mode="json")
    )
    return {
        "success": True,
        "snapshot_id": result.snapshot_id,
        "duplicate": result.duplicate,
    }


@router.get("/{device_id}/commands")
async def poll_command(device_id: str, device: dict = Depends(require_device)):
    """Claim the next queued command, if any."""
    command = await _bounded(get_fleet().commands.poll_next, device_id)
    return {"command": command}


@router.post("/{device_id}/commands/{command_id}/ack")
async def ack_command(
    device_id: str,
    command_id: str,
    report: CommandReport,
    device: dict = Depends(require_device),
):
    """Report the outcome of an in-progress command."""
    command = await _bounded(
        get_fleet().commands.report,
        device_id, command_id, report.success, report.message, report.error,
    )
    return {"success": True, "status": command["status"]}
