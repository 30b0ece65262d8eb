# API Security - Bearer authentication for dashboard users and agents
#
# Dashboard: Authorization: Bearer <session token> (signed, 24h expiry).
#   The user row is re-read on every request, so a deleted user is
#   locked out and a role change applies immediately.
# Agents: Authorization: Bearer <device token>, checked against the
#   device named in the URL path.
#
# Missing/invalid credentials -> 401; valid user without the admin role
# on an admin endpoint -> 403.

import logging
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from ..core.auth import ROLE_ADMIN, verify_session_token
from ..core.config import get_settings
from ..core.errors import Forbidden, Unauthorized
from ..fleet.manager import get_fleet
from .rate_limiter import enforce_key_limit, get_client_ip

logger = logging.getLogger(__name__)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format",
        )
    return parts[1].strip()


def require_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """FastAPI dependency: any authenticated dashboard user."""
    token = _bearer_token(authorization)
    settings = get_settings()
    try:
        claims = verify_session_token(token, settings.secret_key)
    except Unauthorized as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)

    user = get_fleet().users.find(claims["user_id"])
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User no longer exists",
        )
    enforce_key_limit(user["id"], "web", settings.web_rate_limit)
    return user


def require_admin(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    """FastAPI dependency: authenticated user with the admin role."""
    if user["role"] != ROLE_ADMIN:
        raise Forbidden("Admin access required")
    return user


def require_device(
    device_id: str,
    authorization: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """FastAPI dependency: agent authenticated for the path's device_id.

    Unknown device ids raise DeviceNotRegistered, which the app answers
    with 202 and a re-register hint.
    """
    token = _bearer_token(authorization)
    device = get_fleet().devices.authenticate(device_id, token)
    enforce_key_limit(device_id, "agent", get_settings().agent_rate_limit)
    return device


def audit_context(request: Request) -> Dict[str, Optional[str]]:
    """Caller details recorded on audit entries."""
    return {
        "ip_address": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent"),
    }
