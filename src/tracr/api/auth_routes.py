# Dashboard Login
#
# Username/password -> signed session token. Failed attempts are
# audited with the attempted username; the response never says which
# half of the credentials was wrong.

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from ..core.audit_log import ACTION_LOGIN, ACTION_LOGIN_FAILED
from ..core.auth import issue_session_token
from ..core.config import get_settings
from ..core.db import format_ts
from ..fleet.manager import get_fleet
from .rate_limiter import rate_limit_login
from .schemas import LoginRequest, LoginResponse
from .security import audit_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


@router.post(
    "/login",
    response_model=LoginResponse,
    dependencies=[Depends(rate_limit_login)],
)
async def login(body: LoginRequest, request: Request):
    fleet = get_fleet()
    settings = get_settings()
    user = await run_in_threadpool(fleet.users.authenticate, body.username, body.password)
    if user is None:
        fleet.audit.append(
            ACTION_LOGIN_FAILED,
            username=body.username,
            details={"reason": "invalid_credentials"},
            **audit_context(request),
        )
        logger.info("Failed login for %r", body.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )

    token, expires_at = issue_session_token(
        user, settings.secret_key, settings.token_ttl_hours * 3600
    )
    fleet.audit.append(
        ACTION_LOGIN,
        user_id=user["id"],
        username=user["username"],
        **audit_context(request),
    )
    return {
        "token": token,
        "expires_at": format_ts(datetime.fromtimestamp(expires_at, tz=timezone.utc)),
        "user": user,
    }
