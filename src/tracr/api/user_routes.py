# Dashboard User Management (admin only)

import logging

from fastapi import APIRouter, Depends, Query, Request, Response, status

from ..core.audit_log import ACTION_CREATE_USER, ACTION_DELETE_USER, ACTION_UPDATE_USER
from ..fleet.manager import get_fleet
from .schemas import CreateUserRequest, UpdateUserRequest, UserOut
from .security import audit_context, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/users", tags=["users"])


@router.get("")
def list_users(
    page: int = Query(1),
    limit: int = Query(50),
    admin: dict = Depends(require_admin),
):
    return get_fleet().users.list(page=page, limit=limit).envelope("users")


@router.get("/{user_id}", response_model=UserOut)
def get_user(user_id: str, admin: dict = Depends(require_admin)):
    return get_fleet().users.get(user_id)


@router.post("", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user(body: CreateUserRequest, request: Request, admin: dict = Depends(require_admin)):
    fleet = get_fleet()
    user = fleet.users.create(body.username, body.password, body.role)
    fleet.audit.append(
        ACTION_CREATE_USER,
        user_id=admin["id"],
        username=admin["username"],
        details={"target_user_id": user["id"], "target_username": user["username"],
                 "role": user["role"]},
        **audit_context(request),
    )
    return user


@router.put("/{user_id}", response_model=UserOut)
def update_user(
    user_id: str,
    body: UpdateUserRequest,
    request: Request,
    admin: dict = Depends(require_admin),
):
    fleet = get_fleet()
    user = fleet.users.update(user_id, password=body.password, role=body.role)
    changed = [name for name in ("password", "role") if getattr(body, name) is not None]
    fleet.audit.append(
        ACTION_UPDATE_USER,
        user_id=admin["id"],
        username=admin["username"],
        details={"target_user_id": user_id, "target_username": user["username"],
                 "changed": changed},
        **audit_context(request),
    )
    return user


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(user_id: str, request: Request, admin: dict = Depends(require_admin)):
    fleet = get_fleet()
    removed = fleet.users.delete(user_id)
    fleet.audit.append(
        ACTION_DELETE_USER,
        user_id=admin["id"],
        username=admin["username"],
        details={"target_user_id": user_id, "target_username": removed["username"]},
        **audit_context(request),
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
