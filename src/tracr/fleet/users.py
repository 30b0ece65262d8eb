# Dashboard User Store
# Accounts for the web dashboard (viewer / admin).
#
# Invariant: at least one admin exists at all times. Delete and demote
# check the admin count inside the same BEGIN IMMEDIATE transaction as
# the write, so two concurrent requests cannot both remove "another"
# admin and leave none.

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..core.auth import PBKDF2_ITERATIONS, ROLE_ADMIN, ROLES, hash_password, verify_password
from ..core.db import format_ts, utc_now
from ..core.errors import BadRequest, Conflict, LastAdminError, NotFound
from ..core.pagination import Page, normalize, offset_for
from .database import FleetDatabase

logger = logging.getLogger(__name__)

USERNAME_MIN = 3
USERNAME_MAX = 100
PASSWORD_MIN = 8

_PUBLIC_COLUMNS = "id, username, role, created_at, updated_at"


def _validate_role(role: str) -> str:
    if role not in ROLES:
        raise BadRequest(f"Invalid role: {role}")
    return role


def _validate_password(password: str) -> str:
    if password is None or len(password) < PASSWORD_MIN:
        raise BadRequest(f"Password must be at least {PASSWORD_MIN} characters")
    return password


class UserStore:
    """Dashboard users on top of FleetDatabase.

    Args:
        db: Shared fleet database.
        password_iterations: PBKDF2 work factor for new hashes.
    """

    def __init__(
        self,
        db: FleetDatabase,
        password_iterations: int = PBKDF2_ITERATIONS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.password_iterations = password_iterations
        self._clock = clock
        self._dummy_hash: Optional[str] = None

    def create(self, username: str, password: str, role: str = "viewer") -> Dict[str, Any]:
        username = (username or "").strip()
        if not USERNAME_MIN <= len(username) <= USERNAME_MAX:
            raise BadRequest(
                f"Username must be {USERNAME_MIN}-{USERNAME_MAX} characters"
            )
        _validate_password(password)
        _validate_role(role)

        user_id = str(uuid.uuid4())
        now = format_ts(self._clock())
        password_hash = hash_password(password, self.password_iterations)
        try:
            with self.db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO users (id, username, password_hash, role, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, username, password_hash, role, now, now),
                )
        except sqlite3.IntegrityError:
            raise Conflict("Username already exists")
        logger.info("User created: %s (%s)", username, role)
        return self.get(user_id)

    def authenticate(self, username: str, password: str) -> Optional[Dict[str, Any]]:
        """Return the user on a password match, else None."""
        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT {_PUBLIC_COLUMNS}, password_hash FROM users WHERE username = ?",
                (username,),
            ).fetchone()
        if row is None:
            # Spend the same hashing time for unknown usernames.
            verify_password(password or "", self._get_dummy_hash())
            return None
        if not verify_password(password or "", row["password_hash"]):
            return None
        user = dict(row)
        user.pop("password_hash")
        return user

    def get(self, user_id: str) -> Dict[str, Any]:
        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT {_PUBLIC_COLUMNS} FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        if row is None:
            raise NotFound("User not found")
        return dict(row)

    def find(self, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.get(user_id)
        except NotFound:
            return None

    def list(self, page: int = 1, limit: int = 50) -> Page:
        page, limit = normalize(page, limit)
        with self.db.connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT {_PUBLIC_COLUMNS} FROM users
                ORDER BY created_at, username
                LIMIT ? OFFSET ?
                """,
                (limit, offset_for(page, limit)),
            ).fetchall()
        return Page([dict(r) for r in rows], total, page, limit)

    def count(self) -> int:
        with self.db.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    def update(
        self,
        user_id: str,
        password: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Dict[str, Any]:
        if password is not None:
            _validate_password(password)
        if role is not None:
            _validate_role(role)
        password_hash = (
            hash_password(password, self.password_iterations) if password is not None else None
        )
        now = format_ts(self._clock())

        with self.db.transaction() as conn:
            row = conn.execute("SELECT role FROM users WHERE id = ?", (user_id,)).fetchone()
            if row is None:
                raise NotFound("User not found")
            if role is not None and role != ROLE_ADMIN and row["role"] == ROLE_ADMIN:
                if self._admin_count(conn) <= 1:
                    raise LastAdminError("Cannot demote the last admin user")
            conn.execute(
                """
                UPDATE users SET
                    password_hash = COALESCE(?, password_hash),
                    role = COALESCE(?, role),
                    updated_at = ?
                WHERE id = ?
                """,
                (password_hash, role, now, user_id),
            )
        return self.get(user_id)

    def delete(self, user_id: str) -> Dict[str, Any]:
        """Delete a user. Returns the removed user."""
        with self.db.transaction() as conn:
            row = conn.execute(
                f"SELECT {_PUBLIC_COLUMNS} FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            if row is None:
                raise NotFound("User not found")
            if row["role"] == ROLE_ADMIN and self._admin_count(conn) <= 1:
                raise LastAdminError("Cannot delete the last admin user")
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        logger.info("User deleted: %s", row["username"])
        return dict(row)

    def ensure_admin(self, username: str, password: str) -> Optional[Dict[str, Any]]:
        """Seed an admin account when no users exist yet."""
        if self.count() > 0:
            return None
        try:
            return self.create(username, password, role=ROLE_ADMIN)
        except Conflict:
            return None

    @staticmethod
    def _admin_count(conn) -> int:
        return conn.execute(
            "SELECT COUNT(*) FROM users WHERE role = ?", (ROLE_ADMIN,)
        ).fetchone()[0]

    def _get_dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = hash_password(uuid.uuid4().hex, self.password_iterations)
        return self._dummy_hash
