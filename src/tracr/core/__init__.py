# Core Module - Shared Utilities
#
# Core module provides shared functionality across all Tracr modules:
# - Configuration
# - SQLite connection helper and timestamp format
# - Error taxonomy
# - Credentials (session tokens, passwords, device tokens)
# - Audit logging

from .audit_log import AuditLogger
from .config import Settings, get_settings, set_settings
from .errors import (
    BadRequest,
    Conflict,
    DeviceNotRegistered,
    Forbidden,
    Internal,
    LastAdminError,
    NotFound,
    TracrError,
    Unauthorized,
)

__all__ = [
    # Configuration
    "Settings",
    "get_settings",
    "set_settings",
    # Audit Logging
    "AuditLogger",
    # Errors
    "BadRequest",
    "Conflict",
    "DeviceNotRegistered",
    "Forbidden",
    "Internal",
    "LastAdminError",
    "NotFound",
    "TracrError",
    "Unauthorized",
]
