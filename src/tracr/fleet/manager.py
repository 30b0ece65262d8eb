# Fleet Manager
# Wires the stores, the audit log and the expiry sweeper around one
# database file, and owns their background threads.

import logging
import secrets
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional, Union

from ..core.audit_log import AuditLogger
from ..core.config import Settings, get_settings
from ..core.db import utc_now
from .catalog import SoftwareCatalog
from .commands import CommandExpirySweeper, CommandQueue
from .database import FleetDatabase
from .devices import DeviceRegistry
from .snapshots import SnapshotStore
from .users import UserStore

logger = logging.getLogger(__name__)


class FleetManager:
    """All fleet state behind one object (one per process)."""

    def __init__(
        self,
        settings: Settings,
        db_path: Optional[Union[str, Path]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.db = FleetDatabase(db_path or settings.database_path)
        self.devices = DeviceRegistry(
            self.db,
            secret_key=settings.secret_key,
            online_threshold=timedelta(minutes=settings.online_threshold_minutes),
            clock=clock,
        )
        self.snapshots = SnapshotStore(self.db, clock=clock)
        self.commands = CommandQueue(
            self.db,
            ttl=timedelta(minutes=settings.command_ttl_minutes),
            clock=clock,
        )
        self.catalog = SoftwareCatalog(self.db)
        self.users = UserStore(
            self.db,
            password_iterations=settings.password_hash_iterations,
            clock=clock,
        )
        self.audit = AuditLogger(self.db.db_path, clock=clock)
        self.sweeper = CommandExpirySweeper(
            self.commands, interval=settings.sweep_interval_seconds
        )

    def start(self) -> None:
        self.audit.start()
        self.sweeper.start()

    def stop(self) -> None:
        self.sweeper.stop()
        self.audit.flush()
        self.audit.stop()

    def bootstrap_admin(self) -> None:
        """Create the initial admin account on an empty user table."""
        password = self.settings.admin_password
        generated = password is None
        if generated:
            password = secrets.token_urlsafe(16)
        user = self.users.ensure_admin(self.settings.admin_username, password)
        if user is None:
            return
        if generated:
            logger.warning(
                "Created initial admin %r with generated password %s; change it now",
                user["username"], password,
            )
        else:
            logger.info("Created initial admin %r", user["username"])


_fleet: Optional[FleetManager] = None


def get_fleet() -> FleetManager:
    """Get or create the FleetManager singleton."""
    global _fleet
    if _fleet is None:
        _fleet = FleetManager(get_settings())
    return _fleet


def set_fleet(fleet: Optional[FleetManager]):
    """Allow DI for testing."""
    global _fleet
    _fleet = fleet
