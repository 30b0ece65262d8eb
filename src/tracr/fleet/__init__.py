# Fleet Module
# Device registry, inventory snapshots, software catalog, command queue
# and dashboard users, all persisted in one SQLite database.

from .catalog import SoftwareCatalog
from .commands import CommandExpirySweeper, CommandQueue, CommandStatus, CommandType
from .database import FleetDatabase
from .devices import DeviceRegistry, compute_is_online
from .manager import FleetManager, get_fleet, set_fleet
from .snapshots import SnapshotStore
from .users import UserStore

__all__ = [
    "CommandExpirySweeper",
    "CommandQueue",
    "CommandStatus",
    "CommandType",
    "DeviceRegistry",
    "FleetDatabase",
    "FleetManager",
    "SnapshotStore",
    "SoftwareCatalog",
    "UserStore",
    "compute_is_online",
    "get_fleet",
    "set_fleet",
]
