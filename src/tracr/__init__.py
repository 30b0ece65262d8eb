# Tracr - Main Package
#
# Fleet registry and command bus: agents on managed endpoints check in,
# submit inventory and pull commands; the dashboard reads fleet state
# and queues work.

__version__ = "0.1.0"
__author__ = "Tracr Team"
__description__ = "Device fleet registry and command bus"

from .core import Settings, get_settings

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
]
