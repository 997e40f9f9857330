"""Event Calendar Sync - mirror locally stored events into a device or remote calendar."""

__version__ = "0.1.0"
__author__ = "Event Calendar Sync Team"

from .models import (
    CalendarInfo,
    CalendarProvider,
    ConnectionState,
    Event,
    PermissionStatus,
)
from .sync_engine import CalendarSyncEngine

__all__ = [
    "CalendarInfo",
    "CalendarProvider",
    "CalendarSyncEngine",
    "ConnectionState",
    "Event",
    "PermissionStatus",
    "__version__",
]
