"""Calendar provider clients.

Two backends implement ``CalendarProviderClient``: the device calendar store
(``LocalCalendarClient``) and a REST calendar service authorized with OAuth2
(``RemoteCalendarClient``).
"""

from .base import (
    AuthenticationFailed,
    CalendarNotFound,
    CalendarProviderClient,
    CalendarSyncError,
    EventCreationFailed,
    InvalidEvent,
    NetworkError,
    PermissionDenied,
)
from .local_calendar import LocalCalendarClient
from .remote_calendar import RemoteCalendarClient

__all__ = [
    "AuthenticationFailed",
    "CalendarNotFound",
    "CalendarProviderClient",
    "CalendarSyncError",
    "EventCreationFailed",
    "InvalidEvent",
    "LocalCalendarClient",
    "NetworkError",
    "PermissionDenied",
    "RemoteCalendarClient",
]
