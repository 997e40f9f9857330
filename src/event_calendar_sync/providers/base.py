"""Abstract base class for calendar provider clients.

This module defines the interface that both provider clients implement, the
error taxonomy they raise, and helpers shared by their payload builders.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional

from ..models import CalendarInfo, CalendarProvider, Event


logger = logging.getLogger(__name__)


class CalendarSyncError(Exception):
    """Base exception for calendar sync operations."""
    pass


class PermissionDenied(CalendarSyncError):
    """No access to the device calendar store."""
    pass


class AuthenticationFailed(CalendarSyncError):
    """Remote authorization is missing, invalid or was aborted."""
    pass


class CalendarNotFound(CalendarSyncError):
    """The target calendar id no longer resolves."""
    pass


class EventCreationFailed(CalendarSyncError):
    """The provider rejected a create, update or delete."""
    pass


class InvalidEvent(CalendarSyncError):
    """The event is missing data every provider needs."""
    pass


class NetworkError(CalendarSyncError):
    """Transport-level failure talking to the provider."""

    def __init__(self, cause: BaseException, message: Optional[str] = None):
        self.cause = cause
        super().__init__(message or f"Network error: {cause}")
        self.__cause__ = cause


EVENT_LINK_PREFIX = "Event Link: "


def compose_notes(event: Event, include_source_links: bool) -> Optional[str]:
    """Build the notes/description body written into the provider event.

    The event's own notes come first, followed by a blank line and the
    source link when links are enabled and the event has one.
    """
    text = ""
    if event.notes:
        text += event.notes + "\n\n"
    if include_source_links and event.url_link:
        text += f"{EVENT_LINK_PREFIX}{event.url_link}"
    return text or None


def validate_event(event: Event):
    """Raise InvalidEvent when ``event`` cannot be written to a calendar."""
    if not event.name or not event.name.strip():
        raise InvalidEvent(f"Event {event.id} has no name")
    if event.event_date is None:
        raise InvalidEvent(f"Event {event.id} has no date")


class CalendarProviderClient(ABC):
    """Base class for both calendar provider clients.

    Each client wraps one backend and translates local events into that
    backend's records. Failures are raised as CalendarSyncError subclasses.
    """

    provider: CalendarProvider = CalendarProvider.NONE

    def __init__(self):
        self.logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    @property
    def provider_name(self) -> str:
        """Get human-readable provider name."""
        return self.provider.value.replace('_', ' ').title()

    @abstractmethod
    async def authenticate(self) -> bool:
        """Obtain or renew authorization.

        Returns:
            True if the client may now read and write calendars

        Raises:
            PermissionDenied: Device calendar access could not be requested
            AuthenticationFailed: The OAuth flow failed or was aborted
        """
        pass

    @abstractmethod
    def is_authenticated(self) -> bool:
        """Whether authorization is currently held, without any round-trip."""
        pass

    @abstractmethod
    async def list_calendars(self) -> List[CalendarInfo]:
        """List calendars the active account can write to."""
        pass

    @abstractmethod
    async def create_event(self, event: Event, calendar_id: str, include_source_links: bool) -> str:
        """Create ``event`` in ``calendar_id``.

        Returns:
            The provider-assigned id of the new record
        """
        pass

    @abstractmethod
    async def update_event(self, event: Event, remote_event_id: str, calendar_id: str,
                           include_source_links: bool) -> Optional[str]:
        """Overwrite the record ``remote_event_id`` with ``event``.

        Returns:
            None when updated in place, or the id of a replacement record
            when the record no longer existed and was recreated
        """
        pass

    @abstractmethod
    async def delete_event(self, remote_event_id: str, calendar_id: str) -> None:
        """Delete the record ``remote_event_id``."""
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        """Drop whatever authorization the client holds."""
        pass

    def log_sync_operation(self, operation: str, details: str = ""):
        """Log a sync operation.

        Args:
            operation: Type of operation (create, update, delete, etc.)
            details: Additional details about the operation
        """
        self.logger.info(f"{self.provider_name} calendar - {operation}: {details}")


class RateLimiter:
    """Token bucket limiting API calls per minute."""

    def __init__(self, requests_per_minute: int = 60):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
        """
        self.rate = requests_per_minute
        self.tokens = float(requests_per_minute)
        self.updated_at = time.monotonic()
        self.lock = asyncio.Lock()

    async def acquire(self):
        """Wait if necessary to respect rate limits."""
        async with self.lock:
            self._refill()
            while self.tokens < 1:
                await asyncio.sleep(0.1)
                self._refill()
            self.tokens -= 1

    def _refill(self):
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.updated_at
        self.tokens = min(self.rate, self.tokens + elapsed * (self.rate / 60.0))
        self.updated_at = now
