"""Data models shared across the calendar sync engine.

This module contains the event record the engine mirrors into a calendar,
the provider and permission enums, the connection state, and the transient
calendar descriptions returned by providers.
"""

from dataclasses import dataclass, asdict, replace
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, Optional, Union

from .utils.datetime import ensure_aware, parse_time


class CalendarProvider(Enum):
    """Calendar backends an event can be mirrored into."""
    NONE = "none"
    LOCAL = "local"    # Device calendar store
    REMOTE = "remote"  # REST calendar service behind OAuth2


class PermissionStatus(Enum):
    """Authorization state of the device calendar store."""
    NOT_DETERMINED = "not_determined"
    FULL_ACCESS = "full_access"
    WRITE_ONLY = "write_only"
    DENIED = "denied"


class EventSyncState(Enum):
    """Derived per-event sync state."""
    UNSYNCED = "unsynced"
    SYNCED = "synced"


TimeOfDay = Union[time, datetime]


@dataclass
class Event:
    """A locally stored event and the identity it has in a calendar provider."""

    id: str
    name: str
    event_date: date
    start_time: Optional[TimeOfDay] = None
    end_time: Optional[TimeOfDay] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    url_link: Optional[str] = None
    local_calendar_event_id: Optional[str] = None
    remote_calendar_event_id: Optional[str] = None

    def __post_init__(self):
        # A datetime event_date only contributes its calendar day
        if isinstance(self.event_date, datetime):
            self.event_date = self.event_date.date()

    @property
    def is_all_day(self) -> bool:
        return self.start_time is None

    @property
    def sync_state(self) -> EventSyncState:
        if self.local_calendar_event_id or self.remote_calendar_event_id:
            return EventSyncState.SYNCED
        return EventSyncState.UNSYNCED

    def calendar_event_id_for(self, provider: CalendarProvider) -> Optional[str]:
        """Return the identity this event has within ``provider``."""
        if provider == CalendarProvider.LOCAL:
            return self.local_calendar_event_id
        if provider == CalendarProvider.REMOTE:
            return self.remote_calendar_event_id
        return None

    def with_calendar_event_id(self, provider: CalendarProvider, calendar_event_id: str) -> "Event":
        """Return a copy linked to ``calendar_event_id`` in ``provider``.

        The identity field of the other provider is cleared, so an event is
        never linked to two providers at once.
        """
        if provider == CalendarProvider.LOCAL:
            return replace(self, local_calendar_event_id=calendar_event_id,
                           remote_calendar_event_id=None)
        if provider == CalendarProvider.REMOTE:
            return replace(self, remote_calendar_event_id=calendar_event_id,
                           local_calendar_event_id=None)
        raise ValueError(f"Cannot link an event to provider {provider.value}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data = asdict(self)
        data['event_date'] = self.event_date.isoformat()
        for field_name in ['start_time', 'end_time']:
            value = data.get(field_name)
            if value is not None:
                if isinstance(value, datetime):
                    value = value.time()
                data[field_name] = value.strftime("%H:%M")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Event':
        """Create from dictionary representation."""
        data = dict(data)
        if isinstance(data.get('event_date'), str):
            data['event_date'] = date.fromisoformat(data['event_date'])
        for field_name in ['start_time', 'end_time']:
            if isinstance(data.get(field_name), str):
                data[field_name] = parse_time(data[field_name])
        return cls(**data)


@dataclass(frozen=True)
class ConnectionState:
    """Which provider is connected and where events are written.

    Instances are immutable; the sync engine publishes a new snapshot for
    every change through the connection state holder.
    """

    provider: CalendarProvider = CalendarProvider.NONE
    selected_calendar_id: Optional[str] = None
    selected_calendar_name: Optional[str] = None
    sync_enabled: bool = False
    last_sync_at: Optional[datetime] = None
    include_source_links: bool = True

    @property
    def is_connected(self) -> bool:
        return self.provider != CalendarProvider.NONE and self.selected_calendar_id is not None

    @classmethod
    def disconnected(cls, include_source_links: bool = True) -> 'ConnectionState':
        """All-empty state; the source-link preference survives a disconnect."""
        return cls(include_source_links=include_source_links)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            'provider': self.provider.value,
            'selected_calendar_id': self.selected_calendar_id,
            'selected_calendar_name': self.selected_calendar_name,
            'sync_enabled': self.sync_enabled,
            'last_sync_at': self.last_sync_at.isoformat() if self.last_sync_at else None,
            'include_source_links': self.include_source_links,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectionState':
        """Create from dictionary representation."""
        last_sync_at = data.get('last_sync_at')
        if isinstance(last_sync_at, str):
            last_sync_at = datetime.fromisoformat(last_sync_at)
        return cls(
            provider=CalendarProvider(data.get('provider') or CalendarProvider.NONE.value),
            selected_calendar_id=data.get('selected_calendar_id'),
            selected_calendar_name=data.get('selected_calendar_name'),
            sync_enabled=bool(data.get('sync_enabled', False)),
            last_sync_at=ensure_aware(last_sync_at),
            include_source_links=bool(data.get('include_source_links', True)),
        )


@dataclass
class CalendarInfo:
    """A writable calendar offered by a provider for the calendar picker."""

    id: str
    title: str
    source: str
    color: str
    provider: CalendarProvider
    allows_modification: bool = True


@dataclass
class OAuthCredential:
    """Tokens returned by the remote provider's token endpoint."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None

    @classmethod
    def from_token_response(cls, payload: Dict[str, Any]) -> 'OAuthCredential':
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
            scope=payload.get("scope"),
        )

