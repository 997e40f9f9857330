"""Datetime utilities for turning event dates into calendar time windows.

Events carry a calendar day plus optional times of day. Providers need
concrete, timezone-aware start and end instants, which this module derives
in one place so both providers agree on them.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo

from tzlocal import get_localzone_name


DEFAULT_EVENT_DURATION = timedelta(hours=1)


def now_utc() -> datetime:
    """Return current datetime in UTC timezone.

    Returns:
        Current datetime with timezone=UTC
    """
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.

    Args:
        dt: Datetime to check/convert, or None

    Returns:
        Timezone-aware datetime, or None if input was None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt


def parse_time(value: str) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a time of day."""
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(value.strip(), fmt).time()
        except ValueError:
            continue
    raise ValueError(f"Invalid time of day: {value!r}")


def time_of_day(value: Union[time, datetime]) -> time:
    """Hour and minute of ``value``; seconds are dropped like the calendar UI does."""
    if isinstance(value, datetime):
        value = value.time()
    return time(value.hour, value.minute)


def combine_date_and_time(day: date, moment: Union[time, datetime], tz: tzinfo) -> datetime:
    """Combine the calendar day of ``day`` with the time of day of ``moment``."""
    if isinstance(day, datetime):
        day = day.date()
    return datetime.combine(day, time_of_day(moment), tzinfo=tz)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Return the IANA zone ``name``, or UTC when no name is configured."""
    if not name:
        return timezone.utc
    return ZoneInfo(name)


def machine_timezone_name() -> str:
    """IANA name of the zone this machine is set to, UTC when it has none."""
    return get_localzone_name() or "UTC"


@dataclass(frozen=True)
class EventWindow:
    """Start and end instants of an event as a calendar should show them."""

    start: datetime
    end: datetime
    all_day: bool

    @property
    def start_day(self) -> date:
        return self.start.date()

    @property
    def end_day(self) -> date:
        return self.end.date()


def event_window(event_date: date, start_time: Optional[Union[time, datetime]],
                 end_time: Optional[Union[time, datetime]], tz: tzinfo) -> EventWindow:
    """Compute the window an event occupies.

    Without a start time the event is all-day and ends on the day it starts.
    With a start time but no end time it lasts one hour. An end time at or
    before the start time is read as the next day.
    """
    if isinstance(event_date, datetime):
        event_date = event_date.date()

    if start_time is None:
        start = datetime.combine(event_date, time(0, 0), tzinfo=tz)
        return EventWindow(start=start, end=start, all_day=True)

    start = combine_date_and_time(event_date, start_time, tz)
    if end_time is None:
        end = start + DEFAULT_EVENT_DURATION
    else:
        end = combine_date_and_time(event_date, end_time, tz)
        if end <= start:
            end += timedelta(days=1)

    return EventWindow(start=start, end=end, all_day=False)

