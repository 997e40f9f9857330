"""Local event store consumed by the sync engine.

The engine only needs to read events and to persist the calendar identity
it assigns to an event. ``YamlEventStore`` is a file-backed implementation
used by the command line and by tests.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import yaml

from .models import Event


logger = logging.getLogger(__name__)


class EventStoreError(Exception):
    """Raised when the event store cannot read or write an event."""
    pass


class EventStore(Protocol):
    """Read/write access to locally stored events."""

    def get(self, event_id: str) -> Optional[Event]:
        ...

    def update(self, event: Event) -> None:
        ...

    def list(self) -> List[Event]:
        ...


class YamlEventStore:
    """Events persisted as a YAML list, in insertion order."""

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: YAML file holding the events
        """
        self.path = path
        self.logger = logging.getLogger(__name__)
        self._events: Dict[str, Event] = {}
        self._load()

    def _load(self):
        if not self.path.exists():
            return

        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or []
        except yaml.YAMLError as e:
            raise EventStoreError(f"Failed to read events from {self.path}: {e}") from e

        for item in data:
            try:
                event = Event.from_dict(item)
            except (TypeError, ValueError) as e:
                self.logger.warning(f"Skipping malformed event entry {item!r}: {e}")
                continue
            self._events[event.id] = event

        self.logger.debug(f"Loaded {len(self._events)} events from {self.path}")

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_suffix('.tmp')
        with open(temp_file, 'w') as f:
            yaml.safe_dump([event.to_dict() for event in self._events.values()], f,
                           default_flow_style=False, sort_keys=False)
        temp_file.replace(self.path)

    def get(self, event_id: str) -> Optional[Event]:
        return self._events.get(event_id)

    def list(self) -> List[Event]:
        return list(self._events.values())

    def add(self, event: Event) -> Event:
        if event.id in self._events:
            raise EventStoreError(f"Event {event.id} already exists")
        self._events[event.id] = event
        self._save()
        return event

    def update(self, event: Event) -> None:
        if event.id not in self._events:
            raise EventStoreError(f"Event {event.id} not found")
        self._events[event.id] = event
        self._save()

    def delete(self, event_id: str) -> bool:
        if self._events.pop(event_id, None) is None:
            return False
        self._save()
        return True
