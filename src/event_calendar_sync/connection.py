"""Connection state holder and its durable storage.

The connection state is shared by the sync engine, which is its only
writer, and any number of readers (UI code, the CLI). Readers get immutable
snapshots and may subscribe to changes. Writing requires the writer handle,
which can be claimed exactly once.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional

import yaml

from .models import ConnectionState


logger = logging.getLogger(__name__)

Listener = Callable[[ConnectionState], None]


class ConnectionStore:
    """YAML file persistence for the connection state."""

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: File the state is written to
        """
        self.path = path
        self.logger = logging.getLogger(__name__)

    def load(self) -> ConnectionState:
        """Load the persisted state, or the disconnected state if none exists."""
        if not self.path.exists():
            self.logger.debug("No connection state file found, starting disconnected")
            return ConnectionState.disconnected()

        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
            state = ConnectionState.from_dict(data)
            self.logger.debug(f"Loaded connection state from {self.path}")
            return state
        except (yaml.YAMLError, ValueError, TypeError) as e:
            self.logger.error(f"Failed to load connection state: {e}")
            return ConnectionState.disconnected()

    def save(self, state: ConnectionState):
        """Write ``state`` atomically."""
        data = state.to_dict()
        data['_metadata'] = {
            'version': '1.0',
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_suffix('.tmp')
        with open(temp_file, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
        temp_file.replace(self.path)

        self.logger.debug(f"Saved connection state to {self.path}")


class ConnectionStateHolder:
    """Single access point for reading and observing the connection state."""

    def __init__(self, store: Optional[ConnectionStore] = None,
                 initial: Optional[ConnectionState] = None):
        self.store = store
        if initial is None:
            initial = store.load() if store is not None else ConnectionState.disconnected()
        self._state = initial
        self._listeners: List[Listener] = []
        self._writer: Optional[ConnectionStateWriter] = None

    @property
    def state(self) -> ConnectionState:
        """Current snapshot."""
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with every new snapshot.

        Returns:
            A function that removes the subscription
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def claim_writer(self) -> 'ConnectionStateWriter':
        """Hand out the writer handle. Only one writer may ever exist."""
        if self._writer is not None:
            raise RuntimeError("Connection state already has a writer")
        self._writer = ConnectionStateWriter(self)
        return self._writer

    def _publish(self, state: ConnectionState):
        self._state = state
        if self.store is not None:
            self.store.save(state)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.warning(f"Connection state listener failed: {e}")


class ConnectionStateWriter:
    """Mutation handle owned by the sync engine."""

    def __init__(self, holder: ConnectionStateHolder):
        self._holder = holder

    @property
    def state(self) -> ConnectionState:
        return self._holder.state

    def update(self, **changes: Any) -> ConnectionState:
        """Publish a copy of the current state with ``changes`` applied."""
        state = replace(self._holder.state, **changes)
        self._holder._publish(state)
        return state

    def reset(self) -> ConnectionState:
        """Publish the disconnected state."""
        state = ConnectionState.disconnected(
            include_source_links=self._holder.state.include_source_links
        )
        self._holder._publish(state)
        return state
