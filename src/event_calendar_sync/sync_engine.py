"""Sync engine that mirrors locally stored events into a connected calendar.

The engine owns the connection state: it is the only writer, and every
connect, disconnect and successful sync publishes a new snapshot through the
state holder. Events are pushed one way, from the local store to whichever
provider is connected.
"""

import logging
from typing import List

from .connection import ConnectionStateHolder
from .event_store import EventStore
from .models import CalendarInfo, CalendarProvider, ConnectionState, Event
from .providers.base import CalendarProviderClient, CalendarSyncError, PermissionDenied
from .providers.local_calendar import LocalCalendarClient
from .providers.remote_calendar import RemoteCalendarClient
from .utils.datetime import now_utc


logger = logging.getLogger(__name__)


class CalendarSyncEngine:
    """Orchestrates both provider clients over a single connection."""

    def __init__(self, connection: ConnectionStateHolder, local_client: LocalCalendarClient,
                 remote_client: RemoteCalendarClient, event_store: EventStore):
        """Initialize the sync engine.

        Args:
            connection: Holder of the connection state; the engine claims its
                writer handle
            local_client: Device calendar client
            remote_client: REST calendar client
            event_store: Store the engine writes new calendar ids back to
        """
        self.connection = connection
        self._writer = connection.claim_writer()
        self.local_client = local_client
        self.remote_client = remote_client
        self.event_store = event_store
        self.logger = logging.getLogger(__name__)

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    def _client_for(self, provider: CalendarProvider) -> CalendarProviderClient:
        if provider == CalendarProvider.LOCAL:
            return self.local_client
        if provider == CalendarProvider.REMOTE:
            return self.remote_client
        raise ValueError(f"No calendar client for provider {provider.value}")

    # Connection lifecycle

    async def connect_local(self, calendar_id: str, calendar_name: str) -> ConnectionState:
        """Connect the device calendar ``calendar_id``.

        Raises:
            PermissionDenied: Calendar access is not granted
        """
        self.logger.info(f"Connecting to device calendar: {calendar_name}")

        if not await self.local_client.request_access():
            raise PermissionDenied("Calendar access permission denied. Please grant access in Settings.")

        if self.state.provider == CalendarProvider.REMOTE:
            await self.remote_client.sign_out()

        return self._writer.update(
            provider=CalendarProvider.LOCAL,
            selected_calendar_id=calendar_id,
            selected_calendar_name=calendar_name,
            sync_enabled=True,
        )

    async def connect_remote(self, calendar_id: str, calendar_name: str) -> ConnectionState:
        """Authorize with the remote service and connect ``calendar_id``.

        The consent flow always runs, so a revoked token is replaced before
        the connection is published.

        Raises:
            AuthenticationFailed: The authorization flow failed
        """
        self.logger.info(f"Connecting to remote calendar: {calendar_name}")

        await self.remote_client.authenticate()

        return self._writer.update(
            provider=CalendarProvider.REMOTE,
            selected_calendar_id=calendar_id,
            selected_calendar_name=calendar_name,
            sync_enabled=True,
        )

    async def disconnect(self) -> ConnectionState:
        """Forget the connected calendar, signing out of the remote one."""
        current = self.state.provider
        self.logger.info(f"Disconnecting calendar (current provider: {current.value})")

        if current == CalendarProvider.REMOTE:
            await self.remote_client.sign_out()

        return self._writer.reset()

    def set_include_source_links(self, include: bool) -> ConnectionState:
        """Choose whether event links are appended to calendar notes."""
        return self._writer.update(include_source_links=include)

    # Event sync

    async def _push(self, event: Event, state: ConnectionState) -> Event:
        """Update the event's record in the connected calendar, or create and link one."""
        provider = state.provider
        client = self._client_for(provider)
        calendar_id = state.selected_calendar_id
        existing_id = event.calendar_event_id_for(provider)

        if existing_id:
            replacement_id = await client.update_event(
                event, existing_id, calendar_id, state.include_source_links
            )
            if replacement_id and replacement_id != existing_id:
                return self._link(event, provider, replacement_id)
            return event

        calendar_event_id = await client.create_event(event, calendar_id, state.include_source_links)
        return self._link(event, provider, calendar_event_id)

    def _link(self, event: Event, provider: CalendarProvider, calendar_event_id: str) -> Event:
        linked = event.with_calendar_event_id(provider, calendar_event_id)
        self.event_store.update(linked)
        self.logger.debug(f"Linked event {event.id} to {provider.value} event {calendar_event_id}")
        return linked

    def _can_sync(self) -> bool:
        state = self.state
        return state.sync_enabled and state.is_connected

    async def sync_event(self, event: Event) -> Event:
        """Mirror ``event`` into the connected calendar.

        Does nothing while sync is disabled.

        Returns:
            The event, with its calendar id set when one was assigned
        """
        if not self._can_sync():
            self.logger.debug(f"Calendar sync disabled, skipping event {event.id}")
            return event

        synced = await self._push(event, self.state)
        self._writer.update(last_sync_at=now_utc())
        self.logger.info(f"Synced event {event.id}: {event.name}")
        return synced

    async def sync_all_events(self) -> None:
        """Sync every stored event in turn; one failure does not stop the rest."""
        if not self._can_sync():
            self.logger.debug("Calendar sync disabled, skipping full sync")
            return

        events = self.event_store.list()
        failed = 0
        for event in events:
            try:
                await self.sync_event(event)
            except Exception as e:
                failed += 1
                self.logger.error(f"Failed to sync event {event.id} ({event.name}): {e}")

        self.logger.info(f"Synced {len(events) - failed} of {len(events)} events")

    async def update_calendar_event(self, event: Event) -> Event:
        """Push an edited event; creates and links it if it was never synced."""
        if not self._can_sync():
            self.logger.debug(f"No calendar connected, skipping update of event {event.id}")
            return event

        updated = await self._push(event, self.state)
        self._writer.update(last_sync_at=now_utc())
        return updated

    async def delete_calendar_event(self, event: Event) -> None:
        """Delete the record of ``event`` in the connected calendar, if it has one.

        Only the id belonging to the connected provider is considered; a
        record left behind in a previously connected calendar is not touched.
        """
        state = self.state
        if not state.is_connected:
            self.logger.debug(f"No calendar connected, skipping delete of event {event.id}")
            return

        calendar_event_id = event.calendar_event_id_for(state.provider)
        if not calendar_event_id:
            self.logger.debug(f"Event {event.id} has no {state.provider.value} calendar record to delete")
            return

        await self._client_for(state.provider).delete_event(calendar_event_id, state.selected_calendar_id)
        self.logger.info(f"Deleted {state.provider.value} calendar event for {event.id}")

    # Calendars and authorization

    async def list_available_calendars(self, provider: CalendarProvider) -> List[CalendarInfo]:
        """List writable calendars of ``provider``, authorizing first if needed."""
        if provider == CalendarProvider.LOCAL:
            if not await self.local_client.request_access():
                raise PermissionDenied("Calendar access permission denied. Please grant access in Settings.")
            return await self.local_client.list_calendars()

        if provider == CalendarProvider.REMOTE:
            if not self.remote_client.is_authenticated():
                await self.remote_client.authenticate()
            return await self.remote_client.list_calendars()

        raise ValueError(f"Cannot list calendars for provider {provider.value}")

    async def request_calendar_permission(self) -> bool:
        return await self.local_client.request_access()

    async def check_calendar_permission(self) -> bool:
        """Like request_calendar_permission, but failures read as no access."""
        try:
            return await self.local_client.request_access()
        except CalendarSyncError as e:
            self.logger.warning(f"Calendar permission check failed: {e}")
            return False

    def has_requested_local_permission(self) -> bool:
        return self.local_client.has_requested_permission()

    def is_remote_authenticated(self) -> bool:
        return self.remote_client.is_authenticated()

    async def sign_out_remote(self) -> None:
        await self.remote_client.sign_out()
