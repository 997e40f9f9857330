"""Device calendar client for the macOS Calendar app.

Uses AppleScript (``osascript``) for system integration. Access is gated by
the operating system's automation permission: the first script sent to the
Calendar app triggers the consent prompt, and a refusal surfaces as
AppleScript error -1743.
"""

import asyncio
import logging
import shutil
import subprocess
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config import LocalCalendarSettings
from ..models import CalendarInfo, CalendarProvider, Event, PermissionStatus
from ..utils.datetime import EventWindow, event_window, machine_timezone_name, resolve_timezone
from .base import (
    CalendarNotFound,
    CalendarProviderClient,
    EventCreationFailed,
    PermissionDenied,
    compose_notes,
    validate_event,
)


logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|||"
NOT_AUTHORIZED_MARKERS = ("-1743", "not authorized", "not allowed to send apple events")
MISSING = "missing"


class AppleScriptError(Exception):
    """Exception raised when AppleScript execution fails."""
    pass


class AppleScriptPermissionError(AppleScriptError):
    """The user has not allowed automation of the Calendar app."""
    pass


def quote_applescript(text: str) -> str:
    """Render ``text`` as an AppleScript string expression."""
    escaped = text.replace('\\', '\\\\').replace('"', '\\"')
    lines = escaped.replace('\r\n', '\n').split('\n')
    return ' & linefeed & '.join(f'"{line}"' for line in lines)


def applescript_date(variable: str, value: datetime, all_day: bool = False) -> List[str]:
    """Statements that build ``value`` into the AppleScript date ``variable``.

    Components are set one by one so the result does not depend on the
    machine's date format. Timed values are converted to the machine's local
    zone first, because AppleScript dates are local wall-clock times.
    """
    if not all_day and value.tzinfo is not None:
        value = value.astimezone()
    seconds = value.hour * 3600 + value.minute * 60
    return [
        f'set {variable} to current date',
        f'set day of {variable} to 1',
        f'set year of {variable} to {value.year}',
        f'set month of {variable} to {value.month}',
        f'set day of {variable} to {value.day}',
        f'set time of {variable} to {0 if all_day else seconds}',
    ]


def _hex_color(components: List[str]) -> str:
    try:
        rgb = [max(0, min(255, int(c.strip()) // 257)) for c in components[:3]]
    except ValueError:
        return "#000000"
    if len(rgb) != 3:
        return "#000000"
    return "#{:02X}{:02X}{:02X}".format(*rgb)


class AppleScriptInterface:
    """Interface to the Calendar app via AppleScript."""

    def __init__(self, application_name: str = "Calendar", timeout: int = 60):
        """Initialize AppleScript interface.

        Args:
            application_name: Scriptable calendar application
            timeout: Seconds before a script is abandoned
        """
        self.application_name = application_name
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def run_script(self, script: str) -> str:
        """Execute AppleScript and return result.

        Args:
            script: AppleScript code to execute

        Returns:
            Script output as string

        Raises:
            AppleScriptPermissionError: Automation of the app is not allowed
            AppleScriptError: If script execution fails
        """
        try:
            result = subprocess.run(
                ["osascript", "-e", script],
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            raise AppleScriptError("AppleScript timed out")
        except OSError as e:
            raise AppleScriptError(f"Failed to execute AppleScript: {e}")

        if result.returncode != 0:
            error_msg = result.stderr.strip() if result.stderr else "Unknown AppleScript error"
            if any(marker in error_msg.lower() for marker in NOT_AUTHORIZED_MARKERS):
                raise AppleScriptPermissionError(error_msg)
            raise AppleScriptError(f"AppleScript failed: {error_msg}")

        return result.stdout.strip()

    def _tell(self, *statements: str) -> str:
        return '\n'.join([f'tell application "{self.application_name}"', *statements, 'end tell'])

    def probe_access(self) -> int:
        """Touch the calendar store, prompting for consent the first time.

        Returns:
            Number of calendars visible
        """
        result = self.run_script(self._tell('return count of calendars'))
        return int(result) if result.isdigit() else 0

    def get_calendars(self) -> List[Dict[str, Any]]:
        """Get all calendars with identifier, name, writability and color."""
        script = self._tell(
            'set output to ""',
            'repeat with cal in calendars',
            '    set c to color of cal',
            f'    set output to output & (calendarIdentifier of cal) & "{FIELD_SEPARATOR}" & (name of cal) & '
            f'"{FIELD_SEPARATOR}" & (writable of cal) & "{FIELD_SEPARATOR}" & '
            '(item 1 of c) & "," & (item 2 of c) & "," & (item 3 of c) & linefeed',
            'end repeat',
            'return output',
        )
        result = self.run_script(script)

        calendars = []
        for line in result.splitlines():
            parts = line.split(FIELD_SEPARATOR)
            if len(parts) < 3 or not parts[0].strip():
                continue
            calendars.append({
                "id": parts[0].strip(),
                "name": parts[1].strip(),
                "writable": parts[2].strip().lower() == "true",
                "color": _hex_color(parts[3].split(",")) if len(parts) > 3 else "#000000",
            })
        return calendars

    def calendar_exists(self, calendar_id: str) -> bool:
        script = self._tell(
            f'return (count of (calendars whose calendarIdentifier is {quote_applescript(calendar_id)})) > 0'
        )
        return self.run_script(script).strip().lower() == "true"

    def _event_properties(self, title: str, window: EventWindow, location: Optional[str],
                          notes: Optional[str], target: str) -> List[str]:
        statements = []
        statements.extend(applescript_date("startDate", window.start, window.all_day))
        statements.extend(applescript_date("endDate", window.end, window.all_day))
        statements.append(f'set summary of {target} to {quote_applescript(title)}')
        statements.append(f'set start date of {target} to startDate')
        statements.append(f'set end date of {target} to endDate')
        statements.append(f'set allday event of {target} to {str(window.all_day).lower()}')
        if location:
            statements.append(f'set location of {target} to {quote_applescript(location)}')
        if notes:
            statements.append(f'set description of {target} to {quote_applescript(notes)}')
        return statements

    def create_event(self, calendar_id: str, title: str, window: EventWindow,
                     location: Optional[str] = None, notes: Optional[str] = None) -> str:
        """Create an event and return its uid.

        Returns ``missing`` when the calendar does not exist.
        """
        statements = [
            f'set matches to (calendars whose calendarIdentifier is {quote_applescript(calendar_id)})',
            f'if (count of matches) is 0 then return "{MISSING}"',
            'set targetCalendar to item 1 of matches',
            'set newEvent to make new event at end of events of targetCalendar '
            f'with properties {{summary:{quote_applescript(title)}}}',
        ]
        statements.extend(self._event_properties(title, window, location, notes, "newEvent"))
        statements.append('return uid of newEvent')
        return self.run_script(self._tell(*statements)).strip()

    def update_event(self, event_uid: str, title: str, window: EventWindow,
                     location: Optional[str] = None, notes: Optional[str] = None) -> bool:
        """Update the event ``event_uid`` in whichever calendar holds it.

        Returns:
            False if no calendar holds an event with that uid
        """
        statements = [
            'set targetEvent to missing value',
            'repeat with cal in calendars',
            f'    set matches to (events of cal whose uid is {quote_applescript(event_uid)})',
            '    if (count of matches) > 0 then',
            '        set targetEvent to item 1 of matches',
            '        exit repeat',
            '    end if',
            'end repeat',
            f'if targetEvent is missing value then return "{MISSING}"',
        ]
        statements.extend(self._event_properties(title, window, location, notes, "targetEvent"))
        statements.append('return "updated"')
        return self.run_script(self._tell(*statements)).strip() != MISSING

    def delete_event(self, event_uid: str) -> bool:
        """Delete the event ``event_uid``.

        Returns:
            False if no calendar holds an event with that uid
        """
        script = self._tell(
            'repeat with cal in calendars',
            f'    set matches to (events of cal whose uid is {quote_applescript(event_uid)})',
            '    if (count of matches) > 0 then',
            '        delete item 1 of matches',
            '        return "deleted"',
            '    end if',
            'end repeat',
            f'return "{MISSING}"',
        )
        return self.run_script(script).strip() != MISSING


class LocalCalendarClient(CalendarProviderClient):
    """Calendar provider backed by the device calendar store."""

    provider = CalendarProvider.LOCAL

    def __init__(self, settings: Optional[LocalCalendarSettings] = None,
                 apple_script: Optional[AppleScriptInterface] = None):
        """Initialize the device calendar client.

        Args:
            settings: Local calendar settings
            apple_script: AppleScript bridge, mainly for tests
        """
        super().__init__()
        self.settings = settings or LocalCalendarSettings()
        self.apple_script = apple_script or AppleScriptInterface(
            application_name=self.settings.application_name,
            timeout=self.settings.script_timeout_seconds,
        )
        self.permission_status = PermissionStatus.NOT_DETERMINED

    def is_available(self) -> bool:
        """Device calendars are only scriptable on macOS, through osascript."""
        return sys.platform == "darwin" and shutil.which("osascript") is not None

    def has_requested_permission(self) -> bool:
        return self.permission_status != PermissionStatus.NOT_DETERMINED

    def is_authenticated(self) -> bool:
        return self.permission_status in (PermissionStatus.FULL_ACCESS, PermissionStatus.WRITE_ONLY)

    async def request_access(self) -> bool:
        """Ask for access to the calendar store.

        A refused request is not repeated: the operating system would not show
        the prompt again, so the user has to change it in System Settings.

        Returns:
            True if access is granted

        Raises:
            PermissionDenied: The request itself could not be made
        """
        if self.is_authenticated():
            return True

        if self.permission_status == PermissionStatus.DENIED:
            self.logger.info("Calendar access was denied before; grant it in System Settings")
            return False

        try:
            count = await asyncio.to_thread(self.apple_script.probe_access)
        except AppleScriptPermissionError as e:
            self.permission_status = PermissionStatus.DENIED
            self.logger.warning(f"Calendar access denied: {e}")
            return False
        except AppleScriptError as e:
            self.logger.error(f"Calendar access request failed: {e}")
            raise PermissionDenied(f"Cannot access the device calendar: {e}") from e

        self.permission_status = PermissionStatus.FULL_ACCESS
        self.logger.info(f"Calendar access granted - found {count} calendars")
        return True

    async def authenticate(self) -> bool:
        return await self.request_access()

    async def open_system_settings(self) -> bool:
        """Open the privacy pane where calendar access can be granted."""
        try:
            await asyncio.to_thread(
                subprocess.run, ["open", self.settings.privacy_settings_url],
                capture_output=True, timeout=10,
            )
            return True
        except (OSError, subprocess.SubprocessError) as e:
            self.logger.warning(f"Failed to open System Settings: {e}")
            return False

    async def _require_access(self):
        if not await self.request_access():
            raise PermissionDenied("Calendar access permission denied. Please grant access in Settings.")

    async def _run(self, func, *args, **kwargs):
        """Run an AppleScript call off the event loop, mapping permission loss."""
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except AppleScriptPermissionError as e:
            self.permission_status = PermissionStatus.DENIED
            raise PermissionDenied(str(e)) from e

    def _window(self, event: Event) -> EventWindow:
        return event_window(event.event_date, event.start_time, event.end_time,
                            resolve_timezone(self.settings.time_zone or machine_timezone_name()))

    async def list_calendars(self) -> List[CalendarInfo]:
        """List writable calendars."""
        await self._require_access()

        try:
            calendars = await self._run(self.apple_script.get_calendars)
        except AppleScriptError as e:
            self.logger.error(f"Failed to fetch calendars: {e}")
            raise EventCreationFailed(f"Failed to list device calendars: {e}") from e

        result = [
            CalendarInfo(
                id=cal["id"],
                title=cal["name"],
                source=self.settings.application_name,
                color=cal["color"],
                provider=CalendarProvider.LOCAL,
                allows_modification=cal["writable"],
            )
            for cal in calendars if cal["writable"]
        ]
        self.logger.info(f"Found {len(result)} writable calendars")
        return result

    async def create_event(self, event: Event, calendar_id: str, include_source_links: bool) -> str:
        """Create ``event`` in the device calendar ``calendar_id``."""
        validate_event(event)
        await self._require_access()

        try:
            event_uid = await self._run(
                self.apple_script.create_event,
                calendar_id,
                event.name,
                self._window(event),
                location=event.location,
                notes=compose_notes(event, include_source_links),
            )
        except AppleScriptError as e:
            self.logger.error(f"Failed to create event {event.id}: {e}")
            raise EventCreationFailed(f"Failed to create calendar event: {e}") from e

        if event_uid == MISSING:
            raise CalendarNotFound(f"Calendar {calendar_id} not found")
        if not event_uid:
            raise EventCreationFailed("Calendar did not return an id for the new event")

        self.log_sync_operation("create", f"Created event {event_uid}: {event.name}")
        return event_uid

    async def update_event(self, event: Event, remote_event_id: str, calendar_id: str,
                           include_source_links: bool) -> Optional[str]:
        """Update the device record, recreating it if it was deleted out-of-band."""
        validate_event(event)
        await self._require_access()

        try:
            found = await self._run(
                self.apple_script.update_event,
                remote_event_id,
                event.name,
                self._window(event),
                location=event.location,
                notes=compose_notes(event, include_source_links),
            )
        except AppleScriptError as e:
            self.logger.error(f"Failed to update event {remote_event_id}: {e}")
            raise EventCreationFailed(f"Failed to update calendar event: {e}") from e

        if not found:
            self.logger.warning(f"Event {remote_event_id} no longer exists, creating a new one")
            return await self.create_event(event, calendar_id, include_source_links)

        self.log_sync_operation("update", f"Updated event {remote_event_id}: {event.name}")
        return None

    async def delete_event(self, remote_event_id: str, calendar_id: str) -> None:
        """Delete the device record; an already-missing record is not an error."""
        await self._require_access()

        try:
            deleted = await self._run(self.apple_script.delete_event, remote_event_id)
        except AppleScriptError as e:
            self.logger.error(f"Failed to delete event {remote_event_id}: {e}")
            raise EventCreationFailed(f"Failed to delete calendar event: {e}") from e

        if deleted:
            self.log_sync_operation("delete", f"Deleted event {remote_event_id}")
        else:
            self.logger.info(f"Event {remote_event_id} was already gone")

    async def sign_out(self) -> None:
        # Operating system permission cannot be revoked by the app
        return None
