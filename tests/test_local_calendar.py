"""Test the device calendar client and its AppleScript bridge."""

import subprocess
from datetime import date, datetime, time, timedelta, timezone
from unittest.mock import Mock, patch

import pytest

from event_calendar_sync.config import LocalCalendarSettings
from event_calendar_sync.models import CalendarProvider, PermissionStatus
from event_calendar_sync.providers.base import (
    CalendarNotFound,
    EventCreationFailed,
    InvalidEvent,
    PermissionDenied,
)
from event_calendar_sync.providers.local_calendar import (
    AppleScriptError,
    AppleScriptInterface,
    AppleScriptPermissionError,
    LocalCalendarClient,
    applescript_date,
    quote_applescript,
)
from event_calendar_sync.utils.datetime import EventWindow


@pytest.fixture
def mock_apple_script():
    """Create mock AppleScript interface."""
    mock = Mock(spec=AppleScriptInterface)
    mock.probe_access.return_value = 3
    mock.get_calendars.return_value = [
        {"id": "cal-home", "name": "Home", "writable": True, "color": "#FF0000"},
        {"id": "cal-holidays", "name": "Holidays", "writable": False, "color": "#00FF00"},
        {"id": "cal-work", "name": "Work", "writable": True, "color": "#0000FF"},
    ]
    mock.create_event.return_value = "uid-new"
    mock.update_event.return_value = True
    mock.delete_event.return_value = True
    return mock


@pytest.fixture
def client(mock_apple_script):
    return LocalCalendarClient(LocalCalendarSettings(time_zone="UTC"), apple_script=mock_apple_script)


def completed(returncode=0, stdout="", stderr=""):
    result = Mock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


class TestAppleScriptInterface:
    """Test AppleScript interface functionality."""

    @patch('subprocess.run')
    def test_run_script_success(self, mock_subprocess):
        mock_subprocess.return_value = completed(stdout="output\n")

        result = AppleScriptInterface().run_script('tell application "Calendar" to get name')

        assert result == "output"
        args = mock_subprocess.call_args[0][0]
        assert args[:2] == ["osascript", "-e"]

    @patch('subprocess.run')
    def test_run_script_failure(self, mock_subprocess):
        mock_subprocess.return_value = completed(returncode=1, stderr="Script error")

        with pytest.raises(AppleScriptError):
            AppleScriptInterface().run_script('invalid script')

    @patch('subprocess.run')
    def test_run_script_not_authorized(self, mock_subprocess):
        mock_subprocess.return_value = completed(
            returncode=1,
            stderr="execution error: Not authorized to send Apple events to Calendar. (-1743)",
        )

        with pytest.raises(AppleScriptPermissionError):
            AppleScriptInterface().run_script('tell application "Calendar" to count calendars')

    @patch('subprocess.run')
    def test_run_script_timeout(self, mock_subprocess):
        mock_subprocess.side_effect = subprocess.TimeoutExpired("osascript", 60)

        with pytest.raises(AppleScriptError):
            AppleScriptInterface().run_script('delay 100')

    @patch('subprocess.run')
    def test_get_calendars_parses_output(self, mock_subprocess):
        mock_subprocess.return_value = completed(stdout=(
            "ABC-1|||Home|||true|||65535,0,0\n"
            "ABC-2|||Birthdays|||false|||0,32896,65535\n"
        ))

        calendars = AppleScriptInterface().get_calendars()

        assert calendars == [
            {"id": "ABC-1", "name": "Home", "writable": True, "color": "#FF0000"},
            {"id": "ABC-2", "name": "Birthdays", "writable": False, "color": "#0080FF"},
        ]

    @patch('subprocess.run')
    def test_create_event_script(self, mock_subprocess):
        mock_subprocess.return_value = completed(stdout="UID-9")
        window = EventWindow(
            start=datetime(2025, 3, 14, 0, 0, tzinfo=timezone.utc),
            end=datetime(2025, 3, 14, 0, 0, tzinfo=timezone.utc),
            all_day=True,
        )

        uid = AppleScriptInterface().create_event("cal-1", 'Say "hi"', window, notes="a\nb")

        script = mock_subprocess.call_args[0][0][2]
        assert uid == "UID-9"
        assert 'calendarIdentifier is "cal-1"' in script
        assert 'summary:"Say \\"hi\\""' in script
        assert 'set allday event of newEvent to true' in script
        assert '"a" & linefeed & "b"' in script


class TestScriptHelpers:

    def test_quote_escapes_quotes_and_backslashes(self):
        assert quote_applescript('a "b" \\c') == '"a \\"b\\" \\\\c"'

    def test_quote_multiline(self):
        assert quote_applescript("one\ntwo") == '"one" & linefeed & "two"'

    def test_all_day_date_has_midnight(self):
        lines = applescript_date("d", datetime(2025, 3, 14, 15, 0), all_day=True)

        assert "set year of d to 2025" in lines
        assert "set month of d to 3" in lines
        assert "set day of d to 14" in lines
        assert lines[-1] == "set time of d to 0"

    def test_naive_timed_date_uses_seconds_of_day(self):
        lines = applescript_date("d", datetime(2025, 3, 14, 19, 30))
        assert lines[-1] == f"set time of d to {19 * 3600 + 30 * 60}"

    def test_day_reset_before_month(self):
        lines = applescript_date("d", datetime(2025, 2, 28, 9, 0))
        assert lines.index("set day of d to 1") < lines.index("set month of d to 2")


class TestPermission:

    async def test_request_access_granted(self, client, mock_apple_script):
        assert client.has_requested_permission() is False

        assert await client.request_access() is True

        assert client.permission_status == PermissionStatus.FULL_ACCESS
        assert client.is_authenticated() is True
        assert client.has_requested_permission() is True

    async def test_denied_is_not_prompted_again(self, client, mock_apple_script):
        mock_apple_script.probe_access.side_effect = AppleScriptPermissionError("-1743")

        assert await client.request_access() is False
        assert await client.request_access() is False

        assert client.permission_status == PermissionStatus.DENIED
        assert mock_apple_script.probe_access.call_count == 1
        assert client.has_requested_permission() is True

    async def test_request_access_script_failure(self, client, mock_apple_script):
        mock_apple_script.probe_access.side_effect = AppleScriptError("osascript missing")

        with pytest.raises(PermissionDenied):
            await client.request_access()

    async def test_authenticate_is_request_access(self, client):
        assert await client.authenticate() is True
        assert client.provider == CalendarProvider.LOCAL

    async def test_operations_require_access(self, client, mock_apple_script, sample_event):
        mock_apple_script.probe_access.side_effect = AppleScriptPermissionError("-1743")

        with pytest.raises(PermissionDenied):
            await client.create_event(sample_event, "cal-home", True)
        mock_apple_script.create_event.assert_not_called()

    async def test_open_system_settings(self, client):
        with patch('subprocess.run') as mock_subprocess:
            assert await client.open_system_settings() is True

        assert mock_subprocess.call_args[0][0] == ["open", client.settings.privacy_settings_url]


class TestLocalCalendarClient:

    async def test_list_calendars_only_writable(self, client):
        calendars = await client.list_calendars()

        assert [c.id for c in calendars] == ["cal-home", "cal-work"]
        assert all(c.provider == CalendarProvider.LOCAL for c in calendars)
        assert calendars[0].color == "#FF0000"

    async def test_create_all_day_event(self, client, mock_apple_script, all_day_event):
        uid = await client.create_event(all_day_event, "cal-home", True)

        assert uid == "uid-new"
        args, kwargs = mock_apple_script.create_event.call_args
        calendar_id, title, window = args
        assert calendar_id == "cal-home"
        assert title == "Conference"
        assert window.all_day is True
        assert window.end == window.start
        assert window.start_day == date(2025, 3, 14)

    async def test_create_timed_event_defaults_to_one_hour(self, client, mock_apple_script, sample_event):
        await client.create_event(sample_event, "cal-home", True)

        window = mock_apple_script.create_event.call_args[0][2]
        assert window.all_day is False
        assert window.start.time() == time(19, 0)
        assert window.end - window.start == timedelta(hours=1)

    async def test_create_composes_notes(self, client, mock_apple_script, sample_event):
        await client.create_event(sample_event, "cal-home", True)

        kwargs = mock_apple_script.create_event.call_args[1]
        assert kwargs["location"] == "Cafe Central"
        assert kwargs["notes"] == "Bring cake\n\nEvent Link: https://events.example.com/e/1"

    async def test_create_without_source_links(self, client, mock_apple_script, sample_event):
        await client.create_event(sample_event, "cal-home", False)
        assert mock_apple_script.create_event.call_args[1]["notes"] == "Bring cake"

    async def test_create_in_missing_calendar(self, client, mock_apple_script, sample_event):
        mock_apple_script.create_event.return_value = "missing"

        with pytest.raises(CalendarNotFound):
            await client.create_event(sample_event, "cal-gone", True)

    async def test_create_failure(self, client, mock_apple_script, sample_event):
        mock_apple_script.create_event.side_effect = AppleScriptError("boom")

        with pytest.raises(EventCreationFailed):
            await client.create_event(sample_event, "cal-home", True)

    async def test_create_rejects_nameless_event(self, client, sample_event):
        sample_event.name = "  "
        with pytest.raises(InvalidEvent):
            await client.create_event(sample_event, "cal-home", True)

    async def test_permission_lost_mid_operation(self, client, mock_apple_script, sample_event):
        mock_apple_script.update_event.side_effect = AppleScriptPermissionError("-1743")

        with pytest.raises(PermissionDenied):
            await client.update_event(sample_event, "uid-1", "cal-home", True)
        assert client.permission_status == PermissionStatus.DENIED

    async def test_update_in_place(self, client, mock_apple_script, sample_event):
        result = await client.update_event(sample_event, "uid-1", "cal-home", True)

        assert result is None
        assert mock_apple_script.update_event.call_args[0][0] == "uid-1"
        mock_apple_script.create_event.assert_not_called()

    async def test_update_missing_record_recreates(self, client, mock_apple_script, sample_event):
        mock_apple_script.update_event.return_value = False

        result = await client.update_event(sample_event, "uid-stale", "cal-home", True)

        assert result == "uid-new"
        mock_apple_script.create_event.assert_called_once()

    async def test_update_failure(self, client, mock_apple_script, sample_event):
        mock_apple_script.update_event.side_effect = AppleScriptError("boom")

        with pytest.raises(EventCreationFailed):
            await client.update_event(sample_event, "uid-1", "cal-home", True)

    async def test_delete(self, client, mock_apple_script):
        await client.delete_event("uid-1", "cal-home")
        mock_apple_script.delete_event.assert_called_once_with("uid-1")

    async def test_delete_missing_record_is_success(self, client, mock_apple_script):
        mock_apple_script.delete_event.return_value = False
        await client.delete_event("uid-gone", "cal-home")

    async def test_delete_failure(self, client, mock_apple_script):
        mock_apple_script.delete_event.side_effect = AppleScriptError("boom")

        with pytest.raises(EventCreationFailed):
            await client.delete_event("uid-1", "cal-home")

    async def test_sign_out_is_noop(self, client):
        await client.request_access()
        await client.sign_out()
        assert client.is_authenticated() is True

    @patch("event_calendar_sync.providers.local_calendar.shutil.which", return_value="/usr/bin/osascript")
    def test_available_on_macos(self, mock_which, client):
        with patch("event_calendar_sync.providers.local_calendar.sys.platform", "darwin"):
            assert client.is_available() is True

    @patch("event_calendar_sync.providers.local_calendar.shutil.which", return_value=None)
    def test_unavailable_without_osascript(self, mock_which, client):
        with patch("event_calendar_sync.providers.local_calendar.sys.platform", "darwin"):
            assert client.is_available() is False

    def test_unavailable_off_macos(self, client):
        with patch("event_calendar_sync.providers.local_calendar.sys.platform", "linux"):
            assert client.is_available() is False

    async def test_machine_zone_used_when_unset(self, mock_apple_script, sample_event):
        client = LocalCalendarClient(LocalCalendarSettings(), apple_script=mock_apple_script)

        with patch("event_calendar_sync.providers.local_calendar.machine_timezone_name",
                   return_value="America/New_York"):
            await client.create_event(sample_event, "cal-home", True)

        window = mock_apple_script.create_event.call_args[0][2]
        assert window.start.utcoffset() == timedelta(hours=-4)
