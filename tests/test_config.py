"""Test settings loading and validation."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from event_calendar_sync.config import (
    CalendarSyncSettings,
    LocalCalendarSettings,
    RemoteCalendarSettings,
    get_config_dir,
    load_settings,
    save_settings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("CALSYNC_CONFIG_DIR", "CALSYNC_DATA_DIR", "CALSYNC_REMOTE__CLIENT_ID"):
        monkeypatch.delenv(name, raising=False)


class TestRemoteCalendarSettings:

    def test_defaults(self):
        settings = RemoteCalendarSettings()

        assert settings.credential_namespace == "remote-calendar"
        assert settings.time_zone is None
        assert settings.scope == "https://www.googleapis.com/auth/calendar"

    def test_rejects_unknown_time_zone(self):
        with pytest.raises(ValidationError):
            RemoteCalendarSettings(time_zone="Mars/Olympus")

    def test_rejects_relative_redirect_uri(self):
        with pytest.raises(ValidationError):
            RemoteCalendarSettings(redirect_uri="/callback")

    def test_rejects_rate_limit_out_of_range(self):
        with pytest.raises(ValidationError):
            RemoteCalendarSettings(rate_limit_requests_per_minute=0)

    def test_scope_joins_scopes(self):
        settings = RemoteCalendarSettings(scopes=["a", "b"])
        assert settings.scope == "a b"


class TestLocalCalendarSettings:

    def test_time_zone_optional(self):
        assert LocalCalendarSettings().time_zone is None
        assert LocalCalendarSettings(time_zone="Europe/Berlin").time_zone == "Europe/Berlin"

    def test_rejects_unknown_time_zone(self):
        with pytest.raises(ValidationError):
            LocalCalendarSettings(time_zone="Nowhere/Land")


class TestCalendarSyncSettings:

    def test_paths(self, tmp_path):
        settings = CalendarSyncSettings(data_dir=tmp_path)

        assert settings.connection_path == tmp_path / "connection.yaml"
        assert settings.events_path == tmp_path / "events.yaml"

    def test_data_dir_user_expanded(self):
        settings = CalendarSyncSettings(data_dir="~/calsync-data")
        assert "~" not in str(settings.data_dir)

    def test_nested_environment_variables(self, monkeypatch):
        monkeypatch.setenv("CALSYNC_REMOTE__CLIENT_ID", "env-client")
        assert CalendarSyncSettings().remote.client_id == "env-client"

    def test_ensure_data_dir(self, tmp_path):
        settings = CalendarSyncSettings(data_dir=tmp_path / "nested" / "data")
        assert settings.ensure_data_dir().is_dir()


class TestLoadSettings:

    def test_config_dir_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CALSYNC_CONFIG_DIR", str(tmp_path))
        assert get_config_dir() == tmp_path

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "config.yaml")
        assert settings.remote.client_id == ""

    def test_reads_yaml(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.safe_dump({
            "data_dir": str(tmp_path / "data"),
            "remote": {"client_id": "from-file", "time_zone": "America/New_York"},
        }))

        settings = load_settings(config_path)

        assert settings.remote.client_id == "from-file"
        assert settings.remote.time_zone == "America/New_York"
        assert settings.data_dir == tmp_path / "data"

    def test_invalid_yaml_ignored(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("remote: [unclosed")

        assert load_settings(config_path).remote.client_id == ""

    def test_save_excludes_client_secret(self, tmp_path):
        settings = CalendarSyncSettings(
            data_dir=tmp_path,
            remote=RemoteCalendarSettings(client_id="abc", client_secret="s3cret"),
        )

        config_path = save_settings(settings, tmp_path / "config.yaml")
        data = yaml.safe_load(config_path.read_text())

        assert data["remote"]["client_id"] == "abc"
        assert "client_secret" not in data["remote"]
        assert load_settings(config_path).remote.client_id == "abc"
