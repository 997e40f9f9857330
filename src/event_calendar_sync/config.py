"""Configuration system for the calendar sync engine.

Settings come from three places, in increasing priority: built-in defaults,
``CALSYNC_*`` environment variables, and the YAML file in the config
directory. Nested values use ``__`` in environment variable names, e.g.
``CALSYNC_REMOTE__CLIENT_ID``.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"
DEFAULT_DATA_DIR = "~/.event_calendar_sync"


class RemoteCalendarSettings(BaseModel):
    """Settings for the OAuth2 REST calendar provider."""

    client_id: str = ""
    client_secret: Optional[str] = None
    scopes: List[str] = Field(default_factory=lambda: ["https://www.googleapis.com/auth/calendar"])
    authorize_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url: str = "https://oauth2.googleapis.com/token"
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    redirect_uri: str = "http://127.0.0.1:8765/oauth2/callback"
    credential_namespace: str = "remote-calendar"

    # Zone timed events are written in; None means the machine's zone
    time_zone: Optional[str] = None

    timeout_seconds: int = 30
    auth_timeout_seconds: float = 300
    rate_limit_requests_per_minute: int = 60

    @field_validator('time_zone')
    @classmethod
    def validate_time_zone(cls, v):
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f'Unknown IANA time zone: {v}')
        return v

    @field_validator('redirect_uri')
    @classmethod
    def validate_redirect_uri(cls, v):
        parsed = urlparse(v)
        if parsed.scheme not in ('http', 'https') or not parsed.hostname:
            raise ValueError('Redirect URI must be an absolute http(s) URL')
        return v

    @field_validator('rate_limit_requests_per_minute')
    @classmethod
    def validate_rate_limit(cls, v):
        if v < 1 or v > 1000:
            raise ValueError('Rate limit must be between 1 and 1000 requests per minute')
        return v

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


class LocalCalendarSettings(BaseModel):
    """Settings for the device calendar provider."""

    application_name: str = "Calendar"
    script_timeout_seconds: int = 60
    privacy_settings_url: str = "x-apple.systempreferences:com.apple.preference.security?Privacy_Calendars"

    # Zone used to build AppleScript dates; None means the machine's zone
    time_zone: Optional[str] = None

    @field_validator('time_zone')
    @classmethod
    def validate_time_zone(cls, v):
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f'Unknown IANA time zone: {v}')
        return v


class CalendarSyncSettings(BaseSettings):
    """Top-level settings for the calendar sync engine."""

    model_config = SettingsConfigDict(env_prefix="CALSYNC_", env_nested_delimiter="__")

    data_dir: Path = Path(DEFAULT_DATA_DIR)
    connection_file: str = "connection.yaml"
    events_file: str = "events.yaml"

    remote: RemoteCalendarSettings = Field(default_factory=RemoteCalendarSettings)
    local: LocalCalendarSettings = Field(default_factory=LocalCalendarSettings)

    @field_validator('data_dir')
    @classmethod
    def expand_data_dir(cls, v):
        return Path(os.path.expanduser(str(v)))

    @property
    def connection_path(self) -> Path:
        return self.data_dir / self.connection_file

    @property
    def events_path(self) -> Path:
        return self.data_dir / self.events_file

    def ensure_data_dir(self) -> Path:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        return self.data_dir


def get_config_dir() -> Path:
    """Get the configuration directory path.

    Returns:
        Path to the configuration directory
    """
    return Path(os.path.expanduser(os.getenv("CALSYNC_CONFIG_DIR", DEFAULT_DATA_DIR)))


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse config file {config_path}: {e}")
        return {}

    if not isinstance(data, dict):
        if data is not None:
            logger.warning(f"Ignoring config file {config_path}: top level is not a mapping")
        return {}
    return data


def load_settings(config_path: Optional[Path] = None) -> CalendarSyncSettings:
    """Load settings from the YAML config file, environment and defaults.

    Args:
        config_path: Optional explicit config file path

    Returns:
        Validated settings
    """
    if config_path is None:
        config_path = get_config_dir() / CONFIG_FILE

    data: Dict[str, Any] = {}
    if config_path.exists():
        data = _read_yaml(config_path)
        logger.debug(f"Loaded configuration from {config_path}")
    else:
        logger.debug(f"No config file at {config_path}, using defaults")

    return CalendarSyncSettings(**data)


def save_settings(settings: CalendarSyncSettings, config_path: Optional[Path] = None) -> Path:
    """Write ``settings`` to the YAML config file, secrets excluded."""
    if config_path is None:
        config_path = get_config_dir() / CONFIG_FILE

    data = settings.model_dump(mode="json", exclude={"remote": {"client_secret"}})
    config_path.parent.mkdir(parents=True, exist_ok=True)

    temp_file = config_path.with_suffix('.tmp')
    with open(temp_file, 'w') as f:
        yaml.safe_dump(data, f, default_flow_style=False, indent=2, sort_keys=True)
    temp_file.replace(config_path)

    logger.debug(f"Saved configuration to {config_path}")
    return config_path
