"""REST calendar client authorized with OAuth2 Authorization Code + PKCE.

Speaks the Google Calendar v3 wire format: calendars are listed from
``/users/me/calendarList`` and events are written below
``/calendars/{calendarId}/events``. Tokens live in the secret store and are
read fresh for every request.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx

from ..config import RemoteCalendarSettings
from ..credential_manager import CredentialManager, SecretStore
from ..models import CalendarInfo, CalendarProvider, Event, OAuthCredential
from ..pkce import PKCEPair, generate_state
from ..utils.datetime import event_window, machine_timezone_name, resolve_timezone
from .authorization import (
    AuthorizationCancelled,
    AuthorizationSession,
    LoopbackAuthorizationSession,
    extract_query_param,
)
from .base import (
    AuthenticationFailed,
    CalendarNotFound,
    CalendarProviderClient,
    EventCreationFailed,
    NetworkError,
    RateLimiter,
    compose_notes,
    validate_event,
)


logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "access_token"
REFRESH_TOKEN_KEY = "refresh_token"
WRITABLE_ROLES = frozenset({"owner", "writer"})
GONE_STATUSES = frozenset({404, 410})
DEFAULT_CALENDAR_COLOR = "#4285F4"
SOURCE_NAME = "Google Calendar"


def build_event_payload(event: Event, include_source_links: bool, time_zone: str) -> Dict[str, Any]:
    """Build the JSON body for an event insert or update.

    All-day events carry ``date`` values with an exclusive end on the next
    day. Timed events carry ``dateTime`` values in ``time_zone``.
    """
    window = event_window(event.event_date, event.start_time, event.end_time,
                          resolve_timezone(time_zone))

    payload: Dict[str, Any] = {"summary": event.name}
    if event.location:
        payload["location"] = event.location

    description = compose_notes(event, include_source_links)
    if description:
        payload["description"] = description

    if window.all_day:
        payload["start"] = {"date": window.start_day.isoformat()}
        payload["end"] = {"date": (window.start_day + timedelta(days=1)).isoformat()}
    else:
        payload["start"] = {"dateTime": window.start.isoformat(), "timeZone": time_zone}
        payload["end"] = {"dateTime": window.end.isoformat(), "timeZone": time_zone}

    return payload


def _status_error(response: httpx.Response) -> httpx.HTTPStatusError:
    return httpx.HTTPStatusError(
        f"Calendar API returned HTTP {response.status_code}",
        request=response.request,
        response=response,
    )


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", error))
    if isinstance(payload, dict) and payload.get("error_description"):
        return str(payload["error_description"])
    return str(error or payload)


class RemoteCalendarAPI:
    """HTTP wrapper for the calendar REST API."""

    def __init__(self, settings: RemoteCalendarSettings, credentials: SecretStore,
                 client: httpx.AsyncClient):
        """Initialize API client.

        Args:
            settings: Remote provider settings
            credentials: Secret store holding the access token
            client: Shared HTTP client
        """
        self.settings = settings
        self.credentials = credentials
        self.client = client
        self.rate_limiter = RateLimiter(settings.rate_limit_requests_per_minute)
        self.logger = logging.getLogger(__name__)

    def _headers(self) -> Dict[str, str]:
        access_token = self.credentials.get(self.settings.credential_namespace, ACCESS_TOKEN_KEY)
        if not access_token:
            raise AuthenticationFailed("Not signed in to the remote calendar")
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    async def _make_request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
                            params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """Make an authorized request to the calendar API.

        Args:
            method: HTTP method
            path: Path below the API base URL
            json: JSON body
            params: Query parameters

        Returns:
            The response, for the caller to interpret its status

        Raises:
            AuthenticationFailed: No token is stored or the API answered 401
            NetworkError: If the request could not be completed
        """
        headers = self._headers()
        url = f"{self.settings.api_base_url.rstrip('/')}/{path.lstrip('/')}"

        await self.rate_limiter.acquire()
        try:
            response = await self.client.request(method, url, headers=headers, json=json, params=params)
        except httpx.TimeoutException as e:
            raise NetworkError(e, "Calendar API request timed out") from e
        except httpx.RequestError as e:
            raise NetworkError(e, f"Calendar API request failed: {e}") from e

        self.logger.debug(f"{method} {path} -> {response.status_code}")

        if response.status_code == 401:
            raise AuthenticationFailed("Remote calendar authorization is no longer valid")

        return response

    async def get_calendar_list(self) -> List[Dict[str, Any]]:
        """Fetch every calendar list entry, following pagination."""
        items: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {}

        while True:
            response = await self._make_request("GET", "users/me/calendarList", params=params or None)
            if response.status_code != 200:
                raise NetworkError(_status_error(response),
                                   f"Failed to list calendars: HTTP {response.status_code}")

            payload = response.json()
            items.extend(payload.get("items", []))

            page_token = payload.get("nextPageToken")
            if not page_token:
                return items
            params = {"pageToken": page_token}

    async def insert_event(self, calendar_id: str, body: Dict[str, Any]) -> httpx.Response:
        return await self._make_request("POST", f"calendars/{quote(calendar_id, safe='')}/events", json=body)

    async def put_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> httpx.Response:
        path = f"calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        return await self._make_request("PUT", path, json=body)

    async def remove_event(self, calendar_id: str, event_id: str) -> httpx.Response:
        path = f"calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        return await self._make_request("DELETE", path)


class RemoteCalendarClient(CalendarProviderClient):
    """Calendar provider backed by the REST calendar service."""

    provider = CalendarProvider.REMOTE

    def __init__(self, settings: Optional[RemoteCalendarSettings] = None,
                 credentials: Optional[SecretStore] = None,
                 session: Optional[AuthorizationSession] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        """Initialize the remote calendar client.

        Args:
            settings: Remote provider settings
            credentials: Secret store for the OAuth tokens
            session: Presents the consent page during authenticate()
            http_client: HTTP client to use; one is created when omitted
        """
        super().__init__()
        self.settings = settings or RemoteCalendarSettings()
        self.credentials = credentials or CredentialManager()
        self.session = session or LoopbackAuthorizationSession()
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=self.settings.timeout_seconds)
        self.api = RemoteCalendarAPI(self.settings, self.credentials, self.http_client)
        self._auth_lock = asyncio.Lock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client:
            await self.http_client.aclose()

    @property
    def namespace(self) -> str:
        return self.settings.credential_namespace

    @property
    def time_zone(self) -> str:
        """Zone timed events are written in."""
        return self.settings.time_zone or machine_timezone_name()

    def build_authorization_url(self, pkce: PKCEPair, state: str) -> str:
        """Authorization endpoint URL for one consent attempt."""
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.redirect_uri,
            "response_type": "code",
            "scope": self.settings.scope,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self.settings.authorize_url}?{urlencode(params)}"

    def is_authenticated(self) -> bool:
        return self.credentials.get(self.namespace, ACCESS_TOKEN_KEY) is not None

    async def authenticate(self) -> bool:
        """Run the consent flow and store the resulting tokens.

        Only one flow may run at a time; a second call while one is pending
        fails immediately.

        Raises:
            AuthenticationFailed: The flow was refused, aborted, timed out or
                the code could not be exchanged
            NetworkError: The token endpoint could not be reached
        """
        if not self.settings.client_id:
            raise AuthenticationFailed("No OAuth client id configured for the remote calendar")

        if self._auth_lock.locked():
            raise AuthenticationFailed("An authorization session is already in progress")

        async with self._auth_lock:
            pkce = PKCEPair.generate()
            state = generate_state()
            authorization_url = self.build_authorization_url(pkce, state)

            self.logger.info("Starting remote calendar authorization")
            try:
                callback_url = await asyncio.wait_for(
                    self.session.authorize(authorization_url, self.settings.redirect_uri),
                    timeout=self.settings.auth_timeout_seconds,
                )
            except asyncio.TimeoutError:
                raise AuthenticationFailed("Authorization timed out")
            except AuthorizationCancelled as e:
                raise AuthenticationFailed(f"Authorization cancelled: {e}") from e
            except OSError as e:
                raise AuthenticationFailed(f"Could not listen for the authorization callback: {e}") from e

            error = extract_query_param(callback_url, "error")
            if error:
                raise AuthenticationFailed(f"Authorization refused: {error}")

            if extract_query_param(callback_url, "state") != state:
                raise AuthenticationFailed("Authorization callback state does not match")

            code = extract_query_param(callback_url, "code")
            if not code:
                raise AuthenticationFailed("No authorization code in callback")

            credential = await self._exchange_code(code, pkce.verifier)
            self._store_credential(credential)

        self.log_sync_operation("authenticate", "Authorization completed")
        return True

    async def _token_request(self, data: Dict[str, str]) -> OAuthCredential:
        if self.settings.client_secret:
            data["client_secret"] = self.settings.client_secret

        try:
            response = await self.http_client.post(
                self.settings.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise NetworkError(e, "Token request timed out") from e
        except httpx.RequestError as e:
            raise NetworkError(e, f"Token request failed: {e}") from e

        if response.status_code != 200:
            raise AuthenticationFailed(
                f"Token endpoint returned HTTP {response.status_code}: {_error_message(response)}"
            )

        try:
            return OAuthCredential.from_token_response(response.json())
        except (KeyError, TypeError, ValueError) as e:
            raise AuthenticationFailed(f"Malformed token response: {e}") from e

    async def _exchange_code(self, code: str, code_verifier: str) -> OAuthCredential:
        return await self._token_request({
            "code": code,
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": code_verifier,
        })

    def _store_credential(self, credential: OAuthCredential):
        if not self.credentials.set(self.namespace, ACCESS_TOKEN_KEY, credential.access_token):
            raise AuthenticationFailed("Could not store the access token in the secret store")
        if credential.refresh_token:
            if not self.credentials.set(self.namespace, REFRESH_TOKEN_KEY, credential.refresh_token):
                self.logger.warning("Could not store the refresh token; sign in again when the access token expires")

    async def refresh_access_token(self) -> bool:
        """Trade the stored refresh token for a new access token.

        API calls never do this on their own; a 401 is surfaced to the caller,
        which may call this and retry.

        Raises:
            AuthenticationFailed: No refresh token is stored or it was rejected
        """
        refresh_token = self.credentials.get(self.namespace, REFRESH_TOKEN_KEY)
        if not refresh_token:
            raise AuthenticationFailed("No refresh token stored; sign in again")

        credential = await self._token_request({
            "refresh_token": refresh_token,
            "client_id": self.settings.client_id,
            "grant_type": "refresh_token",
        })
        self._store_credential(credential)
        self.logger.info("Refreshed remote calendar access token")
        return True

    async def list_calendars(self) -> List[CalendarInfo]:
        """List calendars the account owns or can write to."""
        items = await self.api.get_calendar_list()

        calendars = [
            CalendarInfo(
                id=item["id"],
                title=item.get("summaryOverride") or item.get("summary") or item["id"],
                source=SOURCE_NAME,
                color=item.get("backgroundColor") or DEFAULT_CALENDAR_COLOR,
                provider=CalendarProvider.REMOTE,
                allows_modification=True,
            )
            for item in items
            if item.get("id") and item.get("accessRole") in WRITABLE_ROLES
        ]
        self.logger.info(f"Found {len(calendars)} writable calendars out of {len(items)}")
        return calendars

    async def create_event(self, event: Event, calendar_id: str, include_source_links: bool) -> str:
        validate_event(event)
        body = build_event_payload(event, include_source_links, self.time_zone)

        response = await self.api.insert_event(calendar_id, body)
        if response.status_code == 404:
            raise CalendarNotFound(f"Calendar {calendar_id} not found")
        if not response.is_success:
            raise EventCreationFailed(
                f"Failed to create event: HTTP {response.status_code}: {_error_message(response)}"
            )

        try:
            remote_event_id = response.json()["id"]
        except (KeyError, ValueError) as e:
            raise EventCreationFailed("Calendar API did not return an event id") from e

        self.log_sync_operation("create", f"Created event {remote_event_id}: {event.name}")
        return remote_event_id

    async def update_event(self, event: Event, remote_event_id: str, calendar_id: str,
                           include_source_links: bool) -> Optional[str]:
        """Overwrite the remote event, recreating it if it was deleted remotely."""
        validate_event(event)
        body = build_event_payload(event, include_source_links, self.time_zone)

        response = await self.api.put_event(calendar_id, remote_event_id, body)
        if response.status_code in GONE_STATUSES:
            self.logger.warning(f"Event {remote_event_id} no longer exists, creating a new one")
            return await self.create_event(event, calendar_id, include_source_links)
        if not response.is_success:
            raise EventCreationFailed(
                f"Failed to update event: HTTP {response.status_code}: {_error_message(response)}"
            )

        self.log_sync_operation("update", f"Updated event {remote_event_id}: {event.name}")
        return None

    async def delete_event(self, remote_event_id: str, calendar_id: str) -> None:
        """Delete the remote event.

        The service answers a deletion with 204. Any other status, including
        404 for an event that is already gone, is reported as a failure.
        """
        response = await self.api.remove_event(calendar_id, remote_event_id)

        if response.status_code != 204:
            raise EventCreationFailed(
                f"Failed to delete event: HTTP {response.status_code}: {_error_message(response)}"
            )

        self.log_sync_operation("delete", f"Deleted event {remote_event_id}")

    async def sign_out(self) -> None:
        """Forget both stored tokens."""
        for key in (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY):
            self.credentials.delete(self.namespace, key)
        self.logger.info("Signed out of the remote calendar")
