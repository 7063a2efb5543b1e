"""Google Calendar API client."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx

from shared.config import get_google_oauth_config
from shared.models import CalendarInfo, ExternalEvent, OAuthTokens, to_utc, utcnow
from shared.rate_limit import RateLimiter, RateLimitExceeded, rate_limited

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)

MAX_EVENTS_PER_PAGE = 2500
MAX_CALENDARS_PER_PAGE = 250


class CalendarClientError(Exception):
    """Base error raised by the Google Calendar client."""


class TokenError(CalendarClientError):
    """Raised when OAuth credentials cannot be obtained or refreshed."""


class CalendarAPIError(CalendarClientError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, status_code: Optional[int], message: str):
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(f"Google Calendar request failed: {message}")
        else:
            super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class CalendarRateLimitError(CalendarAPIError):
    """Raised when the local rate limiter rejects a request."""

    def __init__(self, retry_after: float):
        self.retry_after = retry_after
        super().__init__(429, f"Rate limit exceeded, retry after {retry_after:.0f}s")


def _reject_rate_limited(error: RateLimitExceeded) -> CalendarRateLimitError:
    return CalendarRateLimitError(error.retry_after)


def _safe_error_message(response: httpx.Response) -> str:
    """Short, single-line description of an error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return " ".join(f"{error_payload}: {description}".split())[:200]
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _rfc3339(value: datetime) -> str:
    return to_utc(value).isoformat().replace("+00:00", "Z")


def _parse_token_payload(payload: Any, fallback_refresh_token: Optional[str]) -> OAuthTokens:
    if not isinstance(payload, dict):
        raise TokenError("Google OAuth token endpoint returned an unexpected payload")

    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise TokenError("Google OAuth token response is missing a non-empty access_token")

    expires_at = None
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, (int, float)) or (isinstance(expires_in, str) and expires_in.isdigit()):
        expires_at = utcnow() + timedelta(seconds=int(expires_in))

    return OAuthTokens(
        access_token=access_token.strip(),
        refresh_token=payload.get("refresh_token") or fallback_refresh_token,
        token_type=payload.get("token_type") or "Bearer",
        scope=payload.get("scope") or "",
        expires_at=expires_at,
    )


class GoogleCalendarClient:
    """
    Thin async wrapper over the Google OAuth endpoints and Calendar v3 API.

    Calendar API requests pass through the shared RateLimiter keyed by
    `rate_limit_key` (the user ID); rejected requests raise
    CalendarRateLimitError and are not retried.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        rate_limit_key: Optional[str] = None,
        tokens: Optional[OAuthTokens] = None
    ):
        """
        Initialize the client.

        Args:
            http_client: Shared httpx client (owned by the caller)
            client_id: OAuth client ID
            client_secret: OAuth client secret
            redirect_uri: OAuth redirect URI used for the consent flow
            rate_limiter: Process-wide rate limiter, or None to disable
            rate_limit_key: Identifier charged for each request
            tokens: Initial OAuth tokens
        """
        self.http_client = http_client
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.rate_limiter = rate_limiter
        self.rate_limit_key = rate_limit_key
        self._tokens = tokens

    @property
    def tokens(self) -> Optional[OAuthTokens]:
        return self._tokens

    def set_tokens(self, tokens: OAuthTokens) -> None:
        """Install the credentials used for subsequent requests."""
        self._tokens = tokens

    # OAuth

    def build_authorization_url(self, state: Optional[str] = None) -> str:
        """Consent URL requesting offline access, so that a refresh token is issued."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        """
        Exchange an authorization code for tokens.

        Raises:
            TokenError: If the exchange fails
        """
        tokens = await self._token_request({
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }, fallback_refresh_token=None)
        self._tokens = tokens
        return tokens

    async def verify_token(self) -> bool:
        """
        Check the current access token against the tokeninfo endpoint.

        Returns:
            True if Google accepts the token, False otherwise (including when
            no token is set or the endpoint is unreachable)
        """
        if not self._tokens or not self._tokens.access_token:
            return False

        try:
            response = await self.http_client.get(
                GOOGLE_TOKENINFO_URL,
                params={"access_token": self._tokens.access_token},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Token verification request failed: {e}")
            return False

        return 200 <= response.status_code < 300

    async def refresh_access_token(self) -> OAuthTokens:
        """
        Exchange the refresh token for a new access token.

        Returns:
            The new tokens; the previous refresh token is kept when Google
            does not issue a new one

        Raises:
            TokenError: If no refresh token is available or the exchange fails
        """
        refresh_token = self._tokens.refresh_token if self._tokens else None
        if not refresh_token:
            raise TokenError("No refresh token available; the calendar account must be reconnected")

        tokens = await self._token_request({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }, fallback_refresh_token=refresh_token)
        self._tokens = tokens
        return tokens

    async def _token_request(self, data: Dict[str, Any], fallback_refresh_token: Optional[str]) -> OAuthTokens:
        try:
            response = await self.http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise TokenError(f"Google OAuth token request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise TokenError(
                f"Google OAuth token request failed ({response.status_code}): "
                f"{_safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TokenError("Google OAuth token endpoint returned invalid JSON") from e

        return _parse_token_payload(payload, fallback_refresh_token)

    # Calendar API

    async def list_calendars(self) -> List[CalendarInfo]:
        """Get the user's calendar list (hidden and deleted entries excluded)."""
        calendars: List[CalendarInfo] = []
        page_token = None

        while True:
            params: Dict[str, Any] = {
                "maxResults": MAX_CALENDARS_PER_PAGE,
                "showHidden": "false",
                "showDeleted": "false",
            }
            if page_token:
                params["pageToken"] = page_token

            payload = await self._request_json("GET", "/users/me/calendarList", params=params)
            for item in payload.get("items") or []:
                if isinstance(item, dict) and item.get("id"):
                    calendars.append(CalendarInfo.from_google(item))

            page_token = payload.get("nextPageToken")
            if not page_token:
                return calendars

    async def list_events(
        self,
        calendar_id: str,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None
    ) -> List[ExternalEvent]:
        """
        Get the events of a calendar within a time window.

        Recurring events are expanded into single instances and results are
        returned in start-time order across all pages.
        """
        events: List[ExternalEvent] = []
        page_token = None
        path = f"/calendars/{quote(calendar_id, safe='')}/events"

        while True:
            params: Dict[str, Any] = {
                "maxResults": MAX_EVENTS_PER_PAGE,
                "singleEvents": "true",
                "orderBy": "startTime",
            }
            if time_min is not None:
                params["timeMin"] = _rfc3339(time_min)
            if time_max is not None:
                params["timeMax"] = _rfc3339(time_max)
            if page_token:
                params["pageToken"] = page_token

            payload = await self._request_json("GET", path, params=params)
            for item in payload.get("items") or []:
                if isinstance(item, dict):
                    events.append(ExternalEvent.from_google(item))

            page_token = payload.get("nextPageToken")
            if not page_token:
                return events

    async def create_event(self, calendar_id: str, event: ExternalEvent) -> ExternalEvent:
        """Insert an event and return it as stored by Google."""
        payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json_body=event.to_google(),
        )
        created = ExternalEvent.from_google(payload)
        if not created.id:
            raise CalendarAPIError(None, "Google Calendar returned no event ID after create")
        return created

    async def update_event(self, calendar_id: str, event_id: str, event: ExternalEvent) -> ExternalEvent:
        """Replace an existing event. A deleted upstream event raises CalendarAPIError."""
        payload = await self._request_json(
            "PUT",
            self._event_path(calendar_id, event_id),
            json_body=event.to_google(),
        )
        updated = ExternalEvent.from_google(payload)
        if updated.deleted:
            raise CalendarAPIError(410, f"Event {event_id} has been deleted")
        return updated

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event."""
        await self._request_json("DELETE", self._event_path(calendar_id, event_id))

    @staticmethod
    def _event_path(calendar_id: str, event_id: str) -> str:
        return f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"

    @rate_limited(on_reject=_reject_rate_limited)
    async def _request_json(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if not self._tokens or not self._tokens.access_token:
            raise TokenError("No access token set on the calendar client")

        try:
            response = await self.http_client.request(
                method,
                f"{GOOGLE_CALENDAR_API_BASE_URL}{path}",
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {self._tokens.access_token}"},
            )
        except httpx.HTTPError as e:
            raise CalendarAPIError(None, str(e)) from e

        if not 200 <= response.status_code < 300:
            raise CalendarAPIError(response.status_code, _safe_error_message(response))

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as e:
            raise CalendarAPIError(response.status_code, "Invalid JSON in response") from e

        if not isinstance(payload, dict):
            raise CalendarAPIError(response.status_code, "Unexpected response payload shape")
        return payload


def create_calendar_client(
    http_client: httpx.AsyncClient,
    rate_limiter: Optional[RateLimiter] = None,
    user_id: Optional[str] = None,
    tokens: Optional[OAuthTokens] = None
) -> GoogleCalendarClient:
    """Build a client from the GOOGLE_* environment configuration."""
    oauth_config = get_google_oauth_config()
    return GoogleCalendarClient(
        http_client=http_client,
        client_id=oauth_config["client_id"],
        client_secret=oauth_config["client_secret"],
        redirect_uri=oauth_config["redirect_uri"],
        rate_limiter=rate_limiter,
        rate_limit_key=user_id,
        tokens=tokens,
    )
