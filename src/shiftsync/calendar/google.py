"""Google Calendar v3 REST client.

Only the three calls the sync needs: insert, list (one week, expanded
recurring events) and delete. Authentication is a cached access token
obtained from a long-lived refresh token; a 401 triggers one forced refresh.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

RETRYABLE_STATUS_CODES = frozenset({429, 503})
MAX_RETRIES = 3
BASE_RETRY_DELAY_S = 1.0

LIST_PAGE_SIZE = 250
DEFAULT_TOKEN_LIFETIME_S = 3600
TOKEN_EXPIRY_MARGIN_S = 60
_MAX_ERROR_LENGTH = 200


class CalendarSyncError(RuntimeError):
    """Base error raised by the Google Calendar client."""


class CalendarTokenRefreshError(CalendarSyncError):
    """The refresh token could not be exchanged for an access token."""


class CalendarRequestError(CalendarSyncError):
    """A Calendar API call returned a non-success status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class GoogleOAuthCredentials(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _strip(cls, value: str, info: ValidationInfo) -> str:
        value = value.strip()
        if not value:
            raise ValueError(f"{info.field_name} must not be blank")
        return value


def google_rfc3339(value: datetime) -> str:
    """Format as UTC with a ``Z`` suffix; naive values are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _error_detail(response: httpx.Response) -> str:
    """Pull a short, single-line message out of a Google error response."""
    candidates: list[Any] = []
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            candidates.append(error.get("message"))
        candidates.append(error)
    candidates.append(response.text)

    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return " ".join(candidate.split())[:_MAX_ERROR_LENGTH]
    return f"HTTP {response.status_code} with an empty body"


def _is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


class GoogleOAuthClient:
    """Exchanges the refresh token for access tokens and caches them until near expiry."""

    def __init__(self, credentials: GoogleOAuthCredentials, http_client: httpx.AsyncClient) -> None:
        self._credentials = credentials
        self._http = http_client
        self._token: str | None = None
        self._valid_until = 0.0
        self._lock = asyncio.Lock()

    def _cached(self) -> str | None:
        if self._token is not None and time.monotonic() < self._valid_until:
            return self._token
        return None

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and (token := self._cached()) is not None:
            return token
        async with self._lock:
            # Another caller may have refreshed while we waited.
            if not force_refresh and (token := self._cached()) is not None:
                return token
            return await self._refresh()

    async def _refresh(self) -> str:
        form = {
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "refresh_token": self._credentials.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self._http.post(
                GOOGLE_OAUTH_TOKEN_URL, data=form, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(f"token endpoint unreachable: {exc}") from exc

        if not _is_success(response):
            raise CalendarTokenRefreshError(
                f"token refresh rejected ({response.status_code}): {_error_detail(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError("token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            payload = {}

        token = payload.get("access_token")
        if not isinstance(token, str) or not token.strip():
            raise CalendarTokenRefreshError("token response has no access_token")

        lifetime = payload.get("expires_in")
        if isinstance(lifetime, bool) or not isinstance(lifetime, int | float) or lifetime <= 0:
            lifetime = DEFAULT_TOKEN_LIFETIME_S
        ttl = max(int(lifetime) - TOKEN_EXPIRY_MARGIN_S, 30)

        self._token = token.strip()
        self._valid_until = time.monotonic() + ttl
        logger.debug("Refreshed Google access token (valid for %ds)", ttl)
        return self._token


class GoogleCalendarClient:
    """Insert, list and delete events on one calendar."""

    def __init__(
        self,
        oauth: GoogleOAuthClient,
        http_client: httpx.AsyncClient,
        *,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        self._oauth = oauth
        self._http = http_client
        self._base_url = base_url.rstrip("/")

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{self._base_url}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            url += f"/{quote(event_id, safe='')}"
        return url

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = await self._oauth.get_access_token()
        try:
            return await self._http.request(
                method, url, headers={"Authorization": f"Bearer {token}"}, **kwargs
            )
        except httpx.HTTPError as exc:
            raise CalendarSyncError(f"Google Calendar request failed: {exc}") from exc

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send with auth, refreshing once on 401 and backing off on 429/503."""
        response = await self._send(method, url, **kwargs)
        if response.status_code == 401:
            await self._oauth.get_access_token(force_refresh=True)
            response = await self._send(method, url, **kwargs)

        for attempt in range(MAX_RETRIES):
            if response.status_code not in RETRYABLE_STATUS_CODES:
                break
            delay = _retry_delay(response, attempt)
            logger.warning(
                "Calendar API returned %d, retrying in %.1fs (%d/%d)",
                response.status_code,
                delay,
                attempt + 1,
                MAX_RETRIES,
            )
            await asyncio.sleep(delay)
            response = await self._send(method, url, **kwargs)
        return response

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, url, **kwargs)
        if not _is_success(response):
            raise CalendarRequestError(
                status_code=response.status_code, message=_error_detail(response)
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarSyncError("Google Calendar API returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise CalendarSyncError(f"expected a JSON object, got {type(payload).__name__}")
        return payload

    async def create_event(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        """Insert an event and return the created resource."""
        return await self._request_json("POST", self._events_url(calendar_id), json=body)

    async def list_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[dict[str, Any]]:
        """Return every event overlapping ``[time_min, time_max)`` across all pages."""
        url = self._events_url(calendar_id)
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": LIST_PAGE_SIZE,
            "timeMin": google_rfc3339(time_min),
            "timeMax": google_rfc3339(time_max),
        }
        events: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request_json("GET", url, params=params)
            items = payload.get("items")
            if not isinstance(items, list):
                raise CalendarSyncError("events list response has no items array")
            events += [item for item in items if isinstance(item, dict)]
            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                return events

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event; one that is already gone (404/410) counts as deleted."""
        event_id = event_id.strip()
        if not event_id:
            raise ValueError("event_id must not be blank")
        response = await self._request("DELETE", self._events_url(calendar_id, event_id))
        if response.status_code in (404, 410) or _is_success(response):
            return
        raise CalendarRequestError(
            status_code=response.status_code, message=_error_detail(response)
        )


def _retry_delay(response: httpx.Response, attempt: int) -> float:
    """Exponential backoff, overridden by a numeric ``Retry-After`` on 429."""
    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        if retry_after is not None:
            try:
                return float(retry_after)
            except ValueError:
                logger.debug("Ignoring non-numeric Retry-After %r", retry_after)
    return BASE_RETRY_DELAY_S * 2**attempt
