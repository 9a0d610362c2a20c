import httpx
import logging
from typing import List, Dict, Any, Optional
from datetime import datetime
from common.google_auth import get_access_token
from common.errors import RateLimitedError, StaleReferenceError, TransientError
from common.utils import format_rfc3339

logger = logging.getLogger("GoogleCalendar")

GOOGLE_CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"

# 403 reasons Google uses for quota exhaustion
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


class GoogleCalendarClient:
    """
    Thin async client for the Google Calendar v3 events API.

    Responses are returned as the raw JSON dictionaries Google sends.
    Missing events (404/410) raise StaleReferenceError, throttling raises
    RateLimitedError and 5xx responses raise TransientError.
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        auth_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.access_token: Optional[str] = None
        self._transport = transport
        self._auth_transport = auth_transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def authenticated(self) -> bool:
        return self.access_token is not None

    async def authenticate(self) -> str:
        """Exchange the refresh token for a fresh access token."""
        self.access_token = await get_access_token(
            self.client_id,
            self.client_secret,
            self.refresh_token,
            transport=self._auth_transport,
        )
        logger.info("Google Calendar API initialized")
        return self.access_token

    async def _ensure_token(self):
        if not self.access_token:
            await self.authenticate()

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=60.0, transport=self._transport)
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, entity_id: Optional[str] = None, **kwargs) -> httpx.Response:
        await self._ensure_token()
        url = f"{GOOGLE_CALENDAR_API_BASE}{path}"
        headers = {"Authorization": f"Bearer {self.access_token}"}

        response = await self._http().request(method, url, headers=headers, **kwargs)

        if response.status_code == 401:
            # Token expired, refresh and retry
            await self.authenticate()
            headers["Authorization"] = f"Bearer {self.access_token}"
            response = await self._http().request(method, url, headers=headers, **kwargs)

        if response.status_code in (404, 410) and entity_id is not None:
            raise StaleReferenceError("google", entity_id)

        if response.status_code == 429 or (response.status_code == 403 and self._is_rate_limit(response)):
            retry_after = response.headers.get("Retry-After")
            raise RateLimitedError("google", float(retry_after) if retry_after else None)

        if response.status_code >= 500:
            raise TransientError(f"Google Calendar API returned {response.status_code} for {method} {path}")

        if response.status_code == 400:
            # Log the actual error for debugging
            error_info = f"URL: {response.url}"
            try:
                error_info += f", Response: {response.json()}"
            except Exception:
                error_info += f", Response: {response.text}"
            logger.error(f"Bad Request (400) from Google Calendar API. {error_info}")

        response.raise_for_status()
        return response

    @staticmethod
    def _is_rate_limit(response: httpx.Response) -> bool:
        try:
            errors = response.json().get("error", {}).get("errors", [])
        except Exception:
            return False
        return any(err.get("reason") in RATE_LIMIT_REASONS for err in errors)

    async def list_events(self,
                          calendar_id: str = 'primary',
                          time_min: Optional[datetime] = None,
                          time_max: Optional[datetime] = None,
                          single_events: bool = True,
                          page_size: int = 250) -> List[Dict[str, Any]]:
        """
        List every event in the time range, following nextPageToken.
        Events are ordered by start time.
        """
        params: Dict[str, Any] = {
            "maxResults": page_size,
            "singleEvents": str(single_events).lower(),
        }
        if single_events:
            # orderBy=startTime is only valid for expanded single events
            params["orderBy"] = "startTime"
        if time_min:
            # Google Calendar API requires RFC3339 format with Z suffix for UTC
            params["timeMin"] = format_rfc3339(time_min)
        if time_max:
            params["timeMax"] = format_rfc3339(time_max)

        events: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            response = await self._request("GET", f"/calendars/{calendar_id}/events", params=params)
            data = response.json()
            events.extend(data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.debug(f"Retrieved {len(events)} calendar events")
        return events

    async def find_events_by_property(self, calendar_id: str, key: str, value: str) -> List[Dict[str, Any]]:
        """Return live events whose extendedProperties.private[key] equals value."""
        params = {"privateExtendedProperty": f"{key}={value}", "maxResults": 10}
        response = await self._request("GET", f"/calendars/{calendar_id}/events", params=params)
        return response.json().get("items", [])

    async def get_event(self, calendar_id: str, event_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/calendars/{calendar_id}/events/{event_id}", entity_id=event_id)
        return response.json()

    async def insert_event(self, calendar_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new calendar event from a prepared request body."""
        response = await self._request("POST", f"/calendars/{calendar_id}/events", json=body)
        return response.json()

    async def update_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Patch an existing event. Fields absent from `body` are left untouched."""
        response = await self._request(
            "PATCH", f"/calendars/{calendar_id}/events/{event_id}", entity_id=event_id, json=body
        )
        return response.json()

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        await self._request("DELETE", f"/calendars/{calendar_id}/events/{event_id}", entity_id=event_id)
        return True
