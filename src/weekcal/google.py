"""Google Calendar v3 gateway over ``httpx``.

Requests carry a bearer token obtained from a refresh-token OAuth client with
lightweight caching.  A 401 triggers one forced token refresh and a retry;
429 and 503 responses are retried with exponential backoff, honouring
``Retry-After`` on 429.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from weekcal.credentials import GOOGLE_OAUTH_TOKEN_URL, OAuthCredentials
from weekcal.errors import GatewayError, GatewayRequestError, TokenRefreshError
from weekcal.gateway import CalendarGateway, EventDraft, RemoteEvent

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# 404 for unknown ids, 410 for ids Google has already purged.
MISSING_EVENT_STATUS_CODES = {404, 410}

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


class GoogleOAuthClient:
    """Exchanges the refresh token for access tokens and caches the current one.

    Runs are sequential, so a cached token is simply replaced on refresh.
    """

    def __init__(
        self,
        credentials: OAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._cached: tuple[str, datetime] | None = None

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if force_refresh or self._cached is None or datetime.now(UTC) >= self._cached[1]:
            self._cached = await self._fetch_access_token()
        return self._cached[0]

    async def _fetch_access_token(self) -> tuple[str, datetime]:
        form = {
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "refresh_token": self._credentials.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL, data=form, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"Access token request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise TokenRefreshError(
                f"Access token refresh failed ({response.status_code}): "
                f"{safe_google_error_message(response)}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("Token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise TokenRefreshError("Token endpoint returned an unexpected payload")

        token = payload.get("access_token")
        if not isinstance(token, str) or not token.strip():
            raise TokenRefreshError("Token response has no access_token")

        # Renew a minute before Google expires it.
        lifetime = _token_lifetime_seconds(payload.get("expires_in"))
        expires_at = datetime.now(UTC) + timedelta(seconds=max(lifetime - 60, 30))
        return token.strip(), expires_at


def _token_lifetime_seconds(value: Any) -> int:
    if isinstance(value, int | float) and not isinstance(value, bool) and value > 0:
        return int(value)
    return 3600


def safe_google_error_message(response: httpx.Response) -> str:
    """Pull a short, single-line error message out of a Google error response."""
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
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_event_boundary(
    payload: dict[str, Any],
    *,
    fallback_timezone: str,
) -> tuple[datetime, str | None]:
    timezone = payload.get("timeZone")
    timezone = timezone.strip() if isinstance(timezone, str) and timezone.strip() else None

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), timezone

    all_day = payload.get("date")
    if isinstance(all_day, str) and all_day.strip():
        try:
            zone = ZoneInfo(timezone or fallback_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "Unknown time zone %r on all-day event; using %s", timezone, fallback_timezone
            )
            zone = ZoneInfo(fallback_timezone)
        day = datetime.fromisoformat(all_day.strip()).date()
        return datetime.combine(day, datetime.min.time(), tzinfo=zone), timezone

    raise ValueError("Google Calendar event boundary is missing dateTime/date")


def _google_event_to_remote_event(
    payload: dict[str, Any],
    *,
    fallback_timezone: str,
) -> RemoteEvent | None:
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    event_id_raw = payload.get("id")
    if not isinstance(event_id_raw, str) or not event_id_raw.strip():
        raise ValueError("Google Calendar event payload is missing a non-empty id")
    event_id = event_id_raw.strip()

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    start_at, start_timezone = _parse_google_event_boundary(
        start_payload, fallback_timezone=fallback_timezone
    )
    end_at, end_timezone = _parse_google_event_boundary(
        end_payload, fallback_timezone=fallback_timezone
    )

    recurrence = payload.get("recurrence")
    recurrence_rules = (
        tuple(rule for rule in recurrence if isinstance(rule, str))
        if isinstance(recurrence, list)
        else ()
    )
    color_id = payload.get("colorId")
    summary = payload.get("summary")

    return RemoteEvent(
        event_id=event_id,
        title=summary.strip() if isinstance(summary, str) and summary.strip() else "(untitled)",
        start_at=start_at,
        end_at=end_at,
        timezone=start_timezone or end_timezone or fallback_timezone,
        recurrence=recurrence_rules,
        color_id=color_id if isinstance(color_id, str) and color_id.strip() else None,
    )


def build_google_event_body(draft: EventDraft) -> dict[str, Any]:
    """Translate an ``EventDraft`` into a complete Google Calendar event resource."""
    zone = ZoneInfo(draft.timezone)
    body: dict[str, Any] = {
        "summary": draft.title,
        "description": draft.body,
        "start": {
            "dateTime": draft.start_at.astimezone(zone).isoformat(),
            "timeZone": draft.timezone,
        },
        "end": {
            "dateTime": draft.end_at.astimezone(zone).isoformat(),
            "timeZone": draft.timezone,
        },
        # useDefault is always sent, even when False.
        "reminders": {
            "useDefault": draft.use_default_reminders,
            "overrides": [
                {"method": str(reminder.method), "minutes": reminder.minutes}
                for reminder in draft.reminders
            ],
        },
    }
    if draft.recurrence:
        body["recurrence"] = list(draft.recurrence)
    if draft.color_id is not None:
        body["colorId"] = draft.color_id
    return body


class GoogleCalendarGateway(CalendarGateway):
    """Google gateway with OAuth refresh-token and authenticated request helpers."""

    def __init__(
        self,
        *,
        calendar_id: str,
        timezone: str,
        credentials: OAuthCredentials,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._calendar_id = calendar_id
        self._timezone = timezone
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=DEFAULT_REQUEST_TIMEOUT_SECONDS
        )
        self._oauth = GoogleOAuthClient(credentials, self._http_client)

    @property
    def name(self) -> str:
        return "google"

    def _events_path(self, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(self._calendar_id, safe='')}/events"
        if event_id is None:
            return path
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"{path}/{quote(normalized_event_id, safe='')}"

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(method=method, path=path, json_body=json_body)

        if response.status_code < 200 or response.status_code >= 300:
            raise GatewayRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise GatewayError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method, url=url, json_body=json_body, force_refresh=False
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, json_body=json_body, force_refresh=True
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method, url=url, json_body=json_body, force_refresh=False
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"Google Calendar request failed: {exc}") from exc

    async def create_event(self, draft: EventDraft) -> RemoteEvent:
        payload = await self._request_google_json(
            "POST",
            self._events_path(),
            json_body=build_google_event_body(draft),
        )
        event = _google_event_to_remote_event(payload, fallback_timezone=draft.timezone)
        if event is None:
            raise GatewayRequestError(
                status_code=200,
                message="Google Calendar returned a cancelled event after create",
            )
        return event

    async def get_event(self, event_id: str) -> RemoteEvent | None:
        response = await self._request_with_bearer(method="GET", path=self._events_path(event_id))

        if response.status_code in MISSING_EVENT_STATUS_CODES:
            return None
        if response.status_code < 200 or response.status_code >= 300:
            raise GatewayRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError("Google Calendar API returned invalid JSON for get_event") from exc

        if not isinstance(payload, dict):
            raise GatewayError("Google Calendar API returned an unexpected get_event payload")
        # Deleted events stay fetchable with status "cancelled"; treat as gone.
        return _google_event_to_remote_event(payload, fallback_timezone=self._timezone)

    async def update_event(self, event_id: str, draft: EventDraft) -> RemoteEvent:
        # PUT replaces the resource, so hand edits to owned fields do not survive.
        payload = await self._request_google_json(
            "PUT",
            self._events_path(event_id),
            json_body=build_google_event_body(draft),
        )
        event = _google_event_to_remote_event(payload, fallback_timezone=draft.timezone)
        if event is None:
            raise GatewayRequestError(
                status_code=200,
                message="Google Calendar returned a cancelled event after update",
            )
        return event

    async def delete_event(self, event_id: str) -> None:
        response = await self._request_with_bearer(
            method="DELETE", path=self._events_path(event_id)
        )

        if response.status_code in MISSING_EVENT_STATUS_CODES:
            logger.debug(
                "delete_event: event '%s' not found (already deleted); treating as success",
                event_id,
            )
            return

        if response.status_code < 200 or response.status_code >= 300:
            raise GatewayRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
