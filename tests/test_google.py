"""Unit tests for the Google Calendar gateway.

Covers:
- Event body shape (summary, times, reminders, recurrence, colorId)
- create/get/update/delete request methods and paths
- Missing and cancelled events reported as ``None``
- Idempotent delete on 404/410
- 401 forced token refresh and 429/503 backoff
- Credential redaction in gateway errors
- All-day events in an unknown zone fall back to the configured zone
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch
from zoneinfo import ZoneInfo

import httpx
import pytest

from weekcal.core.identity import IdentityStore
from weekcal.core.reconciler import Reconciler, TemplateState
from weekcal.core.templates import ReminderMethod, ReminderOverride
from weekcal.credentials import GOOGLE_OAUTH_TOKEN_URL, OAuthCredentials
from weekcal.errors import describe_error, redact_credential_values
from weekcal.gateway import EventDraft, GatewayError, GatewayRequestError, TokenRefreshError
from weekcal.google import (
    GOOGLE_CALENDAR_API_BASE_URL,
    RATE_LIMIT_MAX_RETRIES,
    GoogleCalendarGateway,
    _google_event_to_remote_event,
    build_google_event_body,
    safe_google_error_message,
)

from ._test_helpers import make_template

pytestmark = pytest.mark.unit

TIMEZONE = "America/New_York"
ZONE = ZoneInfo(TIMEZONE)


def _credentials() -> OAuthCredentials:
    return OAuthCredentials(
        client_id="client-id-123",
        client_secret="client-secret-456",
        refresh_token="refresh-token-789",
    )


def _token_response(access_token: str = "access-token-123") -> MagicMock:
    resp = MagicMock()
    resp.status_code = 200
    resp.json.return_value = {"access_token": access_token, "expires_in": 3600}
    return resp


def _make_http_response(
    status_code: int,
    body: dict | None = None,
    headers: dict[str, str] | None = None,
) -> MagicMock:
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = body or {}
    resp.text = ""
    # Use a plain dict (not MagicMock) so headers.get() returns None for missing keys.
    resp.headers = headers or {}
    return resp


def _event_payload(event_id: str = "evt-1", **overrides: Any) -> dict[str, Any]:
    payload = {
        "id": event_id,
        "status": "confirmed",
        "summary": "Standup",
        "start": {"dateTime": "2024-01-08T09:30:00-05:00", "timeZone": TIMEZONE},
        "end": {"dateTime": "2024-01-08T09:45:00-05:00", "timeZone": TIMEZONE},
        "recurrence": ["RRULE:FREQ=WEEKLY"],
    }
    payload.update(overrides)
    return payload


def _draft(**overrides: Any) -> EventDraft:
    start_at = datetime(2024, 1, 8, 9, 30, tzinfo=ZONE)
    values: dict[str, Any] = {
        "title": "Standup",
        "body": "Daily sync",
        "start_at": start_at,
        "end_at": start_at + timedelta(minutes=15),
        "timezone": TIMEZONE,
        "recurrence": ("RRULE:FREQ=WEEKLY",),
        "reminders": (
            ReminderOverride(method=ReminderMethod.POPUP, minutes=10),
            ReminderOverride(method=ReminderMethod.EMAIL, minutes=15),
        ),
    }
    values.update(overrides)
    return EventDraft(**values)


def _gateway(*request_responses: MagicMock, tokens: list[MagicMock] | None = None):
    mock_http = MagicMock(spec=httpx.AsyncClient)
    mock_http.post = AsyncMock(side_effect=tokens or [_token_response()])
    mock_http.request = AsyncMock(side_effect=list(request_responses))
    gateway = GoogleCalendarGateway(
        calendar_id="primary",
        timezone=TIMEZONE,
        credentials=_credentials(),
        http_client=mock_http,
    )
    return gateway, mock_http


# ============================================================================
# Event body
# ============================================================================


class TestBuildGoogleEventBody:
    def test_full_body(self):
        body = build_google_event_body(_draft(color_id="5"))
        assert body == {
            "summary": "Standup",
            "description": "Daily sync",
            "start": {"dateTime": "2024-01-08T09:30:00-05:00", "timeZone": TIMEZONE},
            "end": {"dateTime": "2024-01-08T09:45:00-05:00", "timeZone": TIMEZONE},
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "popup", "minutes": 10},
                    {"method": "email", "minutes": 15},
                ],
            },
            "recurrence": ["RRULE:FREQ=WEEKLY"],
            "colorId": "5",
        }

    def test_optional_fields_omitted(self):
        body = build_google_event_body(_draft(recurrence=(), reminders=()))
        assert "recurrence" not in body
        assert "colorId" not in body
        assert body["reminders"] == {"useDefault": False, "overrides": []}

    def test_times_rendered_in_event_timezone(self):
        start_at = datetime(2024, 1, 8, 14, 30, tzinfo=ZoneInfo("UTC"))
        body = build_google_event_body(_draft(start_at=start_at, end_at=start_at))
        assert body["start"]["dateTime"] == "2024-01-08T09:30:00-05:00"


class TestEventPayloadParsing:
    def test_confirmed_event(self):
        event = _google_event_to_remote_event(_event_payload(), fallback_timezone="UTC")
        assert event is not None
        assert event.event_id == "evt-1"
        assert event.start_at == datetime(2024, 1, 8, 9, 30, tzinfo=ZONE)
        assert event.timezone == TIMEZONE
        assert event.recurrence == ("RRULE:FREQ=WEEKLY",)

    def test_cancelled_event_is_none(self):
        payload = _event_payload(status="cancelled")
        assert _google_event_to_remote_event(payload, fallback_timezone="UTC") is None

    def test_all_day_event(self):
        payload = _event_payload(start={"date": "2024-01-08"}, end={"date": "2024-01-09"})
        event = _google_event_to_remote_event(payload, fallback_timezone=TIMEZONE)
        assert event is not None
        assert event.start_at == datetime(2024, 1, 8, tzinfo=ZONE)

    def test_all_day_event_with_unknown_zone_uses_fallback(self):
        payload = _event_payload(
            start={"date": "2024-01-08", "timeZone": "Mars/Olympus"},
            end={"date": "2024-01-09", "timeZone": "Mars/Olympus"},
        )
        event = _google_event_to_remote_event(payload, fallback_timezone=TIMEZONE)
        assert event is not None
        assert event.start_at == datetime(2024, 1, 8, tzinfo=ZONE)

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError, match="id"):
            _google_event_to_remote_event(_event_payload(id=""), fallback_timezone="UTC")


# ============================================================================
# Operations
# ============================================================================


class TestOperations:
    async def test_create_posts_full_body(self):
        gateway, mock_http = _gateway(_make_http_response(200, _event_payload("new-id")))

        event = await gateway.create_event(_draft())

        assert event.event_id == "new-id"
        method, url = mock_http.request.await_args.args
        assert method == "POST"
        assert url == f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events"
        kwargs = mock_http.request.await_args.kwargs
        assert kwargs["json"]["summary"] == "Standup"
        assert kwargs["headers"] == {"Authorization": "Bearer access-token-123"}

    async def test_update_uses_put(self):
        gateway, mock_http = _gateway(_make_http_response(200, _event_payload("evt-1")))

        await gateway.update_event("evt-1", _draft(title="Standup v2"))

        method, url = mock_http.request.await_args.args
        assert method == "PUT"
        assert url.endswith("/calendars/primary/events/evt-1")
        assert mock_http.request.await_args.kwargs["json"]["summary"] == "Standup v2"

    async def test_calendar_and_event_ids_are_quoted(self):
        mock_http = MagicMock(spec=httpx.AsyncClient)
        mock_http.post = AsyncMock(side_effect=[_token_response()])
        mock_http.request = AsyncMock(side_effect=[_make_http_response(204)])
        gateway = GoogleCalendarGateway(
            calendar_id="family@group.calendar.google.com",
            timezone=TIMEZONE,
            credentials=_credentials(),
            http_client=mock_http,
        )

        await gateway.delete_event("a/b")

        _, url = mock_http.request.await_args.args
        assert url.endswith("/calendars/family%40group.calendar.google.com/events/a%2Fb")

    async def test_get_event(self):
        gateway, _ = _gateway(_make_http_response(200, _event_payload("evt-1")))
        event = await gateway.get_event("evt-1")
        assert event is not None
        assert event.title == "Standup"

    @pytest.mark.parametrize("status_code", [404, 410])
    async def test_get_missing_event_is_none(self, status_code):
        gateway, _ = _gateway(_make_http_response(status_code))
        assert await gateway.get_event("gone") is None

    async def test_get_cancelled_event_is_none(self):
        gateway, _ = _gateway(_make_http_response(200, _event_payload(status="cancelled")))
        assert await gateway.get_event("evt-1") is None

    async def test_get_server_error_raises(self):
        gateway, _ = _gateway(_make_http_response(500, {"error": {"message": "Backend Error"}}))
        with pytest.raises(GatewayRequestError) as exc_info:
            await gateway.get_event("evt-1")
        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Backend Error"

    @pytest.mark.parametrize("status_code", [404, 410])
    async def test_delete_missing_event_succeeds(self, status_code):
        gateway, _ = _gateway(_make_http_response(status_code))
        await gateway.delete_event("gone")

    async def test_delete_forbidden_raises(self):
        gateway, _ = _gateway(_make_http_response(403, {"error": {"message": "Forbidden"}}))
        with pytest.raises(GatewayRequestError, match="403"):
            await gateway.delete_event("evt-1")

    async def test_blank_event_id_rejected(self):
        gateway, mock_http = _gateway()
        with pytest.raises(ValueError):
            await gateway.get_event("  ")
        mock_http.request.assert_not_awaited()

    async def test_transport_error_becomes_gateway_error(self):
        gateway, _ = _gateway(httpx.ConnectError("connection refused"))
        with pytest.raises(GatewayError, match="connection refused"):
            await gateway.get_event("evt-1")

    async def test_shutdown_leaves_injected_client_open(self):
        gateway, mock_http = _gateway()
        mock_http.aclose = AsyncMock()
        await gateway.shutdown()
        mock_http.aclose.assert_not_awaited()


class TestReconcileAgainstGoogle:
    async def test_odd_remote_event_does_not_block_later_templates(self):
        all_day = _event_payload(
            "evt-a",
            summary="Reading",
            start={"date": "2024-01-08", "timeZone": "Mars/Olympus"},
            end={"date": "2024-01-09", "timeZone": "Mars/Olympus"},
        )
        gateway, mock_http = _gateway(
            _make_http_response(200, all_day),
            _make_http_response(200, _event_payload("evt-a", summary="Reading")),
            _make_http_response(200, _event_payload("evt-b", summary="Walk")),
        )
        reconciler = Reconciler(gateway, timezone=TIMEZONE)

        report = await reconciler.reconcile(
            [
                make_template("Reading", weekdays=["mon"]),
                make_template("Walk", start_time="13:00", weekdays=["tue"]),
            ],
            IdentityStore({"Reading": "evt-a"}),
            week_start=date(2024, 1, 15),
        )

        assert [o.state for o in report.outcomes] == [
            TemplateState.SETTLED,
            TemplateState.SETTLED,
        ]
        assert report.store.as_dict() == {"Reading": "evt-a", "Walk": "evt-b"}
        assert [call.args[0] for call in mock_http.request.await_args_list] == [
            "GET",
            "PUT",
            "POST",
        ]


# ============================================================================
# Auth and retry
# ============================================================================


class TestAuthAndRetry:
    async def test_access_token_is_cached(self):
        gateway, mock_http = _gateway(
            _make_http_response(200, _event_payload()),
            _make_http_response(200, _event_payload()),
        )
        await gateway.get_event("evt-1")
        await gateway.get_event("evt-1")
        assert mock_http.post.await_count == 1
        assert mock_http.post.await_args.args == (GOOGLE_OAUTH_TOKEN_URL,)

    async def test_malformed_expiry_still_caches_token(self):
        token = _token_response()
        token.json.return_value = {"access_token": "access-token-123", "expires_in": "soon"}
        gateway, mock_http = _gateway(
            _make_http_response(200, _event_payload()),
            _make_http_response(200, _event_payload()),
            tokens=[token],
        )
        await gateway.get_event("evt-1")
        await gateway.get_event("evt-1")
        assert mock_http.post.await_count == 1

    async def test_unauthorized_forces_one_refresh(self):
        gateway, mock_http = _gateway(
            _make_http_response(401),
            _make_http_response(200, _event_payload()),
            tokens=[_token_response("stale"), _token_response("fresh")],
        )

        event = await gateway.get_event("evt-1")

        assert event is not None
        assert mock_http.post.await_count == 2
        last_headers = mock_http.request.await_args.kwargs["headers"]
        assert last_headers == {"Authorization": "Bearer fresh"}

    async def test_token_refresh_failure(self):
        bad_token = MagicMock()
        bad_token.status_code = 400
        bad_token.json.return_value = {"error": "invalid_grant"}
        bad_token.text = ""
        gateway, _ = _gateway(tokens=[bad_token])

        with pytest.raises(TokenRefreshError, match="invalid_grant"):
            await gateway.get_event("evt-1")

    async def test_retries_on_429_then_succeeds(self):
        gateway, mock_http = _gateway(
            _make_http_response(429),
            _make_http_response(200, _event_payload()),
        )
        with patch("weekcal.google.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            event = await gateway.get_event("evt-1")

        assert event is not None
        assert mock_sleep.await_count == 1
        assert mock_http.request.await_count == 2

    async def test_retry_after_header_is_honoured(self):
        gateway, _ = _gateway(
            _make_http_response(429, headers={"Retry-After": "7"}),
            _make_http_response(200, _event_payload()),
        )
        with patch("weekcal.google.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await gateway.get_event("evt-1")
        mock_sleep.assert_awaited_once_with(7.0)

    async def test_exponential_backoff_on_503(self):
        gateway, _ = _gateway(
            _make_http_response(503),
            _make_http_response(503),
            _make_http_response(200, _event_payload()),
        )
        with patch("weekcal.google.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await gateway.get_event("evt-1")
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    async def test_gives_up_after_max_retries(self):
        gateway, mock_http = _gateway(
            *[_make_http_response(429) for _ in range(RATE_LIMIT_MAX_RETRIES + 1)]
        )
        with patch("weekcal.google.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(GatewayRequestError) as exc_info:
                await gateway.get_event("evt-1")

        assert exc_info.value.status_code == 429
        assert mock_sleep.await_count == RATE_LIMIT_MAX_RETRIES
        assert mock_http.request.await_count == RATE_LIMIT_MAX_RETRIES + 1

    async def test_non_retryable_status_is_not_retried(self):
        gateway, mock_http = _gateway(_make_http_response(400, {"error": "bad request"}))
        with patch("weekcal.google.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(GatewayRequestError):
                await gateway.create_event(_draft())
        mock_sleep.assert_not_awaited()
        assert mock_http.request.await_count == 1


# ============================================================================
# Error messages
# ============================================================================


class TestErrorMessages:
    def test_safe_message_prefers_error_message(self):
        resp = _make_http_response(400, {"error": {"message": "  Invalid\n value "}})
        assert safe_google_error_message(resp) == "Invalid value"

    def test_safe_message_falls_back_to_text(self):
        resp = _make_http_response(502)
        resp.json.side_effect = ValueError("not json")
        resp.text = "Bad Gateway"
        assert safe_google_error_message(resp) == "Bad Gateway"

    def test_redacts_key_value_pairs(self):
        message = redact_credential_values("refresh_token=abc123 client_secret: s3cr3t")
        assert "abc123" not in message
        assert "s3cr3t" not in message

    def test_redacts_json_values(self):
        message = redact_credential_values('{"access_token": "ya29.secret"}')
        assert "ya29.secret" not in message

    def test_describe_error_is_single_line_and_capped(self):
        text = describe_error(RuntimeError("line one\nline two " + "x" * 400))
        assert "\n" not in text
        assert len(text) == 200
