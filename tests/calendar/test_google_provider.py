"""Tests for the Google OAuth and Calendar adapters."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from opencalendly.calendar.providers.base import (
    BusyWindowFetcher,
    CalendarProviderError,
    CalendarTokenRefreshError,
    TokenRefresher,
    WritebackBookingContext,
    WritebackProviderClient,
)
from opencalendly.calendar.providers.google import (
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    GoogleCalendarClient,
    GoogleOAuthClient,
)

pytestmark = pytest.mark.unit

START = datetime(2026, 3, 2, 0, 0, tzinfo=UTC)
END = datetime(2026, 3, 3, 0, 0, tzinfo=UTC)


def _http(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _booking() -> WritebackBookingContext:
    return WritebackBookingContext(
        event_name="Intro call",
        invitee_name="Pat Doe",
        invitee_email="pat@example.com",
        starts_at=datetime(2026, 3, 3, 9, 0, tzinfo=UTC),
        ends_at=datetime(2026, 3, 3, 9, 30, tzinfo=UTC),
        location_value="https://meet.example.com/abc",
    )


class TestGoogleOAuthClient:
    def test_authorization_url(self):
        client = GoogleOAuthClient(client_id="cid", client_secret="csecret")
        url = urlparse(
            client.build_authorization_url(redirect_uri="https://app.example.com/cb", state="st")
        )
        params = parse_qs(url.query)
        assert params["client_id"] == ["cid"]
        assert params["state"] == ["st"]
        assert params["access_type"] == ["offline"]
        assert params["prompt"] == ["consent"]
        assert "https://www.googleapis.com/auth/calendar.events" in params["scope"][0].split(" ")

    def test_repr_hides_client_secret(self):
        client = GoogleOAuthClient(client_id="cid", client_secret="csecret")
        assert "csecret" not in repr(client)

    def test_satisfies_refresher_protocol(self):
        assert isinstance(GoogleOAuthClient(client_id="cid", client_secret="s"), TokenRefresher)

    async def test_exchange_code(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "access_token": "a",
                    "refresh_token": "r",
                    "expires_in": 3599,
                    "scope": "openid",
                    "token_type": "Bearer",
                },
            )

        async with _http(handler) as http:
            client = GoogleOAuthClient(client_id="cid", client_secret="csecret", http_client=http)
            token = await client.exchange_code(code="c0de", redirect_uri="https://app.example.com/cb")

        form = parse_qs(seen[0].content.decode())
        assert str(seen[0].url) == GOOGLE_OAUTH_TOKEN_URL
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["c0de"]
        assert token.access_token == "a"
        assert token.refresh_token == "r"
        assert token.expires_in_seconds == 3599

    async def test_refresh_error_is_typed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text='{"error": "invalid_grant"}')

        async with _http(handler) as http:
            client = GoogleOAuthClient(client_id="cid", client_secret="csecret", http_client=http)
            with pytest.raises(CalendarTokenRefreshError) as exc_info:
                await client.refresh("stale")

        assert exc_info.value.status_code == 400
        assert "invalid_grant" in exc_info.value.message

    async def test_refresh_rejects_malformed_payload(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "a"})

        async with _http(handler) as http:
            client = GoogleOAuthClient(client_id="cid", client_secret="csecret", http_client=http)
            with pytest.raises(CalendarTokenRefreshError, match="invalid payload"):
                await client.refresh("r")


class TestGoogleCalendarClient:
    def test_satisfies_fetcher_protocol(self):
        assert isinstance(GoogleCalendarClient(), BusyWindowFetcher)

    def test_bound_client_satisfies_writeback_protocol(self):
        assert isinstance(GoogleCalendarClient().bind("tok"), WritebackProviderClient)
        assert "tok" not in repr(GoogleCalendarClient().bind("tok"))

    async def test_fetch_busy_windows(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "calendars": {
                        "primary": {
                            "busy": [
                                {"start": "2026-03-02T09:00:00Z", "end": "2026-03-02T10:00:00Z"},
                                {"start": "2026-03-02T11:00:00Z"},
                            ]
                        }
                    }
                },
            )

        async with _http(handler) as http:
            windows = await GoogleCalendarClient(http).fetch_busy_windows("tok", START, END)

        body = json.loads(seen[0].content)
        assert str(seen[0].url) == f"{GOOGLE_CALENDAR_API_BASE_URL}/freeBusy"
        assert seen[0].headers["Authorization"] == "Bearer tok"
        assert body["timeMin"] == "2026-03-02T00:00:00Z"
        assert body["items"] == [{"id": "primary"}]
        assert [(w.start, w.end) for w in windows] == [("2026-03-02T09:00:00Z", "2026-03-02T10:00:00Z")]

    async def test_fetch_busy_windows_missing_calendar(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"calendars": {}})

        async with _http(handler) as http:
            assert await GoogleCalendarClient(http).fetch_busy_windows("tok", START, END) == []

    async def test_error_excerpt_is_capped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="e" * 4000)

        async with _http(handler) as http:
            with pytest.raises(CalendarProviderError) as exc_info:
                await GoogleCalendarClient(http).fetch_busy_windows("tok", START, END)

        assert exc_info.value.status_code == 503
        assert exc_info.value.message.count("e" * 10) > 0
        assert len(exc_info.value.message) < 1100

    async def test_create_event(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "evt-1"})

        async with _http(handler) as http:
            created = await GoogleCalendarClient(http).bind("tok").create_event(_booking())

        body = json.loads(seen[0].content)
        assert seen[0].method == "POST"
        assert str(seen[0].url) == f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events"
        assert body["summary"] == "Intro call"
        assert body["start"] == {"dateTime": "2026-03-03T09:00:00Z", "timeZone": "UTC"}
        assert body["attendees"] == [{"email": "pat@example.com", "displayName": "Pat Doe"}]
        assert body["location"] == "https://meet.example.com/abc"
        assert created.external_event_id == "evt-1"

    async def test_create_event_requires_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={})

        async with _http(handler) as http:
            with pytest.raises(CalendarProviderError, match="missing event id"):
                await GoogleCalendarClient(http).create_event("tok", _booking())

    @pytest.mark.parametrize("status", [404, 410])
    async def test_cancel_already_gone_is_success(self, status):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            return httpx.Response(status)

        async with _http(handler) as http:
            await GoogleCalendarClient(http).cancel_event("tok", "evt-1")

    async def test_update_event(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "evt-1"})

        async with _http(handler) as http:
            await GoogleCalendarClient(http).update_event(
                "tok",
                "evt-1",
                datetime(2026, 3, 4, 10, tzinfo=UTC),
                datetime(2026, 3, 4, 10, 30, tzinfo=UTC),
            )

        assert seen[0].method == "PATCH"
        assert str(seen[0].url).endswith("/events/evt-1")
        assert json.loads(seen[0].content)["end"]["dateTime"] == "2026-03-04T10:30:00Z"

    async def test_update_failure_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="backend error")

        async with _http(handler) as http:
            with pytest.raises(CalendarProviderError, match="backend error"):
                await GoogleCalendarClient(http).update_event("tok", "evt-1", START, END)

    async def test_transport_error_is_wrapped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _http(handler) as http:
            with pytest.raises(CalendarProviderError, match="request failed"):
                await GoogleCalendarClient(http).cancel_event("tok", "evt-1")

    async def test_fetch_user_profile(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"sub": "123", "email": "owner@example.com"})

        async with _http(handler) as http:
            profile = await GoogleCalendarClient(http).fetch_user_profile("tok")

        assert profile.subject == "123"
        assert profile.email == "owner@example.com"
