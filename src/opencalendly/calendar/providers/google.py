"""Google Calendar adapter: OAuth exchange, free/busy lookup and event writes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from opencalendly.calendar.providers.base import (
    BoundWritebackClient,
    CalendarProviderError,
    CreatedEvent,
    OAuthProviderClient,
    ProviderHttpClient,
    ProviderUserProfile,
    RawBusyWindow,
    WritebackBookingContext,
    to_utc_iso,
)

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_PRIMARY_CALENDAR_ID = "primary"

DEFAULT_GOOGLE_SCOPES = (
    "openid",
    "email",
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
)

# Deleted or already-removed events report 404/410; both mean there is nothing left to change.
_GONE_STATUS_CODES = {404, 410}


class GoogleOAuthClient(OAuthProviderClient):
    label = "Google"
    authorization_url = GOOGLE_AUTH_URL
    token_url = GOOGLE_OAUTH_TOKEN_URL
    default_scopes = DEFAULT_GOOGLE_SCOPES
    extra_authorization_params = {
        "access_type": "offline",
        "include_granted_scopes": "true",
        "prompt": "consent",
    }


def _google_event_body(booking: WritebackBookingContext) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": booking.event_name,
        "description": f"Booking with {booking.invitee_name} ({booking.invitee_email})",
        "start": {"dateTime": to_utc_iso(booking.starts_at), "timeZone": "UTC"},
        "end": {"dateTime": to_utc_iso(booking.ends_at), "timeZone": "UTC"},
        "attendees": [{"email": booking.invitee_email, "displayName": booking.invitee_name}],
    }
    if booking.location_value:
        body["location"] = booking.location_value
    return body


class GoogleCalendarClient(ProviderHttpClient):
    """Calendar API calls for an already-resolved access token."""

    label = "Google"

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        calendar_id: str = GOOGLE_PRIMARY_CALENDAR_ID,
    ) -> None:
        super().__init__(http_client)
        self._calendar_id = calendar_id

    def bind(self, access_token: str) -> BoundWritebackClient:
        return BoundWritebackClient(self, access_token)

    def _events_url(self, external_event_id: str | None = None) -> str:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{quote(self._calendar_id, safe='')}/events"
        if external_event_id is not None:
            url = f"{url}/{quote(external_event_id, safe='')}"
        return url

    async def fetch_user_profile(self, access_token: str) -> ProviderUserProfile:
        response = await self._send(
            "GET", GOOGLE_USERINFO_URL, action="user profile lookup", access_token=access_token
        )
        self._raise_for_status(response, action="user profile lookup")
        payload = self._json_object(response, action="user profile lookup")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise CalendarProviderError("Google user profile payload is missing sub.")
        email = payload.get("email")
        return ProviderUserProfile(subject=subject, email=email if isinstance(email, str) else None)

    async def fetch_busy_windows(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[RawBusyWindow]:
        response = await self._send(
            "POST",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/freeBusy",
            action="free/busy lookup",
            access_token=access_token,
            json_body={
                "timeMin": to_utc_iso(start),
                "timeMax": to_utc_iso(end),
                "items": [{"id": self._calendar_id}],
            },
        )
        self._raise_for_status(response, action="free/busy lookup")
        payload = self._json_object(response, action="free/busy lookup")

        calendars = payload.get("calendars")
        calendar = calendars.get(self._calendar_id) if isinstance(calendars, dict) else None
        busy = calendar.get("busy") if isinstance(calendar, dict) else None
        if not isinstance(busy, list):
            return []
        return [
            RawBusyWindow(start=item["start"], end=item["end"])
            for item in busy
            if isinstance(item, dict)
            and isinstance(item.get("start"), str)
            and isinstance(item.get("end"), str)
        ]

    async def create_event(self, access_token: str, booking: WritebackBookingContext) -> CreatedEvent:
        response = await self._send(
            "POST",
            self._events_url(),
            action="calendar event create",
            access_token=access_token,
            json_body=_google_event_body(booking),
        )
        self._raise_for_status(response, action="calendar event create")
        payload = self._json_object(response, action="calendar event create")
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise CalendarProviderError("Google calendar create response missing event id.")
        logger.info("Created Google calendar event %s", event_id)
        return CreatedEvent(external_event_id=event_id)

    async def cancel_event(self, access_token: str, external_event_id: str) -> None:
        response = await self._send(
            "DELETE",
            self._events_url(external_event_id),
            action="calendar event cancel",
            access_token=access_token,
        )
        if response.status_code in _GONE_STATUS_CODES:
            logger.info("Google calendar event %s already gone", external_event_id)
            return
        self._raise_for_status(response, action="calendar event cancel")

    async def update_event(
        self,
        access_token: str,
        external_event_id: str,
        starts_at: datetime,
        ends_at: datetime,
    ) -> None:
        response = await self._send(
            "PATCH",
            self._events_url(external_event_id),
            action="calendar event update",
            access_token=access_token,
            json_body={
                "start": {"dateTime": to_utc_iso(starts_at), "timeZone": "UTC"},
                "end": {"dateTime": to_utc_iso(ends_at), "timeZone": "UTC"},
            },
        )
        if response.status_code in _GONE_STATUS_CODES:
            logger.info("Google calendar event %s already gone; update skipped", external_event_id)
            return
        self._raise_for_status(response, action="calendar event update")
