"""Microsoft Graph calendar adapter.

Graph wants wall-clock ``dateTime`` strings plus a separate ``timeZone``; all
writes here send UTC. Schedule items read back may carry either an explicit
offset or a bare local time with its zone name, and both are normalized to UTC.
Event creation sends the booking's idempotency key as ``transactionId`` so a
retried create can be found instead of duplicated.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from opencalendly.calendar.providers.base import (
    BoundWritebackClient,
    CalendarProviderError,
    CreatedEvent,
    OAuthProviderClient,
    ProviderHttpClient,
    ProviderUserProfile,
    RawBusyWindow,
    WritebackBookingContext,
)
from opencalendly.scheduling.time_range import ensure_utc

logger = logging.getLogger(__name__)

MICROSOFT_AUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
MICROSOFT_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_USERINFO_URL = "https://graph.microsoft.com/v1.0/me"
MICROSOFT_GET_SCHEDULE_URL = "https://graph.microsoft.com/v1.0/me/calendar/getSchedule"
MICROSOFT_EVENTS_URL = "https://graph.microsoft.com/v1.0/me/events"
MICROSOFT_SCHEDULE_INTERVAL_MINUTES = 30

DEFAULT_MICROSOFT_SCOPES = (
    "openid",
    "email",
    "offline_access",
    "User.Read",
    "Calendars.Read",
    "Calendars.ReadWrite",
)

_OFFSET_SUFFIX = re.compile(r"(?:Z|[+-]\d{2}:\d{2})$")


class MicrosoftOAuthClient(OAuthProviderClient):
    label = "Microsoft"
    authorization_url = MICROSOFT_AUTH_URL
    token_url = MICROSOFT_TOKEN_URL
    default_scopes = DEFAULT_MICROSOFT_SCOPES
    extra_authorization_params = {
        "response_mode": "query",
        "prompt": "select_account",
    }


def to_graph_datetime(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S")


def parse_graph_datetime(value: str, timezone: str | None = None) -> str | None:
    """Normalize a Graph ``dateTime`` to a UTC ISO string, or ``None`` if unparseable."""
    raw = value.strip()
    has_offset = bool(_OFFSET_SUFFIX.search(raw))
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None

    if not has_offset or parsed.tzinfo is None:
        try:
            zone = ZoneInfo(timezone) if timezone else UTC
        except (ZoneInfoNotFoundError, ValueError):
            return None
        parsed = parsed.replace(tzinfo=zone)
    return parsed.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _graph_time(value: datetime) -> dict[str, str]:
    return {"dateTime": to_graph_datetime(value), "timeZone": "UTC"}


class MicrosoftCalendarClient(ProviderHttpClient):
    label = "Microsoft"

    def bind(self, access_token: str) -> BoundWritebackClient:
        return BoundWritebackClient(self, access_token)

    @staticmethod
    def _event_url(external_event_id: str) -> str:
        return f"{MICROSOFT_EVENTS_URL}/{quote(external_event_id, safe='')}"

    async def fetch_user_profile(self, access_token: str) -> ProviderUserProfile:
        response = await self._send(
            "GET",
            MICROSOFT_USERINFO_URL,
            action="user profile lookup",
            access_token=access_token,
            params={"$select": "id,mail,userPrincipalName"},
        )
        self._raise_for_status(response, action="user profile lookup")
        payload = self._json_object(response, action="user profile lookup")
        subject = payload.get("id")
        if not isinstance(subject, str) or not subject:
            raise CalendarProviderError("Microsoft user profile payload is missing id.")

        email = payload.get("mail")
        if not isinstance(email, str) or not email:
            principal = payload.get("userPrincipalName")
            email = principal if isinstance(principal, str) and principal else None
        return ProviderUserProfile(subject=subject, email=email)

    async def fetch_busy_windows(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[RawBusyWindow]:
        response = await self._send(
            "POST",
            MICROSOFT_GET_SCHEDULE_URL,
            action="free/busy lookup",
            access_token=access_token,
            json_body={
                "schedules": ["me"],
                "startTime": _graph_time(start),
                "endTime": _graph_time(end),
                "availabilityViewInterval": MICROSOFT_SCHEDULE_INTERVAL_MINUTES,
            },
        )
        self._raise_for_status(response, action="free/busy lookup")
        payload = self._json_object(response, action="free/busy lookup")

        schedules = payload.get("value")
        first = schedules[0] if isinstance(schedules, list) and schedules else None
        items = first.get("scheduleItems") if isinstance(first, dict) else None
        if not isinstance(items, list):
            return []

        windows: list[RawBusyWindow] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            start_info = item.get("start") if isinstance(item.get("start"), dict) else {}
            end_info = item.get("end") if isinstance(item.get("end"), dict) else {}
            raw_start = start_info.get("dateTime")
            raw_end = end_info.get("dateTime")
            if not isinstance(raw_start, str) or not isinstance(raw_end, str):
                continue
            start_iso = parse_graph_datetime(raw_start, start_info.get("timeZone"))
            end_iso = parse_graph_datetime(raw_end, end_info.get("timeZone"))
            if start_iso is None or end_iso is None:
                continue
            windows.append(RawBusyWindow(start=start_iso, end=end_iso))
        return windows

    async def create_event(self, access_token: str, booking: WritebackBookingContext) -> CreatedEvent:
        body: dict[str, Any] = {
            "subject": booking.event_name,
            "body": {
                "contentType": "text",
                "content": f"Booking with {booking.invitee_name} ({booking.invitee_email})",
            },
            "start": _graph_time(booking.starts_at),
            "end": _graph_time(booking.ends_at),
            "attendees": [
                {
                    "emailAddress": {
                        "address": booking.invitee_email,
                        "name": booking.invitee_name,
                    },
                    "type": "required",
                }
            ],
        }
        if booking.idempotency_key:
            body["transactionId"] = booking.idempotency_key
        if booking.location_value:
            body["location"] = {"displayName": booking.location_value}

        response = await self._send(
            "POST",
            MICROSOFT_EVENTS_URL,
            action="calendar event create",
            access_token=access_token,
            json_body=body,
        )
        self._raise_for_status(response, action="calendar event create")
        payload = self._json_object(response, action="calendar event create")
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise CalendarProviderError("Microsoft calendar create response missing event id.")
        logger.info("Created Microsoft calendar event %s", event_id)
        return CreatedEvent(external_event_id=event_id)

    async def find_event_by_idempotency_key(
        self, access_token: str, idempotency_key: str
    ) -> CreatedEvent | None:
        escaped = idempotency_key.replace("'", "''")
        response = await self._send(
            "GET",
            MICROSOFT_EVENTS_URL,
            action="calendar event lookup",
            access_token=access_token,
            params={
                "$filter": f"transactionId eq '{escaped}'",
                "$select": "id",
                "$top": "1",
            },
        )
        self._raise_for_status(response, action="calendar event lookup")
        payload = self._json_object(response, action="calendar event lookup")
        values = payload.get("value")
        first = values[0] if isinstance(values, list) and values else None
        event_id = first.get("id") if isinstance(first, dict) else None
        if not isinstance(event_id, str) or not event_id:
            return None
        return CreatedEvent(external_event_id=event_id)

    async def cancel_event(self, access_token: str, external_event_id: str) -> None:
        response = await self._send(
            "DELETE",
            self._event_url(external_event_id),
            action="calendar event cancel",
            access_token=access_token,
        )
        if response.status_code == 404:
            logger.info("Microsoft calendar event %s already gone", external_event_id)
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
            self._event_url(external_event_id),
            action="calendar event update",
            access_token=access_token,
            json_body={"start": _graph_time(starts_at), "end": _graph_time(ends_at)},
        )
        if response.status_code == 404:
            logger.info("Microsoft calendar event %s already gone; update skipped", external_event_id)
            return
        self._raise_for_status(response, action="calendar event update")
