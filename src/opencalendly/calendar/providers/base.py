"""Provider-agnostic contracts for calendar integrations.

This module defines:
- the error hierarchy raised by provider adapters
- the payload models exchanged with providers (token responses, busy windows,
  booking context for event writes)
- the capability protocols the core consumes: ``TokenRefresher``,
  ``BusyWindowFetcher`` and ``WritebackProviderClient``
- ``ProviderHttpClient``, the shared ``httpx`` plumbing both adapters build on
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from opencalendly.scheduling.time_range import ensure_utc

logger = logging.getLogger(__name__)

MAX_ERROR_EXCERPT_LENGTH = 1000
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


class CalendarProviderError(RuntimeError):
    """Raised when a provider request fails or returns an unusable payload."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class CalendarTokenRefreshError(CalendarProviderError):
    """Raised when a code exchange or refresh-token exchange fails."""


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Normalized OAuth token endpoint response."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_token: str = Field(min_length=1)
    expires_in_seconds: int = Field(gt=0)
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str | None = None

    def __repr__(self) -> str:
        return (
            f"TokenResponse(access_token=<REDACTED>, "
            f"expires_in_seconds={self.expires_in_seconds!r}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"scope={self.scope!r})"
        )

    __str__ = __repr__

    @classmethod
    def from_payload(cls, payload: Any, *, provider_label: str, action: str) -> TokenResponse:
        """Validate a raw token endpoint JSON body.

        ``access_token`` must be a string and ``expires_in`` a number; optional
        string fields are kept only when they are strings.
        """
        if not isinstance(payload, Mapping):
            raise CalendarTokenRefreshError(f"{provider_label} token {action} returned an invalid payload.")
        access_token = payload.get("access_token")
        expires_in = payload.get("expires_in")
        if (
            not isinstance(access_token, str)
            or isinstance(expires_in, bool)
            or not isinstance(expires_in, int | float)
        ):
            raise CalendarTokenRefreshError(f"{provider_label} token {action} returned an invalid payload.")

        optional = {
            key: payload[key]
            for key in ("refresh_token", "scope", "token_type")
            if isinstance(payload.get(key), str)
        }
        try:
            return cls(access_token=access_token, expires_in_seconds=int(expires_in), **optional)
        except ValidationError as exc:
            raise CalendarTokenRefreshError(
                f"{provider_label} token {action} returned an invalid payload."
            ) from exc


class RawBusyWindow(BaseModel):
    """Busy interval exactly as a provider reported it (ISO strings, unvalidated)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    start: str
    end: str


class ProviderUserProfile(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    subject: str = Field(min_length=1)
    email: str | None = None


class CreatedEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    external_event_id: str = Field(min_length=1)


class WritebackBookingContext(BaseModel):
    """The booking details written to the organizer's external calendar."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    event_name: str
    invitee_name: str
    invitee_email: str
    starts_at: datetime
    ends_at: datetime
    timezone: str = "UTC"
    location_type: str | None = None
    location_value: str | None = None
    idempotency_key: str | None = None

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)


# ---------------------------------------------------------------------------
# Capability protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> TokenResponse: ...


@runtime_checkable
class BusyWindowFetcher(Protocol):
    async def fetch_busy_windows(
        self, access_token: str, start: datetime, end: datetime
    ) -> list[RawBusyWindow]: ...


@runtime_checkable
class WritebackProviderClient(Protocol):
    async def create_event(self, booking: WritebackBookingContext) -> CreatedEvent: ...

    async def cancel_event(self, external_event_id: str) -> None: ...

    async def update_event(
        self, external_event_id: str, starts_at: datetime, ends_at: datetime
    ) -> None: ...


# ---------------------------------------------------------------------------
# Shared HTTP plumbing
# ---------------------------------------------------------------------------


def read_error_excerpt(response: httpx.Response) -> str:
    """Response body capped so unbounded provider payloads never propagate."""
    return response.text[:MAX_ERROR_EXCERPT_LENGTH]


def to_utc_iso(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def parse_iso_instant(value: str) -> datetime | None:
    """Parse an ISO-8601 instant; naive values are read as UTC. ``None`` if invalid."""
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class ProviderHttpClient:
    """Owns (or borrows) an ``httpx.AsyncClient`` and wraps transport failures."""

    label = "Calendar provider"

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _send(
        self,
        method: str,
        url: str,
        *,
        action: str,
        access_token: str | None = None,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        form: dict[str, str] | None = None,
        error_cls: type[CalendarProviderError] = CalendarProviderError,
    ) -> httpx.Response:
        headers: dict[str, str] = {"Accept": "application/json"}
        if access_token is not None:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                data=form,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise error_cls(f"{self.label} {action} request failed: {exc}") from exc

    def _raise_for_status(
        self,
        response: httpx.Response,
        *,
        action: str,
        error_cls: type[CalendarProviderError] = CalendarProviderError,
    ) -> None:
        if 200 <= response.status_code < 300:
            return
        raise error_cls(
            f"{self.label} {action} failed: {read_error_excerpt(response)}",
            status_code=response.status_code,
        )

    def _json_object(self, response: httpx.Response, *, action: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarProviderError(f"{self.label} {action} returned invalid JSON.") from exc
        if not isinstance(payload, dict):
            raise CalendarProviderError(f"{self.label} {action} returned an unexpected payload.")
        return payload


class OAuthProviderClient(ProviderHttpClient):
    """Authorization-code and refresh-token exchange against one token endpoint.

    Subclasses set ``authorization_url``, ``token_url``, ``default_scopes`` and
    any extra authorization parameters; the exchange logic is shared.
    """

    authorization_url: str = ""
    token_url: str = ""
    default_scopes: tuple[str, ...] = ()
    extra_authorization_params: Mapping[str, str] = {}

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(http_client)
        self._client_id = client_id
        self._client_secret = client_secret

    def __repr__(self) -> str:
        return f"{type(self).__name__}(client_id={self._client_id!r}, client_secret=<REDACTED>)"

    def build_authorization_url(
        self,
        *,
        redirect_uri: str,
        state: str,
        scopes: list[str] | tuple[str, ...] | None = None,
    ) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            **self.extra_authorization_params,
            "scope": " ".join(scopes if scopes is not None else self.default_scopes),
            "state": state,
        }
        return f"{self.authorization_url}?{urlencode(params)}"

    async def exchange_code(self, *, code: str, redirect_uri: str) -> TokenResponse:
        return await self._token_request(
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            action="exchange",
        )

    async def refresh(self, refresh_token: str) -> TokenResponse:
        logger.info("Refreshing %s access token", self.label)
        return await self._token_request(
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            action="refresh",
        )

    async def _token_request(self, form: dict[str, str], *, action: str) -> TokenResponse:
        response = await self._send(
            "POST",
            self.token_url,
            action=f"token {action}",
            form=form,
            error_cls=CalendarTokenRefreshError,
        )
        self._raise_for_status(response, action=f"token {action}", error_cls=CalendarTokenRefreshError)
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                f"{self.label} token {action} returned invalid JSON."
            ) from exc
        return TokenResponse.from_payload(payload, provider_label=self.label, action=action)


class BoundWritebackClient:
    """Adapts a provider calendar client to ``WritebackProviderClient`` for one token."""

    def __init__(self, calendar_client: Any, access_token: str) -> None:
        self._calendar_client = calendar_client
        self._access_token = access_token

    def __repr__(self) -> str:
        return f"BoundWritebackClient({self._calendar_client!r}, access_token=<REDACTED>)"

    async def create_event(self, booking: WritebackBookingContext) -> CreatedEvent:
        return await self._calendar_client.create_event(self._access_token, booking)

    async def cancel_event(self, external_event_id: str) -> None:
        await self._calendar_client.cancel_event(self._access_token, external_event_id)

    async def update_event(self, external_event_id: str, starts_at: datetime, ends_at: datetime) -> None:
        await self._calendar_client.update_event(
            self._access_token, external_event_id, starts_at, ends_at
        )
