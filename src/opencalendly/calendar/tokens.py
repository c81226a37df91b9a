"""Access-token resolution for calendar connections.

Every provider call is gated by :func:`resolve_access_token`: stored tokens are
decrypted, and when the access token is within the refresh skew of expiring
the provider's refresher is called once. One algorithm serves every provider;
providers differ only in the ``TokenRefresher`` they supply.

Refresh failures propagate untouched. Retrying them is the job of the caller
(writeback or sync orchestration), not of this module.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

import httpx
from pydantic import BaseModel, ConfigDict, field_validator

from opencalendly.calendar.crypto import decrypt_secret, encrypt_secret
from opencalendly.calendar.providers.base import TokenRefresher
from opencalendly.calendar.providers.google import GoogleOAuthClient
from opencalendly.calendar.providers.microsoft import MicrosoftOAuthClient
from opencalendly.scheduling.time_range import ensure_utc

logger = logging.getLogger(__name__)

REFRESH_SKEW = timedelta(seconds=60)

Decryptor = Callable[[str, str], str]


class CalendarConnectionSecretState(BaseModel):
    """Encrypted token state persisted for one calendar connection."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_token_encrypted: str
    refresh_token_encrypted: str
    access_token_expires_at: datetime

    @field_validator("access_token_expires_at")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class TokenResolution(BaseModel):
    """Plaintext tokens ready for a provider call. Never persist as-is."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refreshed: bool

    def __repr__(self) -> str:
        return (
            "TokenResolution(access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"access_token_expires_at={self.access_token_expires_at!r}, "
            f"refreshed={self.refreshed!r})"
        )

    __str__ = __repr__


def needs_refresh(expires_at: datetime, now: datetime) -> bool:
    return ensure_utc(expires_at) <= ensure_utc(now) + REFRESH_SKEW


async def resolve_access_token(
    connection: CalendarConnectionSecretState,
    *,
    encryption_secret: str,
    now: datetime,
    refresher: TokenRefresher,
    decrypt: Decryptor = decrypt_secret,
) -> TokenResolution:
    """Return a usable access token for *connection*, refreshing it if needed.

    Raises:
        DecryptionError: the stored tokens cannot be opened with the secret.
        Exception: whatever ``refresher.refresh`` raises, unchanged.
    """
    access_token = decrypt(connection.access_token_encrypted, encryption_secret)
    refresh_token = decrypt(connection.refresh_token_encrypted, encryption_secret)

    if not needs_refresh(connection.access_token_expires_at, now):
        return TokenResolution(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=connection.access_token_expires_at,
            refreshed=False,
        )

    logger.info(
        "Access token expires at %s (now %s); refreshing",
        connection.access_token_expires_at.isoformat(),
        ensure_utc(now).isoformat(),
    )
    response = await refresher.refresh(refresh_token)
    rotated = response.refresh_token is not None
    logger.debug("Token refresh succeeded (refresh token rotated: %s)", rotated)
    return TokenResolution(
        access_token=response.access_token,
        refresh_token=response.refresh_token if rotated else refresh_token,
        access_token_expires_at=ensure_utc(now) + timedelta(seconds=response.expires_in_seconds),
        refreshed=True,
    )


def seal_token_resolution(
    resolution: TokenResolution,
    *,
    encryption_secret: str,
) -> CalendarConnectionSecretState:
    """Re-encrypt a resolution into the state the caller persists after a refresh."""
    return CalendarConnectionSecretState(
        access_token_encrypted=encrypt_secret(resolution.access_token, encryption_secret),
        refresh_token_encrypted=encrypt_secret(resolution.refresh_token, encryption_secret),
        access_token_expires_at=resolution.access_token_expires_at,
    )


async def resolve_google_access_token(
    connection: CalendarConnectionSecretState,
    *,
    encryption_secret: str,
    client_id: str,
    client_secret: str,
    now: datetime,
    http_client: httpx.AsyncClient | None = None,
) -> TokenResolution:
    oauth = GoogleOAuthClient(client_id=client_id, client_secret=client_secret, http_client=http_client)
    try:
        return await resolve_access_token(
            connection, encryption_secret=encryption_secret, now=now, refresher=oauth
        )
    finally:
        await oauth.aclose()


async def resolve_microsoft_access_token(
    connection: CalendarConnectionSecretState,
    *,
    encryption_secret: str,
    client_id: str,
    client_secret: str,
    now: datetime,
    http_client: httpx.AsyncClient | None = None,
) -> TokenResolution:
    oauth = MicrosoftOAuthClient(
        client_id=client_id, client_secret=client_secret, http_client=http_client
    )
    try:
        return await resolve_access_token(
            connection, encryption_secret=encryption_secret, now=now, refresher=oauth
        )
    finally:
        await oauth.aclose()
