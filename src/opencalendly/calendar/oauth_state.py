"""Signed ``state`` parameter for the calendar OAuth connect flow.

The token is ``<payload>.<signature>``: a base64url JSON payload and its
HMAC-SHA256 signature. Verification returns ``None`` for anything that is
not a well-formed, correctly signed, unexpired token for a supported
provider; callers treat that uniformly as "reject the callback".
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from opencalendly.scheduling.time_range import ensure_utc

logger = logging.getLogger(__name__)

STATE_VERSION = "v1"

CalendarProviderName = Literal["google", "microsoft"]


class OAuthStatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str
    provider: CalendarProviderName
    redirect_uri: str
    exp: int


def _b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded, altchars=b"-_", validate=True)


def _sign(payload_encoded: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_encoded.encode("ascii"), hashlib.sha256)
    return _b64url_encode(digest.digest())


def create_oauth_state(
    *,
    user_id: str,
    provider: CalendarProviderName,
    redirect_uri: str,
    expires_at: datetime,
    secret: str,
) -> str:
    payload = {
        "v": STATE_VERSION,
        "userId": user_id,
        "provider": provider,
        "redirectUri": redirect_uri,
        "exp": int(ensure_utc(expires_at).timestamp()),
    }
    payload_encoded = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{payload_encoded}.{_sign(payload_encoded, secret)}"


def verify_oauth_state(*, token: str, secret: str, now: datetime) -> OAuthStatePayload | None:
    if not token.isascii():
        return None
    parts = token.split(".")
    if len(parts) != 2 or not all(parts):
        return None
    payload_encoded, signature = parts

    expected = _sign(payload_encoded, secret)
    if not hmac.compare_digest(signature.encode("ascii", "replace"), expected.encode("ascii")):
        logger.warning("Rejected OAuth state with an invalid signature")
        return None

    try:
        raw = json.loads(_b64url_decode(payload_encoded))
    except (binascii.Error, ValueError):
        return None
    if not isinstance(raw, dict) or raw.get("v") != STATE_VERSION:
        return None

    exp = raw.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, int):
        return None
    try:
        payload = OAuthStatePayload(
            user_id=raw.get("userId"),
            provider=raw.get("provider"),
            redirect_uri=raw.get("redirectUri"),
            exp=exp,
        )
    except ValidationError:
        return None

    if payload.exp <= int(ensure_utc(now).timestamp()):
        logger.info("Rejected expired OAuth state for user %s", payload.user_id)
        return None
    return payload
