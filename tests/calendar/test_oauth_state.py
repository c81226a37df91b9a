"""Tests for signed OAuth state tokens."""

from __future__ import annotations

import base64
import json
from datetime import UTC, datetime, timedelta

import pytest

from opencalendly.calendar.oauth_state import OAuthStatePayload, create_oauth_state, verify_oauth_state

pytestmark = pytest.mark.unit

SECRET = "oauth-state-signing-secret"
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _state(**overrides) -> str:
    params = {
        "user_id": "user-1",
        "provider": "google",
        "redirect_uri": "https://app.example.com/settings/calendars",
        "expires_at": NOW + timedelta(minutes=10),
        "secret": SECRET,
    }
    params.update(overrides)
    return create_oauth_state(**params)


class TestOAuthState:
    def test_round_trip(self):
        payload = verify_oauth_state(token=_state(), secret=SECRET, now=NOW)
        assert payload == OAuthStatePayload(
            user_id="user-1",
            provider="google",
            redirect_uri="https://app.example.com/settings/calendars",
            exp=int((NOW + timedelta(minutes=10)).timestamp()),
        )

    def test_payload_uses_wire_keys(self):
        encoded = _state(provider="microsoft").split(".")[0]
        raw = json.loads(base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)))
        assert set(raw) == {"v", "userId", "provider", "redirectUri", "exp"}
        assert raw["v"] == "v1"
        assert raw["provider"] == "microsoft"

    def test_wrong_secret_rejected(self):
        assert verify_oauth_state(token=_state(), secret="different-secret-value", now=NOW) is None

    def test_expired_rejected(self):
        token = _state(expires_at=NOW - timedelta(seconds=1))
        assert verify_oauth_state(token=token, secret=SECRET, now=NOW) is None

    def test_expiry_boundary_rejected(self):
        token = _state(expires_at=NOW)
        assert verify_oauth_state(token=token, secret=SECRET, now=NOW) is None

    def test_tampered_payload_rejected(self):
        payload, signature = _state().split(".")
        forged = _state(user_id="attacker").split(".")[0]
        assert verify_oauth_state(token=f"{forged}.{signature}", secret=SECRET, now=NOW) is None
        assert payload != forged

    @pytest.mark.parametrize(
        "token", ["", "no-dot", "a.b.c", ".sig", "payload.", "pé.sig", "payload.sïg"]
    )
    def test_malformed_rejected(self, token):
        assert verify_oauth_state(token=token, secret=SECRET, now=NOW) is None

    def test_unsupported_provider_rejected(self):
        token = _state(provider="yahoo")
        assert verify_oauth_state(token=token, secret=SECRET, now=NOW) is None
