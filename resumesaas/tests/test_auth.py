import time

import jwt
import pytest

from resumesaas.core.errors import UnauthorizedError
from resumesaas.core.auth import verify_clerk_jwt

CLERK_KEY = "clerk-test-signing-key-0123456789abcdef"


@pytest.fixture
def clerk(monkeypatch, test_settings):
    monkeypatch.setattr(test_settings, "CLERK_SECRET_KEY", CLERK_KEY)
    monkeypatch.setattr(test_settings, "CLERK_ISSUER", "https://clerk.example.com")
    return test_settings


def _token(sub="user_jwt", key=CLERK_KEY, exp_in=300, **claims):
    payload = {"sub": sub, "iss": "https://clerk.example.com", "exp": int(time.time()) + exp_in, **claims}
    return jwt.encode(payload, key, algorithm="HS256")


def test_no_clerk_key_skips_jwt():
    assert verify_clerk_jwt("anything") is None


def test_valid_token(clerk):
    assert verify_clerk_jwt(_token()) == "user_jwt"


def test_expired_token(clerk):
    with pytest.raises(UnauthorizedError, match="Token expired"):
        verify_clerk_jwt(_token(exp_in=-60))


def test_wrong_signature(clerk):
    with pytest.raises(UnauthorizedError, match="Invalid token"):
        verify_clerk_jwt(_token(key="another-signing-key-0123456789abcdef"))


def test_wrong_issuer(clerk):
    with pytest.raises(UnauthorizedError):
        verify_clerk_jwt(_token(iss="https://evil.example.com"))


def test_audience_checked_when_configured(clerk, monkeypatch):
    monkeypatch.setattr(clerk, "CLERK_AUDIENCE", "resumesaas")
    assert verify_clerk_jwt(_token(aud="resumesaas")) == "user_jwt"
    with pytest.raises(UnauthorizedError):
        verify_clerk_jwt(_token(aud="other-app"))


def test_bearer_token_authenticates_request(client, clerk):
    resp = client.get("/api/credits", headers={"Authorization": f"Bearer {_token(sub='user_bearer')}"})
    assert resp.status_code == 200
    assert resp.json()["plan"] == "free"


def test_bad_bearer_token_rejected_even_with_header_fallback(client, clerk):
    resp = client.get(
        "/api/credits",
        headers={"Authorization": f"Bearer {_token(exp_in=-60)}", "X-User-Id": "spoofed"},
    )
    assert resp.status_code == 401
