"""Supabase JWT verification and caller resolution."""

import time

import jwt
import pytest
from fastapi.testclient import TestClient

from markethub.core.auth import verify_supabase_jwt
from markethub.core.config import settings
from markethub.core.errors import AuthenticationRequiredError
from markethub.main import app


SECRET = "test-jwt-secret-with-enough-length-for-hs256"


@pytest.fixture
def jwt_secret(monkeypatch):
    monkeypatch.setattr(settings, "SUPABASE_JWT_SECRET", SECRET)
    return SECRET


def _token(secret=SECRET, **claims):
    payload = {
        "sub": "user_jwt",
        "email": "jwt@example.com",
        "aud": "authenticated",
        "exp": int(time.time()) + 3600,
    }
    payload.update(claims)
    payload = {k: v for k, v in payload.items() if v is not None}
    return jwt.encode(payload, secret, algorithm="HS256")


def test_valid_token(jwt_secret):
    user = verify_supabase_jwt(_token())

    assert user.user_id == "user_jwt"
    assert user.email == "jwt@example.com"


def test_expired_token(jwt_secret):
    with pytest.raises(AuthenticationRequiredError, match="expired"):
        verify_supabase_jwt(_token(exp=int(time.time()) - 60))


@pytest.mark.parametrize("token_kwargs", [
    {"aud": "anon-app"},
    {"secret": "a-different-secret-of-sufficient-length"},
    {"sub": None},
])
def test_rejected_tokens(jwt_secret, token_kwargs):
    with pytest.raises(AuthenticationRequiredError):
        verify_supabase_jwt(_token(**token_kwargs))


def test_token_rejected_without_secret(monkeypatch):
    monkeypatch.setattr(settings, "SUPABASE_JWT_SECRET", None)

    with pytest.raises(AuthenticationRequiredError):
        verify_supabase_jwt(_token())


def test_bearer_token_identifies_caller(jwt_secret):
    client = TestClient(app)

    response = client.get("/api/usage/entitlement", headers={"Authorization": f"Bearer {_token()}"})

    assert response.status_code == 200
    assert response.json()["user_id"] == "user_jwt"


def test_bearer_token_wins_over_headers(jwt_secret):
    client = TestClient(app)

    response = client.get(
        "/api/usage/entitlement",
        headers={"Authorization": f"Bearer {_token()}", "X-User-Id": "someone_else"},
    )

    assert response.json()["user_id"] == "user_jwt"


def test_invalid_bearer_is_401(jwt_secret):
    client = TestClient(app)

    response = client.get("/api/usage/entitlement", headers={"Authorization": "Bearer garbage"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "authentication_required"
