import pathlib
import sys
from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient


ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import billing_backend.main as backend_main


def test_resolve_user_invalid_token_returns_none():
    assert backend_main.resolve_user_from_session_token("not-a-valid-token") is None


def test_resolve_user_expired_token_returns_none():
    expired_token = backend_main.create_access_token(subject="42", expires_delta=timedelta(minutes=-5))

    assert backend_main.resolve_user_from_session_token(expired_token) is None


def test_resolve_user_carries_role_claim():
    token = backend_main.create_access_token(subject="user-7", role="admin")

    user = backend_main.resolve_user_from_session_token(token)

    assert user == backend_main.CurrentUser(id="user-7", role="admin")


def test_get_current_user_missing_cookie_is_unauthorized():
    with pytest.raises(HTTPException) as excinfo:
        backend_main.get_current_user(None)

    assert excinfo.value.status_code == 401


def test_auth_me_reads_session_cookie():
    client = TestClient(backend_main.app)
    token = backend_main.create_access_token(subject="user-1")
    client.cookies.set(backend_main.SESSION_COOKIE_NAME, token)

    response = client.get("/api/auth/me")

    assert response.status_code == 200
    assert response.json() == {"id": "user-1", "role": "user"}


def test_healthz():
    client = TestClient(backend_main.app)

    assert client.get("/api/healthz").json() == {"ok": True}
