import pytest
from fastapi.testclient import TestClient

from warden.app import app
from warden.service.events import ResetPasswordRequested, UserCreated
from warden.service.runtime import get_runtime
from warden.storage.errors import StorageUnavailable

PASSWORD = "correct-horse-1"


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _register(client, email="alice@example.com", username="alice", password=PASSWORD):
    return client.post(
        "/api/auth/register",
        json={"email": email, "username": username, "password": password},
    )


def _verification_token(email: str) -> str:
    events = get_runtime().events.of_type(UserCreated)
    return [e for e in events if e.email == email][-1].verification_token


def _verified_session(client, email="alice@example.com", username="alice"):
    assert _register(client, email, username).status_code == 201
    resp = client.get("/api/auth/verify", params={"token": _verification_token(email)})
    assert resp.status_code == 200
    login = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert login.status_code == 200
    return login.json()["data"]


def test_register_returns_envelope(client):
    resp = _register(client)
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "ok"
    assert body["data"]["email"] == "alice@example.com"
    assert body["data"]["email_verified"] is False
    assert "password" not in body["data"]
    assert resp.headers["X-RateLimit-Limit"] == "5"
    assert resp.headers["X-RateLimit-Remaining"] == "4"
    assert resp.headers["Cache-Control"] == "no-store"


def test_duplicate_registration_conflicts(client):
    assert _register(client).status_code == 201
    resp = _register(client, email="ALICE@example.com", username="other")
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "already_exists"


def test_invalid_payload_is_validation_error(client):
    resp = _register(client, email="not-an-email")
    assert resp.status_code == 400
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "validation_error"

    resp = _register(client, email="bob@example.com", username="bob", password="short")
    assert resp.status_code == 400


def test_login_requires_verified_email(client):
    _register(client)
    resp = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "email_not_verified"


def test_wrong_password_and_unknown_email_look_the_same(client):
    _verified_session(client)
    wrong = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": "nope-nope-1"}
    )
    unknown = client.post(
        "/api/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}
    )
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json()["error"] == unknown.json()["error"]


def test_verify_token_is_single_use(client):
    _register(client)
    token = _verification_token("alice@example.com")
    assert client.get("/api/auth/verify", params={"token": token}).status_code == 200
    again = client.get("/api/auth/verify", params={"token": token})
    assert again.status_code == 401
    assert again.json()["error"]["details"]["reason"] == "used"


def test_refresh_rotation_and_logout(client):
    session = _verified_session(client)
    rotated = client.post(
        "/api/auth/refresh", json={"refresh_token": session["refresh_token"]}
    )
    assert rotated.status_code == 200
    new_refresh = rotated.json()["data"]["refresh_token"]
    assert new_refresh != session["refresh_token"]

    replay = client.post(
        "/api/auth/refresh", json={"refresh_token": session["refresh_token"]}
    )
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "invalid_token"

    assert client.post("/api/auth/logout", json={"refresh_token": new_refresh}).status_code == 204
    assert client.post("/api/auth/logout", json={"refresh_token": new_refresh}).status_code == 204
    after = client.post("/api/auth/refresh", json={"refresh_token": new_refresh})
    assert after.status_code == 401


def test_password_reset_flow(client):
    session = _verified_session(client)
    resp = client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
    assert resp.status_code == 204
    reset_token = get_runtime().events.of_type(ResetPasswordRequested)[-1].reset_token

    same = client.post(
        "/api/auth/reset-password", json={"token": reset_token, "new_password": PASSWORD}
    )
    assert same.status_code == 400
    assert same.json()["error"]["code"] == "same_password"

    done = client.post(
        "/api/auth/reset-password",
        json={"token": reset_token, "new_password": "brand-new-pass-2"},
    )
    assert done.status_code == 204
    revoked = client.post(
        "/api/auth/refresh", json={"refresh_token": session["refresh_token"]}
    )
    assert revoked.status_code == 401
    login = client.post(
        "/api/auth/login",
        json={"email": "alice@example.com", "password": "brand-new-pass-2"},
    )
    assert login.status_code == 200


def test_forgot_password_unknown_email_is_silent(client):
    resp = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert resp.status_code == 204
    assert get_runtime().events.of_type(ResetPasswordRequested) == []


def test_change_password_requires_bearer(client):
    resp = client.post(
        "/api/auth/change-password",
        json={"old_password": PASSWORD, "new_password": "brand-new-pass-2"},
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_change_password(client):
    session = _verified_session(client)
    headers = {"Authorization": f"Bearer {session['access_token']}"}
    wrong = client.post(
        "/api/auth/change-password",
        json={"old_password": "not-the-password", "new_password": "brand-new-pass-2"},
        headers=headers,
    )
    assert wrong.status_code == 401
    assert wrong.json()["error"]["code"] == "invalid_credentials"

    resp = client.post(
        "/api/auth/change-password",
        json={"old_password": PASSWORD, "new_password": "brand-new-pass-2"},
        headers=headers,
    )
    assert resp.status_code == 204
    assert client.post(
        "/api/auth/refresh", json={"refresh_token": session["refresh_token"]}
    ).status_code == 401


def test_resend_verification_unknown_email(client):
    resp = client.post("/api/auth/resend-verification", json={"email": "ghost@example.com"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "user_not_found"


def test_rate_limit_rejects_with_retry_after(client):
    for _ in range(3):
        ok = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        assert ok.status_code == 204
    limited = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert limited.status_code == 429
    assert limited.json()["error"]["code"] == "rate_limited"
    assert 1 <= int(limited.headers["Retry-After"]) <= 3600
    assert limited.headers["X-RateLimit-Remaining"] == "0"
    # Other endpoints keep their own budget.
    assert client.post(
        "/api/auth/resend-verification", json={"email": "ghost@example.com"}
    ).status_code == 404


def test_request_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"


def test_healthz_reports_memory_store(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "MemoryStore"
    assert body["checks"]["redis"]["status"] == "not_configured"


def test_healthz_unhealthy_store(client, monkeypatch):
    def _down():
        raise ConnectionError("db down")

    monkeypatch.setattr(get_runtime().store, "ping", _down)
    resp = client.get("/healthz")
    assert resp.status_code == 503
    assert resp.json()["checks"]["database"]["status"] == "unhealthy"


def test_store_outage_returns_503_envelope(client, monkeypatch):
    def _down(*args, **kwargs):
        raise StorageUnavailable("database unavailable", {"error": "timeout"})

    monkeypatch.setattr(get_runtime().store, "get_user_by_email", _down)
    resp = client.post(
        "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
    )
    assert resp.status_code == 503
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "storage_unavailable"
