"""Integration tests for the /api/user HTTP surface.

Tests the complete flow including:
- Registration and OTP verification
- Login cookie and token payload
- Refresh rotation and logout
- Profile read, patch and delete
"""

import pytest
from fastapi.testclient import TestClient

from accountkit import app as app_module
from accountkit.service.runtime import get_runtime


class CapturingNotifier:
    def __init__(self):
        self.codes = {}

    def send_otp(self, to_email, code):
        self.codes[to_email] = code
        return True


@pytest.fixture
def notifier():
    capture = CapturingNotifier()
    get_runtime().accounts.notifier = capture
    return capture


@pytest.fixture
def client(notifier):
    return TestClient(app_module.app)


REGISTRATION = {
    "name": "Alice",
    "username": "alice",
    "password": "P@ss1",
    "confirmPassword": "P@ss1",
    "dateOfBirth": "1990-05-17",
    "email": "a@x.com",
}


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _signup(client, notifier, payload=None):
    payload = payload or REGISTRATION
    resp = client.post("/api/user/register", json=payload)
    assert resp.status_code == 202
    code = notifier.codes[payload["email"].lower()]
    resp = client.post("/api/user/verify-otp", json={"email": payload["email"], "otp": code})
    assert resp.status_code == 201
    return resp.json()["data"]


def _login(client, username="alice", password="P@ss1"):
    resp = client.post("/api/user/login", json={"username": username, "password": password})
    assert resp.status_code == 200
    return resp


class TestRegistrationFlow:
    """Register then verify."""

    def test_register_and_verify(self, client, notifier):
        resp = client.post("/api/user/register", json=REGISTRATION)
        assert resp.status_code == 202
        body = resp.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "a@x.com"
        assert set(body["data"]) == {"message", "email"}

        resp = client.post(
            "/api/user/verify-otp", json={"email": "a@x.com", "otp": notifier.codes["a@x.com"]}
        )
        assert resp.status_code == 201
        account = resp.json()["data"]
        assert account["username"] == "alice"
        assert account["email_verified"] is True
        assert account["date_of_birth"] == "1990-05-17"
        assert "password_hash" not in account

    def test_password_mismatch(self, client, notifier):
        resp = client.post(
            "/api/user/register", json={**REGISTRATION, "confirmPassword": "other"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_mismatch"
        assert notifier.codes == {}

    def test_missing_field(self, client):
        payload = {k: v for k, v in REGISTRATION.items() if k != "dateOfBirth"}
        resp = client.post("/api/user/register", json=payload)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"

    def test_register_echoes_normalized_email(self, client, notifier):
        resp = client.post(
            "/api/user/register", json={**REGISTRATION, "email": " A@X.COM\u200b"}
        )
        assert resp.status_code == 202
        assert resp.json()["data"]["email"] == "a@x.com"
        assert "a@x.com" in notifier.codes

    def test_invalid_email_is_validation_error(self, client):
        resp = client.post("/api/user/register", json={**REGISTRATION, "email": "nope"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["errors"][0]["field"] == "email"

    def test_duplicate_registration(self, client, notifier):
        _signup(client, notifier)
        resp = client.post("/api/user/register", json=REGISTRATION)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_exists"

    def test_wrong_and_missing_code(self, client, notifier):
        client.post("/api/user/register", json=REGISTRATION)
        code = notifier.codes["a@x.com"]
        wrong = "000000" if code != "000000" else "999999"

        resp = client.post("/api/user/verify-otp", json={"email": "a@x.com", "otp": wrong})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_otp"

        resp = client.post("/api/user/verify-otp", json={"email": "b@x.com", "otp": code})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_pending_registration"


class TestSessionFlow:
    """Login, refresh and logout over HTTP."""

    def test_login_sets_strict_http_only_cookie(self, client, notifier):
        _signup(client, notifier)
        resp = _login(client)

        data = resp.json()["data"]
        assert data["access_token"] and data["refresh_token"]
        assert data["token_type"] == "bearer"
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith("accessToken=")
        assert "HttpOnly" in cookie
        assert "Secure" in cookie
        assert "samesite=strict" in cookie.lower()
        assert "Max-Age=604800" in cookie

    def test_bad_credentials(self, client, notifier):
        _signup(client, notifier)
        resp = client.post("/api/user/login", json={"username": "alice", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"

    def test_refresh_rotates(self, client, notifier):
        _signup(client, notifier)
        tokens = _login(client).json()["data"]

        resp = client.post("/api/user/refresh", json={"refreshToken": tokens["refresh_token"]})
        assert resp.status_code == 200
        assert resp.json()["data"]["refresh_token"] != tokens["refresh_token"]

        resp = client.post("/api/user/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"

    def test_logout_revokes_sessions(self, client, notifier):
        _signup(client, notifier)
        tokens = _login(client).json()["data"]
        _login(client)

        resp = client.post("/api/user/logout", headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["sessions_revoked"] == 2
        assert "accessToken=" in resp.headers["set-cookie"]
        assert get_runtime().store.list_user_sessions("alice") == []

        resp = client.get("/api/user/alice", headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 401

    def test_logout_without_token(self, client):
        resp = client.post("/api/user/logout")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"


class TestProfileFlow:
    """Reading, patching and deleting an account."""

    def test_get_own_account(self, client, notifier):
        _signup(client, notifier)
        token = _login(client).json()["data"]["access_token"]

        resp = client.get("/api/user/alice", headers=_bearer(token))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["email"] == "a@x.com"
        assert "password_hash" not in data
        assert resp.headers["cache-control"].startswith("no-store")

    def test_other_account_forbidden(self, client, notifier):
        _signup(client, notifier)
        _signup(client, notifier, {**REGISTRATION, "username": "bob", "email": "b@x.com"})
        token = _login(client).json()["data"]["access_token"]

        resp = client.get("/api/user/bob", headers=_bearer(token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_patch_profile(self, client, notifier):
        _signup(client, notifier)
        token = _login(client).json()["data"]["access_token"]

        resp = client.patch(
            "/api/user/alice",
            headers=_bearer(token),
            json=[{"op": "replace", "path": "/name", "value": "Alice Liddell"}],
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["name"] == "Alice Liddell"

    def test_patch_password_rejected(self, client, notifier):
        _signup(client, notifier)
        token = _login(client).json()["data"]["access_token"]

        resp = client.patch(
            "/api/user/alice",
            headers=_bearer(token),
            json=[{"op": "replace", "path": "/password", "value": "x"}],
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        _login(client)

    def test_delete_account(self, client, notifier):
        _signup(client, notifier)
        token = _login(client).json()["data"]["access_token"]

        resp = client.delete("/api/user/alice", headers=_bearer(token))
        assert resp.status_code == 200
        assert get_runtime().store.get_account_by_username("alice") is None

        resp = client.post("/api/user/login", json={"username": "alice", "password": "P@ss1"})
        assert resp.status_code == 401


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["redis"]["status"] == "not_configured"
