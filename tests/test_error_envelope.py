"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from accountkit import app as app_module
from accountkit.api.error_handling import _error_code_for_status, _error_response
from accountkit.api.schemas import Envelope, ErrorBody
from accountkit.service import errors
from accountkit.service.runtime import get_runtime


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_known_code_accepted(self):
        error = ErrorBody(code="invalid_otp", message="verification code is incorrect")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_details_may_be_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "username"}],
        )
        assert len(error.details) == 2


class TestEnvelope:
    """Tests for the shared response envelope."""

    def test_status_restricted(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and second.request_id
        assert first.request_id != second.request_id


class TestServiceErrors:
    """Every service error maps to a distinct stable code and status."""

    @pytest.mark.parametrize(
        "exc_type,status,code",
        [
            (errors.PasswordMismatchError, 400, "password_mismatch"),
            (errors.AlreadyExistsError, 409, "already_exists"),
            (errors.NoPendingRegistrationError, 400, "no_pending_registration"),
            (errors.InvalidOtpError, 400, "invalid_otp"),
            (errors.AlreadyRegisteredError, 409, "already_registered"),
            (errors.InvalidRequestError, 400, "invalid_request"),
            (errors.InvalidCredentialsError, 401, "invalid_credentials"),
            (errors.InvalidTokenError, 401, "invalid_token"),
            (errors.ForbiddenError, 403, "forbidden"),
            (errors.NotFoundError, 404, "not_found"),
            (errors.ValidationError, 422, "validation_error"),
            (errors.NotificationFailedError, 502, "notification_failed"),
            (errors.InternalError, 500, "internal_error"),
        ],
    )
    def test_status_and_code(self, exc_type, status, code):
        exc = exc_type("boom")
        assert exc.status_code == status
        assert exc.error_code == code
        assert code in errors.ERROR_CODES

    def test_error_response_shape(self):
        response = _error_response(404, "account not found", code="not_found")
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "account not found", "details": None}
        assert body["request_id"]

    def test_unknown_code_falls_back_to_status(self):
        assert _error_code_for_status(405) == "invalid_request"
        assert _error_code_for_status(418) == "internal_error"
        body = json.loads(_error_response(403, "nope", code="bogus").body)
        assert body["error"]["code"] == "forbidden"


class TestHandlers:
    """Handlers installed on the application."""

    @pytest.fixture
    def client(self):
        return TestClient(app_module.app, raise_server_exceptions=False)

    def test_malformed_body_is_invalid_request(self, client):
        resp = client.post("/api/user/login", content="not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == "invalid_request"
        assert isinstance(body["error"]["details"], list)

    def test_unknown_route_is_enveloped(self, client):
        resp = client.get("/api/nothing-here")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_request_id_echoed(self, client):
        resp = client.get("/api/user/alice", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"

    def test_unexpected_exception_is_internal_error(self, client, monkeypatch):
        async def explode(*args, **kwargs):
            raise RuntimeError("database password=hunter2 leaked")

        monkeypatch.setattr(get_runtime().accounts, "login", explode)
        resp = client.post("/api/user/login", json={"username": "alice", "password": "x"})
        assert resp.status_code == 500
        body = resp.json()
        assert body["error"]["code"] == "internal_error"
        assert "hunter2" not in resp.text

    def test_store_outage_is_internal_error(self, client, monkeypatch):
        def broken(username):
            raise ConnectionError("server closed the connection")

        monkeypatch.setattr(get_runtime().store, "get_account_by_username", broken)
        resp = client.post("/api/user/login", json={"username": "alice", "password": "x"})
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "internal_error"
