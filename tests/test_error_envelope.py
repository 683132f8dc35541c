"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<STABLE_CODE>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>",
    "code": "<STABLE_CODE>"
}
Rate-limited and locked responses also carry ``retryAfterSeconds`` and a
``Retry-After`` header.
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from accountguard.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from accountguard.api.schemas import Envelope, ErrorBody
from accountguard.service.errors import (
    AccountLockedError,
    InvalidCodeError,
    NotFoundError,
    RateLimitedError,
    ServerError,
)
from accountguard.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="UNAUTHORIZED", message="Invalid credentials")
        assert error.code == "UNAUTHORIZED"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="VALIDATION_ERROR",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        """Only the stable uppercase codes are accepted."""
        with pytest.raises(ValidationError):
            ErrorBody(code="unauthorized", message="lowercase is not a stable code")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "VALIDATION_ERROR"),
            (401, "UNAUTHORIZED"),
            (403, "FORBIDDEN"),
            (404, "NOT_FOUND"),
            (409, "CONFLICT"),
            (423, "ACCOUNT_LOCKED"),
            (429, "RATE_LIMITED"),
            (503, "CONNECTION_ERROR"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_internal_error(self):
        assert _error_code_for_status(418) == "INTERNAL_ERROR"

    def test_mapped_codes_are_valid_error_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = error_response(404, "missing")
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["code"] == body["error"]["code"] == "NOT_FOUND"
        assert body["error"]["details"] is None
        assert body["request_id"]

    def test_retry_after_is_surfaced(self):
        response = error_response(
            429, "slow down", {"retry_after_seconds": 42}, code="RATE_LIMITED"
        )
        body = json.loads(response.body)
        assert body["retryAfterSeconds"] == 42
        assert response.headers["Retry-After"] == "42"


class _Payload(BaseModel):
    code: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/rate-limited")
    async def rate_limited():
        raise RateLimitedError(retry_after_seconds=30)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError()

    @app.get("/bad-code")
    async def bad_code():
        raise InvalidCodeError(attempts_remaining=2)

    @app.get("/missing")
    async def missing():
        raise NotFoundError("device not found")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/db-down")
    async def db_down():
        raise StoreUnavailable("postgres", "connection refused")

    @app.get("/server-error")
    async def server_error():
        raise ServerError("failed reading /srv/accountguard/state/accounts.json")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    @app.post("/validate")
    async def validate(body: _Payload):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_rate_limited(self, client):
        response = client.get("/rate-limited")
        assert response.status_code == 429
        assert response.json()["retryAfterSeconds"] == 30
        assert response.headers["Retry-After"] == "30"

    def test_locked_without_retry_hint(self, client):
        response = client.get("/locked")
        assert response.status_code == 423
        assert response.json()["code"] == "ACCOUNT_LOCKED"
        assert "Retry-After" not in response.headers

    def test_invalid_code_details(self, client):
        body = client.get("/bad-code").json()
        assert body["code"] == "INVALID_CODE"
        assert body["error"]["details"] == {"attempts_remaining": 2}

    def test_not_found(self, client):
        body = client.get("/missing").json()
        assert body["error"]["message"] == "device not found"

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_store_unavailable_is_503(self, client):
        response = client.get("/db-down")
        assert response.status_code == 503
        assert "refused" not in response.text

    def test_server_error_message_is_sanitized(self, client):
        response = client.get("/server-error")
        assert response.status_code == 500
        assert "/srv/accountguard" not in response.text
        assert "[redacted]" in response.json()["error"]["message"]

    def test_uncaught_exception_is_opaque(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"
        assert "secret internals" not in response.text

    def test_request_validation_does_not_echo_input(self, client):
        response = client.post("/validate", json={"code": {"nested": "hunter2"}})
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["error"]["details"]["errors"]
        assert "hunter2" not in response.text
