"""Tests for the error envelope format and exception handlers.

Every error response has the shape:
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
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError
from starlette.exceptions import HTTPException

from tenantcrm.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from tenantcrm.api.schemas import Envelope, ErrorBody
from tenantcrm.service.errors import (
    InvalidCredentials,
    SecondFactorLocked,
    ServiceError,
    TokenExpired,
)
from tenantcrm.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_accepts_auth_codes(self):
        for code in (
            "invalid_credentials",
            "second_factor_required",
            "token_schema_stale",
            "enrollment_not_started",
        ):
            assert ErrorBody(code=code, message="x").code == code

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="made_up", message="x")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})
        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_all_generic_codes_covered(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "unauthorized",
            "forbidden",
            "not_found",
            "rate_limited",
            "validation_error",
            "conflict",
            "server_error",
        }


class TestErrorResponseFactory:
    """Tests for the _error_response helper function."""

    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(401, "expired", code="token_expired")
        assert json.loads(response.body.decode())["error"]["code"] == "token_expired"

    def test_error_response_list_details(self):
        response = _error_response(400, "Multiple errors", details=[{"field": "a"}, {"field": "b"}])
        data = json.loads(response.body.decode())
        assert len(data["error"]["details"]) == 2


@pytest.fixture
def failing_client():
    """A bare app whose routes raise each kind of error."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/credentials")
    async def credentials():
        raise InvalidCredentials(detail={"remaining_attempts": 2})

    @app.get("/expired")
    async def expired():
        raise TokenExpired("exp 1700000000 < now 1700000001")

    @app.get("/locked")
    async def locked():
        raise SecondFactorLocked()

    @app.get("/internal-detail")
    async def internal_detail():
        raise ServiceError("db row 42 corrupt", status_code=500, error_code="server_error")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("duplicate key value violates account_email_key")

    @app.get("/http")
    async def http():
        raise HTTPException(status_code=404, detail="nothing here")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret connection string postgres://u:p@h/db")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_service_error_uses_public_message(self, failing_client):
        response = failing_client.get("/credentials")
        assert response.status_code == 401
        body = response.json()
        assert body["error"] == {
            "code": "invalid_credentials",
            "message": "invalid email or password",
            "details": {"remaining_attempts": 2},
        }

    def test_internal_message_not_leaked(self, failing_client):
        response = failing_client.get("/expired")
        assert response.json()["error"]["code"] == "token_expired"
        assert "1700000000" not in response.text

    def test_second_factor_lockout_is_rate_limited(self, failing_client):
        response = failing_client.get("/locked")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_server_error_without_user_message(self, failing_client):
        response = failing_client.get("/internal-detail")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "row 42" not in response.text

    def test_constraint_violation_is_conflict(self, failing_client):
        response = failing_client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert "account_email_key" not in response.text

    def test_http_exception_wrapped_in_envelope(self, failing_client):
        response = failing_client.get("/http")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert response.json()["error"]["message"] == "nothing here"

    def test_unhandled_exception(self, failing_client):
        response = failing_client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
        assert "postgres" not in response.text
