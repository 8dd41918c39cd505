"""Tests for the error envelope format and error handling.

Error responses outside the OAuth token endpoint share one envelope:
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

from authcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authcore.api.schemas import Envelope, ErrorBody
from authcore.logging import sanitize_error_message
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidGrantError,
    KeyManagerNotInitializedError,
    NotFoundError,
)
from authcore.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_dict(self):
        error = ErrorBody(
            code="validation_error",
            message="Invalid input",
            details={"field": "email", "reason": "invalid format"},
        )
        assert error.details == {"field": "email", "reason": "invalid format"}

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_oauth_codes_accepted(self):
        assert ErrorBody(code="invalid_grant", message="Code expired").code == "invalid_grant"
        assert ErrorBody(code="unsupported_grant_type", message="x").code == "unsupported_grant_type"

    def test_unknown_code_rejected(self):
        """Codes outside the stable set are a programming error."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_error_status(self):
        envelope = Envelope(status="error", error=ErrorBody(code="unauthorized", message="no"))

        assert envelope.status == "error"
        assert envelope.error.code == "unauthorized"
        assert envelope.data is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    """HTTP status to stable error code."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapping_only_uses_envelope_codes(self):
        assert set(_STATUS_TO_CODE.values()) <= {
            "unauthorized",
            "forbidden",
            "not_found",
            "validation_error",
            "conflict",
            "server_error",
        }


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(400, "Code already used", code="invalid_grant")
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "invalid_grant"

    def test_error_response_null_details(self):
        data = json.loads(_error_response(404, "Not found", details=None).body.decode())
        assert data["error"]["details"] is None


@pytest.fixture
def failing_client():
    """A bare app whose routes raise each kind of handled error."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/auth")
    async def _auth():
        raise AuthenticationError("unauthorized")

    @app.get("/missing")
    async def _missing():
        raise NotFoundError("session not found", detail={"session_id": "s-1"})

    @app.get("/conflict")
    async def _conflict():
        raise ConflictError("email already exists", detail={"field": "email"})

    @app.get("/grant")
    async def _grant():
        raise InvalidGrantError("Code expired")

    @app.get("/constraint")
    async def _constraint():
        raise ConstraintViolation("duplicate key", {"constraint": "app_user_email_key"})

    @app.get("/keys")
    async def _keys():
        raise KeyManagerNotInitializedError("signing key unavailable")

    @app.get("/boom")
    async def _boom():
        raise RuntimeError("kaboom")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    @pytest.mark.parametrize(
        "path,status,code",
        [
            ("/auth", 401, "unauthorized"),
            ("/missing", 404, "not_found"),
            ("/conflict", 409, "conflict"),
            ("/grant", 400, "invalid_grant"),
            ("/constraint", 409, "conflict"),
            ("/keys", 500, "server_error"),
        ],
    )
    def test_service_errors_map_to_envelope(self, failing_client, path, status, code):
        response = failing_client.get(path)

        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code

    def test_details_are_preserved(self, failing_client):
        body = failing_client.get("/missing").json()
        assert body["error"]["details"] == {"session_id": "s-1"}

    def test_uncaught_exception_is_opaque(self, failing_client):
        response = failing_client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "kaboom" not in response.text


class TestSanitizeErrorMessage:
    def test_strips_paths_and_secrets(self):
        cleaned = sanitize_error_message(
            "open /var/lib/authcore/keys/signing_key.pem failed; secret=hunter22"
        )
        assert "/var/lib" not in cleaned
        assert "hunter22" not in cleaned

    def test_empty_message_is_generic(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_long_messages_truncated(self):
        assert len(sanitize_error_message("x" * 2000)) == 500
