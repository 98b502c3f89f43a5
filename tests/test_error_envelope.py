"""Tests for the error envelope format and error handling.

Error responses use one stable shape:
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
from pydantic import ValidationError

from fitstack.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from fitstack.api.schemas import Envelope, ErrorBody


class TestErrorBody:
    def test_error_body_required_fields(self):
        """ErrorBody requires code and message fields."""
        error = ErrorBody(code="unauthorized", message="Invalid email or password")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="invalid request",
            details=[{"loc": ["body", "email"]}, {"loc": ["body", "password"]}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"message": "Logged out successfully"})
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        assert len(Envelope(status="ok").request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")
        with pytest.raises(ValidationError):
            Envelope(status="success")

    def test_rate_limited_envelope_serialization(self):
        """Full lockout envelope serializes with the retry hint in details."""
        envelope = Envelope(
            status="error",
            error=ErrorBody(
                code="rate_limited",
                message="Too many failed attempts. Try again in 16 minutes.",
                details={"retry_after": 900},
            ),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["details"]["retry_after"] == 900
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
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
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_all_codes_covered(self):
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
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid email or password")
        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["request_id"]

    def test_error_response_custom_code_and_headers(self):
        response = _error_response(
            429, "slow down", {"retry_after": 60}, code="rate_limited", headers={"Retry-After": "60"}
        )
        assert response.headers["Retry-After"] == "60"
        assert json.loads(response.body.decode())["error"]["details"] == {"retry_after": 60}

    def test_error_response_null_details(self):
        data = json.loads(_error_response(404, "User not found").body.decode())
        assert data["error"]["details"] is None
