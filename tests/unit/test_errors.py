"""Unit tests for error normalization."""

import asyncio

import pytest

from devicetrust.errors import (
    ApiError,
    InvalidTransitionError,
    TransportError,
    normalize_api_error,
)
from devicetrust.flow import ErrorCleared, FlowState


@pytest.mark.unit
class TestNormalizeApiError:
    def test_timeout(self):
        error = normalize_api_error(asyncio.TimeoutError(), "Request failed")

        assert error == {"status": "error", "message": "Request failed", "reason": "timeout"}

    def test_network(self):
        error = normalize_api_error(TransportError("refused"), "Request failed")

        assert error["reason"] == "network"
        assert error["message"] == "Request failed"

    def test_conflict_from_error_code(self):
        exc = ApiError(409, {"error": "handle_exists"}, "/auth/create_handle")

        assert normalize_api_error(exc, "Failed")["reason"] == "handle_exists"

    def test_conflict_from_status_field(self):
        exc = ApiError(422, {"status": "phone_exists", "message": "Taken"}, "/auth/verify_login")

        error = normalize_api_error(exc, "Failed")

        assert error["reason"] == "phone_exists"
        assert error["message"] == "Failed"

    def test_unauthorized_uses_server_message(self):
        exc = ApiError(401, {"message": "Session expired"}, "/auth/check_device")

        error = normalize_api_error(exc, "Failed")

        assert error["reason"] == "unauthorized"
        assert error["message"] == "Session expired"

    def test_retry_after(self):
        exc = ApiError(429, {"error": "rate_limited", "retry_after": "30"}, "/auth/verify_code")

        error = normalize_api_error(exc, "Failed")

        assert error["reason"] == "server_error"
        assert error["message"] == "rate_limited"
        assert error["retry_after"] == 30

    def test_unparseable_retry_after_dropped(self):
        exc = ApiError(429, {"retry_after": "soon"}, "/auth/verify_code")

        assert "retry_after" not in normalize_api_error(exc, "Failed")


@pytest.mark.unit
class TestErrorTypes:
    def test_api_error_message(self):
        exc = ApiError(500, None, "/auth/check_device")

        assert exc.payload == {}
        assert exc.error_code is None
        assert "HTTP 500 from /auth/check_device: no detail" == str(exc)

    def test_invalid_transition_message(self):
        exc = InvalidTransitionError(FlowState.PIN_ENTRY, ErrorCleared())

        assert str(exc) == "Event ErrorCleared not allowed in state pinEntry"
