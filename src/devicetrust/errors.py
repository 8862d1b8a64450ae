"""Error types and error payload normalization for DeviceTrust."""

import asyncio
from typing import Any, Dict, Optional


class DeviceTrustError(Exception):
    """Base class for DeviceTrust errors."""


class ApiError(DeviceTrustError):
    """Backend answered with a non-2xx status."""

    def __init__(
        self,
        status_code: int,
        payload: Optional[Dict[str, Any]] = None,
        url: str = "",
    ):
        self.status_code = status_code
        self.payload = payload or {}
        self.url = url
        super().__init__(
            f"HTTP {status_code} from {url}: {self.payload.get('error') or self.payload.get('message') or 'no detail'}"
        )

    @property
    def error_code(self) -> Optional[str]:
        value = self.payload.get("error")
        return str(value) if value is not None else None


class TransportError(DeviceTrustError):
    """Request never produced an HTTP response (DNS, connect, read timeout)."""


class SessionInvalidError(DeviceTrustError):
    """Request cancelled because the server no longer accepts the session."""


class InvalidTransitionError(DeviceTrustError):
    """Event is not accepted in the current flow state."""

    def __init__(self, state, event):
        self.state = state
        self.event = event
        super().__init__(
            f"Event {type(event).__name__} not allowed in state {getattr(state, 'value', state)}"
        )


_ERROR_CODE_REASONS = {
    "handle_exists": "handle_exists",
    "phone_exists": "phone_exists",
    "authversionmismatch": "auth_version_mismatch",
}


def normalize_api_error(exc: Exception, default_message: str) -> Dict[str, Any]:
    """Normalize request failures into a consistent error payload.

    Args:
        exc: Exception raised by the HTTP layer or a safety timeout
        default_message: Message shown when the server supplied none

    Returns:
        Dictionary with status, message, reason, and optional retry_after
    """
    reason = "server_error"
    message = default_message
    retry_after = None

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        reason = "timeout"
    elif isinstance(exc, TransportError):
        reason = "network"
    elif isinstance(exc, ApiError):
        # Conflicts arrive either as the error code or as the status field
        codes = (
            str(exc.error_code or "").lower(),
            str(exc.payload.get("status") or "").lower(),
        )
        known = [code for code in codes if code in _ERROR_CODE_REASONS]
        if known:
            reason = _ERROR_CODE_REASONS[known[0]]
        elif exc.status_code == 401:
            reason = "unauthorized"
        server_message = exc.payload.get("message") or exc.payload.get("error")
        if server_message and reason in ("server_error", "unauthorized"):
            message = str(server_message)
        raw_retry = exc.payload.get("retry_after")
        if raw_retry is not None:
            try:
                retry_after = max(int(raw_retry), 0)
            except (TypeError, ValueError):
                retry_after = None

    payload: Dict[str, Any] = {
        "status": "error",
        "message": message,
        "reason": reason,
    }
    if retry_after is not None:
        payload["retry_after"] = retry_after
    return payload
