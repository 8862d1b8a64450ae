"""HTTP client that carries device trust material on every request.

Outgoing requests get the device header, device key, auth version and CSRF
token attached; authentication responses are harvested back into storage.
"""

import json
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from . import metrics
from .config import HttpCfg
from .device_identity import DeviceIdentity, short_key
from .errors import ApiError, SessionInvalidError, TransportError
from .fingerprint import header_characteristics
from .navigation import Navigator
from .storage import (
    AUTH_VERSION_KEY,
    AUTHENTICATED_SESSION,
    AUTHENTICATED_USER_KEY,
    CURRENT_HANDLE_KEY,
    DEVICE_KEY,
    DEVICE_RESET_KEY,
    DEVICE_SESSION_KEY,
    StorageAdapter,
    StorageScope,
)

log = logging.getLogger(__name__)

LOCAL = StorageScope.LOCAL
SESSION = StorageScope.SESSION

_PREFIX_PATTERNS = (
    re.compile(r"^api/v1/auth/api/v1/"),
    re.compile(r"^api/v1/auth/"),
    re.compile(r"^api/v1/"),
    re.compile(r"^auth/"),
)

# Endpoints that never trigger the session validity check
_SESSION_EXEMPT_PREFIXES = ("auth/login", "auth/verify", "auth/check", "auth/session")

# 401s from these endpoints are expected answers, not a lost session
IGNORED_AUTH_ERROR_URLS = (
    "/auth/verify_pin",
    "/auth/verify_code",
    "/auth/verify_session",
    "/api/v1/auth/verify_session",
    "/api/v1/auth/session",
    "/auth/session_status",
)

VERSION_MISMATCH_ERROR = "AuthVersionMismatch"
AUTH_RESET_URL = "/?auth_reset=true"
SESSION_INVALID_URL = "/?session_invalid=true"


def normalize_auth_path(path: str) -> str:
    """Resolve any spelling of an auth endpoint to ``auth/<endpoint>``.

    >>> normalize_auth_path("/api/v1/auth/check_device")
    'auth/check_device'
    """
    url = (path or "").lstrip("/")
    for pattern in _PREFIX_PATTERNS:
        url = pattern.sub("", url)
    return f"auth/{url}".replace("//", "/", 1)


def _endpoint_label(path: str) -> str:
    return path.split("?", 1)[0]


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class AuthErrorMonitor:
    """Fans out 401 responses to listeners with a cooldown between bursts."""

    def __init__(self, cooldown: float = 2.0, clock: Optional[Callable[[], float]] = None):
        self.cooldown = cooldown
        self.clock = clock or time.monotonic
        self._last_dispatch: Optional[float] = None
        self._listeners: List[Callable[[str], None]] = []

    def add_listener(self, callback: Callable[[str], None]) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    @staticmethod
    def should_ignore(url: str) -> bool:
        return any(ignored in (url or "") for ignored in IGNORED_AUTH_ERROR_URLS)

    def report(self, url: str) -> bool:
        """Dispatch an auth error for ``url``.

        Returns:
            True if listeners were invoked
        """
        if self.should_ignore(url):
            log.debug("[HTTP] Ignoring 401 from auth check endpoint %s", url)
            return False
        now = self.clock()
        if self._last_dispatch is not None and now - self._last_dispatch < self.cooldown:
            log.debug("[HTTP] Skipping duplicate auth error for %s", url)
            return False
        self._last_dispatch = now
        log.warning("[HTTP] 401 unauthorized response from %s", url)
        for callback in list(self._listeners):
            try:
                callback(url)
            except Exception as exc:
                log.error("[HTTP] Auth error listener failed: %s", exc)
        return True


class TrustedHttpClient:
    """requests-based client with device trust interceptors."""

    def __init__(
        self,
        identity: DeviceIdentity,
        storage: StorageAdapter,
        cfg: Optional[HttpCfg] = None,
        session: Optional[requests.Session] = None,
        navigator: Optional[Navigator] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize the trusted client.

        Args:
            identity: Device identity used for headers and harvesting
            storage: Storage adapter shared with the identity
            cfg: HTTP configuration
            session: requests session (a new one when omitted)
            navigator: Location tracker used for forced redirects
            clock: Monotonic clock in seconds, for debouncing
        """
        self.identity = identity
        self.storage = storage
        self.cfg = cfg or HttpCfg()
        self.session = session or requests.Session()
        self.session.headers.update(
            {"Content-Type": "application/json", "Accept": "application/json"}
        )
        self.navigator = navigator or Navigator()
        self.clock = clock or time.monotonic
        self.csrf_token = self.cfg.csrf_token
        self.auth_errors = AuthErrorMonitor(self.cfg.auth_error_cooldown, self.clock)
        self._last_session_check: Optional[float] = None
        self._last_session_result = True
        self.log = log

    # URLs ---------------------------------------------------------------------

    def build_url(self, path: str) -> str:
        return f"{self.cfg.base_url.rstrip('/')}/{normalize_auth_path(path)}"

    def set_csrf_token(self, token: str) -> None:
        self.csrf_token = token or ""

    # Request side -------------------------------------------------------------

    def fingerprint_header(self, device_key: str) -> Dict[str, Any]:
        """Recognition-only header for devices without a trusted binding."""
        return {
            "deviceId": device_key,
            "deviceCharacteristics": header_characteristics(
                self.identity.get_device_fingerprint()
            ),
            "timestamp": self.identity.clock(),
        }

    def prepare_headers(self, path: str) -> Dict[str, str]:
        """Build the trust headers for a request to ``path``."""
        headers: Dict[str, str] = {}

        complete_header = self.identity.get_device_header()
        device_key = self.identity.get_stored_device_key()
        if complete_header:
            headers["X-Device-Header"] = complete_header
        elif device_key:
            headers["X-Device-Header"] = json.dumps(
                self.fingerprint_header(device_key), separators=(",", ":")
            )

        # Sent even without a trusted header so the device stays recognizable
        if device_key:
            headers["X-Device-Key"] = device_key

        auth_version = self.storage.get(LOCAL, AUTH_VERSION_KEY)
        if auth_version:
            headers["X-Auth-Version"] = auth_version

        if self.csrf_token:
            headers["X-CSRF-Token"] = self.csrf_token
        return headers

    @staticmethod
    def requires_session_check(normalized_path: str) -> bool:
        return not normalized_path.startswith(_SESSION_EXEMPT_PREFIXES)

    def check_session_validity(self, force: bool = False) -> bool:
        """Confirm with the server that an authenticated session still holds.

        Debounced to ``session_check_interval``; the cached result is reused
        inside the window.
        """
        if not self.identity.is_authenticated():
            return True

        now = self.clock()
        if (
            not force
            and self._last_session_check is not None
            and now - self._last_session_check < self.cfg.session_check_interval
        ):
            return self._last_session_result

        self._last_session_check = now
        self._last_session_result = self._perform_session_check()
        return self._last_session_result

    def _perform_session_check(self) -> bool:
        url = self.build_url("verify_session")
        device_key = self.identity.get_stored_device_key()
        headers = {"X-Device-Key": device_key} if device_key else {}
        try:
            response = self.session.get(
                url, headers=headers, timeout=self.cfg.request_timeout
            )
        except requests.RequestException as exc:
            # Offline and failing look alike here; keep the flag
            self.log.warning("[HTTP] Session validation error: %s", exc)
            return True

        if not response.ok:
            self.log.warning(
                "[HTTP] Session validation failed with status %s", response.status_code
            )
            self.storage.remove(LOCAL, AUTHENTICATED_USER_KEY)
            return False

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not data.get("authenticated"):
            self.log.warning("[HTTP] Server reports session no longer authenticated")
            self.storage.remove(LOCAL, AUTHENTICATED_USER_KEY)
            return False

        local_version = self.identity.auth_version()
        server_version = _as_int(data.get("auth_version"))
        if local_version and server_version is not None and local_version < server_version:
            self.log.warning(
                "[HTTP] Auth version mismatch: local=%s, server=%s",
                local_version,
                server_version,
            )
            self.storage.remove(LOCAL, AUTHENTICATED_USER_KEY)
            self.storage.set(LOCAL, DEVICE_RESET_KEY, "true")
            return False
        return True

    # Response side ------------------------------------------------------------

    def _force_auth_reset(self) -> None:
        self.storage.remove(LOCAL, AUTHENTICATED_USER_KEY)
        self.storage.set(LOCAL, DEVICE_RESET_KEY, "true")
        self.navigator.go(AUTH_RESET_URL)

    def harvest_response(self, data: Any) -> None:
        """Persist trust data carried by a successful response."""
        if not isinstance(data, dict):
            return
        try:
            server_version = _as_int(data.get("auth_version"))
            local_version = self.identity.auth_version()
            if local_version and server_version is not None and local_version < server_version:
                self.log.warning(
                    "[HTTP] Auth version mismatch in response: local=%s, server=%s",
                    local_version,
                    server_version,
                )
                self._force_auth_reset()
                return

            if data.get("device_key"):
                self.storage.set(SESSION, DEVICE_KEY, data["device_key"])

            if data.get("status") == "authenticated":
                self.storage.set(SESSION, DEVICE_SESSION_KEY, AUTHENTICATED_SESSION)
                if data.get("handle"):
                    self.storage.set(SESSION, CURRENT_HANDLE_KEY, data["handle"])
                self.identity.store_auth_version(data.get("auth_version"))
                self.identity.refresh_device_header(data)
                self.log.info(
                    "[HTTP] Harvested authenticated response for %s (device %s)",
                    data.get("handle"),
                    short_key(data.get("device_key")),
                )
        except Exception as exc:
            self.log.error("[HTTP] Response harvesting failed: %s", exc)

    # Transport ----------------------------------------------------------------

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Send a request through both interceptors.

        Args:
            method: HTTP method
            path: Endpoint path in any accepted spelling
            params: Query string parameters
            payload: JSON body
            timeout: Per-request timeout in seconds

        Returns:
            Decoded JSON response body

        Raises:
            SessionInvalidError: If the session check cancelled the request
            ApiError: On a non-2xx response
            TransportError: If no response was received
        """
        normalized = normalize_auth_path(path)
        endpoint = _endpoint_label(normalized)

        if self.requires_session_check(normalized) and self.identity.is_authenticated():
            if not self.check_session_validity():
                self.navigator.go(SESSION_INVALID_URL)
                raise SessionInvalidError(f"Session invalid, request to {endpoint} cancelled")

        url = self.build_url(path)
        headers = self.prepare_headers(normalized)
        started = time.perf_counter()
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=headers,
                timeout=timeout or self.cfg.request_timeout,
            )
        except requests.RequestException as exc:
            metrics.http_requests_total.labels(
                method=method, endpoint=endpoint, status_code="error"
            ).inc()
            self.log.warning("[HTTP] %s %s failed: %s", method, endpoint, exc)
            raise TransportError(str(exc)) from exc
        finally:
            metrics.http_request_duration.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - started
            )

        metrics.http_requests_total.labels(
            method=method, endpoint=endpoint, status_code=str(response.status_code)
        ).inc()

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        if not response.ok:
            return self._handle_error_response(response.status_code, data, url)

        self.harvest_response(data)
        self.log.debug("[HTTP] %s %s -> %s", method, endpoint, data.get("status"))
        return data

    def _handle_error_response(
        self, status_code: int, data: Dict[str, Any], url: str
    ) -> Dict[str, Any]:
        if status_code == 401:
            if data.get("error") == VERSION_MISMATCH_ERROR:
                self.log.warning("[HTTP] Auth version mismatch detected, clearing authentication")
                self._force_auth_reset()
                return {"error": VERSION_MISMATCH_ERROR, "redirecting": True}
            self.auth_errors.report(url)
        raise ApiError(status_code, data, url)

    def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        return self.request("GET", path, params=params, timeout=timeout)

    def post(
        self,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        return self.request("POST", path, payload=payload or {}, timeout=timeout)

    def close(self) -> None:
        self.session.close()
