"""Unit tests for the trusted HTTP client."""

import json
from unittest.mock import MagicMock

import pytest
import requests

from devicetrust.config import HttpCfg
from devicetrust.errors import ApiError, SessionInvalidError, TransportError
from devicetrust.http_client import (
    AuthErrorMonitor,
    TrustedHttpClient,
    normalize_auth_path,
)
from devicetrust.storage import StorageScope

LOCAL = StorageScope.LOCAL
SESSION = StorageScope.SESSION


class TickingClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.mark.unit
class TestNormalizeAuthPath:
    """Every spelling of an auth endpoint resolves to auth/<endpoint>."""

    @pytest.mark.parametrize(
        "path",
        [
            "check_device",
            "/check_device",
            "auth/check_device",
            "/auth/check_device",
            "api/v1/auth/check_device",
            "/api/v1/auth/check_device",
            "/api/v1/auth/api/v1/check_device",
            "api/v1/check_device",
        ],
    )
    def test_spellings(self, path):
        assert normalize_auth_path(path) == "auth/check_device"

    def test_build_url(self, http_client):
        assert (
            http_client.build_url("/api/v1/auth/verify_pin")
            == "https://app.test/api/v1/auth/verify_pin"
        )


@pytest.mark.unit
class TestRequestHeaders:
    """Trust material attached to outgoing requests."""

    def test_fingerprint_header_without_trusted_binding(self, http_client, backend, storage):
        backend.routes["check_device"] = {"status": "show_options"}

        http_client.post("check_device")

        headers = backend.calls[0]["headers"]
        device_key = storage.get(SESSION, "device_key")
        assert headers["X-Device-Key"] == device_key
        assert headers["X-CSRF-Token"] == "csrf-123"
        assert "X-Auth-Version" not in headers
        fingerprint_header = json.loads(headers["X-Device-Header"])
        assert fingerprint_header["deviceId"] == device_key
        assert "signature" not in fingerprint_header
        assert fingerprint_header["deviceCharacteristics"]["platform"] == "MacIntel"

    def test_trusted_header_sent_verbatim(self, http_client, backend, identity, storage):
        serialized = identity.generate_device_header("d" * 64, "guid-1", "@alice")
        storage.set(LOCAL, "auth_version", "2")
        backend.routes["check_device"] = {"status": "show_options"}

        http_client.post("/api/v1/auth/check_device")

        headers = backend.calls[0]["headers"]
        assert headers["X-Device-Header"] == serialized
        assert headers["X-Device-Key"] == "d" * 64
        assert headers["X-Auth-Version"] == "2"

    def test_no_csrf_header_when_token_empty(self, http_client, backend):
        http_client.set_csrf_token("")
        backend.routes["check_device"] = {"status": "show_options"}

        http_client.post("check_device")

        assert "X-CSRF-Token" not in backend.calls[0]["headers"]

    def test_request_arguments(self, http_client, backend):
        backend.routes["check_handle"] = {"exists": False}

        http_client.get("check_handle", {"handle": "@alice"}, timeout=3)

        backend.session.request.assert_called_once()
        args, kwargs = backend.session.request.call_args
        assert args == ("GET", "https://app.test/api/v1/auth/check_handle")
        assert kwargs["params"] == {"handle": "@alice"}
        assert kwargs["timeout"] == 3


@pytest.mark.unit
class TestResponseHandling:
    """Harvesting and error mapping."""

    def test_authenticated_response_harvested(
        self, http_client, backend, storage, identity, authenticated_response
    ):
        backend.routes["verify_code"] = authenticated_response

        data = http_client.post("verify_code", {"code": "123456"})

        assert data == authenticated_response
        assert storage.get(SESSION, "device_key") == "a" * 64
        assert storage.get(SESSION, "device_session") == "authenticated"
        assert storage.get(SESSION, "current_handle") == "@alice"
        assert storage.get(LOCAL, "auth_version") == "2"
        assert identity.get_complete_device_header()["userGuid"] == "guid-alice"

    def test_newer_server_auth_version_forces_reset(
        self, http_client, backend, storage, navigator
    ):
        storage.set(LOCAL, "auth_version", "1")
        storage.set(LOCAL, "authenticated_user", "true")
        backend.routes["check_device"] = {"status": "show_options", "auth_version": 2}

        http_client.post("check_device")

        assert storage.get(LOCAL, "authenticated_user") is None
        assert storage.get(LOCAL, "device_reset") == "true"
        assert navigator.url == "/?auth_reset=true"

    def test_version_mismatch_401_returns_redirecting(
        self, http_client, backend, storage, navigator
    ):
        storage.set(LOCAL, "authenticated_user", "true")
        backend.routes["check_device"] = (401, {"error": "AuthVersionMismatch"})

        data = http_client.post("check_device")

        assert data == {"error": "AuthVersionMismatch", "redirecting": True}
        assert storage.get(LOCAL, "device_reset") == "true"
        assert navigator.url == "/?auth_reset=true"

    def test_error_status_raises_api_error(self, http_client, backend):
        backend.routes["create_handle"] = (409, {"error": "handle_exists"})

        with pytest.raises(ApiError) as excinfo:
            http_client.post("create_handle", {"handle": "@alice"})

        assert excinfo.value.status_code == 409
        assert excinfo.value.error_code == "handle_exists"

    def test_transport_failure_raises_transport_error(self, http_client, backend):
        backend.routes["check_device"] = requests.ConnectionError("refused")

        with pytest.raises(TransportError):
            http_client.post("check_device")

    def test_non_json_body(self, http_client, backend):
        response = MagicMock(status_code=200, ok=True)
        response.json.side_effect = ValueError("no json")
        backend.session.request.side_effect = None
        backend.session.request.return_value = response

        assert http_client.post("check_device") == {}

    def test_401_reported_to_listeners(self, http_client, backend):
        listener = MagicMock()
        http_client.auth_errors.add_listener(listener)
        backend.routes["check_device"] = (401, {"error": "unauthorized"})

        with pytest.raises(ApiError):
            http_client.post("check_device")

        listener.assert_called_once_with("https://app.test/api/v1/auth/check_device")

    def test_401_from_pin_check_not_reported(self, http_client, backend):
        listener = MagicMock()
        http_client.auth_errors.add_listener(listener)
        backend.routes["verify_pin"] = (401, {"error": "Invalid PIN"})

        with pytest.raises(ApiError):
            http_client.post("verify_pin", {"pin": "0000"})

        listener.assert_not_called()


@pytest.mark.unit
class TestAuthErrorMonitor:
    """401 fan-out with cooldown."""

    def test_cooldown_suppresses_bursts(self):
        clock = TickingClock()
        monitor = AuthErrorMonitor(cooldown=2.0, clock=clock)
        listener = MagicMock()
        monitor.add_listener(listener)

        assert monitor.report("/auth/fast_authenticate") is True
        clock.now += 1.0
        assert monitor.report("/auth/create_handle") is False
        clock.now += 1.5
        assert monitor.report("/auth/create_handle") is True
        assert listener.call_count == 2

    def test_ignored_urls(self):
        monitor = AuthErrorMonitor()

        assert monitor.should_ignore("https://app.test/api/v1/auth/verify_session")
        assert monitor.should_ignore("https://app.test/api/v1/auth/verify_code")
        assert not monitor.should_ignore("https://app.test/api/v1/auth/check_device")

    def test_failing_listener_does_not_stop_others(self):
        monitor = AuthErrorMonitor()
        second = MagicMock()
        monitor.add_listener(MagicMock(side_effect=RuntimeError("boom")))
        monitor.add_listener(second)

        monitor.report("/auth/check_device")

        second.assert_called_once()


@pytest.mark.unit
class TestSessionValidity:
    """verify_session debounce and outcomes."""

    @pytest.fixture
    def ticking(self):
        return TickingClock()

    @pytest.fixture
    def client(self, identity, storage, backend, navigator, ticking):
        return TrustedHttpClient(
            identity,
            storage,
            HttpCfg(base_url="https://app.test/api/v1"),
            session=backend.session,
            navigator=navigator,
            clock=ticking,
        )

    def test_unauthenticated_skips_check(self, client, backend):
        assert client.check_session_validity() is True
        assert backend.calls == []

    def test_check_is_debounced(self, client, backend, storage, ticking):
        storage.set(LOCAL, "authenticated_user", "true")
        backend.routes["verify_session"] = {"authenticated": True}

        assert client.check_session_validity() is True
        ticking.now += 1.0
        assert client.check_session_validity() is True
        assert len(backend.calls_to("verify_session")) == 1

        ticking.now += 5.0
        client.check_session_validity()
        assert len(backend.calls_to("verify_session")) == 2

    def test_rejected_session_clears_flag(self, client, backend, storage):
        storage.set(LOCAL, "authenticated_user", "true")
        backend.routes["verify_session"] = {"authenticated": False}

        assert client.check_session_validity() is False
        assert storage.get(LOCAL, "authenticated_user") is None

    def test_transport_error_keeps_flag(self, client, backend, storage):
        storage.set(LOCAL, "authenticated_user", "true")
        backend.routes["verify_session"] = requests.ConnectionError("offline")

        assert client.check_session_validity() is True
        assert storage.get(LOCAL, "authenticated_user") == "true"

    def test_outdated_auth_version_marks_reset(self, client, backend, storage):
        storage.set(LOCAL, "authenticated_user", "true")
        storage.set(LOCAL, "auth_version", "1")
        backend.routes["verify_session"] = {"authenticated": True, "auth_version": 3}

        assert client.check_session_validity() is False
        assert storage.get(LOCAL, "device_reset") == "true"

    def test_invalid_session_cancels_request(self, client, backend, storage, navigator):
        storage.set(LOCAL, "authenticated_user", "true")
        backend.routes["verify_session"] = (401, {"error": "expired"})

        with pytest.raises(SessionInvalidError):
            client.post("create_handle", {"handle": "@alice"})

        assert backend.calls_to("create_handle") == []
        assert navigator.url == "/?session_invalid=true"

    def test_exempt_endpoint_skips_session_check(self, client, backend, storage):
        storage.set(LOCAL, "authenticated_user", "true")
        backend.routes["check_device"] = {"status": "show_options"}

        client.post("check_device")

        assert backend.calls_to("verify_session") == []
