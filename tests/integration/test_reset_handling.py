"""Reset flags, redirect loop breaking and auth error recovery."""

import pytest

from devicetrust.config import ResetCfg
from devicetrust.errors import ApiError
from devicetrust.reset import (
    AUTH_ERROR_URL,
    LOOP_BROKEN_URL,
    LOOP_DETECTED_URL,
    ResetHandler,
)
from devicetrust.storage import StorageScope

LOCAL = StorageScope.LOCAL
SESSION = StorageScope.SESSION


@pytest.fixture
def signed_in(identity, authenticated_response):
    identity.store_device_session_data(authenticated_response)
    return identity


@pytest.mark.integration
class TestResetFlags:
    """Reset query flags wipe client state."""

    @pytest.mark.parametrize(
        "url",
        [
            "/?session_invalid=true",
            "/login?reset",
            "/?device_reset=1",
            "/?complete_reset=true&next=/dashboard",
        ],
    )
    def test_flags_trigger_reset(self, reset_handler, signed_in, storage, url):
        assert reset_handler.check_url_for_reset_flags(url) is True

        assert storage.keys(LOCAL) == []
        assert storage.keys(SESSION) == []

    def test_plain_url_keeps_state(self, reset_handler, signed_in, storage):
        assert reset_handler.check_url_for_reset_flags("/?next=/dashboard") is False

        assert storage.get(LOCAL, "authenticated_user") == "true"

    def test_defaults_to_current_location(self, reset_handler, signed_in, navigator, storage):
        navigator.go("/?auth_reset=true")

        assert reset_handler.check_url_for_reset_flags() is True
        assert storage.get(SESSION, "device_key") is None

    def test_full_reset_reports_known_keys(self, reset_handler, signed_in, storage):
        storage.set(LOCAL, "unrelated", "x")

        removed = reset_handler.perform_full_reset()

        assert removed > 0
        assert storage.get(LOCAL, "unrelated") is None


@pytest.mark.integration
class TestRedirectLoops:
    """Redirect counting inside the loop window."""

    def test_threshold_not_exceeded(self, reset_handler, clock, storage):
        for _ in range(3):
            assert reset_handler.record_redirect() is False
            clock.advance(1000)

        assert storage.get(SESSION, "redirect_count") == "3"

    def test_slow_redirects_reset_the_count(self, reset_handler, clock, storage):
        for _ in range(6):
            assert reset_handler.record_redirect() is False
            clock.advance(6000)

        assert storage.get(SESSION, "redirect_count") == "1"

    def test_loop_broken_on_fourth_fast_redirect(
        self, reset_handler, signed_in, clock, storage, navigator
    ):
        navigator.go("/dashboard")
        results = []
        for _ in range(4):
            results.append(reset_handler.record_redirect())
            clock.advance(500)

        assert results == [False, False, False, True]
        assert storage.get(LOCAL, "loop_detected") == "true"
        assert storage.get(LOCAL, "authenticated_user") is None
        assert navigator.url == LOOP_BROKEN_URL

    def test_loop_on_login_page_does_not_navigate(self, storage, identity, navigator, clock):
        handler = ResetHandler(storage, identity, ResetCfg(loop_threshold=1), navigator, clock)

        handler.record_redirect()
        assert handler.record_redirect() is True

        assert navigator.history == []

    def test_startup_after_detected_loop(self, reset_handler, storage, navigator):
        storage.set(LOCAL, "loop_detected", "true")
        navigator.go("/dashboard")

        assert reset_handler.startup() is True

        assert storage.get(LOCAL, "loop_detected") is None
        assert navigator.url == LOOP_DETECTED_URL

    def test_startup_counts_redirect(self, reset_handler, storage):
        assert reset_handler.startup("/") is False

        assert storage.get(SESSION, "redirect_count") == "1"

    def test_startup_honours_url_flags(self, reset_handler, signed_in, storage):
        assert reset_handler.startup("/?session_invalidated=1") is True

        assert storage.get(SESSION, "redirect_count") is None


@pytest.mark.integration
class TestAuthErrorRecovery:
    """401 responses reported by the HTTP client reset the tab."""

    def test_auth_error_from_protected_page(
        self, reset_handler, signed_in, http_client, backend, storage, navigator
    ):
        http_client.auth_errors.add_listener(reset_handler.on_auth_error)
        navigator.go("/dashboard")
        backend.routes["check_device"] = (401, {"error": "unauthorized"})

        with pytest.raises(ApiError):
            http_client.post("check_device")

        assert storage.get(LOCAL, "authenticated_user") is None
        assert navigator.url == AUTH_ERROR_URL

    def test_auth_error_on_login_page_stays(self, reset_handler, signed_in, navigator, storage):
        reset_handler.on_auth_error("https://app.test/api/v1/auth/check_device")

        assert navigator.history == []
        assert storage.get(SESSION, "device_key") is None

    def test_broadcast_writes_timestamp(self, reset_handler, storage, clock):
        reset_handler.broadcast_reset()

        assert storage.get(LOCAL, "device_reset_broadcast") == str(clock.now)
