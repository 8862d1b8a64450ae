"""Client-side reset handling: URL reset flags, redirect loops and auth errors."""

import logging
from typing import Callable, Optional
from urllib.parse import parse_qs, urlsplit

from .config import ResetCfg
from .device_identity import DeviceIdentity
from .navigation import Navigator
from .storage import (
    DEVICE_RESET_BROADCAST_KEY,
    LAST_REDIRECT_TIME_KEY,
    LOOP_DETECTED_KEY,
    REDIRECT_COUNT_KEY,
    StorageAdapter,
    StorageScope,
)

log = logging.getLogger(__name__)

LOCAL = StorageScope.LOCAL
SESSION = StorageScope.SESSION

RESET_URL_FLAGS = (
    "session_invalid",
    "session_invalidated",
    "auth_reset",
    "reset",
    "device_reset",
    "complete_reset",
)

AUTH_ERROR_URL = "/?auth_error=true"
LOOP_BROKEN_URL = "/?loop_broken=true"
LOOP_DETECTED_URL = "/?loop_detected=true"
RESET_BROADCAST_URL = "/?reset_broadcast=true"


def _as_int(raw: Optional[str]) -> int:
    try:
        return int(raw) if raw else 0
    except ValueError:
        return 0


class ResetHandler:
    """Wipes client state when the session can no longer be trusted."""

    def __init__(
        self,
        storage: StorageAdapter,
        identity: DeviceIdentity,
        cfg: Optional[ResetCfg] = None,
        navigator: Optional[Navigator] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """Initialize the reset handler.

        Args:
            storage: Storage adapter to wipe
            identity: Device identity whose keys are reset first
            cfg: Loop detection thresholds
            navigator: Location tracker for recovery redirects
            clock: Callable returning epoch milliseconds (defaults to the identity's)
        """
        self.storage = storage
        self.identity = identity
        self.cfg = cfg or ResetCfg()
        self.navigator = navigator or Navigator()
        self.clock = clock or identity.clock
        self.log = log

    def perform_full_reset(self) -> int:
        """Remove every trace of device and session state in both scopes.

        Returns:
            Number of known device keys removed before the scopes were cleared
        """
        self.log.warning("[RESET] Performing full reset of client-side state")
        removed = self.identity.completely_reset_device_storage()
        for scope in (LOCAL, SESSION):
            try:
                self.storage.clear(scope)
            except Exception as exc:
                self.log.error("[RESET] Failed to clear %s storage: %s", scope.value, exc)
        return removed

    def check_url_for_reset_flags(self, url: Optional[str] = None) -> bool:
        """Reset when ``url`` (default: the current location) asks for it."""
        query = parse_qs(urlsplit(url or self.navigator.url).query, keep_blank_values=True)
        for flag in RESET_URL_FLAGS:
            if flag in query:
                self.log.info("[RESET] Reset flag detected in URL: %s", flag)
                self.perform_full_reset()
                return True
        return False

    def record_redirect(self) -> bool:
        """Count a page arrival and break redirect loops.

        Returns:
            True if a loop was detected and state was reset
        """
        now = self.clock()
        count = _as_int(self.storage.get(SESSION, REDIRECT_COUNT_KEY))
        last = _as_int(self.storage.get(SESSION, LAST_REDIRECT_TIME_KEY))
        if last > 0 and now - last < self.cfg.loop_window * 1000:
            count += 1
        else:
            count = 1
        self.storage.set(SESSION, REDIRECT_COUNT_KEY, str(count))
        self.storage.set(SESSION, LAST_REDIRECT_TIME_KEY, str(now))

        if count <= self.cfg.loop_threshold:
            return False

        self.log.error("[RESET] Redirect loop detected after %d redirects", count)
        self.perform_full_reset()
        # Survives the wipe so the next page load starts from a clean slate too
        self.storage.set(LOCAL, LOOP_DETECTED_KEY, "true")
        if not self.navigator.is_login_page():
            self.navigator.go(LOOP_BROKEN_URL)
        return True

    def startup(self, url: Optional[str] = None) -> bool:
        """Run the page-load checks: URL flags, a previous loop, redirect counting.

        Returns:
            True if state was reset
        """
        if self.check_url_for_reset_flags(url):
            return True

        if self.storage.get(LOCAL, LOOP_DETECTED_KEY) == "true":
            self.log.warning("[RESET] Loop previously detected, bypassing auth checks")
            self.perform_full_reset()
            if not self.navigator.is_login_page():
                self.navigator.go(LOOP_DETECTED_URL)
            return True

        return self.record_redirect()

    def broadcast_reset(self) -> None:
        """Ask every sibling tab to reset."""
        self.storage.set(LOCAL, DEVICE_RESET_BROADCAST_KEY, str(self.clock()))
        self.log.info("[RESET] Reset broadcast to other tabs")

    def on_reset_broadcast(self) -> None:
        self.perform_full_reset()
        if self.navigator.path != "/":
            self.navigator.go(RESET_BROADCAST_URL)

    def on_auth_error(self, url: str) -> None:
        """Listener for 401 responses reported by the HTTP client."""
        self.log.warning("[RESET] Auth error from %s", url)
        self.perform_full_reset()
        if not self.navigator.is_login_page():
            self.navigator.go(AUTH_ERROR_URL)
