"""Device identity: device key, signed device header, and session cache.

The device header binds a random device key to the last user who
authenticated on this device. It is persisted in the LOCAL scope so it
survives restarts and is visible to every tab; the session cache mirrors a
subset of it per tab.
"""

import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Any, Callable, Dict, Optional, Tuple

from . import metrics
from .config import DeviceCfg
from .fingerprint import (
    DeviceEnvironment,
    get_device_fingerprint,
    header_characteristics,
    rolling_hash,
)
from .storage import (
    AUTH_EXPIRATION_KEY,
    AUTH_VERSION_KEY,
    AUTHENTICATED_SESSION,
    AUTHENTICATED_USER_KEY,
    CURRENT_GUID_KEY,
    CURRENT_HANDLE_KEY,
    CURRENT_PHONE_KEY,
    DEVICE_HEADER_EXPIRATION_KEY,
    DEVICE_HEADER_KEY,
    DEVICE_KEY,
    DEVICE_SESSION_KEY,
    LAST_DEVICE_CHECK_KEY,
    LOGGING_OUT_KEY,
    LOGIN_TIME_KEY,
    LOGOUT_STATE_KEY,
    MASKED_PHONE_KEY,
    PREVIOUS_HANDLE_KEY,
    RESET_LOCAL_KEYS,
    RESET_SESSION_KEYS,
    STORAGE_TEST_KEY,
    StorageAdapter,
    StorageScope,
)

logger = logging.getLogger(__name__)

LOCAL = StorageScope.LOCAL
SESSION = StorageScope.SESSION

REQUIRED_HEADER_FIELDS = ("deviceId", "userGuid", "userHandle")
AUTH_STATE_TTL_MS = 24 * 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def short_key(key: Optional[str]) -> str:
    """Abbreviate a device key for log output."""
    if not key:
        return "<none>"
    return f"{key[:10]}..."


def checksum_signature(device_id: str, user_guid: str, timestamp: Any) -> str:
    """Legacy rolling checksum over ``deviceId|userGuid|timestamp``.

    Deters casual edits of the stored header; it is not a security control.
    Negative values render with a leading ``-``.
    """
    try:
        value = rolling_hash(f"{device_id}|{user_guid}|{timestamp}")
        return f"-{-value:x}" if value < 0 else f"{value:x}"
    except Exception as exc:
        logger.error("[DEVICE] Error generating signature: %s", exc)
        return "invalid"


def hmac_signature(secret: str, device_id: str, user_guid: str, timestamp: Any) -> str:
    """HMAC-SHA256 over ``deviceId|userGuid|timestamp``, hex encoded."""
    message = f"{device_id}|{user_guid}|{timestamp}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def missing_header_fields(
    device_id: Optional[str], user_guid: Optional[str], user_handle: Optional[str]
) -> list:
    values = dict(zip(REQUIRED_HEADER_FIELDS, (device_id, user_guid, user_handle)))
    return [name for name, value in values.items() if not value]


class DeviceIdentity:
    """Reads, writes and validates device identity material."""

    def __init__(
        self,
        storage: StorageAdapter,
        cfg: Optional[DeviceCfg] = None,
        environment: Optional[DeviceEnvironment] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """Initialize device identity.

        Args:
            storage: Storage adapter holding LOCAL and SESSION scopes
            cfg: Device header configuration
            environment: Host description used for fingerprinting
            clock: Callable returning epoch milliseconds
        """
        self.storage = storage
        self.cfg = cfg or DeviceCfg()
        self.environment = environment
        self.clock = clock or _now_ms
        self.log = logger

    # Device key ---------------------------------------------------------------

    def generate_device_key(self) -> Optional[str]:
        """Draw 32 random bytes and hex-encode them."""
        try:
            key = secrets.token_hex(32)
        except Exception as exc:
            self.log.error("[DEVICE] Failed to generate device key: %s", exc)
            return None
        self.log.debug("[DEVICE] Generated new device key: %s", short_key(key))
        return key

    def get_stored_device_key(self) -> Optional[str]:
        """Resolve this tab's device key.

        A complete header wins, then the session cache; otherwise a fresh key
        is generated and cached for the tab.
        """
        header = self.get_complete_device_header()
        if header:
            self.storage.set(SESSION, DEVICE_KEY, header["deviceId"])
            return header["deviceId"]

        session_key = self.storage.get(SESSION, DEVICE_KEY)
        if session_key:
            return session_key

        new_key = self.generate_device_key()
        if new_key:
            self.storage.set(SESSION, DEVICE_KEY, new_key)
            self.log.info("[DEVICE] Stored new device key: %s", short_key(new_key))
        return new_key

    def get_device_fingerprint(self) -> Optional[Dict[str, Any]]:
        return get_device_fingerprint(self.environment)

    # Signature ----------------------------------------------------------------

    def compute_signature(self, device_id: str, user_guid: str, timestamp: Any) -> str:
        """Sign the header identity fields.

        Uses HMAC-SHA256 when a signing secret is configured and the legacy
        rolling checksum otherwise.
        """
        device_id = device_id or ""
        user_guid = user_guid or ""
        timestamp = "" if timestamp is None else timestamp
        if self.cfg.signing_secret:
            return hmac_signature(self.cfg.signing_secret, device_id, user_guid, timestamp)
        return checksum_signature(device_id, user_guid, timestamp)

    # Header generation --------------------------------------------------------

    def _storage_writable(self) -> bool:
        try:
            self.storage.set(LOCAL, STORAGE_TEST_KEY, "test")
            readable = self.storage.get(LOCAL, STORAGE_TEST_KEY) == "test"
            self.storage.remove(LOCAL, STORAGE_TEST_KEY)
            return readable
        except Exception as exc:
            self.log.error("[DEVICE] Local storage not accessible: %s", exc)
            return False

    def build_device_header(
        self, device_id: str, user_guid: str, user_handle: str
    ) -> Dict[str, Any]:
        timestamp = self.clock()
        header: Dict[str, Any] = {
            "deviceId": device_id,
            "userGuid": user_guid,
            "userHandle": user_handle,
            "timestamp": timestamp,
            "deviceCharacteristics": header_characteristics(
                self.get_device_fingerprint()
            ),
        }
        header["signature"] = self.compute_signature(device_id, user_guid, timestamp)
        return header

    def _write_header(self, header: Dict[str, Any]) -> str:
        serialized = json.dumps(header, separators=(",", ":"))
        self.storage.set(LOCAL, DEVICE_HEADER_KEY, serialized)
        expiration = self.clock() + self.cfg.header_max_age_ms
        self.storage.set(LOCAL, DEVICE_HEADER_EXPIRATION_KEY, str(expiration))
        return serialized

    def generate_device_header(
        self,
        device_id: Optional[str],
        user_guid: Optional[str],
        user_handle: Optional[str],
    ) -> Optional[str]:
        """Build, sign and persist a device header.

        Args:
            device_id: Device key to bind
            user_guid: GUID of the authenticated user
            user_handle: Handle of the authenticated user

        Returns:
            Serialized header, or None if a field is missing or the write
            could not be verified
        """
        missing = missing_header_fields(device_id, user_guid, user_handle)
        if missing:
            self.log.warning(
                "[DEVICE] Missing %s for device header generation", ", ".join(missing)
            )
            return None

        if not self._storage_writable():
            return None

        try:
            header = self.build_device_header(device_id, user_guid, user_handle)
            serialized = self._write_header(header)
        except Exception as exc:
            self.log.error("[DEVICE] Error generating device header: %s", exc)
            return None

        stored = self.storage.get(LOCAL, DEVICE_HEADER_KEY)
        if stored != serialized:
            self.log.error("[DEVICE] Failed to verify stored device header")
            return None

        metrics.device_headers_generated_total.labels(method="signed").inc()
        self.log.info(
            "[DEVICE] Stored device header for %s (device %s)",
            user_handle,
            short_key(device_id),
        )
        return serialized

    # Header validation --------------------------------------------------------

    def validate_device_header(self, header: Any) -> Tuple[bool, Optional[str]]:
        """Check completeness, signature and age of a parsed header.

        Returns:
            ``(True, None)`` when trusted, else ``(False, reason)``
        """
        if not isinstance(header, dict):
            return False, "corrupt"
        if missing_header_fields(
            header.get("deviceId"), header.get("userGuid"), header.get("userHandle")
        ):
            return False, "incomplete"

        expected = self.compute_signature(
            header.get("deviceId"), header.get("userGuid"), header.get("timestamp")
        )
        signature = header.get("signature")
        if (
            not isinstance(signature, str)
            or not signature.isascii()
            or not hmac.compare_digest(signature, expected)
        ):
            return False, "signature"

        timestamp = header.get("timestamp")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            return False, "corrupt"
        if self.clock() - timestamp > self.cfg.header_max_age_ms:
            return False, "expired"
        return True, None

    def purge_device_header(self, reason: str) -> None:
        self.storage.remove(LOCAL, DEVICE_HEADER_KEY)
        self.storage.remove(LOCAL, DEVICE_HEADER_EXPIRATION_KEY)
        metrics.device_headers_purged_total.labels(reason=reason).inc()
        self.log.warning("[DEVICE] Purged stored device header (%s)", reason)

    def _expiration_passed(self) -> bool:
        raw = self.storage.get(LOCAL, DEVICE_HEADER_EXPIRATION_KEY)
        try:
            expiration = int(raw or 0)
        except ValueError:
            return False
        return expiration > 0 and self.clock() > expiration

    def _load_header(self) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
        serialized = self.storage.get(LOCAL, DEVICE_HEADER_KEY)
        if not serialized:
            return None, None

        try:
            header = json.loads(serialized)
        except ValueError as exc:
            self.log.error("[DEVICE] Error parsing stored device header: %s", exc)
            self.purge_device_header("corrupt")
            return None, None

        ok, reason = self.validate_device_header(header)
        if ok and self._expiration_passed():
            ok, reason = False, "expired"
        if not ok:
            self.purge_device_header(reason)
            return None, None
        return serialized, header

    def get_device_header(self) -> Optional[str]:
        """Return the stored serialized header if it is still trusted."""
        serialized, _ = self._load_header()
        return serialized

    def get_complete_device_header(self) -> Optional[Dict[str, Any]]:
        """Return the stored header as a dict if it is still trusted."""
        _, header = self._load_header()
        return header

    # Session cache ------------------------------------------------------------

    def refresh_device_header(self, data: Dict[str, Any]) -> bool:
        header_data = data.get("device_header_data")
        if isinstance(header_data, dict):
            device_id = header_data.get("deviceId")
            user_guid = header_data.get("userGuid")
            user_handle = header_data.get("userHandle")
        else:
            device_id = data.get("device_key")
            user_guid = data.get("guid")
            user_handle = data.get("handle") or self.storage.get(
                SESSION, CURRENT_HANDLE_KEY
            )

        missing = missing_header_fields(device_id, user_guid, user_handle)
        if missing:
            self.log.debug(
                "[DEVICE] Response lacks %s, device header not refreshed",
                ", ".join(missing),
            )
            return False

        if self.generate_device_header(device_id, user_guid, user_handle):
            return True

        # Primary path failed although every identity field is known
        self.log.warning("[DEVICE] Header generation failed, writing header directly")
        try:
            header = self.build_device_header(device_id, user_guid, user_handle)
            self._write_header(header)
        except Exception as exc:
            self.log.error("[DEVICE] Direct header write failed: %s", exc)
            return False
        metrics.device_headers_generated_total.labels(method="fallback").inc()
        return True

    def store_auth_version(self, version: Any) -> None:
        if version is None or version == "":
            return
        self.storage.set(LOCAL, AUTH_VERSION_KEY, str(version))

    def auth_version(self) -> int:
        raw = self.storage.get(LOCAL, AUTH_VERSION_KEY)
        try:
            return int(raw) if raw else 0
        except ValueError:
            return 0

    def is_authenticated(self) -> bool:
        return self.storage.get(LOCAL, AUTHENTICATED_USER_KEY) == "true"

    def store_device_session_data(self, data: Optional[Dict[str, Any]]) -> bool:
        """Persist trust data carried by an authentication response.

        Args:
            data: Decoded response body

        Returns:
            True if a device header was stored or refreshed
        """
        if not data:
            self.log.warning("[DEVICE] No data provided to store_device_session_data")
            return False

        now = self.clock()
        if data.get("device_key"):
            self.storage.set(SESSION, DEVICE_KEY, data["device_key"])

        if data.get("status") == "authenticated":
            self.storage.set(SESSION, DEVICE_SESSION_KEY, AUTHENTICATED_SESSION)
            self.storage.set(LOCAL, AUTHENTICATED_USER_KEY, "true")
            self.storage.set(LOCAL, AUTH_EXPIRATION_KEY, str(now + AUTH_STATE_TTL_MS))

        self.store_auth_version(data.get("auth_version"))

        for field, key in (
            ("handle", CURRENT_HANDLE_KEY),
            ("phone", CURRENT_PHONE_KEY),
            ("guid", CURRENT_GUID_KEY),
            ("masked_phone", MASKED_PHONE_KEY),
        ):
            if data.get(field):
                self.storage.set(SESSION, key, str(data[field]))
        self.storage.set(SESSION, LAST_DEVICE_CHECK_KEY, str(now))
        self.storage.set(SESSION, LOGIN_TIME_KEY, str(now))

        return self.refresh_device_header(data)

    def clear_device_session(self) -> None:
        """Forget the user binding but keep the device recognizable."""
        device_key = self.storage.get(SESSION, DEVICE_KEY)
        current_handle = self.storage.get(SESSION, CURRENT_HANDLE_KEY)

        if current_handle:
            self.storage.set(LOCAL, PREVIOUS_HANDLE_KEY, current_handle)
        self.storage.set(LOCAL, LOGOUT_STATE_KEY, "true")

        for key in self.storage.keys(SESSION):
            if key != DEVICE_KEY:
                self.storage.remove(SESSION, key)

        self.storage.remove(LOCAL, DEVICE_HEADER_KEY)
        self.storage.remove(LOCAL, DEVICE_HEADER_EXPIRATION_KEY)

        if device_key:
            self.storage.set(SESSION, DEVICE_KEY, device_key)
        self.storage.set(SESSION, LOGGING_OUT_KEY, "true")
        self.log.info(
            "[DEVICE] Cleared device session, preserved device key %s",
            short_key(device_key),
        )

    def completely_reset_device_storage(self) -> int:
        """Remove every device and auth key from both scopes.

        Returns:
            Number of keys removed
        """
        removed = 0
        for scope, keys in ((LOCAL, RESET_LOCAL_KEYS), (SESSION, RESET_SESSION_KEYS)):
            for key in keys:
                if self.storage.get(scope, key) is not None:
                    self.storage.remove(scope, key)
                    removed += 1
        self.log.info("[DEVICE] Device storage reset complete (%d keys removed)", removed)
        return removed
