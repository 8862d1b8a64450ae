"""Storage adapters for device and session state.

Two scopes model the browser split: ``LOCAL`` survives restarts and is shared
by every tab, ``SESSION`` belongs to one tab. Writes to ``LOCAL`` raise change
events in the *other* tabs, which is what cross-tab sync listens to.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from redis import Redis

from .config import StorageCfg

# Persistent (local scope) keys
DEVICE_HEADER_KEY = "superapp_device_header"
DEVICE_HEADER_EXPIRATION_KEY = "superapp_device_header_expiration"
STORAGE_TEST_KEY = "superapp_local_storage_test"
AUTHENTICATED_USER_KEY = "authenticated_user"
LOGOUT_STATE_KEY = "logout_state"
PREVIOUS_HANDLE_KEY = "previous_handle"
AUTH_VERSION_KEY = "auth_version"
AUTH_EXPIRATION_KEY = "auth_expiration"
DEVICE_RESET_KEY = "device_reset"
DEVICE_RESET_BROADCAST_KEY = "device_reset_broadcast"
LOOP_DETECTED_KEY = "loop_detected"

# Per-tab (session scope) keys
DEVICE_KEY = "device_key"
DEVICE_SESSION_KEY = "device_session"
CURRENT_HANDLE_KEY = "current_handle"
CURRENT_PHONE_KEY = "current_phone"
CURRENT_GUID_KEY = "current_guid"
MASKED_PHONE_KEY = "masked_phone"
LAST_DEVICE_CHECK_KEY = "last_device_check"
LOGIN_TIME_KEY = "login_time"
VERIFICATION_IN_PROGRESS_KEY = "verification_in_progress"
DEVICE_REGISTRATION_KEY = "device_registration"
DEVICE_REGISTRATION_FLOW_KEY = "device_registration_flow"
HANDLE_FIRST_KEY = "handle_first"
PENDING_VERIFICATION_KEY = "pending_verification"
PENDING_DEVICE_PATH_KEY = "pending_device_path"
REGISTRATION_PHONE_KEY = "registration_phone"
ACCOUNT_ALREADY_EXISTS_KEY = "account_already_exists"
LOGGING_OUT_KEY = "logging_out"
REDIRECT_COUNT_KEY = "redirect_count"
LAST_REDIRECT_TIME_KEY = "last_redirect_time"
DEVICE_GUID_KEY = "device_guid"

AUTHENTICATED_SESSION = "authenticated"

# Keys removed by a complete device storage reset
RESET_LOCAL_KEYS = (
    AUTHENTICATED_USER_KEY,
    DEVICE_HEADER_KEY,
    DEVICE_HEADER_EXPIRATION_KEY,
    "device_verified",
    "last_verification",
    "device_check_lock",
    "current_tab_lock",
    "superapp_tab_id",
    PREVIOUS_HANDLE_KEY,
    LOOP_DETECTED_KEY,
    AUTH_VERSION_KEY,
    AUTH_EXPIRATION_KEY,
)
RESET_SESSION_KEYS = (
    DEVICE_SESSION_KEY,
    CURRENT_HANDLE_KEY,
    CURRENT_PHONE_KEY,
    "device_path",
    DEVICE_KEY,
    "device_key_expiration",
    CURRENT_GUID_KEY,
    DEVICE_GUID_KEY,
    PENDING_DEVICE_PATH_KEY,
    VERIFICATION_IN_PROGRESS_KEY,
    REDIRECT_COUNT_KEY,
    DEVICE_REGISTRATION_KEY,
    DEVICE_REGISTRATION_FLOW_KEY,
    HANDLE_FIRST_KEY,
    LAST_DEVICE_CHECK_KEY,
    LOGIN_TIME_KEY,
    MASKED_PHONE_KEY,
)


class StorageScope(str, Enum):
    """Storage areas mirroring browser localStorage and sessionStorage."""

    LOCAL = "local"
    SESSION = "session"


@dataclass(frozen=True)
class StorageEvent:
    """Change notification for a key written by another tab."""

    key: str
    old_value: Optional[str]
    new_value: Optional[str]
    scope: StorageScope
    source_tab: str


StorageListener = Callable[[StorageEvent], None]


class StorageAdapter:
    """Key/value capability over the LOCAL and SESSION scopes.

    Values are strings; ``None`` means the key is absent.
    """

    def __init__(self, tab_id: Optional[str] = None):
        self.tab_id = tab_id or uuid.uuid4().hex[:12]
        self.log = logging.getLogger(__name__)
        self._listeners: List[StorageListener] = []

    def get(self, scope: StorageScope, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, scope: StorageScope, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, scope: StorageScope, key: str) -> None:
        raise NotImplementedError

    def keys(self, scope: StorageScope) -> List[str]:
        raise NotImplementedError

    def clear(self, scope: StorageScope) -> None:
        for key in self.keys(scope):
            self.remove(scope, key)

    def add_listener(self, callback: StorageListener) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: StorageListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def dispatch(self, event: StorageEvent) -> None:
        """Deliver a foreign change event to this tab's listeners."""
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as exc:
                self.log.warning(
                    "[STORAGE] Listener failed for key %s: %s", event.key, exc
                )


class SharedArea:
    """Local-scope dict shared by sibling in-memory tabs."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.tabs: List["InMemoryStorage"] = []


class InMemoryStorage(StorageAdapter):
    """In-process storage; sibling tabs created with ``open_tab`` share LOCAL."""

    def __init__(self, area: Optional[SharedArea] = None, tab_id: Optional[str] = None):
        super().__init__(tab_id)
        self.area = area or SharedArea()
        self.area.tabs.append(self)
        self._session: Dict[str, str] = {}

    def open_tab(self, tab_id: Optional[str] = None) -> "InMemoryStorage":
        """Create a sibling tab sharing this tab's LOCAL scope."""
        return InMemoryStorage(area=self.area, tab_id=tab_id)

    def close_tab(self) -> None:
        if self in self.area.tabs:
            self.area.tabs.remove(self)

    def _store(self, scope: StorageScope) -> Dict[str, str]:
        return self.area.data if scope == StorageScope.LOCAL else self._session

    def get(self, scope: StorageScope, key: str) -> Optional[str]:
        return self._store(scope).get(key)

    def set(self, scope: StorageScope, key: str, value: str) -> None:
        store = self._store(scope)
        old_value = store.get(key)
        store[key] = str(value)
        if scope == StorageScope.LOCAL and old_value != store[key]:
            self._notify_siblings(key, old_value, store[key])

    def remove(self, scope: StorageScope, key: str) -> None:
        store = self._store(scope)
        if key not in store:
            return
        old_value = store.pop(key)
        if scope == StorageScope.LOCAL:
            self._notify_siblings(key, old_value, None)

    def keys(self, scope: StorageScope) -> List[str]:
        return list(self._store(scope).keys())

    def _notify_siblings(
        self, key: str, old_value: Optional[str], new_value: Optional[str]
    ) -> None:
        event = StorageEvent(
            key=key,
            old_value=old_value,
            new_value=new_value,
            scope=StorageScope.LOCAL,
            source_tab=self.tab_id,
        )
        for tab in list(self.area.tabs):
            if tab is not self:
                tab.dispatch(event)


class RedisStorage(StorageAdapter):
    """Redis-backed storage with change events published over pub/sub."""

    def __init__(
        self,
        redis_client: Redis,
        namespace: str = "devicetrust",
        tab_id: Optional[str] = None,
    ):
        """Initialize Redis storage.

        Args:
            redis_client: Connected Redis client instance
            namespace: Key prefix shared by every tab of one device
            tab_id: Identifier of this tab (random when omitted)
        """
        super().__init__(tab_id)
        self.redis = redis_client
        self.namespace = namespace
        self.events_channel = f"{namespace}:storage_events"

    def _local_key(self, key: str) -> str:
        return f"{self.namespace}:local:{key}"

    @property
    def _session_hash(self) -> str:
        return f"{self.namespace}:session:{self.tab_id}"

    @staticmethod
    def _decode(value) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def get(self, scope: StorageScope, key: str) -> Optional[str]:
        try:
            if scope == StorageScope.LOCAL:
                return self._decode(self.redis.get(self._local_key(key)))
            return self._decode(self.redis.hget(self._session_hash, key))
        except Exception as exc:
            self.log.warning("[STORAGE] Failed to read %s/%s: %s", scope.value, key, exc)
            return None

    def set(self, scope: StorageScope, key: str, value: str) -> None:
        try:
            if scope == StorageScope.SESSION:
                self.redis.hset(self._session_hash, key, str(value))
                return
            old_value = self._decode(self.redis.get(self._local_key(key)))
            self.redis.set(self._local_key(key), str(value))
            if old_value != str(value):
                self._publish(key, old_value, str(value))
        except Exception as exc:
            self.log.warning("[STORAGE] Failed to write %s/%s: %s", scope.value, key, exc)

    def remove(self, scope: StorageScope, key: str) -> None:
        try:
            if scope == StorageScope.SESSION:
                self.redis.hdel(self._session_hash, key)
                return
            old_value = self._decode(self.redis.get(self._local_key(key)))
            if old_value is None:
                return
            self.redis.delete(self._local_key(key))
            self._publish(key, old_value, None)
        except Exception as exc:
            self.log.warning("[STORAGE] Failed to remove %s/%s: %s", scope.value, key, exc)

    def keys(self, scope: StorageScope) -> List[str]:
        try:
            if scope == StorageScope.SESSION:
                return [self._decode(k) for k in self.redis.hkeys(self._session_hash)]
            prefix = self._local_key("")
            return [
                self._decode(k)[len(prefix):]
                for k in self.redis.scan_iter(f"{prefix}*")
            ]
        except Exception as exc:
            self.log.warning("[STORAGE] Failed to list %s keys: %s", scope.value, exc)
            return []

    def _publish(self, key: str, old_value: Optional[str], new_value: Optional[str]) -> None:
        payload = {
            "key": key,
            "old_value": old_value,
            "new_value": new_value,
            "scope": StorageScope.LOCAL.value,
            "source_tab": self.tab_id,
        }
        self.redis.publish(self.events_channel, json.dumps(payload))

    def handle_message(self, message) -> None:
        """Dispatch one pub/sub message unless this tab wrote it."""
        if not message or message.get("type") != "message":
            return
        try:
            data = json.loads(self._decode(message["data"]))
            event = StorageEvent(
                key=data["key"],
                old_value=data.get("old_value"),
                new_value=data.get("new_value"),
                scope=StorageScope(data.get("scope", StorageScope.LOCAL.value)),
                source_tab=data.get("source_tab", ""),
            )
        except (KeyError, ValueError, TypeError) as exc:
            self.log.warning("[STORAGE] Ignoring malformed storage event: %s", exc)
            return
        if event.source_tab == self.tab_id:
            return
        self.dispatch(event)

    async def monitor(self) -> None:
        """Relay storage events published by other tabs until cancelled."""
        pubsub = self.redis.pubsub()
        try:
            await asyncio.to_thread(pubsub.subscribe, self.events_channel)
            self.log.info(
                "[STORAGE] Listening for storage events on %s", self.events_channel
            )
            while True:
                message = await asyncio.to_thread(pubsub.get_message, timeout=1.0)
                self.handle_message(message)
        finally:
            try:
                await asyncio.to_thread(pubsub.close)
            except Exception as exc:
                self.log.debug("[STORAGE] Error closing pubsub: %s", exc)


def create_storage(cfg: StorageCfg, redis_client: Optional[Redis] = None) -> StorageAdapter:
    """Build the storage adapter selected by configuration."""
    if cfg.backend == "redis":
        client = redis_client or Redis(
            host=cfg.redis_host, port=cfg.redis_port, db=cfg.redis_db
        )
        return RedisStorage(client, namespace=cfg.namespace)
    return InMemoryStorage()
