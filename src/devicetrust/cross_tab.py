"""Cross-tab synchronization over LOCAL storage change events."""

import asyncio
import logging
from typing import Iterable, List, Optional

from .storage import (
    AUTHENTICATED_USER_KEY,
    DEVICE_RESET_BROADCAST_KEY,
    DEVICE_RESET_KEY,
    LOGOUT_STATE_KEY,
    StorageAdapter,
    StorageEvent,
    StorageScope,
)

log = logging.getLogger(__name__)

RESET_KEYS = (DEVICE_RESET_BROADCAST_KEY, DEVICE_RESET_KEY)
WATCHED_KEYS = (AUTHENTICATED_USER_KEY, LOGOUT_STATE_KEY) + RESET_KEYS


class Subscription:
    """Async iterator over storage events for a fixed set of keys.

    Events may be pushed from any thread; they are handed to the owning event
    loop before reaching the queue.
    """

    def __init__(self, keys: Iterable[str], loop: asyncio.AbstractEventLoop):
        self.keys = frozenset(keys)
        self.closed = False
        self._loop = loop
        self._queue: "asyncio.Queue[Optional[StorageEvent]]" = asyncio.Queue()

    def push(self, event: StorageEvent) -> None:
        if self.closed or event.key not in self.keys:
            return
        self._enqueue(event)

    def _enqueue(self, item: Optional[StorageEvent]) -> None:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError as exc:
            # Loop already closed; nobody is left to read the event
            log.debug("[SYNC] Dropping event for closed loop: %s", exc)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._enqueue(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StorageEvent:
        event = await self._queue.get()
        if event is None:
            # Re-arm the sentinel so later iterations stop too
            self._queue.put_nowait(None)
            raise StopAsyncIteration
        return event


class CrossTabSync:
    """Fans out LOCAL changes made by sibling tabs to async subscribers."""

    def __init__(self, storage: StorageAdapter):
        self.storage = storage
        self._subscriptions: List[Subscription] = []
        self.storage.add_listener(self._on_storage_event)
        self.log = log

    def _on_storage_event(self, event: StorageEvent) -> None:
        if event.scope != StorageScope.LOCAL:
            return
        for subscription in list(self._subscriptions):
            subscription.push(event)

    def subscribe(self, key: str, *more: str) -> Subscription:
        """Subscribe to changes of one or more keys.

        Must be called from inside the event loop that will consume events.
        """
        subscription = Subscription((key,) + more, asyncio.get_running_loop())
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def handle_event(self, event: StorageEvent, controller, reset_handler=None) -> None:
        """Apply one sibling-tab change to this tab's controller."""
        if event.key == AUTHENTICATED_USER_KEY and event.new_value == "true":
            self.log.info("[SYNC] Login detected in tab %s", event.source_tab)
            controller.on_peer_login()
        elif event.key == LOGOUT_STATE_KEY and event.new_value == "true":
            self.log.info("[SYNC] Logout detected in tab %s", event.source_tab)
            controller.on_peer_logout()
        elif event.key in RESET_KEYS and event.new_value:
            self.log.info("[SYNC] Device reset broadcast from tab %s", event.source_tab)
            if reset_handler is not None:
                reset_handler.on_reset_broadcast()

    async def watch(self, controller, reset_handler=None) -> None:
        """Forward sibling-tab logins, logouts and resets until cancelled."""
        subscription = self.subscribe(*WATCHED_KEYS)
        self.log.info("[SYNC] Watching tab %s for cross-tab changes", self.storage.tab_id)
        try:
            async for event in subscription:
                try:
                    self.handle_event(event, controller, reset_handler)
                except Exception as exc:
                    self.log.error("[SYNC] Failed to apply %s change: %s", event.key, exc)
        finally:
            self.unsubscribe(subscription)

    def close(self) -> None:
        self.storage.remove_listener(self._on_storage_event)
        for subscription in list(self._subscriptions):
            self.unsubscribe(subscription)
