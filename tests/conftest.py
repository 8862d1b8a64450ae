"""Test configuration and shared fixtures for DeviceTrust tests."""

import fnmatch
import tempfile
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from devicetrust.config import AppCfg, DeviceCfg, FlowCfg, HttpCfg, ResetCfg
from devicetrust.controller import AuthFlowController
from devicetrust.device_identity import DeviceIdentity
from devicetrust.fingerprint import DeviceEnvironment
from devicetrust.http_client import TrustedHttpClient
from devicetrust.navigation import Navigator
from devicetrust.reset import ResetHandler
from devicetrust.storage import InMemoryStorage

START_MS = 1_700_000_000_000
MAC_CHROME_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class InMemoryPubSub:
    """Pub/sub handle returned by ``InMemoryRedis.pubsub``."""

    def __init__(self, server: "InMemoryRedis"):
        self._server = server
        self.channels: set[str] = set()
        self.messages: list[dict] = []
        self.closed = False

    def subscribe(self, *channels: str) -> None:
        self.channels.update(channels)
        self._server._pubsubs.append(self)

    def get_message(self, timeout: float = 0.0, **_):
        if self.messages:
            return self.messages.pop(0)
        time.sleep(min(timeout, 0.01))
        return None

    def close(self) -> None:
        self.closed = True
        if self in self._server._pubsubs:
            self._server._pubsubs.remove(self)


class InMemoryRedis:
    """Lightweight in-memory Redis replacement for tests.

    Provides just enough behaviour for ``RedisStorage`` without requiring a
    real Redis server or network access.
    """

    def __init__(self, *args, **kwargs):
        self._data: dict[str, object] = {}
        self._pubsubs: list[InMemoryPubSub] = []
        self.published: list[tuple[str, str]] = []

    # Key/value operations ----------------------------------------------------------
    def set(self, key: str, value: object, ex: int | None = None) -> bool:  # type: ignore[override]
        self._data[key] = value
        return True

    def get(self, key: str) -> object | None:  # type: ignore[override]
        value = self._data.get(key)
        return None if isinstance(value, dict) else value

    def delete(self, *keys: str) -> int:  # type: ignore[override]
        removed = 0
        for key in keys:
            if key in self._data:
                del self._data[key]
                removed += 1
        return removed

    def scan_iter(self, pattern: str = "*"):  # type: ignore[override]
        for key in list(self._data.keys()):
            if fnmatch.fnmatch(str(key), pattern) and not isinstance(self._data[key], dict):
                yield key

    # Hash operations ---------------------------------------------------------------
    def hget(self, name: str, key: str) -> object | None:  # type: ignore[override]
        h = self._data.get(name)
        if not isinstance(h, dict):
            return None
        return h.get(key)

    def hset(self, name: str, key: str, value: object) -> int:  # type: ignore[override]
        h = self._data.get(name)
        if not isinstance(h, dict):
            h = {}
        h[key] = value
        self._data[name] = h
        return 1

    def hdel(self, name: str, *keys: str) -> int:  # type: ignore[override]
        h = self._data.get(name)
        if not isinstance(h, dict):
            return 0
        removed = 0
        for key in keys:
            if key in h:
                del h[key]
                removed += 1
        return removed

    def hkeys(self, name: str) -> list:  # type: ignore[override]
        h = self._data.get(name)
        return list(h.keys()) if isinstance(h, dict) else []

    # Pub/sub -----------------------------------------------------------------------
    def publish(self, channel: str, message: str) -> int:  # type: ignore[override]
        self.published.append((channel, message))
        receivers = 0
        for pubsub in list(self._pubsubs):
            if channel in pubsub.channels:
                pubsub.messages.append(
                    {"type": "message", "channel": channel, "data": message.encode("utf-8")}
                )
                receivers += 1
        return receivers

    def pubsub(self) -> InMemoryPubSub:
        return InMemoryPubSub(self)


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeBackend:
    """Scripted auth backend behind a MagicMock ``requests.Session``.

    Routes map an endpoint name (the part after ``auth/``) to one of:
    a dict (200 JSON body), a ``(status, body)`` tuple, an exception to raise,
    a callable taking the recorded call, or a list consumed one item per call
    (the last item repeats).
    """

    def __init__(self):
        self.routes: dict = {}
        self.calls: list[dict] = []
        self.session = MagicMock()
        self.session.headers = {}
        self.session.request.side_effect = self._handle
        self.session.get.side_effect = lambda url, **kwargs: self._handle("GET", url, **kwargs)

    def _handle(self, method, url, params=None, json=None, headers=None, timeout=None):
        endpoint = url.split("/auth/", 1)[1].split("?", 1)[0]
        call = {
            "method": method,
            "endpoint": endpoint,
            "params": params,
            "json": json,
            "headers": headers or {},
        }
        self.calls.append(call)

        route = self.routes.get(endpoint, (404, {"error": "not found"}))
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if callable(route) and not isinstance(route, type):
            route = route(call)
        if isinstance(route, BaseException) or (
            isinstance(route, type) and issubclass(route, BaseException)
        ):
            raise route
        status, body = route if isinstance(route, tuple) else (200, route)

        response = MagicMock()
        response.status_code = status
        response.ok = status < 400
        response.json.return_value = body
        return response

    def calls_to(self, endpoint: str) -> list[dict]:
        return [c for c in self.calls if c["endpoint"] == endpoint]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def environment():
    """A fixed MacBook running Chrome."""
    return DeviceEnvironment(
        user_agent=MAC_CHROME_UA,
        platform="MacIntel",
        screen_width=1440,
        screen_height=900,
        timezone="Europe/London",
        language="en-GB",
        device_pixel_ratio=2,
        color_depth=30,
        cpu_cores=8,
    )


@pytest.fixture
def storage():
    """First tab of an in-memory browser profile."""
    return InMemoryStorage(tab_id="tab-a")


@pytest.fixture
def sibling_storage(storage):
    """Second tab sharing LOCAL scope with ``storage``."""
    return storage.open_tab("tab-b")


@pytest.fixture
def fake_redis():
    return InMemoryRedis()


@pytest.fixture
def fast_cfg():
    """Application config with zero redirect dwell."""
    return AppCfg(
        http=HttpCfg(base_url="https://app.test/api/v1", csrf_token="csrf-123"),
        flow=FlowCfg(redirect_delay=0),
        device=DeviceCfg(),
        reset=ResetCfg(),
    )


@pytest.fixture
def identity(storage, fast_cfg, environment, clock):
    return DeviceIdentity(storage, fast_cfg.device, environment=environment, clock=clock)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def navigator():
    return Navigator("/")


@pytest.fixture
def http_client(identity, storage, fast_cfg, backend, navigator):
    return TrustedHttpClient(
        identity,
        storage,
        fast_cfg.http,
        session=backend.session,
        navigator=navigator,
        clock=lambda: 0.0,
    )


@pytest.fixture
def controller(identity, http_client, storage, fast_cfg, navigator):
    return AuthFlowController(
        identity, http_client, storage, fast_cfg.flow, navigator=navigator
    )


@pytest.fixture
def reset_handler(storage, identity, fast_cfg, navigator, clock):
    return ResetHandler(storage, identity, fast_cfg.reset, navigator, clock)


@pytest.fixture
def authenticated_response():
    """Server body for a successful authentication."""
    return {
        "status": "authenticated",
        "handle": "@alice",
        "guid": "guid-alice",
        "device_key": "a" * 64,
        "auth_version": 2,
        "masked_phone": "*******0123",
        "redirect_to": "/dashboard",
    }

