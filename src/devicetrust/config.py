import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

import yaml

log = logging.getLogger(__name__)


class StorageBackend(str, Enum):
    """Supported storage backends for device and session state."""

    MEMORY = "memory"  # Single process, tabs share one in-memory area
    REDIS = "redis"  # Shared across processes, change events over pub/sub


VALID_STORAGE_BACKENDS = {b.value for b in StorageBackend}
SUPPORTED_COUNTRY_CODES = {"+44", "+65"}


@dataclass
class HttpCfg:
    base_url: str = "http://localhost:3000/api/v1"
    csrf_token: str = ""
    request_timeout: float = 10.0
    session_check_interval: float = 5.0  # Debounce for verify_session
    auth_error_cooldown: float = 2.0

    def __post_init__(self):
        """Validate HTTP configuration constraints."""
        if not self.base_url:
            raise ValueError("HttpCfg.base_url must not be empty")
        for name in ("request_timeout", "session_check_interval", "auth_error_cooldown"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"HttpCfg.{name} must be non-negative, got {value}")
        if self.request_timeout == 0:
            raise ValueError("HttpCfg.request_timeout must be positive")


@dataclass
class FlowCfg:
    safety_timeout: float = 15.0
    device_check_timeout: float = 10.0
    device_check_safety_timeout: float = 15.0
    global_loading_timeout: float = 20.0
    redirect_delay: float = 1.5  # Dwell on the success screen before redirecting
    max_pin_attempts: int = 3
    dashboard_path: str = "/dashboard"
    default_country_code: str = "+44"
    webauthn_enabled: bool = False

    def __post_init__(self):
        """Validate flow configuration constraints."""
        for name in (
            "safety_timeout",
            "device_check_timeout",
            "device_check_safety_timeout",
            "global_loading_timeout",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"FlowCfg.{name} must be positive, got {value}")
        if self.redirect_delay < 0:
            raise ValueError(
                f"FlowCfg.redirect_delay must be non-negative, got {self.redirect_delay}"
            )
        if not isinstance(self.max_pin_attempts, int) or self.max_pin_attempts < 1:
            raise ValueError(
                f"FlowCfg.max_pin_attempts must be an integer >= 1, got {self.max_pin_attempts}"
            )
        if self.default_country_code not in SUPPORTED_COUNTRY_CODES:
            raise ValueError(
                f"FlowCfg.default_country_code must be one of "
                f"{sorted(SUPPORTED_COUNTRY_CODES)}, got {self.default_country_code}"
            )


@dataclass
class DeviceCfg:
    header_max_age_days: int = 30
    # Empty secret keeps the legacy rolling checksum; set it to sign with HMAC-SHA256
    signing_secret: str = ""

    def __post_init__(self):
        """Validate device header configuration constraints."""
        if not isinstance(self.header_max_age_days, int) or self.header_max_age_days < 1:
            raise ValueError(
                f"DeviceCfg.header_max_age_days must be an integer >= 1, "
                f"got {self.header_max_age_days}"
            )

    @property
    def header_max_age_ms(self) -> int:
        return self.header_max_age_days * 24 * 60 * 60 * 1000


@dataclass
class StorageCfg:
    backend: str = "memory"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    namespace: str = "devicetrust"

    def __post_init__(self):
        """Validate storage configuration constraints."""
        self.backend = str(self.backend).lower().strip()
        if self.backend not in VALID_STORAGE_BACKENDS:
            raise ValueError(
                f"StorageCfg.backend must be one of {sorted(VALID_STORAGE_BACKENDS)}, "
                f"got {self.backend}"
            )
        if not self.namespace:
            raise ValueError("StorageCfg.namespace must not be empty")


@dataclass
class ResetCfg:
    loop_threshold: int = 3  # Redirects allowed inside one window
    loop_window: float = 5.0

    def __post_init__(self):
        """Validate reset configuration constraints."""
        if self.loop_threshold < 1:
            raise ValueError(
                f"ResetCfg.loop_threshold must be >= 1, got {self.loop_threshold}"
            )
        if self.loop_window <= 0:
            raise ValueError(f"ResetCfg.loop_window must be positive, got {self.loop_window}")


@dataclass
class AppCfg:
    http: HttpCfg = field(default_factory=HttpCfg)
    flow: FlowCfg = field(default_factory=FlowCfg)
    device: DeviceCfg = field(default_factory=DeviceCfg)
    storage: StorageCfg = field(default_factory=StorageCfg)
    reset: ResetCfg = field(default_factory=ResetCfg)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a float") from exc


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _section(raw: Any, name: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    return value


DEFAULT_CONFIG = """# DeviceTrust Configuration
# This file is auto-generated on first startup

http:
  base_url: "http://localhost:3000/api/v1"
  request_timeout: 10

flow:
  redirect_delay: 1.5
  max_pin_attempts: 3
  dashboard_path: "/dashboard"
  default_country_code: "+44"
  webauthn_enabled: false

device:
  header_max_age_days: 30

storage:
  backend: "memory"
  namespace: "devicetrust"
"""


def load_config(path="config/devicetrust.yml") -> AppCfg:
    # Ensure config directory exists
    config_dir = os.path.dirname(path)
    if config_dir and not os.path.exists(config_dir):
        os.makedirs(config_dir, exist_ok=True)

    # Create default config if it doesn't exist
    if not os.path.exists(path):
        log.info("Config file %s not found, writing defaults", path)
        with open(path, "w", encoding="utf-8") as f:
            f.write(DEFAULT_CONFIG)

    with open(path, "r", encoding="utf-8") as f:
        y = yaml.safe_load(f) or {}

    # YAML takes precedence over env vars, env vars over built-in defaults
    http_section = _section(y, "http")
    http_cfg = HttpCfg(
        base_url=http_section.get(
            "base_url",
            _env_str("DEVICETRUST_BASE_URL", "http://localhost:3000/api/v1"),
        ),
        csrf_token=http_section.get(
            "csrf_token", _env_str("DEVICETRUST_CSRF_TOKEN", "")
        ),
        request_timeout=float(
            http_section.get(
                "request_timeout", _env_float("DEVICETRUST_REQUEST_TIMEOUT", 10.0)
            )
        ),
        session_check_interval=float(
            http_section.get("session_check_interval", 5.0)
        ),
        auth_error_cooldown=float(http_section.get("auth_error_cooldown", 2.0)),
    )

    flow_section = _section(y, "flow")
    flow_cfg = FlowCfg(
        safety_timeout=float(flow_section.get("safety_timeout", 15.0)),
        device_check_timeout=float(flow_section.get("device_check_timeout", 10.0)),
        device_check_safety_timeout=float(
            flow_section.get("device_check_safety_timeout", 15.0)
        ),
        global_loading_timeout=float(
            flow_section.get("global_loading_timeout", 20.0)
        ),
        redirect_delay=float(
            flow_section.get(
                "redirect_delay", _env_float("DEVICETRUST_REDIRECT_DELAY", 1.5)
            )
        ),
        max_pin_attempts=int(flow_section.get("max_pin_attempts", 3)),
        dashboard_path=flow_section.get("dashboard_path", "/dashboard"),
        default_country_code=str(flow_section.get("default_country_code", "+44")),
        webauthn_enabled=bool(
            flow_section.get(
                "webauthn_enabled", _env_bool("DEVICETRUST_WEBAUTHN_ENABLED", False)
            )
        ),
    )

    device_section = _section(y, "device")
    device_cfg = DeviceCfg(
        header_max_age_days=int(device_section.get("header_max_age_days", 30)),
        signing_secret=device_section.get(
            "signing_secret", _env_str("DEVICETRUST_SIGNING_SECRET", "")
        ),
    )

    storage_section = _section(y, "storage")
    storage_cfg = StorageCfg(
        backend=storage_section.get(
            "backend", _env_str("DEVICETRUST_STORAGE_BACKEND", "memory")
        ),
        redis_host=storage_section.get("redis_host", _env_str("REDIS_HOST", "localhost")),
        redis_port=int(storage_section.get("redis_port", _env_int("REDIS_PORT", 6379))),
        redis_db=int(storage_section.get("redis_db", _env_int("REDIS_DB", 0))),
        namespace=storage_section.get("namespace", "devicetrust"),
    )

    reset_section = _section(y, "reset")
    reset_cfg = ResetCfg(
        loop_threshold=int(reset_section.get("loop_threshold", 3)),
        loop_window=float(reset_section.get("loop_window", 5.0)),
    )

    log.debug(
        "Loaded config: base_url=%s storage=%s",
        http_cfg.base_url,
        storage_cfg.backend,
    )
    return AppCfg(
        http=http_cfg,
        flow=flow_cfg,
        device=device_cfg,
        storage=storage_cfg,
        reset=reset_cfg,
    )
