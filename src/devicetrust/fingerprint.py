"""Coarse device fingerprinting.

The fingerprint is descriptive only: it helps the backend recognise a device
but carries no trust weight on its own.
"""

import locale
import logging
import os
import platform
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

log = logging.getLogger(__name__)

# Fields copied from the fingerprint into a persisted device header
HEADER_CHARACTERISTICS = (
    "platform",
    "screenWidth",
    "screenHeight",
    "timezone",
    "language",
    "devicePixelRatio",
    "browserFamily",
    "colorDepth",
)

_IOS_VERSION_RE = re.compile(r"os (\d+)_(\d+)")
_INTEL_RE = re.compile(r"Intel\s([^;)]+)", re.IGNORECASE)
_AMD_RE = re.compile(r"AMD\s([^;)]+)", re.IGNORECASE)


@dataclass
class DeviceEnvironment:
    """Host characteristics a fingerprint is derived from."""

    user_agent: str = ""
    platform: str = "unknown"
    screen_width: int = 0
    screen_height: int = 0
    timezone: str = "UTC"
    language: str = "unknown"
    device_pixel_ratio: float = 1
    color_depth: int = 24
    cpu_cores: int = 0
    touch_points: int = 0
    cookies_enabled: bool = True
    memory_gb: Optional[float] = None
    gpu_vendor: str = ""
    gpu_renderer: str = ""

    @classmethod
    def from_host(cls) -> "DeviceEnvironment":
        """Describe the current (non-browser) host."""
        system = platform.system()
        release = platform.release()
        language = locale.getlocale()[0] or "unknown"
        return cls(
            user_agent=f"devicetrust-client ({system} {release}; {platform.machine()})",
            platform=f"{system} {platform.machine()}".strip() or "unknown",
            timezone=time.tzname[0] if time.tzname else "UTC",
            language=language.replace("_", "-"),
            cpu_cores=os.cpu_count() or 0,
        )


def _utf16_units(text: str):
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def rolling_hash(text: str) -> int:
    """31x rolling hash over UTF-16 code units, wrapped to signed 32 bits."""
    value = 0
    for unit in _utf16_units(text):
        value = (value * 31 + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


def hash_string(text: str) -> str:
    """Unsigned hex rendering of ``rolling_hash``; ``"empty"`` for no input."""
    if not text:
        return "empty"
    return format(rolling_hash(text) & 0xFFFFFFFF, "x")


def browser_family(user_agent: str) -> str:
    # Edge and Opera also advertise Chrome and Safari, so order matters
    checks = (
        (r"Edg|Edge", "Edge"),
        (r"OPR|Opera", "Opera"),
        (r"Chrome", "Chrome"),
        (r"Firefox", "Firefox"),
        (r"Safari", "Safari"),
        (r"MSIE|Trident", "Internet Explorer"),
    )
    for pattern, family in checks:
        if re.search(pattern, user_agent or "", re.IGNORECASE):
            return family
    return "Unknown"


def device_type(env: DeviceEnvironment) -> Tuple[str, str]:
    """Return ``(device_type, device_model)`` from user-agent heuristics."""
    ua = (env.user_agent or "").lower()
    if re.search(r"iphone|ipad|ipod", ua):
        if "ipad" in ua:
            kind = "iPad"
        elif "ipod" in ua:
            kind = "iPod"
        else:
            kind = "iPhone"
        match = _IOS_VERSION_RE.search(ua)
        model = f"iOS {match.group(1)}.{match.group(2)}" if match else ""
        return kind, model
    if "android" in ua:
        return ("Android Phone" if "mobile" in ua else "Android Tablet"), ""
    if "macintosh" in ua or "mac os x" in ua:
        if env.screen_width > 1800 and env.screen_height > 1000:
            return "iMac/Mac Pro", ""
        return "MacBook", ""
    if "windows" in ua:
        return "Windows PC", ""
    if "linux" in ua:
        return "Linux PC", ""
    return "Desktop", ""


def estimate_memory(cores: int, high_end: bool) -> int:
    """Rough memory size in GB when the host does not report it."""
    if cores >= 8 and high_end:
        return 16
    if cores >= 6:
        return 8
    if cores >= 4:
        return 4
    return 2


def detect_cpu_model(family: str, user_agent: str, cores: int) -> str:
    """Best-effort CPU vendor/model from the user agent."""
    cpu = "unknown"
    ua = user_agent or ""
    if family in ("Chrome", "Edge"):
        for vendor, pattern in (("Intel", _INTEL_RE), ("AMD", _AMD_RE)):
            if vendor in ua:
                match = pattern.search(ua)
                cpu = f"{vendor} {match.group(1).strip()}" if match else vendor
                break
    elif family == "Safari":
        if "Macintosh" in ua:
            cpu = "Intel Mac"
    elif "Intel" in ua:
        cpu = "Intel"
    elif "AMD" in ua:
        cpu = "AMD"
    elif "Apple" in ua and cores >= 8:
        cpu = "Apple Silicon"

    if cpu == "Apple Silicon" and cores:
        if cores <= 8:
            cpu = "Apple M1/M2"
        elif cores <= 10:
            cpu = "Apple M1 Pro/M2 Pro"
        else:
            cpu = "Apple M1 Max/M2 Max"

    if cores:
        cpu += f" ({cores} cores)"
    return cpu


def hardware_fingerprint(characteristics: Dict[str, Any]) -> str:
    components = [
        str(characteristics.get("platform") or ""),
        str(characteristics.get("webglRenderer") or ""),
        str(characteristics.get("webglVendor") or ""),
        str(characteristics.get("cpuModel") or ""),
        str(characteristics.get("memorySize") or ""),
        str(characteristics.get("cpuCores") or ""),
        f"{characteristics.get('screenWidth')}x{characteristics.get('screenHeight')}",
    ]
    return hash_string("::".join(components))


def get_device_fingerprint(env: Optional[DeviceEnvironment] = None) -> Optional[Dict[str, Any]]:
    """Derive the descriptive fingerprint for a device.

    Args:
        env: Host description; the current host when omitted

    Returns:
        Fingerprint dict, or None if the host could not be described
    """
    try:
        env = env or DeviceEnvironment.from_host()
        family = browser_family(env.user_agent)
        kind, model = device_type(env)
        characteristics: Dict[str, Any] = {
            "platform": env.platform or "unknown",
            "screenWidth": env.screen_width,
            "screenHeight": env.screen_height,
            "timezone": env.timezone,
            "language": env.language or "unknown",
            "devicePixelRatio": env.device_pixel_ratio or 1,
            "browserFamily": family,
            "colorDepth": env.color_depth,
            "cpuCores": env.cpu_cores or 0,
            "touchSupport": env.touch_points > 0,
            "cookiesEnabled": env.cookies_enabled,
            "deviceType": kind,
            "deviceModel": model,
        }
        if env.gpu_renderer or env.gpu_vendor:
            characteristics["webglRenderer"] = env.gpu_renderer
            characteristics["webglVendor"] = env.gpu_vendor

        if env.memory_gb:
            characteristics["memorySize"] = env.memory_gb
        else:
            high_end = env.screen_width >= 1920 or env.screen_height >= 1080
            characteristics["memorySize"] = estimate_memory(env.cpu_cores or 2, high_end)

        characteristics["cpuModel"] = detect_cpu_model(
            family, env.user_agent, env.cpu_cores
        )
        characteristics["hardwareFingerprint"] = hardware_fingerprint(characteristics)
        log.debug(
            "[DEVICE] Fingerprint: %s %s (%s, %sx%s)",
            kind,
            model,
            family,
            env.screen_width,
            env.screen_height,
        )
        return characteristics
    except Exception as exc:
        log.error("[DEVICE] Error generating device fingerprint: %s", exc)
        return None


def header_characteristics(fingerprint: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Subset of the fingerprint embedded in a device header."""
    if not fingerprint:
        return {}
    return {key: fingerprint.get(key) for key in HEADER_CHARACTERISTICS}
