"""Prometheus metrics for DeviceTrust.

Provides client-side metrics for monitoring:
- Authentication outcomes per flow path
- Device header purges by reason
- Backend API requests
- Flow state transitions
"""

import logging

from prometheus_client import Counter, Histogram

log = logging.getLogger(__name__)


# Authentication metrics
auth_outcomes_total = Counter(
    "devicetrust_auth_outcomes_total",
    "Total number of authentication flow outcomes",
    ["outcome"],  # fast_path, pin, sms, registration, device_check, passkey
)

pin_lockouts_total = Counter(
    "devicetrust_pin_lockouts_total",
    "Total number of PIN lockouts that downgraded to SMS verification",
)

# Device header metrics
device_headers_purged_total = Counter(
    "devicetrust_device_headers_purged_total",
    "Total number of stored device headers rejected and purged",
    ["reason"],  # incomplete, signature, expired, corrupt
)

device_headers_generated_total = Counter(
    "devicetrust_device_headers_generated_total",
    "Total number of device headers generated",
    ["method"],  # signed, fallback
)

# API metrics
http_requests_total = Counter(
    "devicetrust_http_requests_total",
    "Total number of backend API requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration = Histogram(
    "devicetrust_http_request_seconds",
    "Backend API request duration",
    ["method", "endpoint"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0],
)

# Flow metrics
flow_transitions_total = Counter(
    "devicetrust_flow_transitions_total",
    "Total number of flow state transitions by target state",
    ["state"],
)


def record_auth_outcome(outcome: str) -> None:
    """Record an authentication outcome, never raising."""
    try:
        auth_outcomes_total.labels(outcome=outcome).inc()
    except Exception as exc:  # noqa: BLE001
        log.debug("Failed to record auth outcome %s: %s", outcome, exc)
