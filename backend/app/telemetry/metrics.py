from __future__ import annotations

import logging
import os
import threading
import time
from typing import Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


_logger = logging.getLogger(__name__)


# Single process-wide registry for all Prometheus metrics in this service.
_REGISTRY: CollectorRegistry = CollectorRegistry()

_BASE_LABELS_LOCK = threading.Lock()
_BASE_LABELS: Optional[Dict[str, str]] = None


def _detect_service_and_env() -> Tuple[str, str]:
    """
    Determine the base `service` and `env` labels.

    Preference order:
    1. backend.app.config.get_settings() if it can be built.
    2. Environment variables (SERVICE_NAME / APP_ENV, etc.).
    3. Safe defaults: service="api", env="local".
    """
    service = os.getenv("SERVICE_NAME") or os.getenv("APP_NAME") or "api"
    env = os.getenv("APP_ENV") or os.getenv("ENV") or "local"

    from backend.app.config import get_settings

    try:
        settings = get_settings()
    except RuntimeError:
        # Settings need a DSN; metrics must still work without one.
        return service, env

    if settings.SERVICE_NAME.strip():
        service = settings.SERVICE_NAME.strip()
    if settings.APP_ENV.strip():
        env = settings.APP_ENV.strip()

    return service, env


def get_base_labels() -> Dict[str, str]:
    """
    Return the mandatory base labels for all metrics.

    Always includes:
    - service
    - env
    """
    global _BASE_LABELS
    if _BASE_LABELS is None:
        with _BASE_LABELS_LOCK:
            if _BASE_LABELS is None:
                service, env = _detect_service_and_env()
                _BASE_LABELS = {"service": service, "env": env}
                _logger.info(
                    "Initialized Prometheus base labels",
                    extra={"service": service, "env": env},
                )
    # Return a shallow copy to prevent accidental mutation.
    return dict(_BASE_LABELS)


def get_registry() -> CollectorRegistry:
    """
    Access the shared CollectorRegistry for this process.
    """
    return _REGISTRY


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

# 1) API HTTP metrics
API_REQUEST_LATENCY_SECONDS = Histogram(
    "http_server_request_duration_seconds",
    "HTTP server request latency in seconds.",
    labelnames=["service", "env", "route", "method", "status_code"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
    registry=_REGISTRY,
)

API_REQUESTS_TOTAL = Counter(
    "http_server_requests_total",
    "Total HTTP server requests processed.",
    labelnames=["service", "env", "route", "method", "status_code"],
    registry=_REGISTRY,
)


# 2) Stripe webhook metrics

WEBHOOK_EVENTS_TOTAL = Counter(
    "saaskit_webhook_events_total",
    "Stripe webhook events received, by event type and outcome.",
    labelnames=["service", "env", "event_type", "outcome"],
    registry=_REGISTRY,
)


# 3) Reconciliation metrics

RECONCILIATION_OUTCOMES_TOTAL = Counter(
    "saaskit_reconciliation_outcomes_total",
    "Guest payment reconciliation attempts by terminal state.",
    labelnames=["service", "env", "operation", "status"],
    registry=_REGISTRY,
)

GUEST_SESSIONS_CLEANED_TOTAL = Counter(
    "saaskit_guest_sessions_cleaned_total",
    "Expired guest checkout sessions removed by cleanup sweeps.",
    labelnames=["service", "env"],
    registry=_REGISTRY,
)

GUEST_CLEANUP_LAST_SUCCESS_UNIXTIME = Gauge(
    "guest_cleanup_last_success_timestamp",
    "Unix timestamp of the last successful guest session cleanup sweep.",
    labelnames=["service", "env"],
    registry=_REGISTRY,
)


# 4) Circuit breaker metrics

CIRCUIT_BREAKER_STATE = Gauge(
    "circuit_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open).",
    labelnames=["service", "env", "breaker_name", "target"],
    registry=_REGISTRY,
)


# ---------------------------------------------------------------------------
# Helper APIs
# ---------------------------------------------------------------------------


def _coerce_non_negative_duration(duration_seconds: float) -> float:
    if duration_seconds < 0:
        _logger.warning(
            "Received negative duration_seconds; coercing to 0.0",
            extra={"duration_seconds": duration_seconds},
        )
        return 0.0
    return duration_seconds


def observe_api_request(
    route: str,
    method: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Record latency and count for a single HTTP API request.

    route: normalized path template, e.g. "/api/stripe/webhook"
    method: HTTP method, e.g. "POST"
    status_code: HTTP status code as integer
    duration_seconds: duration of the request in seconds
    """
    duration = _coerce_non_negative_duration(float(duration_seconds))
    base_labels = get_base_labels()
    labels = {
        **base_labels,
        "route": route,
        "method": method.upper(),
        "status_code": str(int(status_code)),
    }
    API_REQUEST_LATENCY_SECONDS.labels(**labels).observe(duration)
    API_REQUESTS_TOTAL.labels(**labels).inc()


def observe_webhook_event(event_type: str, outcome: str) -> None:
    """
    Count a webhook event.

    outcome: "synced", "guest_skipped", "guest_recorded", "ignored", "failed", ...
    """
    labels = {**get_base_labels(), "event_type": event_type, "outcome": outcome}
    WEBHOOK_EVENTS_TOTAL.labels(**labels).inc()


def observe_reconciliation(operation: str, status: str) -> None:
    """
    Count a reconciliation terminal state.

    status: "success", "failed" or "requires_review"
    """
    labels = {**get_base_labels(), "operation": operation, "status": status}
    RECONCILIATION_OUTCOMES_TOTAL.labels(**labels).inc()


def record_guest_cleanup(deleted_count: int, timestamp: Optional[float] = None) -> None:
    """
    Record a successful cleanup sweep and how many sessions it removed.
    """
    base_labels = get_base_labels()
    if deleted_count > 0:
        GUEST_SESSIONS_CLEANED_TOTAL.labels(**base_labels).inc(deleted_count)
    ts = float(timestamp) if timestamp is not None else time.time()
    GUEST_CLEANUP_LAST_SUCCESS_UNIXTIME.labels(**base_labels).set(ts)


def set_circuit_breaker_state(
    breaker_name: str,
    target_system: str,
    state: int,
) -> None:
    """
    Set the circuit breaker state.

    state: 0 = closed, 1 = open, 2 = half_open
    """
    if state not in (0, 1, 2):
        raise ValueError(f"Invalid circuit breaker state: {state}. Expected 0, 1, or 2.")

    base_labels = get_base_labels()
    labels = {
        **base_labels,
        "breaker_name": breaker_name,
        "target": target_system,
    }
    CIRCUIT_BREAKER_STATE.labels(**labels).set(int(state))


__all__ = [
    "get_registry",
    "get_base_labels",
    "observe_api_request",
    "observe_webhook_event",
    "observe_reconciliation",
    "record_guest_cleanup",
    "set_circuit_breaker_state",
]
