# FILE: trustgate/metrics.py
# Prometheus instruments for the trust pipeline.
#
# - Instruments are module-level so repeated create_app() calls (tests) never
#   register the same collector twice.
# - Label sets are small and fixed: route templates, status codes, stage
#   names, error kinds, event names. Never user ids, emails or raw paths.
# - Metrics can be disabled globally via TG_METRICS_DISABLE; the helpers
#   then become no-ops.

from __future__ import annotations

import logging
import os
from typing import Any

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

_METRICS_DISABLED = os.getenv("TG_METRICS_DISABLE", "").strip().lower() in {"1", "true", "yes"}


def _safe_str(value: Any) -> str:
    """
    Convert values to short strings for labels.

    - None -> ""
    - Long strings are truncated to 64 characters to limit label explosion.
    """
    if value is None:
        return ""
    s = str(value)
    if len(s) > 64:
        s = s[:61] + "..."
    return s


REQUESTS = Counter(
    "tg_requests_total",
    "HTTP requests by route template and status",
    ["route", "status"],
)
LATENCY = Histogram(
    "tg_request_latency_seconds",
    "End-to-end request latency by route template",
    ["route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
REJECTIONS = Counter(
    "tg_pipeline_rejections_total",
    "Requests rejected by a pipeline stage",
    ["stage", "kind"],
)
AUTH_EVENTS = Counter(
    "tg_auth_events_total",
    "Credential lifecycle events (login, refresh, lockout, 2fa, ...)",
    ["event"],
)
CACHE_EVENTS = Counter(
    "tg_cache_events_total",
    "Response cache hits, misses, stores and evictions",
    ["event"],
)


def observe_request(route: str, status: int, latency_s: float) -> None:
    if _METRICS_DISABLED:
        return
    REQUESTS.labels(_safe_str(route), str(int(status))).inc()
    LATENCY.labels(_safe_str(route)).observe(max(0.0, float(latency_s)))


def record_rejection(stage: str, kind: str) -> None:
    if _METRICS_DISABLED:
        return
    REJECTIONS.labels(_safe_str(stage), _safe_str(kind)).inc()


def record_auth_event(event: str) -> None:
    if _METRICS_DISABLED:
        return
    AUTH_EVENTS.labels(_safe_str(event)).inc()


def record_cache_event(event: str, n: int = 1) -> None:
    if _METRICS_DISABLED or n <= 0:
        return
    CACHE_EVENTS.labels(_safe_str(event)).inc(n)


__all__ = [
    "REQUESTS",
    "LATENCY",
    "REJECTIONS",
    "AUTH_EVENTS",
    "CACHE_EVENTS",
    "observe_request",
    "record_rejection",
    "record_auth_event",
    "record_cache_event",
]
