"""Prometheus metrics for monitoring and observability."""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from functools import lru_cache

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# ==============================================================================
# APPLICATION INFO
# ==============================================================================

app_info = Info("storefront_checkout", "Storefront checkout core information")
app_info.info({"version": "0.1.0", "service": "storefront-checkout"})

# ==============================================================================
# HTTP METRICS
# ==============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently in progress",
    ["method", "endpoint"],
)

# ==============================================================================
# CHECKOUT METRICS
# ==============================================================================

checkout_attempts_total = Counter(
    "checkout_attempts_total",
    "Checkout attempts started, by rail and result",
    ["rail", "result"],
)

ledger_transitions_total = Counter(
    "ledger_transitions_total",
    "Attempt status transitions applied",
    ["rail", "from_status", "to_status"],
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound provider events by rail and reconcile result",
    ["rail", "result"],
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Inbound provider events rejected during verification",
    ["rail", "reason"],
)

provider_calls_total = Counter(
    "provider_calls_total",
    "Outbound provider calls",
    ["rail", "operation", "result"],
)

sweep_runs_total = Counter(
    "sweep_runs_total",
    "Housekeeping sweep actions",
    ["action"],
)

notifications_total = Counter(
    "notifications_total",
    "Terminal-state notifications dispatched",
    ["result"],
)

# ==============================================================================
# CIRCUIT BREAKER METRICS
# ==============================================================================

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["circuit_name"],
)

circuit_breaker_failures_total = Counter(
    "circuit_breaker_failures_total",
    "Total circuit breaker failures",
    ["circuit_name"],
)

circuit_breaker_rejected_total = Counter(
    "circuit_breaker_rejected_total",
    "Total circuit breaker rejected calls",
    ["circuit_name"],
)

circuit_breaker_opened_total = Counter(
    "circuit_breaker_opened_total",
    "Total times circuit breaker opened",
    ["circuit_name"],
)

# ==============================================================================
# RATE LIMITER METRICS
# ==============================================================================

rate_limit_requests_total = Counter(
    "rate_limit_requests_total",
    "Total requests checked by rate limiter",
    ["result"],
)

# ==============================================================================
# HELPER FUNCTIONS
# ==============================================================================


def track_circuit_breaker_metrics(breaker_name: str, stats: dict) -> None:
    """Update circuit breaker counters from a cumulative stats dict."""
    previous = track_circuit_breaker_metrics._previous.setdefault(
        breaker_name,
        {"failed_calls": 0, "rejected_calls": 0, "circuit_opened_count": 0},
    )
    fields = {
        "failed_calls": circuit_breaker_failures_total,
        "rejected_calls": circuit_breaker_rejected_total,
        "circuit_opened_count": circuit_breaker_opened_total,
    }
    for key, counter in fields.items():
        current = int(stats.get(key, 0) or 0)
        delta = max(0, current - previous[key])
        if delta:
            counter.labels(circuit_name=breaker_name).inc(delta)
        previous[key] = current


track_circuit_breaker_metrics._previous = {}  # type: ignore[attr-defined]


@lru_cache(maxsize=2048)
def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path to reduce cardinality.

    Examples:
        /checkout/attempts/0b7c...-uuid -> /checkout/attempts/{id}
    """
    path = re.sub(
        r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
        "/{id}",
        path,
        flags=re.IGNORECASE,
    )
    path = re.sub(r"/\d+", "/{id}", path)
    path = re.sub(r"/[a-zA-Z0-9_-]{20,}", "/{id}", path)
    return path


# ==============================================================================
# PROMETHEUS MIDDLEWARE
# ==============================================================================


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = normalize_endpoint(request.url.path)
        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.time() - start_time
            )
            http_requests_total.labels(method=method, endpoint=endpoint, status=status).inc()
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "PrometheusMiddleware",
    "checkout_attempts_total",
    "get_metrics",
    "ledger_transitions_total",
    "normalize_endpoint",
    "notifications_total",
    "provider_calls_total",
    "sweep_runs_total",
    "track_circuit_breaker_metrics",
    "webhook_events_total",
    "webhook_signature_failures_total",
]
