"""Prometheus metric definitions for the callback service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


callback_requests_total = Counter("callback_requests_total", "Total inbound payment callbacks", ["service"])
callback_outcomes_total = Counter(
    "callback_outcomes_total",
    "Reconciliation outcomes by result",
    ["service", "outcome"],
)
reconcile_latency_seconds = Histogram("reconcile_latency_seconds", "Reconciliation latency seconds", ["service"])
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
provider_requests_total = Counter(
    "provider_requests_total",
    "Token validation calls to the payment provider",
    ["service", "result"],
)
provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Token validation round-trip seconds",
    ["service", "strict"],
)
token_cache_lookups_total = Counter(
    "token_cache_lookups_total",
    "Token cache lookups by result",
    ["service", "result"],
)
rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests refused by the local rate limiter",
    ["service", "action"],
)
rate_limit_storage_errors_total = Counter(
    "rate_limit_storage_errors_total",
    "Rate limiter storage failures (request allowed)",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
