"""
Prometheus metrics for the Council Decisions API.

Requests are labelled by route template ("/api/meetings"), never by the raw URL
with its query string, so label cardinality stays bounded.

For the SSE endpoint the middleware sees the response as soon as headers are
ready: the latency histogram is time-to-first-byte there, not stream length.
How long streams take is covered by the pipeline metrics (pipeline/metrics.py).
"""

from __future__ import annotations

import time

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


HTTP_REQUESTS_TOTAL = Counter(
    "cd_http_requests_total",
    "HTTP requests served, by method, route template and status.",
    labelnames=("method", "path", "status"),
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "cd_http_request_duration_seconds",
    "Seconds until response headers were ready.",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

HTTP_REQUESTS_IN_FLIGHT = Gauge(
    "cd_http_requests_in_flight",
    "Requests currently inside the middleware stack.",
)

SSE_STREAMS_STARTED_TOTAL = Counter(
    "cd_sse_streams_started_total",
    "Server-sent event streams opened, by route template.",
    labelnames=("path",),
)

UNINSTRUMENTED_PATHS = frozenset({"/metrics"})


def route_label(scope) -> str:
    """Route template once the router matched, else the bare path."""
    template = getattr(scope.get("route"), "path", None)
    return str(template or scope.get("path") or "/")


def _is_event_stream(response) -> bool:
    return (response.headers.get("content-type") or "").startswith("text/event-stream")


def instrument_app(app) -> None:
    """Mount /metrics and time every other request."""

    @app.get("/metrics", include_in_schema=False)
    def metrics_endpoint():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.middleware("http")
    async def record_request_metrics(request, call_next):
        if request.url.path in UNINSTRUMENTED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        HTTP_REQUESTS_IN_FLIGHT.inc()
        try:
            response = await call_next(request)
            status_code = response.status_code
            if _is_event_stream(response):
                SSE_STREAMS_STARTED_TOTAL.labels(path=route_label(request.scope)).inc()
            return response
        finally:
            # The route only lands in the scope after routing, so label late.
            path = route_label(request.scope)
            HTTP_REQUESTS_TOTAL.labels(method=request.method, path=path, status=str(status_code)).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(method=request.method, path=path).observe(
                max(0.0, time.perf_counter() - started)
            )
            HTTP_REQUESTS_IN_FLIGHT.dec()
