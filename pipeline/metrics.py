"""
Prometheus metrics for the meetings pipeline.

The pipeline runs inside the API process, so these series are exposed by the
same /metrics endpoint as the HTTP request metrics (see api/metrics.py).
Labels are kept to small closed sets (outcome, operation) to avoid
cardinality blowups.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


PIPELINE_RUNS_TOTAL = Counter(
    "cd_pipeline_runs_total",
    "Total pipeline runs by terminal outcome.",
    labelnames=("outcome",),
)

PIPELINE_ITEMS_TOTAL = Counter(
    "cd_pipeline_items_total",
    "Meetings processed by the ordered pipeline, by outcome.",
    labelnames=("outcome",),
)

PIPELINE_ITEM_DURATION_SECONDS = Histogram(
    "cd_pipeline_item_duration_seconds",
    "Time spent processing one meeting (extraction + model call).",
    labelnames=("outcome",),
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 20, 30, 60, 120),
)

PIPELINE_ACTIVE_WORKERS = Gauge(
    "cd_pipeline_active_workers",
    "Meetings currently being processed across all running pipelines.",
)

PROVIDER_REQUESTS_TOTAL = Counter(
    "cd_provider_requests_total",
    "Model provider requests by outcome.",
    labelnames=("provider", "operation", "model", "outcome"),
)

PROVIDER_REQUEST_DURATION_SECONDS = Histogram(
    "cd_provider_request_duration_seconds",
    "Model provider request latency in seconds.",
    labelnames=("provider", "operation", "model"),
    buckets=(0.25, 0.5, 1, 2.5, 5, 10, 20, 30, 60, 120),
)

PROVIDER_TIMEOUTS_TOTAL = Counter(
    "cd_provider_timeouts_total",
    "Model provider requests that timed out.",
    labelnames=("provider", "operation", "model"),
)

PROVIDER_RETRIES_TOTAL = Counter(
    "cd_provider_retries_total",
    "Model provider retries.",
    labelnames=("provider", "operation", "model"),
)

PDF_EXTRACTIONS_TOTAL = Counter(
    "cd_pdf_extractions_total",
    "Minutes text extraction attempts by outcome.",
    labelnames=("outcome",),
)


def record_pipeline_run(outcome: str) -> None:
    PIPELINE_RUNS_TOTAL.labels(outcome=outcome).inc()


def record_item(outcome: str, duration_s: float) -> None:
    PIPELINE_ITEMS_TOTAL.labels(outcome=outcome).inc()
    PIPELINE_ITEM_DURATION_SECONDS.labels(outcome=outcome).observe(max(0.0, duration_s))


def record_provider_request(provider: str, operation: str, model: str, outcome: str, duration_ms: float) -> None:
    PROVIDER_REQUESTS_TOTAL.labels(provider=provider, operation=operation, model=model, outcome=outcome).inc()
    PROVIDER_REQUEST_DURATION_SECONDS.labels(provider=provider, operation=operation, model=model).observe(
        max(0.0, duration_ms / 1000.0)
    )


def record_provider_timeout(provider: str, operation: str, model: str) -> None:
    PROVIDER_TIMEOUTS_TOTAL.labels(provider=provider, operation=operation, model=model).inc()


def record_provider_retry(provider: str, operation: str, model: str) -> None:
    PROVIDER_RETRIES_TOTAL.labels(provider=provider, operation=operation, model=model).inc()


def record_pdf_extraction(outcome: str) -> None:
    PDF_EXTRACTIONS_TOTAL.labels(outcome=outcome).inc()
