"""Prometheus metrics for pathway execution.

Key Responsibilities:
    - Define Prometheus collectors for requests, model calls, chunking and
      stream decoding
    - Expose small ``record_*`` helpers so call sites never touch collectors

Side Effects:
    - Registers collectors with the default Prometheus registry on import

Thread Safety:
    - Thread-safe: Prometheus client operations are atomic
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ==============================================================================
# COLLECTORS
# ==============================================================================

PATHWAY_REQUESTS_TOTAL = Counter(
    "cortex_pathway_requests_total",
    "Pathway requests by delivery mode",
    ["pathway", "mode"],
)

PATHWAY_REQUEST_FAILURES_TOTAL = Counter(
    "cortex_pathway_request_failures_total",
    "Pathway requests that ended with an error",
    ["pathway", "error_type"],
)

PATHWAY_CANCELLATIONS_TOTAL = Counter(
    "cortex_pathway_cancellations_total",
    "Cancellation requests received",
)

MODEL_CALLS_TOTAL = Counter(
    "cortex_model_calls_total",
    "Model executor invocations",
    ["model", "status"],
)

MODEL_CALL_DURATION_SECONDS = Histogram(
    "cortex_model_call_duration_seconds",
    "Duration of model executor invocations",
    ["model"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

REQUEST_CHUNKS = Histogram(
    "cortex_request_chunks",
    "Number of input chunks per pathway request",
    ["pathway"],
    buckets=[1, 2, 3, 5, 10, 20, 50, 100],
)

TRUNCATION_WARNINGS_TOTAL = Counter(
    "cortex_truncation_warnings_total",
    "Inputs truncated to fit the chunk budget",
    ["pathway"],
)

STREAM_MALFORMED_LINES_TOTAL = Counter(
    "cortex_stream_malformed_lines_total",
    "Streamed lines that could not be decoded",
)

ACTIVE_REQUESTS = Gauge(
    "cortex_active_requests",
    "Request state records currently held by the registry",
)

# ==============================================================================
# HELPERS
# ==============================================================================


def record_request(pathway: str, mode: str) -> None:
    PATHWAY_REQUESTS_TOTAL.labels(pathway=pathway, mode=mode).inc()


def record_request_failure(pathway: str, error_type: str) -> None:
    PATHWAY_REQUEST_FAILURES_TOTAL.labels(pathway=pathway, error_type=error_type).inc()


def record_cancellation() -> None:
    PATHWAY_CANCELLATIONS_TOTAL.inc()


def record_model_call(model: str, status: str, duration_seconds: float) -> None:
    MODEL_CALLS_TOTAL.labels(model=model, status=status).inc()
    MODEL_CALL_DURATION_SECONDS.labels(model=model).observe(duration_seconds)


def record_chunk_count(pathway: str, count: int) -> None:
    REQUEST_CHUNKS.labels(pathway=pathway).observe(count)


def record_truncation(pathway: str) -> None:
    TRUNCATION_WARNINGS_TOTAL.labels(pathway=pathway).inc()


def record_malformed_stream_line() -> None:
    STREAM_MALFORMED_LINES_TOTAL.inc()


def set_active_requests(count: int) -> None:
    ACTIVE_REQUESTS.set(count)


__all__ = [
    "record_cancellation",
    "record_chunk_count",
    "record_malformed_stream_line",
    "record_model_call",
    "record_request",
    "record_request_failure",
    "record_truncation",
    "set_active_requests",
]
