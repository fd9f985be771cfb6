"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "tibbo_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "tibbo_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
DISCOVERY_RESPONSES = Counter(
    "tibbo_discovery_responses_total",
    "Discovery responses parsed",
    registry=_REGISTRY,
)
DISCOVERY_ERRORS = Counter(
    "tibbo_discovery_errors_total",
    "Discovery responses discarded",
    ["reason"],
    registry=_REGISTRY,
)
SCAN_CYCLE_DURATION = Histogram(
    "tibbo_scan_cycle_duration_seconds",
    "Time spent performing scan cycles",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)
SCAN_TICKS_SKIPPED = Counter(
    "tibbo_scan_ticks_skipped_total",
    "Scan ticks dropped because the previous cycle was still running",
    registry=_REGISTRY,
)
RECONCILE_OUTCOMES = Counter(
    "tibbo_reconcile_outcomes_total",
    "Per-device reconciliation outcomes",
    ["outcome"],
    registry=_REGISTRY,
)
PRINT_RESULTS = Counter(
    "tibbo_print_results_total",
    "Label render and print outcomes",
    ["result"],
    registry=_REGISTRY,
)
PRINT_DURATION = Histogram(
    "tibbo_print_duration_seconds",
    "Time to render and submit a label",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)
PRINTS_IN_FLIGHT = Gauge(
    "tibbo_prints_in_flight",
    "Label prints dispatched but not yet finished",
    registry=_REGISTRY,
)
STORE_FLUSH_FAILURES = Counter(
    "tibbo_store_flush_failures_total",
    "Record store flushes that failed",
    registry=_REGISTRY,
)
DEVICE_RECORDS = Gauge(
    "tibbo_device_records",
    "Device records currently stored",
    registry=_REGISTRY,
)
SUBSYSTEM_FAILURES = Counter(
    "tibbo_subsystem_failures_total",
    "Subsystem failures leading to suppression",
    ["subsystem"],
    registry=_REGISTRY,
)
SUBSYSTEM_STATUS = Gauge(
    "tibbo_subsystem_status",
    "Subsystem health (0=suppressed,1=degraded/recovering,2=ok)",
    ["subsystem"],
    registry=_REGISTRY,
)


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def record_discovery_response() -> None:
    DISCOVERY_RESPONSES.inc()


def record_discovery_error(reason: str) -> None:
    """Record a discarded discovery response."""

    DISCOVERY_ERRORS.labels(reason=reason).inc()


def observe_scan_cycle(result: str, duration_seconds: float) -> None:
    SCAN_CYCLE_DURATION.labels(result=result).observe(duration_seconds)


def record_scan_tick_skipped() -> None:
    SCAN_TICKS_SKIPPED.inc()


def record_reconcile_outcome(outcome: str) -> None:
    """Record the reconciliation outcome for one device."""

    RECONCILE_OUTCOMES.labels(outcome=outcome).inc()


def observe_print(result: str, duration_seconds: float) -> None:
    """Record the result and duration of a render+print attempt."""

    PRINT_RESULTS.labels(result=result).inc()
    PRINT_DURATION.labels(result=result).observe(duration_seconds)


def set_prints_in_flight(count: int) -> None:
    PRINTS_IN_FLIGHT.set(count)


def record_store_flush_failure() -> None:
    STORE_FLUSH_FAILURES.inc()


def set_device_records(count: int) -> None:
    DEVICE_RECORDS.set(count)


def record_subsystem_failure(subsystem: str) -> None:
    """Record a subsystem failure triggering suppression."""

    SUBSYSTEM_FAILURES.labels(subsystem=subsystem).inc()


def record_subsystem_status(subsystem: str, status: str) -> None:
    """Record the current subsystem status."""

    code = 0
    if status == "ok":
        code = 2
    elif status in {"recovering", "degraded"}:
        code = 1
    SUBSYSTEM_STATUS.labels(subsystem=subsystem).set(code)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
