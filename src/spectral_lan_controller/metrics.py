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
    "spectral_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "spectral_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
DEVICE_COMMAND_RESULTS = Counter(
    "spectral_device_commands_total",
    "Fixture command outcomes",
    ["operation", "result"],
    registry=_REGISTRY,
)
DEVICE_COMMAND_DURATION = Histogram(
    "spectral_device_command_duration_seconds",
    "Time to complete fixture commands",
    ["operation", "result"],
    registry=_REGISTRY,
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
DEVICE_POLLS = Counter(
    "spectral_device_polls_total",
    "Fixture status polls by outcome",
    ["result"],
    registry=_REGISTRY,
)
CONNECTED_DEVICES = Gauge(
    "spectral_connected_devices",
    "Fixtures currently in the connected pool",
    registry=_REGISTRY,
)
MONITORED_DEVICES = Gauge(
    "spectral_monitored_devices",
    "Fixtures with an active monitoring task",
    registry=_REGISTRY,
)
DEBOUNCE_FLUSHES = Counter(
    "spectral_slider_flushes_total",
    "Coalesced slider batches dispatched after the debounce window",
    registry=_REGISTRY,
)
DEBOUNCE_COALESCED = Counter(
    "spectral_slider_edits_coalesced_total",
    "Slider edits replaced by a newer edit before dispatch",
    registry=_REGISTRY,
)
REPAIRS = Counter(
    "spectral_repairs_total",
    "Records healed by repair passes",
    ["kind"],
    registry=_REGISTRY,
)
SUBSYSTEM_FAILURES = Counter(
    "spectral_subsystem_failures_total",
    "Subsystem failures leading to suppression",
    ["subsystem"],
    registry=_REGISTRY,
)
SUBSYSTEM_STATUS = Gauge(
    "spectral_subsystem_status",
    "Subsystem health (0=suppressed,1=degraded/recovering,2=ok)",
    ["subsystem"],
    registry=_REGISTRY,
)
DISCOVERY_RESPONSES = Counter(
    "spectral_discovery_responses_total",
    "Subnet scan answers by outcome",
    ["result"],
    registry=_REGISTRY,
)
DISCOVERY_SCAN_DURATION = Histogram(
    "spectral_discovery_scan_duration_seconds",
    "Time spent scanning subnets for fixtures",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)


def get_registry() -> CollectorRegistry:
    """Return the registry holding the controller metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def observe_device_command(operation: str, result: str, duration_seconds: float) -> None:
    """Record the outcome and duration of a fixture command."""

    DEVICE_COMMAND_RESULTS.labels(operation=operation, result=result).inc()
    DEVICE_COMMAND_DURATION.labels(operation=operation, result=result).observe(duration_seconds)


def record_device_poll(result: str) -> None:
    DEVICE_POLLS.labels(result=result).inc()


def set_connected_devices(count: int) -> None:
    CONNECTED_DEVICES.set(count)


def set_monitored_devices(count: int) -> None:
    MONITORED_DEVICES.set(count)


def record_debounce_flush() -> None:
    DEBOUNCE_FLUSHES.inc()


def record_debounce_coalesced() -> None:
    DEBOUNCE_COALESCED.inc()


def record_repair(kind: str, count: int = 1) -> None:
    """Record healed records for a repair kind."""

    if count > 0:
        REPAIRS.labels(kind=kind).inc(count)


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


def record_discovery_response(result: str) -> None:
    """Record the outcome of one scanned address."""

    DISCOVERY_RESPONSES.labels(result=result).inc()


def observe_discovery_scan(result: str, duration_seconds: float) -> None:
    """Record the duration of a subnet scan."""

    DISCOVERY_SCAN_DURATION.labels(result=result).observe(duration_seconds)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
