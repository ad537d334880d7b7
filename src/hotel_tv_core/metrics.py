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
    "hoteltv_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "hoteltv_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
PMS_FETCHES = Counter(
    "hoteltv_pms_fetches_total",
    "Per-room PMS fetch outcomes",
    ["result"],
    registry=_REGISTRY,
)
PMS_SYNC_DURATION = Histogram(
    "hoteltv_pms_sync_duration_seconds",
    "Time spent performing PMS reconciliation sweeps",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60],
)
NOTIFICATIONS_CREATED = Counter(
    "hoteltv_notifications_created_total",
    "Notifications created by type",
    ["type"],
    registry=_REGISTRY,
)
NOTIFICATIONS_DELIVERED = Counter(
    "hoteltv_notifications_delivered_total",
    "Notifications moved from new to sent by device sync",
    registry=_REGISTRY,
)
DEVICE_SYNCS = Counter(
    "hoteltv_device_syncs_total",
    "Device sync responses by shape",
    ["result"],
    registry=_REGISTRY,
)
DEVICES = Gauge(
    "hoteltv_devices",
    "Devices by liveness state",
    ["state"],
    registry=_REGISTRY,
)
JOB_RUNS = Counter(
    "hoteltv_scheduler_job_runs_total",
    "Scheduler job invocations by outcome",
    ["job", "result"],
    registry=_REGISTRY,
)
JOB_DURATION = Histogram(
    "hoteltv_scheduler_job_duration_seconds",
    "Time spent in scheduler job invocations",
    ["job"],
    registry=_REGISTRY,
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, 60, 300],
)
JOB_STATUS = Gauge(
    "hoteltv_scheduler_job_status",
    "Scheduler job health (0=failing,1=ok)",
    ["job"],
    registry=_REGISTRY,
)
REALTIME_CONNECTIONS = Gauge(
    "hoteltv_realtime_connections",
    "Connected admin realtime sessions",
    registry=_REGISTRY,
)
REALTIME_BROADCASTS = Counter(
    "hoteltv_realtime_broadcasts_total",
    "Broadcast events emitted",
    ["event"],
    registry=_REGISTRY,
)
REALTIME_EVICTIONS = Counter(
    "hoteltv_realtime_evictions_total",
    "Realtime connections evicted",
    ["reason"],
    registry=_REGISTRY,
)


def get_registry() -> CollectorRegistry:
    """Return the registry holding the service metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def record_pms_fetch(result: str) -> None:
    PMS_FETCHES.labels(result=result).inc()


def observe_pms_sync(result: str, duration_seconds: float) -> None:
    PMS_SYNC_DURATION.labels(result=result).observe(duration_seconds)


def record_notifications_created(notification_type: str, count: int = 1) -> None:
    """Record newly created notifications of a given type."""

    if count > 0:
        NOTIFICATIONS_CREATED.labels(type=notification_type).inc(count)


def record_notifications_delivered(count: int) -> None:
    if count > 0:
        NOTIFICATIONS_DELIVERED.inc(count)


def record_device_sync(result: str) -> None:
    DEVICE_SYNCS.labels(result=result).inc()


def set_device_counts(online: int, offline: int) -> None:
    """Publish the latest device liveness counts."""

    DEVICES.labels(state="online").set(online)
    DEVICES.labels(state="offline").set(offline)


def observe_job_run(job: str, result: str, duration_seconds: float) -> None:
    """Record a scheduler job invocation."""

    JOB_RUNS.labels(job=job, result=result).inc()
    JOB_DURATION.labels(job=job).observe(duration_seconds)


def record_job_status(job: str, status: str) -> None:
    JOB_STATUS.labels(job=job).set(1 if status == "ok" else 0)


def set_realtime_connections(count: int) -> None:
    REALTIME_CONNECTIONS.set(count)


def record_broadcast(event: str) -> None:
    REALTIME_BROADCASTS.labels(event=event).inc()


def record_realtime_eviction(reason: str) -> None:
    REALTIME_EVICTIONS.labels(reason=reason).inc()
