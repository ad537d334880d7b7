"""Job health tracking and the periodic device/system health checks."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from .db import format_ts, utcnow
from .events import EVENT_DEVICES_OFFLINE, EVENT_HEALTH_CHECK_COMPLETED, Broadcaster
from .logging import get_logger
from .metrics import record_job_status, set_device_counts
from .notifications import NotificationEngine
from .store import HotelStore

OFFLINE_ALERT_TITLE = "System Alert"


@dataclass
class JobState:
    """Mutable health status for one scheduled job."""

    name: str
    status: str = "ok"
    failures: int = 0
    last_error: Optional[str] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "failures": self.failures,
            "last_error": self.last_error,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
        }


class HealthMonitor:
    """Track consecutive job failures.

    A job is ``degraded`` after one failure and ``failing`` once the failure
    threshold is reached. Jobs are never suppressed: the next tick always runs.
    """

    def __init__(self, job_names: Tuple[str, ...], failure_threshold: int = 3) -> None:
        self._states: Dict[str, JobState] = {name: JobState(name=name) for name in job_names}
        self._failure_threshold = max(1, failure_threshold)
        self._lock = asyncio.Lock()
        for name in job_names:
            record_job_status(name, "ok")

    async def record_success(self, job: str) -> None:
        async with self._lock:
            state = self._states[job]
            state.status = "ok"
            state.failures = 0
            state.last_error = None
            state.last_success = time.time()
            record_job_status(job, "ok")

    async def record_failure(self, job: str, error: Optional[BaseException] = None) -> str:
        """Record a failure and return the job's new status."""

        async with self._lock:
            state = self._states[job]
            state.failures += 1
            state.last_failure = time.time()
            if error is not None:
                state.last_error = str(error) or error.__class__.__name__
            state.status = "failing" if state.failures >= self._failure_threshold else "degraded"
            record_job_status(job, state.status)
            return state.status

    async def snapshot(self) -> Mapping[str, Dict[str, Any]]:
        async with self._lock:
            return {name: state.as_dict() for name, state in self._states.items()}


class SystemHealthService:
    """Device liveness sweep and the hourly system health check."""

    def __init__(
        self,
        store: HotelStore,
        notifications: NotificationEngine,
        *,
        pms_status: Optional[Callable[[], Awaitable[Dict[str, Any]]]] = None,
        hub: Optional[Broadcaster] = None,
        clock: Callable[[], datetime] = utcnow,
        device_offline_after: float = 600.0,
        offline_alert_threshold: int = 5,
        offline_device_threshold: int = 10,
        stuck_notification_age: float = 7200.0,
        stuck_notification_threshold: int = 5,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self.hub = hub
        self._pms_status = pms_status
        self._clock = clock
        self._offline_after = timedelta(seconds=device_offline_after)
        self._offline_alert_threshold = offline_alert_threshold
        self._offline_device_threshold = offline_device_threshold
        self._stuck_age = timedelta(seconds=stuck_notification_age)
        self._stuck_threshold = stuck_notification_threshold
        self.logger = get_logger("hoteltv.health")

    async def check_device_status(self) -> Dict[str, Any]:
        """Mark silent devices offline and alert when many drop at once."""

        now = self._clock()
        newly_offline = await self.store.mark_offline_devices(now - self._offline_after)
        alerted = 0
        if newly_offline >= self._offline_alert_threshold:
            alerted = await self.notifications.send_system_notification(
                OFFLINE_ALERT_TITLE,
                f"{newly_offline} devices have gone offline and may need attention.",
            )
        counts = await self.store.device_counts()
        set_device_counts(counts["online"], counts["offline"])
        if newly_offline:
            self.logger.info("Marked devices as offline", extra={"count": newly_offline})
            if self.hub is not None:
                self.hub.broadcast(
                    EVENT_DEVICES_OFFLINE,
                    {"count": newly_offline, "online": counts["online"], "offline": counts["offline"]},
                )
        return {"newly_offline": newly_offline, "alerts_sent": alerted, "devices": counts}

    async def run_health_check(self) -> Dict[str, Any]:
        """Collect system issues; persistence faults propagate to the caller."""

        now = self._clock()
        await self.store.ping()
        issues: List[str] = []

        counts = await self.store.device_counts()
        if counts["active_offline"] > self._offline_device_threshold:
            issues.append(f"{counts['active_offline']} devices are offline")

        stuck = await self.store.stuck_notification_count(now - self._stuck_age)
        if stuck > self._stuck_threshold:
            issues.append(f"{stuck} notifications are stuck in queue")

        connection_status = None
        initialized = False
        if self._pms_status is not None:
            status = await self._pms_status()
            initialized = bool(status.get("isInitialized"))
            connection_status = status.get("connectionStatus")
        if not initialized or connection_status != "connected":
            issues.append("PMS connection is not healthy")

        if issues:
            self.logger.warning("System health issues detected", extra={"issues": issues})
        else:
            self.logger.debug("System health check passed")
        report = {
            "healthy": not issues,
            "issues": issues,
            "devices": counts,
            "stuck_notifications": stuck,
            "pms_connection_status": connection_status,
            "checked_at": format_ts(now),
        }
        if self.hub is not None:
            self.hub.broadcast(EVENT_HEALTH_CHECK_COMPLETED, report)
        return report
