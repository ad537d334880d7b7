"""Fixed-interval background jobs."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .cache import TtlCache
from .config import Config
from .events import EVENT_JOB_FAILED, Broadcaster
from .health import HealthMonitor, SystemHealthService
from .logging import get_logger
from .metrics import observe_job_run
from .notifications import NotificationEngine
from .reconciliation import PmsSyncService

JOB_PMS_SYNC = "pms_sync"
JOB_NOTIFICATION_PROCESSING = "notification_processing"
JOB_NOTIFICATION_CLEANUP = "notification_cleanup"
JOB_DEVICE_STATUS = "device_status"
JOB_HEALTH_CHECK = "health_check"

JobOperation = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledJob:
    """A named operation run every ``interval`` seconds."""

    name: str
    interval: float
    operation: JobOperation
    runs: int = 0
    failures: int = 0
    last_run: Optional[float] = None
    last_success: Optional[float] = None
    last_error: Optional[str] = None
    last_duration: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_run": self.last_run,
            "last_success": self.last_success,
            "last_error": self.last_error,
            "last_duration_ms": (
                round(self.last_duration * 1000, 2) if self.last_duration is not None else None
            ),
        }


def _jsonable(result: Any) -> Any:
    if hasattr(result, "as_dict"):
        return result.as_dict()
    return result


class Scheduler:
    """Runs each job on its own timer; a failing run never affects later ones."""

    def __init__(
        self,
        jobs: Sequence[ScheduledJob],
        *,
        health: Optional[HealthMonitor] = None,
        hub: Optional[Broadcaster] = None,
    ) -> None:
        self._jobs: Dict[str, ScheduledJob] = {job.name: job for job in jobs}
        self.health = health or HealthMonitor(tuple(self._jobs))
        self.hub = hub
        self._stop_event = asyncio.Event()
        self._timers: List[asyncio.Task[None]] = []
        self._running: Set[asyncio.Task[Any]] = set()
        self._started = False
        self.logger = get_logger("hoteltv.scheduler")

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    async def start(self) -> bool:
        if self._started:
            self.logger.warning("Scheduler already started")
            return False
        self._stop_event.clear()
        self._timers = [
            asyncio.create_task(self._job_loop(job), name=f"job:{job.name}")
            for job in self._jobs.values()
        ]
        self._started = True
        for job in self._jobs.values():
            self.logger.info(
                "Scheduled job started", extra={"job": job.name, "interval": job.interval}
            )
        return True

    async def stop(self) -> bool:
        """Stop the timers and wait for runs already in progress."""

        if not self._started:
            self.logger.warning("Scheduler not started")
            return False
        self._stop_event.set()
        for task in self._timers:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*self._timers)
        self._timers = []
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)
        self._started = False
        self.logger.info("Scheduler stopped")
        return True

    async def _job_loop(self, job: ScheduledJob) -> None:
        while not self._stop_event.is_set():
            await self._sleep_with_stop(job.interval)
            if self._stop_event.is_set():
                break
            task = asyncio.create_task(self._execute(job))
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    async def _sleep_with_stop(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return

    async def _execute(self, job: ScheduledJob) -> Dict[str, Any]:
        job.runs += 1
        job.last_run = time.time()
        start = time.perf_counter()
        try:
            result = await job.operation()
        except Exception as exc:
            job.last_duration = time.perf_counter() - start
            job.failures += 1
            job.last_error = str(exc) or exc.__class__.__name__
            observe_job_run(job.name, "error", job.last_duration)
            self.logger.exception("Scheduled job failed", extra={"job": job.name})
            status = await self.health.record_failure(job.name, exc)
            if self.hub is not None:
                self.hub.broadcast(
                    EVENT_JOB_FAILED,
                    {"job": job.name, "error": job.last_error, "status": status},
                )
            return {"success": False, "job": job.name, "error": job.last_error}
        job.last_duration = time.perf_counter() - start
        job.last_success = time.time()
        observe_job_run(job.name, "ok", job.last_duration)
        await self.health.record_success(job.name)
        self.logger.debug(
            "Scheduled job completed",
            extra={"job": job.name, "duration_ms": round(job.last_duration * 1000, 2)},
        )
        return {"success": True, "job": job.name, "result": _jsonable(result)}

    async def trigger(self, name: str) -> Dict[str, Any]:
        """Run one job now, outside its timer. Unknown names raise ``KeyError``."""

        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        self.logger.info("Manually triggering job", extra={"job": name})
        return await self._execute(job)

    async def status(self) -> Dict[str, Any]:
        health = await self.health.snapshot()
        jobs = []
        for job in self._jobs.values():
            entry = job.as_dict()
            entry["status"] = health.get(job.name, {}).get("status", "ok")
            jobs.append(entry)
        return {"isStarted": self._started, "jobCount": len(jobs), "jobs": jobs}


def build_scheduler(
    config: Config,
    *,
    pms_sync: PmsSyncService,
    notifications: NotificationEngine,
    system_health: SystemHealthService,
    cache: TtlCache,
    hub: Optional[Broadcaster] = None,
) -> Scheduler:
    """Wire the standard job set to the configured intervals."""

    async def _cleanup() -> Dict[str, int]:
        removed = await notifications.cleanup_old_notifications()
        purged = await cache.purge_expired()
        return {"notifications_removed": removed, "cache_entries_purged": purged}

    jobs = [
        ScheduledJob(JOB_PMS_SYNC, config.pms_sync_interval, pms_sync.sync),
        ScheduledJob(
            JOB_NOTIFICATION_PROCESSING,
            config.notification_interval,
            notifications.process_scheduled_notifications,
        ),
        ScheduledJob(JOB_NOTIFICATION_CLEANUP, config.cleanup_interval, _cleanup),
        ScheduledJob(
            JOB_DEVICE_STATUS, config.device_status_interval, system_health.check_device_status
        ),
        ScheduledJob(
            JOB_HEALTH_CHECK, config.health_check_interval, system_health.run_health_check
        ),
    ]
    return Scheduler(jobs, hub=hub)
