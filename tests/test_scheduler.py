import asyncio
from typing import List

import pytest

from hotel_tv_core.config import Config
from hotel_tv_core.health import SystemHealthService
from hotel_tv_core.notifications import NotificationEngine
from hotel_tv_core.reconciliation import PmsSyncService
from hotel_tv_core.scheduler import (
    JOB_DEVICE_STATUS,
    JOB_HEALTH_CHECK,
    JOB_NOTIFICATION_CLEANUP,
    JOB_NOTIFICATION_PROCESSING,
    JOB_PMS_SYNC,
    ScheduledJob,
    Scheduler,
    build_scheduler,
)


@pytest.mark.asyncio
async def test_failing_job_does_not_stop_others(hub) -> None:
    calls: List[str] = []

    async def good() -> dict:
        calls.append("good")
        return {"ok": True}

    async def bad() -> None:
        calls.append("bad")
        raise RuntimeError("boom")

    scheduler = Scheduler(
        [ScheduledJob("good", 0.01, good), ScheduledJob("bad", 0.01, bad)], hub=hub
    )
    assert await scheduler.start() is True
    assert await scheduler.start() is False
    for _ in range(200):
        if calls.count("good") >= 2 and calls.count("bad") >= 2:
            break
        await asyncio.sleep(0.01)
    assert await scheduler.stop() is True
    assert await scheduler.stop() is False

    assert calls.count("good") >= 2
    assert calls.count("bad") >= 2
    status = await scheduler.status()
    assert status["isStarted"] is False
    assert status["jobCount"] == 2
    jobs = {job["name"]: job for job in status["jobs"]}
    assert jobs["good"]["status"] == "ok"
    assert jobs["bad"]["status"] in ("degraded", "failing")
    assert jobs["bad"]["last_error"] == "boom"
    assert "job_failed" in hub.types()


@pytest.mark.asyncio
async def test_trigger_runs_job_immediately() -> None:
    async def work() -> int:
        return 3

    scheduler = Scheduler([ScheduledJob("work", 3600, work)])
    result = await scheduler.trigger("work")
    assert result == {"success": True, "job": "work", "result": 3}
    assert scheduler.jobs[0].runs == 1
    assert scheduler.jobs[0].as_dict()["last_duration_ms"] is not None
    with pytest.raises(KeyError):
        await scheduler.trigger("missing")


@pytest.mark.asyncio
async def test_trigger_reports_failure() -> None:
    async def broken() -> None:
        raise ValueError("bad data")

    scheduler = Scheduler([ScheduledJob("broken", 3600, broken)])
    result = await scheduler.trigger("broken")
    assert result == {"success": False, "job": "broken", "error": "bad data"}
    status = await scheduler.status()
    assert status["jobs"][0]["status"] == "degraded"


@pytest.mark.asyncio
async def test_build_scheduler_wires_standard_jobs(store, cache, hub, clock) -> None:
    engine = NotificationEngine(store, clock=clock)
    pms = PmsSyncService(store, cache, engine, clock=clock)
    health = SystemHealthService(store, engine, pms_status=pms.sync_status, clock=clock)
    scheduler = build_scheduler(
        Config(), pms_sync=pms, notifications=engine, system_health=health, cache=cache, hub=hub
    )

    assert [job.name for job in scheduler.jobs] == [
        JOB_PMS_SYNC,
        JOB_NOTIFICATION_PROCESSING,
        JOB_NOTIFICATION_CLEANUP,
        JOB_DEVICE_STATUS,
        JOB_HEALTH_CHECK,
    ]
    cleanup = await scheduler.trigger(JOB_NOTIFICATION_CLEANUP)
    assert cleanup["result"] == {"notifications_removed": 0, "cache_entries_purged": 0}
    sync = await scheduler.trigger(JOB_PMS_SYNC)
    assert sync == {"success": True, "job": JOB_PMS_SYNC, "result": None}
