"""Entrypoint for the hotel TV coordination service."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Iterable, Optional

from .api import ApiContext, ApiService
from .auth import AdminAuthenticator
from .cache import TtlCache
from .config import Config, load_config
from .db import apply_migrations
from .device_sync import DeviceSyncService
from .health import SystemHealthService
from .logging import configure_logging, get_logger
from .notifications import NotificationEngine
from .realtime import BroadcastHub
from .reconciliation import PmsSyncService
from .scheduler import build_scheduler
from .store import HotelStore


async def _run_async(config: Config) -> None:
    logger = get_logger("hoteltv")
    stop_event = asyncio.Event()
    store = HotelStore(config.db_path)
    await store.start()
    cache = TtlCache(store.db)
    hub = BroadcastHub(
        ping_interval=config.realtime_ping_interval,
        stale_multiplier=config.realtime_stale_multiplier,
    )
    notifications = NotificationEngine(
        store,
        hub=hub,
        welcome_dedup_hours=config.welcome_dedup_hours,
        farewell_lead_minutes=config.farewell_lead_minutes,
        retention_days=config.notification_retention_days,
    )
    pms = PmsSyncService(
        store,
        cache,
        notifications,
        hub=hub,
        request_timeout=config.pms_request_timeout,
        test_timeout=config.pms_test_timeout,
        cache_ttl=config.pms_cache_ttl,
    )
    devices = DeviceSyncService(store, cache, hub=hub, cache_ttl=config.device_sync_cache_ttl)
    system_health = SystemHealthService(
        store,
        notifications,
        pms_status=pms.sync_status,
        hub=hub,
        device_offline_after=config.device_offline_after,
        offline_alert_threshold=config.offline_alert_threshold,
        offline_device_threshold=config.health_offline_device_threshold,
        stuck_notification_age=config.stuck_notification_age,
        stuck_notification_threshold=config.stuck_notification_threshold,
    )
    scheduler = build_scheduler(
        config,
        pms_sync=pms,
        notifications=notifications,
        system_health=system_health,
        cache=cache,
        hub=hub,
    )
    authenticator = AdminAuthenticator(store, config.jwt_secret, config.jwt_algorithm)
    if not authenticator.enabled:
        logger.warning("No JWT secret configured; admin routes and realtime channel are disabled")
    api = ApiService(
        config,
        ApiContext(
            store=store,
            devices=devices,
            notifications=notifications,
            pms=pms,
            scheduler=scheduler,
            hub=hub,
            authenticator=authenticator,
        ),
    )

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    await pms.initialize()
    await hub.start()
    if config.scheduler_enabled:
        await scheduler.start()
    await api.start()
    logger.info(
        "Hotel TV core started",
        extra={
            "api_port": config.api_port,
            "db_path": str(config.db_path),
            "scheduler": config.scheduler_enabled,
            "pms_configured": pms.is_configured,
        },
    )

    try:
        await stop_event.wait()
    finally:
        await api.stop()
        if scheduler.is_started:
            await scheduler.stop()
        await hub.stop()
        await store.stop()
        logger.info("Hotel TV core shutdown complete")


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """Console script entrypoint."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("hoteltv")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    apply_migrations(config.db_path)
    if config.migrate_only:
        logger.info("Migrations complete; exiting per configuration.")
        return
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
