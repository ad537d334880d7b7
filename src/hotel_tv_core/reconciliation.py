"""Periodic reconciliation of guest and folio state from the PMS."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from .cache import TtlCache
from .db import format_ts, utcnow
from .events import EVENT_PMS_CONFIGURATION_UPDATED, EVENT_PMS_SYNC_COMPLETED, Broadcaster
from .logging import get_logger
from .metrics import observe_pms_sync
from .notifications import NotificationEngine
from .pms import PmsClient, PmsCredentials, PmsError, PmsSettings, RoomSnapshot
from .store import HotelStore

ROOM_CACHE_PREFIX = "pms_room_"
# Category recorded for per-room faults that are not classified PMS errors.
UNEXPECTED_ERROR = "unexpected_error"


@dataclass
class SyncResult:
    """Aggregate outcome of one reconciliation sweep."""

    rooms: int = 0
    guests_updated: int = 0
    bills_updated: int = 0
    notifications_generated: int = 0
    cache_hits: int = 0
    errors: List[str] = field(default_factory=list)
    error_categories: Dict[str, int] = field(default_factory=dict)

    def record_error(self, room_number: str, message: str, category: str) -> None:
        self.errors.append(f"Room {room_number}: {message}")
        self.error_categories[category] = self.error_categories.get(category, 0) + 1

    @property
    def failed_rooms(self) -> int:
        return len(self.errors)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "rooms": self.rooms,
            "guests_updated": self.guests_updated,
            "bills_updated": self.bills_updated,
            "notifications_generated": self.notifications_generated,
            "cache_hits": self.cache_hits,
            "errors": list(self.errors),
            "error_categories": dict(self.error_categories),
        }


class PmsSyncService:
    """Pulls PMS state for every room with an active device."""

    def __init__(
        self,
        store: HotelStore,
        cache: TtlCache,
        notifications: NotificationEngine,
        *,
        hub: Optional[Broadcaster] = None,
        clock: Callable[[], datetime] = utcnow,
        request_timeout: float = 30.0,
        test_timeout: float = 10.0,
        cache_ttl: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.notifications = notifications
        self.hub = hub
        self._clock = clock
        self._request_timeout = request_timeout
        self._test_timeout = test_timeout
        self._cache_ttl = cache_ttl
        self._transport = transport
        self._settings: Optional[PmsSettings] = None
        self._sync_in_progress = False
        self.last_sync_time: Optional[datetime] = None
        self.logger = get_logger("hoteltv.pms")

    @property
    def settings(self) -> Optional[PmsSettings]:
        return self._settings

    @property
    def is_configured(self) -> bool:
        return self._settings is not None

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_in_progress

    async def initialize(self) -> None:
        await self.load_configuration()

    async def load_configuration(self) -> Optional[PmsSettings]:
        """Read PMS settings and swap in a fresh immutable snapshot."""

        row = await self.store.settings()
        snapshot = PmsSettings.from_row(row)
        self._settings = snapshot
        if snapshot is None:
            self.logger.debug("PMS not configured; reconciliation disabled")
        else:
            self.logger.info(
                "Loaded PMS configuration",
                extra={"base_url": snapshot.base_url, "username": snapshot.username},
            )
        return snapshot

    async def update_configuration(self) -> bool:
        """Reload settings after an edit; failures leave the service unconfigured."""

        try:
            snapshot = await self.load_configuration()
        except Exception:
            self.logger.exception("Failed to reload PMS configuration")
            self._settings = None
            return False
        if self.hub is not None:
            self.hub.broadcast(
                EVENT_PMS_CONFIGURATION_UPDATED, {"configured": snapshot is not None}
            )
        return snapshot is not None

    def _client(self, credentials: PmsCredentials, timeout: float) -> PmsClient:
        return PmsClient(credentials, timeout=timeout, transport=self._transport)

    async def sync(self) -> Optional[SyncResult]:
        """Run one sweep; returns ``None`` when skipped."""

        settings = self._settings
        if settings is None:
            self.logger.debug("PMS sync skipped; not configured")
            return None
        if self._sync_in_progress:
            self.logger.debug("PMS sync skipped; previous sweep still running")
            return None
        self._sync_in_progress = True
        start = time.perf_counter()
        try:
            result = await self._sweep(settings)
        except Exception:
            observe_pms_sync("error", time.perf_counter() - start)
            self.logger.exception("PMS sync failed")
            await self.store.set_pms_connection_status("error")
            raise
        finally:
            self._sync_in_progress = False

        outcome = "partial" if result.errors else "ok"
        if result.rooms and result.failed_rooms == result.rooms:
            outcome = "failed"
        observe_pms_sync(outcome, time.perf_counter() - start)
        self.logger.info("PMS sync completed", extra=result.as_dict())
        if self.hub is not None:
            self.hub.broadcast(
                EVENT_PMS_SYNC_COMPLETED,
                {**result.as_dict(), "last_sync_time": self._last_sync_iso()},
            )
        return result

    async def _sweep(self, settings: PmsSettings) -> SyncResult:
        rooms = await self.store.active_rooms()
        result = SyncResult(rooms=len(rooms))
        if not rooms:
            self.logger.info("No active devices with room numbers found")
            self.last_sync_time = self._clock()
            return result
        async with self._client(settings.credentials(), self._request_timeout) as client:
            for room_number in rooms:
                try:
                    await self._sync_room(client, room_number, result)
                except PmsError as exc:
                    result.record_error(room_number, exc.message, exc.category)
                    self.logger.warning(
                        "Failed to sync room",
                        extra={"room_number": room_number, "category": exc.category},
                    )
                except Exception as exc:
                    result.record_error(room_number, str(exc) or type(exc).__name__, UNEXPECTED_ERROR)
                    self.logger.exception(
                        "Unexpected error syncing room", extra={"room_number": room_number}
                    )
        now = self._clock()
        status = "error" if result.failed_rooms == result.rooms else "connected"
        await self.store.set_pms_connection_status(status, last_sync=now)
        self.last_sync_time = now
        return result

    async def _sync_room(self, client: PmsClient, room_number: str, result: SyncResult) -> None:
        key = f"{ROOM_CACHE_PREFIX}{room_number}"
        cached = await self.cache.get(key)
        if cached is not None:
            snapshot = RoomSnapshot.from_dict(cached)
            result.cache_hits += 1
        else:
            snapshot = await client.fetch_room(room_number)
            await self.cache.set(key, snapshot.to_dict(), self._cache_ttl)
        written = await self.store.apply_room_snapshot(
            room_number, snapshot.guest, snapshot.bills, self._clock()
        )
        if written.guest_changed:
            result.guests_updated += 1
        result.bills_updated += written.bills_written
        result.notifications_generated += await self.notifications.process_guest_checkin_checkout(
            room_number, snapshot.guest
        )

    async def test_connection(self, credentials: Optional[PmsCredentials] = None) -> Dict[str, Any]:
        """Check PMS connectivity with the given or loaded credentials; never persists anything."""

        if credentials is None and self._settings is not None:
            credentials = self._settings.credentials()
        if credentials is None:
            return {"success": False, "error": "PMS configuration not available"}
        try:
            async with self._client(credentials, self._test_timeout) as client:
                info = await client.server_info()
        except PmsError as exc:
            self.logger.warning(
                "PMS connection test failed",
                extra={"base_url": credentials.base_url, "category": exc.category},
            )
            return {
                "success": False,
                "error": exc.message,
                "category": exc.category,
                "details": exc.details,
            }
        return {"success": True, "info": info}

    async def force_sync(self) -> Dict[str, Any]:
        if self._sync_in_progress:
            return {"success": False, "error": "Sync already in progress"}
        if self._settings is None:
            return {"success": False, "error": "PMS not configured"}
        try:
            result = await self.sync()
        except Exception as exc:
            return {"success": False, "error": str(exc) or exc.__class__.__name__}
        return {
            "success": True,
            "message": "Sync completed successfully",
            "lastSyncTime": self._last_sync_iso(),
            "result": result.as_dict() if result else None,
        }

    async def sync_status(self) -> Dict[str, Any]:
        settings = await self.store.settings()
        return {
            "isInitialized": self._settings is not None,
            "syncInProgress": self._sync_in_progress,
            "lastSyncTime": self._last_sync_iso(),
            "connectionStatus": settings.pms_connection_status or "disconnected",
        }

    def _last_sync_iso(self) -> Optional[str]:
        return format_ts(self.last_sync_time) if self.last_sync_time else None
