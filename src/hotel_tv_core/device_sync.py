"""Device-facing pull protocol: sync, acknowledgements and evacuation clear."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .cache import TtlCache
from .db import DEFAULT_HOTEL_NAME, utcnow
from .events import (
    EVENT_DEVICE_REGISTERED,
    EVENT_DEVICE_SYNCED,
    EVENT_DEVICE_UPDATED,
    EVENT_NOTIFICATION_STATUS_UPDATED,
    TOPIC_DEVICE_SYNC,
    Broadcaster,
)
from .logging import get_logger
from .metrics import record_device_sync, record_notifications_delivered
from .store import ACK_STATUSES, ACK_UPDATED, UNSET, DeviceRow, HotelStore, NotificationRow

INACTIVE_MESSAGE = "device registered, admin must activate and assign room number"
SYNC_CACHE_PREFIX = "device_sync:"


def inactive_payload(device_id: str) -> Dict[str, Any]:
    return {"status": "inactive", "device_id": device_id, "message": INACTIVE_MESSAGE}


def _notification_payload(row: NotificationRow) -> Dict[str, Any]:
    return {
        "id": row.id,
        "title": row.title,
        "body": row.body,
        "notification_type": row.notification_type,
        "guest_name": row.guest_name,
        "status": row.status,
        "created_at": row.created_at,
    }


def _require_device_id(device_id: Optional[str]) -> str:
    value = (device_id or "").strip() if isinstance(device_id, str) else ""
    if not value:
        raise ValueError("device_id is required")
    return value


class DeviceSyncService:
    """Serves the two sync response shapes and records device acknowledgements."""

    def __init__(
        self,
        store: HotelStore,
        cache: TtlCache,
        *,
        hub: Optional[Broadcaster] = None,
        clock: Callable[[], datetime] = utcnow,
        cache_ttl: float = 300.0,
    ) -> None:
        self.store = store
        self.cache = cache
        self.hub = hub
        self._clock = clock
        self._cache_ttl = cache_ttl
        self.logger = get_logger("hoteltv.devices")

    def _broadcast(
        self, event_type: str, data: Dict[str, Any], topic: Optional[str] = None
    ) -> None:
        if self.hub is not None:
            self.hub.broadcast(event_type, data, topic)

    async def sync(self, device_id: Optional[str]) -> Dict[str, Any]:
        device_id = _require_device_id(device_id)
        now = self._clock()
        device, created = await self.store.record_sync(device_id, now)
        if created:
            self._broadcast(
                EVENT_DEVICE_REGISTERED,
                {"device_id": device_id, "status": device.status, "created_at": device.created_at},
            )
        if not device.is_active:
            record_device_sync("inactive")
            return inactive_payload(device_id)

        payload = await self._build_payload(device, now)
        await self.cache.set(f"{SYNC_CACHE_PREFIX}{device_id}", payload, self._cache_ttl)
        record_device_sync("active")
        self.logger.info(
            "Device sync successful",
            extra={"device_id": device_id, "notifications": len(payload["notifications"])},
        )
        self._broadcast(
            EVENT_DEVICE_SYNCED,
            {
                "device_id": device_id,
                "room_number": device.room_number,
                "notifications": len(payload["notifications"]),
            },
            topic=TOPIC_DEVICE_SYNC,
        )
        return payload

    async def _build_payload(self, device: DeviceRow, now: datetime) -> Dict[str, Any]:
        room_number = device.room_number
        if room_number is None:
            raise RuntimeError(f"Active device {device.device_id} has no room assigned")
        settings = await self.store.settings()
        guest = await self.store.guest_stay(room_number)
        bills = await self.store.bills(room_number)
        media = await self.store.media_content(device.assigned_bundle_id)
        apps = await self.store.allowed_apps()
        # Delivery runs last so a failed lookup above leaves notifications untouched.
        notifications, delivered = await self.store.deliver_notifications(device.device_id, now)
        record_notifications_delivered(delivered)
        return {
            "device_id": device.device_id,
            "room_number": room_number,
            "status": device.status,
            "hotel_info": {
                "name": settings.hotel_name or DEFAULT_HOTEL_NAME,
                "logo_url": settings.logo_url,
            },
            "guest_data": (
                {
                    "guest_name": guest.guest_name,
                    "check_in": guest.check_in,
                    "check_out": guest.check_out,
                }
                if guest
                else None
            ),
            "bills": bills,
            "media_content": media,
            "allowed_apps": apps,
            "notifications": [_notification_payload(row) for row in notifications],
            "is_room_evacuated": device.is_room_evacuated,
            "sync_timestamp": now.isoformat(),
        }

    async def update_notification_status(
        self, device_id: Optional[str], notification_id: Any, status: Optional[str]
    ) -> str:
        """Acknowledge a delivered notification.

        Returns one of the store's ``ACK_*`` outcomes; a notification that does
        not belong to the device reports not found.
        """

        device_id = _require_device_id(device_id)
        if notification_id is None or isinstance(notification_id, bool):
            raise ValueError("notification_id is required")
        try:
            notification_id = int(notification_id)
        except (TypeError, ValueError) as exc:
            raise ValueError("notification_id must be an integer") from exc
        if status not in ACK_STATUSES:
            raise ValueError("Status must be viewed or dismissed")
        outcome = await self.store.acknowledge(device_id, notification_id, status, self._clock())
        if outcome == ACK_UPDATED:
            self.logger.info(
                "Notification acknowledged",
                extra={"device_id": device_id, "notification_id": notification_id, "status": status},
            )
            self._broadcast(
                EVENT_NOTIFICATION_STATUS_UPDATED,
                {"notification_id": notification_id, "device_id": device_id, "status": status},
            )
        return outcome

    async def clear_evacuation(self, device_id: Optional[str]) -> Optional[DeviceRow]:
        device_id = _require_device_id(device_id)
        device = await self.store.clear_evacuation(device_id)
        if device is None:
            return None
        self.logger.info("Evacuation status cleared", extra={"device_id": device_id})
        self._broadcast(
            EVENT_DEVICE_UPDATED,
            {"device_id": device_id, "is_room_evacuated": False},
        )
        return device

    async def admin_update(
        self,
        device_id: str,
        *,
        room_number: Any = UNSET,
        status: Optional[str] = None,
        assigned_bundle_id: Any = UNSET,
        is_room_evacuated: Optional[bool] = None,
    ) -> Optional[DeviceRow]:
        """Apply an admin edit and drop the device's cached sync payload."""

        device = await self.store.update_device(
            device_id,
            room_number=room_number,
            status=status,
            assigned_bundle_id=assigned_bundle_id,
            is_room_evacuated=is_room_evacuated,
            now=self._clock(),
        )
        if device is None:
            return None
        await self.cache.delete(f"{SYNC_CACHE_PREFIX}{device_id}")
        self._broadcast(
            EVENT_DEVICE_UPDATED,
            {
                "device_id": device.device_id,
                "room_number": device.room_number,
                "status": device.status,
                "assigned_bundle_id": device.assigned_bundle_id,
                "is_room_evacuated": device.is_room_evacuated,
            },
        )
        return device

    async def cached_response(self, device_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get(f"{SYNC_CACHE_PREFIX}{device_id}")
