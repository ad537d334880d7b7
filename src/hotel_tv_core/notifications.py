"""Notification generation, promotion, cleanup and ad hoc fan-out."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

from .db import format_ts, parse_ts, utcnow
from .events import (
    EVENT_NOTIFICATION_GENERATED,
    EVENT_NOTIFICATION_SCHEDULED,
    EVENT_NOTIFICATIONS_SENT,
    EVENT_SCHEDULED_NOTIFICATIONS_PROCESSED,
    Broadcaster,
)
from .logging import get_logger
from .metrics import record_notifications_created
from .store import DeviceRow, GuestRecord, HotelStore, NewNotification

FALLBACK_HOTEL_NAME = "our hotel"

TARGET_ALL_ACTIVE = "all_active"
TARGET_SPECIFIC_ROOMS = "specific_rooms"
TARGET_SPECIFIC_DEVICES = "specific_devices"
TARGET_KINDS = (TARGET_ALL_ACTIVE, TARGET_SPECIFIC_ROOMS, TARGET_SPECIFIC_DEVICES)

SENDABLE_TYPES = ("manual", "system")


def welcome_message(guest_name: str, hotel_name: str) -> Tuple[str, str]:
    return (
        "Welcome",
        f"Welcome {guest_name}, we hope you enjoy your stay at {hotel_name}. "
        "Have a wonderful time!",
    )


def farewell_message(guest_name: str, hotel_name: str) -> Tuple[str, str]:
    return (
        "Thank You",
        f"Thank you for staying with us, {guest_name}! We hope you enjoyed your time at "
        f"{hotel_name} and look forward to seeing you again soon.",
    )


def _clean_values(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    if not values:
        return ()
    cleaned = []
    for value in values:
        text = str(value).strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return tuple(cleaned)


@dataclass(frozen=True)
class NotificationTarget:
    """Which active devices an ad hoc notification fans out to."""

    kind: str = TARGET_ALL_ACTIVE
    rooms: Tuple[str, ...] = ()
    device_ids: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.kind not in TARGET_KINDS:
            raise ValueError(f"Invalid target type: {self.kind}")
        if self.kind == TARGET_SPECIFIC_ROOMS and not self.rooms:
            raise ValueError("target_rooms is required for specific_rooms target type")
        if self.kind == TARGET_SPECIFIC_DEVICES and not self.device_ids:
            raise ValueError("target_devices is required for specific_devices target type")

    @classmethod
    def build(
        cls,
        kind: Optional[str] = None,
        rooms: Optional[Sequence[Any]] = None,
        device_ids: Optional[Sequence[Any]] = None,
    ) -> "NotificationTarget":
        return cls(
            kind=kind or TARGET_ALL_ACTIVE,
            rooms=_clean_values(rooms),
            device_ids=_clean_values(device_ids),
        )


class NotificationEngine:
    """Owns the ``new -> sent -> viewed|dismissed`` notification lifecycle."""

    def __init__(
        self,
        store: HotelStore,
        *,
        hub: Optional[Broadcaster] = None,
        clock: Callable[[], datetime] = utcnow,
        welcome_dedup_hours: int = 24,
        farewell_lead_minutes: int = 15,
        retention_days: int = 7,
    ) -> None:
        self.store = store
        self.hub = hub
        self._clock = clock
        self._welcome_window = timedelta(hours=welcome_dedup_hours)
        self._farewell_lead = timedelta(minutes=farewell_lead_minutes)
        self._retention = timedelta(days=retention_days)
        self.logger = get_logger("hoteltv.notifications")

    def _broadcast(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.hub is not None:
            self.hub.broadcast(event_type, data)

    async def _hotel_name(self) -> str:
        settings = await self.store.settings()
        return settings.hotel_name.strip() or FALLBACK_HOTEL_NAME

    async def process_guest_checkin_checkout(
        self, room_number: str, guest: Optional[GuestRecord]
    ) -> int:
        """Derive welcome/farewell notifications from a guest snapshot.

        Returns the number of notifications created. The check-in instant is
        recorded as seen whether or not anything was generated.
        """

        if guest is None or not guest.guest_name:
            return 0
        now = self._clock()
        check_in = parse_ts(guest.check_in)
        last_seen = parse_ts(await self.store.last_seen_check_in(room_number, guest.guest_name))
        is_new_check_in = check_in is not None and (last_seen is None or check_in > last_seen)

        created = 0
        device = await self.store.first_active_device_for_room(room_number)
        if device is None:
            self.logger.warning(
                "No active device for room; skipping guest notifications",
                extra={"room_number": room_number},
            )
        else:
            hotel_name = await self._hotel_name()
            if is_new_check_in and await self._generate_welcome(device, guest, hotel_name, now):
                created += 1
            check_out = parse_ts(guest.check_out)
            if check_out is not None and await self._schedule_farewell(
                device, guest, check_out, hotel_name, now
            ):
                created += 1

        if check_in is not None:
            await self.store.record_seen_check_in(
                room_number, guest.guest_name, format_ts(check_in), now
            )
        return created

    async def _generate_welcome(
        self, device: DeviceRow, guest: GuestRecord, hotel_name: str, now: datetime
    ) -> bool:
        if await self.store.welcome_exists(
            device.device_id, guest.guest_name, since=now - self._welcome_window
        ):
            self.logger.debug(
                "Welcome notification already exists",
                extra={"room_number": device.room_number, "guest_name": guest.guest_name},
            )
            return False
        title, body = welcome_message(guest.guest_name, hotel_name)
        [notification_id] = await self.store.create_notifications(
            [
                NewNotification(
                    device_id=device.device_id,
                    room_number=device.room_number,
                    title=title,
                    body=body,
                    notification_type="welcome",
                    guest_name=guest.guest_name,
                )
            ],
            now,
        )
        record_notifications_created("welcome")
        self.logger.info(
            "Welcome notification generated",
            extra={"room_number": device.room_number, "guest_name": guest.guest_name},
        )
        self._broadcast(
            EVENT_NOTIFICATION_GENERATED,
            {
                "type": "welcome",
                "notification_id": notification_id,
                "device_id": device.device_id,
                "room_number": device.room_number,
                "guest_name": guest.guest_name,
            },
        )
        return True

    async def _schedule_farewell(
        self,
        device: DeviceRow,
        guest: GuestRecord,
        check_out: datetime,
        hotel_name: str,
        now: datetime,
    ) -> bool:
        farewell_at = check_out - self._farewell_lead
        if farewell_at <= now:
            self.logger.debug(
                "Farewell time already passed",
                extra={"room_number": device.room_number, "guest_name": guest.guest_name},
            )
            return False
        if await self.store.scheduled_farewell_exists(device.device_id, guest.guest_name):
            self.logger.debug(
                "Farewell notification already scheduled",
                extra={"room_number": device.room_number, "guest_name": guest.guest_name},
            )
            return False
        title, body = farewell_message(guest.guest_name, hotel_name)
        [notification_id] = await self.store.create_notifications(
            [
                NewNotification(
                    device_id=device.device_id,
                    room_number=device.room_number,
                    title=title,
                    body=body,
                    notification_type="farewell",
                    guest_name=guest.guest_name,
                    scheduled_for=farewell_at,
                )
            ],
            now,
        )
        record_notifications_created("farewell")
        self.logger.info(
            "Farewell notification scheduled",
            extra={
                "room_number": device.room_number,
                "guest_name": guest.guest_name,
                "scheduled_for": format_ts(farewell_at),
            },
        )
        self._broadcast(
            EVENT_NOTIFICATION_SCHEDULED,
            {
                "type": "farewell",
                "notification_id": notification_id,
                "device_id": device.device_id,
                "room_number": device.room_number,
                "guest_name": guest.guest_name,
                "scheduled_for": format_ts(farewell_at),
            },
        )
        return True

    async def process_scheduled_notifications(self) -> int:
        """Make every scheduled notification whose time has come deliverable."""

        promoted = await self.store.promote_scheduled(self._clock())
        if promoted:
            self.logger.info("Processed scheduled notifications", extra={"count": promoted})
            self._broadcast(EVENT_SCHEDULED_NOTIFICATIONS_PROCESSED, {"count": promoted})
        return promoted

    async def cleanup_old_notifications(self) -> int:
        removed = await self.store.delete_terminal_before(self._clock() - self._retention)
        if removed:
            self.logger.info("Cleaned up old notifications", extra={"count": removed})
        return removed

    async def send_notification(
        self,
        title: str,
        body: str,
        target: Optional[NotificationTarget] = None,
        *,
        notification_type: str = "manual",
        scheduled_for: Optional[datetime] = None,
    ) -> int:
        """Create one notification per targeted active device; returns the count."""

        title = (title or "").strip()
        body = (body or "").strip()
        if not title or not body:
            raise ValueError("title and body are required")
        if notification_type not in SENDABLE_TYPES:
            raise ValueError(f"notification_type must be one of {', '.join(SENDABLE_TYPES)}")
        target = target or NotificationTarget()
        now = self._clock()
        if scheduled_for is not None and scheduled_for <= now:
            scheduled_for = None

        if target.kind == TARGET_SPECIFIC_ROOMS:
            devices = await self.store.active_devices(rooms=target.rooms)
        elif target.kind == TARGET_SPECIFIC_DEVICES:
            devices = await self.store.active_devices(device_ids=target.device_ids)
        else:
            devices = await self.store.active_devices()
        if not devices:
            self.logger.info("No active devices matched notification target", extra={"target": target.kind})
            return 0

        ids = await self.store.create_notifications(
            [
                NewNotification(
                    device_id=device.device_id,
                    room_number=device.room_number,
                    title=title,
                    body=body,
                    notification_type=notification_type,
                    scheduled_for=scheduled_for,
                )
                for device in devices
            ],
            now,
        )
        record_notifications_created(notification_type, len(ids))
        self.logger.info(
            "Notifications sent",
            extra={"count": len(ids), "type": notification_type, "target": target.kind},
        )
        self._broadcast(
            EVENT_NOTIFICATIONS_SENT,
            {
                "type": notification_type,
                "title": title,
                "count": len(ids),
                "target": target.kind,
                "scheduled_for": format_ts(scheduled_for) if scheduled_for else None,
            },
        )
        return len(ids)

    async def send_system_notification(
        self, title: str, body: str, target: Optional[NotificationTarget] = None
    ) -> int:
        return await self.send_notification(title, body, target, notification_type="system")

    async def notification_stats(self) -> Dict[str, Any]:
        return await self.store.notification_stats(self._clock())
