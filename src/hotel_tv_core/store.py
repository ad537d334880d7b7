"""Relational persistence for devices, guests, notifications and settings."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .db import DEFAULT_INTEGRITY_CHECK_INTERVAL, DatabaseManager, format_ts
from .logging import get_logger

DEVICE_STATUSES = ("inactive", "active")
NOTIFICATION_TYPES = ("welcome", "farewell", "manual", "system")
NOTIFICATION_STATUSES = ("new", "sent", "viewed", "dismissed")
ACK_STATUSES = ("viewed", "dismissed")
CONNECTION_STATUSES = ("disconnected", "connected", "error", "failed")

ACK_UPDATED = "updated"
ACK_UNCHANGED = "unchanged"
ACK_NOT_FOUND = "not_found"

_SETTINGS_FIELDS = (
    "hotel_name",
    "logo_url",
    "pms_base_url",
    "pms_api_key",
    "pms_username",
    "pms_password_hash",
)

_DEVICE_COLUMNS = """
    id,
    device_id,
    room_number,
    status,
    is_online,
    last_sync,
    assigned_bundle_id,
    is_room_evacuated,
    created_at,
    updated_at
"""

_NOTIFICATION_COLUMNS = """
    id,
    device_id,
    room_number,
    title,
    body,
    notification_type,
    guest_name,
    status,
    scheduled_for,
    created_at,
    sent_at,
    viewed_at,
    dismissed_at
"""


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@dataclass(frozen=True)
class SettingsRow:
    """Singleton system settings row."""

    id: int
    hotel_name: str
    logo_url: Optional[str]
    admin_username: str
    pms_base_url: Optional[str]
    pms_api_key: Optional[str]
    pms_username: Optional[str]
    pms_password_hash: Optional[str]
    pms_connection_status: str
    pms_last_sync: Optional[str]


@dataclass(frozen=True)
class AdminRow:
    id: int
    username: str


@dataclass(frozen=True)
class DeviceRow:
    """Guest-room device as stored."""

    id: int
    device_id: str
    room_number: Optional[str]
    status: str
    is_online: bool
    last_sync: Optional[str]
    assigned_bundle_id: Optional[int]
    is_room_evacuated: bool
    created_at: str
    updated_at: str

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class GuestStayRow:
    room_number: str
    guest_name: str
    check_in: Optional[str]
    check_out: Optional[str]
    last_pms_sync: Optional[str]


@dataclass(frozen=True)
class GuestRecord:
    """Guest occupancy data written by the reconciliation sweep."""

    guest_name: str
    check_in: Optional[str]
    check_out: Optional[str]


@dataclass(frozen=True)
class BillRecord:
    label: str
    amount: float
    bill_date: Optional[str]


@dataclass(frozen=True)
class RoomWriteResult:
    guest_changed: bool
    bills_written: int


@dataclass(frozen=True)
class NewNotification:
    """Notification to be inserted in the ``new`` state."""

    device_id: str
    room_number: Optional[str]
    title: str
    body: str
    notification_type: str
    guest_name: Optional[str] = None
    scheduled_for: Optional[datetime] = None


@dataclass(frozen=True)
class NotificationRow:
    id: int
    device_id: str
    room_number: Optional[str]
    title: str
    body: str
    notification_type: str
    guest_name: Optional[str]
    status: str
    scheduled_for: Optional[str]
    created_at: str
    sent_at: Optional[str]
    viewed_at: Optional[str]
    dismissed_at: Optional[str]


class HotelStore:
    """SQLite-backed persistence shared by every core component."""

    def __init__(
        self,
        db_path: Path,
        *,
        integrity_check_interval: float = DEFAULT_INTEGRITY_CHECK_INTERVAL,
    ) -> None:
        self.db = DatabaseManager(db_path, integrity_check_interval=integrity_check_interval)
        self.logger = get_logger("hoteltv.store")

    async def start(self) -> None:
        await self.db.start_integrity_checks()

    async def stop(self) -> None:
        await self.db.close()

    async def ping(self) -> bool:
        return await self.db.run(lambda conn: conn.execute("SELECT 1").fetchone()[0] == 1)

    # Settings

    async def settings(self) -> SettingsRow:
        return await self.db.run(self._settings)

    def _settings(self, conn: sqlite3.Connection) -> SettingsRow:
        row = conn.execute(
            """
            SELECT
                id,
                hotel_name,
                logo_url,
                admin_username,
                pms_base_url,
                pms_api_key,
                pms_username,
                pms_password_hash,
                pms_connection_status,
                pms_last_sync
            FROM system_settings
            ORDER BY id ASC
            LIMIT 1
            """
        ).fetchone()
        if row is None:
            raise LookupError("System settings row is missing; run migrations first.")
        return SettingsRow(
            id=int(row["id"]),
            hotel_name=row["hotel_name"] or "",
            logo_url=row["logo_url"],
            admin_username=row["admin_username"],
            pms_base_url=row["pms_base_url"],
            pms_api_key=row["pms_api_key"],
            pms_username=row["pms_username"],
            pms_password_hash=row["pms_password_hash"],
            pms_connection_status=row["pms_connection_status"],
            pms_last_sync=row["pms_last_sync"],
        )

    async def update_settings(self, **changes: Optional[str]) -> SettingsRow:
        unknown = set(changes) - set(_SETTINGS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown settings fields: {', '.join(sorted(unknown))}")
        return await self.db.run(lambda conn: self._update_settings(conn, changes))

    def _update_settings(
        self, conn: sqlite3.Connection, changes: Mapping[str, Optional[str]]
    ) -> SettingsRow:
        current = self._settings(conn)
        if changes:
            assignments = ", ".join(f"{key} = ?" for key in changes)
            conn.execute(
                f"""
                UPDATE system_settings
                SET {assignments}, updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
                WHERE id = ?
                """,
                (*changes.values(), current.id),
            )
            conn.commit()
            self.logger.info("Updated system settings", extra={"fields": sorted(changes)})
        return self._settings(conn)

    async def set_pms_connection_status(
        self, status: str, last_sync: Optional[datetime] = None
    ) -> None:
        if status not in CONNECTION_STATUSES:
            raise ValueError(f"Invalid PMS connection status: {status}")
        await self.db.run(lambda conn: self._set_pms_connection_status(conn, status, last_sync))

    def _set_pms_connection_status(
        self, conn: sqlite3.Connection, status: str, last_sync: Optional[datetime]
    ) -> None:
        conn.execute(
            """
            UPDATE system_settings
            SET
                pms_connection_status = ?,
                pms_last_sync = COALESCE(?, pms_last_sync)
            """,
            (status, format_ts(last_sync) if last_sync else None),
        )
        conn.commit()

    async def admin_identity(self, admin_id: int) -> Optional[AdminRow]:
        return await self.db.run(lambda conn: self._admin_identity(conn, admin_id))

    def _admin_identity(self, conn: sqlite3.Connection, admin_id: int) -> Optional[AdminRow]:
        row = conn.execute(
            "SELECT id, admin_username FROM system_settings WHERE id = ?",
            (admin_id,),
        ).fetchone()
        if not row:
            return None
        return AdminRow(id=int(row["id"]), username=row["admin_username"])

    # Devices

    async def device(self, device_id: str) -> Optional[DeviceRow]:
        return await self.db.run(lambda conn: self._device(conn, device_id))

    def _device(self, conn: sqlite3.Connection, device_id: str) -> Optional[DeviceRow]:
        row = conn.execute(
            f"SELECT {_DEVICE_COLUMNS} FROM devices WHERE device_id = ?",
            (device_id,),
        ).fetchone()
        if not row:
            return None
        return self._row_to_device(row)

    async def record_sync(self, device_id: str, now: datetime) -> Tuple[DeviceRow, bool]:
        """Register an unknown device or heartbeat a known one.

        Returns the stored device and whether this call created it. New
        devices start inactive; both paths mark the device online.
        """

        return await self.db.run(lambda conn: self._record_sync(conn, device_id, now))

    def _record_sync(
        self, conn: sqlite3.Connection, device_id: str, now: datetime
    ) -> Tuple[DeviceRow, bool]:
        stamp = format_ts(now)
        cursor = conn.execute(
            """
            INSERT INTO devices (device_id, status, is_online, last_sync, created_at, updated_at)
            VALUES (?, 'inactive', 1, ?, ?, ?)
            ON CONFLICT(device_id) DO NOTHING
            """,
            (device_id, stamp, stamp, stamp),
        )
        created = cursor.rowcount == 1
        if not created:
            conn.execute(
                "UPDATE devices SET last_sync = ?, is_online = 1 WHERE device_id = ?",
                (stamp, device_id),
            )
        conn.commit()
        device = self._device(conn, device_id)
        if device is None:
            raise RuntimeError(f"Device {device_id} missing right after sync upsert")
        if created:
            self.logger.info("Registered new device", extra={"device_id": device_id})
        return device, created

    async def update_device(
        self,
        device_id: str,
        *,
        room_number: Any = UNSET,
        status: Optional[str] = None,
        assigned_bundle_id: Any = UNSET,
        is_room_evacuated: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> Optional[DeviceRow]:
        """Apply an admin edit; ``UNSET`` leaves a nullable field untouched."""

        if status is not None and status not in DEVICE_STATUSES:
            raise ValueError(f"status must be one of {', '.join(DEVICE_STATUSES)}")
        return await self.db.run(
            lambda conn: self._update_device(
                conn, device_id, room_number, status, assigned_bundle_id, is_room_evacuated, now
            )
        )

    def _update_device(
        self,
        conn: sqlite3.Connection,
        device_id: str,
        room_number: Any,
        status: Optional[str],
        assigned_bundle_id: Any,
        is_room_evacuated: Optional[bool],
        now: Optional[datetime],
    ) -> Optional[DeviceRow]:
        current = self._device(conn, device_id)
        if current is None:
            return None
        new_room = current.room_number if room_number is UNSET else room_number
        if isinstance(new_room, str):
            new_room = new_room.strip() or None
        new_status = status or current.status
        if new_status == "active" and new_room is None:
            raise ValueError("An active device must be assigned to a room")
        new_bundle = current.assigned_bundle_id if assigned_bundle_id is UNSET else assigned_bundle_id
        if new_bundle is not None:
            bundle = conn.execute(
                "SELECT 1 FROM media_bundles WHERE id = ?", (new_bundle,)
            ).fetchone()
            if not bundle:
                raise ValueError(f"Unknown media bundle: {new_bundle}")
        evacuated = current.is_room_evacuated if is_room_evacuated is None else is_room_evacuated
        conn.execute(
            """
            UPDATE devices
            SET
                room_number = ?,
                status = ?,
                assigned_bundle_id = ?,
                is_room_evacuated = ?,
                updated_at = COALESCE(?, strftime('%Y-%m-%d %H:%M:%f', 'now'))
            WHERE device_id = ?
            """,
            (
                new_room,
                new_status,
                new_bundle,
                int(evacuated),
                format_ts(now) if now else None,
                device_id,
            ),
        )
        conn.commit()
        self.logger.info(
            "Updated device",
            extra={"device_id": device_id, "room_number": new_room, "status": new_status},
        )
        return self._device(conn, device_id)

    async def clear_evacuation(self, device_id: str) -> Optional[DeviceRow]:
        return await self.db.run(lambda conn: self._clear_evacuation(conn, device_id))

    def _clear_evacuation(self, conn: sqlite3.Connection, device_id: str) -> Optional[DeviceRow]:
        cursor = conn.execute(
            "UPDATE devices SET is_room_evacuated = 0 WHERE device_id = ?",
            (device_id,),
        )
        conn.commit()
        if cursor.rowcount == 0:
            return None
        return self._device(conn, device_id)

    async def active_rooms(self) -> List[str]:
        return await self.db.run(self._active_rooms)

    def _active_rooms(self, conn: sqlite3.Connection) -> List[str]:
        rows = conn.execute(
            """
            SELECT DISTINCT room_number
            FROM devices
            WHERE status = 'active' AND room_number IS NOT NULL
            ORDER BY room_number ASC
            """
        ).fetchall()
        return [row["room_number"] for row in rows]

    async def active_devices(
        self,
        *,
        rooms: Optional[Sequence[str]] = None,
        device_ids: Optional[Sequence[str]] = None,
    ) -> List[DeviceRow]:
        """Active devices, optionally restricted to rooms and/or device ids."""

        return await self.db.run(lambda conn: self._active_devices(conn, rooms, device_ids))

    def _active_devices(
        self,
        conn: sqlite3.Connection,
        rooms: Optional[Sequence[str]],
        device_ids: Optional[Sequence[str]],
    ) -> List[DeviceRow]:
        clauses = ["status = 'active'"]
        params: List[Any] = []
        if rooms is not None:
            if not rooms:
                return []
            clauses.append(f"room_number IN ({', '.join('?' for _ in rooms)})")
            params.extend(rooms)
        if device_ids is not None:
            if not device_ids:
                return []
            clauses.append(f"device_id IN ({', '.join('?' for _ in device_ids)})")
            params.extend(device_ids)
        rows = conn.execute(
            f"""
            SELECT {_DEVICE_COLUMNS}
            FROM devices
            WHERE {' AND '.join(clauses)}
            ORDER BY id ASC
            """,
            params,
        ).fetchall()
        return [self._row_to_device(row) for row in rows]

    async def first_active_device_for_room(self, room_number: str) -> Optional[DeviceRow]:
        devices = await self.active_devices(rooms=[room_number])
        return devices[0] if devices else None

    async def mark_offline_devices(self, cutoff: datetime) -> int:
        """Flip ``is_online`` off for devices that have not synced since ``cutoff``."""

        return await self.db.run(lambda conn: self._mark_offline_devices(conn, cutoff))

    def _mark_offline_devices(self, conn: sqlite3.Connection, cutoff: datetime) -> int:
        cursor = conn.execute(
            """
            UPDATE devices
            SET is_online = 0
            WHERE is_online = 1
              AND (last_sync IS NULL OR last_sync < ?)
            """,
            (format_ts(cutoff),),
        )
        conn.commit()
        if cursor.rowcount:
            self.logger.info(
                "Marked devices offline",
                extra={"count": cursor.rowcount, "cutoff": format_ts(cutoff)},
            )
        return cursor.rowcount

    async def device_counts(self) -> Dict[str, int]:
        return await self.db.run(self._device_counts)

    def _device_counts(self, conn: sqlite3.Connection) -> Dict[str, int]:
        row = conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END) AS active,
                SUM(CASE WHEN is_online = 1 THEN 1 ELSE 0 END) AS online,
                SUM(CASE WHEN is_online = 0 THEN 1 ELSE 0 END) AS offline,
                SUM(CASE WHEN status = 'active' AND is_online = 0 THEN 1 ELSE 0 END)
                    AS active_offline
            FROM devices
            """
        ).fetchone()
        total = int(row["total"] or 0)
        active = int(row["active"] or 0)
        return {
            "total": total,
            "active": active,
            "inactive": total - active,
            "online": int(row["online"] or 0),
            "offline": int(row["offline"] or 0),
            "active_offline": int(row["active_offline"] or 0),
        }

    # Guests and bills

    async def guest_stay(self, room_number: str) -> Optional[GuestStayRow]:
        return await self.db.run(lambda conn: self._guest_stay(conn, room_number))

    def _guest_stay(self, conn: sqlite3.Connection, room_number: str) -> Optional[GuestStayRow]:
        row = conn.execute(
            """
            SELECT room_number, guest_name, check_in, check_out, last_pms_sync
            FROM guest_stays
            WHERE room_number = ?
            ORDER BY id DESC
            LIMIT 1
            """,
            (room_number,),
        ).fetchone()
        if not row:
            return None
        return GuestStayRow(
            room_number=row["room_number"],
            guest_name=row["guest_name"],
            check_in=row["check_in"],
            check_out=row["check_out"],
            last_pms_sync=row["last_pms_sync"],
        )

    async def apply_room_snapshot(
        self,
        room_number: str,
        guest: Optional[GuestRecord],
        bills: Sequence[BillRecord],
        now: datetime,
    ) -> RoomWriteResult:
        """Replace a room's guest stay and bills in a single transaction.

        ``guest=None`` deletes the stay; bills are always fully replaced.
        """

        return await self.db.run(
            lambda conn: self._apply_room_snapshot(conn, room_number, guest, bills, now)
        )

    def _apply_room_snapshot(
        self,
        conn: sqlite3.Connection,
        room_number: str,
        guest: Optional[GuestRecord],
        bills: Sequence[BillRecord],
        now: datetime,
    ) -> RoomWriteResult:
        stamp = format_ts(now)
        current = self._guest_stay(conn, room_number)
        with conn:
            if guest is None:
                guest_changed = current is not None
                conn.execute("DELETE FROM guest_stays WHERE room_number = ?", (room_number,))
            else:
                guest_changed = current is None or (
                    current.guest_name,
                    current.check_in,
                    current.check_out,
                ) != (guest.guest_name, guest.check_in, guest.check_out)
                if guest_changed:
                    conn.execute("DELETE FROM guest_stays WHERE room_number = ?", (room_number,))
                    conn.execute(
                        """
                        INSERT INTO guest_stays
                            (room_number, guest_name, check_in, check_out, last_pms_sync)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (room_number, guest.guest_name, guest.check_in, guest.check_out, stamp),
                    )
                else:
                    conn.execute(
                        "UPDATE guest_stays SET last_pms_sync = ? WHERE room_number = ?",
                        (stamp, room_number),
                    )
            conn.execute("DELETE FROM bills WHERE room_number = ?", (room_number,))
            conn.executemany(
                """
                INSERT INTO bills (room_number, label, amount, bill_date)
                VALUES (?, ?, ?, ?)
                """,
                [(room_number, bill.label, bill.amount, bill.bill_date) for bill in bills],
            )
        return RoomWriteResult(guest_changed=guest_changed, bills_written=len(bills))

    async def bills(self, room_number: str) -> List[Dict[str, Any]]:
        return await self.db.run(lambda conn: self._bills(conn, room_number))

    def _bills(self, conn: sqlite3.Connection, room_number: str) -> List[Dict[str, Any]]:
        rows = conn.execute(
            """
            SELECT label, amount, bill_date
            FROM bills
            WHERE room_number = ?
            ORDER BY bill_date DESC, id ASC
            """,
            (room_number,),
        ).fetchall()
        return [
            {"label": row["label"], "amount": float(row["amount"]), "bill_date": row["bill_date"]}
            for row in rows
        ]

    # Catalogs

    async def media_content(self, bundle_id: Optional[int]) -> List[Dict[str, Any]]:
        if bundle_id is None:
            return []
        return await self.db.run(lambda conn: self._media_content(conn, bundle_id))

    def _media_content(self, conn: sqlite3.Connection, bundle_id: int) -> List[Dict[str, Any]]:
        rows = conn.execute(
            """
            SELECT type, content_url, title, order_index
            FROM media_content
            WHERE bundle_id = ?
            ORDER BY order_index ASC, id ASC
            """,
            (bundle_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    async def add_media_content(
        self,
        bundle_id: int,
        *,
        title: str,
        content_type: str,
        content_url: str,
        order_index: int = 0,
    ) -> int:
        return await self.db.run(
            lambda conn: self._add_media_content(
                conn, bundle_id, title, content_type, content_url, order_index
            )
        )

    def _add_media_content(
        self,
        conn: sqlite3.Connection,
        bundle_id: int,
        title: str,
        content_type: str,
        content_url: str,
        order_index: int,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO media_content (bundle_id, title, type, content_url, order_index)
            VALUES (?, ?, ?, ?, ?)
            """,
            (bundle_id, title, content_type, content_url, order_index),
        )
        conn.commit()
        return int(cursor.lastrowid)

    async def default_bundle_id(self) -> Optional[int]:
        return await self.db.run(self._default_bundle_id)

    def _default_bundle_id(self, conn: sqlite3.Connection) -> Optional[int]:
        row = conn.execute(
            "SELECT id FROM media_bundles WHERE is_default = 1 ORDER BY id ASC LIMIT 1"
        ).fetchone()
        return int(row["id"]) if row else None

    async def allowed_apps(self) -> List[Dict[str, Any]]:
        return await self.db.run(self._allowed_apps)

    def _allowed_apps(self, conn: sqlite3.Connection) -> List[Dict[str, Any]]:
        rows = conn.execute(
            """
            SELECT name, package_name, apk_url, app_logo_url
            FROM apps
            WHERE is_allowed = 1
            ORDER BY sort_order ASC, id ASC
            """
        ).fetchall()
        return [dict(row) for row in rows]

    # Notifications

    async def create_notifications(
        self, items: Sequence[NewNotification], now: datetime
    ) -> List[int]:
        if not items:
            return []
        return await self.db.run(lambda conn: self._create_notifications(conn, items, now))

    def _create_notifications(
        self, conn: sqlite3.Connection, items: Sequence[NewNotification], now: datetime
    ) -> List[int]:
        stamp = format_ts(now)
        ids: List[int] = []
        with conn:
            for item in items:
                if item.notification_type not in NOTIFICATION_TYPES:
                    raise ValueError(f"Invalid notification type: {item.notification_type}")
                cursor = conn.execute(
                    """
                    INSERT INTO notifications (
                        device_id,
                        room_number,
                        title,
                        body,
                        notification_type,
                        guest_name,
                        status,
                        scheduled_for,
                        created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, 'new', ?, ?)
                    """,
                    (
                        item.device_id,
                        item.room_number,
                        item.title,
                        item.body,
                        item.notification_type,
                        item.guest_name,
                        format_ts(item.scheduled_for) if item.scheduled_for else None,
                        stamp,
                    ),
                )
                ids.append(int(cursor.lastrowid))
        return ids

    async def notification(self, notification_id: int) -> Optional[NotificationRow]:
        return await self.db.run(lambda conn: self._notification(conn, notification_id))

    def _notification(
        self, conn: sqlite3.Connection, notification_id: int
    ) -> Optional[NotificationRow]:
        row = conn.execute(
            f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE id = ?",
            (notification_id,),
        ).fetchone()
        if not row:
            return None
        return self._row_to_notification(row)

    async def notifications(
        self,
        *,
        device_id: Optional[str] = None,
        notification_type: Optional[str] = None,
    ) -> List[NotificationRow]:
        return await self.db.run(
            lambda conn: self._notifications(conn, device_id, notification_type)
        )

    def _notifications(
        self,
        conn: sqlite3.Connection,
        device_id: Optional[str],
        notification_type: Optional[str],
    ) -> List[NotificationRow]:
        clauses: List[str] = []
        params: List[Any] = []
        if device_id is not None:
            clauses.append("device_id = ?")
            params.append(device_id)
        if notification_type is not None:
            clauses.append("notification_type = ?")
            params.append(notification_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = conn.execute(
            f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications {where} ORDER BY id ASC",
            params,
        ).fetchall()
        return [self._row_to_notification(row) for row in rows]

    async def welcome_exists(self, device_id: str, guest_name: str, since: datetime) -> bool:
        return await self.db.run(
            lambda conn: conn.execute(
                """
                SELECT 1 FROM notifications
                WHERE device_id = ?
                  AND guest_name = ?
                  AND notification_type = 'welcome'
                  AND created_at > ?
                LIMIT 1
                """,
                (device_id, guest_name, format_ts(since)),
            ).fetchone()
            is not None
        )

    async def scheduled_farewell_exists(self, device_id: str, guest_name: str) -> bool:
        return await self.db.run(
            lambda conn: conn.execute(
                """
                SELECT 1 FROM notifications
                WHERE device_id = ?
                  AND guest_name = ?
                  AND notification_type = 'farewell'
                  AND scheduled_for IS NOT NULL
                LIMIT 1
                """,
                (device_id, guest_name),
            ).fetchone()
            is not None
        )

    async def deliver_notifications(
        self, device_id: str, now: datetime
    ) -> Tuple[List[NotificationRow], int]:
        """Return the device's deliverable notifications, moving ``new`` ones to ``sent``.

        Deliverable means ``new`` with no pending schedule, or already ``sent``
        but not yet acknowledged. The returned rows reflect the post-update
        state; the second element counts rows moved out of ``new``.
        """

        return await self.db.run(lambda conn: self._deliver_notifications(conn, device_id, now))

    def _deliver_notifications(
        self, conn: sqlite3.Connection, device_id: str, now: datetime
    ) -> Tuple[List[NotificationRow], int]:
        query = f"""
            SELECT {_NOTIFICATION_COLUMNS}
            FROM notifications
            WHERE device_id = ?
              AND (
                (status = 'new' AND scheduled_for IS NULL)
                OR status = 'sent'
              )
            ORDER BY created_at DESC, id DESC
        """
        rows = conn.execute(query, (device_id,)).fetchall()
        fresh_ids = [int(row["id"]) for row in rows if row["status"] == "new"]
        delivered = 0
        if fresh_ids:
            cursor = conn.execute(
                f"""
                UPDATE notifications
                SET status = 'sent', sent_at = ?
                WHERE id IN ({', '.join('?' for _ in fresh_ids)})
                  AND status = 'new'
                  AND scheduled_for IS NULL
                """,
                (format_ts(now), *fresh_ids),
            )
            conn.commit()
            delivered = cursor.rowcount
            rows = conn.execute(
                f"""
                SELECT {_NOTIFICATION_COLUMNS}
                FROM notifications
                WHERE id IN ({', '.join('?' for _ in rows)})
                ORDER BY created_at DESC, id DESC
                """,
                [int(row["id"]) for row in rows],
            ).fetchall()
        return [self._row_to_notification(row) for row in rows], delivered

    async def acknowledge(
        self, device_id: str, notification_id: int, status: str, now: datetime
    ) -> str:
        """Move a ``sent`` notification owned by ``device_id`` to a terminal status."""

        if status not in ACK_STATUSES:
            raise ValueError("Status must be viewed or dismissed")
        return await self.db.run(
            lambda conn: self._acknowledge(conn, device_id, notification_id, status, now)
        )

    def _acknowledge(
        self,
        conn: sqlite3.Connection,
        device_id: str,
        notification_id: int,
        status: str,
        now: datetime,
    ) -> str:
        stamp_column = "viewed_at" if status == "viewed" else "dismissed_at"
        cursor = conn.execute(
            f"""
            UPDATE notifications
            SET status = ?, {stamp_column} = ?
            WHERE id = ? AND device_id = ? AND status = 'sent'
            """,
            (status, format_ts(now), notification_id, device_id),
        )
        conn.commit()
        if cursor.rowcount:
            return ACK_UPDATED
        owned = conn.execute(
            "SELECT 1 FROM notifications WHERE id = ? AND device_id = ?",
            (notification_id, device_id),
        ).fetchone()
        return ACK_UNCHANGED if owned else ACK_NOT_FOUND

    async def promote_scheduled(self, now: datetime) -> int:
        return await self.db.run(lambda conn: self._promote_scheduled(conn, now))

    def _promote_scheduled(self, conn: sqlite3.Connection, now: datetime) -> int:
        cursor = conn.execute(
            """
            UPDATE notifications
            SET scheduled_for = NULL
            WHERE status = 'new'
              AND scheduled_for IS NOT NULL
              AND scheduled_for <= ?
            """,
            (format_ts(now),),
        )
        conn.commit()
        return cursor.rowcount

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        return await self.db.run(lambda conn: self._delete_terminal_before(conn, cutoff))

    def _delete_terminal_before(self, conn: sqlite3.Connection, cutoff: datetime) -> int:
        stamp = format_ts(cutoff)
        cursor = conn.execute(
            """
            DELETE FROM notifications
            WHERE (status = 'viewed' AND viewed_at < ?)
               OR (status = 'dismissed' AND dismissed_at < ?)
            """,
            (stamp, stamp),
        )
        conn.commit()
        return cursor.rowcount

    async def stuck_notification_count(self, created_before: datetime) -> int:
        return await self.db.run(
            lambda conn: int(
                conn.execute(
                    """
                    SELECT COUNT(*) FROM notifications
                    WHERE status = 'new'
                      AND scheduled_for IS NULL
                      AND created_at < ?
                    """,
                    (format_ts(created_before),),
                ).fetchone()[0]
            )
        )

    async def notification_stats(self, now: datetime) -> Dict[str, Any]:
        return await self.db.run(lambda conn: self._notification_stats(conn, now))

    def _notification_stats(self, conn: sqlite3.Connection, now: datetime) -> Dict[str, Any]:
        by_status = {status: 0 for status in NOTIFICATION_STATUSES}
        for row in conn.execute(
            "SELECT status, COUNT(*) AS count FROM notifications GROUP BY status"
        ).fetchall():
            by_status[row["status"]] = int(row["count"])
        by_type = {kind: 0 for kind in NOTIFICATION_TYPES}
        for row in conn.execute(
            "SELECT notification_type, COUNT(*) AS count FROM notifications GROUP BY notification_type"
        ).fetchall():
            by_type[row["notification_type"]] = int(row["count"])
        scheduled = conn.execute(
            """
            SELECT COUNT(*) FROM notifications
            WHERE status = 'new' AND scheduled_for > ?
            """,
            (format_ts(now),),
        ).fetchone()[0]
        avg_view = conn.execute(
            """
            SELECT AVG((julianday(viewed_at) - julianday(sent_at)) * 86400.0)
            FROM notifications
            WHERE status = 'viewed' AND sent_at IS NOT NULL AND viewed_at IS NOT NULL
            """
        ).fetchone()[0]
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_type": by_type,
            "scheduled": int(scheduled or 0),
            "avg_seconds_to_view": round(float(avg_view), 2) if avg_view is not None else None,
        }

    # Check-in tracking

    async def last_seen_check_in(self, room_number: str, guest_name: str) -> Optional[str]:
        return await self.db.run(
            lambda conn: self._last_seen_check_in(conn, room_number, guest_name)
        )

    def _last_seen_check_in(
        self, conn: sqlite3.Connection, room_number: str, guest_name: str
    ) -> Optional[str]:
        row = conn.execute(
            """
            SELECT last_check_in FROM guest_checkins
            WHERE room_number = ? AND guest_name = ?
            """,
            (room_number, guest_name),
        ).fetchone()
        return row["last_check_in"] if row else None

    async def record_seen_check_in(
        self, room_number: str, guest_name: str, check_in: str, now: datetime
    ) -> None:
        await self.db.run(
            lambda conn: self._record_seen_check_in(conn, room_number, guest_name, check_in, now)
        )

    def _record_seen_check_in(
        self,
        conn: sqlite3.Connection,
        room_number: str,
        guest_name: str,
        check_in: str,
        now: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO guest_checkins (room_number, guest_name, last_check_in, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(room_number, guest_name) DO UPDATE SET
                last_check_in = excluded.last_check_in,
                updated_at = excluded.updated_at
            """,
            (room_number, guest_name, check_in, format_ts(now)),
        )
        conn.commit()

    def _row_to_device(self, row: sqlite3.Row) -> DeviceRow:
        return DeviceRow(
            id=int(row["id"]),
            device_id=row["device_id"],
            room_number=row["room_number"],
            status=row["status"],
            is_online=bool(row["is_online"]),
            last_sync=row["last_sync"],
            assigned_bundle_id=(
                int(row["assigned_bundle_id"]) if row["assigned_bundle_id"] is not None else None
            ),
            is_room_evacuated=bool(row["is_room_evacuated"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_notification(self, row: sqlite3.Row) -> NotificationRow:
        return NotificationRow(
            id=int(row["id"]),
            device_id=row["device_id"],
            room_number=row["room_number"],
            title=row["title"],
            body=row["body"],
            notification_type=row["notification_type"],
            guest_name=row["guest_name"],
            status=row["status"],
            scheduled_for=row["scheduled_for"],
            created_at=row["created_at"],
            sent_at=row["sent_at"],
            viewed_at=row["viewed_at"],
            dismissed_at=row["dismissed_at"],
        )
