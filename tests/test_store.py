from datetime import timedelta

import pytest

from hotel_tv_core.db import DEFAULT_APPS, DEFAULT_HOTEL_NAME, MIGRATIONS, apply_migrations, format_ts
from hotel_tv_core.store import (
    ACK_NOT_FOUND,
    ACK_UNCHANGED,
    ACK_UPDATED,
    BillRecord,
    GuestRecord,
    NewNotification,
)

from conftest import START


async def _active_device(store, device_id: str, room: str) -> None:
    await store.record_sync(device_id, START)
    await store.update_device(device_id, room_number=room, status="active")


@pytest.mark.asyncio
async def test_migrations_seed_settings_bundle_and_apps(store) -> None:
    settings = await store.settings()
    assert settings.hotel_name == DEFAULT_HOTEL_NAME
    assert settings.admin_username == "admin"
    assert settings.pms_connection_status == "disconnected"
    assert await store.default_bundle_id() is not None
    apps = await store.allowed_apps()
    assert [app["package_name"] for app in apps] == [app[1] for app in DEFAULT_APPS]


@pytest.mark.asyncio
async def test_migrations_are_idempotent_and_file_is_healthy(store) -> None:
    assert apply_migrations(store.db.db_path) == MIGRATIONS[-1][0]
    assert await store.db.check_integrity() == []
    await store.stop()
    with pytest.raises(RuntimeError):
        await store.ping()


@pytest.mark.asyncio
async def test_record_sync_registers_then_heartbeats(store) -> None:
    device, created = await store.record_sync("tv-1", START)
    assert created is True
    assert device.status == "inactive"
    assert device.is_online is True
    assert device.last_sync == format_ts(START)

    later = START + timedelta(minutes=5)
    device, created = await store.record_sync("tv-1", later)
    assert created is False
    assert device.last_sync == format_ts(later)


@pytest.mark.asyncio
async def test_record_sync_raises_when_row_cannot_be_read_back(store, monkeypatch) -> None:
    monkeypatch.setattr(store, "_device", lambda conn, device_id: None)
    with pytest.raises(RuntimeError, match="tv-9 missing"):
        await store.record_sync("tv-9", START)


@pytest.mark.asyncio
async def test_active_device_requires_room(store) -> None:
    await store.record_sync("tv-1", START)
    with pytest.raises(ValueError, match="room"):
        await store.update_device("tv-1", status="active")
    updated = await store.update_device("tv-1", room_number="101", status="active")
    assert updated is not None and updated.is_active
    with pytest.raises(ValueError, match="room"):
        await store.update_device("tv-1", room_number=None)
    assert await store.update_device("missing", status="inactive") is None


@pytest.mark.asyncio
async def test_update_device_rejects_unknown_bundle(store) -> None:
    await store.record_sync("tv-1", START)
    with pytest.raises(ValueError, match="bundle"):
        await store.update_device("tv-1", assigned_bundle_id=9999)


@pytest.mark.asyncio
async def test_active_rooms_are_distinct(store) -> None:
    await _active_device(store, "tv-a", "101")
    await _active_device(store, "tv-b", "101")
    await _active_device(store, "tv-c", "202")
    await store.record_sync("tv-idle", START)
    assert await store.active_rooms() == ["101", "202"]
    first = await store.first_active_device_for_room("101")
    assert first is not None and first.device_id == "tv-a"


@pytest.mark.asyncio
async def test_room_snapshot_replaces_guest_and_bills(store) -> None:
    guest = GuestRecord("A. Smith", "2026-03-14 10:00:00.000000", "2026-03-16 11:00:00.000000")
    bills = [BillRecord("Minibar", 12.5, "2026-03-14 13:00:00.000000")]

    first = await store.apply_room_snapshot("101", guest, bills, START)
    assert first.guest_changed is True
    assert first.bills_written == 1

    again = await store.apply_room_snapshot("101", guest, bills, START)
    assert again.guest_changed is False
    assert len(await store.bills("101")) == 1

    vacated = await store.apply_room_snapshot("101", None, [], START)
    assert vacated.guest_changed is True
    assert await store.guest_stay("101") is None
    assert await store.bills("101") == []


@pytest.mark.asyncio
async def test_deliver_moves_new_to_sent_and_skips_scheduled(store) -> None:
    await _active_device(store, "tv-1", "101")
    ids = await store.create_notifications(
        [
            NewNotification("tv-1", "101", "Now", "body", "manual"),
            NewNotification(
                "tv-1", "101", "Later", "body", "farewell", "A. Smith",
                scheduled_for=START + timedelta(hours=1),
            ),
        ],
        START,
    )

    rows, delivered = await store.deliver_notifications("tv-1", START)
    assert delivered == 1
    assert [row.id for row in rows] == [ids[0]]
    assert rows[0].status == "sent"

    rows, delivered = await store.deliver_notifications("tv-1", START)
    assert delivered == 0
    assert [row.id for row in rows] == [ids[0]]


@pytest.mark.asyncio
async def test_acknowledge_is_guarded(store) -> None:
    await _active_device(store, "tv-1", "101")
    await _active_device(store, "tv-2", "102")
    [nid] = await store.create_notifications(
        [NewNotification("tv-1", "101", "Hi", "body", "manual")], START
    )

    # still new: not acknowledgeable yet
    assert await store.acknowledge("tv-1", nid, "viewed", START) == ACK_UNCHANGED
    await store.deliver_notifications("tv-1", START)
    assert await store.acknowledge("tv-2", nid, "viewed", START) == ACK_NOT_FOUND
    assert await store.acknowledge("tv-1", nid, "viewed", START) == ACK_UPDATED
    assert await store.acknowledge("tv-1", nid, "dismissed", START) == ACK_UNCHANGED
    assert await store.acknowledge("tv-1", 424242, "viewed", START) == ACK_NOT_FOUND

    row = await store.notification(nid)
    assert row.status == "viewed"
    assert row.dismissed_at is None


@pytest.mark.asyncio
async def test_mark_offline_devices_uses_cutoff(store) -> None:
    await store.record_sync("tv-old", START - timedelta(minutes=20))
    await store.record_sync("tv-new", START - timedelta(minutes=2))
    changed = await store.mark_offline_devices(START - timedelta(minutes=10))
    assert changed == 1
    assert (await store.device("tv-old")).is_online is False
    assert (await store.device("tv-new")).is_online is True
    counts = await store.device_counts()
    assert counts["total"] == 2
    assert counts["offline"] == 1


@pytest.mark.asyncio
async def test_update_settings_rejects_unknown_fields(store) -> None:
    with pytest.raises(ValueError, match="Unknown settings"):
        await store.update_settings(admin_password="nope")
    updated = await store.update_settings(hotel_name="Seaside Inn")
    assert updated.hotel_name == "Seaside Inn"
