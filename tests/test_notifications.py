from datetime import timedelta

import pytest

from hotel_tv_core.db import format_ts
from hotel_tv_core.notifications import (
    TARGET_SPECIFIC_DEVICES,
    TARGET_SPECIFIC_ROOMS,
    NotificationEngine,
    NotificationTarget,
)
from hotel_tv_core.store import GuestRecord, NewNotification

from conftest import START


@pytest.fixture
def engine(store, hub, clock) -> NotificationEngine:
    return NotificationEngine(store, hub=hub, clock=clock)


async def _activate(store, device_id: str, room: str) -> None:
    await store.record_sync(device_id, START)
    await store.update_device(device_id, room_number=room, status="active")


def _guest(check_in, check_out, name: str = "A. Smith") -> GuestRecord:
    return GuestRecord(
        name,
        format_ts(check_in) if check_in else None,
        format_ts(check_out) if check_out else None,
    )


@pytest.mark.asyncio
async def test_check_in_creates_welcome_and_farewell(engine, store, hub) -> None:
    await _activate(store, "tv-1", "101")
    guest = _guest(START - timedelta(hours=2), START + timedelta(days=1, hours=-1))

    assert await engine.process_guest_checkin_checkout("101", guest) == 2

    welcome = await store.notifications(notification_type="welcome")
    farewell = await store.notifications(notification_type="farewell")
    assert len(welcome) == 1 and len(farewell) == 1
    assert welcome[0].title == "Welcome"
    assert "A. Smith" in welcome[0].body
    assert "Hotel TV Management" in welcome[0].body
    assert farewell[0].title == "Thank You"
    assert farewell[0].scheduled_for == format_ts(START + timedelta(hours=22, minutes=45))
    assert hub.types() == ["notification_generated", "notification_scheduled"]

    # same snapshot again: nothing new
    assert await engine.process_guest_checkin_checkout("101", guest) == 0
    assert len(await store.notifications()) == 2


@pytest.mark.asyncio
async def test_welcome_is_deduplicated_within_window(engine, store, clock) -> None:
    await _activate(store, "tv-1", "101")
    await engine.process_guest_checkin_checkout("101", _guest(START - timedelta(hours=2), None))

    clock.advance(hours=3)
    later = _guest(START + timedelta(hours=1), None)
    assert await engine.process_guest_checkin_checkout("101", later) == 0

    clock.advance(hours=24)
    latest = _guest(START + timedelta(hours=26), None)
    assert await engine.process_guest_checkin_checkout("101", latest) == 1
    assert len(await store.notifications(notification_type="welcome")) == 2


@pytest.mark.asyncio
async def test_farewell_not_scheduled_when_time_has_passed(engine, store) -> None:
    await _activate(store, "tv-1", "101")
    soon = _guest(START - timedelta(days=1), START + timedelta(minutes=10), name="B. Jones")
    assert await engine.process_guest_checkin_checkout("101", soon) == 1
    guest = _guest(START - timedelta(days=1), START + timedelta(minutes=15))
    assert await engine.process_guest_checkin_checkout("101", guest) == 1
    assert await store.notifications(notification_type="farewell") == []


@pytest.mark.asyncio
async def test_missing_check_in_or_device_generates_nothing(engine, store) -> None:
    no_device = _guest(START - timedelta(hours=1), START + timedelta(days=1))
    assert await engine.process_guest_checkin_checkout("404", no_device) == 0

    await _activate(store, "tv-1", "101")
    no_check_in = _guest(None, None)
    assert await engine.process_guest_checkin_checkout("101", no_check_in) == 0
    assert await engine.process_guest_checkin_checkout("101", None) == 0
    assert await store.notifications() == []


@pytest.mark.asyncio
async def test_scheduled_notifications_promote_when_due(engine, store, clock) -> None:
    await _activate(store, "tv-1", "101")
    await store.create_notifications(
        [
            NewNotification("tv-1", "101", "Past", "b", "manual", scheduled_for=START - timedelta(minutes=1)),
            NewNotification("tv-1", "101", "Now", "b", "manual", scheduled_for=START),
            NewNotification("tv-1", "101", "Future", "b", "manual", scheduled_for=START + timedelta(hours=1)),
        ],
        START,
    )

    assert await engine.process_scheduled_notifications() == 2
    rows, _ = await store.deliver_notifications("tv-1", START)
    assert sorted(row.title for row in rows) == ["Now", "Past"]

    clock.advance(hours=1)
    assert await engine.process_scheduled_notifications() == 1


@pytest.mark.asyncio
async def test_cleanup_removes_terminal_rows_past_retention(engine, store) -> None:
    await _activate(store, "tv-1", "101")
    old, recent, pending = await store.create_notifications(
        [
            NewNotification("tv-1", "101", "Old", "b", "manual"),
            NewNotification("tv-1", "101", "Recent", "b", "manual"),
            NewNotification("tv-1", "101", "Pending", "b", "manual"),
        ],
        START - timedelta(days=10),
    )
    await store.deliver_notifications("tv-1", START - timedelta(days=10))
    await store.acknowledge("tv-1", old, "viewed", START - timedelta(days=8))
    await store.acknowledge("tv-1", recent, "dismissed", START - timedelta(days=6))

    assert await engine.cleanup_old_notifications() == 1
    remaining = {row.id for row in await store.notifications()}
    assert remaining == {recent, pending}


@pytest.mark.asyncio
async def test_send_notification_fans_out_to_targets(engine, store, hub) -> None:
    await _activate(store, "tv-1", "101")
    await _activate(store, "tv-2", "102")
    await store.record_sync("tv-idle", START)

    assert await engine.send_notification("Pool", "Pool closes at 9pm") == 2
    rooms = NotificationTarget.build(TARGET_SPECIFIC_ROOMS, rooms=["102", " 102 "])
    assert await engine.send_notification("Spa", "Open now", rooms) == 1
    devices = NotificationTarget.build(TARGET_SPECIFIC_DEVICES, device_ids=["tv-idle"])
    assert await engine.send_notification("Nobody", "Inactive", devices) == 0
    assert await engine.send_system_notification("Alert", "Maintenance") == 2

    stats = await engine.notification_stats()
    assert stats["total"] == 5
    assert stats["by_type"]["system"] == 2
    assert hub.types().count("notifications_sent") == 3


@pytest.mark.asyncio
async def test_send_notification_validates_input(engine) -> None:
    with pytest.raises(ValueError):
        await engine.send_notification("", "body")
    with pytest.raises(ValueError):
        await engine.send_notification("t", "b", notification_type="welcome")
    with pytest.raises(ValueError):
        NotificationTarget.build("everyone")
    with pytest.raises(ValueError):
        NotificationTarget.build(TARGET_SPECIFIC_ROOMS, rooms=[])


@pytest.mark.asyncio
async def test_checkout_two_hours_out_schedules_one_farewell(engine, store) -> None:
    await _activate(store, "tv-301", "301")
    guest = _guest(START - timedelta(hours=20), START + timedelta(hours=2))

    assert await engine.process_guest_checkin_checkout("301", guest) == 2
    assert await engine.process_guest_checkin_checkout("301", guest) == 0

    [farewell] = await store.notifications(notification_type="farewell")
    assert farewell.scheduled_for == format_ts(START + timedelta(hours=1, minutes=45))
    assert len(await store.notifications(notification_type="welcome")) == 1
