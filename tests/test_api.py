import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from starlette.websockets import WebSocketDisconnect

from hotel_tv_core.api import ApiContext, ApiService, create_app
from hotel_tv_core.auth import AdminAuthenticator, issue_token
from hotel_tv_core.cache import TtlCache
from hotel_tv_core.config import Config
from hotel_tv_core.device_sync import INACTIVE_MESSAGE, DeviceSyncService
from hotel_tv_core.health import SystemHealthService
from hotel_tv_core.notifications import NotificationEngine
from hotel_tv_core.realtime import BroadcastHub
from hotel_tv_core.reconciliation import PmsSyncService
from hotel_tv_core.scheduler import build_scheduler

SECRET = "api-test-secret-with-plenty-of-length"


def _context(store) -> ApiContext:
    cache = TtlCache(store.db)
    hub = BroadcastHub()
    engine = NotificationEngine(store, hub=hub)
    pms = PmsSyncService(store, cache, engine, hub=hub)
    health = SystemHealthService(store, engine, pms_status=pms.sync_status, hub=hub)
    return ApiContext(
        store=store,
        devices=DeviceSyncService(store, cache, hub=hub),
        notifications=engine,
        pms=pms,
        scheduler=build_scheduler(
            Config(), pms_sync=pms, notifications=engine, system_health=health, cache=cache, hub=hub
        ),
        hub=hub,
        authenticator=AdminAuthenticator(store, SECRET),
    )


def _admin_headers() -> dict:
    return {"Authorization": f"Bearer {issue_token(SECRET, 1)}"}


@pytest.fixture
def app(store):
    return create_app(Config(), _context(store))


@pytest.mark.asyncio
async def test_health_and_metrics(app) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        health = await client.get("/health")
        metrics = await client.get("/metrics")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["scheduler"] is False
    assert metrics.status_code == 200
    assert "hoteltv_api_requests_total" in metrics.text


@pytest.mark.asyncio
async def test_device_protocol_round_trip(app) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/device/sync", json={"device_id": "tv-42"})
        assert first.json() == {
            "status": "inactive",
            "device_id": "tv-42",
            "message": INACTIVE_MESSAGE,
        }

        patched = await client.patch(
            "/admin/devices/tv-42",
            json={"room_number": "101", "status": "active"},
            headers=_admin_headers(),
        )
        assert patched.status_code == 200
        assert patched.json()["room_number"] == "101"

        sent = await client.post(
            "/admin/notifications/send",
            json={"title": "Checkout reminder", "body": "Late checkout available"},
            headers=_admin_headers(),
        )
        assert sent.json() == {"success": True, "count": 1}

        synced = await client.post("/device/sync", json={"device_id": "tv-42"})
        payload = synced.json()
        assert payload["status"] == "active"
        [notification] = payload["notifications"]

        foreign = await client.post(
            "/device/notification-status",
            json={"device_id": "tv-7", "notification_id": notification["id"], "status": "viewed"},
        )
        assert foreign.status_code == 404
        assert foreign.json() == {"detail": "Notification not found"}

        ack = await client.post(
            "/device/notification-status",
            json={"device_id": "tv-42", "notification_id": notification["id"], "status": "viewed"},
        )
        assert ack.json() == {
            "success": True,
            "changed": True,
            "message": "Notification status updated",
        }

        last = await client.get("/admin/devices/tv-42/last-sync", headers=_admin_headers())
        assert last.status_code == 200
        assert last.json()["device_id"] == "tv-42"

        cleared = await client.post("/device/clear-status", json={"device_id": "tv-42"})
        assert cleared.json() == {"success": True, "message": "Evacuation status cleared"}


@pytest.mark.asyncio
async def test_device_routes_reject_bad_input(app) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        missing = await client.post("/device/sync", json={})
        bad_status = await client.post(
            "/device/notification-status",
            json={"device_id": "tv-1", "notification_id": 1, "status": "deleted"},
        )
        unknown = await client.post("/device/clear-status", json={"device_id": "ghost"})

    assert missing.status_code == 400
    assert missing.json() == {"detail": "device_id is required"}
    assert bad_status.status_code == 400
    assert unknown.status_code == 404
    assert unknown.json() == {"detail": "Device not found"}


@pytest.mark.asyncio
async def test_admin_routes_require_token(app) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        anonymous = await client.get("/admin/pms/status")
        forged = await client.get(
            "/admin/pms/status",
            headers={"Authorization": f"Bearer {issue_token('some-other-secret-value-entirely', 1)}"},
        )
        allowed = await client.get("/admin/pms/status", headers=_admin_headers())

    assert anonymous.status_code == 401
    assert anonymous.headers["WWW-Authenticate"] == "Bearer"
    assert forged.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["isInitialized"] is False


@pytest.mark.asyncio
async def test_admin_operations(app) -> None:
    headers = _admin_headers()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.post("/device/sync", json={"device_id": "tv-1"})
        invalid = await client.patch(
            "/admin/devices/tv-1", json={"status": "active"}, headers=headers
        )
        missing = await client.patch(
            "/admin/devices/ghost", json={"status": "inactive"}, headers=headers
        )
        no_cache = await client.get("/admin/devices/tv-1/last-sync", headers=headers)
        force = await client.post("/admin/pms/force-sync", headers=headers)
        reload = await client.post("/admin/pms/reload", headers=headers)
        test_conn = await client.post(
            "/admin/pms/test-connection",
            json={"base_url": "https://pms.example.test"},
            headers=headers,
        )
        unknown_job = await client.post("/admin/scheduler/jobs/nope/trigger", headers=headers)
        cleanup = await client.post(
            "/admin/scheduler/jobs/notification_cleanup/trigger", headers=headers
        )
        scheduler = await client.get("/admin/scheduler", headers=headers)
        bad_schedule = await client.post(
            "/admin/notifications/send",
            json={"title": "t", "body": "b", "schedule_for": "tomorrow-ish"},
            headers=headers,
        )
        bad_target = await client.post(
            "/admin/notifications/send",
            json={"title": "t", "body": "b", "target_type": "specific_rooms"},
            headers=headers,
        )
        stats = await client.get("/admin/notifications/stats", headers=headers)

    assert invalid.status_code == 400
    assert missing.status_code == 404
    assert no_cache.status_code == 404
    assert force.status_code == 400
    assert force.json()["error"] == "PMS not configured"
    assert reload.json() == {"success": True, "configured": False}
    assert test_conn.status_code == 400
    assert test_conn.json() == {"detail": "base_url and api_key are required"}
    assert unknown_job.status_code == 404
    assert cleanup.json()["success"] is True
    assert scheduler.json()["jobCount"] == 5
    assert bad_schedule.status_code == 400
    assert bad_target.status_code == 400
    assert stats.json()["total"] == 0


def test_realtime_rejects_bad_token(app) -> None:
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/ws?token=garbage"):
                pass
    assert excinfo.value.code == 1008


def test_realtime_session_receives_events(app) -> None:
    token = issue_token(SECRET, 1)
    with TestClient(app) as client:
        with client.websocket_connect(f"/ws?token={token}") as ws:
            greeting = ws.receive_json()
            assert greeting["type"] == "connection_established"
            assert greeting["data"]["user"] == {"id": 1, "username": "admin"}

            ws.send_text('{"type": "ping"}')
            assert ws.receive_json()["type"] == "pong"

            client.post("/device/sync", json={"device_id": "tv-55"})
            event = ws.receive_json()
            assert event["type"] == "device_registered"
            assert event["data"]["device_id"] == "tv-55"

            stats = client.get("/admin/realtime", headers=_admin_headers()).json()
            assert stats["connections"] == 1


def test_server_keeps_websockets_alive_with_transport_pings(store) -> None:
    config = Config(realtime_ping_interval=30.0, realtime_stale_multiplier=3.0)
    context = _context(store)
    service = ApiService(config, context)
    server_config = service.server_config(create_app(config, context))
    assert server_config.ws_ping_interval == 30.0
    assert server_config.ws_ping_timeout == 90.0
    assert server_config.port == config.api_port
