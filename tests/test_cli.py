import json
from argparse import Namespace
from typing import Any

import httpx
import pytest

from hotel_tv_core.cli import (
    CliError,
    ClientConfig,
    _build_parser,
    _cmd_devices_update,
    _cmd_notifications_send,
    _cmd_pms_test,
    _cmd_scheduler_trigger,
    _handle_response,
    _realtime_url,
)

CONFIG = ClientConfig(server_url="http://test", token="tok", output="json")


def _client_with_capture(captured: dict, status: int = 200, response_json: Any = None) -> httpx.Client:
    def _handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["json"] = json.loads(request.content.decode()) if request.content else None
        return httpx.Response(status, json=response_json if response_json is not None else {})

    transport = httpx.MockTransport(_handler)
    return httpx.Client(transport=transport, base_url="http://test")


def _send_args(**overrides: Any) -> Namespace:
    values = dict(
        title="Pool",
        body="Closed today",
        notification_type="manual",
        rooms=[],
        devices=[],
        schedule_for=None,
    )
    values.update(overrides)
    return Namespace(**values)


def _update_args(**overrides: Any) -> Namespace:
    values = dict(
        device_id="tv-42",
        room=None,
        clear_room=False,
        status=None,
        bundle=None,
        evacuated=None,
    )
    values.update(overrides)
    return Namespace(**values)


def test_notification_send_targets_rooms() -> None:
    captured: dict = {}
    args = _send_args(rooms=["101", "102"], schedule_for="2026-03-15T10:00:00Z")

    with _client_with_capture(captured, response_json={"success": True, "count": 2}) as client:
        _cmd_notifications_send(CONFIG, client, args)

    assert captured["url"] == "http://test/admin/notifications/send"
    assert captured["json"] == {
        "title": "Pool",
        "body": "Closed today",
        "notification_type": "manual",
        "target_type": "specific_rooms",
        "target_rooms": ["101", "102"],
        "schedule_for": "2026-03-15T10:00:00Z",
    }


def test_notification_send_defaults_to_all_active() -> None:
    captured: dict = {}
    with _client_with_capture(captured) as client:
        _cmd_notifications_send(CONFIG, client, _send_args(devices=["tv-1"]))
    assert captured["json"]["target_type"] == "specific_devices"

    with _client_with_capture(captured) as client:
        _cmd_notifications_send(CONFIG, client, _send_args())
    assert captured["json"]["target_type"] == "all_active"

    with _client_with_capture({}) as client:
        with pytest.raises(CliError):
            _cmd_notifications_send(CONFIG, client, _send_args(rooms=["101"], devices=["tv-1"]))


def test_device_update_payload() -> None:
    captured: dict = {}
    args = _update_args(room="101", status="active", evacuated=False)

    with _client_with_capture(captured) as client:
        _cmd_devices_update(CONFIG, client, args)

    assert captured["method"] == "PATCH"
    assert captured["url"] == "http://test/admin/devices/tv-42"
    assert captured["json"] == {"room_number": "101", "status": "active", "is_room_evacuated": False}

    with _client_with_capture(captured) as client:
        _cmd_devices_update(CONFIG, client, _update_args(clear_room=True))
    assert captured["json"] == {"room_number": None}


def test_device_update_requires_changes() -> None:
    with _client_with_capture({}) as client:
        with pytest.raises(CliError):
            _cmd_devices_update(CONFIG, client, _update_args())
        with pytest.raises(CliError):
            _cmd_devices_update(CONFIG, client, _update_args(room="101", clear_room=True))


def test_pms_test_only_sends_given_fields() -> None:
    captured: dict = {}
    args = Namespace(base_url="https://pms.example.test", api_key="k", username=None)
    with _client_with_capture(captured) as client:
        _cmd_pms_test(CONFIG, client, args)
    assert captured["json"] == {"base_url": "https://pms.example.test", "api_key": "k"}


def test_errors_surface_detail() -> None:
    with _client_with_capture({}, status=404, response_json={"detail": "Job not found"}) as client:
        with pytest.raises(CliError, match="Job not found"):
            _cmd_scheduler_trigger(CONFIG, client, Namespace(job="nope"))

    response = httpx.Response(
        400,
        json={"success": False, "error": "PMS not configured"},
        request=httpx.Request("POST", "http://test/admin/pms/force-sync"),
    )
    with pytest.raises(CliError, match="PMS not configured"):
        _handle_response(response)


def test_realtime_url_switches_scheme() -> None:
    assert _realtime_url("http://127.0.0.1:3000/", "abc") == "ws://127.0.0.1:3000/ws?token=abc"
    assert _realtime_url("https://tv.example.test", "a b") == "wss://tv.example.test/ws?token=a+b"


def test_parser_reads_env_defaults(monkeypatch) -> None:
    monkeypatch.setenv("HOTEL_TV_SERVER_URL", "http://frontdesk:3000")
    monkeypatch.setenv("HOTEL_TV_OUTPUT", "yaml")
    args = _build_parser().parse_args(["scheduler", "trigger", "pms_sync"])
    assert args.server_url == "http://frontdesk:3000"
    assert args.output == "yaml"
    assert args.job == "pms_sync"
