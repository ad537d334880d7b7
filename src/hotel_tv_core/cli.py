"""Command-line client for the hotel TV admin API."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, MutableMapping, Optional

import httpx
import websockets
from websockets.exceptions import WebSocketException
import yaml


DEFAULT_SERVER_URL = "http://127.0.0.1:3000"
ENV_PREFIX = "HOTEL_TV_"


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the API client."""

    server_url: str
    token: Optional[str]
    output: str
    timeout: float = 30.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "CLI for the hotel TV admin API. Uses HOTEL_TV_* env vars for defaults "
            "and prints JSON (default) or YAML. Examples: `hotel-tv-admin pms status`, "
            "`hotel-tv-admin notifications send --title Hi --body Hello --room 101`."
        )
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=f"Base URL for the API (env: {ENV_PREFIX}SERVER_URL). Defaults to {DEFAULT_SERVER_URL}.",
    )
    parser.add_argument(
        "--token",
        default=_env("TOKEN"),
        help=f"Admin bearer token (env: {ENV_PREFIX}TOKEN).",
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT).",
    )

    subparsers = parser.add_subparsers(dest="command", required=False)

    health = subparsers.add_parser("health", help="Check API health (GET /health)")
    health.set_defaults(func=_cmd_health)

    realtime = subparsers.add_parser("realtime", help="Show connected admin sessions")
    realtime.set_defaults(func=_cmd_realtime)

    _add_pms_commands(subparsers)
    _add_scheduler_commands(subparsers)
    _add_notification_commands(subparsers)
    _add_device_commands(subparsers)
    _add_event_commands(subparsers)
    return parser


def _add_pms_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    pms = subparsers.add_parser("pms", help="PMS reconciliation commands")
    pms_sub = pms.add_subparsers(dest="pms_command", required=True)

    pms_sub.add_parser("status", help="Show sync status").set_defaults(func=_cmd_pms_status)
    pms_sub.add_parser("sync", help="Run a sweep now").set_defaults(func=_cmd_pms_sync)
    pms_sub.add_parser(
        "reload", help="Re-read PMS settings from the database"
    ).set_defaults(func=_cmd_pms_reload)

    test = pms_sub.add_parser(
        "test",
        help="Check PMS connectivity",
        description="Without flags the stored configuration is checked.",
    )
    test.add_argument("--base-url")
    test.add_argument("--api-key")
    test.add_argument("--username")
    test.set_defaults(func=_cmd_pms_test)


def _add_scheduler_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    scheduler = subparsers.add_parser("scheduler", help="Background job commands")
    scheduler_sub = scheduler.add_subparsers(dest="scheduler_command", required=True)
    scheduler_sub.add_parser("status", help="Show job status").set_defaults(
        func=_cmd_scheduler_status
    )
    trigger = scheduler_sub.add_parser("trigger", help="Run one job now")
    trigger.add_argument("job", help="Job name, e.g. pms_sync or health_check")
    trigger.set_defaults(func=_cmd_scheduler_trigger)


def _add_notification_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    notifications = subparsers.add_parser("notifications", help="Notification commands")
    notification_sub = notifications.add_subparsers(dest="notification_command", required=True)

    send = notification_sub.add_parser(
        "send",
        help="Send a notification to active devices",
        description=(
            "Targets every active device unless --room or --device is given. "
            "--schedule-for takes an ISO-8601 instant."
        ),
    )
    send.add_argument("--title", required=True)
    send.add_argument("--body", required=True)
    send.add_argument("--type", dest="notification_type", choices=["manual", "system"], default="manual")
    send.add_argument("--room", dest="rooms", action="append", default=[], help="Repeatable")
    send.add_argument("--device", dest="devices", action="append", default=[], help="Repeatable")
    send.add_argument("--schedule-for")
    send.set_defaults(func=_cmd_notifications_send)

    notification_sub.add_parser("stats", help="Show notification statistics").set_defaults(
        func=_cmd_notifications_stats
    )


def _add_device_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    devices = subparsers.add_parser("devices", help="Device administration")
    device_sub = devices.add_subparsers(dest="device_command", required=True)

    update = device_sub.add_parser(
        "update",
        help="Edit a device (PATCH /admin/devices/{id})",
        description="Activating a device requires it to have a room number.",
    )
    update.add_argument("device_id")
    update.add_argument("--room")
    update.add_argument("--clear-room", action="store_true", help="Remove the room assignment")
    update.add_argument("--status", choices=["active", "inactive"])
    update.add_argument("--bundle", type=int, help="Media bundle id")
    update.add_argument("--evacuated", dest="evacuated", action="store_true", default=None)
    update.add_argument("--not-evacuated", dest="evacuated", action="store_false")
    update.set_defaults(func=_cmd_devices_update)

    last_sync = device_sub.add_parser("last-sync", help="Show the device's cached sync payload")
    last_sync.add_argument("device_id")
    last_sync.set_defaults(func=_cmd_devices_last_sync)


def _add_event_commands(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    events = subparsers.add_parser("events", help="Realtime event commands")
    event_sub = events.add_subparsers(dest="event_command", required=True)
    tail = event_sub.add_parser(
        "tail",
        help="Stream realtime events",
        description="Topic events such as device_sync are only delivered after --subscribe.",
    )
    tail.add_argument("--subscribe", action="append", default=[], help="Topic name; repeatable")
    tail.add_argument("--count", type=int, help="Exit after this many events")
    tail.set_defaults(func=_cmd_events_tail)


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml"}:
        raise CliError("Output format must be 'json' or 'yaml'")
    return ClientConfig(server_url=args.server_url, token=args.token, output=output)


def _build_client(config: ClientConfig) -> httpx.Client:
    headers: MutableMapping[str, str] = {}
    if config.token:
        headers["Authorization"] = f"Bearer {config.token}"
    return httpx.Client(base_url=config.server_url, headers=headers, timeout=config.timeout)


def _print_output(data: Any, output: str) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _handle_response(response: httpx.Response) -> Any:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:  # pragma: no cover - CLI feedback path
        try:
            body = response.json()
            detail = (body.get("detail") or body.get("error")) if isinstance(body, dict) else body
        except ValueError:
            detail = response.text
        raise CliError(f"Request failed ({response.status_code}): {detail}") from exc
    if response.content:
        return response.json()
    return None


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/health")), config.output)


def _cmd_realtime(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/admin/realtime")), config.output)


def _cmd_pms_status(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.get("/admin/pms/status")), config.output)


def _cmd_pms_sync(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.post("/admin/pms/force-sync")), config.output)


def _cmd_pms_reload(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    _print_output(_handle_response(client.post("/admin/pms/reload")), config.output)


def _cmd_pms_test(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload = {
        key: value
        for key, value in (
            ("base_url", args.base_url),
            ("api_key", args.api_key),
            ("username", args.username),
        )
        if value
    }
    response = client.post("/admin/pms/test-connection", json=payload)
    _print_output(_handle_response(response), config.output)


def _cmd_scheduler_status(
    config: ClientConfig, client: httpx.Client, args: argparse.Namespace
) -> None:
    _print_output(_handle_response(client.get("/admin/scheduler")), config.output)


def _cmd_scheduler_trigger(
    config: ClientConfig, client: httpx.Client, args: argparse.Namespace
) -> None:
    response = client.post(f"/admin/scheduler/jobs/{args.job}/trigger")
    _print_output(_handle_response(response), config.output)


def _notification_payload(args: argparse.Namespace) -> Dict[str, Any]:
    if args.rooms and args.devices:
        raise CliError("Use either --room or --device, not both")
    payload: Dict[str, Any] = {
        "title": args.title,
        "body": args.body,
        "notification_type": args.notification_type,
        "target_type": "all_active",
    }
    if args.rooms:
        payload["target_type"] = "specific_rooms"
        payload["target_rooms"] = list(args.rooms)
    elif args.devices:
        payload["target_type"] = "specific_devices"
        payload["target_devices"] = list(args.devices)
    if args.schedule_for:
        payload["schedule_for"] = args.schedule_for
    return payload


def _cmd_notifications_send(
    config: ClientConfig, client: httpx.Client, args: argparse.Namespace
) -> None:
    response = client.post("/admin/notifications/send", json=_notification_payload(args))
    _print_output(_handle_response(response), config.output)


def _cmd_notifications_stats(
    config: ClientConfig, client: httpx.Client, args: argparse.Namespace
) -> None:
    _print_output(_handle_response(client.get("/admin/notifications/stats")), config.output)


def _device_update_payload(args: argparse.Namespace) -> Dict[str, Any]:
    if args.room and args.clear_room:
        raise CliError("--room and --clear-room are mutually exclusive")
    payload: Dict[str, Any] = {}
    if args.room:
        payload["room_number"] = args.room
    elif args.clear_room:
        payload["room_number"] = None
    if args.status:
        payload["status"] = args.status
    if args.bundle is not None:
        payload["assigned_bundle_id"] = args.bundle
    if args.evacuated is not None:
        payload["is_room_evacuated"] = args.evacuated
    if not payload:
        raise CliError("No changes requested")
    return payload


def _cmd_devices_update(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    response = client.patch(f"/admin/devices/{args.device_id}", json=_device_update_payload(args))
    _print_output(_handle_response(response), config.output)


def _cmd_devices_last_sync(
    config: ClientConfig, client: httpx.Client, args: argparse.Namespace
) -> None:
    response = client.get(f"/admin/devices/{args.device_id}/last-sync")
    _print_output(_handle_response(response), config.output)


def _realtime_url(server_url: str, token: str) -> str:
    base = server_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws?{httpx.QueryParams({'token': token})}"


async def _tail_events(
    url: str,
    topics: List[str],
    limit: Optional[int],
    emit: Callable[[Dict[str, Any]], None],
) -> int:
    received = 0
    async with websockets.connect(url) as websocket:
        if topics:
            await websocket.send(json.dumps({"type": "subscribe", "data": {"events": topics}}))
        async for raw in websocket:
            message = json.loads(raw)
            if message.get("type") == "ping":
                await websocket.send(json.dumps({"type": "ping"}))
                continue
            if message.get("type") == "pong":
                continue
            emit(message)
            received += 1
            if limit is not None and received >= limit:
                break
    return received


def _cmd_events_tail(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    if not config.token:
        raise CliError("An admin token is required to stream events")
    url = _realtime_url(config.server_url, config.token)
    try:
        asyncio.run(
            _tail_events(
                url,
                list(args.subscribe),
                args.count,
                lambda message: _print_output(message, config.output),
            )
        )
    except (WebSocketException, OSError) as exc:  # pragma: no cover - CLI feedback path
        raise CliError(f"Realtime connection failed: {exc}") from exc
    except KeyboardInterrupt:  # pragma: no cover - interactive exit
        return


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    try:
        config = _load_config(args)
        if not args.command:
            parser.print_help()
            sys.exit(1)

        client = _build_client(config)
        with client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
