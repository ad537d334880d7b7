"""Realtime fan-out of state-change events to connected admin sessions."""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .events import (
    EVENT_CONNECTION_ESTABLISHED,
    EVENT_ERROR,
    EVENT_PING,
    EVENT_PONG,
    EVENT_SUBSCRIPTION_CONFIRMED,
    EVENT_UNSUBSCRIPTION_CONFIRMED,
    SystemEvent,
)
from .logging import get_logger
from .metrics import record_broadcast, record_realtime_eviction, set_realtime_connections

SendCallable = Callable[[Dict[str, Any]], Awaitable[None]]
CloseCallable = Callable[[int, str], Awaitable[None]]

CLOSE_GOING_AWAY = 1001
CLOSE_STALE = 4000


@dataclass
class HubConnection:
    """One authenticated admin session."""

    id: str
    admin_id: int
    username: str
    send: SendCallable = field(repr=False)
    close: CloseCallable = field(repr=False)
    connected_at: float = 0.0
    last_activity: float = 0.0
    subscriptions: Set[str] = field(default_factory=set)

    def as_dict(self, now: float) -> Dict[str, Any]:
        return {
            "id": self.id,
            "admin_id": self.admin_id,
            "username": self.username,
            "connected_seconds": round(now - self.connected_at, 1),
            "idle_seconds": round(now - self.last_activity, 1),
            "subscriptions": sorted(self.subscriptions),
        }


def _topic_list(data: Any) -> List[str]:
    events = data.get("events") if isinstance(data, dict) else None
    if not isinstance(events, list):
        raise ValueError("data.events must be a list of event names")
    return [str(event) for event in events if str(event).strip()]


class BroadcastHub:
    """Registry of admin connections with best-effort, non-blocking delivery.

    ``broadcast`` never awaits a socket: each send runs in its own task and a
    failed send evicts the connection. A liveness loop sends a ``ping`` to
    idle sessions and a completed ping counts as activity; peers that stop
    answering transport pings are closed by the server and unregister. A ping
    that fails evicts at once. A session with no activity for longer than
    ``ping_interval * stale_multiplier`` (its ping stuck in flight) is evicted
    by the next sweep.
    """

    def __init__(
        self,
        *,
        ping_interval: float = 60.0,
        stale_multiplier: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ping_interval = ping_interval
        self.stale_after = ping_interval * stale_multiplier
        self._clock = clock
        self._connections: Dict[str, HubConnection] = {}
        self._pending: Set[asyncio.Task[None]] = set()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self.logger = get_logger("hoteltv.realtime")

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connections(self) -> List[HubConnection]:
        return list(self._connections.values())

    async def start(self) -> None:
        if self._task:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self.logger.info(
            "Realtime hub started",
            extra={"ping_interval": self.ping_interval, "stale_after": self.stale_after},
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        for conn in list(self._connections.values()):
            self._evict(conn, "shutdown", CLOSE_GOING_AWAY, "Server shutting down")
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        self.logger.info("Realtime hub stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self._sleep_with_stop(self.ping_interval)
            if self._stop_event.is_set():
                break
            self.sweep()

    async def _sleep_with_stop(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return

    async def register(
        self,
        admin_id: int,
        username: str,
        send: SendCallable,
        close: CloseCallable,
    ) -> HubConnection:
        """Add an accepted connection and greet it with ``connection_established``."""

        now = self._clock()
        conn = HubConnection(
            id=uuid.uuid4().hex,
            admin_id=admin_id,
            username=username,
            send=send,
            close=close,
            connected_at=now,
            last_activity=now,
        )
        self._connections[conn.id] = conn
        set_realtime_connections(len(self._connections))
        self.logger.info(
            "Admin connected to realtime channel",
            extra={"connection_id": conn.id, "username": username},
        )
        await send(
            SystemEvent.create(
                EVENT_CONNECTION_ESTABLISHED,
                {"connection_id": conn.id, "user": {"id": admin_id, "username": username}},
            ).to_message()
        )
        return conn

    def unregister(self, connection_id: str) -> bool:
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return False
        set_realtime_connections(len(self._connections))
        self.logger.info(
            "Admin disconnected from realtime channel",
            extra={"connection_id": connection_id, "username": conn.username},
        )
        return True

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _evict(self, conn: HubConnection, reason: str, code: int, message: str) -> None:
        if self._connections.pop(conn.id, None) is None:
            return
        set_realtime_connections(len(self._connections))
        record_realtime_eviction(reason)
        self.logger.info(
            "Evicted realtime connection",
            extra={"connection_id": conn.id, "username": conn.username, "reason": reason},
        )
        self._spawn(self._close_quietly(conn, code, message))

    async def _close_quietly(self, conn: HubConnection, code: int, message: str) -> None:
        try:
            await conn.close(code, message)
        except Exception as exc:
            self.logger.debug(
                "Close failed on evicted connection",
                extra={"connection_id": conn.id, "error": str(exc)},
            )

    async def _deliver(self, conn: HubConnection, message: Dict[str, Any]) -> bool:
        try:
            await conn.send(message)
        except Exception as exc:
            self.logger.warning(
                "Realtime send failed",
                extra={"connection_id": conn.id, "error": str(exc)},
            )
            self._evict(conn, "send_failed", CLOSE_GOING_AWAY, "Send failed")
            return False
        return True

    async def _keepalive(self, conn: HubConnection) -> None:
        delivered = await self._deliver(conn, SystemEvent.create(EVENT_PING, {}).to_message())
        if delivered and conn.id in self._connections:
            conn.last_activity = self._clock()

    def broadcast(
        self, event_type: str, data: Dict[str, Any], topic: Optional[str] = None
    ) -> int:
        """Queue ``event_type`` to every connection, or only ``topic`` subscribers.

        Returns the number of connections targeted.
        """

        message = SystemEvent.create(event_type, data).to_message()
        targets = [
            conn
            for conn in self._connections.values()
            if topic is None or topic in conn.subscriptions
        ]
        for conn in targets:
            self._spawn(self._deliver(conn, message))
        record_broadcast(event_type)
        self.logger.debug(
            "Broadcast event",
            extra={"event": event_type, "topic": topic, "recipients": len(targets)},
        )
        return len(targets)

    async def handle_message(self, connection_id: str, raw: str) -> None:
        """Process one client frame: ``ping``, ``subscribe`` or ``unsubscribe``."""

        conn = self._connections.get(connection_id)
        if conn is None:
            return
        conn.last_activity = self._clock()
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            await self._reply(conn, EVENT_ERROR, {"message": "Invalid JSON"})
            return
        if not isinstance(message, dict):
            await self._reply(conn, EVENT_ERROR, {"message": "Message must be a JSON object"})
            return
        message_type = message.get("type")
        data = message.get("data")
        if message_type == "ping":
            await self._reply(conn, EVENT_PONG, {})
        elif message_type in ("subscribe", "unsubscribe"):
            try:
                topics = _topic_list(data)
            except ValueError as exc:
                await self._reply(conn, EVENT_ERROR, {"message": str(exc)})
                return
            if message_type == "subscribe":
                conn.subscriptions.update(topics)
                reply = EVENT_SUBSCRIPTION_CONFIRMED
            else:
                conn.subscriptions.difference_update(topics)
                reply = EVENT_UNSUBSCRIPTION_CONFIRMED
            await self._reply(
                conn, reply, {"events": topics, "subscriptions": sorted(conn.subscriptions)}
            )
        else:
            await self._reply(conn, EVENT_ERROR, {"message": f"Unknown message type: {message_type}"})

    async def _reply(self, conn: HubConnection, event_type: str, data: Dict[str, Any]) -> None:
        await self._deliver(conn, SystemEvent.create(event_type, data).to_message())

    def sweep(self) -> Dict[str, int]:
        """Ping idle connections and evict those with no recent activity."""

        now = self._clock()
        pinged = 0
        evicted = 0
        for conn in list(self._connections.values()):
            idle = now - conn.last_activity
            if idle > self.stale_after:
                self._evict(conn, "stale", CLOSE_STALE, "Connection idle too long")
                evicted += 1
            elif idle >= self.ping_interval:
                self._spawn(self._keepalive(conn))
                pinged += 1
        if pinged or evicted:
            self.logger.debug(
                "Realtime liveness sweep", extra={"pinged": pinged, "evicted": evicted}
            )
        return {"pinged": pinged, "evicted": evicted}

    async def drain(self) -> None:
        """Wait for every queued send and close to finish."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "connections": len(self._connections),
            "clients": [conn.as_dict(now) for conn in self._connections.values()],
        }
