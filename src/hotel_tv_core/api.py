"""HTTP and realtime API for TV devices and hotel administrators."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from .auth import AdminAuthenticator, AdminIdentity
from .config import Config
from .db import format_ts, parse_ts, utcnow
from .device_sync import DeviceSyncService
from .logging import get_logger, redact_mapping
from .metrics import CONTENT_TYPE_LATEST, latest_metrics, observe_request
from .notifications import NotificationEngine, NotificationTarget
from .pms import PmsCredentials
from .realtime import BroadcastHub
from .reconciliation import PmsSyncService
from .scheduler import Scheduler
from .store import ACK_NOT_FOUND, ACK_UPDATED, UNSET, HotelStore


@dataclass
class ApiContext:
    """Services the HTTP surface delegates to."""

    store: HotelStore
    devices: DeviceSyncService
    notifications: NotificationEngine
    pms: PmsSyncService
    scheduler: Scheduler
    hub: BroadcastHub
    authenticator: AdminAuthenticator


def _build_admin_dependency(authenticator: AdminAuthenticator) -> Callable[..., Any]:
    async def _admin_guard(request: Request) -> AdminIdentity:
        auth_header = request.headers.get("Authorization") or ""
        token = None
        if auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1].strip()
        admin = await authenticator.authenticate(token)
        if admin is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return admin

    return _admin_guard


class DeviceSyncRequest(BaseModel):
    device_id: Optional[str] = None


class NotificationStatusRequest(BaseModel):
    """Acknowledgement sent by a TV after showing a notification."""

    device_id: Optional[str] = None
    notification_id: Optional[Any] = None
    status: Optional[str] = None


class PmsTestRequest(BaseModel):
    """Credentials to test; omit all fields to test the stored configuration."""

    base_url: Optional[str] = None
    api_key: Optional[str] = None
    username: Optional[str] = None


class DeviceUpdate(BaseModel):
    """Partial admin edit; only fields present in the body are applied."""

    room_number: Optional[str] = None
    status: Optional[str] = None
    assigned_bundle_id: Optional[int] = None
    is_room_evacuated: Optional[bool] = None


class DeviceOut(BaseModel):
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


class NotificationSend(BaseModel):
    """Ad hoc notification fan-out."""

    title: Optional[str] = None
    body: Optional[str] = None
    notification_type: str = "manual"
    target_type: Optional[str] = None
    target_rooms: Optional[List[str]] = None
    target_devices: Optional[List[str]] = None
    schedule_for: Optional[str] = None


def _validation_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


def create_app(config: Config, context: ApiContext) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("hoteltv.api")
    request_logger = get_logger("hoteltv.api.middleware")
    admin_dependency = _build_admin_dependency(context.authenticator)
    app = FastAPI(
        title="Hotel TV Core API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        redacted_headers = redact_mapping(dict(request.headers))
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled API error", extra={"path": request.url.path})
            response = JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": "Internal server error"},
            )
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        duration_seconds = time.perf_counter() - start
        observe_request(request.method, path_template, response.status_code, duration_seconds)
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redacted_headers,
            },
        )
        return response

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(ValueError)
    async def _value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        request_logger.warning(
            "Rejected request", extra={"path": request.url.path, "detail": str(exc)}
        )
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": _validation_errors(exc)},
        )

    # Open

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        await context.store.ping()
        return {
            "status": "ok",
            "timestamp": format_ts(utcnow()),
            "scheduler": context.scheduler.is_started,
            "realtime_connections": context.hub.connection_count,
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=CONTENT_TYPE_LATEST)

    # Device protocol

    @app.post("/device/sync")
    async def device_sync(payload: DeviceSyncRequest) -> Dict[str, Any]:
        return await context.devices.sync(payload.device_id)

    @app.post("/device/notification-status")
    async def notification_status(payload: NotificationStatusRequest) -> Dict[str, Any]:
        outcome = await context.devices.update_notification_status(
            payload.device_id, payload.notification_id, payload.status
        )
        if outcome == ACK_NOT_FOUND:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
        message = (
            "Notification status updated"
            if outcome == ACK_UPDATED
            else "Notification already acknowledged"
        )
        return {"success": True, "changed": outcome == ACK_UPDATED, "message": message}

    @app.post("/device/clear-status")
    async def clear_status(payload: DeviceSyncRequest) -> Dict[str, Any]:
        device = await context.devices.clear_evacuation(payload.device_id)
        if device is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        return {"success": True, "message": "Evacuation status cleared"}

    # Admin

    @app.post("/admin/pms/test-connection")
    async def pms_test_connection(
        payload: Optional[PmsTestRequest] = None,
        admin: AdminIdentity = Depends(admin_dependency),
    ) -> JSONResponse:
        credentials = None
        if payload is not None and (payload.base_url or payload.api_key or payload.username):
            credentials = PmsCredentials.from_mapping(payload.model_dump())
        result = await context.pms.test_connection(credentials)
        logger.info(
            "PMS connection test requested",
            extra={"admin": admin.username, "success": result["success"]},
        )
        if result["success"]:
            return JSONResponse(
                content={
                    "success": True,
                    "message": "PMS connection successful",
                    "connection_info": result["info"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={**result, "message": "PMS connection failed"},
        )

    @app.post("/admin/pms/force-sync", dependencies=[Depends(admin_dependency)])
    async def pms_force_sync() -> JSONResponse:
        result = await context.pms.force_sync()
        if result["success"]:
            return JSONResponse(content=result)
        code = (
            status.HTTP_409_CONFLICT
            if result["error"] == "Sync already in progress"
            else status.HTTP_400_BAD_REQUEST
        )
        return JSONResponse(status_code=code, content=result)

    @app.get("/admin/pms/status", dependencies=[Depends(admin_dependency)])
    async def pms_status() -> Dict[str, Any]:
        return await context.pms.sync_status()

    @app.post("/admin/pms/reload", dependencies=[Depends(admin_dependency)])
    async def pms_reload() -> Dict[str, Any]:
        configured = await context.pms.update_configuration()
        return {"success": True, "configured": configured}

    @app.get("/admin/scheduler", dependencies=[Depends(admin_dependency)])
    async def scheduler_status() -> Dict[str, Any]:
        return await context.scheduler.status()

    @app.post("/admin/scheduler/jobs/{name}/trigger", dependencies=[Depends(admin_dependency)])
    async def scheduler_trigger(name: str) -> Dict[str, Any]:
        try:
            return await context.scheduler.trigger(name)
        except KeyError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found") from exc

    @app.patch(
        "/admin/devices/{device_id}",
        dependencies=[Depends(admin_dependency)],
        response_model=DeviceOut,
    )
    async def update_device(device_id: str, payload: DeviceUpdate) -> DeviceOut:
        fields = payload.model_fields_set
        updated = await context.devices.admin_update(
            device_id,
            room_number=payload.room_number if "room_number" in fields else UNSET,
            status=payload.status,
            assigned_bundle_id=(
                payload.assigned_bundle_id if "assigned_bundle_id" in fields else UNSET
            ),
            is_room_evacuated=payload.is_room_evacuated,
        )
        if updated is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        return DeviceOut(**updated.__dict__)

    @app.get("/admin/devices/{device_id}/last-sync", dependencies=[Depends(admin_dependency)])
    async def device_last_sync(device_id: str) -> Dict[str, Any]:
        cached = await context.devices.cached_response(device_id)
        if cached is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="No cached sync response"
            )
        return cached

    @app.post("/admin/notifications/send")
    async def send_notifications(
        payload: NotificationSend, admin: AdminIdentity = Depends(admin_dependency)
    ) -> Dict[str, Any]:
        target = NotificationTarget.build(
            payload.target_type, payload.target_rooms, payload.target_devices
        )
        count = await context.notifications.send_notification(
            payload.title or "",
            payload.body or "",
            target,
            notification_type=payload.notification_type,
            scheduled_for=parse_ts(payload.schedule_for),
        )
        logger.info(
            "Admin sent notifications",
            extra={"admin": admin.username, "count": count, "target": target.kind},
        )
        return {"success": True, "count": count}

    @app.get("/admin/notifications/stats", dependencies=[Depends(admin_dependency)])
    async def notification_stats() -> Dict[str, Any]:
        return await context.notifications.notification_stats()

    @app.get("/admin/realtime", dependencies=[Depends(admin_dependency)])
    async def realtime_stats() -> Dict[str, Any]:
        return context.hub.stats()

    # Realtime

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket, token: Optional[str] = None) -> None:
        admin = await context.authenticator.authenticate(token)
        if admin is None:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await websocket.accept()

        async def _send(message: Dict[str, Any]) -> None:
            await websocket.send_json(message)

        async def _close(code: int, reason: str) -> None:
            await websocket.close(code=code, reason=reason)

        conn = await context.hub.register(admin.id, admin.username, _send, _close)
        try:
            while True:
                raw = await websocket.receive_text()
                await context.hub.handle_message(conn.id, raw)
        except WebSocketDisconnect:
            logger.info("Realtime client disconnected", extra={"connection_id": conn.id})
        except Exception as exc:
            logger.warning(
                "Realtime connection error",
                extra={"connection_id": conn.id, "error": str(exc)},
            )
        finally:
            context.hub.unregister(conn.id)

    return app


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(self, config: Config, context: ApiContext) -> None:
        self.config = config
        self.context = context
        self.logger = get_logger("hoteltv.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    def server_config(self, app: FastAPI) -> uvicorn.Config:
        # Protocol-level pings keep passive browser sessions alive and surface
        # dead peers as WebSocketDisconnect.
        return uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
            ws_ping_interval=self.config.realtime_ping_interval,
            ws_ping_timeout=self.config.realtime_ping_interval * self.config.realtime_stale_multiplier,
        )

    async def start(self) -> None:
        if self._server:
            return
        self._server = uvicorn.Server(config=self.server_config(create_app(self.config, self.context)))
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info(
            "API server starting",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
