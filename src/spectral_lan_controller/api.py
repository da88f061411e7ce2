"""HTTP API for fixtures, rooms, spectral sessions and routines."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .config import Config
from .errors import NotFoundError, ParseError, TransportError, ValidationError
from .health import HealthMonitor
from .link import DeviceLink
from .logging import get_logger, redact_mapping
from .metrics import (
    METRICS_CONTENT_TYPE,
    latest_metrics,
    observe_request,
)
from .models import Device, Room
from .rooms import RoomOrchestrator
from .routines import WEEKDAYS, Routine
from .store import RecordStore
from .transport import TransportResult


def _build_auth_dependency(config: Config) -> Callable[[Request], Any]:
    async def _auth_guard(request: Request) -> None:
        if not config.api_key and not config.api_bearer_token:
            return
        api_key_header = request.headers.get("X-API-Key")
        auth_header = request.headers.get("Authorization")
        if config.api_key and api_key_header == config.api_key:
            return
        if config.api_key and auth_header and auth_header.lower().startswith("apikey "):
            if auth_header.split(" ", 1)[1] == config.api_key:
                return
        if config.api_bearer_token and auth_header and auth_header.startswith("Bearer "):
            if auth_header.split(" ", 1)[1] == config.api_bearer_token:
                return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _auth_guard


class DeviceCreate(BaseModel):
    """Payload for pairing a fixture."""

    id: str
    address: str
    name: Optional[str] = None
    model: Optional[str] = None


class DeviceOut(BaseModel):
    """Device response model."""

    id: str
    name: str
    address: Optional[str]
    online: bool
    model: Optional[str]
    firmware_version: Optional[str]
    channel_count: int
    channel_names: List[str]
    pwm_values: List[int]
    is_on: bool
    room_id: Optional[str]
    room_name: Optional[str]
    last_seen: Optional[str]
    connection: str = "disconnected"
    error: Optional[str] = None


class RoomAssignment(BaseModel):
    """Payload for moving a fixture into a room."""

    room_id: str


class RoomCreate(BaseModel):
    name: str


class RoomOut(BaseModel):
    """Room response model; spectral data is summarized, not inlined."""

    id: str
    name: str
    device_ids: List[str]
    member_count: int
    allowed_model: Optional[str]
    is_on: bool
    has_spectral_data: bool
    file_name: Optional[str]
    preset_count: int
    created_at: str
    modified_at: str


class RoomStatsOut(BaseModel):
    total: int
    online: int
    offline: int
    on: int
    off: int
    model: Optional[str]


class PresetCreate(BaseModel):
    name: str
    description: Optional[str] = None


class PresetOut(BaseModel):
    id: str
    name: str
    slider_values: Dict[str, float]
    created_at: str
    description: Optional[str]


class SliderUpdate(BaseModel):
    value: float = Field(ge=0.0, le=1.0)


class MasterValue(BaseModel):
    value: float = Field(ge=0.0, le=1.0)


class CommunicationUpdate(BaseModel):
    enabled: bool


class RoutineCreate(BaseModel):
    """Payload for scheduling a routine in a room."""

    name: str
    time: str
    days: List[str] = Field(default_factory=lambda: list(WEEKDAYS))
    enabled: bool = True
    device_power: bool = True
    preset_id: Optional[str] = None


class RoutineOut(BaseModel):
    id: int
    room_id: str
    room_name: Optional[str]
    name: str
    time: str
    days: List[str]
    days_binary: str
    enabled: bool
    device_power: bool
    preset_id: Optional[str]
    preset_name: Optional[str]
    slider_values: Dict[str, float]
    created_at: str


def _results_out(results: Mapping[str, TransportResult]) -> Dict[str, Dict[str, Any]]:
    return {
        device_id: {"ok": result.ok, "error": result.error}
        for device_id, result in results.items()
    }


def _jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [
        {key: value for key, value in error.items() if key in ("loc", "msg", "type")}
        for error in exc.errors()
    ]


def create_app(
    config: Config,
    store: RecordStore,
    rooms: RoomOrchestrator,
    link: DeviceLink,
    health: Optional[HealthMonitor] = None,
) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("spectral.api")
    request_logger = get_logger("spectral.api.middleware")
    auth_dependency = _build_auth_dependency(config)
    guarded = [Depends(auth_dependency)]
    app = FastAPI(
        title="Spectral LAN Controller API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    def _device_out(device: Device) -> DeviceOut:
        link_state = link.state.value
        data = device.as_dict()
        data["connection"] = link.connection_state(device.id).value
        data["error"] = link_state.device_errors.get(device.id)
        return DeviceOut(**data)

    def _room_out(room: Room) -> RoomOut:
        return RoomOut(
            id=room.id,
            name=room.name,
            device_ids=list(room.device_ids),
            member_count=room.member_count,
            allowed_model=room.allowed_model,
            is_on=room.is_on,
            has_spectral_data=room.spectral is not None,
            file_name=room.spectral.file_name if room.spectral else None,
            preset_count=len(room.spectral.presets) if room.spectral else 0,
            created_at=room.created_at,
            modified_at=room.modified_at,
        )

    def _routine_out(routine: Routine) -> RoutineOut:
        data = routine.as_dict()
        data["days_binary"] = routine.days_as_binary()
        return RoutineOut(**data)

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        redacted_headers = redact_mapping(dict(request.headers))
        response = await call_next(request)
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

    def _error_response(request: Request, status_code: int, exc: Exception) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": status_code, "detail": str(exc)},
        )
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def _validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(request, status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(NotFoundError)
    async def _not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(request, status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(ParseError)
    async def _parse_error_handler(request: Request, exc: ParseError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc), "section": exc.section},
        )

    @app.exception_handler(TransportError)
    async def _transport_error_handler(request: Request, exc: TransportError) -> JSONResponse:
        return _error_response(request, status.HTTP_502_BAD_GATEWAY, exc)

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse(
            status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": _jsonable_errors(exc)},
        )

    @app.get("/health", dependencies=guarded)
    async def health_summary() -> Dict[str, Any]:
        if health is None:
            return {"status": "ok", "subsystems": {}}
        return {"status": health.overall(), "subsystems": dict(await health.snapshot())}

    @app.get("/status", dependencies=guarded)
    async def status_summary() -> Dict[str, int]:
        counts = dict(await store.stats())
        counts["connected"] = len(link.state.value.connected)
        return counts

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    # Devices

    @app.get("/devices", dependencies=guarded, response_model=List[DeviceOut])
    async def list_devices() -> List[DeviceOut]:
        return [_device_out(device) for device in await rooms.list_devices()]

    @app.post(
        "/devices",
        dependencies=guarded,
        response_model=DeviceOut,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_device(payload: DeviceCreate) -> DeviceOut:
        device = await rooms.add_device(payload.id, payload.address, name=payload.name, model=payload.model)
        return _device_out(device)

    @app.post("/devices/discover", dependencies=guarded, response_model=List[DeviceOut])
    async def discover_devices() -> List[DeviceOut]:
        return [_device_out(device) for device in await rooms.discover_devices()]

    @app.get("/devices/{device_id}", dependencies=guarded, response_model=DeviceOut)
    async def get_device(device_id: str) -> DeviceOut:
        return _device_out(await rooms.get_device(device_id))

    @app.delete("/devices/{device_id}", dependencies=guarded, status_code=status.HTTP_204_NO_CONTENT)
    async def delete_device(device_id: str) -> Response:
        await rooms.remove_device(device_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/devices/{device_id}/connect", dependencies=guarded, response_model=DeviceOut)
    async def connect_device(device_id: str) -> DeviceOut:
        return _device_out(await rooms.connect_device(device_id))

    @app.put("/devices/{device_id}/room", dependencies=guarded, response_model=DeviceOut)
    async def assign_device(device_id: str, payload: RoomAssignment) -> DeviceOut:
        return _device_out(await rooms.assign_device(device_id, payload.room_id))

    @app.delete("/devices/{device_id}/room", dependencies=guarded, response_model=DeviceOut)
    async def unassign_device(device_id: str) -> DeviceOut:
        return _device_out(await rooms.unassign_device(device_id))

    # Rooms

    @app.get("/rooms", dependencies=guarded, response_model=List[RoomOut])
    async def list_rooms() -> List[RoomOut]:
        return [_room_out(room) for room in await rooms.list_rooms()]

    @app.post("/rooms", dependencies=guarded, response_model=RoomOut, status_code=status.HTTP_201_CREATED)
    async def create_room(payload: RoomCreate) -> RoomOut:
        return _room_out(await rooms.create_room(payload.name))

    @app.get("/rooms/{room_id}", dependencies=guarded, response_model=RoomOut)
    async def get_room(room_id: str) -> RoomOut:
        return _room_out(await rooms.get_room(room_id))

    @app.patch("/rooms/{room_id}", dependencies=guarded, response_model=RoomOut)
    async def rename_room(room_id: str, payload: RoomCreate) -> RoomOut:
        return _room_out(await rooms.rename_room(room_id, payload.name))

    @app.delete("/rooms/{room_id}", dependencies=guarded, status_code=status.HTTP_204_NO_CONTENT)
    async def delete_room(room_id: str) -> Response:
        await rooms.delete_room(room_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/rooms/{room_id}/stats", dependencies=guarded, response_model=RoomStatsOut)
    async def room_stats(room_id: str) -> RoomStatsOut:
        stats = await rooms.room_stats(room_id)
        return RoomStatsOut(**stats.__dict__)

    @app.get("/rooms/{room_id}/compatible-devices", dependencies=guarded, response_model=List[DeviceOut])
    async def compatible_devices(room_id: str) -> List[DeviceOut]:
        return [_device_out(device) for device in await rooms.compatible_devices(room_id)]

    @app.post("/rooms/{room_id}/power", dependencies=guarded)
    async def toggle_power(room_id: str) -> Dict[str, Any]:
        outcome = await rooms.toggle_room_power(room_id)
        return outcome.as_dict()

    # Presets

    @app.get("/rooms/{room_id}/presets", dependencies=guarded, response_model=List[PresetOut])
    async def list_presets(room_id: str) -> List[PresetOut]:
        return [PresetOut(**preset.as_dict()) for preset in await rooms.list_presets(room_id)]

    @app.post(
        "/rooms/{room_id}/presets",
        dependencies=guarded,
        response_model=PresetOut,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_preset(room_id: str, payload: PresetCreate) -> PresetOut:
        preset = await rooms.create_preset(room_id, payload.name, payload.description)
        return PresetOut(**preset.as_dict())

    @app.post("/rooms/{room_id}/presets/{preset_id}/apply", dependencies=guarded)
    async def apply_preset(room_id: str, preset_id: str) -> Dict[str, Any]:
        results = await rooms.apply_preset(room_id, preset_id)
        return {"room_id": room_id, "preset_id": preset_id, "results": _results_out(results)}

    @app.delete(
        "/rooms/{room_id}/presets/{preset_id}",
        dependencies=guarded,
        status_code=status.HTTP_204_NO_CONTENT,
    )
    async def delete_preset(room_id: str, preset_id: str) -> Response:
        await rooms.delete_preset(room_id, preset_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Spectral session

    @app.get("/rooms/{room_id}/spectrum", dependencies=guarded)
    async def spectrum(room_id: str) -> Dict[str, Any]:
        session = await rooms.open_session(room_id)
        return session.describe()

    @app.put("/rooms/{room_id}/spectrum/profile", dependencies=guarded)
    async def import_profile(
        room_id: str,
        request: Request,
        file_name: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        data = await request.body()
        if not data:
            raise ValidationError("Profile body is empty")
        session = await rooms.open_session(room_id)
        await session.import_profile(data, file_name=file_name, model_hint=model)
        return session.describe()

    @app.put("/rooms/{room_id}/spectrum/sliders/{source}", dependencies=guarded)
    async def update_slider(room_id: str, source: str, payload: SliderUpdate) -> Dict[str, Any]:
        session = await rooms.open_session(room_id)
        applied = await session.update_slider(source, payload.value)
        return {
            "source": source,
            "applied": applied,
            "value": session.state.value.slider_values.get(source),
        }

    @app.post("/rooms/{room_id}/spectrum/master", dependencies=guarded)
    async def toggle_master(room_id: str) -> Dict[str, Any]:
        session = await rooms.open_session(room_id)
        master = await session.toggle_master_mode()
        return master.as_dict()

    @app.put("/rooms/{room_id}/spectrum/master", dependencies=guarded)
    async def master_value(room_id: str, payload: MasterValue) -> Dict[str, Any]:
        session = await rooms.open_session(room_id)
        results = await session.update_master_value(payload.value)
        return {
            "master": session.state.value.master.as_dict(),
            "slider_values": dict(session.state.value.slider_values),
            "results": _results_out(results),
        }

    @app.post("/rooms/{room_id}/spectrum/freeze/{source}", dependencies=guarded)
    async def toggle_freeze(room_id: str, source: str) -> Dict[str, Any]:
        session = await rooms.open_session(room_id)
        frozen = await session.toggle_freeze(source)
        return {"source": source, "frozen": frozen}

    @app.post("/rooms/{room_id}/spectrum/reset", dependencies=guarded)
    async def reset_spectrum(room_id: str) -> Dict[str, Any]:
        session = await rooms.open_session(room_id)
        results = await session.reset_to_initial()
        return {
            "slider_values": dict(session.state.value.slider_values),
            "results": _results_out(results),
        }

    @app.put("/rooms/{room_id}/spectrum/communication", dependencies=guarded)
    async def set_communication(room_id: str, payload: CommunicationUpdate) -> Dict[str, Any]:
        session = await rooms.open_session(room_id)
        session.set_communication(payload.enabled)
        return {"communication_enabled": session.state.value.communication_enabled}

    # Routines

    @app.get("/rooms/{room_id}/routines", dependencies=guarded, response_model=List[RoutineOut])
    async def list_routines(room_id: str) -> List[RoutineOut]:
        return [_routine_out(routine) for routine in await rooms.list_routines(room_id)]

    @app.post(
        "/rooms/{room_id}/routines",
        dependencies=guarded,
        response_model=RoutineOut,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_routine(room_id: str, payload: RoutineCreate) -> RoutineOut:
        routine = await rooms.create_routine(
            Routine(
                room_id=room_id,
                name=payload.name,
                time=payload.time,
                days=tuple(payload.days),
                enabled=payload.enabled,
                device_power=payload.device_power,
                preset_id=payload.preset_id,
            )
        )
        return _routine_out(routine)

    @app.delete("/routines/{routine_id}", dependencies=guarded, status_code=status.HTTP_204_NO_CONTENT)
    async def delete_routine(routine_id: int) -> Response:
        await rooms.delete_routine(routine_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    logger.debug("API routes registered", extra={"routes": len(app.routes)})
    return app


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(
        self,
        config: Config,
        store: RecordStore,
        rooms: RoomOrchestrator,
        link: DeviceLink,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.rooms = rooms
        self.link = link
        self.health = health
        self.logger = get_logger("spectral.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.store, self.rooms, self.link, self.health)
        uvicorn_config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info("API server starting", extra={"port": self.config.api_port})

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
