"""Observable state containers for link, room and spectral session state."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Set, Tuple, TypeVar

from .logging import get_logger
from .models import Device, GraphPoint, LightSource, MasterConfig, Room, SpectrumPreset

S = TypeVar("S")

logger = get_logger("spectral")


class ConnectionState(str, Enum):
    """Per-device link lifecycle."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    MONITORING = "monitoring"


@dataclass(frozen=True)
class LinkState:
    """What the device link currently knows about every fixture it has touched."""

    connections: Mapping[str, ConnectionState] = field(default_factory=dict)
    connected: Mapping[str, Device] = field(default_factory=dict)
    device_errors: Mapping[str, str] = field(default_factory=dict)
    last_error: Optional[str] = None

    def connected_devices(self, room_id: Optional[str] = None) -> List[Device]:
        devices = list(self.connected.values())
        if room_id is None:
            return devices
        return [device for device in devices if device.room_id == room_id]


@dataclass(frozen=True)
class RoomsState:
    """Latest room and device records as published after each operation."""

    rooms: Tuple[Room, ...] = ()
    devices: Tuple[Device, ...] = ()
    is_loading: bool = False
    error: Optional[str] = None

    @property
    def unassigned_devices(self) -> Tuple[Device, ...]:
        return tuple(device for device in self.devices if device.room_id is None)


@dataclass(frozen=True)
class SpectralState:
    """One room's spectral editing session."""

    room_id: Optional[str] = None
    active_sources: Tuple[LightSource, ...] = ()
    slider_values: Mapping[str, float] = field(default_factory=dict)
    graph_data: Tuple[GraphPoint, ...] = ()
    presets: Tuple[SpectrumPreset, ...] = ()
    master: MasterConfig = field(default_factory=MasterConfig)
    file_name: Optional[str] = None
    has_spectral_data: bool = False
    is_loading: bool = False
    error: Optional[str] = None
    communication_enabled: bool = True


class StateContainer(Generic[S]):
    """
    Single-owner holder of an immutable state snapshot.

    Writers replace the snapshot through :meth:`update`; observers receive
    every new snapshot through callbacks registered with :meth:`subscribe`.
    """

    def __init__(self, initial: S, name: str = "state") -> None:
        self._value = initial
        self._name = name
        self._subscribers: List[Callable[[S], Any]] = []
        self._pending: Set[asyncio.Task[Any]] = set()

    @property
    def value(self) -> S:
        return self._value

    def update(self, transform: Callable[[S], S]) -> S:
        """
        Apply a read-modify-write to the snapshot and notify subscribers.

        Args:
            transform: Pure function from the current snapshot to the next one

        Returns:
            The new snapshot
        """
        self._value = transform(self._value)
        self._notify(self._value)
        return self._value

    def set(self, value: S) -> S:
        return self.update(lambda _: value)

    def subscribe(self, callback: Callable[[S], Any]) -> Callable[[], None]:
        """
        Register an observer.

        Args:
            callback: Called with each new snapshot (can be async)

        Returns:
            Unsubscribe function
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _notify(self, value: S) -> None:
        for callback in list(self._subscribers):
            try:
                if inspect.iscoroutinefunction(callback):
                    task = asyncio.get_running_loop().create_task(callback(value))
                    self._pending.add(task)
                    task.add_done_callback(self._task_done)
                else:
                    callback(value)
            except Exception:
                logger.exception("State subscriber failed", extra={"container": self._name})

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled() or task.exception() is None:
            return
        exc = task.exception()
        logger.error(
            "State subscriber failed",
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"container": self._name},
        )


def with_entry(mapping: Mapping[str, Any], key: str, value: Any) -> Dict[str, Any]:
    updated = dict(mapping)
    updated[key] = value
    return updated


def without_entry(mapping: Mapping[str, Any], key: str) -> Dict[str, Any]:
    updated = dict(mapping)
    updated.pop(key, None)
    return updated
