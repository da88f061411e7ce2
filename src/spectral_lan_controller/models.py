"""Device, room and spectral records with JSON document round-tripping."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

MAX_CHANNELS = 6


def now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text else None


def _float_map(value: Any) -> Dict[str, float]:
    if not isinstance(value, Mapping):
        return {}
    return {str(key): float(item) for key, item in value.items()}


@dataclass(frozen=True)
class LightSource:
    """One emitter family in a spectral profile."""

    name: str
    color: str = "#FFFFFF"
    intensity_factor: float = 1.0
    initial_power: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "color": self.color,
            "intensity_factor": self.intensity_factor,
            "initial_power": self.initial_power,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LightSource":
        return cls(
            name=str(data["name"]),
            color=str(data.get("color") or "#FFFFFF"),
            intensity_factor=float(data.get("intensity_factor", 1.0)),
            initial_power=float(data.get("initial_power", 0.0)),
        )


@dataclass(frozen=True)
class SpectralPoint:
    """Base intensity of every source at one wavelength."""

    wavelength: float
    intensities: Mapping[str, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"wavelength": self.wavelength, "intensities": dict(self.intensities)}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SpectralPoint":
        return cls(
            wavelength=float(data["wavelength"]),
            intensities=_float_map(data.get("intensities")),
        )


@dataclass(frozen=True)
class SpectralProfile:
    """Immutable parsed spectral data, optionally bound to a fixture model."""

    sources: Tuple[LightSource, ...]
    spectrum: Tuple[SpectralPoint, ...]
    device_model: Optional[str] = None

    @property
    def source_names(self) -> Tuple[str, ...]:
        return tuple(source.name for source in self.sources)

    def source(self, name: str) -> Optional[LightSource]:
        for source in self.sources:
            if source.name == name:
                return source
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sources": [source.as_dict() for source in self.sources],
            "spectrum": [point.as_dict() for point in self.spectrum],
            "device_model": self.device_model,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SpectralProfile":
        return cls(
            sources=tuple(LightSource.from_mapping(item) for item in data.get("sources") or ()),
            spectrum=tuple(SpectralPoint.from_mapping(item) for item in data.get("spectrum") or ()),
            device_model=_opt_str(data.get("device_model")),
        )


@dataclass(frozen=True)
class GraphPoint:
    """Normalized output intensity at one wavelength."""

    wavelength: float
    intensity: float

    def as_dict(self) -> Dict[str, float]:
        return {"wavelength": self.wavelength, "intensity": self.intensity}


@dataclass(frozen=True)
class SpectrumPreset:
    """Named snapshot of every slider value."""

    id: str
    name: str
    slider_values: Mapping[str, float]
    created_at: str = field(default_factory=now_iso)
    description: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "slider_values": dict(self.slider_values),
            "created_at": self.created_at,
            "description": self.description,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SpectrumPreset":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            slider_values=_float_map(data.get("slider_values")),
            created_at=str(data.get("created_at") or now_iso()),
            description=_opt_str(data.get("description")),
        )


@dataclass(frozen=True)
class MasterConfig:
    """Master scaling state; base values are captured when master mode is enabled."""

    enabled: bool = False
    value: float = 1.0
    frozen: FrozenSet[str] = frozenset()
    base_values: Mapping[str, float] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "value": self.value,
            "frozen": sorted(self.frozen),
            "base_values": dict(self.base_values),
        }

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "MasterConfig":
        if not data:
            return cls()
        return cls(
            enabled=bool(data.get("enabled", False)),
            value=float(data.get("value", 1.0)),
            frozen=frozenset(str(item) for item in data.get("frozen") or ()),
            base_values=_float_map(data.get("base_values")),
        )


@dataclass(frozen=True)
class RoomSpectralConfig:
    """Spectral state owned by exactly one room."""

    profile: SpectralProfile
    slider_values: Mapping[str, float] = field(default_factory=dict)
    presets: Tuple[SpectrumPreset, ...] = ()
    master: MasterConfig = field(default_factory=MasterConfig)
    file_name: Optional[str] = None
    last_computed: str = field(default_factory=now_iso)

    @property
    def bound_model(self) -> Optional[str]:
        return self.profile.device_model

    def preset(self, preset_id: str) -> Optional[SpectrumPreset]:
        for preset in self.presets:
            if preset.id == preset_id:
                return preset
        return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile.as_dict(),
            "slider_values": dict(self.slider_values),
            "presets": [preset.as_dict() for preset in self.presets],
            "master": self.master.as_dict(),
            "file_name": self.file_name,
            "last_computed": self.last_computed,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RoomSpectralConfig":
        return cls(
            profile=SpectralProfile.from_mapping(data.get("profile") or {}),
            slider_values=_float_map(data.get("slider_values")),
            presets=tuple(SpectrumPreset.from_mapping(item) for item in data.get("presets") or ()),
            master=MasterConfig.from_mapping(data.get("master")),
            file_name=_opt_str(data.get("file_name")),
            last_computed=str(data.get("last_computed") or now_iso()),
        )


@dataclass(frozen=True)
class Device:
    """A networked LED fixture and its last known state."""

    id: str
    name: str
    address: Optional[str] = None
    online: bool = False
    model: Optional[str] = None
    firmware_version: Optional[str] = None
    channel_count: int = 0
    channel_names: Tuple[str, ...] = ()
    pwm_values: Tuple[int, ...] = ()
    is_on: bool = False
    room_id: Optional[str] = None
    room_name: Optional[str] = None
    last_seen: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "online": self.online,
            "model": self.model,
            "firmware_version": self.firmware_version,
            "channel_count": self.channel_count,
            "channel_names": list(self.channel_names),
            "pwm_values": list(self.pwm_values),
            "is_on": self.is_on,
            "room_id": self.room_id,
            "room_name": self.room_name,
            "last_seen": self.last_seen,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Device":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            address=_opt_str(data.get("address")),
            online=bool(data.get("online", False)),
            model=_opt_str(data.get("model")),
            firmware_version=_opt_str(data.get("firmware_version")),
            channel_count=int(data.get("channel_count") or 0),
            channel_names=tuple(str(item) for item in data.get("channel_names") or ()),
            pwm_values=tuple(int(item) for item in data.get("pwm_values") or ()),
            is_on=bool(data.get("is_on", False)),
            room_id=_opt_str(data.get("room_id")),
            room_name=_opt_str(data.get("room_name")),
            last_seen=_opt_str(data.get("last_seen")),
        )


@dataclass(frozen=True)
class Room:
    """A named group of same-model fixtures sharing one spectral configuration."""

    id: str
    name: str
    device_ids: Tuple[str, ...] = ()
    member_count: int = 0
    allowed_model: Optional[str] = None
    is_on: bool = False
    spectral: Optional[RoomSpectralConfig] = None
    created_at: str = field(default_factory=now_iso)
    modified_at: str = field(default_factory=now_iso)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "device_ids": list(self.device_ids),
            "member_count": self.member_count,
            "allowed_model": self.allowed_model,
            "is_on": self.is_on,
            "spectral": self.spectral.as_dict() if self.spectral else None,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Room":
        spectral = data.get("spectral")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            device_ids=tuple(str(item) for item in data.get("device_ids") or ()),
            member_count=int(data.get("member_count") or 0),
            allowed_model=_opt_str(data.get("allowed_model")),
            is_on=bool(data.get("is_on", False)),
            spectral=RoomSpectralConfig.from_mapping(spectral) if spectral else None,
            created_at=str(data.get("created_at") or now_iso()),
            modified_at=str(data.get("modified_at") or now_iso()),
        )


@dataclass(frozen=True)
class RoomStats:
    """Device counts for a room."""

    total: int
    online: int
    offline: int
    on: int
    off: int
    model: Optional[str]

    @classmethod
    def for_room(cls, room: Room, devices: Sequence[Device]) -> "RoomStats":
        members: List[Device] = [device for device in devices if device.room_id == room.id]
        online = sum(1 for device in members if device.online)
        on = sum(1 for device in members if device.is_on)
        return cls(
            total=len(members),
            online=online,
            offline=len(members) - online,
            on=on,
            off=len(members) - on,
            model=room.allowed_model,
        )
