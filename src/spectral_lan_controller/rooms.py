"""Room lifecycle: CRUD, device assignment, room power, presets and sessions."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .config import Config
from .discovery import DiscoveryService
from .errors import NotFoundError, TransportError, ValidationError
from .importer import JsonProfileImporter, ProfileImporter
from .link import DeviceLink
from .logging import get_logger
from .models import (
    Device,
    MasterConfig,
    Room,
    RoomSpectralConfig,
    RoomStats,
    SpectralProfile,
    SpectrumPreset,
    now_iso,
)
from .repair import RepairOutcome, repair_all
from .routines import Routine, RoutineStore
from .session import SpectralSession
from .spectral import active_sources, initial_slider_values
from .state import RoomsState, StateContainer
from .store import RecordStore
from .transport import TransportResult

SpectralTransform = Callable[[RoomSpectralConfig], RoomSpectralConfig]


@dataclass(frozen=True)
class PowerOutcome:
    """Result of a room power toggle."""

    room_id: str
    requested_on: bool
    is_on: bool
    results: Mapping[str, TransportResult] = field(default_factory=dict)

    @property
    def errors(self) -> Dict[str, str]:
        return {
            device_id: result.error or "unknown error"
            for device_id, result in self.results.items()
            if not result.ok
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            "room_id": self.room_id,
            "requested_on": self.requested_on,
            "is_on": self.is_on,
            "succeeded": sorted(device_id for device_id, result in self.results.items() if result.ok),
            "errors": self.errors,
        }


def _clean_name(name: str, label: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError(f"{label} name cannot be empty")
    return cleaned


class RoomOrchestrator:
    """Coordinates store writes, repair passes and fixture commands for rooms.

    Room and device writes are independent single-record puts. Every operation
    that touches more than one record finishes with a repair pass, which is
    what eventually restores the denormalized fields after a partial failure.
    """

    def __init__(
        self,
        config: Config,
        store: RecordStore,
        link: DeviceLink,
        routines: RoutineStore,
        importer: Optional[ProfileImporter] = None,
        discovery: Optional[DiscoveryService] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.link = link
        self.routines = routines
        self.importer = importer or JsonProfileImporter()
        self.discovery = discovery or DiscoveryService(config, link.transport)
        self.logger = get_logger("spectral.rooms")
        self.state: StateContainer[RoomsState] = StateContainer(RoomsState(), name="rooms")
        self._sessions: Dict[str, SpectralSession] = {}

    # Loading and repair

    async def load(self) -> RepairOutcome:
        """Seed configured fixtures, heal stored records and start monitoring."""

        self.state.update(lambda s: replace(s, is_loading=True, error=None))
        await self._seed_manual_devices()
        outcome = await self.repair()
        if self.config.monitor_enabled:
            for device in outcome.devices:
                if device.address:
                    await self.link.start_monitoring(device, self._on_snapshot)
        self.logger.info(
            "Rooms loaded",
            extra={"rooms": len(outcome.rooms), "devices": len(outcome.devices)},
        )
        return outcome

    async def _seed_manual_devices(self) -> None:
        for manual in self.config.manual_devices:
            existing = await self.store.get_device(manual.id)
            if existing is None:
                device = Device(
                    id=manual.id,
                    name=manual.name or manual.id,
                    address=manual.ip,
                    model=manual.model,
                )
            elif existing.address != manual.ip:
                device = replace(existing, address=manual.ip)
            else:
                continue
            await self.store.put_device(device)
            self.logger.info(
                "Seeded manual fixture", extra={"device_id": manual.id, "address": manual.ip}
            )

    async def repair(self) -> RepairOutcome:
        """Run one repair pass and write back only the records that changed."""

        rooms, devices = await self.store.snapshot()
        outcome = repair_all(rooms, devices)
        changed_devices = set(outcome.changed_device_ids)
        changed_rooms = set(outcome.changed_room_ids)
        for device in outcome.devices:
            if device.id in changed_devices:
                await self.store.put_device(device)
                self.link.refresh(device)
        for room in outcome.rooms:
            if room.id in changed_rooms:
                await self.store.put_room(room)
        self._publish(outcome.rooms, outcome.devices)
        return outcome

    def _publish(self, rooms: Sequence[Room], devices: Sequence[Device], error: Optional[str] = None) -> None:
        self.state.set(
            RoomsState(rooms=tuple(rooms), devices=tuple(devices), is_loading=False, error=error)
        )

    async def _refresh_state(self) -> None:
        rooms, devices = await self.store.snapshot()
        self._publish(rooms, devices)

    async def _on_snapshot(self, snapshot: Device) -> None:
        merged = await self.store.apply_status(snapshot)
        if merged is None:
            return
        self.state.update(
            lambda s: replace(
                s,
                devices=tuple(merged if device.id == merged.id else device for device in s.devices),
            )
        )

    async def _restart_monitoring(self, device: Device) -> None:
        if self.config.monitor_enabled and device.address:
            await self.link.start_monitoring(device, self._on_snapshot)

    # Devices

    async def list_devices(self) -> List[Device]:
        return await self.store.devices()

    async def get_device(self, device_id: str) -> Device:
        device = await self.store.get_device(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found")
        return device

    async def room_devices(self, room_id: str) -> List[Device]:
        return [device for device in await self.store.devices() if device.room_id == room_id]

    async def add_device(
        self,
        device_id: str,
        address: str,
        name: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Device:
        """Pair a fixture, or update the address of an already paired one."""

        device_id = (device_id or "").strip()
        if not device_id:
            raise ValidationError("Device id cannot be empty")
        if not (address or "").strip():
            raise ValidationError("Device address cannot be empty")
        existing = await self.store.get_device(device_id)
        if existing is None:
            device = Device(
                id=device_id,
                name=(name or "").strip() or device_id,
                address=address.strip(),
                model=model,
            )
        else:
            device = replace(
                existing,
                name=(name or "").strip() or existing.name,
                address=address.strip(),
                model=model or existing.model,
            )
        await self.store.put_device(device)
        self.logger.info("Fixture paired", extra={"device_id": device.id, "address": device.address})
        if await self.link.connect(device):
            device = self.link.state.value.connected.get(device.id, device)
            await self.store.put_device(device)
        await self._restart_monitoring(device)
        await self._refresh_state()
        return device

    async def discover_devices(self) -> List[Device]:
        """Scan the configured subnets and pair every fixture found at an unknown address."""

        known = {device.address for device in await self.store.devices() if device.address}
        found = await self.discovery.scan(exclude=known)
        paired: List[Device] = []
        for candidate in found:
            try:
                device = await self.add_device(
                    candidate.id, candidate.address, name=candidate.name, model=candidate.model
                )
            except ValidationError as exc:
                self.logger.warning(
                    "Discovered fixture could not be paired",
                    extra={"device_id": candidate.id, "address": candidate.address, "error": str(exc)},
                )
                continue
            paired.append(device)
        self.logger.info("Discovery finished", extra={"found": len(found), "paired": len(paired)})
        return paired

    async def connect_device(self, device_id: str) -> Device:
        device = await self.get_device(device_id)
        if not await self.link.connect(device):
            cause = self.link.state.value.device_errors.get(device.id, "unreachable")
            raise TransportError(device.id, cause)
        connected = self.link.state.value.connected.get(device.id, device)
        await self.store.put_device(connected)
        return connected

    async def remove_device(self, device_id: str) -> None:
        """Forget a fixture: stop monitoring, drop its snapshot and record, then repair."""

        device = await self.get_device(device_id)
        await self.link.forget(device.id)
        await self.store.delete_power_snapshot(device.id)
        await self.store.delete_device(device.id)
        self.logger.info("Fixture removed", extra={"device_id": device.id, "room_id": device.room_id})
        if device.room_id is not None:
            await self._leave_room(device.room_id, device.id)
        await self.repair()

    # Rooms

    async def list_rooms(self) -> List[Room]:
        return await self.store.rooms()

    async def get_room(self, room_id: str) -> Room:
        room = await self.store.get_room(room_id)
        if room is None:
            raise NotFoundError(f"Room {room_id} not found")
        return room

    async def _validate_room_name(self, name: str, exclude_id: Optional[str] = None) -> str:
        cleaned = _clean_name(name, "Room")
        for room in await self.store.rooms():
            if room.id != exclude_id and room.name.casefold() == cleaned.casefold():
                raise ValidationError(f"A room named {room.name!r} already exists")
        return cleaned

    async def create_room(self, name: str) -> Room:
        cleaned = await self._validate_room_name(name)
        room = Room(id=uuid.uuid4().hex, name=cleaned)
        await self.store.put_room(room)
        self.logger.info("Room created", extra={"room_id": room.id, "room_name": room.name})
        await self._refresh_state()
        return room

    async def rename_room(self, room_id: str, name: str) -> Room:
        room = await self.get_room(room_id)
        cleaned = await self._validate_room_name(name, exclude_id=room.id)
        if cleaned == room.name:
            return room
        renamed = replace(room, name=cleaned, modified_at=now_iso())
        await self.store.put_room(renamed)
        for device in await self.room_devices(room.id):
            updated = replace(device, room_name=cleaned)
            await self.store.put_device(updated)
            self.link.refresh(updated)
        self.logger.info("Room renamed", extra={"room_id": room.id, "room_name": cleaned})
        await self.repair()
        return renamed

    async def delete_room(self, room_id: str) -> None:
        """Unassign members, drop the room's routines, delete the room, then repair."""

        room = await self.get_room(room_id)
        await self.close_session(room.id)
        self.link.cancel_pending(room.id)
        for device in await self.room_devices(room.id):
            updated = replace(device, room_id=None, room_name=None)
            await self.store.put_device(updated)
            self.link.refresh(updated)
        removed = await self.routines.delete_for_room(room.id)
        await self.store.delete_room(room.id)
        self.logger.info(
            "Room deleted", extra={"room_id": room.id, "routines_removed": removed}
        )
        await self.repair()

    async def assign_device(self, device_id: str, room_id: str) -> Device:
        """Move a fixture into a room after checking its model against the room's constraints."""

        device = await self.get_device(device_id)
        room = await self.get_room(room_id)
        if device.room_id == room.id:
            return device
        if (room.allowed_model is not None or room.device_ids) and device.model != room.allowed_model:
            raise ValidationError(
                f"Device {device.name} is model {device.model or 'unknown'}; "
                f"room {room.name} only accepts {room.allowed_model or 'unknown'}"
            )
        bound_model = room.spectral.bound_model if room.spectral else None
        if bound_model is not None and device.model != bound_model:
            raise ValidationError(
                f"Room {room.name} has spectral data for model {bound_model}; "
                f"device {device.name} is model {device.model or 'unknown'}"
            )

        previous_room_id = device.room_id
        updated = replace(device, room_id=room.id, room_name=room.name)
        await self.store.put_device(updated)
        device_ids = tuple(room.device_ids) + (device.id,)
        await self.store.put_room(
            replace(
                room,
                device_ids=device_ids,
                member_count=len(device_ids),
                allowed_model=room.allowed_model or device.model,
                modified_at=now_iso(),
            )
        )
        if previous_room_id is not None:
            await self._leave_room(previous_room_id, device.id)
        self.logger.info(
            "Fixture assigned",
            extra={"device_id": device.id, "room_id": room.id, "previous_room_id": previous_room_id},
        )
        await self.repair()
        self.link.refresh(updated)
        await self._restart_monitoring(updated)
        if room.id in self._sessions and updated.address:
            await self.link.connect(updated)
        return updated

    async def unassign_device(self, device_id: str) -> Device:
        device = await self.get_device(device_id)
        if device.room_id is None:
            return device
        updated = replace(device, room_id=None, room_name=None)
        await self.store.put_device(updated)
        await self._leave_room(device.room_id, device.id)
        self.logger.info("Fixture unassigned", extra={"device_id": device.id, "room_id": device.room_id})
        await self.repair()
        self.link.refresh(updated)
        await self._restart_monitoring(updated)
        return updated

    async def _leave_room(self, room_id: str, device_id: str) -> None:
        room = await self.store.get_room(room_id)
        if room is None:
            return
        remaining = [
            device for device in await self.room_devices(room_id) if device.id != device_id
        ]
        updated = replace(
            room,
            device_ids=tuple(device.id for device in remaining),
            member_count=len(remaining),
            allowed_model=remaining[0].model if remaining else None,
            modified_at=now_iso(),
        )
        if not remaining:
            # An empty room is unconstrained in both model and spectrum.
            updated = replace(updated, spectral=None, is_on=False)
            await self.close_session(room_id)
            self.link.cancel_pending(room_id)
        await self.store.put_room(updated)

    async def compatible_devices(self, room_id: str) -> List[Device]:
        room = await self.get_room(room_id)
        bound_model = room.spectral.bound_model if room.spectral else None
        constrained = room.allowed_model is not None or bool(room.device_ids)
        compatible = []
        for device in await self.store.devices():
            if device.room_id == room.id:
                continue
            if constrained and device.model != room.allowed_model:
                continue
            if bound_model is not None and device.model != bound_model:
                continue
            compatible.append(device)
        return compatible

    async def room_stats(self, room_id: str) -> RoomStats:
        room = await self.get_room(room_id)
        return RoomStats.for_room(room, await self.store.devices())

    # Power

    async def toggle_room_power(self, room_id: str) -> PowerOutcome:
        """Flip every member, recording intent first and reconciling afterwards."""

        room = await self.get_room(room_id)
        target = not room.is_on
        members = await self.room_devices(room.id)
        await self.store.put_room(replace(room, is_on=target, modified_at=now_iso()))
        for device in members:
            await self.store.put_device(replace(device, is_on=target))

        operation = self.link.power_on if target else self.link.power_off
        results = await self.link.fan_out(members, operation)

        for device in members:
            result = results.get(device.id)
            if result is not None and not result.ok:
                # The fixture never changed; keep its record truthful.
                current = await self.store.get_device(device.id)
                if current is not None:
                    await self.store.put_device(replace(current, is_on=device.is_on))
        outcome = await self.repair()
        repaired = next((item for item in outcome.rooms if item.id == room.id), None)
        power = PowerOutcome(
            room_id=room.id,
            requested_on=target,
            is_on=repaired.is_on if repaired else target,
            results=results,
        )
        self.logger.info(
            "Room power toggled",
            extra={"room_id": room.id, "requested_on": target, "failures": len(power.errors)},
        )
        return power

    # Spectral configuration and presets

    async def update_spectral(self, room_id: str, transform: SpectralTransform) -> Room:
        """Read-modify-write of a room's spectral configuration against the stored record."""

        room = await self.get_room(room_id)
        if room.spectral is None:
            raise ValidationError(f"Room {room.name} has no spectral data")
        updated = replace(room, spectral=transform(room.spectral), modified_at=now_iso())
        await self.store.put_room(updated)
        self.state.update(
            lambda s: replace(
                s, rooms=tuple(updated if item.id == updated.id else item for item in s.rooms)
            )
        )
        return updated

    async def replace_profile(
        self, room_id: str, profile: SpectralProfile, file_name: Optional[str] = None
    ) -> Room:
        """Attach freshly imported spectral data, keeping existing presets."""

        room = await self.get_room(room_id)
        if profile.device_model is not None:
            mismatched = [
                device.name
                for device in await self.room_devices(room.id)
                if device.model != profile.device_model
            ]
            if mismatched:
                raise ValidationError(
                    f"Profile is for model {profile.device_model}; "
                    f"incompatible devices: {', '.join(mismatched)}"
                )
        config = RoomSpectralConfig(
            profile=profile,
            slider_values=initial_slider_values(profile),
            presets=room.spectral.presets if room.spectral else (),
            master=MasterConfig(),
            file_name=file_name,
        )
        updated = replace(room, spectral=config, modified_at=now_iso())
        await self.store.put_room(updated)
        self.logger.info(
            "Spectral profile attached",
            extra={
                "room_id": room.id,
                "file_name": file_name,
                "sources": len(profile.sources),
                "points": len(profile.spectrum),
            },
        )
        await self._refresh_state()
        return updated

    async def _spectral_room(self, room_id: str) -> Room:
        room = await self.get_room(room_id)
        if room.spectral is None:
            raise ValidationError(f"Room {room.name} has no spectral data")
        return room

    async def list_presets(self, room_id: str) -> List[SpectrumPreset]:
        room = await self.get_room(room_id)
        return list(room.spectral.presets) if room.spectral else []

    async def create_preset(
        self, room_id: str, name: str, description: Optional[str] = None
    ) -> SpectrumPreset:
        cleaned = _clean_name(name, "Preset")
        room = await self._spectral_room(room_id)
        preset = SpectrumPreset(
            id=uuid.uuid4().hex,
            name=cleaned,
            slider_values=dict(room.spectral.slider_values),
            description=(description or "").strip() or None,
        )
        updated = await self.update_spectral(
            room.id, lambda config: replace(config, presets=tuple(config.presets) + (preset,))
        )
        self.logger.info("Preset created", extra={"room_id": room.id, "preset_id": preset.id})
        self._refresh_session(updated)
        return preset

    async def delete_preset(self, room_id: str, preset_id: str) -> None:
        room = await self._spectral_room(room_id)
        if room.spectral.preset(preset_id) is None:
            raise NotFoundError(f"Preset {preset_id} not found")
        updated = await self.update_spectral(
            room.id,
            lambda config: replace(
                config, presets=tuple(item for item in config.presets if item.id != preset_id)
            ),
        )
        self.logger.info("Preset deleted", extra={"room_id": room.id, "preset_id": preset_id})
        self._refresh_session(updated)

    async def apply_preset(self, room_id: str, preset_id: str) -> Dict[str, TransportResult]:
        """Load a preset into the room, leave master mode and push it to every connected fixture."""

        room = await self._spectral_room(room_id)
        preset = room.spectral.preset(preset_id)
        if preset is None:
            raise NotFoundError(f"Preset {preset_id} not found")
        updated = await self.update_spectral(
            room.id,
            lambda config: replace(
                config,
                slider_values=dict(preset.slider_values),
                master=MasterConfig(),
                last_computed=now_iso(),
            ),
        )
        self._refresh_session(updated)
        order = [source.name for source in active_sources(room.spectral.profile)]
        results = await self.link.push_slider_values(room.id, preset.slider_values, order)
        self.logger.info(
            "Preset applied",
            extra={
                "room_id": room.id,
                "preset_id": preset.id,
                "devices": len(results),
                "failures": sum(1 for result in results.values() if not result.ok),
            },
        )
        return results

    # Routines

    async def list_routines(self, room_id: str) -> List[Routine]:
        await self.get_room(room_id)
        return await self.routines.for_room(room_id)

    async def create_routine(self, routine: Routine) -> Routine:
        """Store a routine, filling the room name and the preset snapshot it applies."""

        room = await self.get_room(routine.room_id)
        routine = replace(routine, room_name=room.name)
        if routine.preset_id:
            preset = room.spectral.preset(routine.preset_id) if room.spectral else None
            if preset is None:
                raise NotFoundError(f"Preset {routine.preset_id} not found")
            routine = replace(
                routine, preset_name=preset.name, slider_values=dict(preset.slider_values)
            )
        return await self.routines.create(routine)

    async def delete_routine(self, routine_id: int) -> None:
        if not await self.routines.delete(routine_id):
            raise NotFoundError(f"Routine {routine_id} not found")

    # Sessions

    def session(self, room_id: str) -> Optional[SpectralSession]:
        return self._sessions.get(room_id)

    async def open_session(self, room_id: str) -> SpectralSession:
        existing = self._sessions.get(room_id)
        if existing is not None:
            return existing
        await self.get_room(room_id)
        session = SpectralSession(room_id, self, self.link, self.importer)
        self._sessions[room_id] = session
        try:
            await session.open()
        except Exception:
            self._sessions.pop(room_id, None)
            raise
        return session

    async def close_session(self, room_id: str) -> None:
        session = self._sessions.pop(room_id, None)
        if session is not None:
            await session.close()

    def _refresh_session(self, room: Room) -> None:
        session = self._sessions.get(room.id)
        if session is not None:
            session.refresh(room)

    async def close(self) -> None:
        sessions = list(self._sessions)
        await asyncio.gather(*(self.close_session(room_id) for room_id in sessions))
