"""Idempotent reconciliation of denormalized Room and Device fields.

Rooms and devices reference each other (``Room.device_ids`` and
``Device.room_id``/``room_name``) and are written independently, so the two
sides drift after partial failures. The functions here take the device list as
authoritative and return corrected copies. They never mutate their inputs and
return the original object when nothing needs to change.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import AbstractSet, Dict, List, Sequence, Tuple

from .logging import get_logger
from .metrics import record_repair
from .models import MAX_CHANNELS, Device, Room

logger = get_logger("spectral.repair")


@dataclass(frozen=True)
class RepairOutcome:
    """Result of a full repair pass."""

    rooms: Tuple[Room, ...]
    devices: Tuple[Device, ...]
    changed_room_ids: Tuple[str, ...] = ()
    changed_device_ids: Tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.changed_room_ids or self.changed_device_ids)


def _members(room: Room, devices: Sequence[Device]) -> List[Device]:
    return [device for device in devices if device.room_id == room.id]


def repair_orphaned_devices(devices: Sequence[Device], room_ids: AbstractSet[str]) -> List[Device]:
    repaired: List[Device] = []
    for device in devices:
        if device.room_id is not None and device.room_id not in room_ids:
            repaired.append(replace(device, room_id=None, room_name=None))
        else:
            repaired.append(device)
    return repaired


def repair_room_membership(room: Room, devices: Sequence[Device]) -> Room:
    """Recompute members and the model constraint from the device list."""

    members = _members(room, devices)
    actual_ids = [device.id for device in members]
    if sorted(actual_ids) == sorted(room.device_ids) and room.member_count == len(actual_ids):
        return room
    allowed_model = members[0].model if members else None
    return replace(
        room,
        device_ids=tuple(actual_ids),
        member_count=len(actual_ids),
        allowed_model=allowed_model,
    )


def repair_room_power_flag(room: Room, devices: Sequence[Device]) -> Room:
    members = _members(room, devices)
    is_on = bool(members) and all(device.is_on for device in members)
    if room.is_on == is_on:
        return room
    return replace(room, is_on=is_on)


def repair_device_channels(device: Device) -> Device:
    """Clamp the PWM vector to the declared channel count and value domain."""

    limit = min(max(device.channel_count, 0), MAX_CHANNELS)
    values = tuple(max(0, min(255, int(value))) for value in device.pwm_values[:limit])
    if values == device.pwm_values:
        return device
    return replace(device, pwm_values=values)


def repair_room_names(devices: Sequence[Device], rooms: Sequence[Room]) -> List[Device]:
    names: Dict[str, str] = {room.id: room.name for room in rooms}
    repaired: List[Device] = []
    for device in devices:
        if device.room_id is not None and device.room_id in names:
            expected = names[device.room_id]
            if device.room_name != expected:
                repaired.append(replace(device, room_name=expected))
                continue
        repaired.append(device)
    return repaired


def repair_all(rooms: Sequence[Room], devices: Sequence[Device]) -> RepairOutcome:
    """Run every repair against the given records."""

    room_ids = {room.id for room in rooms}
    fixed_devices = repair_orphaned_devices(devices, room_ids)
    orphaned = sum(1 for old, new in zip(devices, fixed_devices) if old is not new)
    channel_fixed = [repair_device_channels(device) for device in fixed_devices]
    channels = sum(1 for old, new in zip(fixed_devices, channel_fixed) if old is not new)
    named = repair_room_names(channel_fixed, rooms)
    renamed = sum(1 for old, new in zip(channel_fixed, named) if old is not new)

    fixed_rooms: List[Room] = []
    membership = 0
    power = 0
    for room in rooms:
        updated = repair_room_membership(room, named)
        if updated is not room:
            membership += 1
        powered = repair_room_power_flag(updated, named)
        if powered is not updated:
            power += 1
        fixed_rooms.append(powered)

    changed_devices = tuple(
        new.id for old, new in zip(devices, named) if old != new
    )
    changed_rooms = tuple(
        new.id for old, new in zip(rooms, fixed_rooms) if old != new
    )
    for kind, count in (
        ("orphaned_device", orphaned),
        ("device_channels", channels),
        ("room_name", renamed),
        ("room_membership", membership),
        ("room_power", power),
    ):
        record_repair(kind, count)
    if changed_devices or changed_rooms:
        logger.info(
            "Repaired denormalized records",
            extra={
                "orphaned_devices": orphaned,
                "device_channels": channels,
                "room_names": renamed,
                "room_membership": membership,
                "room_power": power,
            },
        )
    return RepairOutcome(
        rooms=tuple(fixed_rooms),
        devices=tuple(named),
        changed_room_ids=changed_rooms,
        changed_device_ids=changed_devices,
    )
