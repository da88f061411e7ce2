"""Room-scoped routine records (time of day, weekdays, power and preset)."""

from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .db import DatabaseManager
from .errors import NotFoundError, ValidationError
from .logging import get_logger
from .models import now_iso
from .spectral import to_pwm

WEEKDAYS: Tuple[str, ...] = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")
_TIME_RE = re.compile(r"^(?P<hour>[01]\d|2[0-3]):(?P<minute>[0-5]\d)$")


@dataclass(frozen=True)
class Routine:
    """A scheduled room action: power off, or power on plus an optional preset."""

    room_id: str
    name: str
    time: str
    days: Tuple[str, ...] = WEEKDAYS
    enabled: bool = True
    device_power: bool = True
    preset_id: Optional[str] = None
    preset_name: Optional[str] = None
    slider_values: Mapping[str, float] = field(default_factory=dict)
    room_name: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    id: Optional[int] = None

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])

    def days_as_binary(self) -> str:
        """Weekday set as seven flags, Monday first."""

        return "".join("1" if day in self.days else "0" for day in WEEKDAYS)

    def slider_values_as_pwm(self) -> List[int]:
        return [to_pwm(value) for value in self.slider_values.values()]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "name": self.name,
            "time": self.time,
            "days": list(self.days),
            "enabled": self.enabled,
            "device_power": self.device_power,
            "preset_id": self.preset_id,
            "preset_name": self.preset_name,
            "slider_values": dict(self.slider_values),
            "room_name": self.room_name,
            "created_at": self.created_at,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], routine_id: Optional[int] = None) -> "Routine":
        return cls(
            id=routine_id if routine_id is not None else data.get("id"),
            room_id=str(data["room_id"]),
            name=str(data["name"]),
            time=str(data["time"]),
            days=tuple(str(day) for day in data.get("days") or WEEKDAYS),
            enabled=bool(data.get("enabled", True)),
            device_power=bool(data.get("device_power", True)),
            preset_id=data.get("preset_id"),
            preset_name=data.get("preset_name"),
            slider_values={str(k): float(v) for k, v in (data.get("slider_values") or {}).items()},
            room_name=data.get("room_name"),
            created_at=str(data.get("created_at") or now_iso()),
        )


def validate_routine(routine: Routine) -> Routine:
    """Return a normalized routine or raise ValidationError."""

    name = routine.name.strip()
    if not name:
        raise ValidationError("Routine name cannot be empty")
    if not _TIME_RE.match(routine.time):
        raise ValidationError(f"Routine time must be HH:MM (24h); got {routine.time!r}")
    days = tuple(day.upper() for day in routine.days)
    unknown = [day for day in days if day not in WEEKDAYS]
    if unknown:
        raise ValidationError(f"Unknown weekdays: {', '.join(unknown)}")
    if not days:
        raise ValidationError("Routine needs at least one weekday")
    ordered = tuple(day for day in WEEKDAYS if day in days)
    if not routine.device_power and routine.preset_id:
        raise ValidationError("A power-off routine cannot apply a preset")
    return replace(routine, name=name, days=ordered)


class RoutineStore:
    """SQLite-backed routine records keyed by target room."""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db
        self.logger = get_logger("spectral.rooms")

    async def create(self, routine: Routine) -> Routine:
        routine = validate_routine(routine)
        routine_id = await self.db.run(lambda conn: self._create(conn, routine))
        self.logger.info(
            "Routine created",
            extra={"routine_id": routine_id, "room_id": routine.room_id, "time": routine.time},
        )
        return replace(routine, id=routine_id)

    def _create(self, conn: sqlite3.Connection, routine: Routine) -> int:
        cursor = conn.execute(
            "INSERT INTO routines (room_id, document) VALUES (?, ?)",
            (routine.room_id, json.dumps(routine.as_dict(), ensure_ascii=False)),
        )
        conn.commit()
        return int(cursor.lastrowid)

    async def update(self, routine: Routine) -> Routine:
        if routine.id is None:
            raise ValidationError("Routine id is required for updates")
        routine = validate_routine(routine)
        updated = await self.db.run(lambda conn: self._update(conn, routine))
        if not updated:
            raise NotFoundError(f"Routine {routine.id} not found")
        return routine

    def _update(self, conn: sqlite3.Connection, routine: Routine) -> bool:
        cursor = conn.execute(
            """
            UPDATE routines
            SET room_id = ?, document = ?, updated_at = datetime('now')
            WHERE id = ?
            """,
            (routine.room_id, json.dumps(routine.as_dict(), ensure_ascii=False), routine.id),
        )
        conn.commit()
        return cursor.rowcount > 0

    async def delete(self, routine_id: int) -> bool:
        return await self.db.run(lambda conn: self._delete(conn, routine_id))

    def _delete(self, conn: sqlite3.Connection, routine_id: int) -> bool:
        cursor = conn.execute("DELETE FROM routines WHERE id = ?", (routine_id,))
        conn.commit()
        return cursor.rowcount > 0

    async def get(self, routine_id: int) -> Optional[Routine]:
        return await self.db.run(lambda conn: self._get(conn, routine_id))

    def _get(self, conn: sqlite3.Connection, routine_id: int) -> Optional[Routine]:
        row = conn.execute("SELECT id, document FROM routines WHERE id = ?", (routine_id,)).fetchone()
        if row is None:
            return None
        return Routine.from_mapping(json.loads(row["document"]), routine_id=row["id"])

    async def for_room(self, room_id: str) -> List[Routine]:
        return await self.db.run(lambda conn: self._for_room(conn, room_id))

    def _for_room(self, conn: sqlite3.Connection, room_id: str) -> List[Routine]:
        rows = conn.execute(
            "SELECT id, document FROM routines WHERE room_id = ? ORDER BY id ASC", (room_id,)
        ).fetchall()
        routines = [Routine.from_mapping(json.loads(row["document"]), routine_id=row["id"]) for row in rows]
        return sorted(routines, key=lambda routine: routine.time)

    async def delete_for_room(self, room_id: str) -> int:
        return await self.db.run(lambda conn: self._delete_for_room(conn, room_id))

    def _delete_for_room(self, conn: sqlite3.Connection, room_id: str) -> int:
        cursor = conn.execute("DELETE FROM routines WHERE room_id = ?", (room_id,))
        conn.commit()
        return cursor.rowcount
