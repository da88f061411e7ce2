"""Single-record persistence for devices, rooms and power snapshots.

Every method reads or writes exactly one record. Callers that touch both a
room and its devices issue independent writes and follow them with a repair
pass instead of relying on a transaction.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .db import DatabaseManager
from .logging import get_logger
from .models import Device, Room


def _dump(document: object) -> str:
    return json.dumps(document, ensure_ascii=False, sort_keys=True)


class RecordStore:
    """SQLite-backed document store for Device and Room records."""

    def __init__(self, db_path: Path, *, integrity_check_interval: Optional[float] = None) -> None:
        if integrity_check_interval is None:
            self.db = DatabaseManager(db_path)
        else:
            self.db = DatabaseManager(db_path, integrity_check_interval=integrity_check_interval)
        self.logger = get_logger("spectral.db")

    async def start(self) -> None:
        await self.db.start_integrity_checks()

    async def stop(self) -> None:
        await self.db.close()

    # Devices

    async def get_device(self, device_id: str) -> Optional[Device]:
        return await self.db.run(lambda conn: self._get_device(conn, device_id))

    def _get_device(self, conn: sqlite3.Connection, device_id: str) -> Optional[Device]:
        row = conn.execute("SELECT document FROM devices WHERE id = ?", (device_id,)).fetchone()
        if row is None:
            return None
        return Device.from_mapping(json.loads(row["document"]))

    async def put_device(self, device: Device) -> None:
        await self.db.run(lambda conn: self._put_device(conn, device))

    def _put_device(self, conn: sqlite3.Connection, device: Device) -> None:
        conn.execute(
            """
            INSERT INTO devices (id, document)
            VALUES (?, ?)
            ON CONFLICT(id) DO UPDATE SET
                document=excluded.document,
                updated_at=datetime('now')
            """,
            (device.id, _dump(device.as_dict())),
        )
        conn.commit()

    async def apply_status(self, snapshot: Device) -> Optional[Device]:
        """Merge a polled snapshot into the stored record inside one locked operation.

        Only fixture-reported fields are written; name, address and the room
        reference always keep their stored values. Returns the new record, or
        None when the device is unknown or nothing but ``last_seen`` moved.
        """

        return await self.db.run(lambda conn: self._apply_status(conn, snapshot))

    def _apply_status(self, conn: sqlite3.Connection, snapshot: Device) -> Optional[Device]:
        current = self._get_device(conn, snapshot.id)
        if current is None:
            return None
        if snapshot.online:
            merged = replace(
                current,
                online=True,
                model=snapshot.model or current.model,
                firmware_version=snapshot.firmware_version or current.firmware_version,
                channel_count=snapshot.channel_count,
                channel_names=snapshot.channel_names,
                pwm_values=snapshot.pwm_values,
                is_on=snapshot.is_on,
                last_seen=snapshot.last_seen or current.last_seen,
            )
        else:
            merged = replace(current, online=False)
        if replace(merged, last_seen=current.last_seen) == current:
            return None
        self._put_device(conn, merged)
        return merged

    async def delete_device(self, device_id: str) -> bool:
        return await self.db.run(lambda conn: self._delete_device(conn, device_id))

    def _delete_device(self, conn: sqlite3.Connection, device_id: str) -> bool:
        cursor = conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))
        conn.commit()
        return cursor.rowcount > 0

    async def list_device_ids(self) -> List[str]:
        return await self.db.run(self._list_device_ids)

    def _list_device_ids(self, conn: sqlite3.Connection) -> List[str]:
        rows = conn.execute("SELECT id FROM devices ORDER BY created_at ASC, id ASC").fetchall()
        return [row["id"] for row in rows]

    async def devices(self) -> List[Device]:
        return await self.db.run(self._devices)

    def _devices(self, conn: sqlite3.Connection) -> List[Device]:
        rows = conn.execute(
            "SELECT document FROM devices ORDER BY created_at ASC, id ASC"
        ).fetchall()
        return [Device.from_mapping(json.loads(row["document"])) for row in rows]

    # Rooms

    async def get_room(self, room_id: str) -> Optional[Room]:
        return await self.db.run(lambda conn: self._get_room(conn, room_id))

    def _get_room(self, conn: sqlite3.Connection, room_id: str) -> Optional[Room]:
        row = conn.execute("SELECT document FROM rooms WHERE id = ?", (room_id,)).fetchone()
        if row is None:
            return None
        return Room.from_mapping(json.loads(row["document"]))

    async def put_room(self, room: Room) -> None:
        await self.db.run(lambda conn: self._put_room(conn, room))

    def _put_room(self, conn: sqlite3.Connection, room: Room) -> None:
        conn.execute(
            """
            INSERT INTO rooms (id, name, document)
            VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name,
                document=excluded.document,
                updated_at=datetime('now')
            """,
            (room.id, room.name, _dump(room.as_dict())),
        )
        conn.commit()

    async def delete_room(self, room_id: str) -> bool:
        return await self.db.run(lambda conn: self._delete_room(conn, room_id))

    def _delete_room(self, conn: sqlite3.Connection, room_id: str) -> bool:
        cursor = conn.execute("DELETE FROM rooms WHERE id = ?", (room_id,))
        conn.commit()
        return cursor.rowcount > 0

    async def list_room_ids(self) -> List[str]:
        return await self.db.run(self._list_room_ids)

    def _list_room_ids(self, conn: sqlite3.Connection) -> List[str]:
        rows = conn.execute("SELECT id FROM rooms ORDER BY created_at ASC, id ASC").fetchall()
        return [row["id"] for row in rows]

    async def rooms(self) -> List[Room]:
        return await self.db.run(self._rooms)

    def _rooms(self, conn: sqlite3.Connection) -> List[Room]:
        rows = conn.execute("SELECT document FROM rooms ORDER BY created_at ASC, id ASC").fetchall()
        return [Room.from_mapping(json.loads(row["document"])) for row in rows]

    async def snapshot(self) -> Tuple[List[Room], List[Device]]:
        """Read rooms then devices; the two reads are not atomic."""

        rooms = await self.rooms()
        devices = await self.devices()
        return rooms, devices

    # Power snapshots

    async def put_power_snapshot(self, device_id: str, pwm_values: Sequence[int]) -> None:
        await self.db.run(lambda conn: self._put_power_snapshot(conn, device_id, pwm_values))

    def _put_power_snapshot(
        self, conn: sqlite3.Connection, device_id: str, pwm_values: Sequence[int]
    ) -> None:
        conn.execute(
            """
            INSERT INTO power_snapshots (device_id, pwm_values)
            VALUES (?, ?)
            ON CONFLICT(device_id) DO UPDATE SET
                pwm_values=excluded.pwm_values,
                captured_at=datetime('now')
            """,
            (device_id, json.dumps([int(value) for value in pwm_values])),
        )
        conn.commit()

    async def get_power_snapshot(self, device_id: str) -> Optional[List[int]]:
        return await self.db.run(lambda conn: self._get_power_snapshot(conn, device_id))

    def _get_power_snapshot(self, conn: sqlite3.Connection, device_id: str) -> Optional[List[int]]:
        row = conn.execute(
            "SELECT pwm_values FROM power_snapshots WHERE device_id = ?", (device_id,)
        ).fetchone()
        if row is None:
            return None
        try:
            values = json.loads(row["pwm_values"])
        except json.JSONDecodeError:
            self.logger.warning("Discarding unreadable power snapshot", extra={"device_id": device_id})
            return None
        return [int(value) for value in values]

    async def delete_power_snapshot(self, device_id: str) -> None:
        await self.db.run(lambda conn: self._delete_power_snapshot(conn, device_id))

    def _delete_power_snapshot(self, conn: sqlite3.Connection, device_id: str) -> None:
        conn.execute("DELETE FROM power_snapshots WHERE device_id = ?", (device_id,))
        conn.commit()

    async def stats(self) -> dict[str, int]:
        return await self.db.run(self._stats)

    def _stats(self, conn: sqlite3.Connection) -> dict[str, int]:
        devices = conn.execute("SELECT COUNT(*) FROM devices").fetchone()[0]
        rooms = conn.execute("SELECT COUNT(*) FROM rooms").fetchone()[0]
        routines = conn.execute("SELECT COUNT(*) FROM routines").fetchone()[0]
        return {"devices": int(devices), "rooms": int(rooms), "routines": int(routines)}
