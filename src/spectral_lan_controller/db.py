"""SQLite helpers and migrations for the controller's record store.

The schema version lives in ``PRAGMA user_version``. Each migration is a list
of statements applied in one transaction together with its version bump.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

from .logging import get_logger

DEFAULT_INTEGRITY_CHECK_INTERVAL = 6 * 60 * 60  # seconds
BUSY_TIMEOUT_MS = 5000
WAL_SIDECARS = ("-wal", "-shm")

T = TypeVar("T")


class DatabaseCorruptionError(RuntimeError):
    """Raised when a fatal SQLite corruption is detected."""


class SchemaVersionError(RuntimeError):
    """Raised when the database schema does not match the migrations shipped here."""


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _configure_connection(conn: sqlite3.Connection) -> None:
    """Apply connection-wide pragmas suitable for concurrent writers."""

    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")


def schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


# Devices and rooms are independent JSON documents; no foreign keys tie them.
MIGRATIONS: List[Tuple[int, Sequence[str]]] = [
    (
        1,
        (
            """
            CREATE TABLE IF NOT EXISTS devices (
                id TEXT PRIMARY KEY,
                document TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS rooms (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                document TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_rooms_name ON rooms (name COLLATE NOCASE)",
        ),
    ),
    (
        2,
        (
            """
            CREATE TABLE IF NOT EXISTS power_snapshots (
                device_id TEXT PRIMARY KEY,
                pwm_values TEXT NOT NULL,
                captured_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """,
        ),
    ),
    (
        3,
        (
            """
            CREATE TABLE IF NOT EXISTS routines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                room_id TEXT NOT NULL,
                document TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_routines_room_id ON routines (room_id)",
        ),
    ),
]


def latest_schema_version() -> int:
    return MIGRATIONS[-1][0] if MIGRATIONS else 0


def _apply_migration(conn: sqlite3.Connection, version: int, statements: Sequence[str]) -> None:
    conn.execute("BEGIN IMMEDIATE")
    try:
        for statement in statements:
            conn.execute(statement)
        conn.execute(f"PRAGMA user_version = {int(version)}")
    except sqlite3.Error:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def apply_migrations(db_path: Path) -> int:
    """Bring the database up to the latest schema and return the resulting version.

    A failing migration is rolled back as a whole, leaving the previous
    version in place. A database written by a newer release is refused.
    """

    logger = get_logger("spectral.migrations")
    _ensure_parent_dir(db_path)
    conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
    _configure_connection(conn)
    try:
        current = schema_version(conn)
        latest = latest_schema_version()
        logger.info("Current schema version", extra={"version": current, "latest": latest})
        if current > latest:
            raise SchemaVersionError(
                f"Database schema version {current} is newer than supported version {latest}."
            )
        for version, statements in MIGRATIONS:
            if version <= current:
                continue
            logger.info("Applying migration", extra={"version": version})
            try:
                _apply_migration(conn, version, statements)
            except sqlite3.Error:
                logger.exception("Migration failed; schema left unchanged", extra={"version": version})
                raise
            current = version
            logger.info("Migration applied", extra={"version": version})
        return current
    finally:
        conn.close()


class DatabaseManager:
    """Serializes access to a shared SQLite connection with health checks."""

    def __init__(
        self,
        db_path: Path,
        *,
        integrity_check_interval: float = DEFAULT_INTEGRITY_CHECK_INTERVAL,
    ) -> None:
        self.db_path = db_path
        self.logger = get_logger("spectral.db")
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._integrity_task: Optional[asyncio.Task[None]] = None
        self._integrity_interval = integrity_check_interval
        self._closed = False

    async def start_integrity_checks(self) -> None:
        if self._integrity_task or self._integrity_interval <= 0:
            return
        self._integrity_task = asyncio.create_task(self._integrity_loop())
        self.logger.info(
            "Started database integrity checks",
            extra={"interval_seconds": self._integrity_interval},
        )

    async def close(self) -> None:
        self._closed = True
        if self._integrity_task:
            self._integrity_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._integrity_task
            self._integrity_task = None
        async with self._lock:
            conn = self._conn
            self._conn = None
        if conn is not None:
            await asyncio.to_thread(conn.close)

    async def run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run an operation with a shared connection, serialized by a lock."""

        if self._closed:
            raise RuntimeError("Database manager is closed")
        async with self._lock:
            try:
                return await asyncio.to_thread(self._run_with_connection, operation)
            except sqlite3.DatabaseError as exc:
                raise self._handle_db_error(exc) from exc

    def _run_with_connection(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._conn is None:
            self._conn = self._open()
        return operation(self._conn)

    def _open(self) -> sqlite3.Connection:
        _ensure_parent_dir(self.db_path)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        try:
            _configure_connection(conn)
            version = schema_version(conn)
        except sqlite3.DatabaseError:
            conn.close()
            raise
        latest = latest_schema_version()
        if version != latest:
            conn.close()
            raise SchemaVersionError(
                f"Database schema is at version {version}; this release expects {latest}. "
                "Apply migrations before opening the store."
            )
        return conn

    async def _integrity_loop(self) -> None:
        try:
            while not self._closed:
                try:
                    await self.run(self._integrity_check)
                except DatabaseCorruptionError:
                    self.logger.exception("Database corruption detected during integrity check")
                    raise
                await asyncio.sleep(self._integrity_interval)
        except asyncio.CancelledError:
            self.logger.info("Database integrity checks cancelled")
            raise

    def _integrity_check(self, conn: sqlite3.Connection) -> None:
        results = conn.execute("PRAGMA quick_check").fetchall()
        if not results:
            raise DatabaseCorruptionError("Integrity check returned no results")
        failures = [row[0] for row in results if str(row[0]).lower() != "ok"]
        if failures:
            backup_path = self._backup_corrupt_db("; ".join(failures))
            raise DatabaseCorruptionError(
                f"Integrity check failed; database copied to {backup_path}. "
                "Restore from a known-good backup or replace the database file."
            )

    def _handle_db_error(self, exc: sqlite3.DatabaseError) -> Exception:
        message = str(exc).lower()
        if any(key in message for key in ("malformed", "corrupt", "not a database")):
            backup_path = self._backup_corrupt_db(message)
            return DatabaseCorruptionError(
                f"Database appears to be corrupted ({exc}); copied to {backup_path}. "
                "Restore the database from a backup or remove the corrupted file."
            )
        return exc

    def _backup_corrupt_db(self, reason: str) -> Path:
        """Copy the database with its WAL sidecars so no committed page is lost."""

        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%d%H%M%S")
        backup_path = self.db_path.with_suffix(f".corrupt-{timestamp}{self.db_path.suffix}")
        copied: List[str] = []
        try:
            shutil.copy2(self.db_path, backup_path)
            copied.append(backup_path.name)
            for suffix in WAL_SIDECARS:
                sidecar = self.db_path.with_name(self.db_path.name + suffix)
                if sidecar.exists():
                    target = backup_path.with_name(backup_path.name + suffix)
                    shutil.copy2(sidecar, target)
                    copied.append(target.name)
            self.logger.error(
                "Database corruption detected; backup created",
                extra={"reason": reason, "backup_path": str(backup_path), "files": copied},
            )
        except OSError:
            self.logger.exception(
                "Failed to create corruption backup",
                extra={"reason": reason, "files": copied},
            )
        return backup_path
