"""Backoff and subsystem health tracking for the controller's background loops."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .logging import get_logger
from .metrics import record_subsystem_failure, record_subsystem_status
from .state import StateContainer, with_entry

HEALTHY = "ok"
DEGRADED = "degraded"
SUPPRESSED = "suppressed"
RECOVERING = "recovering"


@dataclass
class BackoffPolicy:
    """Exponential backoff parameters."""

    base: float
    factor: float
    maximum: float

    def delay(self, failures: int) -> float:
        """Delay before the next attempt after ``failures`` consecutive failures."""

        if failures <= 0:
            return 0.0
        backoff = max(0.0, self.base) * (self.factor ** (failures - 1))
        return min(self.maximum, backoff)


@dataclass
class SubsystemHealth:
    """Mutable health record for one subsystem such as the repair loop or the API server."""

    name: str
    status: str = HEALTHY
    failures: int = 0
    suppressions: int = 0
    suppressed_until: Optional[float] = None
    last_error: Optional[str] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None

    def as_dict(self, now: float) -> Dict[str, Any]:
        remaining = None
        if self.suppressed_until is not None:
            remaining = max(0.0, self.suppressed_until - now)
        return {
            "status": self.status,
            "failures": self.failures,
            "suppressions": self.suppressions,
            "suppressed_for": remaining,
            "last_error": self.last_error,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
        }


class HealthMonitor:
    """Circuit breaker per subsystem.

    After ``failure_threshold`` consecutive failures a subsystem is suppressed
    for ``cooldown_seconds``; the next allowed attempt moves it to
    ``recovering`` and a success returns it to ``ok``. Status changes are
    published on :attr:`statuses` and logged.
    """

    def __init__(
        self,
        subsystem_names: Tuple[str, ...],
        failure_threshold: int,
        cooldown_seconds: float,
    ) -> None:
        self._subsystems: Dict[str, SubsystemHealth] = {
            name: SubsystemHealth(name=name) for name in subsystem_names
        }
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown = max(0.0, cooldown_seconds)
        self._lock = asyncio.Lock()
        self.logger = get_logger("spectral.health")
        self.statuses: StateContainer[Mapping[str, str]] = StateContainer(
            {name: HEALTHY for name in subsystem_names}, name="health"
        )
        for name in subsystem_names:
            record_subsystem_status(name, HEALTHY)

    def _transition(self, subsystem: SubsystemHealth, status: str) -> None:
        previous = subsystem.status
        subsystem.status = status
        record_subsystem_status(subsystem.name, status)
        if previous == status:
            return
        level = self.logger.info if status in (HEALTHY, RECOVERING) else self.logger.warning
        level(
            "Subsystem health changed",
            extra={
                "subsystem": subsystem.name,
                "status": status,
                "previous_status": previous,
                "failures": subsystem.failures,
            },
        )
        self.statuses.update(lambda current: with_entry(current, subsystem.name, status))

    async def record_success(self, name: str) -> None:
        async with self._lock:
            subsystem = self._subsystems[name]
            subsystem.failures = 0
            subsystem.last_error = None
            subsystem.suppressed_until = None
            subsystem.last_success = time.monotonic()
            self._transition(subsystem, HEALTHY)

    async def record_failure(self, name: str, error: Optional[BaseException] = None) -> None:
        """Count a failure and open the circuit once the threshold is reached."""

        async with self._lock:
            subsystem = self._subsystems[name]
            subsystem.failures += 1
            subsystem.last_failure = time.monotonic()
            if error is not None:
                subsystem.last_error = str(error)
            if subsystem.failures >= self._failure_threshold:
                subsystem.suppressions += 1
                subsystem.suppressed_until = subsystem.last_failure + self._cooldown
                record_subsystem_failure(name)
                self._transition(subsystem, SUPPRESSED)
            else:
                self._transition(subsystem, DEGRADED)

    async def allow_attempt(self, name: str) -> Tuple[bool, float]:
        """Whether the subsystem may run now, and how long it remains suppressed otherwise."""

        async with self._lock:
            subsystem = self._subsystems[name]
            now = time.monotonic()
            if subsystem.suppressed_until is not None and subsystem.suppressed_until > now:
                return False, subsystem.suppressed_until - now
            if subsystem.status == SUPPRESSED:
                self._transition(subsystem, RECOVERING)
        return True, 0.0

    async def snapshot(self) -> Mapping[str, Dict[str, Any]]:
        async with self._lock:
            now = time.monotonic()
            return {name: subsystem.as_dict(now) for name, subsystem in self._subsystems.items()}

    def overall(self) -> str:
        statuses = self.statuses.value.values()
        return HEALTHY if all(status == HEALTHY for status in statuses) else DEGRADED
