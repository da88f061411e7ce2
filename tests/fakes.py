"""In-memory fixture transport shared by the test modules."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from spectral_lan_controller.config import Config
from spectral_lan_controller.models import Device, now_iso
from spectral_lan_controller.transport import PROFILE_PATH, DeviceTransport, TransportResult


def fast_config(tmp_path: Path, **overrides: Any) -> Config:
    values: Dict[str, Any] = {
        "db_path": tmp_path / "controller.sqlite3",
        "slider_debounce_seconds": 0.05,
        "slider_retry_delay": 0.0,
        "monitor_interval": 0.01,
        "monitor_offline_interval": 0.01,
        "device_command_timeout": 2.0,
        "monitor_enabled": False,
    }
    values.update(overrides)
    return Config(**values)


class FakeTransport(DeviceTransport):
    """Fixtures live in a dict; every call is recorded and any device can be made to fail."""

    def __init__(self) -> None:
        self.fixtures: Dict[str, Device] = {}
        self.calls: List[Tuple[str, str, Any]] = []
        self.failing: Set[str] = set()
        self.drop_channel_writes: Dict[str, int] = {}
        # (device id, path) -> file contents served by the fixture
        self.profiles: Dict[Tuple[str, str], bytes] = {}

    def add_fixture(
        self,
        device_id: str,
        channel_names: Sequence[str],
        pwm_values: Optional[Sequence[int]] = None,
        model: str = "X",
        is_on: bool = True,
    ) -> Device:
        fixture = Device(
            id=device_id,
            name=device_id,
            address=f"10.0.0.{len(self.fixtures) + 10}",
            online=True,
            model=model,
            channel_count=len(channel_names),
            channel_names=tuple(channel_names),
            pwm_values=tuple(pwm_values if pwm_values is not None else [0] * len(channel_names)),
            is_on=is_on,
        )
        self.fixtures[device_id] = fixture
        return fixture

    def commands(self, operation: Optional[str] = None, device_id: Optional[str] = None) -> List[Any]:
        return [
            payload
            for op, target, payload in self.calls
            if (operation is None or op == operation) and (device_id is None or target == device_id)
        ]

    def _record(self, operation: str, device: Device, payload: Any = None) -> None:
        self.calls.append((operation, device.id, payload))

    def _apply(self, device_id: str, values: Mapping[int, int]) -> None:
        fixture = self.fixtures.get(device_id)
        if fixture is None:
            return
        current = list(fixture.pwm_values)
        for index, pwm in values.items():
            if index < len(current):
                current[index] = pwm
        self.fixtures[device_id] = replace(fixture, pwm_values=tuple(current))

    async def test_connection(self, device: Device) -> TransportResult[None]:
        self._record("test_connection", device)
        if device.id in self.failing:
            return TransportResult.failure("unreachable")
        return TransportResult.success()

    async def get_status(self, device: Device) -> TransportResult[Device]:
        self._record("get_status", device)
        fixture = self.fixtures.get(device.id)
        if device.id in self.failing or fixture is None:
            return TransportResult.failure("status unavailable")
        # Fixtures know nothing about rooms.
        return TransportResult.success(
            replace(fixture, room_id=None, room_name=None, last_seen=now_iso())
        )

    async def set_power(self, device: Device, on: bool) -> TransportResult[None]:
        self._record("set_power", device, on)
        if device.id in self.failing:
            return TransportResult.failure("unreachable")
        if device.id in self.fixtures:
            self.fixtures[device.id] = replace(self.fixtures[device.id], is_on=on)
        return TransportResult.success()

    async def set_channel(self, device: Device, index: int, pwm: int) -> TransportResult[None]:
        self._record("set_channel", device, (index, pwm))
        if device.id in self.failing:
            return TransportResult.failure("unreachable")
        if self.drop_channel_writes.get(device.id, 0) > 0:
            self.drop_channel_writes[device.id] -= 1
            return TransportResult.failure("request dropped")
        self._apply(device.id, {index: pwm})
        return TransportResult.success()

    async def set_channels(self, device: Device, values: Mapping[int, int]) -> TransportResult[None]:
        self._record("set_channels", device, dict(values))
        if device.id in self.failing:
            return TransportResult.failure("unreachable")
        self._apply(device.id, values)
        return TransportResult.success()

    async def fetch_profile_file(
        self, device: Device, path: str = PROFILE_PATH
    ) -> TransportResult[bytes]:
        self._record("fetch_profile", device, path)
        data = self.profiles.get((device.id, path))
        if device.id in self.failing or data is None:
            return TransportResult.failure("profile download failed")
        return TransportResult.success(data)
