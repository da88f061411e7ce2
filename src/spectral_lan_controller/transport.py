"""Fixture transport contract and its HTTP implementation.

Fixtures expose a small JSON API on port 80:

- ``GET /api/device/status``: reachability probe
- ``GET /api/device/info``: model, firmware, channel names and values, power
- ``POST /api/device/power``: ``{"power": bool}``
- ``POST /api/device/slider``: ``{"slider_id": int, "value": int}``
- ``POST /api/device/sliders``: ``{"sliders": [{"slider_id": int, "value": int}]}``
- ``GET /data/<file>``: profile documents shipped with the fixture (``/data/data.xlsx`` by default)

Transport calls never raise for network or protocol failures; they return a
:class:`TransportResult` carrying a human-readable cause instead.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, AsyncIterator, Generic, Mapping, Optional, TypeVar

import httpx

from .config import Config
from .logging import get_logger
from .models import MAX_CHANNELS, Device, now_iso

T = TypeVar("T")

STATUS_PATH = "/api/device/status"
INFO_PATH = "/api/device/info"
POWER_PATH = "/api/device/power"
SLIDER_PATH = "/api/device/slider"
SLIDERS_PATH = "/api/device/sliders"
PROFILE_PATH = "/data/data.xlsx"


@dataclass(frozen=True)
class TransportResult(Generic[T]):
    """Outcome of a single fixture operation."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "TransportResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "TransportResult[T]":
        return cls(ok=False, error=error)


def device_from_status(device: Device, payload: Mapping[str, Any]) -> Device:
    """Merge a status payload into a device, keeping locally owned fields.

    Room assignment, name and id always come from the local record.
    """

    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
    channel_count = int(data["num_sliders"])
    if channel_count < 0:
        raise ValueError("num_sliders must not be negative")
    names = tuple(str(name) for name in data.get("slider_names") or ())
    limit = min(channel_count, MAX_CHANNELS)
    values = tuple(max(0, min(255, int(value))) for value in (data.get("slider_values") or ())[:limit])
    return replace(
        device,
        online=True,
        model=str(data["device_model"]) if data.get("device_model") else device.model,
        firmware_version=(
            str(data["firmware_version"]) if data.get("firmware_version") else device.firmware_version
        ),
        address=device.address or (str(data["ip_address"]) if data.get("ip_address") else None),
        channel_count=channel_count,
        channel_names=names,
        pwm_values=values,
        is_on=bool(data.get("is_on", device.is_on)),
        last_seen=now_iso(),
    )


class DeviceTransport(ABC):
    """Abstract operations every fixture transport provides."""

    @abstractmethod
    async def test_connection(self, device: Device) -> TransportResult[None]:
        """Probe whether the fixture answers at all."""

    @abstractmethod
    async def get_status(self, device: Device) -> TransportResult[Device]:
        """Fetch a fresh device snapshot.

        Returns:
            A result whose value is ``device`` updated with the reported
            channel layout, values and power state.
        """

    @abstractmethod
    async def set_power(self, device: Device, on: bool) -> TransportResult[None]:
        """Switch the fixture output on or off."""

    @abstractmethod
    async def set_channel(self, device: Device, index: int, pwm: int) -> TransportResult[None]:
        """Set one channel's duty cycle."""

    @abstractmethod
    async def set_channels(self, device: Device, values: Mapping[int, int]) -> TransportResult[None]:
        """Set several channels in one request."""

    @abstractmethod
    async def fetch_profile_file(
        self, device: Device, path: str = PROFILE_PATH
    ) -> TransportResult[bytes]:
        """Download the profile document stored at ``path`` on the fixture."""

    async def stream_status(
        self, device: Device, interval: float
    ) -> AsyncIterator[TransportResult[Device]]:
        """Poll status forever; cancel the consumer to stop."""

        while True:
            yield await self.get_status(device)
            await asyncio.sleep(interval)

    async def aclose(self) -> None:
        return None


class HttpDeviceTransport(DeviceTransport):
    """Speaks the fixture JSON API with httpx."""

    def __init__(self, config: Config, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        self.logger = get_logger("spectral.transport")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.device_read_timeout, connect=config.device_connect_timeout),
            headers={"Content-Type": "application/json"},
        )

    def _url(self, device: Device, path: str) -> str:
        port = self.config.device_http_port
        host = device.address
        if port == 80:
            return f"http://{host}{path}"
        return f"http://{host}:{port}{path}"

    async def _request(
        self, device: Device, method: str, path: str, payload: Optional[Mapping[str, Any]] = None
    ) -> TransportResult[httpx.Response]:
        if not device.address:
            return TransportResult.failure("device has no network address")
        try:
            response = await self._client.request(method, self._url(device, path), json=payload)
            response.raise_for_status()
        except httpx.TimeoutException:
            return TransportResult.failure(f"timed out contacting {device.address}")
        except httpx.HTTPStatusError as exc:
            return TransportResult.failure(f"HTTP {exc.response.status_code} from {path}")
        except httpx.HTTPError as exc:
            return TransportResult.failure(str(exc) or exc.__class__.__name__)
        return TransportResult.success(response)

    async def _command(
        self, device: Device, path: str, payload: Mapping[str, Any]
    ) -> TransportResult[None]:
        result = await self._request(device, "POST", path, payload)
        if not result.ok or result.value is None:
            return TransportResult.failure(result.error or "request failed")
        try:
            body = result.value.json()
        except ValueError:
            return TransportResult.failure(f"non-JSON response from {path}")
        if isinstance(body, Mapping) and body.get("success") is False:
            return TransportResult.failure(str(body.get("message") or "device rejected command"))
        return TransportResult.success()

    async def test_connection(self, device: Device) -> TransportResult[None]:
        result = await self._request(device, "GET", STATUS_PATH)
        if not result.ok:
            return TransportResult.failure(result.error or "unreachable")
        return TransportResult.success()

    async def get_status(self, device: Device) -> TransportResult[Device]:
        result = await self._request(device, "GET", INFO_PATH)
        if not result.ok or result.value is None:
            return TransportResult.failure(result.error or "status unavailable")
        try:
            body = result.value.json()
            if not isinstance(body, Mapping):
                raise ValueError("status payload is not an object")
            if body.get("success") is False:
                return TransportResult.failure(str(body.get("message") or "status request rejected"))
            return TransportResult.success(device_from_status(device, body))
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.debug(
                "Malformed status payload",
                extra={"device_id": device.id, "error": str(exc)},
            )
            return TransportResult.failure(f"malformed status payload: {exc}")

    async def set_power(self, device: Device, on: bool) -> TransportResult[None]:
        return await self._command(device, POWER_PATH, {"power": on})

    async def set_channel(self, device: Device, index: int, pwm: int) -> TransportResult[None]:
        return await self._command(device, SLIDER_PATH, {"slider_id": index, "value": pwm})

    async def set_channels(self, device: Device, values: Mapping[int, int]) -> TransportResult[None]:
        sliders = [{"slider_id": index, "value": pwm} for index, pwm in sorted(values.items())]
        return await self._command(device, SLIDERS_PATH, {"sliders": sliders})

    async def fetch_profile_file(
        self, device: Device, path: str = PROFILE_PATH
    ) -> TransportResult[bytes]:
        result = await self._request(device, "GET", path)
        if not result.ok or result.value is None:
            return TransportResult.failure(result.error or "profile download failed")
        content = result.value.content
        if not content:
            return TransportResult.failure("profile file is empty")
        return TransportResult.success(content)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class DryRunTransport(DeviceTransport):
    """Logs every command and reports success without touching the network."""

    def __init__(self) -> None:
        self.logger = get_logger("spectral.transport")

    def _log(self, device: Device, operation: str, **details: Any) -> None:
        self.logger.info(
            "Dry-run fixture command",
            extra={"device_id": device.id, "operation": operation, **details},
        )

    async def test_connection(self, device: Device) -> TransportResult[None]:
        self._log(device, "test_connection")
        return TransportResult.success()

    async def get_status(self, device: Device) -> TransportResult[Device]:
        return TransportResult.success(replace(device, online=True, last_seen=now_iso()))

    async def set_power(self, device: Device, on: bool) -> TransportResult[None]:
        self._log(device, "set_power", power=on)
        return TransportResult.success()

    async def set_channel(self, device: Device, index: int, pwm: int) -> TransportResult[None]:
        self._log(device, "set_channel", channel=index, pwm=pwm)
        return TransportResult.success()

    async def set_channels(self, device: Device, values: Mapping[int, int]) -> TransportResult[None]:
        self._log(device, "set_channels", values=dict(values))
        return TransportResult.success()

    async def fetch_profile_file(
        self, device: Device, path: str = PROFILE_PATH
    ) -> TransportResult[bytes]:
        return TransportResult.failure("profile download unavailable in dry-run mode")
