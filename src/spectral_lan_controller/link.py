"""Fixture connections, monitoring, debounced slider dispatch and power sequencing."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import replace
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from .config import Config
from .errors import ValidationError
from .logging import get_logger
from .metrics import (
    observe_device_command,
    record_debounce_coalesced,
    record_debounce_flush,
    record_device_poll,
    set_connected_devices,
    set_monitored_devices,
)
from .models import MAX_CHANNELS, Device
from .spectral import to_pwm
from .state import ConnectionState, LinkState, StateContainer, with_entry, without_entry
from .store import RecordStore
from .transport import PROFILE_PATH, DeviceTransport, TransportResult

SnapshotHandler = Callable[[Device], Awaitable[None]]
SliderFlush = Callable[[str, Dict[str, float], Tuple[str, ...]], Awaitable[object]]

# Band name -> keywords looked for inside fixture channel names.
CHANNEL_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "red": ("red", "r", "660"),
    "blue": ("blue", "b", "450", "470"),
    "green": ("green", "g", "530"),
    "white": ("white", "w", "cool", "warm"),
    "uv": ("uv", "ultraviolet", "365", "385"),
    "far red": ("far", "730", "fr"),
    "violet": ("violet", "v", "420"),
    "cyan": ("cyan", "c", "490"),
}


def map_source_to_channel(
    source_name: str, device: Device, source_order: Sequence[str] = ()
) -> Optional[int]:
    """Resolve the channel a spectral source drives on ``device``.

    Tries an exact case-insensitive channel name, then the band keyword
    table, then the source's position in ``source_order``. Returns None when
    the source has no channel on this fixture.
    """

    names = [name.lower() for name in device.channel_names]
    wanted = source_name.lower()
    for index, name in enumerate(names):
        if name == wanted:
            return index

    keywords = CHANNEL_KEYWORDS.get(wanted)
    if keywords:
        for index, name in enumerate(names):
            if any(keyword in name for keyword in keywords):
                return index

    if source_name in source_order:
        position = list(source_order).index(source_name)
        if position < len(names):
            return position
    return None


def map_slider_values(
    device: Device, values: Mapping[str, float], source_order: Sequence[str] = ()
) -> Dict[int, int]:
    """Translate source slider values into per-channel PWM for one fixture."""

    updates: Dict[int, int] = {}
    for source_name, value in values.items():
        index = map_source_to_channel(source_name, device, source_order)
        if index is not None:
            updates[index] = to_pwm(value)
    return updates


def with_local_fields(reported: Device, local: Device) -> Device:
    """Fixture-reported state with identity and room fields taken from the local record."""

    return replace(
        reported,
        id=local.id,
        name=local.name,
        address=local.address or reported.address,
        room_id=local.room_id,
        room_name=local.room_name,
        online=True,
    )


class SliderDebouncer:
    """Coalesce slider edits per room behind a resettable timer.

    Each room has one pending slot holding the latest value per source. Every
    edit replaces its source's value and restarts the room's timer; the slot
    is flushed only after the room has been quiet for ``delay`` seconds.
    """

    def __init__(self, delay: float, flush: SliderFlush) -> None:
        self._delay = delay
        self._flush = flush
        self._pending: Dict[str, Dict[str, float]] = {}
        self._orders: Dict[str, Tuple[str, ...]] = {}
        self._timers: Dict[str, asyncio.Task[None]] = {}
        self._inflight: Set[asyncio.Task[None]] = set()
        self.logger = get_logger("spectral.link")

    def submit(self, key: str, source: str, value: float, source_order: Sequence[str] = ()) -> None:
        pending = self._pending.setdefault(key, {})
        if source in pending:
            record_debounce_coalesced()
        pending[source] = value
        self._orders[key] = tuple(source_order)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._timers[key] = asyncio.get_running_loop().create_task(self._expire(key))

    def pending(self, key: str) -> Dict[str, float]:
        return dict(self._pending.get(key, {}))

    async def _expire(self, key: str) -> None:
        await asyncio.sleep(self._delay)
        # Past this point a newer edit starts a new timer instead of cancelling this flush.
        self._timers.pop(key, None)
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            await self._run_flush(key)
        finally:
            if task is not None:
                self._inflight.discard(task)

    async def _run_flush(self, key: str) -> None:
        values = self._pending.pop(key, {})
        order = self._orders.pop(key, ())
        if not values:
            return
        try:
            await self._flush(key, values, order)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Slider flush failed", extra={"room_id": key})

    async def flush_now(self, key: str) -> None:
        """Dispatch any pending edits for ``key`` immediately."""

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        await self._run_flush(key)

    def cancel(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._pending.pop(key, None)
        self._orders.pop(key, None)

    async def close(self) -> None:
        tasks = list(self._timers.values()) + list(self._inflight)
        self._timers.clear()
        self._pending.clear()
        self._orders.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*tasks, return_exceptions=True)


class DeviceLink:
    """Reach fixtures with bounded timeouts, per-device ordering and independent failures."""

    def __init__(self, config: Config, transport: DeviceTransport, store: RecordStore) -> None:
        self.config = config
        self.transport = transport
        self.store = store
        self.logger = get_logger("spectral.link")
        self.monitor_logger = get_logger("spectral.monitor")
        self.state: StateContainer[LinkState] = StateContainer(LinkState(), name="link")
        self._monitor_tasks: Dict[str, asyncio.Task[None]] = {}
        self._device_locks: Dict[str, asyncio.Lock] = {}
        # Latest locally owned record per device; monitors read room fields from here.
        self._local: Dict[str, Device] = {}
        self._debouncer = SliderDebouncer(config.slider_debounce_seconds, self._dispatch_sliders)

    # Connection state

    def connection_state(self, device_id: str) -> ConnectionState:
        return self.state.value.connections.get(device_id, ConnectionState.DISCONNECTED)

    def connected_devices(self, room_id: Optional[str] = None) -> List[Device]:
        return self.state.value.connected_devices(room_id)

    def _set_connection(self, device_id: str, status: ConnectionState) -> None:
        self.state.update(
            lambda s: replace(s, connections=with_entry(s.connections, device_id, status))
        )

    def _join_pool(self, device: Device, status: ConnectionState) -> None:
        self.state.update(
            lambda s: replace(
                s,
                connections=with_entry(s.connections, device.id, status),
                connected=with_entry(s.connected, device.id, replace(device, online=True)),
                device_errors=without_entry(s.device_errors, device.id),
            )
        )
        set_connected_devices(len(self.state.value.connected))

    def _leave_pool(self, device_id: str) -> None:
        self.state.update(
            lambda s: replace(
                s,
                connections=with_entry(s.connections, device_id, ConnectionState.DISCONNECTED),
                connected=without_entry(s.connected, device_id),
            )
        )
        set_connected_devices(len(self.state.value.connected))

    def _record_error(self, device: Device, operation: str, cause: Optional[str]) -> None:
        message = f"{operation} failed for {device.name}: {cause or 'unknown error'}"
        self.state.update(
            lambda s: replace(
                s,
                device_errors=with_entry(s.device_errors, device.id, message),
                last_error=message,
            )
        )
        self.logger.warning(
            "Fixture operation failed",
            extra={"device_id": device.id, "operation": operation, "cause": cause},
        )

    def _clear_error(self, device_id: str) -> None:
        if device_id in self.state.value.device_errors:
            self.state.update(
                lambda s: replace(s, device_errors=without_entry(s.device_errors, device_id))
            )

    def clear_errors(self) -> None:
        self.state.update(lambda s: replace(s, device_errors={}, last_error=None))

    def _update_pooled(self, device_id: str, transform: Callable[[Device], Device]) -> None:
        if device_id not in self.state.value.connected:
            return
        self.state.update(
            lambda s: replace(
                s,
                connected=with_entry(s.connected, device_id, transform(s.connected[device_id]))
                if device_id in s.connected
                else s.connected,
            )
        )

    def refresh(self, device: Device) -> None:
        """Adopt changed local fields such as the room in the pool and in running monitors."""

        self._local[device.id] = device
        self._update_pooled(device.id, lambda pooled: with_local_fields(pooled, device))

    def _local_record(self, device: Device) -> Device:
        return self._local.get(device.id, device)

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._device_locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._device_locks[device_id] = lock
        return lock

    async def _call(
        self, device: Device, operation: str, call: Awaitable[TransportResult]
    ) -> TransportResult:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(call, timeout=self.config.device_command_timeout)
        except asyncio.TimeoutError:
            result = TransportResult.failure(
                f"timed out after {self.config.device_command_timeout:g}s"
            )
        duration = time.perf_counter() - started
        observe_device_command(operation, "success" if result.ok else "failure", duration)
        return result

    async def connect(self, device: Device) -> bool:
        """Probe a fixture and add it to the connected pool on success."""

        self._local[device.id] = device
        self._set_connection(device.id, ConnectionState.CONNECTING)
        result = await self._call(device, "test_connection", self.transport.test_connection(device))
        if result.ok:
            info = await self._call(device, "get_status", self.transport.get_status(device))
            local = self._local_record(device)
            snapshot = with_local_fields(info.value, local) if info.ok and info.value else local
            status = (
                ConnectionState.MONITORING
                if device.id in self._monitor_tasks
                else ConnectionState.CONNECTED
            )
            self._join_pool(snapshot, status)
            self.logger.info("Fixture connected", extra={"device_id": device.id})
            return True
        self._leave_pool(device.id)
        self._record_error(device, "connect", result.error)
        return False

    async def connect_all(self, devices: Iterable[Device]) -> Dict[str, bool]:
        targets = [device for device in devices if device.address]
        results = await asyncio.gather(*(self.connect(device) for device in targets))
        return {device.id: ok for device, ok in zip(targets, results)}

    async def disconnect(self, device_id: str) -> None:
        await self.stop_monitoring(device_id)
        self._leave_pool(device_id)

    async def forget(self, device_id: str) -> None:
        """Drop every trace of a removed fixture."""

        await self.disconnect(device_id)
        self.state.update(
            lambda s: replace(
                s,
                connections=without_entry(s.connections, device_id),
                device_errors=without_entry(s.device_errors, device_id),
            )
        )
        self._device_locks.pop(device_id, None)
        self._local.pop(device_id, None)

    # Monitoring

    async def monitor(self, device: Device) -> AsyncIterator[Device]:
        """Yield a fresh snapshot per status poll, forever.

        Identity and room fields come from the latest record handed to
        :meth:`refresh`, or from ``device`` until there is one; the fixture is
        not authoritative for them. A failed poll yields an offline snapshot
        and backs off to the offline interval.
        """

        current = device
        while True:
            result = await self._call(current, "get_status", self.transport.get_status(current))
            local = self._local_record(device)
            if result.ok and result.value is not None:
                record_device_poll("success")
                current = with_local_fields(result.value, local)
                delay = self.config.monitor_interval
            else:
                record_device_poll("failure")
                current = replace(with_local_fields(current, local), online=False)
                delay = self.config.monitor_offline_interval
            yield current
            await asyncio.sleep(delay)

    async def start_monitoring(self, device: Device, on_snapshot: Optional[SnapshotHandler] = None) -> None:
        """(Re)start the polling task for one fixture."""

        await self.stop_monitoring(device.id)
        self._local[device.id] = device
        if not device.address:
            return
        self._monitor_tasks[device.id] = asyncio.create_task(self._run_monitor(device, on_snapshot))
        set_monitored_devices(len(self._monitor_tasks))

    async def _run_monitor(self, device: Device, on_snapshot: Optional[SnapshotHandler]) -> None:
        if self.connection_state(device.id) == ConnectionState.DISCONNECTED:
            self._set_connection(device.id, ConnectionState.CONNECTING)
        was_online = device.online
        try:
            async for snapshot in self.monitor(device):
                if snapshot.online:
                    self._join_pool(snapshot, ConnectionState.MONITORING)
                    if not was_online:
                        self.monitor_logger.info("Fixture online", extra={"device_id": device.id})
                else:
                    self._leave_pool(device.id)
                    if was_online:
                        self.monitor_logger.info("Fixture offline", extra={"device_id": device.id})
                was_online = snapshot.online
                if on_snapshot is None:
                    continue
                try:
                    await on_snapshot(snapshot)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    self.monitor_logger.exception(
                        "Snapshot handler failed", extra={"device_id": device.id}
                    )
        except asyncio.CancelledError:
            self.monitor_logger.debug("Monitoring cancelled", extra={"device_id": device.id})
            raise

    async def stop_monitoring(self, device_id: str) -> None:
        task = self._monitor_tasks.pop(device_id, None)
        set_monitored_devices(len(self._monitor_tasks))
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        if self.connection_state(device_id) == ConnectionState.MONITORING:
            self._set_connection(device_id, ConnectionState.CONNECTED)

    def is_monitoring(self, device_id: str) -> bool:
        task = self._monitor_tasks.get(device_id)
        return task is not None and not task.done()

    async def stop_all(self) -> None:
        tasks = list(self._monitor_tasks.values())
        self._monitor_tasks.clear()
        set_monitored_devices(0)
        for task in tasks:
            task.cancel()
        if tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self) -> None:
        """Cancel every monitoring task and pending slider flush."""

        await self.stop_all()
        await self._debouncer.close()
        self.logger.info("Device link stopped")

    # Commands

    async def fan_out(
        self,
        devices: Sequence[Device],
        operation: Callable[[Device], Awaitable[TransportResult]],
    ) -> Dict[str, TransportResult]:
        """Run ``operation`` on every device concurrently; failures stay per device."""

        async def _guarded(device: Device) -> TransportResult:
            try:
                return await operation(device)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.exception("Fixture operation raised", extra={"device_id": device.id})
                self._record_error(device, "command", str(exc))
                return TransportResult.failure(str(exc))

        results = await asyncio.gather(*(_guarded(device) for device in devices))
        return {device.id: result for device, result in zip(devices, results)}

    def _settle(
        self,
        device: Device,
        operation: str,
        result: TransportResult,
        updates: Optional[Mapping[int, int]] = None,
        is_on: Optional[bool] = None,
    ) -> None:
        if not result.ok:
            self._record_error(device, operation, result.error)
            self._update_pooled(device.id, lambda pooled: replace(pooled, online=False))
            return
        self._clear_error(device.id)

        def _apply(pooled: Device) -> Device:
            values = list(pooled.pwm_values)
            for index, pwm in (updates or {}).items():
                if index < len(values):
                    values[index] = pwm
                elif index < min(pooled.channel_count, MAX_CHANNELS):
                    values.extend([0] * (index - len(values)))
                    values.append(pwm)
            return replace(
                pooled,
                online=True,
                pwm_values=tuple(values),
                is_on=pooled.is_on if is_on is None else is_on,
            )

        self._update_pooled(device.id, _apply)

    def send_slider_change(
        self, room_id: str, source_name: str, value: float, source_order: Sequence[str] = ()
    ) -> None:
        """Queue a slider edit; only the quiescent tail reaches the fixtures."""

        self._debouncer.submit(room_id, source_name, value, source_order)

    def pending_slider_changes(self, room_id: str) -> Dict[str, float]:
        return self._debouncer.pending(room_id)

    async def flush_pending(self, room_id: str) -> None:
        await self._debouncer.flush_now(room_id)

    def cancel_pending(self, room_id: str) -> None:
        self._debouncer.cancel(room_id)

    async def _dispatch_sliders(
        self, room_id: str, values: Dict[str, float], source_order: Tuple[str, ...]
    ) -> Dict[str, TransportResult]:
        record_debounce_flush()
        devices = self.connected_devices(room_id)
        if not devices:
            self.logger.debug("No connected fixtures for slider flush", extra={"room_id": room_id})
            return {}

        async def _send(device: Device) -> TransportResult:
            updates = map_slider_values(device, values, source_order)
            if not updates:
                return TransportResult.success()
            if len(updates) == 1:
                ((index, pwm),) = updates.items()
                return await self.set_channel(device, index, pwm)
            return await self.batch_update(device, updates)

        self.logger.debug(
            "Dispatching slider changes",
            extra={"room_id": room_id, "sources": sorted(values), "devices": len(devices)},
        )
        return await self.fan_out(devices, _send)

    async def set_channel(self, device: Device, index: int, pwm: int) -> TransportResult:
        """Send one channel value, retrying briefly when the fixture drops it."""

        self._validate_updates(device, {index: pwm})
        attempts = 1 + self.config.slider_send_retries
        async with self._lock_for(device.id):
            result: TransportResult = TransportResult.failure("not attempted")
            for attempt in range(attempts):
                result = await self._call(
                    device, "set_channel", self.transport.set_channel(device, index, pwm)
                )
                if result.ok:
                    break
                if attempt + 1 < attempts:
                    await asyncio.sleep(self.config.slider_retry_delay)
        self._settle(device, "set_channel", result, updates={index: pwm})
        return result

    def _validate_updates(self, device: Device, updates: Mapping[int, int]) -> None:
        limit = min(device.channel_count or MAX_CHANNELS, MAX_CHANNELS)
        for index, pwm in updates.items():
            if index < 0 or index >= limit:
                raise ValidationError(
                    f"Channel {index} out of range for {device.name} ({limit} channels)"
                )
            if pwm < 0 or pwm > 255:
                raise ValidationError(f"PWM value {pwm} for channel {index} must be within 0-255")

    async def batch_update(self, device: Device, updates: Mapping[int, int]) -> TransportResult:
        """Send several channel values to one fixture as a single command."""

        self._validate_updates(device, updates)
        if not updates:
            return TransportResult.success()
        async with self._lock_for(device.id):
            result = await self._send_batch(device, updates)
        return result

    async def _send_batch(self, device: Device, updates: Mapping[int, int]) -> TransportResult:
        result = await self._call(device, "set_channels", self.transport.set_channels(device, dict(updates)))
        self._settle(device, "set_channels", result, updates=updates)
        return result

    async def push_slider_values(
        self,
        room_id: str,
        values: Mapping[str, float],
        source_order: Sequence[str] = (),
        devices: Optional[Sequence[Device]] = None,
    ) -> Dict[str, TransportResult]:
        """Batch a full slider snapshot to every connected fixture in the room."""

        targets = list(devices) if devices is not None else self.connected_devices(room_id)

        async def _push(device: Device) -> TransportResult:
            updates = map_slider_values(device, values, source_order)
            if not updates:
                return TransportResult.success()
            return await self.batch_update(device, updates)

        return await self.fan_out(targets, _push)

    async def fetch_profile_file(self, device: Device, path: str = PROFILE_PATH) -> TransportResult:
        result = await self._call(device, "fetch_profile", self.transport.fetch_profile_file(device, path))
        if not result.ok:
            self._record_error(device, "profile download", result.error)
        return result

    # Power

    async def power_off(self, device: Device) -> TransportResult:
        """Snapshot channel values, zero every channel, then switch off."""

        async with self._lock_for(device.id):
            status = await self._call(device, "get_status", self.transport.get_status(device))
            if status.ok and status.value is not None:
                latest = status.value
                count = min(latest.channel_count, MAX_CHANNELS)
                values = list(latest.pwm_values[:count])
                values.extend([0] * (count - len(values)))
                await self.store.put_power_snapshot(device.id, values)
                if count:
                    await self._send_batch(latest, {index: 0 for index in range(count)})
            else:
                self.logger.warning(
                    "Skipping channel snapshot; status unavailable",
                    extra={"device_id": device.id, "cause": status.error},
                )
            result = await self._call(device, "set_power", self.transport.set_power(device, False))
        self._settle(device, "power off", result, is_on=False)
        return result

    async def power_on(self, device: Device) -> TransportResult:
        """Switch on, then restore the snapshot trimmed to the current channel count."""

        async with self._lock_for(device.id):
            result = await self._call(device, "set_power", self.transport.set_power(device, True))
            if not result.ok:
                self._settle(device, "power on", result)
                return result
            self._settle(device, "power on", result, is_on=True)
            status = await self._call(device, "get_status", self.transport.get_status(device))
            if not status.ok or status.value is None:
                self._record_error(device, "channel restore", status.error)
                return result
            latest = status.value
            count = min(latest.channel_count, MAX_CHANNELS)
            previous = await self.store.get_power_snapshot(device.id) or []
            restore = {index: value for index, value in enumerate(previous) if index < count}
            if not any(restore.values()):
                restore = {index: self.config.restore_default_pwm for index in range(count)}
            if restore:
                await self._send_batch(latest, restore)
        return result
