import asyncio
from dataclasses import replace

import pytest

from fakes import FakeTransport, fast_config
from spectral_lan_controller.db import apply_migrations
from spectral_lan_controller.errors import ValidationError
from spectral_lan_controller.link import DeviceLink, map_source_to_channel
from spectral_lan_controller.models import Device
from spectral_lan_controller.state import ConnectionState
from spectral_lan_controller.store import RecordStore


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    start = asyncio.get_event_loop().time()
    while not predicate():
        if asyncio.get_event_loop().time() - start > timeout:
            raise TimeoutError("Condition not reached in time")
        await asyncio.sleep(0.01)


def _member(fixture: Device, room_id: str = "room-1") -> Device:
    return replace(fixture, room_id=room_id, room_name="Grow")


async def _setup(tmp_path, **overrides):
    config = fast_config(tmp_path, **overrides)
    apply_migrations(config.db_path)
    store = RecordStore(config.db_path)
    transport = FakeTransport()
    link = DeviceLink(config, transport, store)
    return config, store, transport, link


def test_mapping_prefers_exact_channel_name() -> None:
    device = Device(id="d", name="d", channel_names=("Blue", "red", "White"), channel_count=3)

    assert map_source_to_channel("Red", device) == 1


def test_mapping_uses_band_keywords() -> None:
    device = Device(id="d", name="d", channel_names=("R660", "B450", "FR 730"), channel_count=3)

    assert map_source_to_channel("Red", device) == 0
    assert map_source_to_channel("Blue", device) == 1
    assert map_source_to_channel("Far Red", device) == 2


def test_mapping_falls_back_to_position() -> None:
    device = Device(id="d", name="d", channel_names=("ch1", "ch2", "ch3"), channel_count=3)

    assert map_source_to_channel("Lime", device, ["Amber", "Lime"]) == 1
    assert map_source_to_channel("Lime", device, ["a", "b", "c", "Lime"]) is None
    assert map_source_to_channel("Lime", device) is None


@pytest.mark.asyncio
async def test_connect_failure_is_attributed_to_one_device(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path)
    good = _member(transport.add_fixture("good", ["Red"]))
    bad = _member(transport.add_fixture("bad", ["Red"]))
    transport.failing.add("bad")

    try:
        results = await link.connect_all([good, bad])
    finally:
        await store.stop()

    assert results == {"good": True, "bad": False}
    assert link.connection_state("good") == ConnectionState.CONNECTED
    assert link.connection_state("bad") == ConnectionState.DISCONNECTED
    assert list(link.state.value.device_errors) == ["bad"]
    assert [device.id for device in link.connected_devices("room-1")] == ["good"]


@pytest.mark.asyncio
async def test_debounce_sends_only_latest_value(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path)
    device = _member(transport.add_fixture("d1", ["Red", "Blue"]))
    await link.connect(device)

    try:
        for value in (0.1, 0.4, 1.0):
            link.send_slider_change("room-1", "Red", value, ["Red", "Blue"])
        assert transport.commands("set_channel") == []
        await _wait_until(lambda: transport.commands("set_channel"))
        await asyncio.sleep(0.1)
    finally:
        await link.stop()
        await store.stop()

    assert transport.commands("set_channel", "d1") == [(0, 255)]


@pytest.mark.asyncio
async def test_debounce_timer_resets_across_sources(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path, slider_debounce_seconds=0.2)
    device = _member(transport.add_fixture("d1", ["Red", "Blue"]))
    await link.connect(device)

    try:
        link.send_slider_change("room-1", "Red", 0.5, ["Red", "Blue"])
        await asyncio.sleep(0.1)
        link.send_slider_change("room-1", "Blue", 1.0, ["Red", "Blue"])
        await asyncio.sleep(0.12)
        assert transport.commands("set_channels") == []
        assert link.pending_slider_changes("room-1") == {"Red": 0.5, "Blue": 1.0}
        await _wait_until(lambda: transport.commands("set_channels"))
    finally:
        await link.stop()
        await store.stop()

    assert transport.commands("set_channels", "d1") == [{0: 128, 1: 255}]
    assert transport.commands("set_channel") == []


@pytest.mark.asyncio
async def test_flush_pending_dispatches_immediately(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path, slider_debounce_seconds=5.0)
    device = _member(transport.add_fixture("d1", ["Red", "Blue"]))
    await link.connect(device)

    try:
        link.send_slider_change("room-1", "Blue", 0.2, ["Red", "Blue"])
        await link.flush_pending("room-1")
    finally:
        await link.stop()
        await store.stop()

    assert transport.commands("set_channel", "d1") == [(1, 51)]
    assert link.pending_slider_changes("room-1") == {}


@pytest.mark.asyncio
async def test_fan_out_isolates_failing_device(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path)
    good = _member(transport.add_fixture("good", ["Red", "Blue"]))
    bad = _member(transport.add_fixture("bad", ["Red", "Blue"]))
    await link.connect_all([good, bad])
    transport.failing.add("bad")

    try:
        results = await link.push_slider_values("room-1", {"Red": 1.0, "Blue": 0.0}, ["Red", "Blue"])
    finally:
        await store.stop()

    assert results["good"].ok
    assert not results["bad"].ok
    assert link.state.value.connected["good"].pwm_values == (255, 0)
    assert set(link.state.value.device_errors) == {"bad"}
    assert "bad" in link.state.value.connected


@pytest.mark.asyncio
async def test_single_channel_write_retried_once(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path)
    device = _member(transport.add_fixture("d1", ["Red"]))
    await link.connect(device)
    transport.drop_channel_writes["d1"] = 1

    try:
        result = await link.set_channel(device, 0, 200)
    finally:
        await store.stop()

    assert result.ok
    assert transport.commands("set_channel", "d1") == [(0, 200), (0, 200)]


@pytest.mark.asyncio
async def test_batch_update_rejects_out_of_range(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path)
    device = transport.add_fixture("d1", ["Red", "Blue", "White", "UV"])

    try:
        with pytest.raises(ValidationError):
            await link.batch_update(device, {4: 10})
        with pytest.raises(ValidationError):
            await link.batch_update(device, {0: 300})
    finally:
        await store.stop()

    assert transport.commands("set_channels") == []


@pytest.mark.asyncio
async def test_power_cycle_snapshots_reported_channels_only(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path)
    transport.add_fixture("d1", ["Red", "Blue", "White", "UV"], [10, 20, 30, 40])
    # The stored record still believes in six channels.
    record = Device(
        id="d1",
        name="d1",
        address="10.0.0.10",
        model="X",
        channel_count=6,
        channel_names=("a", "b", "c", "d", "e", "f"),
        pwm_values=(1, 2, 3, 4, 5, 6),
    )

    try:
        off = await link.power_off(record)
        snapshot = await store.get_power_snapshot("d1")
        on = await link.power_on(record)
    finally:
        await store.stop()

    assert off.ok and on.ok
    assert snapshot == [10, 20, 30, 40]
    assert transport.commands("set_channels", "d1") == [
        {0: 0, 1: 0, 2: 0, 3: 0},
        {0: 10, 1: 20, 2: 30, 3: 40},
    ]
    assert transport.commands("set_power", "d1") == [False, True]
    assert transport.fixtures["d1"].pwm_values == (10, 20, 30, 40)


@pytest.mark.asyncio
async def test_power_on_trims_stale_snapshot(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path)
    device = transport.add_fixture("d1", ["Red", "Blue", "White", "UV"])
    await store.put_power_snapshot("d1", [1, 2, 3, 4, 5, 6])

    try:
        await link.power_on(device)
    finally:
        await store.stop()

    assert transport.commands("set_channels", "d1") == [{0: 1, 1: 2, 2: 3, 3: 4}]


@pytest.mark.asyncio
async def test_power_on_without_snapshot_uses_default(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path)
    device = transport.add_fixture("d1", ["Red", "Blue", "White"])

    try:
        await link.power_on(device)
    finally:
        await store.stop()

    assert transport.commands("set_channels", "d1") == [{0: 128, 1: 128, 2: 128}]


@pytest.mark.asyncio
async def test_monitor_preserves_room_fields(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path)
    transport.add_fixture("d1", ["Red", "Blue"], [7, 9])
    device = _member(Device(id="d1", name="Bench", address="10.0.0.10"))

    snapshots = link.monitor(device)
    try:
        first = await snapshots.__anext__()
        transport.failing.add("d1")
        second = await snapshots.__anext__()
    finally:
        await snapshots.aclose()
        await store.stop()

    assert first.online is True
    assert first.pwm_values == (7, 9)
    assert (first.room_id, first.room_name, first.name) == ("room-1", "Grow", "Bench")
    assert second.online is False
    assert second.room_id == "room-1"


@pytest.mark.asyncio
async def test_monitoring_drops_offline_device_from_pool(tmp_path) -> None:
    _, store, transport, link = await _setup(tmp_path)
    device = _member(transport.add_fixture("d1", ["Red"]))
    seen = []

    async def _on_snapshot(snapshot: Device) -> None:
        seen.append(snapshot.online)

    try:
        await link.start_monitoring(device, _on_snapshot)
        await _wait_until(lambda: link.connection_state("d1") == ConnectionState.MONITORING)
        assert "d1" in link.state.value.connected
        transport.failing.add("d1")
        await _wait_until(lambda: link.connection_state("d1") == ConnectionState.DISCONNECTED)
        assert "d1" not in link.state.value.connected
        await link.stop_monitoring("d1")
        assert not link.is_monitoring("d1")
    finally:
        await link.stop()
        await store.stop()

    assert seen[0] is True
    assert False in seen
