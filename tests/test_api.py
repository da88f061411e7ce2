import json

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from fakes import FakeTransport, fast_config
from spectral_lan_controller.api import create_app
from spectral_lan_controller.config import Config
from spectral_lan_controller.db import apply_migrations
from spectral_lan_controller.health import HealthMonitor
from spectral_lan_controller.link import DeviceLink
from spectral_lan_controller.rooms import RoomOrchestrator
from spectral_lan_controller.routines import RoutineStore
from spectral_lan_controller.store import RecordStore


def _document() -> bytes:
    return json.dumps(
        {
            "sources": [
                {"name": "Red", "initial_power": 100},
                {"name": "Blue", "initial_power": 50},
            ],
            "spectrum": [
                {"wavelength": 450, "intensities": {"Blue": 1.0}},
                {"wavelength": 660, "intensities": {"Red": 1.0}},
            ],
        }
    ).encode("utf-8")


async def _setup(tmp_path, **overrides):
    config = fast_config(tmp_path, **overrides)
    apply_migrations(config.db_path)
    store = RecordStore(config.db_path)
    transport = FakeTransport()
    link = DeviceLink(config, transport, store)
    rooms = RoomOrchestrator(config, store, link, RoutineStore(store.db))
    app = create_app(config, store=store, rooms=rooms, link=link, health=None)
    return store, transport, link, rooms, app


async def _teardown(store, link, rooms) -> None:
    await rooms.close()
    await link.stop()
    await store.stop()


async def _room_with_fixture(rooms, transport) -> str:
    fixture = transport.add_fixture("d1", ["Red", "Blue"])
    await rooms.add_device("d1", fixture.address)
    room = await rooms.create_room("Grow")
    await rooms.assign_device("d1", room.id)
    return room.id


def test_api_key_required_when_configured() -> None:
    app = create_app(Config(api_key="secret"), store=object(), rooms=object(), link=object(), health=None)
    client = TestClient(app)

    assert client.get("/health").status_code == 401
    assert client.get("/health", headers={"X-API-Key": "secret"}).status_code == 200
    assert client.get("/health", headers={"Authorization": "ApiKey secret"}).status_code == 200
    assert client.get("/metrics").status_code == 200


def test_bearer_token_accepted() -> None:
    app = create_app(
        Config(api_bearer_token="token"), store=object(), rooms=object(), link=object(), health=None
    )
    client = TestClient(app)

    assert client.get("/health", headers={"Authorization": "Bearer nope"}).status_code == 401
    response = client.get("/health", headers={"Authorization": "Bearer token"})
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "subsystems": {}}


@pytest.mark.asyncio
async def test_health_reports_degraded_subsystem() -> None:
    health = HealthMonitor(("repair", "api"), failure_threshold=3, cooldown_seconds=1.0)
    app = create_app(Config(), store=object(), rooms=object(), link=object(), health=health)
    await health.record_failure("repair", RuntimeError("disk full"))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/health")

    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["subsystems"]["repair"]["last_error"] == "disk full"
    assert payload["subsystems"]["api"]["status"] == "ok"


@pytest.mark.asyncio
async def test_device_and_room_routes(tmp_path) -> None:
    store, transport, link, rooms, app = await _setup(tmp_path)
    fixture = transport.add_fixture("d1", ["Red", "Blue"])

    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            created = await client.post("/devices", json={"id": "d1", "address": fixture.address, "name": "Bench"})
            room = await client.post("/rooms", json={"name": "Grow"})
            room_id = room.json()["id"]
            assigned = await client.put("/devices/d1/room", json={"room_id": room_id})
            fetched = await client.get(f"/rooms/{room_id}")
            stats = await client.get(f"/rooms/{room_id}/stats")
            duplicate = await client.post("/rooms", json={"name": "grow"})
            missing = await client.get("/rooms/missing")
            malformed = await client.post("/rooms", json={})
            status_counts = await client.get("/status")
            devices = await client.get("/devices")
    finally:
        await _teardown(store, link, rooms)

    assert created.status_code == 201
    assert created.json()["channel_names"] == ["Red", "Blue"]
    assert created.json()["name"] == "Bench"
    assert created.json()["connection"] == "connected"
    assert room.status_code == 201
    assert assigned.json()["room_name"] == "Grow"
    assert fetched.json()["member_count"] == 1
    assert fetched.json()["allowed_model"] == "X"
    assert stats.json()["total"] == 1
    assert duplicate.status_code == 400
    assert missing.status_code == 404
    assert malformed.status_code == 422
    assert status_counts.json() == {"devices": 1, "rooms": 1, "routines": 0, "connected": 1}
    assert [device["id"] for device in devices.json()] == ["d1"]


@pytest.mark.asyncio
async def test_connect_failure_maps_to_bad_gateway(tmp_path) -> None:
    store, transport, link, rooms, app = await _setup(tmp_path)
    fixture = transport.add_fixture("d1", ["Red"])

    try:
        await rooms.add_device("d1", fixture.address)
        transport.failing.add("d1")
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/devices/d1/connect")
            device = await client.get("/devices/d1")
    finally:
        await _teardown(store, link, rooms)

    assert response.status_code == 502
    assert "d1" in response.json()["detail"]
    assert device.json()["connection"] == "disconnected"
    assert device.json()["error"] is not None


@pytest.mark.asyncio
async def test_discover_route_pairs_scanned_fixture(tmp_path) -> None:
    store, transport, link, rooms, app = await _setup(tmp_path, discovery_subnets=("10.0.0.8/29",))
    transport.add_fixture("fixture-10-0-0-10", ["Red", "Blue"], model="FluorTronix FT-2")

    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/devices/discover")
            listed = await client.get("/devices")
    finally:
        await _teardown(store, link, rooms)

    assert response.status_code == 200
    assert [device["id"] for device in response.json()] == ["fixture-10-0-0-10"]
    assert response.json()[0]["address"] == "10.0.0.10"
    assert [device["id"] for device in listed.json()] == ["fixture-10-0-0-10"]


@pytest.mark.asyncio
async def test_spectrum_routes(tmp_path) -> None:
    store, transport, link, rooms, app = await _setup(tmp_path)

    try:
        room_id = await _room_with_fixture(rooms, transport)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            empty = await client.get(f"/rooms/{room_id}/spectrum")
            imported = await client.put(
                f"/rooms/{room_id}/spectrum/profile",
                content=_document(),
                params={"file_name": "grow.json"},
            )
            slider = await client.put(f"/rooms/{room_id}/spectrum/sliders/Red", json={"value": 0.2})
            out_of_range = await client.put(f"/rooms/{room_id}/spectrum/sliders/Red", json={"value": 1.5})
            unknown = await client.put(f"/rooms/{room_id}/spectrum/sliders/UV", json={"value": 0.5})
            frozen_early = await client.post(f"/rooms/{room_id}/spectrum/freeze/Blue")
            master = await client.post(f"/rooms/{room_id}/spectrum/master")
            frozen = await client.post(f"/rooms/{room_id}/spectrum/freeze/Blue")
            scaled = await client.put(f"/rooms/{room_id}/spectrum/master", json={"value": 0.5})
            reset = await client.post(f"/rooms/{room_id}/spectrum/reset")
            broken = await client.put(f"/rooms/{room_id}/spectrum/profile", content=b"not json")
            described = await client.get(f"/rooms/{room_id}/spectrum")
    finally:
        await _teardown(store, link, rooms)

    assert empty.json()["has_spectral_data"] is False
    assert imported.status_code == 200
    assert [source["name"] for source in imported.json()["sources"]] == ["Red", "Blue"]
    assert imported.json()["file_name"] == "grow.json"
    assert slider.json() == {"source": "Red", "applied": True, "value": 0.2}
    assert out_of_range.status_code == 422
    assert unknown.status_code == 404
    assert frozen_early.status_code == 400
    assert master.json()["enabled"] is True
    assert master.json()["base_values"] == {"Red": 0.2, "Blue": 0.5}
    assert frozen.json() == {"source": "Blue", "frozen": True}
    assert scaled.json()["slider_values"] == {"Red": 0.1, "Blue": 0.5}
    assert scaled.json()["results"] == {"d1": {"ok": True, "error": None}}
    assert reset.json()["slider_values"] == {"Red": 1.0, "Blue": 0.5}
    assert broken.status_code == 422
    assert broken.json()["section"] == "document"
    assert described.json()["master"]["enabled"] is False
    assert described.json()["file_name"] == "grow.json"


@pytest.mark.asyncio
async def test_preset_routes(tmp_path) -> None:
    store, transport, link, rooms, app = await _setup(tmp_path)

    try:
        room_id = await _room_with_fixture(rooms, transport)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            no_data = await client.post(f"/rooms/{room_id}/presets", json={"name": "Bloom"})
            await client.put(f"/rooms/{room_id}/spectrum/profile", content=_document())
            created = await client.post(f"/rooms/{room_id}/presets", json={"name": "Bloom"})
            preset_id = created.json()["id"]
            listed = await client.get(f"/rooms/{room_id}/presets")
            applied = await client.post(f"/rooms/{room_id}/presets/{preset_id}/apply")
            deleted = await client.delete(f"/rooms/{room_id}/presets/{preset_id}")
            deleted_again = await client.delete(f"/rooms/{room_id}/presets/{preset_id}")
    finally:
        await _teardown(store, link, rooms)

    assert no_data.status_code == 400
    assert created.status_code == 201
    assert created.json()["slider_values"] == {"Red": 1.0, "Blue": 0.5}
    assert [item["id"] for item in listed.json()] == [preset_id]
    assert applied.json()["results"]["d1"]["ok"] is True
    assert transport.commands("set_channels", "d1")[-1] == {0: 255, 1: 128}
    assert deleted.status_code == 204
    assert deleted_again.status_code == 404


@pytest.mark.asyncio
async def test_power_and_routine_routes(tmp_path) -> None:
    store, transport, link, rooms, app = await _setup(tmp_path)

    try:
        room_id = await _room_with_fixture(rooms, transport)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            power = await client.post(f"/rooms/{room_id}/power")
            room = await client.get(f"/rooms/{room_id}")
            routine = await client.post(
                f"/rooms/{room_id}/routines",
                json={"name": "Dawn", "time": "06:30", "days": ["wed", "MON"]},
            )
            bad_time = await client.post(
                f"/rooms/{room_id}/routines", json={"name": "Late", "time": "25:00"}
            )
            listed = await client.get(f"/rooms/{room_id}/routines")
            removed = await client.delete(f"/routines/{routine.json()['id']}")
            removed_again = await client.delete(f"/routines/{routine.json()['id']}")
    finally:
        await _teardown(store, link, rooms)

    assert power.json()["requested_on"] is False
    assert power.json()["is_on"] is False
    assert power.json()["errors"] == {}
    assert room.json()["is_on"] is False
    assert transport.commands("set_power", "d1") == [False]
    assert routine.status_code == 201
    assert routine.json()["days"] == ["MON", "WED"]
    assert routine.json()["days_binary"] == "1010000"
    assert routine.json()["room_name"] == "Grow"
    assert bad_time.status_code == 400
    assert [item["name"] for item in listed.json()] == ["Dawn"]
    assert removed.status_code == 204
    assert removed_again.status_code == 404
