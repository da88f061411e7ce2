import pytest

from spectral_lan_controller.db import DatabaseManager, apply_migrations
from spectral_lan_controller.errors import NotFoundError, ValidationError
from spectral_lan_controller.routines import Routine, RoutineStore, validate_routine


def test_validation_normalizes_days_and_name() -> None:
    routine = validate_routine(
        Routine(room_id="r1", name="  Sunrise ", time="06:30", days=("sun", "MON", "wed"))
    )

    assert routine.name == "Sunrise"
    assert routine.days == ("MON", "WED", "SUN")
    assert routine.days_as_binary() == "1010001"
    assert (routine.hour, routine.minute) == (6, 30)


@pytest.mark.parametrize(
    "kwargs,error",
    [
        ({"name": " "}, "name"),
        ({"time": "24:00"}, "HH:MM"),
        ({"time": "7:5"}, "HH:MM"),
        ({"days": ()}, "weekday"),
        ({"days": ("MON", "FUNDAY")}, "FUNDAY"),
        ({"device_power": False, "preset_id": "p1"}, "power-off"),
    ],
)
def test_validation_rejects_bad_routines(kwargs, error) -> None:
    values = {"room_id": "r1", "name": "Lights", "time": "08:00"}
    values.update(kwargs)

    with pytest.raises(ValidationError, match=error):
        validate_routine(Routine(**values))


def test_slider_snapshot_as_pwm() -> None:
    routine = Routine(room_id="r1", name="Bloom", time="09:00", slider_values={"Red": 1.0, "Blue": 0.5})

    assert routine.slider_values_as_pwm() == [255, 128]


@pytest.mark.asyncio
async def test_routine_store_crud(tmp_path) -> None:
    db_path = tmp_path / "controller.sqlite3"
    apply_migrations(db_path)
    db = DatabaseManager(db_path)
    store = RoutineStore(db)

    try:
        evening = await store.create(Routine(room_id="r1", name="Dusk", time="20:00", device_power=False))
        morning = await store.create(Routine(room_id="r1", name="Dawn", time="06:00"))
        await store.create(Routine(room_id="r2", name="Other", time="07:00"))
        listed = await store.for_room("r1")
        updated = await store.update(Routine(room_id="r1", name="Dawn", time="05:45", id=morning.id))
        fetched = await store.get(morning.id)
        removed = await store.delete(evening.id)
        with pytest.raises(NotFoundError):
            await store.update(Routine(room_id="r1", name="Ghost", time="05:00", id=999))
        cleared = await store.delete_for_room("r1")
        remaining = await store.for_room("r1")
    finally:
        await db.close()

    assert [routine.name for routine in listed] == ["Dawn", "Dusk"]
    assert evening.id is not None and morning.id is not None
    assert fetched == updated
    assert fetched.time == "05:45"
    assert removed is True
    assert cleared == 1
    assert remaining == []
