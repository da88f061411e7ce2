import asyncio
import logging

import pytest

from spectral_lan_controller.state import StateContainer, with_entry, without_entry


def test_update_publishes_snapshot_until_unsubscribed() -> None:
    container = StateContainer(0, name="counter")
    seen = []
    unsubscribe = container.subscribe(seen.append)

    assert container.update(lambda value: value + 1) == 1
    container.set(5)
    unsubscribe()
    unsubscribe()
    container.set(9)

    assert seen == [1, 5]
    assert container.value == 9
    assert container.subscriber_count == 0


def test_failing_subscriber_is_logged_and_others_still_notified(caplog) -> None:
    container = StateContainer({"a": 1}, name="rooms")
    seen = []

    def broken(_value) -> None:
        raise RuntimeError("boom")

    container.subscribe(broken)
    container.subscribe(seen.append)

    with caplog.at_level(logging.ERROR, logger="spectral"):
        container.update(lambda value: with_entry(value, "b", 2))

    assert seen == [{"a": 1, "b": 2}]
    failures = [entry for entry in caplog.records if entry.getMessage() == "State subscriber failed"]
    assert len(failures) == 1
    assert failures[0].container == "rooms"
    assert failures[0].exc_info[0] is RuntimeError


@pytest.mark.asyncio
async def test_async_subscribers_are_scheduled(caplog) -> None:
    container = StateContainer(0, name="session")
    received = []

    async def record(value) -> None:
        received.append(value)

    async def broken(_value) -> None:
        raise ValueError("late failure")

    container.subscribe(record)
    container.subscribe(broken)

    with caplog.at_level(logging.ERROR, logger="spectral"):
        container.set(3)
        assert received == []
        for _ in range(3):
            await asyncio.sleep(0)

    assert received == [3]
    failures = [entry for entry in caplog.records if entry.getMessage() == "State subscriber failed"]
    assert [failure.exc_info[0] for failure in failures] == [ValueError]
    assert failures[0].container == "session"


def test_entry_helpers_copy_mappings() -> None:
    original = {"d1": "offline"}

    added = with_entry(original, "d2", "timeout")
    removed = without_entry(added, "d1")

    assert original == {"d1": "offline"}
    assert added == {"d1": "offline", "d2": "timeout"}
    assert removed == {"d2": "timeout"}
    assert without_entry(removed, "missing") == {"d2": "timeout"}
