import pytest

from spectral_lan_controller.health import BackoffPolicy, HealthMonitor


def test_backoff_grows_and_caps() -> None:
    policy = BackoffPolicy(base=1.0, factor=2.0, maximum=5.0)

    assert [policy.delay(failures) for failures in range(5)] == [0.0, 1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_circuit_opens_after_threshold_and_recovers() -> None:
    monitor = HealthMonitor(("repair",), failure_threshold=2, cooldown_seconds=60.0)
    seen = []
    monitor.statuses.subscribe(lambda statuses: seen.append(statuses["repair"]))

    await monitor.record_failure("repair", RuntimeError("locked"))
    degraded = monitor.overall()
    await monitor.record_failure("repair")
    allowed, remaining = await monitor.allow_attempt("repair")
    snapshot = await monitor.snapshot()
    await monitor.record_success("repair")

    assert degraded == "degraded"
    assert allowed is False
    assert 0 < remaining <= 60.0
    assert snapshot["repair"]["status"] == "suppressed"
    assert snapshot["repair"]["last_error"] == "locked"
    assert snapshot["repair"]["suppressions"] == 1
    assert seen == ["degraded", "suppressed", "ok"]
    assert monitor.overall() == "ok"


@pytest.mark.asyncio
async def test_expired_suppression_moves_to_recovering() -> None:
    monitor = HealthMonitor(("api",), failure_threshold=1, cooldown_seconds=0.0)

    await monitor.record_failure("api")
    allowed, _ = await monitor.allow_attempt("api")
    snapshot = await monitor.snapshot()

    assert allowed is True
    assert snapshot["api"]["status"] == "recovering"
    assert monitor.overall() == "degraded"
