import pytest

from tibbo_barcode.config import Config
from tibbo_barcode.health import SUBSYSTEMS, BackoffPolicy, HealthMonitor


def test_backoff_grows_and_caps() -> None:
    policy = BackoffPolicy(base=1.0, factor=2.0, maximum=5.0)
    assert [policy.delay(n) for n in range(5)] == [0.0, 1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_repeated_failures_suppress_subsystem() -> None:
    health = HealthMonitor(("printer",), failure_threshold=2, cooldown_seconds=60.0)

    await health.record_failure("printer", RuntimeError("jam"))
    assert (await health.allow_attempt("printer"))[0] is True
    await health.record_failure("printer", RuntimeError("jam"))

    allowed, remaining = await health.allow_attempt("printer")
    assert allowed is False
    assert remaining > 0
    snapshot = await health.snapshot()
    assert snapshot["printer"]["status"] == "suppressed"
    assert snapshot["printer"]["last_error"] == "jam"

    await health.record_success("printer")
    assert (await health.allow_attempt("printer"))[0] is True


@pytest.mark.asyncio
async def test_breaker_recovers_after_cooldown_and_retrips_on_failure() -> None:
    health = HealthMonitor(("printer",), failure_threshold=1, cooldown_seconds=0.0)

    await health.record_failure("printer", RuntimeError("jam"))
    assert await health.allow_attempt("printer") == (True, 0.0)
    assert (await health.snapshot())["printer"]["status"] == "recovering"

    await health.record_failure("printer")
    snapshot = await health.snapshot()
    assert snapshot["printer"]["status"] == "suppressed"
    assert snapshot["printer"]["suppressions"] == 2
    assert snapshot["printer"]["last_error"] == "jam"


@pytest.mark.asyncio
async def test_from_config_tracks_service_subsystems_and_late_reporters() -> None:
    config = Config(subsystem_failure_threshold=2, subsystem_failure_cooldown=5.0)
    health = HealthMonitor.from_config(config, ("scanner",))

    await health.record_failure("api", RuntimeError("boom"))

    snapshot = await health.snapshot()
    assert set(snapshot) == {"scanner", "api"}
    assert snapshot["api"]["status"] == "degraded"
    assert set(await HealthMonitor.from_config(config).snapshot()) == set(SUBSYSTEMS)
