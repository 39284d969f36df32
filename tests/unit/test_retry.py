import asyncio

import pytest

from realtime_api.cdc.retry import BackoffExhausted, ExponentialBackoff, RetryScheduler


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.unit
def test_backoff_doubles_until_cap():
    backoff = ExponentialBackoff(base_interval=1.0, max_interval=30.0, max_attempts=50)
    delays = [backoff.next_delay() for _ in range(8)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]
    assert all(delay <= 30.0 for delay in delays)
    assert backoff.attempts == 8


@pytest.mark.unit
def test_delay_for_matches_reference_schedule():
    backoff = ExponentialBackoff()
    assert [backoff.delay_for(n) for n in range(6)] == [1, 2, 4, 8, 16, 30]
    assert backoff.delay_for(40) == 30


@pytest.mark.unit
def test_backoff_exhausts_after_max_attempts():
    backoff = ExponentialBackoff(max_attempts=3)
    assert backoff.next_delay() == 1.0
    assert backoff.next_delay() == 2.0
    with pytest.raises(BackoffExhausted):
        backoff.next_delay()


@pytest.mark.unit
def test_backoff_reset_restarts_sequence():
    backoff = ExponentialBackoff()
    backoff.next_delay()
    backoff.next_delay()
    backoff.reset()
    assert backoff.attempts == 0
    assert backoff.next_delay() == 1.0


@pytest.mark.unit
def test_jitter_scales_delay():
    backoff = ExponentialBackoff(jitter=True, random_fn=lambda: 0.5)
    assert backoff.next_delay() == 0.5
    assert backoff.next_delay() == 1.0


@pytest.mark.unit
@pytest.mark.parametrize(
    "kwargs",
    [
        {"base_interval": 0},
        {"multiplier": 0.5},
        {"base_interval": 10, "max_interval": 5},
    ],
)
def test_backoff_rejects_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        ExponentialBackoff(**kwargs)


@pytest.mark.unit
def test_scheduler_runs_start_after_delay():
    sleeps: list[float] = []
    calls: list[str] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    async def scenario() -> None:
        scheduler = RetryScheduler(ExponentialBackoff(), sleep=fake_sleep)
        assert scheduler.schedule(lambda: calls.append("start")) is True
        assert scheduler.pending
        assert scheduler.schedule(lambda: calls.append("second")) is False
        await _settle()
        assert not scheduler.pending
        assert scheduler.last_delay == 1.0

    asyncio.run(scenario())
    assert sleeps == [1.0]
    assert calls == ["start"]


@pytest.mark.unit
def test_scheduler_stops_after_ceiling(caplog):
    exhausted: list[bool] = []
    calls: list[int] = []

    async def fake_sleep(_delay: float) -> None:
        return None

    async def scenario() -> RetryScheduler:
        scheduler = RetryScheduler(
            ExponentialBackoff(max_attempts=3),
            sleep=fake_sleep,
            on_exhausted=lambda: exhausted.append(True),
        )
        for _ in range(2):
            assert scheduler.schedule(lambda: calls.append(1)) is True
            await _settle()
        assert scheduler.schedule(lambda: calls.append(1)) is False
        assert scheduler.schedule(lambda: calls.append(1)) is False
        return scheduler

    with caplog.at_level("ERROR"):
        scheduler = asyncio.run(scenario())
    assert scheduler.exhausted
    assert exhausted == [True]
    assert calls == [1, 1]
    assert "max retries (3) reached" in caplog.text


@pytest.mark.unit
def test_scheduler_cancel_drops_pending_retry():
    calls: list[int] = []

    async def scenario() -> None:
        scheduler = RetryScheduler(ExponentialBackoff())
        scheduler.schedule(lambda: calls.append(1))
        scheduler.cancel()
        await _settle()
        assert not scheduler.pending

    asyncio.run(scenario())
    assert calls == []


@pytest.mark.unit
def test_record_success_resets_attempts():
    backoff = ExponentialBackoff()
    scheduler = RetryScheduler(backoff)
    backoff.next_delay()
    backoff.next_delay()
    scheduler.record_success()
    assert backoff.attempts == 0
    assert scheduler.last_delay is None


@pytest.mark.unit
def test_unlimited_backoff_stays_capped_over_long_outages():
    backoff = ExponentialBackoff(max_attempts=None)
    delays = [backoff.next_delay() for _ in range(1100)]
    assert delays[-1] == 30.0
    assert max(delays) == 30.0
    assert backoff.delay_for(10_000) == 30.0


@pytest.mark.unit
def test_flat_backoff_returns_base_interval():
    backoff = ExponentialBackoff(base_interval=2.0, multiplier=1.0, max_interval=30.0)
    assert backoff.delay_for(0) == 2.0
    assert backoff.delay_for(5000) == 2.0
    assert ExponentialBackoff(base_interval=5.0, max_interval=5.0).delay_for(2000) == 5.0


@pytest.mark.unit
def test_unlimited_scheduler_keeps_scheduling_past_long_outages():
    async def fake_sleep(_delay: float) -> None:
        return None

    async def scenario() -> RetryScheduler:
        scheduler = RetryScheduler(ExponentialBackoff(max_attempts=None), sleep=fake_sleep)
        for _ in range(1100):
            assert scheduler.schedule(lambda: None) is True
            await _settle(2)
        return scheduler

    scheduler = asyncio.run(scenario())
    assert not scheduler.exhausted
    assert scheduler.last_delay == 30.0
    assert scheduler.backoff.attempts == 1100
