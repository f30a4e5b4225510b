from __future__ import annotations

import pytest

from shadowsync.core.errors import BreakerOpenError, ProviderAuthError, StageFailedError
from shadowsync.services.resilience import (
    STATE_CLOSED,
    STATE_HALF_OPEN,
    STATE_OPEN,
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    breaker_snapshot,
    retry_async,
)
from shadowsync.tests.utils.fakes import FakeClock, RecordingSleep


def _breaker(clock: FakeClock, *, threshold: int = 3, transitions: list | None = None) -> CircuitBreaker:
    async def _record(name: str, state: str) -> None:
        if transitions is not None:
            transitions.append((name, state))

    return CircuitBreaker(
        "stage.users",
        config=CircuitBreakerConfig(failure_threshold=threshold, open_seconds=30, window_seconds=60),
        time_source=clock,
        on_transition=_record,
    )


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}
    sleep = RecordingSleep()

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=10),
        sleep=sleep,
    )
    assert result == "ok"
    assert calls["count"] == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = {"count": 0}

    async def denied() -> str:
        calls["count"] += 1
        raise ProviderAuthError("invalid_grant")

    with pytest.raises(ProviderAuthError):
        await retry_async(denied, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_honours_retryable_flag() -> None:
    calls = {"count": 0}
    sleep = RecordingSleep()

    async def stage() -> str:
        calls["count"] += 1
        raise StageFailedError("tokens", "gateway timeout", retryable=True)

    with pytest.raises(StageFailedError):
        await retry_async(stage, policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1), sleep=sleep)
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_breaker_opens_and_fails_fast() -> None:
    clock = FakeClock()
    transitions: list = []
    breaker = _breaker(clock, transitions=transitions)
    calls = {"count": 0}

    async def failing() -> None:
        calls["count"] += 1
        raise OSError("connection reset")

    for _ in range(3):
        with pytest.raises(OSError):
            await breaker.execute(failing)
    assert breaker.state == STATE_OPEN

    with pytest.raises(BreakerOpenError):
        await breaker.execute(failing)
    assert calls["count"] == 3
    assert transitions == [("stage.users", STATE_OPEN)]


@pytest.mark.asyncio
async def test_breaker_half_open_trial_closes_on_success() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=2)
    await breaker.record_failure()
    await breaker.record_failure()
    assert breaker.state == STATE_OPEN

    clock.now = 31.0
    await breaker.before_call()
    assert breaker.state == STATE_HALF_OPEN
    # Only one trial may be in flight while probing.
    with pytest.raises(BreakerOpenError):
        await breaker.before_call()

    await breaker.record_success()
    assert breaker.state == STATE_CLOSED
    assert breaker.failure_count == 0


@pytest.mark.asyncio
async def test_breaker_half_open_failure_reopens() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=1)

    async def failing() -> None:
        raise OSError("still down")

    with pytest.raises(OSError):
        await breaker.execute(failing)
    clock.now = 40.0
    with pytest.raises(OSError):
        await breaker.execute(failing)
    assert breaker.state == STATE_OPEN

    clock.now = 50.0
    with pytest.raises(BreakerOpenError):
        await breaker.execute(failing)


@pytest.mark.asyncio
async def test_breaker_forgets_failures_outside_window() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=3)
    await breaker.record_failure()
    await breaker.record_failure()
    clock.now = 61.0
    await breaker.record_failure()
    assert breaker.state == STATE_CLOSED
    assert breaker.failure_count == 1


@pytest.mark.asyncio
async def test_breaker_open_error_is_not_retried() -> None:
    clock = FakeClock()
    breaker = _breaker(clock, threshold=1)
    await breaker.record_failure()
    calls = {"count": 0}

    async def call() -> str:
        calls["count"] += 1
        return "ok"

    with pytest.raises(BreakerOpenError):
        await retry_async(
            lambda: breaker.execute(call),
            policy=RetryPolicy(timeout_ms=100, max_attempts=5, backoff_ms=1),
        )
    assert calls["count"] == 0
    assert breaker_snapshot({"stage.users": breaker}) == {"stage.users": {"state": STATE_OPEN, "failures": 1}}
