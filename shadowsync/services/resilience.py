from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, TypeVar

from shadowsync.core.config import get_settings
from shadowsync.core.errors import BreakerOpenError
from shadowsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


T = TypeVar("T")

TransientException = (TimeoutError, OSError)

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, BreakerOpenError):
        return False
    if isinstance(exc, TransientException):
        return True
    if getattr(exc, "retryable", False) is True:
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def stage_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.stage_timeout_ms,
        max_attempts=settings.stage_retry_max_attempts,
        backoff_ms=settings.stage_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> T:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    sleep = sleep or asyncio.sleep
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.info("retry_scheduled attempt=%s sleep_s=%.2f error=%s", attempt, sleep_s, exc)
            await sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: float
    # Failures older than the window no longer count toward the threshold.
    window_seconds: float


def default_breaker_config() -> CircuitBreakerConfig:
    settings = get_settings()
    return CircuitBreakerConfig(
        failure_threshold=settings.cb_failure_threshold,
        open_seconds=settings.cb_open_seconds,
        window_seconds=settings.cb_window_seconds,
    )


class CircuitBreaker:
    """Guard one kind of downstream call with closed/open/half-open states.

    While open, ``execute`` raises :class:`BreakerOpenError` without calling the
    function. After ``open_seconds`` a single trial call is let through; its
    outcome closes or re-opens the breaker.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self._config = config or default_breaker_config()
        self._time = time_source or time.monotonic
        self._on_transition = on_transition
        self._state = STATE_CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> str:
        return self._state

    @property
    def failure_count(self) -> int:
        self._expire_failures(self._time())
        return len(self._failures)

    def _expire_failures(self, now: float) -> None:
        cutoff = now - self._config.window_seconds
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    async def _transition(self, target: str) -> None:
        if self._state == target:
            return
        logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, self._state, target)
        increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
        if target == STATE_OPEN:
            increment_counter("circuit_breaker_open_total")
            self._opened_at = self._time()
        else:
            self._opened_at = None
        if target == STATE_CLOSED:
            self._failures.clear()
        self._state = target
        set_gauge(
            f"circuit_breaker_state.{self._name}",
            {STATE_CLOSED: 0.0, STATE_HALF_OPEN: 0.5, STATE_OPEN: 1.0}[target],
        )
        if self._on_transition is not None:
            await self._on_transition(self._name, target)

    async def before_call(self) -> None:
        # Decide whether the call may proceed; claims the half-open trial slot.
        now = self._time()
        if self._state == STATE_OPEN:
            if self._opened_at is not None and (now - self._opened_at) >= self._config.open_seconds:
                await self._transition(STATE_HALF_OPEN)
            else:
                increment_counter(f"circuit_breaker_rejected_total.{self._name}")
                raise BreakerOpenError(self._name)
        if self._state == STATE_HALF_OPEN:
            if self._trial_in_flight:
                raise BreakerOpenError(self._name, f"{self._name} is probing recovery")
            self._trial_in_flight = True

    async def record_success(self) -> None:
        self._trial_in_flight = False
        if self._state != STATE_CLOSED:
            await self._transition(STATE_CLOSED)
        else:
            self._failures.clear()

    async def record_failure(self) -> None:
        self._trial_in_flight = False
        if self._state == STATE_HALF_OPEN:
            await self._transition(STATE_OPEN)
            return
        now = self._time()
        self._failures.append(now)
        self._expire_failures(now)
        if len(self._failures) >= self._config.failure_threshold:
            await self._transition(STATE_OPEN)

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        await self.before_call()
        try:
            result = await func()
        except Exception:
            await self.record_failure()
            raise
        except asyncio.CancelledError:
            # A cancelled trial neither proves nor disproves recovery.
            self._trial_in_flight = False
            raise
        await self.record_success()
        return result


def breaker_snapshot(breakers: dict[str, CircuitBreaker]) -> dict[str, Any]:
    return {name: {"state": b.state, "failures": b.failure_count} for name, b in breakers.items()}
