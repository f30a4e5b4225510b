from __future__ import annotations

import asyncio
import gc
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import psutil

from shadowsync.core.config import get_settings
from shadowsync.core.errors import ResourceExhaustedError
from shadowsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


EVENT_WARNING = "warning"
EVENT_OVERLOAD = "overload"

Sampler = Callable[[], tuple[float, float]]
Listener = Callable[[str, "ResourceSample"], None]


@dataclass(frozen=True)
class ResourceSample:
    cpu_percent: float
    memory_percent: float
    timestamp: float

    @property
    def pressure(self) -> float:
        # The busier of the two resources drives every sizing decision.
        return max(self.cpu_percent, self.memory_percent)


@dataclass(frozen=True)
class ResourceThresholds:
    warn_pct: float
    max_pct: float
    max_concurrency: int
    throttle_min_delay_ms: int
    throttle_max_delay_ms: int
    wait_timeout_s: float
    wait_poll_s: float


def default_thresholds() -> ResourceThresholds:
    settings = get_settings()
    return ResourceThresholds(
        warn_pct=settings.resource_warn_pct,
        max_pct=settings.resource_max_pct,
        max_concurrency=settings.resource_max_concurrency,
        throttle_min_delay_ms=settings.resource_throttle_min_delay_ms,
        throttle_max_delay_ms=settings.resource_throttle_max_delay_ms,
        wait_timeout_s=settings.resource_wait_timeout_s,
        wait_poll_s=settings.resource_wait_poll_s,
    )


class ProcessSampler:
    """Read CPU and memory usage of the current process via psutil.

    CPU is normalized across cores so 100 means every core is busy. Memory is
    RSS against ``memory_limit_mb`` when a container budget is known, otherwise
    against host RAM.
    """

    def __init__(self, *, memory_limit_mb: int | None = None, process: psutil.Process | None = None) -> None:
        self._process = process or psutil.Process()
        self._cpu_count = psutil.cpu_count() or 1
        self._memory_limit_bytes = memory_limit_mb * 1024 * 1024 if memory_limit_mb else None
        # The first cpu_percent call only primes the counter.
        self._process.cpu_percent(interval=None)

    def __call__(self) -> tuple[float, float]:
        cpu = self._process.cpu_percent(interval=None) / self._cpu_count
        if self._memory_limit_bytes:
            memory = self._process.memory_info().rss / self._memory_limit_bytes * 100.0
        else:
            memory = self._process.memory_percent()
        return cpu, memory


class ResourceMonitor:
    """Sample process pressure and turn it into throttle, batch and concurrency hints.

    The monitor is constructed and owned by the caller; ``start`` schedules a
    sampling task on the running loop and ``stop`` cancels it. Between ticks every
    decision uses the most recent sample.
    """

    def __init__(
        self,
        *,
        thresholds: ResourceThresholds | None = None,
        sampler: Sampler | None = None,
        time_source: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._thresholds = thresholds or default_thresholds()
        self._sampler = sampler or ProcessSampler(memory_limit_mb=get_settings().resource_memory_limit_mb)
        self._time = time_source or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._listeners: list[Listener] = []
        self._last: ResourceSample | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def thresholds(self) -> ResourceThresholds:
        return self._thresholds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self, interval_s: float | None = None) -> None:
        if self.running:
            return
        interval = interval_s if interval_s is not None else get_settings().resource_sample_interval_s
        self.sample()
        self._task = asyncio.get_running_loop().create_task(
            self._sample_loop(max(0.05, interval)), name="resource-monitor"
        )

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _sample_loop(self, interval_s: float) -> None:
        while True:
            await self._sleep(interval_s)
            self.sample()

    def sample(self) -> ResourceSample:
        # Sampling never raises; a failed OS query reuses the previous sample.
        try:
            cpu, memory = self._sampler()
            current = ResourceSample(cpu_percent=float(cpu), memory_percent=float(memory), timestamp=self._time())
        except Exception as exc:  # noqa: BLE001 - psutil/OS errors must not stop imports
            logger.warning("resource_sample_failed reusing_last=%s", self._last is not None, exc_info=exc)
            increment_counter("resource_sample_failures_total")
            current = self._last or ResourceSample(cpu_percent=0.0, memory_percent=0.0, timestamp=self._time())
        self._last = current
        set_gauge("resource.cpu_percent", current.cpu_percent)
        set_gauge("resource.memory_percent", current.memory_percent)
        self._notify(current)
        return current

    def _notify(self, current: ResourceSample) -> None:
        # Level-triggered: every sample above a threshold notifies again.
        if self._exceeds(current, self._thresholds.max_pct):
            event = EVENT_OVERLOAD
        elif self._exceeds(current, self._thresholds.warn_pct):
            event = EVENT_WARNING
        else:
            return
        for listener in list(self._listeners):
            try:
                listener(event, current)
            except Exception as exc:  # noqa: BLE001 - listener bugs must not break sampling
                logger.warning("resource_listener_failed event=%s", event, exc_info=exc)

    @staticmethod
    def _exceeds(current: ResourceSample, threshold: float) -> bool:
        return current.cpu_percent > threshold or current.memory_percent > threshold

    def current_usage(self) -> ResourceSample:
        if self._last is None:
            return self.sample()
        return self._last

    def is_overloaded(self) -> bool:
        return self._exceeds(self.current_usage(), self._thresholds.max_pct)

    def should_throttle(self) -> bool:
        return self._exceeds(self.current_usage(), self._thresholds.warn_pct)

    def throttle_delay(self) -> float:
        """Return the extra wait in seconds for the current pressure.

        Zero at or below the warning threshold, then rising linearly from the
        minimum to the maximum delay as pressure approaches 100%.
        """
        pressure = self.current_usage().pressure
        warn = self._thresholds.warn_pct
        if pressure <= warn:
            return 0.0
        span = max(100.0 - warn, 1e-6)
        fraction = min(1.0, (pressure - warn) / span)
        low = self._thresholds.throttle_min_delay_ms
        high = max(low, self._thresholds.throttle_max_delay_ms)
        return (low + fraction * (high - low)) / 1000.0

    def optimal_batch_size(self, base: int, min_size: int, max_size: int) -> int:
        pressure = self.current_usage().pressure
        if pressure > self._thresholds.max_pct:
            factor = 0.25
        elif pressure > self._thresholds.warn_pct:
            factor = 0.5
        elif pressure < self._thresholds.warn_pct / 2:
            factor = 1.5
        else:
            factor = 1.0
        lower = max(1, min_size)
        upper = max(lower, max_size)
        return max(lower, min(upper, int(base * factor)))

    def optimal_concurrency(self) -> int:
        ceiling = max(1, self._thresholds.max_concurrency)
        if self.is_overloaded():
            return 1
        if self.should_throttle():
            return max(1, ceiling // 2)
        return ceiling

    def force_cleanup(self) -> int:
        # Best-effort reclaim; CPython frees most memory without it.
        collected = gc.collect()
        increment_counter("resource_forced_cleanups_total")
        return collected

    def log_usage(self, label: str) -> None:
        usage = self.current_usage()
        logger.info(
            "resource_usage label=%s cpu=%.1f memory=%.1f concurrency=%s",
            label,
            usage.cpu_percent,
            usage.memory_percent,
            self.optimal_concurrency(),
        )

    async def wait_for_resources(self, timeout_s: float | None = None, poll_s: float | None = None) -> None:
        timeout = self._thresholds.wait_timeout_s if timeout_s is None else timeout_s
        poll = self._thresholds.wait_poll_s if poll_s is None else poll_s
        started = self._time()
        while True:
            if not self._exceeds(self.sample(), self._thresholds.max_pct):
                return
            if self._time() - started >= timeout:
                increment_counter("resource_wait_timeouts_total")
                raise ResourceExhaustedError(
                    f"Timeout waiting for resources to become available after {timeout:.0f}s"
                )
            logger.info("resource_wait pressure=%.1f", self.current_usage().pressure)
            self.force_cleanup()
            await self._sleep(poll)
