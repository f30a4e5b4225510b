from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from shadowsync.core.config import get_settings
from shadowsync.core.errors import EmergencyBrakeError, ResourceExhaustedError
from shadowsync.services.resource_monitor import ResourceMonitor
from shadowsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


T = TypeVar("T")

ChunkWorker = Callable[[list[T]], Awaitable[Any]]


@dataclass(frozen=True)
class BatchConfig:
    base_size: int
    min_size: int
    max_size: int
    base_delay_s: float
    # Upper bound on chunks in flight, further limited by the monitor.
    max_concurrency: int
    cleanup_every_groups: int
    max_overload_wait_s: float
    overload_poll_s: float
    throttle_streak_limit: int
    emergency_brake_s: float
    max_emergency_brakes: int


def default_batch_config(**overrides: Any) -> BatchConfig:
    settings = get_settings()
    values: dict[str, Any] = {
        "base_size": settings.batch_base_size,
        "min_size": settings.batch_min_size,
        "max_size": settings.batch_max_size,
        "base_delay_s": settings.batch_base_delay_ms / 1000.0,
        "max_concurrency": settings.resource_max_concurrency,
        "cleanup_every_groups": settings.batch_cleanup_every_groups,
        "max_overload_wait_s": settings.batch_max_overload_wait_s,
        "overload_poll_s": settings.batch_overload_poll_s,
        "throttle_streak_limit": settings.batch_throttle_streak_limit,
        "emergency_brake_s": settings.batch_emergency_brake_s,
        "max_emergency_brakes": settings.batch_max_emergency_brakes,
    }
    values.update(overrides)
    return BatchConfig(**values)


@dataclass
class ChunkFailure:
    index: int
    size: int
    error: str


@dataclass
class BatchRunResult(Generic[T]):
    label: str
    total_items: int = 0
    processed_items: int = 0
    chunks: int = 0
    groups: int = 0
    emergency_brakes: int = 0
    failures: list[ChunkFailure] = field(default_factory=list)
    outputs: list[Any] = field(default_factory=list)

    @property
    def failed_items(self) -> int:
        return sum(failure.size for failure in self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures


class AdaptiveBatchProcessor:
    """Run items through a chunk worker, sized and paced by a ResourceMonitor.

    Chunks are formed one at a time so a change in pressure resizes the very
    next chunk. Each group of concurrent chunks finishes and waits out its delay
    before the next group is formed, so groups stay strictly ordered even when
    chunks inside a group complete out of order. A failing chunk is logged and
    recorded; the remaining chunks still run.
    """

    def __init__(
        self,
        config: BatchConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._config = config or default_batch_config()
        self._sleep = sleep or asyncio.sleep
        self._time = time_source or time.monotonic

    @property
    def config(self) -> BatchConfig:
        return self._config

    async def run(
        self,
        items: Sequence[T],
        worker: ChunkWorker[T],
        monitor: ResourceMonitor,
        label: str,
    ) -> BatchRunResult[T]:
        result: BatchRunResult[T] = BatchRunResult(label=label, total_items=len(items))
        if not items:
            return result

        config = self._config
        cursor = 0
        throttle_streak = 0
        started = self._time()
        while cursor < len(items):
            if monitor.is_overloaded():
                await self._wait_out_overload(monitor, label)

            concurrency = max(1, min(config.max_concurrency, monitor.optimal_concurrency()))
            group: list[tuple[int, list[T]]] = []
            while len(group) < concurrency and cursor < len(items):
                size = monitor.optimal_batch_size(config.base_size, config.min_size, config.max_size)
                chunk = list(items[cursor : cursor + size])
                group.append((result.chunks, chunk))
                result.chunks += 1
                cursor += len(chunk)

            outcomes = await asyncio.gather(
                *(self._run_chunk(index, chunk, worker, label) for index, chunk in group)
            )
            for (index, chunk), (ok, output) in zip(group, outcomes):
                if ok:
                    result.processed_items += len(chunk)
                    if output is not None:
                        result.outputs.append(output)
                else:
                    result.failures.append(ChunkFailure(index=index, size=len(chunk), error=str(output)))
            result.groups += 1

            if config.cleanup_every_groups > 0 and result.groups % config.cleanup_every_groups == 0:
                monitor.force_cleanup()

            if cursor >= len(items):
                break

            delay = config.base_delay_s
            if monitor.should_throttle():
                delay += monitor.throttle_delay()
                throttle_streak += 1
                increment_counter("batch_throttled_groups_total")
            else:
                throttle_streak = 0

            if throttle_streak > config.throttle_streak_limit:
                throttle_streak = 0
                await self._emergency_brake(result, label)
            await self._sleep(delay)

        elapsed_ms = (self._time() - started) * 1000.0
        set_gauge(f"batch.{label}.duration_ms", elapsed_ms)
        logger.info(
            "batch_run_complete label=%s items=%s processed=%s failed=%s chunks=%s groups=%s",
            label,
            result.total_items,
            result.processed_items,
            result.failed_items,
            result.chunks,
            result.groups,
        )
        return result

    async def _run_chunk(
        self, index: int, chunk: list[T], worker: ChunkWorker[T], label: str
    ) -> tuple[bool, Any]:
        try:
            return True, await worker(chunk)
        except Exception as exc:  # noqa: BLE001 - one bad chunk must not abort the run
            increment_counter("batch_chunk_failures_total")
            logger.warning("batch_chunk_failed label=%s chunk=%s size=%s", label, index, len(chunk), exc_info=exc)
            return False, exc

    async def _wait_out_overload(self, monitor: ResourceMonitor, label: str) -> None:
        config = self._config
        waited = 0.0
        while True:
            logger.info("batch_overload_wait label=%s waited_s=%.1f", label, waited)
            monitor.force_cleanup()
            await self._sleep(config.overload_poll_s)
            waited += config.overload_poll_s
            monitor.sample()
            if not monitor.is_overloaded():
                return
            if waited >= config.max_overload_wait_s:
                increment_counter("batch_overload_timeouts_total")
                raise ResourceExhaustedError(
                    f"{label}: resources stayed overloaded for {waited:.0f}s; aborting batch run"
                )

    async def _emergency_brake(self, result: BatchRunResult[T], label: str) -> None:
        config = self._config
        if result.emergency_brakes >= config.max_emergency_brakes:
            increment_counter("batch_emergency_brake_aborts_total")
            raise EmergencyBrakeError(
                f"{label}: emergency brake engaged {result.emergency_brakes} times; worker is overloaded"
            )
        result.emergency_brakes += 1
        increment_counter("batch_emergency_brakes_total")
        logger.warning(
            "batch_emergency_brake label=%s count=%s pause_s=%.1f",
            label,
            result.emergency_brakes,
            config.emergency_brake_s,
        )
        await self._sleep(config.emergency_brake_s)
