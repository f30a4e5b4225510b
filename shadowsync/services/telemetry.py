from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    # Gauges hold the latest observation only.
    _gauges[name] = float(value)


def integration_summary(window_s: float = 300.0) -> dict[str, dict[str, float]]:
    """Summarize recent outbound calls per integration: call count, failures and p95/max latency."""
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    summary: dict[str, dict[str, float]] = {}
    for integration, samples in grouped.items():
        ordered = sorted(sample.latency_ms for sample in samples)
        rank = max(0, math.ceil(0.95 * len(ordered)) - 1)
        summary[integration] = {
            "calls": float(len(samples)),
            "failures": float(sum(not sample.success for sample in samples)),
            "p95_ms": ordered[rank],
            "max_ms": ordered[-1],
        }
    return summary


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests reset process-local telemetry between cases.
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()
