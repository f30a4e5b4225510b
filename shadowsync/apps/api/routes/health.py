from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from shadowsync.apps.api.deps import get_runtime
from shadowsync.apps.api.runtime import AppRuntime
from shadowsync.persistence.db import pool_stats
from shadowsync.services.resilience import breaker_snapshot
from shadowsync.services.telemetry import counters_snapshot, integration_summary


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    cpu_percent: float
    memory_percent: float
    throttling: bool
    overloaded: bool
    background_pending: int
    breakers: dict[str, Any]
    database_pool: dict[str, int | None]
    counters: dict[str, int]
    integrations: dict[str, dict[str, float]]


@router.get("/health", response_model=HealthResponse)
async def health(runtime: AppRuntime = Depends(get_runtime)) -> HealthResponse:
    usage = runtime.monitor.current_usage()
    overloaded = runtime.monitor.is_overloaded()
    return HealthResponse(
        status="degraded" if overloaded else "ok",
        cpu_percent=usage.cpu_percent,
        memory_percent=usage.memory_percent,
        throttling=runtime.monitor.should_throttle(),
        overloaded=overloaded,
        background_pending=runtime.background.pending,
        breakers=breaker_snapshot(runtime.breakers),
        database_pool=pool_stats(),
        counters=counters_snapshot(),
        integrations=integration_summary(),
    )
