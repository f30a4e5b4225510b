from __future__ import annotations

import logging
import time
from typing import Protocol

import httpx
from pydantic import ValidationError

from shadowsync.core.config import get_settings
from shadowsync.core.errors import StageFailedError
from shadowsync.domain.state import StageName
from shadowsync.services.sync.context import StageContext
from shadowsync.services.sync.models import StageRequest, StageResult
from shadowsync.services.sync.registry import run_stage
from shadowsync.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {502, 503, 504}


class StageInvoker(Protocol):
    async def invoke(self, stage: StageName, request: StageRequest) -> StageResult:
        ...


class LocalStageInvoker:
    """Run stages in this process against a shared StageContext."""

    def __init__(self, context: StageContext) -> None:
        self._context = context

    async def invoke(self, stage: StageName, request: StageRequest) -> StageResult:
        return await run_stage(stage, request, self._context)


class HttpStageInvoker:
    """POST stage requests to ``/v1/sync/stages/{stage}`` on a worker."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.stage_base_url).rstrip("/")
        self._timeout_s = timeout_s if timeout_s is not None else settings.stage_timeout_ms / 1000.0
        self._transport = transport

    async def invoke(self, stage: StageName, request: StageRequest) -> StageResult:
        url = f"{self._base_url}/v1/sync/stages/{stage.value}"
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(url, json=request.model_dump(mode="json"))
        except httpx.TransportError as exc:
            record_external_call(
                integration=f"stage.{stage.value}", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise StageFailedError(stage.value, f"{stage.value} stage unreachable: {exc}", retryable=True) from exc
        record_external_call(
            integration=f"stage.{stage.value}",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 500,
        )
        if response.status_code in _RETRYABLE_STATUS:
            raise StageFailedError(
                stage.value, f"{stage.value} stage unavailable (status {response.status_code})", retryable=True
            )
        try:
            result = StageResult.model_validate(response.json())
        except (ValueError, ValidationError):
            result = None
        if result is not None:
            return result
        logger.warning("sync_stage_http_failed stage=%s status=%s", stage.value, response.status_code)
        raise StageFailedError(stage.value, f"{stage.value} stage failed with status {response.status_code}")
