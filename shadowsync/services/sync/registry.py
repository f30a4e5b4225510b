from __future__ import annotations

import logging
from typing import Awaitable, Callable

from shadowsync.core.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderQuotaError,
    ShadowSyncError,
    StageFailedError,
)
from shadowsync.domain.state import StageName
from shadowsync.services.sync.categorize import run_categorize_stage
from shadowsync.services.sync.context import StageContext
from shadowsync.services.sync.models import StageRequest, StageResult
from shadowsync.services.sync.relations import run_relations_stage
from shadowsync.services.sync.tokens import run_tokens_stage
from shadowsync.services.sync.users import run_users_stage
from shadowsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

StageHandler = Callable[[StageRequest, StageContext], Awaitable[StageResult]]

STAGES: dict[StageName, StageHandler] = {
    StageName.USERS: run_users_stage,
    StageName.TOKENS: run_tokens_stage,
    StageName.RELATIONS: run_relations_stage,
    StageName.CATEGORIZE: run_categorize_stage,
}


def _is_retryable(exc: Exception) -> bool:
    # Credential and quota problems are fatal; a plain provider/network error may pass.
    if isinstance(exc, (ProviderAuthError, ProviderQuotaError)):
        return False
    if isinstance(exc, StageFailedError):
        return exc.retryable
    return isinstance(exc, ProviderError)


async def run_stage(name: StageName | str, request: StageRequest, context: StageContext) -> StageResult:
    """Run one stage and turn its failure into a ``StageResult``.

    With ``report_failure`` set the stage owns the run's FAILED write, which is
    how independently invoked stages surface errors to pollers.
    """
    stage = StageName(name)
    handler = STAGES[stage]
    try:
        return await handler(request, context)
    except ShadowSyncError as exc:
        message = str(exc)
        retryable = _is_retryable(exc)
        logger.warning(
            "sync_stage_failed run_id=%s stage=%s retryable=%s error=%s",
            request.run_id,
            stage.value,
            retryable,
            message,
        )
    except Exception as exc:  # noqa: BLE001 - stage contract reports failures as results
        message = f"{stage.value} stage failed: {exc}"
        retryable = False
        logger.exception("sync_stage_crashed run_id=%s stage=%s", request.run_id, stage.value)
    increment_counter(f"sync_stage_failures_total.{stage.value}")
    if request.report_failure and stage is not StageName.CATEGORIZE:
        await context.report_failure(request.run_id, message)
    return StageResult(stage=stage.value, ok=False, message=message, retryable=retryable)
