"""Run the import stages for one SyncRun and own its terminal status.

Strategy is chosen per run: users and tokens run side by side when the worker
is not under pressure (tokens polls the store until the users stage reports it
has finished), and everything runs one stage at a time otherwise. A failed
parallel attempt is retried once, fully sequentially, before the run is marked
FAILED.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from shadowsync.core.config import get_settings
from shadowsync.core.errors import BreakerOpenError, StageFailedError, SyncFailedError
from shadowsync.domain.state import FINALIZE, PROGRESS_START, StageName
from shadowsync.persistence.db import SessionFactory
from shadowsync.persistence.repos import sync_runs as sync_runs_repo
from shadowsync.services.background import BackgroundTaskRunner
from shadowsync.services.notifications import notify_sync_completed
from shadowsync.services.resilience import CircuitBreaker, retry_async, stage_retry_policy
from shadowsync.services.resource_monitor import ResourceMonitor
from shadowsync.services.sync.invokers import StageInvoker
from shadowsync.services.sync.models import RelationCandidate, StageRequest, StageResult
from shadowsync.services.sync.users import provider_label
from shadowsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

STRATEGY_PARALLEL = "parallel"
STRATEGY_SEQUENTIAL = "sequential"


def _stage_retryable(exc: Exception) -> bool:
    # An open breaker fails fast; only stages that flagged themselves transient are retried.
    if isinstance(exc, BreakerOpenError):
        return False
    if isinstance(exc, StageFailedError):
        return exc.retryable
    return isinstance(exc, (TimeoutError, OSError))


@dataclass
class SyncReport:
    run_id: str
    strategy: str
    fell_back: bool = False
    stages: list[StageResult] = field(default_factory=list)


class SyncOrchestrator:
    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        invoker: StageInvoker,
        monitor: ResourceMonitor,
        background: BackgroundTaskRunner,
        breakers: dict[str, CircuitBreaker] | None = None,
        parallel_enabled: bool | None = None,
        stage_delay_s: float | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._invoker = invoker
        self._monitor = monitor
        self._background = background
        # One breaker per stage so a flapping stage does not block the others.
        self._breakers = breakers if breakers is not None else {}
        self._parallel_enabled = settings.sync_parallel_enabled if parallel_enabled is None else parallel_enabled
        self._stage_delay_s = settings.sync_stage_delay_ms / 1000.0 if stage_delay_s is None else stage_delay_s
        self._sleep = sleep or asyncio.sleep

    @property
    def breakers(self) -> dict[str, CircuitBreaker]:
        return self._breakers

    def _breaker(self, stage: StageName) -> CircuitBreaker:
        breaker = self._breakers.get(stage.value)
        if breaker is None:
            breaker = CircuitBreaker(f"stage.{stage.value}")
            self._breakers[stage.value] = breaker
        return breaker

    async def _invoke(self, stage: StageName, request: StageRequest) -> StageResult:
        if self._monitor.is_overloaded():
            await self._monitor.wait_for_resources()
        breaker = self._breaker(stage)

        async def _call() -> StageResult:
            result = await self._invoker.invoke(stage, request)
            if not result.ok:
                raise StageFailedError(stage.value, result.message, retryable=result.retryable)
            return result

        return await retry_async(
            lambda: breaker.execute(_call),
            policy=stage_retry_policy(),
            retryable=_stage_retryable,
            sleep=self._sleep,
        )

    async def _pause_between_stages(self) -> None:
        delay = self._stage_delay_s
        if self._monitor.should_throttle():
            delay += self._monitor.throttle_delay()
        if delay > 0:
            await self._sleep(delay)

    async def _run_relations(self, request: StageRequest, tokens: StageResult) -> StageResult:
        relations = [RelationCandidate.model_validate(item) for item in tokens.payload.get("relations", [])]
        return await self._invoke(StageName.RELATIONS, request.model_copy(update={"relations": relations}))

    async def _run_sequential(self, request: StageRequest, report: SyncReport) -> None:
        report.stages.append(await self._invoke(StageName.USERS, request))
        await self._pause_between_stages()
        tokens = await self._invoke(StageName.TOKENS, request)
        report.stages.append(tokens)
        await self._pause_between_stages()
        report.stages.append(await self._run_relations(request, tokens))

    async def _run_parallel(self, request: StageRequest, report: SyncReport) -> None:
        users_task = asyncio.create_task(self._invoke(StageName.USERS, request), name=f"users:{request.run_id}")
        # Tokens must see the whole directory, not the chunks committed so far.
        tokens_request = request.model_copy(update={"await_users_stage": True})
        tokens_task = asyncio.create_task(
            self._invoke(StageName.TOKENS, tokens_request), name=f"tokens:{request.run_id}"
        )
        tasks = {users_task, tokens_task}
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for task in (users_task, tokens_task):
            if task in done and task.exception() is not None:
                raise task.exception()
        tokens = tokens_task.result()
        report.stages.extend([users_task.result(), tokens])
        await self._pause_between_stages()
        report.stages.append(await self._run_relations(request, tokens))

    def choose_strategy(self) -> str:
        if self._parallel_enabled and not self._monitor.should_throttle():
            return STRATEGY_PARALLEL
        return STRATEGY_SEQUENTIAL

    async def _report(self, run_id: str, progress: int, message: str) -> None:
        async with self._session_factory() as session:
            await sync_runs_repo.update_progress(session, run_id, progress=progress, message=message)
            await session.commit()

    async def _fail(self, run_id: str, message: str) -> None:
        async with self._session_factory() as session:
            await sync_runs_repo.mark_failed(session, run_id, message=message)
            await session.commit()

    async def run(self, request: StageRequest, *, user_email: str | None = None) -> SyncReport:
        """Execute every stage for ``request.run_id``.

        Raises :class:`SyncFailedError` after the run row records FAILED.
        """
        label = provider_label(request.provider)
        # Stages leave FAILED to this method so a parallel failure can still fall back.
        request = request.model_copy(update={"report_failure": False, "identity_map": None, "relations": None})
        strategy = self.choose_strategy()
        report = SyncReport(run_id=request.run_id, strategy=strategy)
        self._monitor.log_usage(f"sync {request.run_id} start")
        logger.info("sync_run_started run_id=%s org=%s strategy=%s", request.run_id, request.organization_id, strategy)
        try:
            if user_email is None:
                async with self._session_factory() as session:
                    row = await sync_runs_repo.get_run(session, request.run_id)
                user_email = row.user_email if row is not None else None
            await self._report(request.run_id, PROGRESS_START, f"Starting {label} data sync...")
            if strategy == STRATEGY_PARALLEL:
                try:
                    await self._run_parallel(request, report)
                except Exception as exc:  # noqa: BLE001 - any parallel failure retries sequentially
                    increment_counter("sync_parallel_fallbacks_total")
                    logger.warning(
                        "sync_parallel_failed run_id=%s falling_back=sequential error=%s", request.run_id, exc
                    )
                    report.fell_back = True
                    report.stages.clear()
                    await self._run_sequential(request, report)
            else:
                await self._run_sequential(request, report)
            await self._report(request.run_id, FINALIZE, "Finalizing data synchronization...")
        except Exception as exc:
            message = f"Sync failed: {exc}"
            increment_counter("sync_runs_failed_total")
            logger.error("sync_run_failed run_id=%s error=%s", request.run_id, exc, exc_info=exc)
            await self._fail(request.run_id, message)
            raise SyncFailedError(request.run_id, message) from exc

        self._background.submit(self._categorize(request), name=f"categorize:{request.run_id}")
        async with self._session_factory() as session:
            await sync_runs_repo.mark_completed(session, request.run_id, message=f"{label} data sync completed")
            await session.commit()
        increment_counter("sync_runs_completed_total")
        logger.info(
            "sync_run_completed run_id=%s strategy=%s fell_back=%s", request.run_id, strategy, report.fell_back
        )
        self._background.submit(
            notify_sync_completed(
                self._session_factory,
                organization_id=request.organization_id,
                run_id=request.run_id,
                user_email=user_email,
                skip=request.skip_notifications,
            ),
            name=f"notify:{request.run_id}",
        )
        return report

    async def _categorize(self, request: StageRequest) -> None:
        result = await self._invoker.invoke(StageName.CATEGORIZE, request)
        if not result.ok:
            logger.warning("sync_categorize_failed run_id=%s error=%s", request.run_id, result.message)


async def start_sync(
    session_factory: SessionFactory,
    *,
    organization_id: str,
    user_email: str | None,
    provider: str = "google",
) -> str:
    # The PENDING row exists before any stage runs so pollers always find the run.
    async with session_factory() as session:
        run = await sync_runs_repo.create_run(
            session, organization_id=organization_id, provider=provider, user_email=user_email
        )
        await session.commit()
    logger.info("sync_run_created run_id=%s org=%s provider=%s", run.id, organization_id, provider)
    return run.id
