from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shadowsync.apps.api.deps import get_db, get_runtime
from shadowsync.apps.api.runtime import AppRuntime
from shadowsync.core.errors import SyncFailedError
from shadowsync.domain.state import StageName
from shadowsync.persistence.repos import sync_runs as sync_runs_repo
from shadowsync.providers.identity.base import Credentials
from shadowsync.services.sync.models import StageRequest, StageResult
from shadowsync.services.sync.orchestrator import SyncOrchestrator, start_sync
from shadowsync.services.sync.registry import run_stage


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


class StartSyncRequest(BaseModel):
    organization_id: str
    user_email: str | None = None
    provider: str = "google"
    credentials: Credentials
    skip_notifications: bool = False


class StartSyncResponse(BaseModel):
    run_id: str
    status: str


class SyncRunResponse(BaseModel):
    id: str
    organization_id: str
    status: str
    progress: int
    message: str | None
    provider: str
    user_email: str | None
    created_at: datetime | None
    updated_at: datetime | None


async def _run_in_background(orchestrator: SyncOrchestrator, request: StageRequest) -> None:
    try:
        await orchestrator.run(request)
    except SyncFailedError as exc:
        # The run row already says FAILED; nothing else is waiting on this task.
        logger.info("sync_background_run_failed run_id=%s error=%s", exc.run_id, exc)


@router.post("", status_code=202, response_model=StartSyncResponse)
async def create_sync(payload: StartSyncRequest, runtime: AppRuntime = Depends(get_runtime)) -> StartSyncResponse:
    run_id = await start_sync(
        runtime.session_factory,
        organization_id=payload.organization_id,
        user_email=payload.user_email,
        provider=payload.provider,
    )
    request = StageRequest(
        organization_id=payload.organization_id,
        run_id=run_id,
        provider=payload.provider,
        credentials=payload.credentials,
        skip_notifications=payload.skip_notifications,
    )
    runtime.background.submit(_run_in_background(runtime.orchestrator(), request), name=f"sync:{run_id}")
    return StartSyncResponse(run_id=run_id, status="PENDING")


@router.get("", response_model=list[SyncRunResponse])
async def list_syncs(
    organization_id: str, limit: int = Query(20, ge=1, le=100), db: AsyncSession = Depends(get_db)
) -> list[SyncRunResponse]:
    runs = await sync_runs_repo.list_runs(db, organization_id, limit=limit)
    return [SyncRunResponse.model_validate(run, from_attributes=True) for run in runs]


@router.get("/{run_id}", response_model=SyncRunResponse)
async def get_sync(run_id: str, db: AsyncSession = Depends(get_db)) -> SyncRunResponse:
    run = await sync_runs_repo.get_run(db, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail={"code": "SYNC_RUN_NOT_FOUND", "message": "Sync run not found"})
    return SyncRunResponse.model_validate(run, from_attributes=True)


@router.post("/stages/{stage}", response_model=StageResult)
async def invoke_stage(
    stage: StageName, payload: StageRequest, runtime: AppRuntime = Depends(get_runtime)
) -> JSONResponse:
    # Failed stages still answer with a StageResult body so callers can read the reason.
    result = await run_stage(stage, payload, runtime.stage_context)
    return JSONResponse(content=result.model_dump(mode="json"), status_code=200 if result.ok else 500)
