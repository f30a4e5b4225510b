from __future__ import annotations

from uuid import uuid4

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shadowsync.domain.models import SyncRun, utc_now
from shadowsync.domain.state import ACTIVE_STATUSES, COMPLETE, SyncStatus


async def create_run(
    session: AsyncSession,
    *,
    organization_id: str,
    provider: str,
    user_email: str | None,
    run_id: str | None = None,
) -> SyncRun:
    run = SyncRun(
        id=run_id or uuid4().hex,
        organization_id=organization_id,
        status=SyncStatus.PENDING.value,
        progress=0,
        message="Sync queued",
        provider=provider,
        user_email=user_email,
    )
    session.add(run)
    await session.flush()
    return run


async def get_run(session: AsyncSession, run_id: str) -> SyncRun | None:
    result = await session.execute(select(SyncRun).where(SyncRun.id == run_id))
    return result.scalar_one_or_none()


async def get_status(session: AsyncSession, run_id: str) -> tuple[str, str | None] | None:
    # Column-level read so pollers always see the committed value, not an identity-map copy.
    result = await session.execute(select(SyncRun.status, SyncRun.message).where(SyncRun.id == run_id))
    row = result.first()
    if row is None:
        return None
    return str(row[0]), row[1]


async def update_progress(
    session: AsyncSession,
    run_id: str,
    *,
    progress: int,
    message: str,
    status: str = SyncStatus.IN_PROGRESS.value,
) -> bool:
    # Single conditional write: terminal runs are never touched and progress only rises.
    progress = max(0, min(int(progress), COMPLETE))
    result = await session.execute(
        update(SyncRun)
        .where(SyncRun.id == run_id, SyncRun.status.in_(ACTIVE_STATUSES))
        .values(
            status=status,
            progress=case((SyncRun.progress < progress, progress), else_=SyncRun.progress),
            message=message,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def mark_completed(session: AsyncSession, run_id: str, *, message: str) -> bool:
    result = await session.execute(
        update(SyncRun)
        .where(SyncRun.id == run_id, SyncRun.status.in_(ACTIVE_STATUSES))
        .values(status=SyncStatus.COMPLETED.value, progress=COMPLETE, message=message, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def mark_failed(session: AsyncSession, run_id: str, *, message: str) -> bool:
    # Progress is left as-is so the UI shows how far the run got.
    result = await session.execute(
        update(SyncRun)
        .where(SyncRun.id == run_id, SyncRun.status.in_(ACTIVE_STATUSES))
        .values(status=SyncStatus.FAILED.value, message=message, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def has_prior_completed_run(
    session: AsyncSession, organization_id: str, *, exclude_run_id: str | None = None
) -> bool:
    stmt = select(SyncRun.id).where(
        SyncRun.organization_id == organization_id,
        SyncRun.status == SyncStatus.COMPLETED.value,
    )
    if exclude_run_id:
        stmt = stmt.where(SyncRun.id != exclude_run_id)
    result = await session.execute(stmt.limit(1))
    return result.first() is not None


async def list_runs(session: AsyncSession, organization_id: str, *, limit: int = 20) -> list[SyncRun]:
    result = await session.execute(
        select(SyncRun)
        .where(SyncRun.organization_id == organization_id)
        .order_by(SyncRun.created_at.desc(), SyncRun.id)
        .limit(limit)
    )
    return list(result.scalars().all())
