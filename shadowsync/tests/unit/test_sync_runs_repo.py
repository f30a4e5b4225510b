from __future__ import annotations

import pytest

from shadowsync.persistence.repos import sync_runs as sync_runs_repo


ORG_ID = "org-acme"


async def _create(session_factory) -> str:  # noqa: ANN001
    async with session_factory() as session:
        run = await sync_runs_repo.create_run(session, organization_id=ORG_ID, provider="google", user_email=None)
        await session.commit()
    return run.id


@pytest.mark.asyncio
async def test_new_run_is_pending(session_factory) -> None:
    run_id = await _create(session_factory)
    async with session_factory() as session:
        run = await sync_runs_repo.get_run(session, run_id)
    assert run.status == "PENDING"
    assert run.progress == 0
    assert run.message == "Sync queued"


@pytest.mark.asyncio
async def test_progress_never_moves_backwards(session_factory) -> None:
    run_id = await _create(session_factory)
    async with session_factory() as session:
        await sync_runs_repo.update_progress(session, run_id, progress=50, message="tokens")
        await sync_runs_repo.update_progress(session, run_id, progress=20, message="users done")
        await session.commit()
    async with session_factory() as session:
        run = await sync_runs_repo.get_run(session, run_id)
    assert run.progress == 50
    assert run.status == "IN_PROGRESS"
    assert run.message == "users done"


@pytest.mark.asyncio
async def test_progress_is_clamped(session_factory) -> None:
    run_id = await _create(session_factory)
    async with session_factory() as session:
        await sync_runs_repo.update_progress(session, run_id, progress=250, message="overshoot")
        await session.commit()
    async with session_factory() as session:
        run = await sync_runs_repo.get_run(session, run_id)
    assert run.progress == 100


@pytest.mark.asyncio
async def test_terminal_runs_are_never_rewritten(session_factory) -> None:
    run_id = await _create(session_factory)
    async with session_factory() as session:
        assert await sync_runs_repo.mark_failed(session, run_id, message="Sync failed: boom") is True
        assert await sync_runs_repo.update_progress(session, run_id, progress=90, message="late") is False
        assert await sync_runs_repo.mark_completed(session, run_id, message="done") is False
        assert await sync_runs_repo.mark_failed(session, run_id, message="again") is False
        await session.commit()
    async with session_factory() as session:
        assert await sync_runs_repo.get_status(session, run_id) == ("FAILED", "Sync failed: boom")


@pytest.mark.asyncio
async def test_completed_run_reports_full_progress(session_factory) -> None:
    run_id = await _create(session_factory)
    async with session_factory() as session:
        await sync_runs_repo.mark_completed(session, run_id, message="Google Workspace data sync completed")
        await session.commit()
    async with session_factory() as session:
        run = await sync_runs_repo.get_run(session, run_id)
        assert await sync_runs_repo.has_prior_completed_run(session, ORG_ID) is True
        assert await sync_runs_repo.has_prior_completed_run(session, ORG_ID, exclude_run_id=run_id) is False
    assert run.progress == 100
    assert run.status == "COMPLETED"
