from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from shadowsync.core.errors import ProviderAuthError, StageFailedError
from shadowsync.domain.records import DirectoryUserRecord
from shadowsync.domain.state import USERS_DONE, USERS_FETCH, USERS_PROCESS, StageName
from shadowsync.persistence.repos import users as users_repo
from shadowsync.services.sync.context import StageContext
from shadowsync.services.sync.models import StageRequest, StageResult
from shadowsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_PROVIDER_LABELS = {"google": "Google Workspace", "microsoft": "Microsoft Entra ID"}


def provider_label(provider: str) -> str:
    return _PROVIDER_LABELS.get(provider, provider.capitalize())


def normalize_users(raw_users: list[dict[str, Any]], *, run_id: str) -> list[DirectoryUserRecord]:
    records: list[DirectoryUserRecord] = []
    for raw in raw_users:
        try:
            records.append(DirectoryUserRecord.from_raw(raw))
        except (ValueError, ValidationError) as exc:
            # A malformed directory entry is skipped, never fatal.
            increment_counter("sync_users_skipped_total")
            logger.warning("sync_user_skipped run_id=%s error=%s", run_id, exc)
    return records


async def run_users_stage(request: StageRequest, context: StageContext) -> StageResult:
    label = provider_label(request.provider)
    await context.report_progress(request.run_id, USERS_FETCH, f"Fetching users from {label}")
    provider = context.provider_for(request.provider)
    try:
        raw_users = await provider.fetch_directory_users(request.credentials)
    except ProviderAuthError as exc:
        raise StageFailedError(
            StageName.USERS.value,
            f"{label} authentication credentials are invalid. Please re-authenticate your {label} account.",
        ) from exc
    context.monitor.log_usage(f"users {request.run_id} fetch complete")

    records = normalize_users(raw_users, run_id=request.run_id)
    await context.report_progress(
        request.run_id, USERS_PROCESS, f"Processing {len(records)} users with resource-aware batching"
    )

    async def _save(chunk: list[DirectoryUserRecord]) -> int:
        async with context.session_factory() as session:
            inserted, updated = await users_repo.upsert_users(session, request.organization_id, chunk)
            await session.commit()
        return inserted + updated

    batch = await context.batch.run(records, _save, context.monitor, f"users:{request.run_id}")
    saved = sum(batch.outputs)
    logger.info(
        "sync_users_complete run_id=%s fetched=%s saved=%s failed=%s",
        request.run_id,
        len(raw_users),
        saved,
        batch.failed_items,
    )
    message = f"User sync completed - processed {saved} users"
    await context.report_progress(request.run_id, USERS_DONE, message)
    return StageResult(
        stage=StageName.USERS.value,
        ok=True,
        message=message,
        payload={"fetched": len(raw_users), "saved": saved, "failed": batch.failed_items},
    )
