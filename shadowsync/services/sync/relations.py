from __future__ import annotations

import logging

from shadowsync.domain.state import RELATIONS_DONE, RELATIONS_SAVE, RELATIONS_START, StageName
from shadowsync.domain.models import Application
from shadowsync.persistence.repos import relations as relations_repo
from shadowsync.services.sync.context import StageContext
from shadowsync.services.sync.models import RelationCandidate, StageRequest, StageResult


logger = logging.getLogger(__name__)


def group_relations(candidates: list[RelationCandidate]) -> list[tuple[str, str, set[str]]]:
    # One entry per (user, application); scopes are unioned across raw grants.
    grouped: dict[tuple[str, str], set[str]] = {}
    for candidate in candidates:
        grouped.setdefault((candidate.user_id, candidate.application_id), set()).update(candidate.scopes)
    return [(user_id, app_id, scopes) for (user_id, app_id), scopes in grouped.items()]


async def run_relations_stage(request: StageRequest, context: StageContext) -> StageResult:
    candidates = request.relations or []
    if not candidates:
        message = "Relations processing skipped - no data provided"
        await context.report_progress(request.run_id, RELATIONS_DONE, message)
        return StageResult(stage=StageName.RELATIONS.value, ok=True, message=message, payload={"saved": 0})

    grouped = group_relations(candidates)
    await context.report_progress(
        request.run_id, RELATIONS_START, f"Processing {len(grouped)} user-application relations"
    )
    await context.report_progress(request.run_id, RELATIONS_SAVE, "Saving user-application relationships")

    async def _save(chunk: list[tuple[str, str, set[str]]]) -> int:
        async with context.session_factory() as session:
            inserted, updated = await relations_repo.upsert_relations(session, chunk)
            await session.commit()
        return inserted

    batch = await context.batch.run(grouped, _save, context.monitor, f"relations:{request.run_id}")

    application_ids = {app_id for _, app_id, _ in grouped}
    async with context.session_factory() as session:
        counts = await relations_repo.user_counts(session, application_ids)
        for app_id, count in counts.items():
            app = await session.get(Application, app_id)
            if app is not None:
                app.user_count = count
        await session.commit()

    inserted = sum(batch.outputs)
    logger.info(
        "sync_relations_complete run_id=%s relations=%s inserted=%s failed=%s",
        request.run_id,
        len(grouped),
        inserted,
        batch.failed_items,
    )
    if batch.ok:
        message = "Relations processing completed successfully"
    else:
        message = f"Relations processing completed with some issues ({batch.failed_items} relations not saved)"
    await context.report_progress(request.run_id, RELATIONS_DONE, message)
    return StageResult(
        stage=StageName.RELATIONS.value,
        ok=True,
        message=message,
        payload={"saved": batch.processed_items, "inserted": inserted, "failed": batch.failed_items},
    )
