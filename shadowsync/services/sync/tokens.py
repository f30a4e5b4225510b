"""Token import: OAuth grants become applications and relation candidates.

Grants are normalized into :class:`GrantRecord` first, grouped by display name,
and merged with the stored application rows so that scope sets only grow and
risk only escalates. Relation rows are not written here; the candidates are
handed to the relations stage through the result payload.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from shadowsync.core.errors import DependencyTimeoutError, ProviderAuthError, StageFailedError, UpstreamStageFailedError
from shadowsync.domain.records import GrantRecord
from shadowsync.domain.risk import determine_risk_level, escalate
from shadowsync.domain.state import (
    DEFAULT_MANAGEMENT_STATUS,
    TOKENS_DONE,
    TOKENS_FETCH,
    TOKENS_PROCESS,
    TOKENS_SAVE,
    USERS_DONE,
    StageName,
    SyncStatus,
)
from shadowsync.persistence.repos import applications as applications_repo
from shadowsync.persistence.repos import sync_runs as sync_runs_repo
from shadowsync.persistence.repos import users as users_repo
from shadowsync.services.sync.context import StageContext
from shadowsync.services.sync.models import RelationCandidate, StageRequest, StageResult
from shadowsync.services.sync.users import provider_label
from shadowsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


async def _poll_identity(request: StageRequest, context: StageContext) -> dict[str, str] | None:
    async with context.session_factory() as session:
        users = await users_repo.list_users(session, request.organization_id)
        run = await sync_runs_repo.get_run(session, request.run_id)
    # A users stage running alongside commits chunk by chunk, so rows alone do not mean it finished.
    finished = not request.await_users_stage or (run is not None and run.progress >= USERS_DONE)
    if users and finished:
        identity: dict[str, str] = {}
        for user in users:
            identity[user.email.lower()] = user.id
            identity[user.provider_user_id] = user.id
        return identity
    if run is not None and run.status == SyncStatus.FAILED.value:
        raise UpstreamStageFailedError(f"User sync failed: {run.message or 'unknown error'}")
    return None


async def wait_for_users(request: StageRequest, context: StageContext) -> dict[str, str]:
    """Poll the store until the users stage has written rows for the organization.

    Backoff doubles from ``initial_s`` up to ``max_s`` for ``max_attempts``
    waits, and every wait is followed by another check. With
    ``await_users_stage`` set, rows only count once the run's progress shows
    the users stage finished. A FAILED run aborts the wait immediately with
    the upstream reason.
    """
    policy = context.user_poll
    waits = max(policy.max_attempts, 1)
    delay = policy.initial_s
    for attempt in range(1, waits + 2):
        identity = await _poll_identity(request, context)
        if identity is not None:
            logger.info("sync_users_ready run_id=%s users=%s attempt=%s", request.run_id, len(set(identity.values())), attempt)
            return identity
        if attempt > waits:
            break
        logger.info("sync_users_waiting run_id=%s attempt=%s sleep_s=%.1f", request.run_id, attempt, delay)
        await context.sleep(delay)
        delay = min(delay * 2, policy.max_s)
    increment_counter("sync_user_wait_timeouts_total")
    raise DependencyTimeoutError("Timeout waiting for users to be processed")


def normalize_grants(raw_grants: list[dict[str, Any]], *, run_id: str) -> list[GrantRecord]:
    grants: list[GrantRecord] = []
    for raw in raw_grants:
        try:
            grants.append(GrantRecord.from_raw(raw))
        except (ValueError, ValidationError) as exc:
            increment_counter("sync_grants_skipped_total")
            logger.warning("sync_grant_skipped run_id=%s error=%s", run_id, exc)
    return grants


@dataclass
class ApplicationPlan:
    name: str
    risk_level: str
    all_scopes: set[str]
    total_permissions: int
    management_status: str
    provider_app_ids: str | None
    # directory user id -> scopes granted to this application
    user_scopes: dict[str, set[str]] = field(default_factory=dict)


def _resolve_user(grant: GrantRecord, identity_map: dict[str, str]) -> str | None:
    if grant.subject_user_key and grant.subject_user_key in identity_map:
        return identity_map[grant.subject_user_key]
    if grant.subject_email:
        return identity_map.get(grant.subject_email.lower())
    return None


def _join_client_ids(existing: str | None, grants: list[GrantRecord]) -> str | None:
    ordered: list[str] = []
    for value in (existing or "").split(","):
        value = value.strip()
        if value and value not in ordered:
            ordered.append(value)
    for grant in grants:
        if grant.client_id and grant.client_id not in ordered:
            ordered.append(grant.client_id)
    return ",".join(ordered) or None


async def run_tokens_stage(request: StageRequest, context: StageContext) -> StageResult:
    identity_map = request.identity_map
    if identity_map is None:
        identity_map = await wait_for_users(request, context)

    label = provider_label(request.provider)
    await context.report_progress(request.run_id, TOKENS_FETCH, f"Fetching application tokens from {label}")
    provider = context.provider_for(request.provider)
    try:
        raw_grants = await provider.fetch_grant_records(request.credentials)
    except ProviderAuthError as exc:
        raise StageFailedError(
            StageName.TOKENS.value, f"Failed to fetch application tokens from {label}: {exc}"
        ) from exc
    grants = normalize_grants(raw_grants, run_id=request.run_id)
    await context.report_progress(
        request.run_id, TOKENS_PROCESS, f"Processing {len(grants)} application tokens with resource-aware batching"
    )

    # Every grant shapes its application; an unknown user only costs the relation row.
    by_name: dict[str, list[GrantRecord]] = {}
    unresolved = 0
    for grant in grants:
        by_name.setdefault(grant.client_display_name, []).append(grant)
        if _resolve_user(grant, identity_map) is None:
            unresolved += 1
            logger.info(
                "sync_grant_user_unresolved run_id=%s app=%s user_key=%s",
                request.run_id,
                grant.client_display_name,
                grant.subject_user_key,
            )

    async def _plan(chunk: list[tuple[str, list[GrantRecord]]]) -> list[ApplicationPlan]:
        async with context.session_factory() as session:
            stored = await applications_repo.list_by_names(
                session, request.organization_id, [name for name, _ in chunk]
            )
        existing: dict[str, Any] = {}
        for row in stored:
            existing.setdefault(row.name, row)
        plans: list[ApplicationPlan] = []
        for name, app_grants in chunk:
            row = existing.get(name)
            user_scopes: dict[str, set[str]] = {}
            observed: set[str] = set()
            for grant in app_grants:
                scopes = grant.normalized_scopes()
                observed |= scopes
                user_id = _resolve_user(grant, identity_map)
                if user_id is not None:
                    user_scopes.setdefault(user_id, set()).update(scopes)
            stored_scopes = set(row.all_scopes or []) if row is not None else set()
            all_scopes = stored_scopes | observed
            plans.append(
                ApplicationPlan(
                    name=name,
                    # Imports may add scopes or raise risk, never remove or lower.
                    risk_level=escalate(row.risk_level if row else None, determine_risk_level(observed)).value,
                    all_scopes=all_scopes,
                    total_permissions=max(row.total_permissions if row else 0, len(all_scopes)),
                    management_status=(row.management_status if row and row.management_status else None)
                    or DEFAULT_MANAGEMENT_STATUS,
                    provider_app_ids=_join_client_ids(row.provider_app_ids if row else None, app_grants),
                    user_scopes=user_scopes,
                )
            )
        return plans

    grouped = list(by_name.items())
    planned = await context.batch.run(grouped, _plan, context.monitor, f"tokens-plan:{request.run_id}")
    plans = [plan for chunk_plans in planned.outputs for plan in chunk_plans]

    await context.report_progress(
        request.run_id, TOKENS_SAVE, f"Saving {len(plans)} applications with resource monitoring"
    )

    async def _save(chunk: list[ApplicationPlan]) -> dict[str, str]:
        saved: dict[str, str] = {}
        async with context.session_factory() as session:
            for plan in chunk:
                row = await applications_repo.upsert_application(
                    session,
                    request.organization_id,
                    name=plan.name,
                    risk_level=plan.risk_level,
                    all_scopes=plan.all_scopes,
                    total_permissions=plan.total_permissions,
                    management_status=plan.management_status,
                    provider_app_ids=plan.provider_app_ids,
                )
                saved[plan.name] = row.id
            await session.commit()
        return saved

    save_run = await context.batch.run(plans, _save, context.monitor, f"tokens-save:{request.run_id}")
    app_map: dict[str, str] = {}
    for saved in save_run.outputs:
        app_map.update(saved)

    relations: list[RelationCandidate] = []
    for plan in plans:
        application_id = app_map.get(plan.name)
        if application_id is None:
            continue
        for user_id, scopes in plan.user_scopes.items():
            relations.append(
                RelationCandidate(user_id=user_id, application_id=application_id, scopes=sorted(scopes))
            )

    failed = planned.failed_items + save_run.failed_items
    logger.info(
        "sync_tokens_complete run_id=%s grants=%s apps=%s relations=%s unresolved=%s failed=%s",
        request.run_id,
        len(grants),
        len(app_map),
        len(relations),
        unresolved,
        failed,
    )
    message = f"Token sync completed - processed {len(app_map)} applications"
    await context.report_progress(request.run_id, TOKENS_DONE, message)
    return StageResult(
        stage=StageName.TOKENS.value,
        ok=True,
        message=message,
        payload={
            "relations": [relation.model_dump() for relation in relations],
            "app_map": app_map,
            "unresolved": unresolved,
            "failed": failed,
        },
    )
