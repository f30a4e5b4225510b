from __future__ import annotations

from typing import Iterable
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shadowsync.domain.models import Application, DirectoryUser, UserApplication, scope_list


async def list_for_applications(
    session: AsyncSession, application_ids: Iterable[str]
) -> list[UserApplication]:
    ids = list(set(application_ids))
    if not ids:
        return []
    result = await session.execute(
        select(UserApplication)
        .where(UserApplication.application_id.in_(ids))
        .order_by(UserApplication.created_at, UserApplication.id)
    )
    return list(result.scalars().all())


async def upsert_relations(
    session: AsyncSession, relations: Iterable[tuple[str, str, Iterable[str]]]
) -> tuple[int, int]:
    """Union scopes into the stored row for each ``(user_id, application_id)``.

    Input pairs are grouped first, so duplicates inside one call become a single
    row. Returns ``(inserted, updated)``.
    """
    grouped: dict[tuple[str, str], set[str]] = {}
    for user_id, application_id, scopes in relations:
        grouped.setdefault((user_id, application_id), set()).update(scopes)
    if not grouped:
        return 0, 0

    stored = await list_for_applications(session, {app_id for _, app_id in grouped})
    existing: dict[tuple[str, str], UserApplication] = {}
    for row in stored:
        # Earliest row per pair receives the union; later duplicates wait for the merge pass.
        existing.setdefault((row.user_id, row.application_id), row)

    inserted = 0
    updated = 0
    for (user_id, application_id), scopes in grouped.items():
        row = existing.get((user_id, application_id))
        if row is None:
            session.add(
                UserApplication(
                    id=uuid4().hex,
                    user_id=user_id,
                    application_id=application_id,
                    scopes=scope_list(scopes),
                )
            )
            inserted += 1
            continue
        merged = scope_list(set(row.scopes or []) | scopes)
        if merged != scope_list(row.scopes):
            row.scopes = merged
            updated += 1
    await session.flush()
    return inserted, updated


async def delete_relations(session: AsyncSession, relation_ids: Iterable[str]) -> int:
    ids = list(relation_ids)
    if not ids:
        return 0
    result = await session.execute(
        delete(UserApplication).where(UserApplication.id.in_(ids)).execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def delete_orphans(session: AsyncSession, organization_id: str) -> int:
    # Relations of this organization's users whose application row no longer exists.
    org_users = select(DirectoryUser.id).where(DirectoryUser.organization_id == organization_id)
    live_apps = select(Application.id)
    result = await session.execute(
        delete(UserApplication)
        .where(UserApplication.user_id.in_(org_users), UserApplication.application_id.not_in(live_apps))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def user_counts(session: AsyncSession, application_ids: Iterable[str]) -> dict[str, int]:
    ids = list(set(application_ids))
    if not ids:
        return {}
    result = await session.execute(
        select(UserApplication.application_id, func.count(func.distinct(UserApplication.user_id)))
        .where(UserApplication.application_id.in_(ids))
        .group_by(UserApplication.application_id)
    )
    return {app_id: int(count) for app_id, count in result.all()}
