from __future__ import annotations

from typing import Iterable
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from shadowsync.domain.models import Application, scope_list
from shadowsync.domain.state import DEFAULT_MANAGEMENT_STATUS, UNKNOWN_CATEGORY


async def list_applications(session: AsyncSession, organization_id: str) -> list[Application]:
    # Oldest first so callers picking "the first" row agree with the merge primary.
    result = await session.execute(
        select(Application)
        .where(Application.organization_id == organization_id)
        .order_by(Application.created_at, Application.id)
    )
    return list(result.scalars().all())


async def list_by_names(
    session: AsyncSession, organization_id: str, names: Iterable[str]
) -> list[Application]:
    names = list(set(names))
    if not names:
        return []
    result = await session.execute(
        select(Application)
        .where(Application.organization_id == organization_id, Application.name.in_(names))
        .order_by(Application.created_at, Application.id)
    )
    return list(result.scalars().all())


async def get_by_name(session: AsyncSession, organization_id: str, name: str) -> Application | None:
    # Earliest row wins while duplicates are still waiting for a merge.
    result = await session.execute(
        select(Application)
        .where(Application.organization_id == organization_id, Application.name == name)
        .order_by(Application.created_at, Application.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def upsert_application(
    session: AsyncSession,
    organization_id: str,
    *,
    name: str,
    risk_level: str,
    all_scopes: Iterable[str],
    total_permissions: int,
    management_status: str | None = None,
    provider_app_ids: str | None = None,
    category: str | None = None,
) -> Application:
    """Write the already-merged state of one application.

    Callers compute escalated risk and scope unions; this only persists them
    onto the earliest row with ``name`` or creates one.
    """
    row = await get_by_name(session, organization_id, name)
    if row is None:
        row = Application(
            id=uuid4().hex,
            organization_id=organization_id,
            name=name,
            category=category or UNKNOWN_CATEGORY,
            management_status=management_status or DEFAULT_MANAGEMENT_STATUS,
        )
        session.add(row)
    elif management_status:
        row.management_status = management_status
    if category and row.category in (None, "", UNKNOWN_CATEGORY):
        row.category = category
    row.risk_level = risk_level
    row.all_scopes = scope_list(all_scopes)
    row.total_permissions = int(total_permissions)
    if provider_app_ids is not None:
        row.provider_app_ids = provider_app_ids
    await session.flush()
    return row


async def delete_applications(session: AsyncSession, application_ids: Iterable[str]) -> int:
    ids = list(application_ids)
    if not ids:
        return 0
    result = await session.execute(
        delete(Application).where(Application.id.in_(ids)).execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
