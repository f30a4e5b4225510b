from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shadowsync.domain.models import Organization


async def get_organization(session: AsyncSession, organization_id: str) -> Organization | None:
    result = await session.execute(select(Organization).where(Organization.id == organization_id))
    return result.scalar_one_or_none()


async def ensure_organization(
    session: AsyncSession, organization_id: str, *, name: str | None = None, provider: str = "google"
) -> Organization:
    # Scripts and seeds may reference an organization before the dashboard creates it.
    org = await get_organization(session, organization_id)
    if org is None:
        org = Organization(id=organization_id, name=name or organization_id, provider=provider)
        session.add(org)
        await session.flush()
    return org
