from __future__ import annotations

from typing import Iterable
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shadowsync.domain.models import DirectoryUser
from shadowsync.domain.records import DirectoryUserRecord


async def list_users(session: AsyncSession, organization_id: str) -> list[DirectoryUser]:
    result = await session.execute(
        select(DirectoryUser)
        .where(DirectoryUser.organization_id == organization_id)
        .order_by(DirectoryUser.created_at, DirectoryUser.id)
    )
    return list(result.scalars().all())


async def count_users(session: AsyncSession, organization_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(DirectoryUser).where(DirectoryUser.organization_id == organization_id)
    )
    return int(result.scalar() or 0)


async def upsert_users(
    session: AsyncSession, organization_id: str, records: Iterable[DirectoryUserRecord]
) -> tuple[int, int]:
    """Insert or update directory users keyed by lower-cased email.

    Returns ``(inserted, updated)``. Duplicate emails inside ``records`` collapse
    onto the same row, last record wins.
    """
    records = list(records)
    if not records:
        return 0, 0
    emails = {record.email.lower() for record in records}
    result = await session.execute(
        select(DirectoryUser).where(
            DirectoryUser.organization_id == organization_id,
            func.lower(DirectoryUser.email).in_(emails),
        )
    )
    existing = {row.email.lower(): row for row in result.scalars().all()}
    inserted = 0
    updated = 0
    for record in records:
        key = record.email.lower()
        row = existing.get(key)
        if row is None:
            row = DirectoryUser(
                id=uuid4().hex,
                organization_id=organization_id,
                provider_user_id=record.provider_user_id,
                email=record.email,
                name=record.name,
                role=record.role,
                department=record.department,
            )
            session.add(row)
            existing[key] = row
            inserted += 1
            continue
        row.provider_user_id = record.provider_user_id
        row.name = record.name
        row.role = record.role
        row.department = record.department
        updated += 1
    await session.flush()
    return inserted, updated
