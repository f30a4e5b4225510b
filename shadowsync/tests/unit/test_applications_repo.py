from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from shadowsync.domain.models import Application
from shadowsync.persistence.repos import applications as applications_repo


ORG_ID = "org-acme"
BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


async def _seed(session_factory) -> None:  # noqa: ANN001
    async with session_factory() as session:
        # Inserted newest first so ordering cannot come from insertion order.
        session.add_all(
            [
                Application(id="z-1", organization_id=ORG_ID, name="Zoom", created_at=BASE + timedelta(minutes=5)),
                Application(id="s-2", organization_id=ORG_ID, name="Slack", created_at=BASE + timedelta(minutes=2)),
                Application(id="s-1", organization_id=ORG_ID, name="Slack", created_at=BASE),
                Application(id="o-1", organization_id="org-other", name="Slack", created_at=BASE),
            ]
        )
        await session.commit()


@pytest.mark.asyncio
async def test_duplicate_names_resolve_to_the_earliest_row(session_factory) -> None:
    await _seed(session_factory)
    async with session_factory() as session:
        slack = await applications_repo.get_by_name(session, ORG_ID, "Slack")
        missing = await applications_repo.get_by_name(session, ORG_ID, "Miro")
    assert slack.id == "s-1"
    assert missing is None


@pytest.mark.asyncio
async def test_list_by_names_is_scoped_to_the_organization(session_factory) -> None:
    await _seed(session_factory)
    async with session_factory() as session:
        rows = await applications_repo.list_by_names(session, ORG_ID, ["Slack", "Zoom", "Slack"])
        empty = await applications_repo.list_by_names(session, ORG_ID, [])
    assert [row.id for row in rows] == ["s-1", "s-2", "z-1"]
    assert empty == []
