from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from shadowsync.domain.models import Application, DirectoryUser, UserApplication
from shadowsync.services.dedup import merge_duplicate_applications, recompute_application_risk


ORG_ID = "org-acme"
BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)
GMAIL_READ = "https://www.googleapis.com/auth/gmail.readonly"
DRIVE = "https://www.googleapis.com/auth/drive"


def _app(app_id: str, name: str, minutes: int, **fields) -> Application:  # noqa: ANN003
    values = {
        "id": app_id,
        "organization_id": ORG_ID,
        "name": name,
        "created_at": BASE + timedelta(minutes=minutes),
    }
    values.update(fields)
    return Application(**values)


def _relation(relation_id: str, user_id: str, app_id: str, scopes: list[str], minutes: int) -> UserApplication:
    return UserApplication(
        id=relation_id,
        user_id=user_id,
        application_id=app_id,
        scopes=scopes,
        created_at=BASE + timedelta(minutes=minutes),
    )


async def _seed_slack_duplicates(session_factory) -> None:  # noqa: ANN001
    async with session_factory() as session:
        session.add_all(
            [
                DirectoryUser(id="u-1", organization_id=ORG_ID, provider_user_id="g-1", email="ada@acme.test"),
                DirectoryUser(id="u-2", organization_id=ORG_ID, provider_user_id="g-2", email="grace@acme.test"),
            ]
        )
        session.add_all(
            [
                _app("s-1", "Slack", 0, risk_level="LOW", all_scopes=["openid"], total_permissions=1),
                _app(
                    "s-2",
                    "Slack",
                    1,
                    risk_level="MEDIUM",
                    all_scopes=[GMAIL_READ],
                    total_permissions=1,
                    management_status="Approved",
                    category="Communication",
                    provider_app_ids="client-b",
                ),
                _app(
                    "s-3",
                    "Slack",
                    2,
                    risk_level="HIGH",
                    all_scopes=[DRIVE],
                    total_permissions=5,
                    provider_app_ids="client-a,client-c",
                ),
                _app("z-1", "Zoom", 3, risk_level="LOW", all_scopes=["openid"], total_permissions=1),
            ]
        )
        await session.flush()
        session.add_all(
            [
                _relation("r-1", "u-1", "s-1", ["a"], 0),
                _relation("r-2", "u-1", "s-2", ["b"], 1),
                _relation("r-3", "u-2", "s-3", ["c"], 2),
                _relation("r-4", "u-2", "ghost-app", ["x"], 3),
            ]
        )
        await session.commit()


@pytest.mark.asyncio
async def test_merge_collapses_duplicates_onto_earliest_row(session_factory) -> None:
    await _seed_slack_duplicates(session_factory)

    async with session_factory() as session:
        report = await merge_duplicate_applications(session, ORG_ID)
        await session.commit()

    assert report.groups_merged == 1
    assert report.applications_deleted == 2
    assert report.relations_merged == 1
    assert report.relations_retargeted == 1
    assert report.orphans_deleted == 1
    assert report.merged_names == ["Slack"]
    assert report.changed is True

    async with session_factory() as session:
        apps = (await session.execute(select(Application).order_by(Application.name))).scalars().all()
        relations = (
            await session.execute(select(UserApplication).order_by(UserApplication.user_id))
        ).scalars().all()

    assert [app.id for app in apps] == ["s-1", "z-1"]
    slack = apps[0]
    assert slack.risk_level == "HIGH"
    assert slack.all_scopes == sorted(["openid", GMAIL_READ, DRIVE])
    assert slack.total_permissions == 5
    assert slack.management_status == "Approved"
    assert slack.category == "Communication"
    assert slack.provider_app_ids == "client-b,client-a,client-c"

    assert [(row.user_id, row.application_id, row.scopes) for row in relations] == [
        ("u-1", "s-1", ["a", "b"]),
        ("u-2", "s-1", ["c"]),
    ]


@pytest.mark.asyncio
async def test_merge_is_idempotent(session_factory) -> None:
    await _seed_slack_duplicates(session_factory)
    async with session_factory() as session:
        await merge_duplicate_applications(session, ORG_ID)
        await session.commit()

    async with session_factory() as session:
        report = await merge_duplicate_applications(session, ORG_ID)
        await session.commit()

    assert report.changed is False
    assert report.applications_deleted == 0


@pytest.mark.asyncio
async def test_merge_collapses_duplicate_relation_rows_without_app_duplicates(session_factory) -> None:
    async with session_factory() as session:
        session.add(DirectoryUser(id="u-1", organization_id=ORG_ID, provider_user_id="g-1", email="ada@acme.test"))
        session.add(_app("z-1", "Zoom", 0))
        await session.flush()
        session.add_all(
            [
                _relation("r-1", "u-1", "z-1", ["a"], 0),
                _relation("r-2", "u-1", "z-1", ["b"], 1),
            ]
        )
        await session.commit()

    async with session_factory() as session:
        report = await merge_duplicate_applications(session, ORG_ID)
        await session.commit()

    assert report.groups_merged == 0
    assert report.duplicate_relations_collapsed == 1
    async with session_factory() as session:
        rows = (await session.execute(select(UserApplication))).scalars().all()
    assert [(row.id, row.scopes) for row in rows] == [("r-1", ["a", "b"])]


@pytest.mark.asyncio
async def test_recompute_risk_follows_granted_scopes(session_factory) -> None:
    async with session_factory() as session:
        session.add_all(
            [
                DirectoryUser(id="u-1", organization_id=ORG_ID, provider_user_id="g-1", email="ada@acme.test"),
                DirectoryUser(id="u-2", organization_id=ORG_ID, provider_user_id="g-2", email="grace@acme.test"),
            ]
        )
        session.add_all(
            [
                _app("z-1", "Zoom", 0, risk_level="HIGH", all_scopes=[DRIVE, "openid"], total_permissions=2),
                _app("f-1", "Figma", 1, risk_level="HIGH", all_scopes=[DRIVE], total_permissions=1),
            ]
        )
        await session.flush()
        session.add_all(
            [
                _relation("r-1", "u-1", "z-1", ["openid"], 0),
                _relation("r-2", "u-2", "z-1", ["email"], 1),
            ]
        )
        await session.commit()

    async with session_factory() as session:
        report = await recompute_application_risk(session, ORG_ID)
        await session.commit()

    assert report.applications_checked == 2
    assert report.applications_updated == 1
    assert report.applications_skipped == 1
    assert report.by_level == {"LOW": 1, "MEDIUM": 0, "HIGH": 1}

    async with session_factory() as session:
        zoom = await session.get(Application, "z-1")
        figma = await session.get(Application, "f-1")
    assert zoom.risk_level == "LOW"
    assert zoom.total_permissions == 2
    assert zoom.user_count == 2
    # No grants observed: the declared values stand.
    assert figma.risk_level == "HIGH"
