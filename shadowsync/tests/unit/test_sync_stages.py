from __future__ import annotations

import pytest
from sqlalchemy import select

from shadowsync.core.errors import DependencyTimeoutError, ProviderAuthError, UpstreamStageFailedError
from shadowsync.domain.models import Application, DirectoryUser, UserApplication
from shadowsync.domain.state import StageName
from shadowsync.persistence.repos import sync_runs as sync_runs_repo
from shadowsync.persistence.repos import users as users_repo
from shadowsync.domain.records import DirectoryUserRecord
from shadowsync.providers.identity.static import StaticIdentityProvider
from shadowsync.services.sync.categorize import categorize_name, needs_category
from shadowsync.services.sync.models import RelationCandidate
from shadowsync.services.sync.registry import run_stage
from shadowsync.services.sync.tokens import wait_for_users
from shadowsync.tests.utils.fakes import RecordingSleep, google_grant, google_user
from shadowsync.tests.utils.sync import ORG_ID, make_context, make_request, seed_run


GMAIL_READ = "https://www.googleapis.com/auth/gmail.readonly"
DRIVE = "https://www.googleapis.com/auth/drive"

USERS = [
    google_user("g-1", "ada@acme.test", admin=True),
    google_user("g-2", "Grace@acme.test", org_unit="/Sales"),
]


async def _run_row(session_factory, run_id: str):  # noqa: ANN001, ANN202
    async with session_factory() as session:
        return await sync_runs_repo.get_run(session, run_id)


async def _apps_by_name(session_factory) -> dict[str, Application]:  # noqa: ANN001
    async with session_factory() as session:
        result = await session.execute(select(Application).where(Application.organization_id == ORG_ID))
        return {app.name: app for app in result.scalars().all()}


@pytest.mark.asyncio
async def test_users_stage_saves_valid_users_and_skips_malformed(session_factory) -> None:
    run_id = await seed_run(session_factory)
    provider = StaticIdentityProvider(users=[*USERS, {"id": "g-3", "name": {"givenName": "No Email"}}])
    context = make_context(session_factory, provider)

    result = await run_stage(StageName.USERS, make_request(run_id), context)

    assert result.ok is True
    assert result.payload == {"fetched": 3, "saved": 2, "failed": 0}
    async with session_factory() as session:
        assert await users_repo.count_users(session, ORG_ID) == 2
    run = await _run_row(session_factory, run_id)
    assert run.status == "IN_PROGRESS"
    assert run.progress == 40
    assert run.message == "User sync completed - processed 2 users"


@pytest.mark.asyncio
async def test_users_stage_reimport_updates_in_place(session_factory) -> None:
    run_id = await seed_run(session_factory)
    context = make_context(session_factory, StaticIdentityProvider(users=USERS))
    await run_stage(StageName.USERS, make_request(run_id), context)

    renamed = dict(USERS[1], orgUnitPath="/Marketing", primaryEmail="grace@ACME.test")
    context = make_context(session_factory, StaticIdentityProvider(users=[USERS[0], renamed]))
    await run_stage(StageName.USERS, make_request(run_id), context)

    async with session_factory() as session:
        users = await users_repo.list_users(session, ORG_ID)
    assert len(users) == 2
    assert {user.department for user in users} == {"Engineering", "Marketing"}


@pytest.mark.asyncio
async def test_users_stage_auth_failure_marks_run_failed(session_factory) -> None:
    run_id = await seed_run(session_factory)
    provider = StaticIdentityProvider(error=ProviderAuthError("invalid_grant"))
    context = make_context(session_factory, provider)

    result = await run_stage(StageName.USERS, make_request(run_id), context)

    assert result.ok is False
    assert result.retryable is False
    run = await _run_row(session_factory, run_id)
    assert run.status == "FAILED"
    assert run.message == (
        "Google Workspace authentication credentials are invalid. "
        "Please re-authenticate your Google Workspace account."
    )


@pytest.mark.asyncio
async def test_stage_leaves_failure_to_caller_when_asked(session_factory) -> None:
    run_id = await seed_run(session_factory)
    provider = StaticIdentityProvider(error=ProviderAuthError("invalid_grant"))
    context = make_context(session_factory, provider)

    result = await run_stage(StageName.USERS, make_request(run_id, report_failure=False), context)

    assert result.ok is False
    run = await _run_row(session_factory, run_id)
    assert run.status == "IN_PROGRESS"


@pytest.mark.asyncio
async def test_unknown_provider_is_reported_as_failed_stage(session_factory) -> None:
    run_id = await seed_run(session_factory)
    context = make_context(session_factory, StaticIdentityProvider(users=USERS))

    result = await run_stage(StageName.USERS, make_request(run_id, provider="okta"), context)

    assert result.ok is False
    assert "okta" in result.message


@pytest.mark.asyncio
async def test_wait_for_users_backs_off_then_times_out(session_factory) -> None:
    run_id = await seed_run(session_factory)
    sleep = RecordingSleep()
    context = make_context(session_factory, StaticIdentityProvider(), sleep=sleep)

    with pytest.raises(DependencyTimeoutError, match="Timeout waiting for users to be processed"):
        await wait_for_users(make_request(run_id), context)

    assert sleep.delays == [2.0, 4.0, 8.0, 10.0, 10.0]


@pytest.mark.asyncio
async def test_wait_for_users_aborts_when_users_stage_failed(session_factory) -> None:
    run_id = await seed_run(session_factory)
    async with session_factory() as session:
        await sync_runs_repo.mark_failed(session, run_id, message="directory unreachable")
        await session.commit()
    sleep = RecordingSleep()
    context = make_context(session_factory, StaticIdentityProvider(), sleep=sleep)

    with pytest.raises(UpstreamStageFailedError, match="User sync failed: directory unreachable"):
        await wait_for_users(make_request(run_id), context)
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_wait_for_users_returns_identity_map_once_rows_appear(session_factory) -> None:
    run_id = await seed_run(session_factory)
    delays: list[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)
        if len(delays) == 2:
            async with session_factory() as session:
                await users_repo.upsert_users(
                    session, ORG_ID, [DirectoryUserRecord.from_raw(user) for user in USERS]
                )
                await session.commit()

    context = make_context(session_factory, StaticIdentityProvider())
    context.sleep = sleep

    identity = await wait_for_users(make_request(run_id), context)

    assert delays == [2.0, 4.0]
    assert {"ada@acme.test", "grace@acme.test", "g-1", "g-2"} <= set(identity)
    assert identity["g-2"] == identity["grace@acme.test"]


@pytest.mark.asyncio
async def test_tokens_stage_builds_applications_and_relation_candidates(session_factory) -> None:
    run_id = await seed_run(session_factory)
    grants = [
        google_grant("g-1", "ada@acme.test", "Slack", ["openid"]),
        google_grant("g-2", "grace@acme.test", "Slack", [GMAIL_READ], client_id="slack-2"),
        google_grant("g-1", "ada@acme.test", "Google Drive", [DRIVE]),
        {"userKey": "g-1", "userEmail": "ada@acme.test", "displayText": "Mystery"},
        google_grant("g-9", "ghost@elsewhere.test", "Slack", [DRIVE]),
    ]
    context = make_context(session_factory, StaticIdentityProvider(users=USERS, grants=grants))
    await run_stage(StageName.USERS, make_request(run_id), context)

    result = await run_stage(StageName.TOKENS, make_request(run_id), context)

    assert result.ok is True
    assert result.payload["unresolved"] == 1
    assert set(result.payload["app_map"]) == {"Slack", "Google Drive", "Mystery"}
    assert len(result.payload["relations"]) == 4

    apps = await _apps_by_name(session_factory)
    slack = apps["Slack"]
    # The unresolved grant still counts towards the application, just not a relation.
    assert slack.risk_level == "HIGH"
    assert sorted(slack.all_scopes) == sorted(["openid", GMAIL_READ, DRIVE])
    assert slack.total_permissions == 3
    assert slack.management_status == "Newly discovered"
    assert slack.provider_app_ids == "slack.apps.googleusercontent.com,slack-2"
    assert apps["Google Drive"].risk_level == "HIGH"
    assert apps["Mystery"].all_scopes == ["unknown_scope"]
    assert apps["Mystery"].risk_level == "LOW"

    run = await _run_row(session_factory, run_id)
    assert run.progress == 75
    assert run.message == "Token sync completed - processed 3 applications"


@pytest.mark.asyncio
async def test_grants_for_unknown_users_still_shape_applications(session_factory) -> None:
    run_id = await seed_run(session_factory)
    grants = [
        google_grant("g-1", "ada@acme.test", "Slack", ["openid"]),
        google_grant("g-7", "ghost@acme.test", "Zoom", [DRIVE]),
        google_grant("g-7", "ghost@acme.test", "Slack", [DRIVE]),
    ]
    context = make_context(session_factory, StaticIdentityProvider(grants=grants))
    identity_map = {"g-1": "u-1", "ada@acme.test": "u-1"}

    result = await run_stage(StageName.TOKENS, make_request(run_id, identity_map=identity_map), context)

    assert result.ok is True
    assert result.payload["unresolved"] == 2
    assert set(result.payload["app_map"]) == {"Slack", "Zoom"}
    assert result.payload["relations"] == [
        {"user_id": "u-1", "application_id": result.payload["app_map"]["Slack"], "scopes": ["openid"]}
    ]
    apps = await _apps_by_name(session_factory)
    assert apps["Zoom"].risk_level == "HIGH"
    assert apps["Zoom"].all_scopes == [DRIVE]
    assert apps["Slack"].risk_level == "HIGH"
    assert sorted(apps["Slack"].all_scopes) == sorted(["openid", DRIVE])


@pytest.mark.asyncio
async def test_wait_for_users_holds_until_users_stage_finishes(session_factory) -> None:
    run_id = await seed_run(session_factory)
    async with session_factory() as session:
        # First chunk already committed by a users stage that is still running.
        await users_repo.upsert_users(session, ORG_ID, [DirectoryUserRecord.from_raw(USERS[0])])
        await sync_runs_repo.update_progress(session, run_id, progress=20, message="Processing 2 users")
        await session.commit()
    delays: list[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)
        if len(delays) == 2:
            async with session_factory() as session:
                await users_repo.upsert_users(session, ORG_ID, [DirectoryUserRecord.from_raw(USERS[1])])
                await sync_runs_repo.update_progress(session, run_id, progress=40, message="User sync completed")
                await session.commit()

    context = make_context(session_factory, StaticIdentityProvider())
    context.sleep = sleep

    identity = await wait_for_users(make_request(run_id, await_users_stage=True), context)

    assert delays == [2.0, 4.0]
    assert {"g-1", "g-2", "ada@acme.test", "grace@acme.test"} <= set(identity)


@pytest.mark.asyncio
async def test_wait_for_users_checks_again_after_the_last_wait(session_factory) -> None:
    run_id = await seed_run(session_factory)
    delays: list[float] = []

    async def sleep(seconds: float) -> None:
        delays.append(seconds)
        if len(delays) == 5:
            async with session_factory() as session:
                await users_repo.upsert_users(
                    session, ORG_ID, [DirectoryUserRecord.from_raw(user) for user in USERS]
                )
                await session.commit()

    context = make_context(session_factory, StaticIdentityProvider())
    context.sleep = sleep

    identity = await wait_for_users(make_request(run_id), context)

    assert delays == [2.0, 4.0, 8.0, 10.0, 10.0]
    assert identity["g-1"] == identity["ada@acme.test"]


@pytest.mark.asyncio
async def test_reimport_never_lowers_risk_or_drops_scopes(session_factory) -> None:
    first_run = await seed_run(session_factory)
    provider = StaticIdentityProvider(
        users=USERS, grants=[google_grant("g-1", "ada@acme.test", "Slack", [DRIVE])]
    )
    context = make_context(session_factory, provider)
    await run_stage(StageName.USERS, make_request(first_run), context)
    await run_stage(StageName.TOKENS, make_request(first_run), context)

    async with session_factory() as session:
        result = await session.execute(select(Application).where(Application.name == "Slack"))
        result.scalar_one().management_status = "Approved"
        await session.commit()

    second_run = await seed_run(session_factory)
    provider.grants = [google_grant("g-1", "ada@acme.test", "Slack", ["openid"])]
    result = await run_stage(StageName.TOKENS, make_request(second_run), context)

    assert result.ok is True
    apps = await _apps_by_name(session_factory)
    assert len(apps) == 1
    slack = apps["Slack"]
    assert slack.risk_level == "HIGH"
    assert sorted(slack.all_scopes) == sorted([DRIVE, "openid"])
    assert slack.total_permissions == 2
    assert slack.management_status == "Approved"


async def _seed_user_and_app(session_factory) -> tuple[str, str]:  # noqa: ANN001
    async with session_factory() as session:
        user = DirectoryUser(id="u-1", organization_id=ORG_ID, provider_user_id="g-1", email="ada@acme.test")
        app = Application(id="a-1", organization_id=ORG_ID, name="Slack", all_scopes=["a", "b", "c"])
        session.add_all([user, app])
        await session.commit()
    return user.id, app.id


@pytest.mark.asyncio
async def test_relations_stage_unions_scopes_per_pair(session_factory) -> None:
    run_id = await seed_run(session_factory)
    user_id, app_id = await _seed_user_and_app(session_factory)
    context = make_context(session_factory, StaticIdentityProvider())
    candidates = [
        RelationCandidate(user_id=user_id, application_id=app_id, scopes=["a"]),
        RelationCandidate(user_id=user_id, application_id=app_id, scopes=["b"]),
    ]

    result = await run_stage(StageName.RELATIONS, make_request(run_id, relations=candidates), context)
    assert result.ok is True
    assert result.message == "Relations processing completed successfully"

    later = [RelationCandidate(user_id=user_id, application_id=app_id, scopes=["c"])]
    await run_stage(StageName.RELATIONS, make_request(run_id, relations=later), context)

    async with session_factory() as session:
        rows = (await session.execute(select(UserApplication))).scalars().all()
        app = await session.get(Application, app_id)
    assert len(rows) == 1
    assert rows[0].scopes == ["a", "b", "c"]
    assert app.user_count == 1
    run = await _run_row(session_factory, run_id)
    assert run.progress == 95


@pytest.mark.asyncio
async def test_relations_stage_without_input_is_skipped(session_factory) -> None:
    run_id = await seed_run(session_factory)
    context = make_context(session_factory, StaticIdentityProvider())

    result = await run_stage(StageName.RELATIONS, make_request(run_id, relations=[]), context)

    assert result.ok is True
    assert result.message == "Relations processing skipped - no data provided"
    run = await _run_row(session_factory, run_id)
    assert run.progress == 95


def test_categorize_name_uses_first_matching_category() -> None:
    assert categorize_name("Slack") == "Communication"
    assert categorize_name("Figma") == "Design"
    assert categorize_name("ChatGPT") == "AI & Machine Learning"
    assert categorize_name("Mailchimp") == "Marketing"
    assert categorize_name("Acme Internal Tool") is None
    assert needs_category("Unknown") is True
    assert needs_category(None) is True
    assert needs_category("Finance") is False


@pytest.mark.asyncio
async def test_categorize_stage_fills_unknown_categories_only(session_factory) -> None:
    run_id = await seed_run(session_factory)
    async with session_factory() as session:
        session.add_all(
            [
                Application(id="a-1", organization_id=ORG_ID, name="Slack", category="Unknown"),
                Application(id="a-2", organization_id=ORG_ID, name="Figma", category=None),
                Application(id="a-3", organization_id=ORG_ID, name="Acme Internal Tool", category="Unknown"),
                Application(id="a-4", organization_id=ORG_ID, name="Zoom", category="Finance"),
            ]
        )
        await session.commit()
    context = make_context(session_factory, StaticIdentityProvider())

    result = await run_stage(StageName.CATEGORIZE, make_request(run_id), context)

    assert result.payload == {"pending": 3, "categorized": 2}
    apps = await _apps_by_name(session_factory)
    assert apps["Slack"].category == "Communication"
    assert apps["Figma"].category == "Design"
    assert apps["Acme Internal Tool"].category == "Unknown"
    assert apps["Zoom"].category == "Finance"
    run = await _run_row(session_factory, run_id)
    assert run.status == "PENDING"
    assert run.progress == 0
