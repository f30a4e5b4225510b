from __future__ import annotations

import logging

from shadowsync.domain.state import UNCATEGORIZED_VALUES, StageName
from shadowsync.persistence.repos import applications as applications_repo
from shadowsync.services.sync.context import StageContext
from shadowsync.services.sync.models import StageRequest, StageResult


logger = logging.getLogger(__name__)

# Ordered: the first category with a matching keyword wins.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("AI & Machine Learning", ("openai", "chatgpt", "claude", "gemini", "copilot", "otter", "grammarly", " ai")),
    ("Marketing", ("mailchimp", "marketo", "hootsuite", "buffer", "semrush", "canva", "typeform")),
    ("Communication", ("slack", "zoom", "teams", "meet", "webex", "discord", "loom", "mail", "calendly")),
    ("Developer Tools", ("github", "gitlab", "bitbucket", "jira", "vercel", "netlify", "sentry", "postman", "jetbrains")),
    ("Security", ("okta", "1password", "lastpass", "duo", "crowdstrike", "auth0", "vanta", "bitwarden")),
    ("CRM & Sales", ("salesforce", "hubspot", "pipedrive", "zoho", "apollo", "outreach", "gong")),
    ("HR & People", ("workday", "bamboohr", "gusto", "rippling", "lattice", "greenhouse", "lever", "deel")),
    ("Finance", ("quickbooks", "xero", "expensify", "brex", "ramp", "stripe", "bill.com", "netsuite")),
    ("Design", ("figma", "sketch", "adobe", "miro", "invision", "framer", "lucid")),
    ("Analytics", ("tableau", "looker", "mixpanel", "amplitude", "segment", "analytics", "metabase")),
    ("File Storage", ("dropbox", "box", "drive", "onedrive", "wetransfer", "egnyte")),
    ("Productivity", ("notion", "asana", "trello", "monday", "clickup", "airtable", "evernote", "todoist", "docusign")),
)


def categorize_name(name: str) -> str | None:
    lowered = f" {name.lower()}"
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return None


def needs_category(category: str | None) -> bool:
    return (category or "").strip().lower() in UNCATEGORIZED_VALUES


async def run_categorize_stage(request: StageRequest, context: StageContext) -> StageResult:
    # Fire-and-forget stage: it never writes the run's status or progress.
    categorized = 0
    async with context.session_factory() as session:
        apps = await applications_repo.list_applications(session, request.organization_id)
        pending = [app for app in apps if needs_category(app.category)]
        for app in pending:
            category = categorize_name(app.name)
            if category is not None:
                app.category = category
                categorized += 1
        await session.commit()
    logger.info(
        "sync_categorize_complete run_id=%s pending=%s categorized=%s",
        request.run_id,
        len(pending),
        categorized,
    )
    return StageResult(
        stage=StageName.CATEGORIZE.value,
        ok=True,
        message=f"Categorized {categorized} of {len(pending)} applications",
        payload={"pending": len(pending), "categorized": categorized},
    )
