"""Post-hoc reconciliation of duplicate applications and relation rows.

Both passes are idempotent: a second run over their own output changes
nothing. They run inside the caller's session and flush but do not commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from shadowsync.domain.models import Application, UserApplication, scope_list
from shadowsync.domain.risk import RiskLevel, determine_risk_level, max_risk
from shadowsync.domain.state import DEFAULT_MANAGEMENT_STATUS, UNCATEGORIZED_VALUES
from shadowsync.persistence.repos import applications as applications_repo
from shadowsync.persistence.repos import relations as relations_repo


logger = logging.getLogger(__name__)


@dataclass
class MergeReport:
    organization_id: str
    groups_merged: int = 0
    applications_deleted: int = 0
    relations_retargeted: int = 0
    relations_merged: int = 0
    duplicate_relations_collapsed: int = 0
    orphans_deleted: int = 0
    merged_names: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.groups_merged
            or self.relations_retargeted
            or self.relations_merged
            or self.duplicate_relations_collapsed
            or self.orphans_deleted
        )


@dataclass
class RiskRecomputeReport:
    organization_id: str
    applications_checked: int = 0
    applications_updated: int = 0
    applications_skipped: int = 0
    by_level: dict[str, int] = field(default_factory=dict)


def _sort_key(app: Application) -> tuple:
    return (app.created_at, app.id)


def _join_ids(values: list[str | None]) -> str | None:
    ordered: list[str] = []
    for value in values:
        for part in (value or "").split(","):
            part = part.strip()
            if part and part not in ordered:
                ordered.append(part)
    return ",".join(ordered) or None


def _merge_group(primary: Application, others: list[Application]) -> None:
    group = [primary, *others]
    scopes: set[str] = set()
    for app in group:
        scopes.update(app.all_scopes or [])
    primary.all_scopes = scope_list(scopes)
    primary.risk_level = max_risk(*(app.risk_level for app in group)).value
    primary.total_permissions = max([len(scopes), *(app.total_permissions or 0 for app in group)])
    primary.provider_app_ids = _join_ids([app.provider_app_ids for app in group])
    # First non-default status in creation order; reviewed apps keep their decision.
    for app in group:
        if app.management_status and app.management_status != DEFAULT_MANAGEMENT_STATUS:
            primary.management_status = app.management_status
            break
    for app in group:
        if app.category and app.category.strip().lower() not in UNCATEGORIZED_VALUES:
            primary.category = app.category
            break
    primary.user_count = max(app.user_count or 0 for app in group)


def _collapse_relations(relations: list[UserApplication]) -> list[str]:
    # Keep the earliest row per (user, application) and fold later rows' scopes into it.
    keep: dict[tuple[str, str], UserApplication] = {}
    doomed: list[str] = []
    for relation in sorted(relations, key=lambda row: (row.created_at, row.id)):
        key = (relation.user_id, relation.application_id)
        survivor = keep.get(key)
        if survivor is None:
            keep[key] = relation
            continue
        merged = scope_list(set(survivor.scopes or []) | set(relation.scopes or []))
        if merged != scope_list(survivor.scopes):
            survivor.scopes = merged
        doomed.append(relation.id)
    return doomed


async def merge_duplicate_applications(session: AsyncSession, organization_id: str) -> MergeReport:
    report = MergeReport(organization_id=organization_id)
    apps = await applications_repo.list_applications(session, organization_id)
    groups: dict[str, list[Application]] = {}
    for app in apps:
        groups.setdefault(app.name, []).append(app)

    to_delete: list[str] = []
    retarget: dict[str, str] = {}
    for name, group in groups.items():
        if len(group) < 2:
            continue
        group.sort(key=_sort_key)
        primary, others = group[0], group[1:]
        _merge_group(primary, others)
        for other in others:
            retarget[other.id] = primary.id
            to_delete.append(other.id)
        report.groups_merged += 1
        report.merged_names.append(name)
        logger.info("dedup_group_merged org=%s name=%s rows=%s primary=%s", organization_id, name, len(group), primary.id)

    relations = await relations_repo.list_for_applications(session, [app.id for app in apps])
    existing_pairs = {
        (relation.user_id, relation.application_id) for relation in relations if relation.application_id not in retarget
    }
    for relation in relations:
        target = retarget.get(relation.application_id)
        if target is None:
            continue
        if (relation.user_id, target) in existing_pairs:
            report.relations_merged += 1
        else:
            existing_pairs.add((relation.user_id, target))
            report.relations_retargeted += 1
        relation.application_id = target

    doomed = _collapse_relations(relations)
    report.duplicate_relations_collapsed = max(0, len(doomed) - report.relations_merged)
    await session.flush()
    await relations_repo.delete_relations(session, doomed)
    report.applications_deleted = await applications_repo.delete_applications(session, to_delete)
    report.orphans_deleted = await relations_repo.delete_orphans(session, organization_id)
    await session.flush()
    logger.info(
        "dedup_merge_complete org=%s groups=%s deleted=%s retargeted=%s merged=%s collapsed=%s orphans=%s",
        organization_id,
        report.groups_merged,
        report.applications_deleted,
        report.relations_retargeted,
        report.relations_merged,
        report.duplicate_relations_collapsed,
        report.orphans_deleted,
    )
    return report


async def recompute_application_risk(session: AsyncSession, organization_id: str) -> RiskRecomputeReport:
    """Derive risk and permission counts from the scopes users actually granted.

    Unlike an import this may lower risk; applications without any relation
    rows keep their declared values.
    """
    report = RiskRecomputeReport(organization_id=organization_id, by_level={level.value: 0 for level in RiskLevel})
    apps = await applications_repo.list_applications(session, organization_id)
    relations = await relations_repo.list_for_applications(session, [app.id for app in apps])
    observed: dict[str, set[str]] = {}
    users: dict[str, set[str]] = {}
    for relation in relations:
        observed.setdefault(relation.application_id, set()).update(relation.scopes or [])
        users.setdefault(relation.application_id, set()).add(relation.user_id)

    for app in apps:
        report.applications_checked += 1
        scopes = observed.get(app.id)
        if not scopes:
            report.applications_skipped += 1
            report.by_level[RiskLevel.parse(app.risk_level).value] += 1
            continue
        level = determine_risk_level(scopes).value
        total = len(scopes)
        user_count = len(users.get(app.id, ()))
        if app.risk_level != level or app.total_permissions != total or app.user_count != user_count:
            app.risk_level = level
            app.total_permissions = total
            app.user_count = user_count
            report.applications_updated += 1
        report.by_level[level] += 1
    await session.flush()
    logger.info(
        "dedup_risk_recomputed org=%s checked=%s updated=%s skipped=%s",
        organization_id,
        report.applications_checked,
        report.applications_updated,
        report.applications_skipped,
    )
    return report
