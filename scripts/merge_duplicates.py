from __future__ import annotations

import argparse
import asyncio

from shadowsync.core.logging import configure_logging
from shadowsync.persistence.db import dispose_engine, get_session
from shadowsync.services.dedup import merge_duplicate_applications, recompute_application_risk


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Collapse duplicate applications for an organization.")
    parser.add_argument("--organization", required=True)
    parser.add_argument(
        "--fix-risk",
        action="store_true",
        help="Also recompute risk levels from the scopes users actually granted.",
    )
    return parser.parse_args()


async def merge(args: argparse.Namespace) -> None:
    try:
        async with get_session() as session:
            report = await merge_duplicate_applications(session, args.organization)
            await session.commit()
            print(
                f"groups_merged={report.groups_merged} applications_deleted={report.applications_deleted} "
                f"relations_retargeted={report.relations_retargeted} relations_merged={report.relations_merged} "
                f"orphans_deleted={report.orphans_deleted}"
            )
            if args.fix_risk:
                risk = await recompute_application_risk(session, args.organization)
                await session.commit()
                print(f"risk_updated={risk.applications_updated} by_level={risk.by_level}")
    finally:
        await dispose_engine()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(merge(_parse_args()))
