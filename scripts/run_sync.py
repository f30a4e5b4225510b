from __future__ import annotations

import argparse
import asyncio
import sys

from shadowsync.apps.api.runtime import build_runtime
from shadowsync.core.errors import SyncFailedError
from shadowsync.core.logging import configure_logging
from shadowsync.persistence.db import dispose_engine
from shadowsync.persistence.repos.organizations import ensure_organization
from shadowsync.providers.identity.base import Credentials
from shadowsync.services.sync.models import StageRequest
from shadowsync.services.sync.orchestrator import start_sync


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one workspace import in this process.")
    parser.add_argument("--organization", required=True, help="Organization id to import into.")
    parser.add_argument("--user-email", default=None, help="Email of the user who requested the import.")
    parser.add_argument("--provider", default="google")
    parser.add_argument("--access-token", required=True)
    parser.add_argument("--refresh-token", default=None)
    parser.add_argument("--skip-notifications", action="store_true", help="Never send webhook or email.")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    runtime.monitor.start()
    try:
        async with runtime.session_factory() as session:
            await ensure_organization(session, args.organization, provider=args.provider)
            await session.commit()
        run_id = await start_sync(
            runtime.session_factory,
            organization_id=args.organization,
            user_email=args.user_email,
            provider=args.provider,
        )
        request = StageRequest(
            organization_id=args.organization,
            run_id=run_id,
            provider=args.provider,
            credentials=Credentials(access_token=args.access_token, refresh_token=args.refresh_token),
            skip_notifications=args.skip_notifications,
        )
        try:
            report = await runtime.orchestrator().run(request)
        except SyncFailedError as exc:
            print(f"run_id={run_id} status=FAILED message={exc}")
            return 1
        print(f"run_id={run_id} status=COMPLETED strategy={report.strategy} fell_back={report.fell_back}")
        for stage in report.stages:
            print(f"stage={stage.stage} message={stage.message}")
        return 0
    finally:
        runtime.monitor.stop()
        # Let categorization and notifications finish before the loop closes.
        await runtime.background.close(60.0)
        await dispose_engine()


if __name__ == "__main__":
    configure_logging()
    sys.exit(asyncio.run(run(_parse_args())))
