from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from shadowsync.core.config import get_settings
from shadowsync.core.errors import ProviderError
from shadowsync.persistence.db import SessionFactory
from shadowsync.persistence.repos import sync_runs as sync_runs_repo
from shadowsync.providers.identity.base import IdentityProvider
from shadowsync.providers.identity.google_workspace import GoogleWorkspaceProvider
from shadowsync.providers.identity.microsoft_entra import MicrosoftEntraProvider
from shadowsync.services.batching import AdaptiveBatchProcessor
from shadowsync.services.resource_monitor import ResourceMonitor


@dataclass(frozen=True)
class UserPollPolicy:
    max_attempts: int
    initial_s: float
    max_s: float


def default_user_poll_policy() -> UserPollPolicy:
    settings = get_settings()
    return UserPollPolicy(
        max_attempts=settings.user_poll_max_attempts,
        initial_s=settings.user_poll_initial_s,
        max_s=settings.user_poll_max_s,
    )


def default_providers() -> dict[str, IdentityProvider]:
    return {"google": GoogleWorkspaceProvider(), "microsoft": MicrosoftEntraProvider()}


@dataclass
class StageContext:
    """Collaborators shared by every stage of a run.

    Built once by the owner of the ResourceMonitor (API lifespan or a script)
    and passed down explicitly.
    """

    session_factory: SessionFactory
    monitor: ResourceMonitor
    providers: dict[str, IdentityProvider] = field(default_factory=default_providers)
    batch: AdaptiveBatchProcessor = field(default_factory=AdaptiveBatchProcessor)
    user_poll: UserPollPolicy = field(default_factory=default_user_poll_policy)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def provider_for(self, name: str) -> IdentityProvider:
        provider = self.providers.get(name)
        if provider is None:
            raise ProviderError(f"No identity provider configured for '{name}'")
        return provider

    async def report_progress(self, run_id: str, progress: int, message: str) -> None:
        async with self.session_factory() as session:
            await sync_runs_repo.update_progress(session, run_id, progress=progress, message=message)
            await session.commit()

    async def report_failure(self, run_id: str, message: str) -> bool:
        async with self.session_factory() as session:
            changed = await sync_runs_repo.mark_failed(session, run_id, message=message)
            await session.commit()
        return changed
