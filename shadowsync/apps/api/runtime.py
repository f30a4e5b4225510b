from __future__ import annotations

from dataclasses import dataclass, field

from shadowsync.core.config import get_settings
from shadowsync.persistence.db import SessionFactory, get_session_factory
from shadowsync.providers.identity.base import IdentityProvider
from shadowsync.services.background import BackgroundTaskRunner
from shadowsync.services.resilience import CircuitBreaker
from shadowsync.services.resource_monitor import ProcessSampler, ResourceMonitor
from shadowsync.services.sync.context import StageContext, default_providers
from shadowsync.services.sync.invokers import HttpStageInvoker, LocalStageInvoker, StageInvoker
from shadowsync.services.sync.orchestrator import SyncOrchestrator


@dataclass
class AppRuntime:
    """Everything the API owns for its lifetime; built once per app."""

    session_factory: SessionFactory
    monitor: ResourceMonitor
    background: BackgroundTaskRunner
    stage_context: StageContext
    invoker: StageInvoker
    breakers: dict[str, CircuitBreaker] = field(default_factory=dict)

    def orchestrator(self) -> SyncOrchestrator:
        # Breakers are shared across runs so repeated stage failures accumulate.
        return SyncOrchestrator(
            session_factory=self.session_factory,
            invoker=self.invoker,
            monitor=self.monitor,
            background=self.background,
            breakers=self.breakers,
        )


def build_runtime(
    *,
    session_factory: SessionFactory | None = None,
    monitor: ResourceMonitor | None = None,
    providers: dict[str, IdentityProvider] | None = None,
    invoker: StageInvoker | None = None,
) -> AppRuntime:
    settings = get_settings()
    session_factory = session_factory or get_session_factory()
    monitor = monitor or ResourceMonitor(sampler=ProcessSampler(memory_limit_mb=settings.resource_memory_limit_mb))
    context = StageContext(
        session_factory=session_factory,
        monitor=monitor,
        providers=providers if providers is not None else default_providers(),
    )
    if invoker is None:
        invoker = HttpStageInvoker() if settings.stage_invoker == "http" else LocalStageInvoker(context)
    return AppRuntime(
        session_factory=session_factory,
        monitor=monitor,
        background=BackgroundTaskRunner(),
        stage_context=context,
        invoker=invoker,
    )
