from __future__ import annotations

from typing import AsyncIterator

import pytest

from shadowsync.core.config import get_settings
from shadowsync.domain.models import Base
from shadowsync.persistence.db import SessionFactory, build_engine, build_session_factory
from shadowsync.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path) -> None:
    # Every test gets its own sqlite file and no real outbound traffic or waits.
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'shadowsync.db'}")
    monkeypatch.setenv("SYNC_STAGE_DELAY_MS", "0")
    monkeypatch.setenv("BATCH_BASE_DELAY_MS", "0")
    monkeypatch.setenv("STAGE_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("WEBHOOK_ENABLED", "false")
    monkeypatch.setenv("EMAIL_ENABLED", "false")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory() -> AsyncIterator[SessionFactory]:
    engine = build_engine(get_settings().database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()
