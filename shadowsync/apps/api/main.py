from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator, Callable
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from shadowsync.apps.api.errors import (
    http_exception_handler,
    shadowsync_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from shadowsync.apps.api.routes.applications import router as applications_router
from shadowsync.apps.api.routes.health import router as health_router
from shadowsync.apps.api.routes.sync import router as sync_router
from shadowsync.apps.api.runtime import AppRuntime, build_runtime
from shadowsync.core.config import get_settings
from shadowsync.core.errors import ShadowSyncError
from shadowsync.core.logging import configure_logging
from shadowsync.persistence.db import dispose_engine


logger = logging.getLogger(__name__)

API_VERSION = "v1"
_SHUTDOWN_DRAIN_S = 30.0


def create_app(runtime: AppRuntime | None = None, *, runtime_factory: Callable[[], AppRuntime] | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "runtime", None) is None
        if owned:
            app.state.runtime = (runtime_factory or build_runtime)()
        current: AppRuntime = app.state.runtime
        current.monitor.start(settings.resource_sample_interval_s)
        logger.info("api_started monitor_interval_s=%s", settings.resource_sample_interval_s)
        try:
            yield
        finally:
            current.monitor.stop()
            await current.background.close(_SHUTDOWN_DRAIN_S)
            if owned:
                await dispose_engine()
            logger.info("api_stopped")

    app = FastAPI(title=f"{settings.app_name} API", lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "api_request method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ShadowSyncError, shadowsync_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(sync_router, prefix=f"/{API_VERSION}")
    app.include_router(applications_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
