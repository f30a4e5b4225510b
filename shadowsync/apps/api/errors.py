from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shadowsync.core.errors import (
    DatabaseError,
    DependencyTimeoutError,
    IntegrationUnavailableError,
    ProviderAuthError,
    ProviderQuotaError,
    ResourceExhaustedError,
    ShadowSyncError,
    StageFailedError,
    SyncFailedError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_FAILED",
    503: "SERVICE_UNAVAILABLE",
    504: "UPSTREAM_TIMEOUT",
}

# Most specific first; the first matching class decides status and code.
_DOMAIN_ERRORS: tuple[tuple[type[ShadowSyncError], int, str], ...] = (
    (ProviderAuthError, 401, "PROVIDER_AUTH_FAILED"),
    (ProviderQuotaError, 429, "PROVIDER_QUOTA_EXCEEDED"),
    (IntegrationUnavailableError, 503, "INTEGRATION_UNAVAILABLE"),
    (ResourceExhaustedError, 503, "RESOURCES_EXHAUSTED"),
    (DependencyTimeoutError, 504, "DEPENDENCY_TIMEOUT"),
    (StageFailedError, 502, "STAGE_FAILED"),
    (SyncFailedError, 500, "SYNC_FAILED"),
    (DatabaseError, 500, "DATABASE_ERROR"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def error_response(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"error": error}


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=error_response(code=code, message=message, details=details),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def shadowsync_exception_handler(request: Request, exc: ShadowSyncError) -> JSONResponse:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = 500, "INTERNAL_ERROR"
    logger.warning("api_domain_error path=%s code=%s error=%s", request.url.path, code, exc)
    return JSONResponse(content=error_response(code=code, message=str(exc)), status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("api_unhandled_error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(
        content=error_response(code="INTERNAL_ERROR", message="Internal server error"),
        status_code=500,
    )
