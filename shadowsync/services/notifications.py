from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import time
from typing import Any

import httpx

from shadowsync.core.config import get_settings
from shadowsync.persistence.db import SessionFactory
from shadowsync.persistence.repos import applications as applications_repo
from shadowsync.persistence.repos import sync_runs as sync_runs_repo
from shadowsync.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_TRAILING_INC = re.compile(r"\s*\binc\.?$", re.IGNORECASE)


@dataclass(frozen=True)
class DeliveryResult:
    # Summarize one notification attempt; senders never raise.
    channel: str
    sent: bool
    status_code: int | None
    message: str


def clean_tool_name(name: str) -> str:
    # Downstream tooling splits on commas and matches names without the legal suffix.
    cleaned = name.replace(",", " ")
    cleaned = _TRAILING_INC.sub("", cleaned.strip())
    return " ".join(cleaned.split())


async def _post(
    *,
    channel: str,
    url: str,
    payload: dict[str, Any],
    timeout_s: float,
    headers: dict[str, str] | None = None,
    auth: httpx.Auth | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DeliveryResult:
    start = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
            response = await client.post(url, json=payload, headers=headers, auth=auth)
    except Exception as exc:  # noqa: BLE001 - notification failures are non-fatal
        record_external_call(integration=channel, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
        increment_counter(f"notification_failures_total.{channel}")
        logger.warning("notification_send_failed channel=%s", channel, exc_info=exc)
        return DeliveryResult(channel=channel, sent=False, status_code=None, message=str(exc))

    ok = response.status_code < 400
    record_external_call(integration=channel, latency_ms=(time.monotonic() - start) * 1000.0, success=ok)
    if not ok:
        increment_counter(f"notification_failures_total.{channel}")
        logger.warning("notification_rejected channel=%s status=%s", channel, response.status_code)
        return DeliveryResult(
            channel=channel,
            sent=False,
            status_code=response.status_code,
            message=f"{channel} responded with status {response.status_code}",
        )
    increment_counter(f"notifications_sent_total.{channel}")
    return DeliveryResult(channel=channel, sent=True, status_code=response.status_code, message="delivered")


async def send_webhook(
    payload: dict[str, Any], *, transport: httpx.AsyncBaseTransport | None = None
) -> DeliveryResult:
    settings = get_settings()
    if not settings.webhook_enabled:
        return DeliveryResult(channel="webhook", sent=False, status_code=None, message="Webhook is disabled")
    if not settings.webhook_url:
        return DeliveryResult(channel="webhook", sent=False, status_code=None, message="Webhook is not configured")
    auth = None
    if settings.webhook_username and settings.webhook_password:
        auth = httpx.BasicAuth(settings.webhook_username, settings.webhook_password)
    return await _post(
        channel="webhook",
        url=settings.webhook_url,
        payload=payload,
        timeout_s=settings.webhook_timeout_ms / 1000.0,
        auth=auth,
        transport=transport,
    )


async def send_email(
    address: str, template_id: str | None = None, *, transport: httpx.AsyncBaseTransport | None = None
) -> DeliveryResult:
    settings = get_settings()
    template = template_id or settings.email_template_sync_completed
    if not settings.email_enabled:
        return DeliveryResult(channel="email", sent=False, status_code=None, message="Email is disabled")
    if not settings.email_api_key or not template:
        return DeliveryResult(channel="email", sent=False, status_code=None, message="Email is not configured")
    return await _post(
        channel="email",
        url=settings.email_api_url,
        payload={"transactionalId": template, "email": address},
        timeout_s=settings.email_timeout_ms / 1000.0,
        headers={"Authorization": f"Bearer {settings.email_api_key}"},
        transport=transport,
    )


async def notify_sync_completed(
    session_factory: SessionFactory,
    *,
    organization_id: str,
    run_id: str,
    user_email: str | None,
    skip: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[DeliveryResult]:
    """Announce an organization's first completed import.

    Any earlier COMPLETED run means the organization was already announced, so
    repeat imports send nothing.
    """
    if skip:
        logger.info("notification_skipped run_id=%s reason=requested", run_id)
        return []
    async with session_factory() as session:
        if await sync_runs_repo.has_prior_completed_run(session, organization_id, exclude_run_id=run_id):
            logger.info("notification_skipped run_id=%s reason=not_first_sync", run_id)
            return []
        apps = await applications_repo.list_applications(session, organization_id)

    tool_names = sorted({clean_tool_name(app.name) for app in apps} - {""})
    results = [await send_webhook({"org_id": organization_id, "tool_name": tool_names}, transport=transport)]
    if user_email:
        results.append(await send_email(user_email, transport=transport))
    logger.info(
        "notification_complete run_id=%s sent=%s",
        run_id,
        ",".join(result.channel for result in results if result.sent) or "none",
    )
    return results
