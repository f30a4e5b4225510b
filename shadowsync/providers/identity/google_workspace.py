from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from shadowsync.core.config import get_settings
from shadowsync.core.errors import ProviderAuthError, ProviderError, ProviderQuotaError
from shadowsync.providers.identity.base import Credentials
from shadowsync.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_QUOTA_MARKERS = ("quota", "rate limit", "ratelimit", "userratelimitexceeded")


def _raise_for_status(response: httpx.Response, *, operation: str) -> None:
    # Map Google error responses onto the provider error taxonomy.
    if response.status_code < 400:
        return
    body = response.text[:500]
    if response.status_code in {401, 403} and not any(marker in body.lower() for marker in _QUOTA_MARKERS):
        raise ProviderAuthError(f"{operation} rejected credentials (status {response.status_code})")
    if response.status_code == 429 or any(marker in body.lower() for marker in _QUOTA_MARKERS):
        raise ProviderQuotaError(f"{operation} quota exceeded (status {response.status_code})")
    raise ProviderError(f"{operation} failed with status {response.status_code}: {body}")


class GoogleWorkspaceProvider:
    """Admin SDK directory and token listing for one Google Workspace customer."""

    name = "google"

    def __init__(
        self,
        *,
        base_url: str | None = None,
        token_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.google_admin_base_url).rstrip("/")
        self._token_url = token_url or settings.google_token_url
        self._client_id = client_id or settings.google_client_id
        self._client_secret = client_secret or settings.google_client_secret
        self._timeout_s = timeout_s if timeout_s is not None else settings.ext_call_timeout_ms / 1000.0
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)

    async def _access_token(self, client: httpx.AsyncClient, credentials: Credentials) -> str:
        # Refresh when possible so long imports do not outlive a short-lived access token.
        if not (credentials.refresh_token and self._client_id and self._client_secret and self._token_url):
            return credentials.access_token
        start = time.monotonic()
        try:
            response = await client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as exc:
            record_external_call(
                integration="google.oauth", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise ProviderError(f"token refresh failed: {exc}") from exc
        record_external_call(
            integration="google.oauth",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 400,
        )
        if response.status_code in {400, 401}:
            raise ProviderAuthError("Google refresh token was rejected")
        _raise_for_status(response, operation="token refresh")
        token = response.json().get("access_token")
        if not token:
            raise ProviderAuthError("Google token endpoint returned no access token")
        return str(token)

    async def _get(
        self, client: httpx.AsyncClient, path: str, *, token: str, params: dict[str, Any], operation: str
    ) -> httpx.Response:
        start = time.monotonic()
        try:
            response = await client.get(
                f"{self._base_url}{path}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            record_external_call(
                integration="google.admin", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise ProviderError(f"{operation} request failed: {exc}") from exc
        record_external_call(
            integration="google.admin",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 500,
        )
        return response

    async def _list_users(self, client: httpx.AsyncClient, token: str) -> list[dict[str, Any]]:
        users: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"customer": "my_customer", "maxResults": 500, "orderBy": "email"}
            if page_token:
                params["pageToken"] = page_token
            response = await self._get(client, "/users", token=token, params=params, operation="users.list")
            _raise_for_status(response, operation="users.list")
            body = response.json()
            users.extend(body.get("users") or [])
            page_token = body.get("nextPageToken")
            if not page_token:
                return users

    async def fetch_directory_users(self, credentials: Credentials) -> list[dict[str, Any]]:
        async with self._client() as client:
            token = await self._access_token(client, credentials)
            users = await self._list_users(client, token)
        logger.info("google_users_fetched count=%s", len(users))
        return users

    async def _list_tokens(self, client: httpx.AsyncClient, token: str, user: dict[str, Any]) -> list[dict[str, Any]]:
        user_key = user.get("id") or user.get("primaryEmail")
        email = user.get("primaryEmail")
        if not user_key:
            return []
        records: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": 100}
            if page_token:
                params["pageToken"] = page_token
            response = await self._get(
                client, f"/users/{user_key}/tokens", token=token, params=params, operation="tokens.list"
            )
            if response.status_code == 404:
                # Suspended or deleted users have no token collection.
                return records
            _raise_for_status(response, operation="tokens.list")
            body = response.json()
            for item in body.get("items") or []:
                records.append({**item, "userKey": item.get("userKey") or user_key, "userEmail": email})
            page_token = body.get("nextPageToken")
            if not page_token:
                return records

    async def fetch_grant_records(self, credentials: Credentials) -> list[dict[str, Any]]:
        async with self._client() as client:
            token = await self._access_token(client, credentials)
            users = await self._list_users(client, token)
            records: list[dict[str, Any]] = []
            for user in users:
                records.extend(await self._list_tokens(client, token, user))
        logger.info("google_tokens_fetched users=%s tokens=%s", len(users), len(records))
        return records
