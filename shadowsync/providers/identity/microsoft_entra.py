"""Microsoft Graph directory and grant listing for one Entra ID tenant.

Graph has no per-user token collection like the Google Admin SDK. Delegated
consents (``oauth2PermissionGrants``) and app role assignments are joined with
the tenant's service principals instead, and folded into one grant record per
user and application carrying the same raw keys the Google listing produces.
"""
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

_QUOTA_MARKERS = ("toomanyrequests", "throttl", "activitylimitreached")
_GRAPH_SCOPE = "https://graph.microsoft.com/.default offline_access"
_USER_FIELDS = "id,mail,displayName,userPrincipalName,department,jobTitle"
_SP_FIELDS = "id,appId,displayName,appRoles"


def _raise_for_status(response: httpx.Response, *, operation: str) -> None:
    if response.status_code < 400:
        return
    body = response.text[:500]
    throttled = any(marker in body.lower() for marker in _QUOTA_MARKERS)
    if response.status_code in {401, 403} and not throttled:
        raise ProviderAuthError(f"{operation} rejected credentials (status {response.status_code})")
    if response.status_code == 429 or throttled:
        raise ProviderQuotaError(f"{operation} throttled (status {response.status_code})")
    raise ProviderError(f"{operation} failed with status {response.status_code}: {body}")


def _role_label(principal: dict[str, Any] | None, role_id: str | None) -> str | None:
    if principal is None or not role_id:
        return None
    for role in principal.get("appRoles") or []:
        if role.get("id") == role_id:
            return role.get("value") or role.get("displayName")
    return None


class MicrosoftEntraProvider:
    """Users, delegated consents and app role assignments from Microsoft Graph."""

    name = "microsoft"

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
        self._base_url = (base_url or settings.microsoft_graph_base_url).rstrip("/")
        self._token_url = token_url or settings.microsoft_token_url
        self._client_id = client_id or settings.microsoft_client_id
        self._client_secret = client_secret or settings.microsoft_client_secret
        self._timeout_s = timeout_s if timeout_s is not None else settings.ext_call_timeout_ms / 1000.0
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)

    async def _access_token(self, client: httpx.AsyncClient, credentials: Credentials) -> str:
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
                    "scope": _GRAPH_SCOPE,
                },
            )
        except httpx.HTTPError as exc:
            record_external_call(
                integration="microsoft.oauth", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise ProviderError(f"token refresh failed: {exc}") from exc
        record_external_call(
            integration="microsoft.oauth",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 400,
        )
        if response.status_code in {400, 401}:
            raise ProviderAuthError("Microsoft refresh token was rejected")
        _raise_for_status(response, operation="token refresh")
        token = response.json().get("access_token")
        if not token:
            raise ProviderAuthError("Microsoft token endpoint returned no access token")
        return str(token)

    async def _collect(
        self, client: httpx.AsyncClient, path: str, *, token: str, params: dict[str, Any], operation: str
    ) -> list[dict[str, Any]]:
        # Graph pages through an absolute @odata.nextLink that already carries the query.
        items: list[dict[str, Any]] = []
        url: str | None = f"{self._base_url}{path}"
        query: dict[str, Any] | None = params
        while url:
            start = time.monotonic()
            try:
                response = await client.get(url, params=query, headers={"Authorization": f"Bearer {token}"})
            except httpx.HTTPError as exc:
                record_external_call(
                    integration="microsoft.graph", latency_ms=(time.monotonic() - start) * 1000.0, success=False
                )
                raise ProviderError(f"{operation} request failed: {exc}") from exc
            record_external_call(
                integration="microsoft.graph",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=response.status_code < 500,
            )
            _raise_for_status(response, operation=operation)
            body = response.json()
            items.extend(body.get("value") or [])
            url = body.get("@odata.nextLink")
            query = None
        return items

    async def _list_users(self, client: httpx.AsyncClient, token: str, *, expand_roles: bool = False) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"$select": _USER_FIELDS, "$top": 999}
        if expand_roles:
            params["$expand"] = "appRoleAssignments"
        users = await self._collect(client, "/users", token=token, params=params, operation="users.list")
        # Only accounts with a mailbox map to directory users.
        return [user for user in users if user.get("mail")]

    async def fetch_directory_users(self, credentials: Credentials) -> list[dict[str, Any]]:
        async with self._client() as client:
            token = await self._access_token(client, credentials)
            users = await self._list_users(client, token)
        logger.info("microsoft_users_fetched count=%s", len(users))
        return users

    async def fetch_grant_records(self, credentials: Credentials) -> list[dict[str, Any]]:
        async with self._client() as client:
            token = await self._access_token(client, credentials)
            users = await self._list_users(client, token, expand_roles=True)
            principals = await self._collect(
                client,
                "/servicePrincipals",
                token=token,
                params={"$select": _SP_FIELDS, "$top": 999},
                operation="servicePrincipals.list",
            )
            consents = await self._collect(
                client,
                "/oauth2PermissionGrants",
                token=token,
                params={"$top": 999},
                operation="oauth2PermissionGrants.list",
            )

        # Grants reference service principals by object id; older payloads used the appId.
        by_reference: dict[str, dict[str, Any]] = {}
        for principal in principals:
            if principal.get("appId"):
                by_reference.setdefault(principal["appId"], principal)
            if principal.get("id"):
                by_reference[principal["id"]] = principal
        emails = {user["id"]: user.get("mail") for user in users if user.get("id")}

        grouped: dict[str, dict[str, Any]] = {}

        def _add(user_id: str, principal: dict[str, Any], scopes: list[str]) -> None:
            app_id = principal.get("appId") or principal.get("id")
            record = grouped.get(f"{user_id}:{app_id}")
            if record is None:
                record = {
                    "userKey": user_id,
                    "userEmail": emails.get(user_id),
                    "displayText": principal.get("displayName") or app_id,
                    "clientId": app_id,
                    "scopes": [],
                }
                grouped[f"{user_id}:{app_id}"] = record
            for scope in scopes:
                if scope and scope not in record["scopes"]:
                    record["scopes"].append(scope)

        for consent in consents:
            user_id = consent.get("principalId")
            principal = by_reference.get(consent.get("clientId") or "")
            if not user_id or principal is None:
                # Tenant-wide consents name no user.
                continue
            _add(user_id, principal, (consent.get("scope") or "").split())

        for user in users:
            for assignment in user.get("appRoleAssignments") or []:
                principal = by_reference.get(assignment.get("resourceId") or "")
                if principal is None:
                    continue
                label = _role_label(principal, assignment.get("appRoleId"))
                _add(user["id"], principal, [f"AppRole: {label}"] if label else [])

        records = list(grouped.values())
        logger.info(
            "microsoft_grants_fetched users=%s service_principals=%s grants=%s",
            len(users),
            len(principals),
            len(records),
        )
        return records
