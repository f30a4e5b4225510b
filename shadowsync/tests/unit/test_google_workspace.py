from __future__ import annotations

import httpx
import pytest

from shadowsync.core.errors import ProviderAuthError, ProviderError, ProviderQuotaError
from shadowsync.providers.identity.base import Credentials
from shadowsync.providers.identity.google_workspace import GoogleWorkspaceProvider


BASE_URL = "https://admin.example.test/admin/directory/v1"
TOKEN_URL = "https://oauth.example.test/token"


def _provider(handler, **kwargs) -> GoogleWorkspaceProvider:  # noqa: ANN001
    return GoogleWorkspaceProvider(
        base_url=BASE_URL,
        token_url=TOKEN_URL,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _directory(request: httpx.Request) -> httpx.Response | None:
    path = request.url.path
    if path.endswith("/users"):
        if request.url.params.get("pageToken") == "p2":
            return httpx.Response(200, json={"users": [{"id": "g-2", "primaryEmail": "grace@acme.test"}]})
        return httpx.Response(
            200, json={"users": [{"id": "g-1", "primaryEmail": "ada@acme.test"}], "nextPageToken": "p2"}
        )
    if path.endswith("/users/g-1/tokens"):
        return httpx.Response(
            200, json={"items": [{"displayText": "Slack", "clientId": "slack", "scopes": ["openid"]}]}
        )
    if path.endswith("/users/g-2/tokens"):
        return httpx.Response(404, json={"error": {"message": "Resource Not Found: userKey"}})
    return None


@pytest.mark.asyncio
async def test_users_are_paginated_with_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _directory(request) or httpx.Response(500)

    users = await _provider(handler).fetch_directory_users(Credentials(access_token="at-1"))

    assert [user["id"] for user in users] == ["g-1", "g-2"]
    assert all(request.headers["Authorization"] == "Bearer at-1" for request in seen)
    assert seen[0].url.params["customer"] == "my_customer"


@pytest.mark.asyncio
async def test_grants_are_annotated_with_user_and_missing_token_lists_skipped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _directory(request) or httpx.Response(500)

    grants = await _provider(handler).fetch_grant_records(Credentials(access_token="at-1"))

    assert grants == [
        {"displayText": "Slack", "clientId": "slack", "scopes": ["openid"], "userKey": "g-1", "userEmail": "ada@acme.test"}
    ]


@pytest.mark.asyncio
async def test_refresh_token_is_exchanged_first() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            seen.append(request.content.decode())
            return httpx.Response(200, json={"access_token": "fresh"})
        assert request.headers["Authorization"] == "Bearer fresh"
        return _directory(request) or httpx.Response(500)

    provider = _provider(handler, client_id="cid", client_secret="secret")
    users = await provider.fetch_directory_users(Credentials(access_token="stale", refresh_token="rt"))

    assert len(users) == 2
    assert "grant_type=refresh_token" in seen[0]


@pytest.mark.asyncio
async def test_rejected_refresh_token_is_auth_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    provider = _provider(handler, client_id="cid", client_secret="secret")
    with pytest.raises(ProviderAuthError):
        await provider.fetch_directory_users(Credentials(access_token="stale", refresh_token="rt"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "body", "error"),
    [
        (401, {"error": {"message": "Invalid Credentials"}}, ProviderAuthError),
        (403, {"error": {"message": "Not Authorized to access this resource/api"}}, ProviderAuthError),
        (403, {"error": {"message": "Quota exceeded for quota metric"}}, ProviderQuotaError),
        (429, {"error": {"message": "Too many requests"}}, ProviderQuotaError),
        (500, {"error": {"message": "Backend Error"}}, ProviderError),
    ],
)
async def test_error_statuses_map_to_provider_errors(status: int, body: dict, error: type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body)

    with pytest.raises(error) as excinfo:
        await _provider(handler).fetch_directory_users(Credentials(access_token="at-1"))
    if error is ProviderError:
        assert not isinstance(excinfo.value, (ProviderAuthError, ProviderQuotaError))


@pytest.mark.asyncio
async def test_transport_failure_is_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("dns failure", request=request)

    with pytest.raises(ProviderError, match="users.list request failed"):
        await _provider(handler).fetch_directory_users(Credentials(access_token="at-1"))
