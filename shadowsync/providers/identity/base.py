from __future__ import annotations

from typing import Any, Protocol

from pydantic import BaseModel


class Credentials(BaseModel):
    # Access material for one organization's workspace; never persisted on the run.
    access_token: str
    refresh_token: str | None = None
    scope: str | None = None


class IdentityProvider(Protocol):
    """Workspace directory and OAuth-grant source.

    Implementations raise ``ProviderAuthError`` or ``ProviderQuotaError`` and do
    not retry; retry policy belongs to the stage invoker.
    """

    name: str

    async def fetch_directory_users(self, credentials: Credentials) -> list[dict[str, Any]]:
        ...

    async def fetch_grant_records(self, credentials: Credentials) -> list[dict[str, Any]]:
        ...
