from __future__ import annotations

import copy
from typing import Any

from shadowsync.core.errors import ProviderError
from shadowsync.providers.identity.base import Credentials


class StaticIdentityProvider:
    """In-memory provider for seeding, demos and tests.

    ``error`` is raised from every fetch when set, which lets callers rehearse
    credential or quota failures without a network.
    """

    name = "static"

    def __init__(
        self,
        *,
        users: list[dict[str, Any]] | None = None,
        grants: list[dict[str, Any]] | None = None,
        error: ProviderError | None = None,
        name: str = "static",
    ) -> None:
        self.users = list(users or [])
        self.grants = list(grants or [])
        self.error = error
        self.name = name
        self.calls: list[str] = []

    async def fetch_directory_users(self, credentials: Credentials) -> list[dict[str, Any]]:
        self.calls.append("users")
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.users)

    async def fetch_grant_records(self, credentials: Credentials) -> list[dict[str, Any]]:
        self.calls.append("grants")
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.grants)
