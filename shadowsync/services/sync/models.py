from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from shadowsync.providers.identity.base import Credentials


class RelationCandidate(BaseModel):
    user_id: str
    application_id: str
    scopes: list[str] = Field(default_factory=list)


class StageRequest(BaseModel):
    """Input accepted by every stage, whether invoked in-process or over HTTP."""

    organization_id: str
    run_id: str
    provider: str = "google"
    credentials: Credentials
    # provider user id and lower-cased email -> directory_users.id
    identity_map: dict[str, str] | None = None
    relations: list[RelationCandidate] | None = None
    # Set when a users stage for the same run is still in flight; wait for it to finish.
    await_users_stage: bool = False
    # Stages running under the orchestrator leave FAILED to it.
    report_failure: bool = True
    skip_notifications: bool = False


class StageResult(BaseModel):
    stage: str
    ok: bool
    message: str
    retryable: bool = False
    payload: dict[str, Any] = Field(default_factory=dict)
