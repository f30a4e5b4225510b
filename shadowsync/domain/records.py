"""Boundary types for raw identity-provider records.

Providers return loosely shaped dictionaries; scopes in particular may appear as
a list, a space-delimited string, nested permission objects or one of several
provider-specific fields. Records are normalized here once, before any risk or
merge logic sees them.
"""
from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from shadowsync.domain.risk import UNKNOWN_SCOPE
from shadowsync.domain.state import UNKNOWN_APP_NAME


_WHITESPACE = re.compile(r"\s+")


class ScopeEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    scope: str | None = None
    value: str | None = None


def _split(text: str | None) -> list[str]:
    if not text:
        return []
    return [part for part in _WHITESPACE.split(text.strip()) if part]


def _as_entries(raw: Any) -> list[ScopeEntry]:
    if not isinstance(raw, list):
        return []
    entries: list[ScopeEntry] = []
    for item in raw:
        if isinstance(item, dict):
            entries.append(ScopeEntry.model_validate(item))
        elif isinstance(item, str) and item:
            entries.append(ScopeEntry(scope=item))
    return entries


def _as_strings(raw: Any) -> list[str]:
    if isinstance(raw, str):
        return _split(raw)
    if isinstance(raw, list):
        return [str(item) for item in raw if isinstance(item, str) and item]
    return []


def _as_text(raw: Any) -> str | None:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        return " ".join(str(item) for item in raw if isinstance(item, str))
    return None


class GrantRecord(BaseModel):
    """One OAuth grant with every scope-bearing field made explicit."""

    model_config = ConfigDict(extra="ignore")

    subject_user_key: str | None = None
    subject_email: str | None = None
    client_display_name: str = UNKNOWN_APP_NAME
    client_id: str | None = None
    scopes: list[str] = Field(default_factory=list)
    scope: str | None = None
    scope_data: list[ScopeEntry] = Field(default_factory=list)
    permissions: list[ScopeEntry] = Field(default_factory=list)
    # Alternate provider fields; only URL-shaped values count as scopes.
    scope_string: str | None = None
    oauth_scopes: str | None = None
    access_scopes: str | None = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "GrantRecord":
        if not isinstance(raw, dict):
            raise ValueError("grant record must be a mapping")
        display = raw.get("displayText") or raw.get("client_display_name") or raw.get("appName")
        return cls(
            subject_user_key=raw.get("userKey") or raw.get("subject_user_key"),
            subject_email=raw.get("userEmail") or raw.get("subject_email"),
            client_display_name=str(display).strip() if display else UNKNOWN_APP_NAME,
            client_id=raw.get("clientId") or raw.get("client_id"),
            scopes=_as_strings(raw.get("scopes")),
            scope=_as_text(raw.get("scope")),
            scope_data=_as_entries(raw.get("scopeData") or raw.get("scope_data")),
            permissions=_as_entries(raw.get("permissions")),
            scope_string=_as_text(raw.get("scope_string")),
            oauth_scopes=_as_text(raw.get("oauth_scopes")),
            access_scopes=_as_text(raw.get("accessScopes") or raw.get("access_scopes")),
        )

    def normalized_scopes(self) -> set[str]:
        found: set[str] = set(scope for scope in self.scopes if scope)
        for entry in self.scope_data:
            if entry.scope:
                found.add(entry.scope)
            if entry.value:
                found.add(entry.value)
        found.update(_split(self.scope))
        for entry in self.permissions:
            if entry.scope:
                found.add(entry.scope)
            elif entry.value:
                found.add(entry.value)
        for alternate in (self.scope_string, self.oauth_scopes, self.access_scopes):
            if alternate and "://" in alternate:
                found.update(_split(alternate))
        if not found:
            # Never drop a grant from permission counts because its scopes are hidden.
            found.add(UNKNOWN_SCOPE)
        return found


class DirectoryUserRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    provider_user_id: str
    email: str
    name: str
    role: str = "User"
    department: str | None = None

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "DirectoryUserRecord":
        if not isinstance(raw, dict):
            raise ValueError("directory user must be a mapping")
        email = raw.get("primaryEmail") or raw.get("email") or raw.get("mail") or raw.get("userPrincipalName")
        if not email:
            raise ValueError("directory user has no email")
        email = str(email).strip()
        name_field = raw.get("name")
        if isinstance(name_field, dict):
            given = name_field.get("givenName") or ""
            family = name_field.get("familyName") or ""
            full_name = name_field.get("fullName") or f"{given} {family}".strip() or email
        else:
            full_name = raw.get("displayName") or (name_field if isinstance(name_field, str) else None) or email
        org_unit = raw.get("orgUnitPath")
        department = None
        if isinstance(org_unit, str):
            segments = [segment for segment in org_unit.split("/") if segment]
            department = segments[-1] if segments else None
        department = department or raw.get("department")
        return cls(
            provider_user_id=str(raw.get("id") or email),
            email=email,
            name=str(full_name),
            role="Admin" if raw.get("isAdmin") else "User",
            department=department,
        )
