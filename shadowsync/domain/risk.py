from __future__ import annotations

from enum import Enum
from typing import Iterable


UNKNOWN_SCOPE = "unknown_scope"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @classmethod
    def parse(cls, value: str | "RiskLevel" | None) -> "RiskLevel":
        # Stored rows may carry lower-case or missing levels.
        if isinstance(value, RiskLevel):
            return value
        if not value:
            return cls.LOW
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.LOW


_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


def max_risk(*levels: str | RiskLevel | None) -> RiskLevel:
    parsed = [RiskLevel.parse(level) for level in levels]
    if not parsed:
        return RiskLevel.LOW
    return max(parsed, key=lambda level: level.rank)


def escalate(current: str | RiskLevel | None, observed: str | RiskLevel | None) -> RiskLevel:
    # Imports may raise an application's risk but never lower it.
    return max_risk(current, observed)


# Google OAuth scopes granting write or full access to mail, files or the directory.
_GOOGLE_HIGH = (
    "https://mail.google.com/",
    "auth/gmail.modify",
    "auth/gmail.compose",
    "auth/gmail.send",
    "auth/gmail.insert",
    "auth/gmail.settings",
    "auth/drive",
    "auth/admin.directory",
    "auth/cloud-platform",
    "auth/script",
    "auth/calendar",
    "auth/contacts",
    "auth/apps.groups.settings",
    "auth/ediscovery",
)
# Read access to sensitive content.
_GOOGLE_MEDIUM = (
    "auth/gmail.readonly",
    "auth/gmail.metadata",
    "auth/drive.readonly",
    "auth/drive.metadata",
    "auth/drive.file",
    "auth/calendar.readonly",
    "auth/calendar.events.readonly",
    "auth/contacts.readonly",
    "auth/directory.readonly",
    "auth/spreadsheets",
    "auth/documents",
    "auth/presentations",
    "auth/tasks",
)
_GOOGLE_LOW = (
    "openid",
    "email",
    "profile",
    "auth/userinfo.email",
    "auth/userinfo.profile",
    "auth/plus.me",
)

# Microsoft Graph permission fragments, checked as substrings.
_GRAPH_HIGH = (
    "ReadWrite.All",
    "Write.All",
    ".ReadWrite",
    ".Write",
    "FullControl.All",
    "AccessAsUser.All",
    "Directory.ReadWrite",
    "Files.ReadWrite",
    "Mail.ReadWrite",
    "Mail.Send",
    "Group.ReadWrite",
    "User.ReadWrite",
    "Application.ReadWrite",
    "Sites.FullControl",
    "User.Export",
    "User.Invite",
    "User.ManageIdentities",
    "User.EnableDisableAccount",
    "DelegatedPermissionGrant.ReadWrite",
)
_GRAPH_MEDIUM = (
    "Read.All",
    ".Read",
    "Directory.Read",
    "Files.Read",
    "User.Read.All",
    "Mail.Read",
    "AuditLog.Read",
    "Reports.Read",
    "Sites.Read",
)


def _google_risk(scope: str) -> RiskLevel | None:
    if scope in _GOOGLE_LOW or any(scope.endswith(low) for low in _GOOGLE_LOW if low.startswith("auth/")):
        return RiskLevel.LOW
    if ".readonly" in scope or any(fragment in scope for fragment in _GOOGLE_MEDIUM):
        return RiskLevel.MEDIUM
    for fragment in _GOOGLE_HIGH:
        if scope == fragment or scope.endswith(fragment) or f"{fragment}." in scope:
            return RiskLevel.HIGH
    return None


def classify_scope(scope: str) -> RiskLevel:
    scope = scope.strip()
    if not scope or scope == UNKNOWN_SCOPE:
        return RiskLevel.LOW
    if "googleapis.com" in scope or scope.startswith("https://mail.google.com") or scope in _GOOGLE_LOW:
        return _google_risk(scope) or RiskLevel.LOW
    if any(fragment in scope for fragment in _GRAPH_HIGH):
        return RiskLevel.HIGH
    if any(fragment in scope for fragment in _GRAPH_MEDIUM):
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def determine_risk_level(scopes: Iterable[str]) -> RiskLevel:
    level = RiskLevel.LOW
    for scope in scopes:
        level = max_risk(level, classify_scope(scope))
        if level is RiskLevel.HIGH:
            break
    return level
