from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Scope sets live in JSON arrays; JSONB on Postgres, plain JSON elsewhere.
JsonList = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    # Client-side timestamps keep sub-second ordering for merge primaries.
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Workspace provider the organization imports from ("google", "microsoft").
    provider: Mapped[str] = mapped_column(String, default="google")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class SyncRun(Base):
    __tablename__ = "sync_runs"
    __table_args__ = (Index("ix_sync_runs_org_status", "organization_id", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, default="PENDING")
    # 0-100, only ever raised while the run is active.
    progress: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider: Mapped[str] = mapped_column(String, default="google")
    user_email: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class DirectoryUser(Base):
    __tablename__ = "directory_users"
    __table_args__ = (Index("ix_directory_users_org_email", "organization_id", "email"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    # Provider-side identifier; falls back to the email when the provider omits it.
    provider_user_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str] = mapped_column(String)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, default="User")
    department: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class Application(Base):
    __tablename__ = "applications"
    # Name is the natural key per organization, but duplicates may exist until merged.
    __table_args__ = (Index("ix_applications_org_name", "organization_id", "name"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    category: Mapped[str | None] = mapped_column(String, nullable=True, default="Unknown")
    risk_level: Mapped[str] = mapped_column(String, default="LOW")
    management_status: Mapped[str] = mapped_column(String, default="Newly discovered")
    total_permissions: Mapped[int] = mapped_column(Integer, default=0)
    # Distinct users holding a grant, refreshed by the relations stage.
    user_count: Mapped[int] = mapped_column(Integer, default=0)
    all_scopes: Mapped[list[str]] = mapped_column(JsonList, default=list)
    # Comma-joined OAuth client ids observed for this application.
    provider_app_ids: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class UserApplication(Base):
    __tablename__ = "user_applications"
    __table_args__ = (Index("ix_user_applications_user_app", "user_id", "application_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("directory_users.id"), index=True)
    application_id: Mapped[str] = mapped_column(String, index=True)
    scopes: Mapped[list[str]] = mapped_column(JsonList, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


def scope_list(values: Any) -> list[str]:
    # Persist scope sets as sorted, de-duplicated lists so rewrites are stable.
    if not values:
        return []
    return sorted({str(value) for value in values if value})
