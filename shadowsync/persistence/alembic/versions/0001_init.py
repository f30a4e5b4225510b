"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False, server_default="google"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("provider", sa.String(), nullable=False, server_default="google"),
        sa.Column("user_email", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sync_runs_organization_id", "sync_runs", ["organization_id"])
    op.create_index("ix_sync_runs_org_status", "sync_runs", ["organization_id", "status"])

    op.create_table(
        "directory_users",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("provider_user_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="User"),
        sa.Column("department", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_directory_users_organization_id", "directory_users", ["organization_id"])
    op.create_index("ix_directory_users_provider_user_id", "directory_users", ["provider_user_id"])
    op.create_index("ix_directory_users_org_email", "directory_users", ["organization_id", "email"])

    # No unique (organization_id, name): repeated imports may race and the merge pass restores it.
    op.create_table(
        "applications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=True, server_default="Unknown"),
        sa.Column("risk_level", sa.String(), nullable=False, server_default="LOW"),
        sa.Column("management_status", sa.String(), nullable=False, server_default="Newly discovered"),
        sa.Column("total_permissions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("user_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("all_scopes", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("provider_app_ids", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_applications_organization_id", "applications", ["organization_id"])
    op.create_index("ix_applications_org_name", "applications", ["organization_id", "name"])

    op.create_table(
        "user_applications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("directory_users.id"), nullable=False),
        sa.Column("application_id", sa.String(), nullable=False),
        sa.Column("scopes", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_user_applications_user_id", "user_applications", ["user_id"])
    op.create_index("ix_user_applications_application_id", "user_applications", ["application_id"])
    op.create_index("ix_user_applications_user_app", "user_applications", ["user_id", "application_id"])


def downgrade() -> None:
    op.drop_index("ix_user_applications_user_app", table_name="user_applications")
    op.drop_index("ix_user_applications_application_id", table_name="user_applications")
    op.drop_index("ix_user_applications_user_id", table_name="user_applications")
    op.drop_table("user_applications")
    op.drop_index("ix_applications_org_name", table_name="applications")
    op.drop_index("ix_applications_organization_id", table_name="applications")
    op.drop_table("applications")
    op.drop_index("ix_directory_users_org_email", table_name="directory_users")
    op.drop_index("ix_directory_users_provider_user_id", table_name="directory_users")
    op.drop_index("ix_directory_users_organization_id", table_name="directory_users")
    op.drop_table("directory_users")
    op.drop_index("ix_sync_runs_org_status", table_name="sync_runs")
    op.drop_index("ix_sync_runs_organization_id", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_table("organizations")
