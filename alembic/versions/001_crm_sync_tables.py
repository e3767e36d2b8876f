"""Add CRM sync tables for integrations, donors, projects, and donations.

Revision ID: 001_crm_sync
Revises:
Create Date: 2026-10-18

Creates four tables:
- organization_integrations: OAuth connection and sync state per (organization, provider)
- donors: Donors with structured address columns
- projects: Campaigns/funds, plus the per-organization default bucket
- donations: Gifts linked to a donor and a project

Synced rows are unique per (organization_id, external_id). A partial unique
index on projects(organization_id) WHERE external keeps one default bucket
per organization.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_crm_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # ── organization_integrations table ─────────────────────────────────

    op.create_table(
        "organization_integrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(255), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column(
            "sync_status",
            sa.String(20),
            server_default=sa.text("'idle'"),
            nullable=False,
        ),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "is_active",
            sa.Boolean(),
            server_default=sa.text("true"),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id",
            "provider",
            name="uq_integration_org_provider",
        ),
    )
    op.create_index(
        "ix_organization_integrations_organization_id",
        "organization_integrations",
        ["organization_id"],
    )

    # ── donors table ────────────────────────────────────────────────────

    op.create_table(
        "donors",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(255), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("first_name", sa.String(255), nullable=False),
        sa.Column("last_name", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(500), nullable=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("address", sa.String(1000), nullable=True),
        sa.Column("street", sa.String(500), nullable=True),
        sa.Column("city", sa.String(255), nullable=True),
        sa.Column("state", sa.String(100), nullable=True),
        sa.Column("postal_code", sa.String(20), nullable=True),
        sa.Column("country", sa.String(100), nullable=True),
        sa.Column("is_couple", sa.Boolean(), nullable=False),
        sa.Column("his_first_name", sa.String(255), nullable=True),
        sa.Column("his_last_name", sa.String(255), nullable=True),
        sa.Column("her_first_name", sa.String(255), nullable=True),
        sa.Column("her_last_name", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id",
            "external_id",
            name="uq_donor_org_external_id",
        ),
    )
    op.create_index("ix_donors_organization_id", "donors", ["organization_id"])

    # ── projects table ──────────────────────────────────────────────────

    op.create_table(
        "projects",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(255), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("goal", sa.Integer(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column(
            "external",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id",
            "external_id",
            name="uq_project_org_external_id",
        ),
    )
    op.create_index("ix_projects_organization_id", "projects", ["organization_id"])
    op.create_index(
        "uq_project_org_default_bucket",
        "projects",
        ["organization_id"],
        unique=True,
        postgresql_where=sa.text("external"),
        sqlite_where=sa.text("external = 1"),
    )

    # ── donations table ─────────────────────────────────────────────────

    op.create_table(
        "donations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(255), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column(
            "donor_id",
            sa.Uuid(),
            sa.ForeignKey("donors.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("project_id", sa.Uuid(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("designation", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id",
            "external_id",
            name="uq_donation_org_external_id",
        ),
    )
    op.create_index("ix_donations_organization_id", "donations", ["organization_id"])
    op.create_index("ix_donations_donor_id", "donations", ["donor_id"])
    op.create_index("ix_donations_project_id", "donations", ["project_id"])


def downgrade() -> None:
    op.drop_table("donations")
    op.drop_index("uq_project_org_default_bucket", table_name="projects")
    op.drop_table("projects")
    op.drop_table("donors")
    op.drop_table("organization_integrations")
