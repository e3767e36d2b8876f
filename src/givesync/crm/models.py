"""Local store persistence models -- integrations and the synced donor data.

Four SQLAlchemy models:
- OrganizationIntegrationModel: One organization's connection to one CRM provider
- DonorModel: Donors (individuals, households, organizations)
- ProjectModel: Campaigns/funds, including the per-organization default bucket
- DonationModel: Gifts, linked to a donor and a project

Synced rows carry a scoped external id ("{provider}_{native_id}"), unique per
organization. The default bucket is the single project per organization with
external=true, enforced by a partial unique index.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.givesync.core.database import Base


class OrganizationIntegrationModel(Base):
    """An organization's OAuth connection to a CRM provider.

    Never hard-deleted; disconnecting clears is_active. sync_status is the
    single-flight guard and only changes through IntegrationRepository.
    """

    __tablename__ = "organization_integrations"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "provider",
            name="uq_integration_org_provider",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict)
    sync_status: Mapped[str] = mapped_column(
        String(20), default="idle", server_default=text("'idle'")
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class DonorModel(Base):
    """A donor synced from (or pushed to) a CRM.

    The address is stored as structured components; `address` holds the
    comma-joined display form derived from them.
    """

    __tablename__ = "donors"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "external_id",
            name="uq_donor_org_external_id",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    display_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    street: Mapped[str | None] = mapped_column(String(500), nullable=True)
    city: Mapped[str | None] = mapped_column(String(255), nullable=True)
    state: Mapped[str | None] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_couple: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    his_first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    his_last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    her_first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    her_last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ProjectModel(Base):
    """A campaign or fund. Goal is in minor units."""

    __tablename__ = "projects"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "external_id",
            name="uq_project_org_external_id",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    goal: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    external: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, server_default=text("false")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


# One default bucket per organization
Index(
    "uq_project_org_default_bucket",
    ProjectModel.organization_id,
    unique=True,
    postgresql_where=text("external"),
    sqlite_where=text("external = 1"),
)


class DonationModel(Base):
    """A gift. Amount is in minor units (cents)."""

    __tablename__ = "donations"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "external_id",
            name="uq_donation_org_external_id",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    donor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("donors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    designation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
