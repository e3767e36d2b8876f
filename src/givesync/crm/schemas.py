"""Pydantic schemas for CRM synchronization -- canonical records, pagination, results.

Defines:
- Canonical records: Address, CanonicalDonor, CanonicalDonation, CanonicalProject,
  DonorWithDonations (donor plus nested gifts for combined-mode sync)
- Pagination: PaginationParams, PaginatedResponse[T], SyncRecordError
- OAuth: OAuthTokens
- Results: UpsertOutcome, BatchUpsertResult, SyncResult,
  AggregatedSyncResult
- Integration state: SyncStatus, IntegrationRead

Canonical records are transient DTOs produced by the field mappers and consumed
by the BatchUpserter; they are never persisted as-is. Their external ids are the
vendor-native (unscoped) ids.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncStatus(str, Enum):
    """Durable sync state of an integration."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class UpsertOutcome(str, Enum):
    """Per-record result of a batch upsert."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class SyncMode(str, Enum):
    """Sequencing mode of a sync run."""

    SEPARATE = "separate"
    COMBINED = "combined"


# ── Canonical Records ───────────────────────────────────────────────────────


class Address(BaseModel):
    """Postal address split into components. All parts optional."""

    street: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None

    def is_empty(self) -> bool:
        return not any(
            (self.street, self.city, self.state, self.postal_code, self.country)
        )


class CanonicalDonor(BaseModel):
    """One fundraising contact (individual, household or organization)."""

    external_id: str
    first_name: str = ""
    last_name: str = ""
    display_name: str | None = None
    email: str = ""
    phone: str | None = None
    address: Address | None = None
    is_couple: bool = False
    his_first_name: str | None = None
    his_last_name: str | None = None
    her_first_name: str | None = None
    her_last_name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CanonicalDonation(BaseModel):
    """One gift transaction. Amount is in integer minor units (cents)."""

    external_id: str
    donor_external_id: str
    amount: int
    currency: str = "USD"
    date: datetime
    designation: str | None = None
    campaign_external_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CanonicalProject(BaseModel):
    """A campaign or fund. Goal is in integer minor units."""

    external_id: str
    name: str
    description: str | None = None
    active: bool = True
    goal: int | None = None
    tags: list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class DonorWithDonations(CanonicalDonor):
    """Donor returned together with its gifts by a CombinedDonorFetcher."""

    donations: list[CanonicalDonation] = Field(default_factory=list)


# ── Pagination ──────────────────────────────────────────────────────────────


class SyncRecordError(BaseModel):
    """A single record that failed to sync."""

    external_id: str
    error_message: str


class PaginationParams(BaseModel):
    """Page request. page_token is opaque to everything but the adapter."""

    limit: int = Field(default=100, ge=1)
    page_token: str | None = None


class PaginatedResponse(BaseModel, Generic[T]):
    """One page of vendor records.

    has_more is the only loop-termination signal; total_count is advisory.
    failures holds vendor records that could not be mapped; for combined
    donor pages, donation_failures holds the gifts that could not be mapped.
    """

    data: list[T] = Field(default_factory=list)
    has_more: bool = False
    next_page_token: str | None = None
    total_count: int | None = None
    failures: list[SyncRecordError] = Field(default_factory=list)
    donation_failures: list[SyncRecordError] = Field(default_factory=list)


# ── OAuth ───────────────────────────────────────────────────────────────────


class OAuthTokens(BaseModel):
    """Tokens returned by an OAuth code exchange or refresh."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    token_type: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Results ─────────────────────────────────────────────────────────────────


class BatchUpsertResult(BaseModel):
    """Outcome of upserting one page of records, keyed by native external id."""

    outcomes: dict[str, UpsertOutcome] = Field(default_factory=dict)
    errors: list[SyncRecordError] = Field(default_factory=list)

    def count(self, outcome: UpsertOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome)

    @property
    def created(self) -> int:
        return self.count(UpsertOutcome.CREATED)

    @property
    def updated(self) -> int:
        return self.count(UpsertOutcome.UPDATED)

    @property
    def unchanged(self) -> int:
        return self.count(UpsertOutcome.UNCHANGED)

    @property
    def failed(self) -> int:
        return self.count(UpsertOutcome.FAILED)


class SyncResult(BaseModel):
    """Running totals for one entity type over a whole sync run."""

    total: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: list[SyncRecordError] = Field(default_factory=list)

    def absorb(self, batch: BatchUpsertResult, fetched: int) -> None:
        """Fold one page's upsert result into the running totals.

        Args:
            batch: Result returned by the BatchUpserter for the page.
            fetched: Number of records the vendor returned for the page.
        """
        self.total += fetched
        self.created += batch.created
        self.updated += batch.updated
        self.unchanged += batch.unchanged
        self.failed += batch.failed
        self.errors.extend(batch.errors)

    def absorb_failures(self, failures: list[SyncRecordError]) -> None:
        """Count vendor records rejected before they reached the upserter."""
        self.total += len(failures)
        self.failed += len(failures)
        self.errors.extend(failures)


class AggregatedSyncResult(BaseModel):
    """Result of a full sync run across entity types."""

    donors: SyncResult = Field(default_factory=SyncResult)
    projects: SyncResult | None = None
    donations: SyncResult = Field(default_factory=SyncResult)
    mode: SyncMode = SyncMode.SEPARATE
    total_time_ms: int = 0


# ── Integration ─────────────────────────────────────────────────────────────


class IntegrationRead(BaseModel):
    """Snapshot of an organization's connection to one CRM provider."""

    id: str
    organization_id: str
    provider: str
    access_token: str
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    sync_status: SyncStatus = SyncStatus.IDLE
    sync_error: str | None = None
    last_sync_at: datetime | None = None
    is_active: bool = True

    def is_token_expired(self, now: datetime | None = None) -> bool:
        """Return True if the stored access token has passed its expiry."""
        if self.token_expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at < now
