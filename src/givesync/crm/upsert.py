"""Batch upserter -- persists one page of canonical records with minimal I/O.

For each page:
1. Scope every native external id ("{provider}_{native_id}").
2. One bulk SELECT of the existing rows for those scoped ids.
3. Classify each record: no row -> created; any mapped column differs ->
   updated (only the differing columns are written); otherwise unchanged
   (no write).
4. Bulk INSERT and bulk UPDATE-by-primary-key in chunks of chunk_size, one
   transaction per chunk. A chunk that fails is rolled back whole and its
   rows are retried one per transaction, so only the offending records are
   counted as failed.

Per-record failures are returned as data (BatchUpsertResult.errors); they
never propagate out of this module.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import String, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.givesync.crm.field_mapping import format_address, scoped_external_id, truncate
from src.givesync.crm.models import DonationModel, DonorModel, ProjectModel
from src.givesync.crm.schemas import (
    BatchUpsertResult,
    CanonicalDonation,
    CanonicalDonor,
    CanonicalProject,
    SyncRecordError,
    UpsertOutcome,
)

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 500

SyncedModel = type[DonorModel] | type[ProjectModel] | type[DonationModel]


# ── Comparison Helpers ──────────────────────────────────────────────────────


def _normalize(value: Any) -> Any:
    """Map a column value to the form used for equality checks.

    Empty strings equal None, and datetimes compare as UTC instants (naive
    values read back from SQLite are UTC).
    """
    if value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


def values_equal(current: Any, incoming: Any) -> bool:
    """Exact value comparison after normalization."""
    return _normalize(current) == _normalize(incoming)


def column_lengths(model: SyncedModel) -> dict[str, int]:
    """Maximum lengths of the bounded string columns of a table."""
    return {
        column.name: column.type.length
        for column in model.__table__.columns
        if isinstance(column.type, String) and column.type.length
    }


def _dedupe(records: Iterable[Any]) -> dict[str, Any]:
    """Index records by native external id; a repeated id keeps the last one."""
    by_native: dict[str, Any] = {}
    for record in records:
        by_native.pop(record.external_id, None)
        by_native[record.external_id] = record
    return by_native


# ── Row Builders ────────────────────────────────────────────────────────────


def donor_values(donor: CanonicalDonor) -> dict[str, Any]:
    """Column values written for a donor (everything except ids and timestamps)."""
    address = donor.address if donor.address and not donor.address.is_empty() else None
    return {
        "first_name": donor.first_name or "",
        "last_name": donor.last_name or "",
        "display_name": donor.display_name,
        "email": donor.email or "",
        "phone": donor.phone,
        "address": format_address(address),
        "street": address.street if address else None,
        "city": address.city if address else None,
        "state": address.state if address else None,
        "postal_code": address.postal_code if address else None,
        "country": address.country if address else None,
        "is_couple": donor.is_couple,
        "his_first_name": donor.his_first_name,
        "his_last_name": donor.his_last_name,
        "her_first_name": donor.her_first_name,
        "her_last_name": donor.her_last_name,
    }


def project_values(project: CanonicalProject) -> dict[str, Any]:
    return {
        "name": project.name,
        "description": project.description,
        "active": project.active,
        "goal": project.goal,
        "tags": project.tags,
    }


class BatchUpserter:
    """Writes pages of canonical donors, projects and donations.

    Args:
        session_factory: Async callable yielding AsyncSession instances.
        chunk_size: Maximum rows per INSERT/UPDATE transaction.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._session_factory = session_factory
        self._chunk_size = chunk_size

    # ── Public API ─────────────────────────────────────────────────────────

    async def upsert_donors(
        self,
        organization_id: str,
        provider: str,
        donors: list[CanonicalDonor],
    ) -> BatchUpsertResult:
        """Upsert one page of donors."""
        rows = {native: donor_values(donor) for native, donor in _dedupe(donors).items()}
        return await self._upsert(DonorModel, organization_id, provider, rows)

    async def upsert_projects(
        self,
        organization_id: str,
        provider: str,
        projects: list[CanonicalProject],
    ) -> BatchUpsertResult:
        """Upsert one page of projects."""
        rows = {native: project_values(project) for native, project in _dedupe(projects).items()}
        return await self._upsert(ProjectModel, organization_id, provider, rows)

    async def upsert_donations(
        self,
        organization_id: str,
        provider: str,
        donations: list[CanonicalDonation],
        default_project_id: uuid.UUID | str,
    ) -> BatchUpsertResult:
        """Upsert one page of donations.

        Donors and projects are resolved by scoped external id with one bulk
        read each. A donation whose donor is not stored locally fails; one
        whose campaign is unknown (or absent) goes to default_project_id.
        """
        if isinstance(default_project_id, str):
            default_project_id = uuid.UUID(default_project_id)

        by_native: dict[str, CanonicalDonation] = _dedupe(donations)
        donor_ids = await self._resolve_ids(
            DonorModel,
            organization_id,
            {
                scoped_external_id(provider, d.donor_external_id)
                for d in by_native.values()
                if d.donor_external_id
            },
        )
        project_ids = await self._resolve_ids(
            ProjectModel,
            organization_id,
            {
                scoped_external_id(provider, d.campaign_external_id)
                for d in by_native.values()
                if d.campaign_external_id
            },
        )

        result = BatchUpsertResult()
        rows: dict[str, dict[str, Any]] = {}
        for native, donation in by_native.items():
            donor_id = (
                donor_ids.get(scoped_external_id(provider, donation.donor_external_id))
                if donation.donor_external_id
                else None
            )
            if donor_id is None:
                self._fail(
                    result,
                    native,
                    f"Donor not found for external id {donation.donor_external_id!r}",
                    entity="donation",
                )
                continue

            project_id = default_project_id
            if donation.campaign_external_id:
                project_id = project_ids.get(
                    scoped_external_id(provider, donation.campaign_external_id),
                    default_project_id,
                )

            rows[native] = {
                "donor_id": donor_id,
                "project_id": project_id,
                "amount": donation.amount,
                "currency": donation.currency,
                "date": donation.date,
                "designation": donation.designation,
            }

        return await self._upsert(DonationModel, organization_id, provider, rows, result)

    # ── Core ───────────────────────────────────────────────────────────────

    async def _upsert(
        self,
        model: SyncedModel,
        organization_id: str,
        provider: str,
        rows: dict[str, dict[str, Any]],
        result: BatchUpsertResult | None = None,
    ) -> BatchUpsertResult:
        """Diff rows (keyed by native id) against the store and write the changes."""
        result = result or BatchUpsertResult()
        if not rows:
            return result

        lengths = column_lengths(model)
        scoped_by_native = {native: scoped_external_id(provider, native) for native in rows}
        existing = await self._load_existing(model, organization_id, set(scoped_by_native.values()))

        inserts: list[tuple[str, dict[str, Any]]] = []
        updates: list[tuple[str, dict[str, Any]]] = []

        for native, values in rows.items():
            values = {
                column: truncate(value, lengths.get(column)) if isinstance(value, str) else value
                for column, value in values.items()
            }
            current = existing.get(scoped_by_native[native])

            if current is None:
                inserts.append(
                    (
                        native,
                        {
                            "id": uuid.uuid4(),
                            "organization_id": organization_id,
                            "external_id": scoped_by_native[native],
                            **values,
                        },
                    )
                )
                result.outcomes[native] = UpsertOutcome.CREATED
                continue

            changed = {
                column: value
                for column, value in values.items()
                if not values_equal(getattr(current, column), value)
            }
            if changed:
                updates.append((native, {"id": current.id, **changed}))
                result.outcomes[native] = UpsertOutcome.UPDATED
            else:
                result.outcomes[native] = UpsertOutcome.UNCHANGED

        entity = model.__tablename__
        for start in range(0, len(inserts), self._chunk_size):
            await self._write_chunk(
                model, inserts[start:start + self._chunk_size], self._apply_insert_chunk, result
            )
        for start in range(0, len(updates), self._chunk_size):
            await self._write_chunk(
                model, updates[start:start + self._chunk_size], self._apply_update_chunk, result
            )

        logger.debug(
            "batch_upsert.page_written",
            entity=entity,
            organization_id=organization_id,
            provider=provider,
            created=result.created,
            updated=result.updated,
            unchanged=result.unchanged,
            failed=result.failed,
        )
        return result

    async def _write_chunk(
        self,
        model: SyncedModel,
        chunk: list[tuple[str, dict[str, Any]]],
        apply: Callable[[SyncedModel, list[dict[str, Any]]], Any],
        result: BatchUpsertResult,
    ) -> None:
        """Apply one chunk; on failure, retry its rows one per transaction."""
        try:
            await apply(model, [row for _, row in chunk])
            return
        except SQLAlchemyError as exc:
            logger.warning(
                "batch_upsert.chunk_failed",
                entity=model.__tablename__,
                rows=len(chunk),
                error=str(exc),
            )

        for native, row in chunk:
            try:
                await apply(model, [row])
            except SQLAlchemyError as exc:
                message = str(getattr(exc, "orig", None) or exc)
                self._fail(result, native, message, entity=model.__tablename__)

    async def _apply_insert_chunk(self, model: SyncedModel, rows: list[dict[str, Any]]) -> None:
        """Bulk INSERT rows in a single transaction."""
        async for session in self._session_factory():
            async with session.begin():
                await session.execute(insert(model), rows)

    async def _apply_update_chunk(self, model: SyncedModel, rows: list[dict[str, Any]]) -> None:
        """Bulk UPDATE rows by primary key in a single transaction."""
        async for session in self._session_factory():
            async with session.begin():
                await session.execute(update(model), rows)

    async def _load_existing(
        self, model: SyncedModel, organization_id: str, scoped_ids: set[str]
    ) -> dict[str, Any]:
        """One bulk read of the stored rows for a set of scoped external ids."""
        async for session in self._session_factory():
            stmt = select(model).where(
                model.organization_id == organization_id,
                model.external_id.in_(scoped_ids),
            )
            result = await session.execute(stmt)
            return {row.external_id: row for row in result.scalars().all()}
        return {}

    async def _resolve_ids(
        self, model: SyncedModel, organization_id: str, scoped_ids: set[str]
    ) -> dict[str, uuid.UUID]:
        """Map scoped external ids to primary keys with one bulk read."""
        if not scoped_ids:
            return {}
        async for session in self._session_factory():
            stmt = select(model.external_id, model.id).where(
                model.organization_id == organization_id,
                model.external_id.in_(scoped_ids),
            )
            result = await session.execute(stmt)
            return {external_id: row_id for external_id, row_id in result.all()}
        return {}

    @staticmethod
    def _fail(result: BatchUpsertResult, native: str, message: str, entity: str) -> None:
        result.outcomes[native] = UpsertOutcome.FAILED
        result.errors.append(SyncRecordError(external_id=native, error_message=message))
        logger.warning(
            "batch_upsert.record_failed",
            entity=entity,
            external_id=native,
            error=message,
        )
