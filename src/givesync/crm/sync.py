"""Sync engine -- pulls every page of a provider's data into the local store.

State machine per integration (persisted through IntegrationRepository):

    idle  --try_begin_sync-->  syncing  --success-->  idle
                               syncing  --fatal---->  error

A request against an integration already in syncing is rejected before any
vendor call (single-flight). Fetch errors are fatal to the run; pages
committed earlier in the run stay committed, which is safe because the
upsert is idempotent. Per-record failures (records the adapter could not
map, rows the upserter could not write) are counted, never raised.

Sequencing:
- Separate mode: donors, then projects (when the adapter is a
  ProjectFetcher), then donations.
- Combined mode (CombinedDonorFetcher only): projects first, then donor
  pages carrying their gifts; each page's donations are upserted in one
  batch after its donors.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import structlog

from src.givesync.core.monitoring import record_outcomes, track_sync_run
from src.givesync.crm.adapter import CombinedDonorFetcher, CRMAdapter, ProjectFetcher
from src.givesync.crm.default_bucket import DefaultBucketResolver
from src.givesync.crm.exceptions import CRMAPIError, SyncAlreadyRunningError
from src.givesync.crm.repository import IntegrationRepository
from src.givesync.crm.schemas import (
    AggregatedSyncResult,
    BatchUpsertResult,
    IntegrationRead,
    PaginatedResponse,
    PaginationParams,
    SyncMode,
    SyncRecordError,
    SyncResult,
)
from src.givesync.crm.upsert import BatchUpserter

logger = structlog.get_logger(__name__)

Fetcher = Callable[[str, PaginationParams, dict[str, Any]], Awaitable[PaginatedResponse[Any]]]


def _distinct_count(records: list[Any]) -> int:
    """Records per page after collapsing repeated external ids."""
    return len({record.external_id for record in records})


class SyncEngine:
    """Orchestrates one provider's sync runs.

    Args:
        adapter: Provider adapter to pull from.
        repository: Integration store (status transitions).
        upserter: Batch upserter shared by every entity type.
        bucket_resolver_factory: Builds a fresh DefaultBucketResolver per run,
            given the provider display name.
        page_size: Records requested per vendor page.
    """

    def __init__(
        self,
        adapter: CRMAdapter,
        repository: IntegrationRepository,
        upserter: BatchUpserter,
        bucket_resolver_factory: Callable[[str], DefaultBucketResolver],
        page_size: int = 100,
    ) -> None:
        self._adapter = adapter
        self._repository = repository
        self._upserter = upserter
        self._bucket_resolver_factory = bucket_resolver_factory
        self._page_size = page_size

    async def sync_organization_data(
        self,
        organization_id: str,
        integration: IntegrationRead,
        combined_mode: bool = False,
    ) -> AggregatedSyncResult:
        """Run a full sync for one integration.

        Raises:
            SyncAlreadyRunningError: The integration is already syncing.
            Exception: Any fatal error, after it was persisted to sync_error.
        """
        provider = self._adapter.name
        log = logger.bind(
            organization_id=organization_id,
            provider=provider,
            integration_id=integration.id,
        )

        async with track_sync_run(provider):
            if not await self._repository.try_begin_sync(integration.id):
                log.warning("crm_sync.already_running")
                raise SyncAlreadyRunningError(integration.id)

            log.info("crm_sync.started", combined_mode=combined_mode)
            start = time.perf_counter()
            try:
                result = await self._run(organization_id, integration, combined_mode)
                result.total_time_ms = int((time.perf_counter() - start) * 1000)
                await self._repository.mark_sync_succeeded(integration.id)
            except asyncio.CancelledError:
                log.warning("crm_sync.cancelled")
                await self._repository.mark_sync_failed(integration.id, "sync cancelled")
                raise
            except Exception as exc:
                message = str(exc) or exc.__class__.__name__
                log.error("crm_sync.failed", error=message, exc_info=True)
                await self._repository.mark_sync_failed(integration.id, message)
                raise

        log.info(
            "crm_sync.completed",
            mode=result.mode.value,
            donors=result.donors.model_dump(exclude={"errors"}),
            projects=result.projects.model_dump(exclude={"errors"}) if result.projects else None,
            donations=result.donations.model_dump(exclude={"errors"}),
            total_time_ms=result.total_time_ms,
        )
        return result

    # ── Run ────────────────────────────────────────────────────────────────

    async def _run(
        self,
        organization_id: str,
        integration: IntegrationRead,
        combined_mode: bool,
    ) -> AggregatedSyncResult:
        if combined_mode and not isinstance(self._adapter, CombinedDonorFetcher):
            logger.warning(
                "crm_sync.combined_mode_unsupported",
                provider=self._adapter.name,
                organization_id=organization_id,
            )
            combined_mode = False

        result = AggregatedSyncResult(
            mode=SyncMode.COMBINED if combined_mode else SyncMode.SEPARATE,
        )
        bucket = self._bucket_resolver_factory(self._adapter.display_name)

        if combined_mode:
            await self._sync_projects(organization_id, integration, result)
            await self._sync_combined(organization_id, integration, bucket, result)
        else:
            await self._sync_donors(organization_id, integration, result)
            await self._sync_projects(organization_id, integration, result)
            await self._sync_donations(organization_id, integration, bucket, result)
        return result

    async def _pages(
        self, fetch: Fetcher, integration: IntegrationRead
    ) -> AsyncIterator[PaginatedResponse[Any]]:
        """Yield vendor pages until has_more is false."""
        page_token: str | None = None
        while True:
            params = PaginationParams(limit=self._page_size, page_token=page_token)
            page = await fetch(integration.access_token, params, integration.metadata)
            yield page
            if not page.has_more:
                return
            if not page.next_page_token:
                raise CRMAPIError(
                    self._adapter.name, "Vendor reported more pages without a page token"
                )
            page_token = page.next_page_token

    def _absorb(
        self,
        totals: SyncResult,
        entity: str,
        batch: BatchUpsertResult,
        records: list[Any],
    ) -> None:
        totals.absorb(batch, _distinct_count(records))
        record_outcomes(
            self._adapter.name,
            entity,
            created=batch.created,
            updated=batch.updated,
            unchanged=batch.unchanged,
            failed=batch.failed,
        )

    def _absorb_rejected(
        self, totals: SyncResult, entity: str, failures: list[SyncRecordError]
    ) -> None:
        """Count records the adapter could not map as failed."""
        if not failures:
            return
        totals.absorb_failures(failures)
        record_outcomes(self._adapter.name, entity, failed=len(failures))
        logger.warning(
            "crm_sync.records_rejected",
            provider=self._adapter.name,
            entity=entity,
            count=len(failures),
        )

    async def _sync_donors(
        self, organization_id: str, integration: IntegrationRead, result: AggregatedSyncResult
    ) -> None:
        page_number = 0
        async for page in self._pages(self._adapter.fetch_donors, integration):
            page_number += 1
            self._absorb_rejected(result.donors, "donors", page.failures)
            batch = await self._upserter.upsert_donors(
                organization_id, self._adapter.name, page.data
            )
            self._absorb(result.donors, "donors", batch, page.data)
            logger.info(
                "crm_sync.donor_page_upserted",
                organization_id=organization_id,
                provider=self._adapter.name,
                page=page_number,
                records=len(page.data),
                created=batch.created,
                updated=batch.updated,
                failed=batch.failed,
            )

    async def _sync_projects(
        self, organization_id: str, integration: IntegrationRead, result: AggregatedSyncResult
    ) -> None:
        if not isinstance(self._adapter, ProjectFetcher):
            logger.debug(
                "crm_sync.projects_skipped",
                organization_id=organization_id,
                provider=self._adapter.name,
            )
            return

        result.projects = SyncResult()
        page_number = 0
        async for page in self._pages(self._adapter.fetch_projects, integration):
            page_number += 1
            self._absorb_rejected(result.projects, "projects", page.failures)
            batch = await self._upserter.upsert_projects(
                organization_id, self._adapter.name, page.data
            )
            self._absorb(result.projects, "projects", batch, page.data)
            logger.info(
                "crm_sync.project_page_upserted",
                organization_id=organization_id,
                provider=self._adapter.name,
                page=page_number,
                records=len(page.data),
            )

    async def _sync_donations(
        self,
        organization_id: str,
        integration: IntegrationRead,
        bucket: DefaultBucketResolver,
        result: AggregatedSyncResult,
    ) -> None:
        page_number = 0
        async for page in self._pages(self._adapter.fetch_donations, integration):
            page_number += 1
            self._absorb_rejected(result.donations, "donations", page.failures)
            if not page.data:
                continue
            default_project_id = await bucket.resolve(organization_id)
            batch = await self._upserter.upsert_donations(
                organization_id, self._adapter.name, page.data, default_project_id
            )
            self._absorb(result.donations, "donations", batch, page.data)
            logger.info(
                "crm_sync.donation_page_upserted",
                organization_id=organization_id,
                provider=self._adapter.name,
                page=page_number,
                records=len(page.data),
                failed=batch.failed,
            )

    async def _sync_combined(
        self,
        organization_id: str,
        integration: IntegrationRead,
        bucket: DefaultBucketResolver,
        result: AggregatedSyncResult,
    ) -> None:
        page_number = 0
        async for page in self._pages(self._adapter.fetch_donors_with_donations, integration):
            page_number += 1
            self._absorb_rejected(result.donors, "donors", page.failures)
            self._absorb_rejected(result.donations, "donations", page.donation_failures)
            donor_batch = await self._upserter.upsert_donors(
                organization_id, self._adapter.name, page.data
            )
            self._absorb(result.donors, "donors", donor_batch, page.data)

            donations = [donation for donor in page.data for donation in donor.donations]
            if donations:
                default_project_id = await bucket.resolve(organization_id)
                donation_batch = await self._upserter.upsert_donations(
                    organization_id, self._adapter.name, donations, default_project_id
                )
                self._absorb(result.donations, "donations", donation_batch, donations)

            logger.info(
                "crm_sync.combined_page_upserted",
                organization_id=organization_id,
                provider=self._adapter.name,
                page=page_number,
                donors=len(page.data),
                donations=len(donations),
            )
