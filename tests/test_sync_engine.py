"""Tests for SyncEngine -- paging, sequencing and the integration state machine.

Uses in-memory fake adapters against the real repository, upserter and
default bucket resolver on SQLite.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest
from conftest import connect_integration, make_donation, make_donor, make_project
from sqlalchemy import select

from src.givesync.crm.adapter import CombinedDonorFetcher, CRMAdapter, ProjectFetcher
from src.givesync.crm.blackbaud import BlackbaudAdapter
from src.givesync.crm.default_bucket import DefaultBucketResolver
from src.givesync.crm.exceptions import CRMAPIError, SyncAlreadyRunningError
from src.givesync.crm.models import DonationModel, DonorModel, ProjectModel
from src.givesync.crm.schemas import (
    DonorWithDonations,
    OAuthTokens,
    PaginatedResponse,
    PaginationParams,
    SyncMode,
    SyncRecordError,
    SyncStatus,
)
from src.givesync.crm.sync import SyncEngine
from src.givesync.crm.upsert import BatchUpserter

ORG = "org-1"
PROVIDER = "fakecrm"


# ── Fake Adapters ──────────────────────────────────────────────────────────


def _page(pages: list[list[Any]], params: PaginationParams) -> PaginatedResponse[Any]:
    index = int(params.page_token or 0)
    has_more = index + 1 < len(pages)
    return PaginatedResponse(
        data=pages[index] if pages else [],
        has_more=has_more,
        next_page_token=str(index + 1) if has_more else None,
    )


class FakeAdapter(CRMAdapter):
    """Serves fixed pages; errors can be injected per (entity, page index)."""

    name = PROVIDER
    display_name = "Fake CRM"

    def __init__(self, donor_pages=None, donation_pages=None, project_pages=None, errors=None):
        self.donor_pages = donor_pages or [[]]
        self.donation_pages = donation_pages or [[]]
        self.project_pages = project_pages or [[]]
        self.errors: dict[tuple[str, int], BaseException] = errors or {}
        self.calls: list[tuple[str, str | None]] = []

    def _serve(self, entity: str, pages: list[list[Any]], params: PaginationParams):
        self.calls.append((entity, params.page_token))
        error = self.errors.get((entity, int(params.page_token or 0)))
        if error is not None:
            raise error
        return _page(pages, params)

    async def fetch_donors(self, access_token, params, metadata=None):
        return self._serve("donors", self.donor_pages, params)

    async def fetch_donations(self, access_token, params, metadata=None):
        return self._serve("donations", self.donation_pages, params)

    def get_authorization_url(self, state, redirect_uri):
        return f"https://fake.example/authorize?state={state}"

    async def exchange_auth_code(self, code, redirect_uri, state=None):
        return OAuthTokens(access_token="access")

    async def refresh_access_token(self, refresh_token):
        return OAuthTokens(access_token="access")

    async def validate_token(self, access_token, metadata=None):
        return True


class FakeProjectAdapter(FakeAdapter, ProjectFetcher):
    async def fetch_projects(self, access_token, params, metadata=None):
        return self._serve("projects", self.project_pages, params)


class FakeCombinedAdapter(FakeProjectAdapter, CombinedDonorFetcher):
    def __init__(self, combined_pages=None, **kwargs):
        super().__init__(**kwargs)
        self.combined_pages = combined_pages or [[]]

    async def fetch_donors_with_donations(self, access_token, params, metadata=None):
        return self._serve("combined", self.combined_pages, params)


# ── Fixtures ───────────────────────────────────────────────────────────────


@pytest.fixture
def upserter(session_factory) -> BatchUpserter:
    return BatchUpserter(session_factory)


@pytest.fixture
def engine_for(repository, upserter, session_factory):
    def build(adapter: CRMAdapter) -> SyncEngine:
        return SyncEngine(
            adapter=adapter,
            repository=repository,
            upserter=upserter,
            bucket_resolver_factory=lambda name: DefaultBucketResolver(session_factory, name),
            page_size=3,
        )

    return build


@pytest.fixture
async def integration(repository):
    return await connect_integration(repository, ORG, PROVIDER)


async def _count(session_factory, model, **filters) -> int:
    async for session in session_factory():
        stmt = select(model).where(model.organization_id == ORG)
        for column, value in filters.items():
            stmt = stmt.where(getattr(model, column) == value)
        result = await session.execute(stmt)
        return len(result.scalars().all())


# ── Separate Mode ──────────────────────────────────────────────────────────


class TestSeparateMode:
    async def test_full_sync_then_idempotent_rerun(
        self, engine_for, integration, upserter, repository, session_factory
    ):
        await upserter.upsert_donors(ORG, PROVIDER, [make_donor("D2", email="old@example.org")])
        adapter = FakeAdapter(
            donor_pages=[
                [make_donor("D1"), make_donor("D2"), make_donor("D3")],
                [make_donor("D4"), make_donor("D5")],
            ],
            donation_pages=[[make_donation("G1", "D1"), make_donation("G2", "D4")]],
        )
        engine = engine_for(adapter)

        first = await engine.sync_organization_data(ORG, integration)

        assert first.mode == SyncMode.SEPARATE
        assert (first.donors.total, first.donors.created, first.donors.updated) == (5, 4, 1)
        assert first.donations.created == 2
        assert first.projects is None
        assert [call for call in adapter.calls if call[0] == "donors"] == [
            ("donors", None),
            ("donors", "1"),
        ]

        stored = await repository.get_integration(integration.id)
        assert stored.sync_status == SyncStatus.IDLE
        assert stored.sync_error is None
        assert stored.last_sync_at is not None

        second = await engine.sync_organization_data(ORG, stored)

        assert second.donors.unchanged == 5
        assert second.donors.created == second.donors.updated == 0
        assert second.donations.unchanged == 2
        assert await _count(session_factory, DonorModel) == 5

    async def test_outcome_counts_add_up_to_total(self, engine_for, integration):
        adapter = FakeAdapter(
            donor_pages=[[make_donor("D1"), make_donor("D1", email="dup@example.org")]],
            donation_pages=[[make_donation("G1", "D1"), make_donation("G2", "NOPE")]],
        )

        result = await engine_for(adapter).sync_organization_data(ORG, integration)

        for totals in (result.donors, result.donations):
            assert totals.total == (
                totals.created + totals.updated + totals.unchanged + totals.failed
            )
        assert result.donors.total == 1
        assert result.donations.failed == 1
        assert result.donations.errors[0].external_id == "G2"

    async def test_record_failures_do_not_fail_the_run(self, engine_for, integration, repository):
        adapter = FakeAdapter(
            donor_pages=[[make_donor("D1")]],
            donation_pages=[[make_donation("G1", "MISSING"), make_donation("G2", "D1")]],
        )

        result = await engine_for(adapter).sync_organization_data(ORG, integration)

        assert result.donations.failed == 1
        assert result.donations.created == 1
        stored = await repository.get_integration(integration.id)
        assert stored.sync_status == SyncStatus.IDLE

    async def test_projects_synced_between_donors_and_donations(
        self, engine_for, integration, session_factory
    ):
        adapter = FakeProjectAdapter(
            donor_pages=[[make_donor("D1")]],
            project_pages=[[make_project("C1")]],
            donation_pages=[[make_donation("G1", "D1", campaign_external_id="C1")]],
        )

        result = await engine_for(adapter).sync_organization_data(ORG, integration)

        assert [entity for entity, _ in adapter.calls] == ["donors", "projects", "donations"]
        assert result.projects is not None
        assert result.projects.created == 1
        # campaign resolved, so nothing lands in the default bucket
        async for session in session_factory():
            donation = (await session.execute(select(DonationModel))).scalar_one()
            project = await session.get(ProjectModel, donation.project_id)
            assert project.external_id == f"{PROVIDER}_C1"

    async def test_bucket_not_created_without_donations(
        self, engine_for, integration, session_factory
    ):
        adapter = FakeAdapter(donor_pages=[[make_donor("D1")]], donation_pages=[[]])

        await engine_for(adapter).sync_organization_data(ORG, integration)

        assert await _count(session_factory, ProjectModel, external=True) == 0


# ── State Machine ──────────────────────────────────────────────────────────


class TestStateMachine:
    async def test_rejects_concurrent_sync_without_vendor_calls(
        self, engine_for, integration, repository
    ):
        assert await repository.try_begin_sync(integration.id) is True
        adapter = FakeAdapter(donor_pages=[[make_donor("D1")]])

        with pytest.raises(SyncAlreadyRunningError):
            await engine_for(adapter).sync_organization_data(ORG, integration)

        assert adapter.calls == []
        stored = await repository.get_integration(integration.id)
        assert stored.sync_status == SyncStatus.SYNCING

    async def test_simultaneous_requests_admit_one(self, engine_for, integration):
        adapter = FakeAdapter(donor_pages=[[make_donor("D1")]])
        engine = engine_for(adapter)

        results = await asyncio.gather(
            engine.sync_organization_data(ORG, integration),
            engine.sync_organization_data(ORG, integration),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, SyncAlreadyRunningError)]
        assert len(rejected) == 1

    async def test_fetch_error_is_fatal_and_keeps_committed_pages(
        self, engine_for, integration, repository, session_factory
    ):
        adapter = FakeAdapter(
            donor_pages=[[make_donor("D1"), make_donor("D2"), make_donor("D3")], [make_donor("D4")]],
            errors={("donors", 1): CRMAPIError(PROVIDER, "Failed to fetch donors: 500", 500)},
        )

        with pytest.raises(CRMAPIError):
            await engine_for(adapter).sync_organization_data(ORG, integration)

        stored = await repository.get_integration(integration.id)
        assert stored.sync_status == SyncStatus.ERROR
        assert stored.sync_error == "Failed to fetch donors: 500"
        assert await _count(session_factory, DonorModel) == 3

    async def test_error_state_can_sync_again(self, engine_for, integration, repository):
        await repository.mark_sync_failed(integration.id, "previous failure")
        adapter = FakeAdapter(donor_pages=[[make_donor("D1")]])

        await engine_for(adapter).sync_organization_data(ORG, integration)

        stored = await repository.get_integration(integration.id)
        assert stored.sync_status == SyncStatus.IDLE
        assert stored.sync_error is None

    async def test_more_pages_without_token_is_fatal(self, engine_for, integration, repository):
        adapter = FakeAdapter()

        async def broken_page(access_token, params, metadata=None):
            return PaginatedResponse(data=[], has_more=True, next_page_token=None)

        adapter.fetch_donors = broken_page

        with pytest.raises(CRMAPIError, match="without a page token"):
            await engine_for(adapter).sync_organization_data(ORG, integration)

        stored = await repository.get_integration(integration.id)
        assert stored.sync_status == SyncStatus.ERROR

    async def test_cancellation_is_recorded(self, engine_for, integration, repository):
        adapter = FakeAdapter(errors={("donors", 0): asyncio.CancelledError()})

        with pytest.raises(asyncio.CancelledError):
            await engine_for(adapter).sync_organization_data(ORG, integration)

        stored = await repository.get_integration(integration.id)
        assert stored.sync_status == SyncStatus.ERROR
        assert stored.sync_error == "sync cancelled"


# ── Combined Mode ──────────────────────────────────────────────────────────


class TestCombinedMode:
    async def test_donors_and_their_gifts_per_page(self, engine_for, integration, session_factory):
        donor = DonorWithDonations(
            **make_donor("D1").model_dump(),
            donations=[make_donation("G1", "D1"), make_donation("G2", "D1")],
        )
        adapter = FakeCombinedAdapter(
            combined_pages=[[donor], [DonorWithDonations(**make_donor("D2").model_dump())]],
            project_pages=[[make_project("C1")]],
        )

        result = await engine_for(adapter).sync_organization_data(
            ORG, integration, combined_mode=True
        )

        assert result.mode == SyncMode.COMBINED
        assert [entity for entity, _ in adapter.calls] == ["projects", "combined", "combined"]
        assert result.donors.created == 2
        assert result.donations.created == 2
        assert result.projects.created == 1
        assert await _count(session_factory, DonationModel) == 2

    async def test_falls_back_to_separate_mode(self, engine_for, integration):
        adapter = FakeAdapter(
            donor_pages=[[make_donor("D1")]],
            donation_pages=[[make_donation("G1", "D1")]],
        )

        result = await engine_for(adapter).sync_organization_data(
            ORG, integration, combined_mode=True
        )

        assert result.mode == SyncMode.SEPARATE
        assert result.donations.created == 1


# ── Records the Adapter Cannot Map ─────────────────────────────────────────


def _blackbaud_engine(engine_for, handler) -> SyncEngine:
    adapter = BlackbaudAdapter(
        client_id="bb-client",
        client_secret="bb-secret",
        subscription_key="bb-key",
        transport=httpx.MockTransport(handler),
    )
    return engine_for(adapter)


class TestRejectedRecords:
    async def test_undated_gift_is_counted_and_the_rest_are_stored(
        self, engine_for, repository, session_factory
    ):
        integration = await connect_integration(repository, ORG, "blackbaud")

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/constituent/v1/constituents":
                return httpx.Response(
                    200,
                    json={"count": 1, "value": [{"id": "c1", "name": {"last": "Lovelace"}}]},
                )
            gifts = [
                {"id": "g1", "constituent_id": "c1", "amount": {"value": 10}, "date": "2024-01-05"},
                {"id": "g2", "constituent_id": "c1", "amount": {"value": 20}},
                {"id": "g3", "constituent_id": "c1", "amount": {"value": 30}, "date": "2024-02-05"},
            ]
            return httpx.Response(200, json={"count": 3, "value": gifts})

        result = await _blackbaud_engine(engine_for, handler).sync_organization_data(
            ORG, integration
        )

        assert result.donations.total == 3
        assert result.donations.created == 2
        assert result.donations.failed == 1
        (error,) = result.donations.errors
        assert error.external_id == "g2"
        assert "no usable date" in error.error_message

        stored = await repository.get_integration(integration.id)
        assert stored.sync_status == SyncStatus.IDLE
        assert stored.sync_error is None
        assert await _count(session_factory, DonationModel) == 2

    async def test_donor_without_id_is_counted(self, engine_for, repository):
        integration = await connect_integration(repository, ORG, "blackbaud")

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/constituent/v1/constituents":
                constituents = [
                    {"id": "c1", "name": {"last": "Lovelace"}},
                    {"name": {"last": "Nobody"}},
                ]
                return httpx.Response(200, json={"count": 2, "value": constituents})
            return httpx.Response(200, json={"count": 0, "value": []})

        result = await _blackbaud_engine(engine_for, handler).sync_organization_data(
            ORG, integration
        )

        assert (result.donors.total, result.donors.created, result.donors.failed) == (2, 1, 1)
        assert result.donors.errors[0].external_id == "<missing id>"

    async def test_combined_page_gift_failures_count_as_donations(self, engine_for, integration):
        class RejectingCombinedAdapter(FakeCombinedAdapter):
            async def fetch_donors_with_donations(self, access_token, params, metadata=None):
                return PaginatedResponse[DonorWithDonations](
                    data=[
                        DonorWithDonations(
                            **make_donor("D1").model_dump(),
                            donations=[make_donation("G1", "D1")],
                        )
                    ],
                    donation_failures=[
                        SyncRecordError(external_id="G2", error_message="no usable date")
                    ],
                )

        result = await engine_for(RejectingCombinedAdapter()).sync_organization_data(
            ORG, integration, combined_mode=True
        )

        assert result.donors.total == result.donors.created == 1
        assert (result.donations.total, result.donations.created, result.donations.failed) == (
            2,
            1,
            1,
        )
        assert result.donations.errors[0].external_id == "G2"
