"""Test fixtures for the CRM sync engine.

Provides:
- A file-backed SQLite database (aiosqlite) with all tables created, so
  concurrent sessions see each other's commits
- session_factory: the async-generator session callable the repositories,
  BatchUpserter and DefaultBucketResolver expect
- settings: Settings with test-friendly sync tuning
- Small builders for canonical records and integrations
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

import src.givesync.crm.models  # noqa: F401  (registers tables on Base.metadata)
from src.givesync.config import Settings
from src.givesync.core.database import Base
from src.givesync.crm.repository import IntegrationRepository
from src.givesync.crm.schemas import (
    Address,
    CanonicalDonation,
    CanonicalDonor,
    CanonicalProject,
    OAuthTokens,
)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Async engine over a fresh SQLite file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'givesync.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session callable with the same shape as core.database.get_session."""

    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return factory


@pytest.fixture
def repository(session_factory) -> IntegrationRepository:
    return IntegrationRepository(session_factory)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite://",
        SYNC_PAGE_SIZE=3,
        SYNC_UPDATE_CHUNK_SIZE=500,
        SYNC_MAX_CONCURRENCY=2,
        SYNC_COMBINED_MODE=False,
        BLACKBAUD_CLIENT_ID="bb-client",
        BLACKBAUD_CLIENT_SECRET="bb-secret",
        BLACKBAUD_SUBSCRIPTION_KEY="bb-key",
        SALESFORCE_CLIENT_ID="sf-client",
        SALESFORCE_CLIENT_SECRET="sf-secret",
    )


# ── Builders ───────────────────────────────────────────────────────────────


def make_donor(external_id: str, **overrides) -> CanonicalDonor:
    defaults = {
        "external_id": external_id,
        "first_name": "Ada",
        "last_name": f"Donor {external_id}",
        "email": f"{external_id}@example.org",
        "address": Address(street="1 Main St", city="Springfield", state="IL"),
    }
    defaults.update(overrides)
    return CanonicalDonor(**defaults)


def make_donation(external_id: str, donor_external_id: str, **overrides) -> CanonicalDonation:
    defaults = {
        "external_id": external_id,
        "donor_external_id": donor_external_id,
        "amount": 2500,
        "currency": "USD",
        "date": datetime(2026, 3, 1, tzinfo=timezone.utc),
        "designation": "Annual Fund",
    }
    defaults.update(overrides)
    return CanonicalDonation(**defaults)


def make_project(external_id: str, **overrides) -> CanonicalProject:
    defaults = {
        "external_id": external_id,
        "name": f"Campaign {external_id}",
        "active": True,
        "goal": 1_000_000,
    }
    defaults.update(overrides)
    return CanonicalProject(**defaults)


async def connect_integration(
    repository: IntegrationRepository,
    organization_id: str = "org-1",
    provider: str = "salesforce",
    **token_overrides,
):
    """Persist an integration the way an OAuth callback would."""
    tokens = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": datetime(2099, 1, 1, tzinfo=timezone.utc),
        "metadata": {"instance_url": "https://acme.my.salesforce.com"},
    }
    tokens.update(token_overrides)
    return await repository.save_integration(organization_id, provider, OAuthTokens(**tokens))
