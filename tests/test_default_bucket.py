"""Tests for DefaultBucketResolver -- one external project per organization."""

from __future__ import annotations

import asyncio

from sqlalchemy import select

from src.givesync.crm.default_bucket import DefaultBucketResolver
from src.givesync.crm.models import ProjectModel


async def _buckets(session_factory, organization_id: str) -> list[ProjectModel]:
    async for session in session_factory():
        result = await session.execute(
            select(ProjectModel).where(
                ProjectModel.organization_id == organization_id,
                ProjectModel.external.is_(True),
            )
        )
        return list(result.scalars().all())


class TestDefaultBucketResolver:
    async def test_creates_bucket_once(self, session_factory):
        resolver = DefaultBucketResolver(session_factory, "Salesforce")

        ids = [await resolver.resolve("org-1") for _ in range(5)]

        assert len(set(ids)) == 1
        (bucket,) = await _buckets(session_factory, "org-1")
        assert bucket.id == ids[0]
        assert bucket.name == "External donations from Salesforce"
        assert bucket.description == "Donations synced from Salesforce"
        assert bucket.external is True

    async def test_reuses_existing_bucket_across_runs(self, session_factory):
        first = await DefaultBucketResolver(session_factory, "Blackbaud").resolve("org-1")
        second = await DefaultBucketResolver(session_factory, "Salesforce").resolve("org-1")

        assert first == second
        assert len(await _buckets(session_factory, "org-1")) == 1

    async def test_one_bucket_per_organization(self, session_factory):
        resolver = DefaultBucketResolver(session_factory, "Salesforce")

        first = await resolver.resolve("org-1")
        second = await resolver.resolve("org-2")

        assert first != second

    async def test_concurrent_resolvers_share_one_bucket(self, session_factory):
        resolvers = [DefaultBucketResolver(session_factory, "Salesforce") for _ in range(4)]

        ids = await asyncio.gather(*(resolver.resolve("org-1") for resolver in resolvers))

        assert len(set(ids)) == 1
        assert len(await _buckets(session_factory, "org-1")) == 1

    async def test_lost_insert_race_returns_winner(self, session_factory):
        winner = await DefaultBucketResolver(session_factory, "Salesforce").resolve("org-1")

        loser = DefaultBucketResolver(session_factory, "Salesforce")
        # Skip the initial lookup so the INSERT hits the unique index
        project_id = await loser._create("org-1")

        assert project_id == winner
        assert len(await _buckets(session_factory, "org-1")) == 1
