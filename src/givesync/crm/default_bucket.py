"""Default bucket resolver -- the per-organization project for unlinked donations.

Get-or-create of the organization's single external=true project. The
partial unique index uq_project_org_default_bucket makes it a singleton at
the storage layer: concurrent creators race on the INSERT and the loser
re-reads the winner's row.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.givesync.crm.models import ProjectModel

logger = structlog.get_logger(__name__)

DEFAULT_BUCKET_NAME = "External donations from {provider}"


class DefaultBucketResolver:
    """Resolves (creating if needed) an organization's default bucket project.

    One instance per sync run; the resolved id is memoised per organization.

    Args:
        session_factory: Async callable yielding AsyncSession instances.
        provider_display_name: Used in the name and description of a newly
            created bucket.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        provider_display_name: str,
    ) -> None:
        self._session_factory = session_factory
        self._provider_display_name = provider_display_name
        self._resolved: dict[str, uuid.UUID] = {}

    async def resolve(self, organization_id: str) -> uuid.UUID:
        """Return the id of the organization's default bucket project."""
        if organization_id in self._resolved:
            return self._resolved[organization_id]

        project_id = await self._find(organization_id)
        if project_id is None:
            project_id = await self._create(organization_id)

        self._resolved[organization_id] = project_id
        return project_id

    async def _find(self, organization_id: str) -> uuid.UUID | None:
        async for session in self._session_factory():
            stmt = select(ProjectModel.id).where(
                ProjectModel.organization_id == organization_id,
                ProjectModel.external.is_(True),
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()
        return None

    async def _create(self, organization_id: str) -> uuid.UUID:
        """Insert the bucket; on a unique violation, return the winner's row."""
        async for session in self._session_factory():
            project = ProjectModel(
                id=uuid.uuid4(),
                organization_id=organization_id,
                name=DEFAULT_BUCKET_NAME.format(provider=self._provider_display_name),
                description=f"Donations synced from {self._provider_display_name}",
                active=True,
                external=True,
            )
            try:
                async with session.begin():
                    session.add(project)
            except IntegrityError:
                logger.info(
                    "default_bucket.create_race_lost",
                    organization_id=organization_id,
                )
                existing = await self._find(organization_id)
                if existing is None:
                    raise
                return existing

            logger.info(
                "default_bucket.created",
                organization_id=organization_id,
                project_id=str(project.id),
            )
            return project.id
        raise RuntimeError("session factory yielded no session")
