"""Integration repository -- the only writer of organization_integrations rows.

Provides IntegrationRepository with the session_factory callable pattern.
Status transitions are single atomic UPDATE statements keyed by integration
id; idle->syncing is conditional on the row not already being in syncing,
which implements the single-flight guarantee without an external lock.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.givesync.crm.models import OrganizationIntegrationModel
from src.givesync.crm.schemas import IntegrationRead, OAuthTokens, SyncStatus

logger = structlog.get_logger(__name__)


def _model_to_integration(model: OrganizationIntegrationModel) -> IntegrationRead:
    """Convert OrganizationIntegrationModel to IntegrationRead schema."""
    return IntegrationRead(
        id=str(model.id),
        organization_id=model.organization_id,
        provider=model.provider,
        access_token=model.access_token,
        refresh_token=model.refresh_token,
        token_expires_at=model.token_expires_at,
        metadata=model.metadata_json or {},
        sync_status=SyncStatus(model.sync_status),
        sync_error=model.sync_error,
        last_sync_at=model.last_sync_at,
        is_active=model.is_active,
    )


class IntegrationRepository:
    """Async persistence for organization CRM integrations.

    Args:
        session_factory: Async callable yielding AsyncSession instances.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    # ── Reads ──────────────────────────────────────────────────────────────

    async def get_integration(self, integration_id: str) -> IntegrationRead | None:
        """Fetch an integration by id, active or not."""
        async for session in self._session_factory():
            model = await session.get(OrganizationIntegrationModel, uuid.UUID(integration_id))
            return _model_to_integration(model) if model else None

    async def get_active_integration(
        self, organization_id: str, provider: str
    ) -> IntegrationRead | None:
        """Fetch the active integration for an (organization, provider) pair."""
        async for session in self._session_factory():
            stmt = select(OrganizationIntegrationModel).where(
                OrganizationIntegrationModel.organization_id == organization_id,
                OrganizationIntegrationModel.provider == provider,
                OrganizationIntegrationModel.is_active.is_(True),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_integration(model) if model else None

    async def get_active_integration_for_organization(
        self, organization_id: str
    ) -> IntegrationRead | None:
        """Fetch the organization's first active integration (oldest connection)."""
        async for session in self._session_factory():
            stmt = (
                select(OrganizationIntegrationModel)
                .where(
                    OrganizationIntegrationModel.organization_id == organization_id,
                    OrganizationIntegrationModel.is_active.is_(True),
                )
                .order_by(OrganizationIntegrationModel.created_at.asc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_integration(model) if model else None

    async def list_active_integrations(self) -> list[IntegrationRead]:
        """List every active integration across organizations."""
        async for session in self._session_factory():
            stmt = (
                select(OrganizationIntegrationModel)
                .where(OrganizationIntegrationModel.is_active.is_(True))
                .order_by(
                    OrganizationIntegrationModel.organization_id,
                    OrganizationIntegrationModel.provider,
                )
            )
            result = await session.execute(stmt)
            return [_model_to_integration(model) for model in result.scalars().all()]
        return []

    # ── Tokens ─────────────────────────────────────────────────────────────

    async def save_integration(
        self, organization_id: str, provider: str, tokens: OAuthTokens
    ) -> IntegrationRead:
        """Connect (or reconnect) an organization to a provider.

        Reconnecting reactivates the existing row and resets its sync state.
        """
        async for session in self._session_factory():
            stmt = select(OrganizationIntegrationModel).where(
                OrganizationIntegrationModel.organization_id == organization_id,
                OrganizationIntegrationModel.provider == provider,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()

            if model is None:
                model = OrganizationIntegrationModel(
                    id=uuid.uuid4(),
                    organization_id=organization_id,
                    provider=provider,
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    token_expires_at=tokens.expires_at,
                    metadata_json=dict(tokens.metadata),
                    sync_status=SyncStatus.IDLE.value,
                    is_active=True,
                )
                session.add(model)
            else:
                model.access_token = tokens.access_token
                model.refresh_token = tokens.refresh_token
                model.token_expires_at = tokens.expires_at
                model.metadata_json = {**(model.metadata_json or {}), **tokens.metadata}
                model.sync_status = SyncStatus.IDLE.value
                model.sync_error = None
                model.is_active = True

            await session.commit()
            await session.refresh(model)
            logger.info(
                "integration.saved",
                organization_id=organization_id,
                provider=provider,
                integration_id=str(model.id),
            )
            return _model_to_integration(model)

    async def update_tokens(self, integration_id: str, tokens: OAuthTokens) -> IntegrationRead:
        """Persist refreshed tokens. A refresh without a new refresh token keeps the old one."""
        async for session in self._session_factory():
            model = await session.get(OrganizationIntegrationModel, uuid.UUID(integration_id))
            if model is None:
                raise ValueError(f"Integration {integration_id} not found")

            model.access_token = tokens.access_token
            if tokens.refresh_token:
                model.refresh_token = tokens.refresh_token
            model.token_expires_at = tokens.expires_at
            if tokens.metadata:
                model.metadata_json = {**(model.metadata_json or {}), **tokens.metadata}

            await session.commit()
            await session.refresh(model)
            return _model_to_integration(model)

    # ── Sync Status ────────────────────────────────────────────────────────

    async def try_begin_sync(self, integration_id: str) -> bool:
        """Atomically move an integration into syncing.

        Returns False when the integration is already syncing (or inactive).
        """
        async for session in self._session_factory():
            stmt = (
                update(OrganizationIntegrationModel)
                .where(
                    OrganizationIntegrationModel.id == uuid.UUID(integration_id),
                    OrganizationIntegrationModel.sync_status != SyncStatus.SYNCING.value,
                    OrganizationIntegrationModel.is_active.is_(True),
                )
                .values(sync_status=SyncStatus.SYNCING.value, sync_error=None)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1
        return False

    async def mark_sync_succeeded(self, integration_id: str) -> None:
        """syncing -> idle, stamping last_sync_at and clearing sync_error."""
        async for session in self._session_factory():
            stmt = (
                update(OrganizationIntegrationModel)
                .where(OrganizationIntegrationModel.id == uuid.UUID(integration_id))
                .values(
                    sync_status=SyncStatus.IDLE.value,
                    sync_error=None,
                    last_sync_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            await session.execute(stmt)
            await session.commit()

    async def mark_sync_failed(
        self,
        integration_id: str,
        message: str,
        only_if_not_syncing: bool = False,
    ) -> bool:
        """Record a fatal failure.

        Args:
            integration_id: Integration to update.
            message: Error message persisted to sync_error.
            only_if_not_syncing: Leave a concurrently running sync untouched
                (used for failures raised before a run was admitted).

        Returns:
            True if the row was updated.
        """
        async for session in self._session_factory():
            stmt = update(OrganizationIntegrationModel).where(
                OrganizationIntegrationModel.id == uuid.UUID(integration_id)
            )
            if only_if_not_syncing:
                stmt = stmt.where(
                    OrganizationIntegrationModel.sync_status != SyncStatus.SYNCING.value
                )
            stmt = stmt.values(
                sync_status=SyncStatus.ERROR.value, sync_error=message
            ).execution_options(synchronize_session=False)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1
        return False

    async def deactivate(self, integration_id: str) -> None:
        """Disconnect an integration. Rows are never deleted."""
        async for session in self._session_factory():
            stmt = (
                update(OrganizationIntegrationModel)
                .where(OrganizationIntegrationModel.id == uuid.UUID(integration_id))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            await session.execute(stmt)
            await session.commit()
            logger.info("integration.deactivated", integration_id=integration_id)
