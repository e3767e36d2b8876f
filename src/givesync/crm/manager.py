"""Integration manager -- provider registry, token lifecycle and sync entry points.

The provider registry is built once at process start by
build_provider_registry() and injected; the manager owns no global state.
A sync request against an integration that is already syncing is rejected
before the token is looked at. Otherwise the stored access token is checked
and, if expired, refreshed and persisted. A failed refresh fails the request
without the integration ever entering syncing.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.givesync.config import Settings
from src.givesync.crm.adapter import CRMAdapter
from src.givesync.crm.blackbaud import BlackbaudAdapter
from src.givesync.crm.default_bucket import DefaultBucketResolver
from src.givesync.crm.exceptions import (
    IntegrationNotFoundError,
    ProviderNotFoundError,
    SyncAlreadyRunningError,
    TokenRefreshError,
)
from src.givesync.crm.repository import IntegrationRepository
from src.givesync.crm.salesforce import SalesforceAdapter
from src.givesync.crm.schemas import AggregatedSyncResult, IntegrationRead, SyncStatus
from src.givesync.crm.sync import SyncEngine
from src.givesync.crm.upsert import BatchUpserter

logger = structlog.get_logger(__name__)


def build_provider_registry(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, CRMAdapter]:
    """Instantiate every supported provider adapter, keyed by provider name."""
    adapters: list[CRMAdapter] = [
        BlackbaudAdapter(
            client_id=settings.BLACKBAUD_CLIENT_ID,
            client_secret=settings.BLACKBAUD_CLIENT_SECRET,
            subscription_key=settings.BLACKBAUD_SUBSCRIPTION_KEY,
            default_currency=settings.SYNC_DEFAULT_CURRENCY,
            transport=transport,
        ),
        SalesforceAdapter(
            client_id=settings.SALESFORCE_CLIENT_ID,
            client_secret=settings.SALESFORCE_CLIENT_SECRET,
            use_sandbox=settings.SALESFORCE_USE_SANDBOX,
            api_version=settings.SALESFORCE_API_VERSION,
            default_currency=settings.SYNC_DEFAULT_CURRENCY,
            transport=transport,
        ),
    ]
    return {adapter.name: adapter for adapter in adapters}


def build_integration_manager(
    settings: Settings,
    session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
) -> IntegrationManager:
    """Wire the registry, integration store and upserter into a manager."""
    return IntegrationManager(
        registry=build_provider_registry(settings),
        repository=IntegrationRepository(session_factory),
        upserter=BatchUpserter(session_factory, chunk_size=settings.SYNC_UPDATE_CHUNK_SIZE),
        bucket_resolver_factory=lambda display_name: DefaultBucketResolver(
            session_factory, display_name
        ),
        settings=settings,
    )


class IntegrationManager:
    """Entry point for connecting providers and running syncs.

    Args:
        registry: Provider name -> adapter.
        repository: Integration store; the only writer of integration rows.
        upserter: Batch upserter shared by all sync runs.
        bucket_resolver_factory: Builds a per-run DefaultBucketResolver from
            the provider display name.
        settings: Page size, combined-mode default and concurrency bound.
    """

    def __init__(
        self,
        registry: dict[str, CRMAdapter],
        repository: IntegrationRepository,
        upserter: BatchUpserter,
        bucket_resolver_factory: Callable[[str], DefaultBucketResolver],
        settings: Settings,
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._upserter = upserter
        self._bucket_resolver_factory = bucket_resolver_factory
        self._settings = settings

    # ── Registry ───────────────────────────────────────────────────────────

    def get_provider(self, name: str) -> CRMAdapter:
        """Look up an adapter by provider name."""
        adapter = self._registry.get(name)
        if adapter is None:
            raise ProviderNotFoundError(name)
        return adapter

    def available_providers(self) -> list[dict[str, str]]:
        """List registered providers as {"name", "display_name"} pairs."""
        return [
            {"name": adapter.name, "display_name": adapter.display_name}
            for adapter in self._registry.values()
        ]

    # ── Integrations ───────────────────────────────────────────────────────

    async def get_integration(self, organization_id: str, provider: str) -> IntegrationRead:
        """Fetch the active integration or raise IntegrationNotFoundError."""
        integration = await self._repository.get_active_integration(organization_id, provider)
        if integration is None:
            raise IntegrationNotFoundError(organization_id, provider)
        return integration

    async def get_active_integration(self, organization_id: str) -> IntegrationRead | None:
        """The organization's active integration, if any (used by push-sync)."""
        return await self._repository.get_active_integration_for_organization(organization_id)

    async def ensure_fresh_token(self, integration: IntegrationRead) -> IntegrationRead:
        """Refresh and persist the access token if it has expired.

        Raises:
            TokenRefreshError: Refresh failed; the failure is recorded on the
                integration unless a sync is currently running.
        """
        if not integration.is_token_expired():
            return integration

        adapter = self.get_provider(integration.provider)
        log = logger.bind(
            organization_id=integration.organization_id,
            provider=integration.provider,
            integration_id=integration.id,
        )

        try:
            if not integration.refresh_token:
                raise ValueError("no refresh token stored")
            tokens = await adapter.refresh_access_token(integration.refresh_token)
        except Exception as exc:
            log.error("integration.token_refresh_failed", error=str(exc), exc_info=True)
            error = TokenRefreshError(integration.provider)
            await self._repository.mark_sync_failed(
                integration.id, str(error), only_if_not_syncing=True
            )
            raise error from exc

        log.info("integration.token_refreshed", expires_at=str(tokens.expires_at))
        return await self._repository.update_tokens(integration.id, tokens)

    # ── Sync ───────────────────────────────────────────────────────────────

    def _engine_for(self, adapter: CRMAdapter) -> SyncEngine:
        return SyncEngine(
            adapter=adapter,
            repository=self._repository,
            upserter=self._upserter,
            bucket_resolver_factory=self._bucket_resolver_factory,
            page_size=self._settings.SYNC_PAGE_SIZE,
        )

    async def sync_data(
        self,
        organization_id: str,
        provider: str,
        combined_mode: bool | None = None,
    ) -> AggregatedSyncResult:
        """Sync one organization's data from one provider.

        Args:
            organization_id: Organization to sync.
            provider: Provider name.
            combined_mode: Override SYNC_COMBINED_MODE for this run.

        Raises:
            SyncAlreadyRunningError: The integration is already syncing; no
                token refresh or vendor call is made.
        """
        adapter = self.get_provider(provider)
        integration = await self.get_integration(organization_id, provider)
        if integration.sync_status == SyncStatus.SYNCING:
            logger.warning(
                "integration.sync_already_running",
                organization_id=organization_id,
                provider=provider,
                integration_id=integration.id,
            )
            raise SyncAlreadyRunningError(integration.id)
        integration = await self.ensure_fresh_token(integration)

        if combined_mode is None:
            combined_mode = self._settings.SYNC_COMBINED_MODE

        engine = self._engine_for(adapter)
        return await engine.sync_organization_data(organization_id, integration, combined_mode)

    async def sync_all_active(self) -> dict[str, AggregatedSyncResult | None]:
        """Sync every active integration, bounded by SYNC_MAX_CONCURRENCY.

        Integrations are independent: one failing does not stop the others.

        Returns:
            Integration id -> result, or None for runs that failed.
        """
        integrations = await self._repository.list_active_integrations()
        semaphore = asyncio.Semaphore(max(1, self._settings.SYNC_MAX_CONCURRENCY))

        async def run_one(integration: IntegrationRead) -> AggregatedSyncResult | None:
            async with semaphore:
                try:
                    return await self.sync_data(integration.organization_id, integration.provider)
                except Exception as exc:
                    logger.warning(
                        "integration.scheduled_sync_failed",
                        organization_id=integration.organization_id,
                        provider=integration.provider,
                        error=str(exc),
                    )
                    return None

        results = await asyncio.gather(*(run_one(integration) for integration in integrations))
        return {integration.id: result for integration, result in zip(integrations, results)}

    # ── OAuth ──────────────────────────────────────────────────────────────

    def get_authorization_url(self, provider: str, state: str, redirect_uri: str) -> str:
        return self.get_provider(provider).get_authorization_url(state, redirect_uri)

    async def handle_oauth_callback(
        self,
        organization_id: str,
        provider: str,
        code: str,
        redirect_uri: str,
        state: str | None = None,
    ) -> IntegrationRead:
        """Exchange the authorization code and persist the resulting tokens."""
        adapter = self.get_provider(provider)
        tokens = await adapter.exchange_auth_code(code, redirect_uri, state)
        integration = await self._repository.save_integration(organization_id, provider, tokens)
        logger.info(
            "integration.connected",
            organization_id=organization_id,
            provider=provider,
            integration_id=integration.id,
        )
        return integration

    async def disconnect(self, organization_id: str, provider: str) -> None:
        """Deactivate the organization's integration. The row is kept."""
        integration = await self.get_integration(organization_id, provider)
        await self._repository.deactivate(integration.id)
