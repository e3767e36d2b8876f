"""Outbound push-sync -- writes a locally created/edited record to the CRM.

Best-effort companion to a local write: every push returns the new scoped
external id on success and None when the organization has no active
integration, the provider cannot accept the record type, or the upload
failed. Failures are logged, never raised.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from src.givesync.crm.adapter import DonationUploader, DonorUploader, ProjectUploader
from src.givesync.crm.field_mapping import (
    derive_display_name,
    parse_address,
    scoped_external_id,
    unscoped_external_id,
)
from src.givesync.crm.manager import IntegrationManager
from src.givesync.crm.models import DonationModel, DonorModel, ProjectModel
from src.givesync.crm.schemas import (
    Address,
    CanonicalDonation,
    CanonicalDonor,
    CanonicalProject,
)

logger = structlog.get_logger(__name__)


def _donor_address(donor: DonorModel) -> Address | None:
    """Structured columns first; rows written before they existed only have the joined string."""
    address = Address(
        street=donor.street,
        city=donor.city,
        state=donor.state,
        postal_code=donor.postal_code,
        country=donor.country,
    )
    if not address.is_empty():
        return address
    return parse_address(donor.address)


class OutboundSyncService:
    """Pushes single local records to the organization's active CRM.

    Args:
        manager: Integration manager (active integration lookup, provider
            registry and token refresh).
    """

    def __init__(self, manager: IntegrationManager) -> None:
        self._manager = manager

    async def push_donor(self, organization_id: str, donor: DonorModel) -> str | None:
        """Create or update the donor in the CRM."""
        return await self._push(
            organization_id,
            DonorUploader,
            "upload_donors",
            "donor",
            str(donor.id) if donor.id else None,
            lambda provider: CanonicalDonor(
                external_id=unscoped_external_id(provider, donor.external_id),
                first_name=donor.first_name or "",
                last_name=donor.last_name or "",
                display_name=derive_display_name(
                    donor.display_name, donor.first_name, donor.last_name
                ),
                email=donor.email or "",
                phone=donor.phone,
                address=_donor_address(donor),
                is_couple=bool(donor.is_couple),
                his_first_name=donor.his_first_name,
                his_last_name=donor.his_last_name,
                her_first_name=donor.her_first_name,
                her_last_name=donor.her_last_name,
            ),
        )

    async def push_project(self, organization_id: str, project: ProjectModel) -> str | None:
        """Create or update the project in the CRM."""
        return await self._push(
            organization_id,
            ProjectUploader,
            "upload_projects",
            "project",
            str(project.id) if project.id else None,
            lambda provider: CanonicalProject(
                external_id=unscoped_external_id(provider, project.external_id),
                name=project.name,
                description=project.description,
                active=bool(project.active),
                goal=project.goal,
                tags=project.tags if isinstance(project.tags, list) else None,
            ),
        )

    async def push_donation(
        self,
        organization_id: str,
        donation: DonationModel,
        donor_external_id: str,
        project_external_id: str | None = None,
    ) -> str | None:
        """Create or update the donation in the CRM.

        Args:
            organization_id: Owning organization.
            donation: Local donation row.
            donor_external_id: Scoped external id of the donation's donor.
            project_external_id: Scoped external id of its project, if synced.
        """
        return await self._push(
            organization_id,
            DonationUploader,
            "upload_donations",
            "donation",
            str(donation.id) if donation.id else None,
            lambda provider: CanonicalDonation(
                external_id=unscoped_external_id(provider, donation.external_id),
                donor_external_id=unscoped_external_id(provider, donor_external_id),
                amount=donation.amount,
                currency=donation.currency,
                date=donation.date,
                designation=donation.designation,
                campaign_external_id=(
                    unscoped_external_id(provider, project_external_id) or None
                ),
            ),
        )

    async def _push(
        self,
        organization_id: str,
        capability: type,
        method: str,
        entity: str,
        local_id: str | None,
        build_record: Callable[[str], Any],
    ) -> str | None:
        """Look up the integration, check the capability and upload one record."""
        log = logger.bind(organization_id=organization_id, entity=entity, local_id=local_id)
        try:
            integration = await self._manager.get_active_integration(organization_id)
            if integration is None:
                log.debug("outbound_sync.no_active_integration")
                return None

            adapter = self._manager.get_provider(integration.provider)
            if not isinstance(adapter, capability):
                log.debug("outbound_sync.upload_not_supported", provider=integration.provider)
                return None

            integration = await self._manager.ensure_fresh_token(integration)
            record = build_record(integration.provider)
            uploaded = await getattr(adapter, method)(
                integration.access_token, [record], integration.metadata
            )
            if not uploaded:
                log.warning("outbound_sync.upload_returned_nothing", provider=integration.provider)
                return None

            external_id = scoped_external_id(integration.provider, uploaded[0].external_id)
            log.info(
                "outbound_sync.pushed",
                provider=integration.provider,
                external_id=external_id,
                is_update=bool(record.external_id),
            )
            return external_id
        except Exception as exc:
            log.error("outbound_sync.push_failed", error=str(exc), exc_info=True)
            return None
