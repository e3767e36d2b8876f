"""CRM adapter abstract base classes -- the interface every donor CRM provider implements.

Every provider (Blackbaud SKY API, Salesforce Nonprofit Cloud, future
vendors) implements CRMAdapter. Optional capabilities are separate narrow
ABCs an adapter subclasses only when the vendor supports them; the
SyncEngine and OutboundSyncService test for them with isinstance() and skip
the step otherwise.

All fetch operations are scoped by an access token and the integration's
provider-specific metadata (e.g. the Salesforce instance URL).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.givesync.crm.schemas import (
    CanonicalDonation,
    CanonicalDonor,
    CanonicalProject,
    DonorWithDonations,
    OAuthTokens,
    PaginatedResponse,
    PaginationParams,
)


class CRMAdapter(ABC):
    """Abstract interface for a donor CRM provider.

    Attributes:
        name: Registry key, also the prefix of scoped external ids.
        display_name: Human-readable provider name (used for the default
            bucket project description).

    Methods:
        fetch_donors: One page of donors.
        fetch_donations: One page of donations.
        get_authorization_url: OAuth consent URL for the provider.
        exchange_auth_code: Trade an authorization code for tokens.
        refresh_access_token: Obtain a new access token.
        validate_token: Cheap check that a token is still accepted.
    """

    name: str
    display_name: str

    @abstractmethod
    async def fetch_donors(
        self,
        access_token: str,
        params: PaginationParams,
        metadata: dict[str, Any] | None = None,
    ) -> PaginatedResponse[CanonicalDonor]:
        """Fetch one page of donors. has_more is the only termination signal."""
        ...

    @abstractmethod
    async def fetch_donations(
        self,
        access_token: str,
        params: PaginationParams,
        metadata: dict[str, Any] | None = None,
    ) -> PaginatedResponse[CanonicalDonation]:
        """Fetch one page of donations."""
        ...

    @abstractmethod
    def get_authorization_url(self, state: str, redirect_uri: str) -> str:
        """Build the provider's OAuth consent URL."""
        ...

    @abstractmethod
    async def exchange_auth_code(
        self, code: str, redirect_uri: str, state: str | None = None
    ) -> OAuthTokens:
        """Exchange an OAuth authorization code for tokens."""
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Refresh an expired access token."""
        ...

    @abstractmethod
    async def validate_token(
        self, access_token: str, metadata: dict[str, Any] | None = None
    ) -> bool:
        """Return True if the vendor still accepts the token."""
        ...


# ── Optional Capabilities ───────────────────────────────────────────────────


class ProjectFetcher(ABC):
    """Adapter can enumerate campaigns/funds as projects."""

    @abstractmethod
    async def fetch_projects(
        self,
        access_token: str,
        params: PaginationParams,
        metadata: dict[str, Any] | None = None,
    ) -> PaginatedResponse[CanonicalProject]:
        ...


class CombinedDonorFetcher(ABC):
    """Adapter can return donors together with their gifts in one page."""

    @abstractmethod
    async def fetch_donors_with_donations(
        self,
        access_token: str,
        params: PaginationParams,
        metadata: dict[str, Any] | None = None,
    ) -> PaginatedResponse[DonorWithDonations]:
        ...


class DonorUploader(ABC):
    """Adapter can push donors to the vendor.

    Returns the records with external_id set to the vendor-native id. Records
    that could not be written are left out of the returned list.
    """

    @abstractmethod
    async def upload_donors(
        self,
        access_token: str,
        donors: list[CanonicalDonor],
        metadata: dict[str, Any] | None = None,
    ) -> list[CanonicalDonor]:
        ...


class DonationUploader(ABC):
    """Adapter can push donations to the vendor."""

    @abstractmethod
    async def upload_donations(
        self,
        access_token: str,
        donations: list[CanonicalDonation],
        metadata: dict[str, Any] | None = None,
    ) -> list[CanonicalDonation]:
        ...


class ProjectUploader(ABC):
    """Adapter can push projects to the vendor."""

    @abstractmethod
    async def upload_projects(
        self,
        access_token: str,
        projects: list[CanonicalProject],
        metadata: dict[str, Any] | None = None,
    ) -> list[CanonicalProject]:
        ...
