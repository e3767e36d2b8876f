"""Exceptions raised by the CRM synchronization engine.

Per-record failures never surface as exceptions past the BatchUpserter --
they are reported as data (SyncRecordError). Everything defined here is
run-level: it aborts the current request or sync run.
"""

from __future__ import annotations


class CRMSyncError(Exception):
    """Base class for CRM sync errors."""


class ProviderNotFoundError(CRMSyncError):
    """Raised when a provider name is not present in the registry."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"CRM provider not found: {provider}")


class IntegrationNotFoundError(CRMSyncError):
    """Raised when an organization has no active integration for a provider."""

    def __init__(self, organization_id: str, provider: str) -> None:
        self.organization_id = organization_id
        self.provider = provider
        super().__init__(f"No active integration found for {provider}")


class SyncAlreadyRunningError(CRMSyncError):
    """Raised when the single-flight guard rejects a sync request."""

    def __init__(self, integration_id: str) -> None:
        self.integration_id = integration_id
        super().__init__(f"Sync already in progress for integration {integration_id}")


class TokenRefreshError(CRMSyncError):
    """Raised when refreshing an expired access token fails."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__("Failed to refresh authentication token")


class CRMAPIError(CRMSyncError):
    """Raised when a vendor API call returns an error status.

    Attributes:
        status_code: HTTP status returned by the vendor (None for transport failures).
        provider: Provider name that produced the error.
    """

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)
