"""CRM synchronization -- pluggable provider adapters feeding the local donor store.

Provides the abstract CRMAdapter interface (plus optional capability ABCs)
with concrete implementations:
- BlackbaudAdapter: Raiser's Edge NXT via the SKY API (pull only)
- SalesforceAdapter: Nonprofit Cloud via REST/SOQL (pull, combined and push)
- SyncEngine: Paged pull sync with single-flight status transitions
- BatchUpserter: Diffing bulk writes keyed by scoped external id
- IntegrationManager: Provider registry, token lifecycle and sync entry points
- OutboundSyncService: Best-effort push of single local records
- SyncScheduler: Periodic sync of every active integration

Architecture: the local store is the read model for the product; each
vendor CRM is the system of record for what it syncs in.
"""

from src.givesync.crm.adapter import (
    CombinedDonorFetcher,
    CRMAdapter,
    DonationUploader,
    DonorUploader,
    ProjectFetcher,
    ProjectUploader,
)
from src.givesync.crm.blackbaud import BlackbaudAdapter
from src.givesync.crm.manager import (
    IntegrationManager,
    build_integration_manager,
    build_provider_registry,
)
from src.givesync.crm.outbound import OutboundSyncService
from src.givesync.crm.salesforce import SalesforceAdapter
from src.givesync.crm.sync import SyncEngine
from src.givesync.crm.upsert import BatchUpserter

__all__ = [
    "CRMAdapter",
    "ProjectFetcher",
    "CombinedDonorFetcher",
    "DonorUploader",
    "DonationUploader",
    "ProjectUploader",
    "BlackbaudAdapter",
    "SalesforceAdapter",
    "SyncEngine",
    "BatchUpserter",
    "IntegrationManager",
    "OutboundSyncService",
    "build_integration_manager",
    "build_provider_registry",
]
