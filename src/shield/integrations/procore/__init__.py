"""Procore integration -- reconciliation between Procore and Shield records.

Provides the Procore API client, token refresh coordination, identity
mappings, ABN conflict resolution, the Procore -> Shield sync engine and the
Shield -> Procore compliance push pipeline.

Exports:
    ProcoreClient: Async Procore REST client with retry and pagination.
    TokenRefreshCoordinator: Single-flight access token refresh per connection.
    ConflictResolver: Batched ABN duplicate detection and vendor classification.
    SyncEngine: Project/vendor sync runs with bounded concurrency.
    CompliancePushPipeline: Verification outcome push with history.
    ProcoreIntegrationService: Company-scoped operations for request handlers.
    CredentialRepository, MappingRepository, PushHistoryRepository,
    SyncLogRepository: SQLAlchemy-backed stores.
    ProcoreError and subclasses: Error taxonomy with HTTP status codes.
"""

from src.shield.integrations.procore.client import ProcoreClient
from src.shield.integrations.procore.compliance import CompliancePushPipeline
from src.shield.integrations.procore.conflicts import (
    ConflictResolver,
    extract_abn,
    extract_natural_key,
)
from src.shield.integrations.procore.errors import (
    NotConnected,
    NotFound,
    PendingCompanySelection,
    ProcoreAPIError,
    ProcoreError,
    ProcoreTransientError,
    ProcoreUnauthorized,
    ReauthorizationRequired,
    TokenRefreshFailed,
    ValidationError,
)
from src.shield.integrations.procore.repository import (
    CredentialRepository,
    MappingRepository,
    PushHistoryRepository,
    SyncLogRepository,
)
from src.shield.integrations.procore.service import ProcoreIntegrationService
from src.shield.integrations.procore.sync import SyncEngine
from src.shield.integrations.procore.token_refresh import TokenRefreshCoordinator

__all__ = [
    "CompliancePushPipeline",
    "ConflictResolver",
    "CredentialRepository",
    "MappingRepository",
    "NotConnected",
    "NotFound",
    "PendingCompanySelection",
    "ProcoreAPIError",
    "ProcoreClient",
    "ProcoreError",
    "ProcoreIntegrationService",
    "ProcoreTransientError",
    "ProcoreUnauthorized",
    "PushHistoryRepository",
    "ReauthorizationRequired",
    "SyncEngine",
    "SyncLogRepository",
    "TokenRefreshCoordinator",
    "TokenRefreshFailed",
    "ValidationError",
    "extract_abn",
    "extract_natural_key",
]
