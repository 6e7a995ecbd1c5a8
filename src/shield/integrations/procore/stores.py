"""Abstract persistence interfaces consumed by the Procore integration.

The sync engine, token refresh coordinator and compliance pipeline receive
these stores through their constructors instead of reaching for module-level
singletons, so tests can substitute in-memory doubles. SQLAlchemy-backed
implementations live in procore/repository.py and entities/repository.py.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

from src.shield.integrations.procore.schemas import (
    AuditEntry,
    CompliancePushRecord,
    IdentityMapping,
    LocalProject,
    LocalSubcontractor,
    MappingUpsert,
    OAuthConnection,
    OAuthTokens,
    ProcoreEntityType,
    ProjectFields,
    ShieldEntityType,
    SubcontractorFields,
    SyncLogEntry,
    SyncResult,
    Verification,
)


class CredentialStore(ABC):
    """One OAuth connection per (company, provider)."""

    @abstractmethod
    async def get(self, company_id: str, provider: str) -> OAuthConnection | None:
        """Fetch the connection for a company, or None if never connected."""
        ...

    @abstractmethod
    async def get_by_id(self, connection_id: str) -> OAuthConnection | None:
        ...

    @abstractmethod
    async def rotate_tokens(
        self,
        connection_id: str,
        expected_access_token: str,
        tokens: OAuthTokens,
    ) -> bool:
        """Atomically swap in a new token pair.

        The update only applies while the stored access token still equals
        expected_access_token. Returns False when another caller rotated first.
        """
        ...

    @abstractmethod
    async def select_company(
        self,
        company_id: str,
        provider: str,
        procore_company_id: int,
        procore_company_name: str,
    ) -> OAuthConnection:
        """Record the chosen Procore company and clear the pending flag."""
        ...

    @abstractmethod
    async def delete(self, company_id: str, provider: str) -> bool:
        ...


class IdentityMappingStore(ABC):
    """Procore id -> local id table, unique per composite key."""

    @abstractmethod
    async def get(
        self,
        company_id: str,
        procore_company_id: int,
        entity_type: ProcoreEntityType,
        procore_ids: Iterable[int],
    ) -> dict[int, str]:
        """Bulk lookup of already-synced ids in a single round trip."""
        ...

    @abstractmethod
    async def upsert(self, mapping: MappingUpsert) -> IdentityMapping:
        """Insert if absent, otherwise refresh last_synced_at and status.

        Returns the persisted row. An existing row keeps its shield_entity_id.
        """
        ...

    @abstractmethod
    async def get_by_local_entity(
        self,
        company_id: str,
        shield_entity_type: ShieldEntityType,
        shield_entity_id: str,
    ) -> IdentityMapping | None:
        ...

    @abstractmethod
    async def list_for_company(
        self,
        company_id: str,
        entity_type: ProcoreEntityType | None = None,
    ) -> list[IdentityMapping]:
        ...

    @abstractmethod
    async def pause_for_company(self, company_id: str) -> int:
        """Mark every mapping of a company paused. Returns rows touched."""
        ...


class LocalEntityStore(ABC):
    """The product's own subcontractors, projects and verifications."""

    @abstractmethod
    async def create_project(self, company_id: str, data: ProjectFields) -> str:
        ...

    @abstractmethod
    async def update_project(self, project_id: str, data: ProjectFields) -> None:
        ...

    @abstractmethod
    async def get_project(self, company_id: str, project_id: str) -> LocalProject | None:
        ...

    @abstractmethod
    async def create_subcontractor(self, company_id: str, data: SubcontractorFields) -> str:
        ...

    @abstractmethod
    async def update_subcontractor(
        self, subcontractor_id: str, data: SubcontractorFields
    ) -> None:
        """Overwrite from Procore; abn/email/phone keep local values when Procore has none."""
        ...

    @abstractmethod
    async def fill_missing_subcontractor_fields(
        self, subcontractor_id: str, data: SubcontractorFields
    ) -> None:
        """Copy Procore values only into fields that are empty locally."""
        ...

    @abstractmethod
    async def get_subcontractor(
        self, company_id: str, subcontractor_id: str
    ) -> LocalSubcontractor | None:
        ...

    @abstractmethod
    async def find_subcontractors_by_abn(
        self, company_id: str, abns: Iterable[str]
    ) -> list[LocalSubcontractor]:
        ...

    @abstractmethod
    async def assign_subcontractor_to_project(
        self, project_id: str, subcontractor_id: str
    ) -> None:
        """Idempotent: assigning twice leaves a single link."""
        ...

    @abstractmethod
    async def get_verification(self, verification_id: str) -> Verification | None:
        ...

    @abstractmethod
    async def get_latest_verification(self, subcontractor_id: str) -> Verification | None:
        """Most recent verification by creation time."""
        ...


class PushHistoryStore(ABC):
    """Append-only audit trail of compliance pushes."""

    @abstractmethod
    async def append(self, record: CompliancePushRecord) -> None:
        ...

    @abstractmethod
    async def list_for_subcontractor(
        self, company_id: str, subcontractor_id: str, limit: int = 10
    ) -> list[CompliancePushRecord]:
        """Newest first, details already parsed."""
        ...


class SyncLogStore(ABC):
    @abstractmethod
    async def start(
        self,
        company_id: str,
        procore_company_id: int,
        sync_type: str,
        total_items: int,
    ) -> str:
        ...

    @abstractmethod
    async def complete(self, log_id: str, result: SyncResult) -> None:
        ...

    @abstractmethod
    async def fail(self, log_id: str, error_message: str, duration_ms: int) -> None:
        ...

    @abstractmethod
    async def history(self, company_id: str, limit: int = 20) -> list[SyncLogEntry]:
        ...


class AuditSink(ABC):
    @abstractmethod
    async def record(self, entry: AuditEntry) -> None:
        ...
