"""Procore integration service -- the operations exposed to request handlers.

ProcoreIntegrationService resolves the company's OAuth connection, validates
input before any network call, and delegates to the sync engine, compliance
push pipeline and conflict resolver. Request handlers stay thin: they
authenticate, authorize and serialize, and every ProcoreError raised here
carries the status code they render.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from typing import Any

import structlog

from src.shield.config import Settings, get_settings
from src.shield.integrations.procore.client import ProcoreClient
from src.shield.integrations.procore.compliance import CompliancePushPipeline
from src.shield.integrations.procore.config import PROVIDER
from src.shield.integrations.procore.conflicts import ConflictResolver, extract_abn
from src.shield.integrations.procore.errors import (
    NotConnected,
    NotFound,
    PendingCompanySelection,
    ValidationError,
)
from src.shield.integrations.procore.schemas import (
    AuditEntry,
    AuthenticatedUser,
    CompliancePushRecord,
    ConflictDetails,
    OAuthConnection,
    ProcoreEntityType,
    ProcoreVendor,
    ProjectListing,
    ProjectSyncOptions,
    ProjectWithSyncStatus,
    PushResult,
    SyncLogEntry,
    SyncResult,
    VendorListing,
    VendorListingStats,
    VendorSyncOptions,
    VendorSyncStatus,
    VendorWithSyncStatus,
)
from src.shield.integrations.procore.stores import (
    AuditSink,
    CredentialStore,
    IdentityMappingStore,
    LocalEntityStore,
    PushHistoryStore,
    SyncLogStore,
)
from src.shield.integrations.procore.sync import SyncEngine
from src.shield.integrations.procore.token_refresh import TokenRefreshCoordinator

logger = structlog.get_logger(__name__)


def validate_procore_ids(ids: Any, field_name: str) -> list[int]:
    """Require a non-empty list of positive integer ids.

    Raises:
        ValidationError: ids is empty, not a list, or holds a non-positive
            or non-integer value.
    """
    if not isinstance(ids, (list, tuple)) or not ids:
        raise ValidationError(
            f"{field_name} is required and must be a non-empty array of numbers"
        )
    if not all(isinstance(i, int) and not isinstance(i, bool) and i > 0 for i in ids):
        raise ValidationError(f"All {field_name} must be positive numbers")
    return list(ids)


class ProcoreIntegrationService:
    """Company-scoped Procore operations.

    Args:
        client: Procore API client.
        credentials: OAuth connection store.
        mappings: Identity mapping store.
        entities: Local subcontractor/project/verification store.
        push_history: Compliance push record store.
        sync_log: Sync run log store.
        audit: Audit sink for user-triggered operations.
        settings: Application settings (defaults to get_settings()).
    """

    def __init__(
        self,
        client: ProcoreClient,
        credentials: CredentialStore,
        mappings: IdentityMappingStore,
        entities: LocalEntityStore,
        push_history: PushHistoryStore,
        sync_log: SyncLogStore,
        audit: AuditSink,
        settings: Settings | None = None,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._mappings = mappings
        self._entities = entities
        self._push_history = push_history
        self._sync_log = sync_log
        self._audit = audit
        self._settings = settings or get_settings()
        self._conflicts = ConflictResolver(entities)
        # One coordinator per company, replaced when the company reconnects
        self._coordinators: dict[str, TokenRefreshCoordinator] = {}
        self._compliance = CompliancePushPipeline(
            client,
            credentials,
            mappings,
            push_history,
            audit,
            coordinator_for=self._coordinator,
        )

    # ── Connection ──────────────────────────────────────────────────────────

    async def _ready_connection(self, company_id: str) -> OAuthConnection:
        connection = await self._credentials.get(company_id, PROVIDER)
        if connection is None:
            raise NotConnected()
        if connection.pending_company_selection or connection.procore_company_id is None:
            raise PendingCompanySelection()
        return connection

    def _coordinator(self, connection: OAuthConnection) -> TokenRefreshCoordinator:
        coordinator = self._coordinators.get(connection.company_id)
        if coordinator is None or coordinator.connection_id != connection.id:
            coordinator = TokenRefreshCoordinator(self._client, self._credentials, connection.id)
            self._coordinators[connection.company_id] = coordinator
        return coordinator

    def _engine(self, connection: OAuthConnection) -> SyncEngine:
        return SyncEngine(
            client=self._client,
            coordinator=self._coordinator(connection),
            procore_company_id=connection.procore_company_id,
            mappings=self._mappings,
            entities=self._entities,
            sync_log=self._sync_log,
            conflicts=self._conflicts,
            concurrency=self._settings.PROCORE_SYNC_CONCURRENCY,
        )

    def _page_size(self, per_page: int | None) -> int:
        size = per_page or self._settings.PROCORE_DEFAULT_PAGE_SIZE
        return min(max(size, 1), self._settings.PROCORE_MAX_PAGE_SIZE)

    async def select_company(
        self, user: AuthenticatedUser, procore_company_id: int
    ) -> OAuthConnection:
        """Choose which Procore company the connection syncs with."""
        if not isinstance(procore_company_id, int) or procore_company_id <= 0:
            raise ValidationError("procoreCompanyId is required and must be a number")

        connection = await self._credentials.get(user.company_id, PROVIDER)
        if connection is None:
            raise NotConnected("No Procore connection found. Please connect first.")

        companies = await self._coordinator(connection).call(self._client.list_companies)
        company = next((c for c in companies if c.id == procore_company_id), None)
        if company is None:
            raise ValidationError(
                "Invalid Procore company ID - you do not have access to this company"
            )

        updated = await self._credentials.select_company(
            user.company_id, PROVIDER, company.id, company.name
        )
        await self._audit.record(
            AuditEntry(
                company_id=user.company_id,
                user_id=user.id,
                entity_type="integration",
                entity_id=PROVIDER,
                action="select_company",
                details={"procore_company_id": company.id, "procore_company_name": company.name},
            )
        )
        logger.info(
            "procore.company_selected",
            company_id=user.company_id,
            procore_company_id=company.id,
        )
        return updated

    async def disconnect(self, user: AuthenticatedUser) -> None:
        """Delete the connection and pause every mapping of the company."""
        connection = await self._credentials.get(user.company_id, PROVIDER)
        if connection is None or not await self._credentials.delete(user.company_id, PROVIDER):
            raise NotFound("No Procore connection found")

        self._coordinators.pop(user.company_id, None)
        paused = await self._mappings.pause_for_company(user.company_id)
        await self._audit.record(
            AuditEntry(
                company_id=user.company_id,
                user_id=user.id,
                entity_type="integration",
                entity_id=PROVIDER,
                action="disconnect",
                details={
                    "procore_company_id": connection.procore_company_id,
                    "procore_company_name": connection.procore_company_name,
                    "mappings_paused": paused,
                },
            )
        )
        logger.info("procore.disconnected", company_id=user.company_id, mappings_paused=paused)

    # ── Listings ────────────────────────────────────────────────────────────

    async def list_vendors(
        self,
        company_id: str,
        page: int = 1,
        per_page: int | None = None,
        project_id: int | None = None,
        active_only: bool = True,
    ) -> VendorListing:
        """One page of Procore vendors annotated with their Shield sync status."""
        connection = await self._ready_connection(company_id)
        procore_company_id = connection.procore_company_id
        size = self._page_size(per_page)

        if project_id is not None:
            result = await self._coordinator(connection).call(
                lambda token: self._client.list_project_vendors(
                    token, procore_company_id, project_id, page, size
                )
            )
        else:
            result = await self._coordinator(connection).call(
                lambda token: self._client.list_vendors(
                    token, procore_company_id, page, size, active_only
                )
            )

        mapped = await self._mappings.get(
            company_id,
            procore_company_id,
            ProcoreEntityType.VENDOR,
            [vendor.id for vendor in result.data],
        )
        statuses = await self._conflicts.classify(company_id, result.data, mapped)

        vendors: list[VendorWithSyncStatus] = []
        stats = VendorListingStats(total=len(result.data))
        for vendor in result.data:
            sync_status, existing = statuses[vendor.id]
            abn = extract_abn(vendor)
            vendors.append(
                VendorWithSyncStatus(
                    vendor=vendor,
                    sync_status=sync_status,
                    shield_subcontractor_id=mapped.get(vendor.id),
                    extracted_abn=abn,
                    conflict=ConflictDetails(existing_id=existing.id, existing_name=existing.name)
                    if existing is not None
                    else None,
                )
            )
            if sync_status is VendorSyncStatus.SYNCED:
                stats.synced += 1
            elif sync_status is VendorSyncStatus.ABN_CONFLICT:
                stats.abn_conflicts += 1
            else:
                stats.not_synced += 1
            if abn:
                stats.with_abn += 1
            else:
                stats.without_abn += 1

        return VendorListing(
            vendors=vendors,
            stats=stats,
            page=result.page,
            per_page=result.per_page,
            has_more=result.has_more,
            total=result.total,
            procore_company_id=procore_company_id,
            procore_company_name=connection.procore_company_name,
        )

    async def list_projects(
        self,
        company_id: str,
        page: int = 1,
        per_page: int | None = None,
    ) -> ProjectListing:
        """One page of Procore projects annotated with their Shield sync status."""
        connection = await self._ready_connection(company_id)
        procore_company_id = connection.procore_company_id
        size = self._page_size(per_page)

        result = await self._coordinator(connection).call(
            lambda token: self._client.list_projects(token, procore_company_id, page, size)
        )
        mapped = await self._mappings.get(
            company_id,
            procore_company_id,
            ProcoreEntityType.PROJECT,
            [project.id for project in result.data],
        )

        return ProjectListing(
            projects=[
                ProjectWithSyncStatus(
                    project=project,
                    synced=project.id in mapped,
                    shield_project_id=mapped.get(project.id),
                )
                for project in result.data
            ],
            page=result.page,
            per_page=result.per_page,
            has_more=result.has_more,
            total=result.total,
            procore_company_id=procore_company_id,
            procore_company_name=connection.procore_company_name,
        )

    async def iter_all_vendors(
        self,
        company_id: str,
        per_page: int | None = None,
        active_only: bool = True,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[ProcoreVendor]:
        """Walk every page of the vendor directory, stopping early on cancel."""
        connection = await self._ready_connection(company_id)
        procore_company_id = connection.procore_company_id
        coordinator = self._coordinator(connection)
        size = self._page_size(per_page)

        page: int | None = 1
        while page is not None:
            if cancel is not None and cancel.is_set():
                logger.info("procore.vendor_walk_cancelled", company_id=company_id, page=page)
                return
            current = page
            result = await coordinator.call(
                lambda token: self._client.list_vendors(
                    token, procore_company_id, current, size, active_only
                )
            )
            for vendor in result.data:
                yield vendor
            page = result.next_page

    # ── Sync ────────────────────────────────────────────────────────────────

    async def sync_projects(
        self,
        user: AuthenticatedUser,
        project_ids: Sequence[int],
        options: ProjectSyncOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """Sync the given Procore projects into Shield projects."""
        ids = validate_procore_ids(project_ids, "projectIds")
        options = options or ProjectSyncOptions()
        connection = await self._ready_connection(user.company_id)

        result = await self._engine(connection).sync_projects(
            user.company_id, ids, options, cancel
        )
        await self._audit_sync(user, "sync_projects", ids, options.model_dump(), result)
        return result

    async def sync_vendors(
        self,
        user: AuthenticatedUser,
        vendor_ids: Sequence[int],
        options: VendorSyncOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """Sync the given Procore vendors into Shield subcontractors."""
        ids = validate_procore_ids(vendor_ids, "vendorIds")
        options = options or VendorSyncOptions()
        if options.project_id is not None:
            project = await self._entities.get_project(user.company_id, options.project_id)
            if project is None:
                raise NotFound("Project not found or you do not have access")
        connection = await self._ready_connection(user.company_id)

        result = await self._engine(connection).sync_vendors(
            user.company_id, ids, options, cancel
        )
        await self._audit_sync(user, "sync_vendors", ids, options.model_dump(), result)
        return result

    async def _audit_sync(
        self,
        user: AuthenticatedUser,
        action: str,
        ids: list[int],
        options: dict[str, Any],
        result: SyncResult,
    ) -> None:
        await self._audit.record(
            AuditEntry(
                company_id=user.company_id,
                user_id=user.id,
                entity_type="integration",
                entity_id=PROVIDER,
                action=action,
                details={
                    "ids": ids,
                    "options": options,
                    "total": result.total,
                    "created": result.created,
                    "updated": result.updated,
                    "skipped": result.skipped,
                    "errors": result.errors,
                    "cancelled": result.cancelled,
                    "duration_ms": result.duration_ms,
                },
            )
        )

    async def get_sync_history(self, company_id: str, limit: int = 20) -> list[SyncLogEntry]:
        return await self._sync_log.history(company_id, limit=limit)

    # ── Compliance ──────────────────────────────────────────────────────────

    async def push_compliance(
        self,
        company_id: str,
        subcontractor_id: str,
        verification_id: str | None = None,
    ) -> PushResult:
        """Push a verification's compliance status to the mapped Procore vendor.

        Uses the subcontractor's latest verification when verification_id is
        omitted.

        Raises:
            NotFound: The subcontractor, the verification, or any
                verification at all does not exist.
        """
        if not subcontractor_id:
            raise ValidationError("subcontractorId is required")

        subcontractor = await self._entities.get_subcontractor(company_id, subcontractor_id)
        if subcontractor is None:
            raise NotFound("Subcontractor not found")

        if verification_id:
            verification = await self._entities.get_verification(verification_id)
            if verification is None or verification.subcontractor_id != subcontractor_id:
                raise NotFound("Verification not found")
        else:
            verification = await self._entities.get_latest_verification(subcontractor_id)
            if verification is None:
                raise NotFound("No verifications found for this subcontractor")

        return await self._compliance.push(company_id, subcontractor_id, verification)

    async def get_push_history(
        self, company_id: str, subcontractor_id: str
    ) -> list[CompliancePushRecord]:
        """Recent compliance pushes for a subcontractor, newest first."""
        subcontractor = await self._entities.get_subcontractor(company_id, subcontractor_id)
        if subcontractor is None:
            raise NotFound("Subcontractor not found")
        return await self._compliance.history(
            company_id, subcontractor_id, limit=self._settings.PROCORE_PUSH_HISTORY_LIMIT
        )
