"""Procore -> Shield sync engine for projects and vendors.

Orchestrates one sync run over an explicit batch of Procore ids:

1. Read existing identity mappings for the whole batch in one lookup.
2. Fetch each Procore record (bounded concurrency, token refresh via the
   coordinator).
3. For vendors, extract ABNs and look up local duplicates in one batch.
4. Per item: update or skip when mapped, merge or skip on an ABN conflict,
   otherwise create the local record and its mapping.

Every item ends in exactly one outcome (created / updated / skipped / error)
and run counts are tallied from those outcomes. A failing item never aborts
the run; only ReauthorizationRequired does, since every later call would
fail the same way. Each run is recorded in the sync log.

Cancellation is cooperative: the optional asyncio.Event is checked before
each fetch and before each item is applied. Items not reached are reported
as skipped with {"cancelled": True}.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

import structlog

from src.shield.core.monitoring import record_sync_result
from src.shield.integrations.procore.client import ProcoreClient
from src.shield.integrations.procore.conflicts import ConflictResolver, extract_abn
from src.shield.integrations.procore.errors import NotConnected, ReauthorizationRequired
from src.shield.integrations.procore.field_mapping import (
    map_procore_project,
    map_procore_vendor,
)
from src.shield.integrations.procore.schemas import (
    LocalSubcontractor,
    MappingUpsert,
    ProcoreEntityType,
    ProcoreProject,
    ProcoreVendor,
    ProjectSyncOptions,
    ShieldEntityType,
    SyncItemResult,
    SubcontractorFields,
    SyncOutcome,
    SyncResult,
    VendorSyncOptions,
)
from src.shield.integrations.procore.stores import (
    IdentityMappingStore,
    LocalEntityStore,
    SyncLogStore,
)
from src.shield.integrations.procore.token_refresh import TokenRefreshCoordinator

logger = structlog.get_logger(__name__)

RecordT = TypeVar("RecordT", ProcoreProject, ProcoreVendor)

NO_ABN_WARNING = "No ABN found - flagged for manual entry"

# Errors that invalidate every remaining call in the run
_RUN_FATAL = (ReauthorizationRequired, NotConnected)


class _RunAborted(Exception):
    """Internal signal: another item already hit a run-fatal error."""


class SyncEngine:
    """Runs project and vendor syncs for one Procore company connection.

    Args:
        client: Procore API client.
        coordinator: Token refresh coordinator bound to the connection.
        procore_company_id: Selected Procore company for the connection.
        mappings: Identity mapping store.
        entities: Local project/subcontractor store.
        sync_log: Run log store.
        conflicts: ABN conflict resolver. Defaults to one over ``entities``.
        concurrency: Maximum number of items fetched/applied at once.
    """

    def __init__(
        self,
        client: ProcoreClient,
        coordinator: TokenRefreshCoordinator,
        procore_company_id: int,
        mappings: IdentityMappingStore,
        entities: LocalEntityStore,
        sync_log: SyncLogStore,
        conflicts: ConflictResolver | None = None,
        concurrency: int = 4,
    ) -> None:
        self._client = client
        self._coordinator = coordinator
        self._procore_company_id = procore_company_id
        self._mappings = mappings
        self._entities = entities
        self._sync_log = sync_log
        self._conflicts = conflicts or ConflictResolver(entities)
        self._semaphore = asyncio.Semaphore(max(concurrency, 1))

    # ── Public API ─────────────────────────────────────────────────────────

    async def sync_projects(
        self,
        company_id: str,
        project_ids: Sequence[int],
        options: ProjectSyncOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """Create or update local projects for the given Procore project ids."""
        options = options or ProjectSyncOptions()
        return await self._logged_run(
            company_id,
            "projects",
            project_ids,
            lambda ids, aborted: self._run_projects(company_id, ids, options, cancel, aborted),
        )

    async def sync_vendors(
        self,
        company_id: str,
        vendor_ids: Sequence[int],
        options: VendorSyncOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """Create, merge or update local subcontractors for the given vendor ids."""
        options = options or VendorSyncOptions()
        return await self._logged_run(
            company_id,
            "vendors",
            vendor_ids,
            lambda ids, aborted: self._run_vendors(company_id, ids, options, cancel, aborted),
        )

    # ── Run bookkeeping ────────────────────────────────────────────────────

    async def _logged_run(
        self,
        company_id: str,
        sync_type: str,
        requested_ids: Sequence[int],
        runner: Callable[[list[int], asyncio.Event], Awaitable[list[SyncItemResult]]],
    ) -> SyncResult:
        ids = list(dict.fromkeys(requested_ids))
        started = time.monotonic()
        log_id = await self._sync_log.start(
            company_id, self._procore_company_id, sync_type, len(ids)
        )
        logger.info(
            "procore_sync.started",
            company_id=company_id,
            sync_type=sync_type,
            total=len(ids),
        )

        aborted = asyncio.Event()
        try:
            items = await runner(ids, aborted)
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            await self._sync_log.fail(log_id, str(exc), duration_ms)
            logger.error(
                "procore_sync.failed",
                company_id=company_id,
                sync_type=sync_type,
                error=str(exc),
            )
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        cancelled = any(item.details and item.details.get("cancelled") for item in items)
        result = SyncResult.from_items(items, duration_ms, cancelled=cancelled)
        await self._sync_log.complete(log_id, result)
        record_sync_result(
            sync_type,
            result.created,
            result.updated,
            result.skipped,
            result.errors,
            duration_ms,
        )

        logger.info(
            "procore_sync.completed",
            company_id=company_id,
            sync_type=sync_type,
            total=result.total,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            errors=result.errors,
            cancelled=result.cancelled,
            duration_ms=duration_ms,
        )
        return result

    async def _gather(
        self,
        ids: list[int],
        work: Callable[[int], Awaitable[SyncItemResult]],
        aborted: asyncio.Event,
    ) -> list[SyncItemResult]:
        """Run work for every id, preserving request order.

        A run-fatal error from any item stops the others at their next
        checkpoint and is re-raised once all items have settled.
        """

        async def guarded(item_id: int) -> SyncItemResult:
            try:
                return await work(item_id)
            except _RUN_FATAL:
                aborted.set()
                raise

        outcomes = await asyncio.gather(
            *(guarded(item_id) for item_id in ids), return_exceptions=True
        )
        fatal = next((o for o in outcomes if isinstance(o, _RUN_FATAL)), None)
        if fatal is not None:
            raise fatal
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    async def _fetch(
        self,
        record_id: int,
        fetcher: Callable[[str], Awaitable[RecordT | None]],
        cancel: asyncio.Event | None,
        aborted: asyncio.Event,
    ) -> RecordT | None:
        async with self._semaphore:
            if aborted.is_set():
                raise _RunAborted()
            if cancel is not None and cancel.is_set():
                return None
            return await self._coordinator.call(fetcher)

    async def _record_mapping(
        self,
        company_id: str,
        entity_type: ProcoreEntityType,
        procore_id: int,
        shield_type: ShieldEntityType,
        shield_id: str,
    ) -> str:
        """Upsert the mapping and return the local id it points at."""
        mapping = await self._mappings.upsert(
            MappingUpsert(
                company_id=company_id,
                procore_company_id=self._procore_company_id,
                procore_entity_type=entity_type,
                procore_entity_id=procore_id,
                shield_entity_type=shield_type,
                shield_entity_id=shield_id,
            )
        )
        return mapping.shield_entity_id

    @staticmethod
    def _cancelled(procore_id: int, entity_type: ProcoreEntityType) -> SyncItemResult:
        return SyncItemResult(
            procore_id=procore_id,
            entity_type=entity_type,
            outcome=SyncOutcome.SKIPPED,
            message="Sync cancelled before this item was processed",
            details={"cancelled": True},
        )

    @staticmethod
    def _is_cancelled(cancel: asyncio.Event | None) -> bool:
        return cancel is not None and cancel.is_set()

    # ── Projects ───────────────────────────────────────────────────────────

    async def _run_projects(
        self,
        company_id: str,
        project_ids: list[int],
        options: ProjectSyncOptions,
        cancel: asyncio.Event | None,
        aborted: asyncio.Event,
    ) -> list[SyncItemResult]:
        mapped = await self._mappings.get(
            company_id, self._procore_company_id, ProcoreEntityType.PROJECT, project_ids
        )

        async def sync_one(project_id: int) -> SyncItemResult:
            try:
                return await self._sync_project(
                    company_id, project_id, mapped.get(project_id), options, cancel, aborted
                )
            except (*_RUN_FATAL, _RunAborted):
                raise
            except Exception as exc:
                logger.error(
                    "procore_sync.project_error",
                    company_id=company_id,
                    procore_id=project_id,
                    error=str(exc),
                )
                return SyncItemResult(
                    procore_id=project_id,
                    entity_type=ProcoreEntityType.PROJECT,
                    outcome=SyncOutcome.ERROR,
                    message=f"Error syncing project {project_id}: {exc}",
                )

        return await self._gather(project_ids, sync_one, aborted)

    async def _sync_project(
        self,
        company_id: str,
        project_id: int,
        shield_id: str | None,
        options: ProjectSyncOptions,
        cancel: asyncio.Event | None,
        aborted: asyncio.Event,
    ) -> SyncItemResult:
        if self._is_cancelled(cancel):
            return self._cancelled(project_id, ProcoreEntityType.PROJECT)

        project = await self._fetch(
            project_id,
            lambda token: self._client.get_project(token, self._procore_company_id, project_id),
            cancel,
            aborted,
        )
        if self._is_cancelled(cancel):
            return self._cancelled(project_id, ProcoreEntityType.PROJECT)
        if project is None:
            return SyncItemResult(
                procore_id=project_id,
                entity_type=ProcoreEntityType.PROJECT,
                outcome=SyncOutcome.ERROR,
                message="Project not found in Procore",
            )

        fields = map_procore_project(project)

        if shield_id is not None:
            if not options.update_existing:
                return SyncItemResult(
                    procore_id=project_id,
                    shield_id=shield_id,
                    entity_type=ProcoreEntityType.PROJECT,
                    outcome=SyncOutcome.SKIPPED,
                    message=f"Skipped (already exists): {project.name}",
                )
            await self._entities.update_project(shield_id, fields)
            await self._record_mapping(
                company_id,
                ProcoreEntityType.PROJECT,
                project_id,
                ShieldEntityType.PROJECT,
                shield_id,
            )
            logger.info("procore_sync.project_updated", procore_id=project_id, shield_id=shield_id)
            return SyncItemResult(
                procore_id=project_id,
                shield_id=shield_id,
                entity_type=ProcoreEntityType.PROJECT,
                outcome=SyncOutcome.UPDATED,
                message=f"Updated project: {project.name}",
            )

        created_id = await self._entities.create_project(company_id, fields)
        mapped_id = await self._record_mapping(
            company_id,
            ProcoreEntityType.PROJECT,
            project_id,
            ShieldEntityType.PROJECT,
            created_id,
        )
        logger.info("procore_sync.project_created", procore_id=project_id, shield_id=mapped_id)

        details = None
        if mapped_id != created_id:
            details = {
                "warning": f"Mapping already pointed at project {mapped_id}; "
                f"project {created_id} is unmapped"
            }
        return SyncItemResult(
            procore_id=project_id,
            shield_id=mapped_id,
            entity_type=ProcoreEntityType.PROJECT,
            outcome=SyncOutcome.CREATED,
            message=f"Created project: {project.name}",
            details=details,
        )

    # ── Vendors ────────────────────────────────────────────────────────────

    async def _run_vendors(
        self,
        company_id: str,
        vendor_ids: list[int],
        options: VendorSyncOptions,
        cancel: asyncio.Event | None,
        aborted: asyncio.Event,
    ) -> list[SyncItemResult]:
        mapped = await self._mappings.get(
            company_id, self._procore_company_id, ProcoreEntityType.VENDOR, vendor_ids
        )

        # Phase 1: fetch every vendor so ABN conflicts can be read in one batch.
        async def fetch_one(vendor_id: int) -> ProcoreVendor | Exception | None:
            try:
                return await self._fetch(
                    vendor_id,
                    lambda token: self._client.get_vendor(
                        token, self._procore_company_id, vendor_id
                    ),
                    cancel,
                    aborted,
                )
            except _RUN_FATAL:
                aborted.set()
                raise
            except _RunAborted:
                raise
            except Exception as exc:
                return exc

        fetched = await asyncio.gather(
            *(fetch_one(vendor_id) for vendor_id in vendor_ids), return_exceptions=True
        )
        fatal = next((f for f in fetched if isinstance(f, _RUN_FATAL)), None)
        if fatal is not None:
            raise fatal
        for item in fetched:
            if isinstance(item, BaseException) and not isinstance(item, Exception):
                raise item
        vendors = dict(zip(vendor_ids, fetched))

        # Phase 2: one batched ABN lookup for the unmapped vendors.
        candidate_keys = [
            extract_abn(vendor)
            for vendor_id, vendor in vendors.items()
            if isinstance(vendor, ProcoreVendor) and vendor_id not in mapped
        ]
        known_by_abn = await self._conflicts.find_conflicts(company_id, candidate_keys)
        abn_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        # Phase 3: apply each vendor.
        async def sync_one(vendor_id: int) -> SyncItemResult:
            vendor = vendors[vendor_id]
            try:
                if isinstance(vendor, Exception):
                    raise vendor
                return await self._sync_vendor(
                    company_id,
                    vendor_id,
                    vendor,
                    mapped.get(vendor_id),
                    known_by_abn,
                    abn_locks,
                    options,
                    cancel,
                    aborted,
                )
            except (*_RUN_FATAL, _RunAborted):
                raise
            except Exception as exc:
                logger.error(
                    "procore_sync.vendor_error",
                    company_id=company_id,
                    procore_id=vendor_id,
                    error=str(exc),
                )
                return SyncItemResult(
                    procore_id=vendor_id,
                    entity_type=ProcoreEntityType.VENDOR,
                    outcome=SyncOutcome.ERROR,
                    message=f"Error syncing vendor {vendor_id}: {exc}",
                )

        return await self._gather(vendor_ids, sync_one, aborted)

    async def _sync_vendor(
        self,
        company_id: str,
        vendor_id: int,
        vendor: ProcoreVendor | None,
        shield_id: str | None,
        known_by_abn: dict[str, LocalSubcontractor],
        abn_locks: defaultdict[str, asyncio.Lock],
        options: VendorSyncOptions,
        cancel: asyncio.Event | None,
        aborted: asyncio.Event,
    ) -> SyncItemResult:
        async with self._semaphore:
            if aborted.is_set():
                raise _RunAborted()
            if self._is_cancelled(cancel):
                return self._cancelled(vendor_id, ProcoreEntityType.VENDOR)
            if vendor is None:
                return SyncItemResult(
                    procore_id=vendor_id,
                    entity_type=ProcoreEntityType.VENDOR,
                    outcome=SyncOutcome.ERROR,
                    message="Vendor not found in Procore",
                )

            fields = map_procore_vendor(vendor)

            if shield_id is not None:
                return await self._apply_mapped_vendor(
                    company_id, vendor, shield_id, fields, options
                )

            if fields.abn is None:
                return await self._create_vendor(company_id, vendor, fields, options)

            async with abn_locks[fields.abn]:
                existing = known_by_abn.get(fields.abn)
                if existing is not None:
                    return await self._resolve_abn_conflict(
                        company_id, vendor, existing, fields, options
                    )
                result = await self._create_vendor(company_id, vendor, fields, options)
                if result.shield_id is not None:
                    known_by_abn[fields.abn] = LocalSubcontractor(
                        id=result.shield_id, company_id=company_id, **fields.model_dump()
                    )
                return result

    async def _apply_mapped_vendor(
        self,
        company_id: str,
        vendor: ProcoreVendor,
        shield_id: str,
        fields: SubcontractorFields,
        options: VendorSyncOptions,
    ) -> SyncItemResult:
        if not options.update_existing:
            return SyncItemResult(
                procore_id=vendor.id,
                shield_id=shield_id,
                entity_type=ProcoreEntityType.VENDOR,
                outcome=SyncOutcome.SKIPPED,
                message=f"Skipped (already synced): {vendor.name}",
            )

        await self._entities.update_subcontractor(shield_id, fields)
        await self._record_mapping(
            company_id,
            ProcoreEntityType.VENDOR,
            vendor.id,
            ShieldEntityType.SUBCONTRACTOR,
            shield_id,
        )
        logger.info("procore_sync.vendor_updated", procore_id=vendor.id, shield_id=shield_id)
        return SyncItemResult(
            procore_id=vendor.id,
            shield_id=shield_id,
            entity_type=ProcoreEntityType.VENDOR,
            outcome=SyncOutcome.UPDATED,
            message=f"Updated subcontractor: {vendor.name}",
        )

    async def _resolve_abn_conflict(
        self,
        company_id: str,
        vendor: ProcoreVendor,
        existing: LocalSubcontractor,
        fields: SubcontractorFields,
        options: VendorSyncOptions,
    ) -> SyncItemResult:
        conflict = {
            "abn": fields.abn,
            "existing_id": existing.id,
            "existing_name": existing.name,
        }

        if options.skip_duplicates or not options.merge_existing:
            logger.info(
                "procore_sync.vendor_abn_duplicate",
                procore_id=vendor.id,
                existing_id=existing.id,
            )
            return SyncItemResult(
                procore_id=vendor.id,
                shield_id=existing.id,
                entity_type=ProcoreEntityType.VENDOR,
                outcome=SyncOutcome.SKIPPED,
                message=f"Skipped (ABN duplicate): {vendor.name} - existing: {existing.name}",
                details={"conflict": conflict},
            )

        await self._entities.fill_missing_subcontractor_fields(existing.id, fields)
        mapped_id = await self._record_mapping(
            company_id,
            ProcoreEntityType.VENDOR,
            vendor.id,
            ShieldEntityType.SUBCONTRACTOR,
            existing.id,
        )
        if options.project_id:
            await self._entities.assign_subcontractor_to_project(options.project_id, mapped_id)

        logger.info("procore_sync.vendor_merged", procore_id=vendor.id, shield_id=mapped_id)
        return SyncItemResult(
            procore_id=vendor.id,
            shield_id=mapped_id,
            entity_type=ProcoreEntityType.VENDOR,
            outcome=SyncOutcome.UPDATED,
            message=f"Merged with existing subcontractor: {existing.name}",
            details={
                "mergedByABN": True,
                "conflict": conflict,
                "warning": f"Vendor {vendor.name} merged into existing subcontractor "
                f"{existing.name} by ABN {fields.abn}",
            },
        )

    async def _create_vendor(
        self,
        company_id: str,
        vendor: ProcoreVendor,
        fields: SubcontractorFields,
        options: VendorSyncOptions,
    ) -> SyncItemResult:
        created_id = await self._entities.create_subcontractor(company_id, fields)
        mapped_id = await self._record_mapping(
            company_id,
            ProcoreEntityType.VENDOR,
            vendor.id,
            ShieldEntityType.SUBCONTRACTOR,
            created_id,
        )
        if options.project_id:
            await self._entities.assign_subcontractor_to_project(options.project_id, mapped_id)

        warnings: list[str] = []
        if fields.abn is None:
            warnings.append(NO_ABN_WARNING)
        if mapped_id != created_id:
            warnings.append(
                f"Mapping already pointed at subcontractor {mapped_id}; "
                f"subcontractor {created_id} is unmapped"
            )

        logger.info(
            "procore_sync.vendor_created",
            procore_id=vendor.id,
            shield_id=mapped_id,
            has_abn=fields.abn is not None,
        )
        return SyncItemResult(
            procore_id=vendor.id,
            shield_id=mapped_id,
            entity_type=ProcoreEntityType.VENDOR,
            outcome=SyncOutcome.CREATED,
            message=f"Created subcontractor: {vendor.name}",
            details={"warning": "; ".join(warnings)} if warnings else None,
        )
