"""In-memory test doubles and builders for the Procore integration.

Provides:
- In-memory implementations of every store (credentials, mappings, local
  entities, push history, sync log, audit)
- FakeProcoreClient: dict-backed Procore API with token checks, call
  counters and failure injection
- Builders for vendors, projects, verifications and connections
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from src.shield.integrations.procore.config import PROVIDER
from src.shield.integrations.procore.errors import (
    NotConnected,
    ProcoreAPIError,
    ProcoreUnauthorized,
    TokenRefreshFailed,
)
from src.shield.integrations.procore.schemas import (
    AuditEntry,
    CompliancePushRecord,
    ComplianceStatus,
    IdentityMapping,
    LocalProject,
    LocalSubcontractor,
    MappingStatus,
    MappingUpsert,
    OAuthConnection,
    OAuthTokens,
    ProcoreCompany,
    ProcoreEntityType,
    ProcorePage,
    ProcoreProject,
    ProcoreVendor,
    ProjectFields,
    PushOutcome,
    ShieldEntityType,
    SubcontractorFields,
    SyncLogEntry,
    SyncResult,
    Verification,
    VerificationCheck,
)
from src.shield.integrations.procore.stores import (
    AuditSink,
    CredentialStore,
    IdentityMappingStore,
    LocalEntityStore,
    PushHistoryStore,
    SyncLogStore,
)

COMPANY_ID = "C1"
PROCORE_COMPANY_ID = 1001
CONNECTION_ID = "conn-1"


# ── In-Memory Stores ─────────────────────────────────────────────────────────


class InMemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self.connections: dict[tuple[str, str], OAuthConnection] = {}
        self.rotations = 0

    def add(self, connection: OAuthConnection) -> OAuthConnection:
        self.connections[(connection.company_id, connection.provider)] = connection
        return connection

    async def get(self, company_id: str, provider: str) -> OAuthConnection | None:
        return self.connections.get((company_id, provider))

    async def get_by_id(self, connection_id: str) -> OAuthConnection | None:
        for connection in self.connections.values():
            if connection.id == connection_id:
                return connection
        return None

    async def rotate_tokens(
        self, connection_id: str, expected_access_token: str, tokens: OAuthTokens
    ) -> bool:
        for key, connection in self.connections.items():
            if connection.id == connection_id:
                if connection.access_token != expected_access_token:
                    return False
                self.connections[key] = connection.model_copy(
                    update={
                        "access_token": tokens.access_token,
                        "refresh_token": tokens.refresh_token,
                        "token_expires_at": tokens.expires_at(),
                    }
                )
                self.rotations += 1
                return True
        return False

    async def select_company(
        self,
        company_id: str,
        provider: str,
        procore_company_id: int,
        procore_company_name: str,
    ) -> OAuthConnection:
        connection = self.connections.get((company_id, provider))
        if connection is None:
            raise NotConnected()
        updated = connection.model_copy(
            update={
                "procore_company_id": procore_company_id,
                "procore_company_name": procore_company_name,
                "pending_company_selection": False,
            }
        )
        self.connections[(company_id, provider)] = updated
        return updated

    async def delete(self, company_id: str, provider: str) -> bool:
        return self.connections.pop((company_id, provider), None) is not None


class InMemoryMappingStore(IdentityMappingStore):
    def __init__(self) -> None:
        self.rows: dict[tuple[str, int, str, int], IdentityMapping] = {}

    async def get(
        self,
        company_id: str,
        procore_company_id: int,
        entity_type: ProcoreEntityType,
        procore_ids: Iterable[int],
    ) -> dict[int, str]:
        found: dict[int, str] = {}
        for procore_id in procore_ids:
            row = self.rows.get((company_id, procore_company_id, entity_type.value, procore_id))
            if row is not None:
                found[procore_id] = row.shield_entity_id
        return found

    async def upsert(self, mapping: MappingUpsert) -> IdentityMapping:
        key = (
            mapping.company_id,
            mapping.procore_company_id,
            mapping.procore_entity_type.value,
            mapping.procore_entity_id,
        )
        now = datetime.now(timezone.utc)
        existing = self.rows.get(key)
        if existing is not None:
            updated = existing.model_copy(
                update={
                    "sync_status": mapping.sync_status,
                    "sync_error": mapping.sync_error,
                    "last_synced_at": now,
                }
            )
            self.rows[key] = updated
            return updated
        row = IdentityMapping(id=str(uuid.uuid4()), last_synced_at=now, **mapping.model_dump())
        self.rows[key] = row
        return row

    async def get_by_local_entity(
        self,
        company_id: str,
        shield_entity_type: ShieldEntityType,
        shield_entity_id: str,
    ) -> IdentityMapping | None:
        for row in self.rows.values():
            if (
                row.company_id == company_id
                and row.shield_entity_type == shield_entity_type
                and row.shield_entity_id == shield_entity_id
            ):
                return row
        return None

    async def list_for_company(
        self,
        company_id: str,
        entity_type: ProcoreEntityType | None = None,
    ) -> list[IdentityMapping]:
        return [
            row
            for row in self.rows.values()
            if row.company_id == company_id
            and (entity_type is None or row.procore_entity_type == entity_type)
        ]

    async def pause_for_company(self, company_id: str) -> int:
        touched = 0
        for key, row in list(self.rows.items()):
            if row.company_id == company_id:
                self.rows[key] = row.model_copy(update={"sync_status": MappingStatus.PAUSED})
                touched += 1
        return touched


class InMemoryEntityStore(LocalEntityStore):
    def __init__(self) -> None:
        self.subcontractors: dict[str, LocalSubcontractor] = {}
        self.projects: dict[str, LocalProject] = {}
        self.assignments: set[tuple[str, str]] = set()
        self.verifications: list[Verification] = []
        self.abn_lookups = 0

    def add_subcontractor(self, company_id: str, **fields: Any) -> LocalSubcontractor:
        subcontractor = LocalSubcontractor(
            id=fields.pop("id", str(uuid.uuid4())), company_id=company_id, **fields
        )
        self.subcontractors[subcontractor.id] = subcontractor
        return subcontractor

    def add_project(self, company_id: str, **fields: Any) -> LocalProject:
        project = LocalProject(
            id=fields.pop("id", str(uuid.uuid4())), company_id=company_id, **fields
        )
        self.projects[project.id] = project
        return project

    def add_verification(self, verification: Verification) -> Verification:
        self.verifications.append(verification)
        return verification

    async def create_project(self, company_id: str, data: ProjectFields) -> str:
        return self.add_project(company_id, **data.model_dump()).id

    async def update_project(self, project_id: str, data: ProjectFields) -> None:
        project = self.projects[project_id]
        self.projects[project_id] = project.model_copy(update=data.model_dump())

    async def get_project(self, company_id: str, project_id: str) -> LocalProject | None:
        project = self.projects.get(project_id)
        if project is not None and project.company_id == company_id:
            return project
        return None

    async def create_subcontractor(self, company_id: str, data: SubcontractorFields) -> str:
        return self.add_subcontractor(company_id, **data.model_dump()).id

    async def update_subcontractor(
        self, subcontractor_id: str, data: SubcontractorFields
    ) -> None:
        values = data.model_dump()
        for field in ("abn", "email", "phone"):
            if not values[field]:
                values.pop(field)
        current = self.subcontractors[subcontractor_id]
        self.subcontractors[subcontractor_id] = current.model_copy(update=values)

    async def fill_missing_subcontractor_fields(
        self, subcontractor_id: str, data: SubcontractorFields
    ) -> None:
        current = self.subcontractors[subcontractor_id]
        updates = {
            field: value
            for field, value in data.model_dump(exclude={"status"}).items()
            if value and not getattr(current, field)
        }
        self.subcontractors[subcontractor_id] = current.model_copy(update=updates)

    async def get_subcontractor(
        self, company_id: str, subcontractor_id: str
    ) -> LocalSubcontractor | None:
        subcontractor = self.subcontractors.get(subcontractor_id)
        if subcontractor is not None and subcontractor.company_id == company_id:
            return subcontractor
        return None

    async def find_subcontractors_by_abn(
        self, company_id: str, abns: Iterable[str]
    ) -> list[LocalSubcontractor]:
        self.abn_lookups += 1
        wanted = set(abns)
        return [
            s
            for s in self.subcontractors.values()
            if s.company_id == company_id and s.abn in wanted
        ]

    async def assign_subcontractor_to_project(
        self, project_id: str, subcontractor_id: str
    ) -> None:
        self.assignments.add((project_id, subcontractor_id))

    async def get_verification(self, verification_id: str) -> Verification | None:
        return next((v for v in self.verifications if v.id == verification_id), None)

    async def get_latest_verification(self, subcontractor_id: str) -> Verification | None:
        candidates = [v for v in self.verifications if v.subcontractor_id == subcontractor_id]
        if not candidates:
            return None
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return max(candidates, key=lambda v: v.created_at or epoch)


class InMemoryPushHistory(PushHistoryStore):
    def __init__(self) -> None:
        self.records: list[CompliancePushRecord] = []

    async def append(self, record: CompliancePushRecord) -> None:
        self.records.append(record)

    async def list_for_subcontractor(
        self, company_id: str, subcontractor_id: str, limit: int = 10
    ) -> list[CompliancePushRecord]:
        matching = [
            r
            for r in self.records
            if r.company_id == company_id and r.subcontractor_id == subcontractor_id
        ]
        return list(reversed(matching))[:limit]


class InMemorySyncLog(SyncLogStore):
    def __init__(self) -> None:
        self.entries: dict[str, SyncLogEntry] = {}

    async def start(
        self,
        company_id: str,
        procore_company_id: int,
        sync_type: str,
        total_items: int,
    ) -> str:
        log_id = str(uuid.uuid4())
        self.entries[log_id] = SyncLogEntry(
            id=log_id,
            company_id=company_id,
            procore_company_id=procore_company_id,
            sync_type=sync_type,
            status="started",
            total_items=total_items,
            started_at=datetime.now(timezone.utc),
        )
        return log_id

    async def complete(self, log_id: str, result: SyncResult) -> None:
        self.entries[log_id] = self.entries[log_id].model_copy(
            update={
                "status": "completed",
                "created_count": result.created,
                "updated_count": result.updated,
                "skipped_count": result.skipped,
                "error_count": result.errors,
                "duration_ms": result.duration_ms,
                "completed_at": datetime.now(timezone.utc),
            }
        )

    async def fail(self, log_id: str, error_message: str, duration_ms: int) -> None:
        self.entries[log_id] = self.entries[log_id].model_copy(
            update={
                "status": "failed",
                "error_message": error_message,
                "duration_ms": duration_ms,
                "completed_at": datetime.now(timezone.utc),
            }
        )

    async def history(self, company_id: str, limit: int = 20) -> list[SyncLogEntry]:
        entries = [e for e in self.entries.values() if e.company_id == company_id]
        return list(reversed(entries))[:limit]


class InMemoryAuditSink(AuditSink):
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def actions(self) -> list[str]:
        return [entry.action for entry in self.entries]


# ── Fake Procore Client ──────────────────────────────────────────────────────


class FakeProcoreClient:
    """Dict-backed stand-in for ProcoreClient.

    Calls made with a token outside ``valid_tokens`` raise ProcoreUnauthorized.
    ``failing_vendors`` / ``failing_projects`` map ids to exceptions raised
    on fetch. ``refresh_delay`` lets concurrent refresh tests overlap, and
    ``single_use_refresh_tokens`` rejects a refresh token exchanged twice.
    """

    def __init__(self) -> None:
        self.vendors: dict[int, ProcoreVendor] = {}
        self.projects: dict[int, ProcoreProject] = {}
        self.project_vendors: dict[int, list[int]] = {}
        self.companies: list[ProcoreCompany] = [
            ProcoreCompany(id=PROCORE_COMPANY_ID, name="Acme Builders"),
        ]
        self.valid_tokens: set[str] = {"access-1"}
        self.failing_vendors: dict[int, Exception] = {}
        self.failing_projects: dict[int, Exception] = {}
        self.refresh_calls = 0
        self.refresh_error: Exception | None = None
        self.refresh_delay = 0.0
        self.refresh_returns_refresh_token = True
        self.single_use_refresh_tokens = False
        self.used_refresh_tokens: set[str] = set()
        self.push_calls: list[tuple[int, int, ComplianceStatus]] = []
        self.push_error: Exception | None = None
        self.push_outcome = PushOutcome(created=1, updated=0, custom_fields_updated=True)
        self.fetches: list[int] = []

    def _check(self, access_token: str) -> None:
        if access_token not in self.valid_tokens:
            raise ProcoreUnauthorized("Procore API 401: token expired")

    async def list_companies(self, access_token: str) -> list[ProcoreCompany]:
        self._check(access_token)
        return list(self.companies)

    async def list_vendors(
        self,
        access_token: str,
        company_id: int,
        page: int = 1,
        per_page: int = 100,
        active_only: bool = True,
    ) -> ProcorePage[ProcoreVendor]:
        self._check(access_token)
        vendors = [v for v in self.vendors.values() if v.is_active or not active_only]
        return _page(vendors, page, per_page)

    async def list_project_vendors(
        self,
        access_token: str,
        company_id: int,
        project_id: int,
        page: int = 1,
        per_page: int = 100,
    ) -> ProcorePage[ProcoreVendor]:
        self._check(access_token)
        vendors = [self.vendors[i] for i in self.project_vendors.get(project_id, [])]
        return _page(vendors, page, per_page)

    async def list_projects(
        self,
        access_token: str,
        company_id: int,
        page: int = 1,
        per_page: int = 100,
    ) -> ProcorePage[ProcoreProject]:
        self._check(access_token)
        return _page(list(self.projects.values()), page, per_page)

    async def get_vendor(
        self, access_token: str, company_id: int, vendor_id: int
    ) -> ProcoreVendor | None:
        self._check(access_token)
        self.fetches.append(vendor_id)
        await asyncio.sleep(0)
        if vendor_id in self.failing_vendors:
            raise self.failing_vendors[vendor_id]
        return self.vendors.get(vendor_id)

    async def get_project(
        self, access_token: str, company_id: int, project_id: int
    ) -> ProcoreProject | None:
        self._check(access_token)
        self.fetches.append(project_id)
        await asyncio.sleep(0)
        if project_id in self.failing_projects:
            raise self.failing_projects[project_id]
        return self.projects.get(project_id)

    async def push_compliance_status(
        self,
        access_token: str,
        company_id: int,
        vendor_id: int,
        status: ComplianceStatus,
    ) -> PushOutcome:
        self._check(access_token)
        if self.push_error is not None:
            raise self.push_error
        self.push_calls.append((company_id, vendor_id, status))
        return self.push_outcome

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.single_use_refresh_tokens and refresh_token in self.used_refresh_tokens:
            raise refresh_rejected()
        self.used_refresh_tokens.add(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        new_token = f"access-{self.refresh_calls + 1}"
        self.valid_tokens = {new_token}
        return OAuthTokens(
            access_token=new_token,
            refresh_token=f"refresh-{self.refresh_calls + 1}"
            if self.refresh_returns_refresh_token
            else None,
            expires_in=7200,
        )


def _page(items: list[Any], page: int, per_page: int) -> ProcorePage:
    start = (page - 1) * per_page
    chunk = items[start : start + per_page]
    return ProcorePage(
        data=chunk,
        page=page,
        per_page=per_page,
        total=len(items),
        has_more=start + per_page < len(items),
    )


# ── Builders ─────────────────────────────────────────────────────────────────


def make_vendor(vendor_id: int, name: str | None = None, **fields: Any) -> ProcoreVendor:
    return ProcoreVendor(id=vendor_id, name=name or f"Vendor {vendor_id}", **fields)


def make_project(project_id: int, name: str | None = None, **fields: Any) -> ProcoreProject:
    return ProcoreProject(id=project_id, name=name or f"Project {project_id}", **fields)


def make_verification(
    subcontractor_id: str,
    status: str = "pass",
    checks: list[tuple[str, str, str | None]] | None = None,
    verification_id: str | None = None,
    created_at: datetime | None = None,
) -> Verification:
    return Verification(
        id=verification_id or str(uuid.uuid4()),
        subcontractor_id=subcontractor_id,
        status=status,
        results=[
            VerificationCheck(check_name=name, status=check_status, details=details)
            for name, check_status, details in (checks or [])
        ],
        verified_at=created_at or datetime.now(timezone.utc),
        created_at=created_at or datetime.now(timezone.utc),
    )


def make_connection(**overrides: Any) -> OAuthConnection:
    values: dict[str, Any] = {
        "id": CONNECTION_ID,
        "company_id": COMPANY_ID,
        "provider": PROVIDER,
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "procore_company_id": PROCORE_COMPANY_ID,
        "procore_company_name": "Acme Builders",
        "pending_company_selection": False,
    }
    values.update(overrides)
    return OAuthConnection(**values)


def api_error(message: str = "Procore API 500") -> ProcoreAPIError:
    return ProcoreAPIError(message, upstream_status=500)


def refresh_rejected() -> TokenRefreshFailed:
    return TokenRefreshFailed("Procore token refresh failed (400)")
