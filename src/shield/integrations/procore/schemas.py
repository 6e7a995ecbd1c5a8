"""Pydantic schemas for the Procore integration.

Defines all structured types crossing module boundaries:
- Enums: entity types, sync direction/status, item outcomes, compliance values
- Procore payloads: OAuthTokens, ProcoreCompany, ProcoreVendor, ProcoreProject,
  ProcorePage, insurance records and inputs
- Local records: OAuthConnection, IdentityMapping, LocalSubcontractor,
  LocalProject, Verification, AuditEntry
- Sync payloads: ProjectSyncOptions, VendorSyncOptions, SyncItemResult, SyncResult
- Compliance payloads: ComplianceStatus, PushOutcome, PushResult,
  CompliancePushRecord
- Listing payloads: VendorWithSyncStatus, VendorListing, ProjectWithSyncStatus
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


# ── Enums ───────────────────────────────────────────────────────────────────


class ProcoreEntityType(str, Enum):
    PROJECT = "project"
    VENDOR = "vendor"


class ShieldEntityType(str, Enum):
    PROJECT = "project"
    SUBCONTRACTOR = "subcontractor"


class SyncDirection(str, Enum):
    PROCORE_TO_SHIELD = "procore_to_shield"
    SHIELD_TO_PROCORE = "shield_to_procore"
    BIDIRECTIONAL = "bidirectional"


class MappingStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class SyncOutcome(str, Enum):
    """Terminal state of one item within a sync run."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    ERROR = "error"


class VendorSyncStatus(str, Enum):
    SYNCED = "synced"
    NOT_SYNCED = "not_synced"
    ABN_CONFLICT = "abn_conflict"


class ComplianceStatusValue(str, Enum):
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non_compliant"
    PENDING = "pending"
    EXPIRED = "expired"


class CoverageStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    MISSING = "missing"
    INSUFFICIENT = "insufficient"


# ── Procore Payloads ────────────────────────────────────────────────────────


class OAuthTokens(BaseModel):
    """Token pair returned by the Procore OAuth token endpoint."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int = 7200
    created_at: int | None = None

    def expires_at(self) -> datetime:
        """Absolute expiry, anchored on created_at when Procore supplies it."""
        if self.created_at is not None:
            issued = datetime.fromtimestamp(self.created_at, tz=timezone.utc)
        else:
            issued = datetime.now(timezone.utc)
        return issued + timedelta(seconds=self.expires_in)


class ProcoreCompany(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    is_active: bool = True


class ProcoreVendorContact(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    name: str | None = None
    email_address: str | None = None
    business_phone: str | None = None
    mobile_phone: str | None = None
    is_primary: bool = False


class ProcoreVendor(BaseModel):
    """Vendor from the Procore company directory.

    For Australian companies the ABN normally sits in entity_id with
    entity_type == "abn", but tax_id, business_id and abbreviated_name are
    also seen carrying it.
    """

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    abbreviated_name: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    license_number: str | None = None
    tax_id: str | None = None
    business_id: str | None = None
    email_address: str | None = None
    business_phone: str | None = None
    website: str | None = None
    address: str | None = None
    city: str | None = None
    state_code: str | None = None
    country_code: str | None = None
    zip: str | None = None
    is_active: bool = True
    primary_contact: ProcoreVendorContact | None = None
    custom_fields: dict[str, Any] | None = None


class ProcoreProject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    display_name: str | None = None
    project_number: str | None = None
    address: str | None = None
    city: str | None = None
    state_code: str | None = None
    country_code: str | None = None
    zip: str | None = None
    estimated_start_date: str | None = None
    estimated_completion_date: str | None = None
    actual_start_date: str | None = None
    projected_finish_date: str | None = None
    active: bool = True


class ProcorePage(BaseModel, Generic[T]):
    """One explicitly requested page of a Procore list endpoint."""

    data: list[T] = Field(default_factory=list)
    page: int = 1
    per_page: int = 100
    total: int | None = None
    has_more: bool = False

    @property
    def next_page(self) -> int | None:
        return self.page + 1 if self.has_more else None


class ProcoreVendorInsurance(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    vendor_id: int | None = None
    insurance_type: str
    policy_number: str | None = None
    insurance_company: str | None = None
    limit: float | None = None
    expiration_date: str | None = None
    status: str | None = None


class VendorInsuranceInput(BaseModel):
    """Create/update payload for the Procore vendor insurances API."""

    vendor_id: int
    insurance_type: str
    status: str
    policy_number: str | None = None
    insurance_company: str | None = None
    limit: float | None = None
    expiration_date: str | None = None
    additional_insured: bool = True
    waiver_of_subrogation: bool = True


# ── Local Records ───────────────────────────────────────────────────────────


class AuthenticatedUser(BaseModel):
    """User context supplied by upstream authentication."""

    id: str
    company_id: str
    role: str


class OAuthConnection(BaseModel):
    id: str
    company_id: str
    provider: str = "procore"
    access_token: str
    refresh_token: str | None = None
    procore_company_id: int | None = None
    procore_company_name: str | None = None
    pending_company_selection: bool = False
    token_expires_at: datetime | None = None


class MappingUpsert(BaseModel):
    """Mapping row to insert, or to refresh when the composite key exists."""

    company_id: str
    procore_company_id: int
    procore_entity_type: ProcoreEntityType
    procore_entity_id: int
    shield_entity_type: ShieldEntityType
    shield_entity_id: str
    sync_direction: SyncDirection = SyncDirection.PROCORE_TO_SHIELD
    sync_status: MappingStatus = MappingStatus.ACTIVE
    sync_error: str | None = None


class IdentityMapping(MappingUpsert):
    id: str
    last_synced_at: datetime | None = None


class ProjectFields(BaseModel):
    name: str
    address: str | None = None
    state: str | None = None
    status: str = "active"
    start_date: str | None = None
    end_date: str | None = None


class SubcontractorFields(BaseModel):
    name: str
    abn: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    postcode: str | None = None
    status: str = "active"


class LocalSubcontractor(SubcontractorFields):
    id: str
    company_id: str


class LocalProject(ProjectFields):
    id: str
    company_id: str


class VerificationCheck(BaseModel):
    model_config = ConfigDict(extra="ignore")

    check_name: str
    status: str
    details: str | None = None


class Verification(BaseModel):
    id: str
    subcontractor_id: str
    status: str
    results: list[VerificationCheck] = Field(default_factory=list)
    verified_at: datetime | None = None
    created_at: datetime | None = None


class AuditEntry(BaseModel):
    company_id: str
    user_id: str
    entity_type: str
    entity_id: str
    action: str
    details: dict[str, Any] = Field(default_factory=dict)


# ── Sync Payloads ───────────────────────────────────────────────────────────


class ProjectSyncOptions(BaseModel):
    update_existing: bool = True


class VendorSyncOptions(BaseModel):
    project_id: str | None = None
    skip_duplicates: bool = False
    merge_existing: bool = True
    update_existing: bool = True


class SyncItemResult(BaseModel):
    """Outcome of one requested Procore id within a run."""

    procore_id: int
    shield_id: str | None = None
    entity_type: ProcoreEntityType
    outcome: SyncOutcome
    message: str
    details: dict[str, Any] | None = None

    @property
    def success(self) -> bool:
        return self.outcome is not SyncOutcome.ERROR


class SyncResult(BaseModel):
    """Summary of one sync run. Counts are always tallied from results."""

    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    duration_ms: int = 0
    cancelled: bool = False
    results: list[SyncItemResult] = Field(default_factory=list)

    @classmethod
    def from_items(
        cls,
        items: list[SyncItemResult],
        duration_ms: int,
        cancelled: bool = False,
    ) -> SyncResult:
        tally = Counter(item.outcome for item in items)
        return cls(
            total=len(items),
            created=tally[SyncOutcome.CREATED],
            updated=tally[SyncOutcome.UPDATED],
            skipped=tally[SyncOutcome.SKIPPED],
            errors=tally[SyncOutcome.ERROR],
            duration_ms=duration_ms,
            cancelled=cancelled,
            results=items,
        )

    def warnings(self) -> list[str]:
        """Human-readable warnings attached to individual items."""
        return [
            f"{item.message}: {item.details['warning']}"
            for item in self.results
            if item.details and item.details.get("warning")
        ]


class SyncLogEntry(BaseModel):
    id: str
    company_id: str
    procore_company_id: int
    sync_type: str
    status: str
    total_items: int | None = None
    created_count: int | None = None
    updated_count: int | None = None
    skipped_count: int | None = None
    error_count: int | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None


# ── Compliance Payloads ─────────────────────────────────────────────────────


class CoverageItem(BaseModel):
    type: str
    status: CoverageStatus
    expiry_date: str | None = None
    amount: float | None = None
    policy_number: str | None = None
    insurer_name: str | None = None


class ComplianceStatus(BaseModel):
    """Compliance snapshot pushed to a Procore vendor."""

    vendor_id: int
    shield_subcontractor_id: str
    compliance_status: ComplianceStatusValue
    coverage_summary: list[CoverageItem] = Field(default_factory=list)
    last_verified_at: str
    verification_id: str | None = None


class PushOutcome(BaseModel):
    """What the Procore API accepted for one compliance push."""

    created: int = 0
    updated: int = 0
    errors: list[str] = Field(default_factory=list)
    custom_fields_updated: bool = False


class PushResult(BaseModel):
    pushed: bool
    message: str
    procore_vendor_id: int | None = None


class CompliancePushRecord(BaseModel):
    id: str
    company_id: str
    subcontractor_id: str
    verification_id: str | None = None
    pushed: bool
    message: str
    procore_vendor_id: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


# ── Listing Payloads ────────────────────────────────────────────────────────


class ConflictDetails(BaseModel):
    existing_id: str
    existing_name: str


class VendorWithSyncStatus(BaseModel):
    vendor: ProcoreVendor
    sync_status: VendorSyncStatus
    shield_subcontractor_id: str | None = None
    extracted_abn: str | None = None
    conflict: ConflictDetails | None = None


class VendorListingStats(BaseModel):
    total: int = 0
    synced: int = 0
    not_synced: int = 0
    abn_conflicts: int = 0
    with_abn: int = 0
    without_abn: int = 0


class VendorListing(BaseModel):
    vendors: list[VendorWithSyncStatus] = Field(default_factory=list)
    stats: VendorListingStats = Field(default_factory=VendorListingStats)
    page: int = 1
    per_page: int = 100
    has_more: bool = False
    total: int | None = None
    procore_company_id: int | None = None
    procore_company_name: str | None = None


class ProjectWithSyncStatus(BaseModel):
    project: ProcoreProject
    synced: bool
    shield_project_id: str | None = None


class ProjectListing(BaseModel):
    projects: list[ProjectWithSyncStatus] = Field(default_factory=list)
    page: int = 1
    per_page: int = 100
    has_more: bool = False
    total: int | None = None
    procore_company_id: int | None = None
    procore_company_name: str | None = None
