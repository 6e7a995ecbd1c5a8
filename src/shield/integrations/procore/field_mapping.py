"""Field mappings between Procore records and local Shield records.

Defines:
- map_procore_project(): Procore project -> local project fields.
- map_procore_vendor(): Procore vendor -> local subcontractor fields.
- determine_compliance_status(): Verification outcome -> overall status.
- extract_coverage_summary(): Verification check results -> coverage items.
- coverage_to_insurance_inputs(): Coverage items -> Procore insurance payloads.
"""

from __future__ import annotations

from src.shield.integrations.procore.config import is_australian_state_code
from src.shield.integrations.procore.conflicts import extract_abn
from src.shield.integrations.procore.schemas import (
    ComplianceStatusValue,
    CoverageItem,
    CoverageStatus,
    ProcoreProject,
    ProcoreVendor,
    ProjectFields,
    SubcontractorFields,
    VerificationCheck,
    VendorInsuranceInput,
)


# ── Procore -> Shield ──────────────────────────────────────────────────────


def map_procore_project(project: ProcoreProject) -> ProjectFields:
    """Convert a Procore project into local project fields.

    Address parts are joined into one line. Non-Australian state codes stay
    in the address but are not stored as the project state.
    """
    state_code = project.state_code
    address_parts = [
        part
        for part in (project.address, project.city, state_code, project.zip)
        if part
    ]

    return ProjectFields(
        name=project.name,
        address=", ".join(address_parts) if address_parts else None,
        state=state_code if is_australian_state_code(state_code) else None,
        status="active" if project.active else "completed",
        start_date=project.estimated_start_date or project.actual_start_date or None,
        end_date=project.estimated_completion_date or project.projected_finish_date or None,
    )


def map_procore_vendor(vendor: ProcoreVendor) -> SubcontractorFields:
    """Convert a Procore vendor into local subcontractor fields.

    Contact details fall back to the vendor's primary contact.
    """
    contact = vendor.primary_contact
    state_code = vendor.state_code

    return SubcontractorFields(
        name=vendor.name,
        abn=extract_abn(vendor),
        email=vendor.email_address or (contact.email_address if contact else None) or None,
        phone=vendor.business_phone or (contact.business_phone if contact else None) or None,
        address=vendor.address or None,
        city=vendor.city or None,
        state=state_code if is_australian_state_code(state_code) else None,
        postcode=vendor.zip or None,
        status="active" if vendor.is_active else "inactive",
    )


# ── Shield -> Procore ──────────────────────────────────────────────────────

COVERAGE_TYPES = (
    "public_liability",
    "products_liability",
    "workers_comp",
    "professional_indemnity",
    "motor_vehicle",
    "contract_works",
)

PROCORE_INSURANCE_TYPES: dict[str, str] = {
    "public_liability": "General Liability",
    "products_liability": "General Liability",
    "workers_comp": "Workers Compensation",
    "workers_compensation": "Workers Compensation",
    "professional_indemnity": "Professional Liability",
    "motor_vehicle": "Auto Liability",
    "contract_works": "Builders Risk",
    "umbrella": "Umbrella",
}

PROCORE_INSURANCE_STATUSES: dict[CoverageStatus, str] = {
    CoverageStatus.VALID: "compliant",
    CoverageStatus.EXPIRED: "expired",
    CoverageStatus.MISSING: "non_compliant",
    CoverageStatus.INSUFFICIENT: "non_compliant",
}

_COMPLIANT_VERIFICATION_STATUSES = frozenset({"compliant", "pass"})
_PENDING_VERIFICATION_STATUSES = frozenset({"pending", "in_progress", "review"})


def _normalize(name: str) -> str:
    return "_".join(name.lower().split())


def determine_compliance_status(
    verification_status: str,
    results: list[VerificationCheck],
) -> ComplianceStatusValue:
    """Overall compliance status for a verification.

    A failed verification counts as expired when any failed check mentions
    expiry in its details or name; otherwise it is non-compliant.
    """
    if verification_status in _COMPLIANT_VERIFICATION_STATUSES:
        return ComplianceStatusValue.COMPLIANT
    if verification_status in _PENDING_VERIFICATION_STATUSES:
        return ComplianceStatusValue.PENDING

    for check in results:
        if check.status != "failed":
            continue
        if "expir" in (check.details or "").lower() or "expir" in check.check_name.lower():
            return ComplianceStatusValue.EXPIRED

    return ComplianceStatusValue.NON_COMPLIANT


def _failed_coverage_status(details: str | None) -> CoverageStatus:
    text = (details or "").lower()
    if "expir" in text:
        return CoverageStatus.EXPIRED
    if "missing" in text:
        return CoverageStatus.MISSING
    if "insufficient" in text or "below" in text:
        return CoverageStatus.INSUFFICIENT
    return CoverageStatus.MISSING


def extract_coverage_summary(results: list[VerificationCheck]) -> list[CoverageItem]:
    """Pick the insurance-coverage checks out of a verification's results.

    A check counts as coverage when its normalized name contains a known
    coverage type or that type's leading word ("public", "workers", ...).
    Checks that are not failed are treated as valid coverage.
    """
    coverage: list[CoverageItem] = []

    for check in results:
        name = _normalize(check.check_name)
        leading = name.split("_")[0]
        matched = next(
            (t for t in COVERAGE_TYPES if t in name or leading in t),
            None,
        )
        if matched is None and not any(t.split("_")[0] in name for t in COVERAGE_TYPES):
            continue

        status = (
            _failed_coverage_status(check.details)
            if check.status == "failed"
            else CoverageStatus.VALID
        )
        coverage.append(CoverageItem(type=matched or name, status=status))

    return coverage


def coverage_to_insurance_inputs(
    vendor_id: int,
    coverage: list[CoverageItem],
) -> list[VendorInsuranceInput]:
    """Procore insurance payloads for every coverage item that is not missing."""
    inputs: list[VendorInsuranceInput] = []

    for item in coverage:
        if item.status is CoverageStatus.MISSING:
            continue
        inputs.append(
            VendorInsuranceInput(
                vendor_id=vendor_id,
                insurance_type=PROCORE_INSURANCE_TYPES.get(
                    _normalize(item.type), "General Liability"
                ),
                status=PROCORE_INSURANCE_STATUSES.get(item.status, "pending_review"),
                policy_number=item.policy_number or None,
                insurance_company=item.insurer_name or None,
                limit=item.amount or None,
                expiration_date=item.expiry_date or None,
            )
        )

    return inputs
