"""Compliance push pipeline: Shield verification outcome -> Procore vendor.

The inverse of the sync engine. Given a subcontractor and one of its
verifications, looks up the Procore vendor it was synced from and mirrors
the verification's compliance status onto that vendor's insurance records
and custom fields.

Push failures are never raised: a subcontractor that was never synced from
Procore is an expected steady state, so every attempt returns a PushResult
and appends a CompliancePushRecord to the push history.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.shield.core.monitoring import procore_compliance_pushes_total
from src.shield.integrations.procore.client import ProcoreClient
from src.shield.integrations.procore.config import PROVIDER
from src.shield.integrations.procore.field_mapping import (
    determine_compliance_status,
    extract_coverage_summary,
)
from src.shield.integrations.procore.schemas import (
    AuditEntry,
    CompliancePushRecord,
    ComplianceStatus,
    OAuthConnection,
    PushResult,
    ShieldEntityType,
    Verification,
)
from src.shield.integrations.procore.stores import (
    AuditSink,
    CredentialStore,
    IdentityMappingStore,
    PushHistoryStore,
)
from src.shield.integrations.procore.token_refresh import TokenRefreshCoordinator

logger = structlog.get_logger(__name__)

NOT_CONNECTED_MESSAGE = "Procore not connected or company not selected"
NOT_MAPPED_MESSAGE = "Subcontractor not synced from Procore - no mapping exists"

SYSTEM_USER_ID = "system"


def build_compliance_status(
    procore_vendor_id: int,
    subcontractor_id: str,
    verification: Verification,
) -> ComplianceStatus:
    """Snapshot of a verification in the shape pushed to Procore."""
    verified_at = verification.verified_at or datetime.now(timezone.utc)
    return ComplianceStatus(
        vendor_id=procore_vendor_id,
        shield_subcontractor_id=subcontractor_id,
        compliance_status=determine_compliance_status(
            verification.status, verification.results
        ),
        coverage_summary=extract_coverage_summary(verification.results),
        last_verified_at=verified_at.isoformat(),
        verification_id=verification.id,
    )


class CompliancePushPipeline:
    """Pushes verification outcomes to Procore and keeps the push history.

    Args:
        client: Procore API client.
        credentials: OAuth connection store.
        mappings: Identity mapping store (local subcontractor -> Procore vendor).
        push_history: Append-only push record store.
        audit: Optional audit sink receiving one entry per attempt.
        coordinator_for: Returns the token refresh coordinator for a
            connection. Callers that also hit Procore for the same connection
            pass a shared one so a stale token is refreshed only once.
    """

    def __init__(
        self,
        client: ProcoreClient,
        credentials: CredentialStore,
        mappings: IdentityMappingStore,
        push_history: PushHistoryStore,
        audit: AuditSink | None = None,
        coordinator_for: Callable[[OAuthConnection], TokenRefreshCoordinator] | None = None,
    ) -> None:
        self._client = client
        self._credentials = credentials
        self._mappings = mappings
        self._push_history = push_history
        self._audit = audit
        self._coordinator_for = coordinator_for or self._new_coordinator

    def _new_coordinator(self, connection: OAuthConnection) -> TokenRefreshCoordinator:
        return TokenRefreshCoordinator(self._client, self._credentials, connection.id)

    async def push(
        self,
        company_id: str,
        subcontractor_id: str,
        verification: Verification,
    ) -> PushResult:
        """Push one verification's compliance status for a subcontractor."""
        connection = await self._credentials.get(company_id, PROVIDER)
        if (
            connection is None
            or connection.pending_company_selection
            or connection.procore_company_id is None
        ):
            result = PushResult(pushed=False, message=NOT_CONNECTED_MESSAGE)
            await self._record(company_id, subcontractor_id, verification.id, result, {})
            return result

        mapping = await self._mappings.get_by_local_entity(
            company_id, ShieldEntityType.SUBCONTRACTOR, subcontractor_id
        )
        if mapping is None:
            logger.info(
                "procore_push.not_mapped",
                company_id=company_id,
                subcontractor_id=subcontractor_id,
            )
            result = PushResult(pushed=False, message=NOT_MAPPED_MESSAGE)
            await self._record(company_id, subcontractor_id, verification.id, result, {})
            return result

        vendor_id = mapping.procore_entity_id
        status = build_compliance_status(vendor_id, subcontractor_id, verification)
        procore_company_id = connection.procore_company_id
        coordinator = self._coordinator_for(connection)

        try:
            outcome = await coordinator.call(
                lambda token: self._client.push_compliance_status(
                    token, procore_company_id, vendor_id, status
                )
            )
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc) or "Unknown error"
            logger.error(
                "procore_push.failed",
                company_id=company_id,
                subcontractor_id=subcontractor_id,
                procore_vendor_id=vendor_id,
                error=message,
            )
            result = PushResult(pushed=False, message=f"Failed to push to Procore: {message}")
            await self._record(
                company_id,
                subcontractor_id,
                verification.id,
                result,
                {"procore_vendor_id": vendor_id, "error": message},
            )
            return result

        compliance_value = status.compliance_status.value
        result = PushResult(
            pushed=True,
            message=(
                f'Compliance status "{compliance_value}" pushed to Procore '
                f"({outcome.created} created, {outcome.updated} updated insurance records)"
            ),
            procore_vendor_id=vendor_id,
        )
        logger.info(
            "procore_push.completed",
            company_id=company_id,
            subcontractor_id=subcontractor_id,
            procore_vendor_id=vendor_id,
            compliance_status=compliance_value,
        )
        await self._record(
            company_id,
            subcontractor_id,
            verification.id,
            result,
            {
                "procore_vendor_id": vendor_id,
                "compliance_status": compliance_value,
                "verification_id": verification.id,
                "insurance_sync": {
                    "created": outcome.created,
                    "updated": outcome.updated,
                    "errors": outcome.errors,
                },
                "custom_fields_updated": outcome.custom_fields_updated,
            },
        )
        return result

    async def history(
        self, company_id: str, subcontractor_id: str, limit: int = 10
    ) -> list[CompliancePushRecord]:
        """Push records for a subcontractor, newest first."""
        return await self._push_history.list_for_subcontractor(
            company_id, subcontractor_id, limit=limit
        )

    async def _record(
        self,
        company_id: str,
        subcontractor_id: str,
        verification_id: str | None,
        result: PushResult,
        details: dict[str, Any],
    ) -> None:
        await self._push_history.append(
            CompliancePushRecord(
                id=str(uuid.uuid4()),
                company_id=company_id,
                subcontractor_id=subcontractor_id,
                verification_id=verification_id,
                pushed=result.pushed,
                message=result.message,
                procore_vendor_id=result.procore_vendor_id,
                details=details,
                created_at=datetime.now(timezone.utc),
            )
        )
        procore_compliance_pushes_total.labels(pushed=str(result.pushed).lower()).inc()
        if self._audit is not None:
            await self._audit.record(
                AuditEntry(
                    company_id=company_id,
                    user_id=SYSTEM_USER_ID,
                    entity_type=ShieldEntityType.SUBCONTRACTOR.value,
                    entity_id=subcontractor_id,
                    action="procore_compliance_push"
                    if result.pushed
                    else "procore_compliance_push_failed",
                    details={**details, "message": result.message},
                )
            )
