"""REST API endpoints for the Procore integration.

Thin handlers over ProcoreIntegrationService: they authenticate, check the
user's role, translate request bodies and serialize results. ProcoreError
subclasses raised by the service are rendered by the application-level
exception handler with their own status codes.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from src.shield.api.deps import get_current_user, get_procore_service, require_roles
from src.shield.integrations.procore.schemas import (
    AuthenticatedUser,
    ProjectSyncOptions,
    VendorSyncOptions,
)
from src.shield.integrations.procore.service import ProcoreIntegrationService

router = APIRouter(prefix="/procore", tags=["procore"])

require_admin = require_roles("admin")
require_admin_or_risk_manager = require_roles("admin", "risk_manager")


# ── Request Schemas ──────────────────────────────────────────────────────────


class _CamelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SyncProjectsRequest(_CamelRequest):
    """Request body for syncing Procore projects."""

    project_ids: Any = Field(default=None, alias="projectIds")
    update_existing: bool = Field(default=True, alias="updateExisting")


class SyncVendorsRequest(_CamelRequest):
    """Request body for syncing Procore vendors."""

    vendor_ids: Any = Field(default=None, alias="vendorIds")
    project_id: str | None = Field(default=None, alias="projectId")
    skip_duplicates: bool = Field(default=False, alias="skipDuplicates")
    merge_existing: bool = Field(default=True, alias="mergeExisting")
    update_existing: bool = Field(default=True, alias="updateExisting")


class PushComplianceRequest(_CamelRequest):
    """Request body for pushing a compliance status to Procore."""

    subcontractor_id: str | None = Field(default=None, alias="subcontractorId")
    verification_id: str | None = Field(default=None, alias="verificationId")


class SelectCompanyRequest(_CamelRequest):
    procore_company_id: Any = Field(default=None, alias="procoreCompanyId")


# ── Listings ─────────────────────────────────────────────────────────────────


@router.get("/vendors")
async def list_vendors(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=100, ge=1),
    project_id: int | None = Query(default=None),
    active: bool = Query(default=True),
    user: AuthenticatedUser = Depends(require_admin_or_risk_manager),
    service: ProcoreIntegrationService = Depends(get_procore_service),
) -> dict[str, Any]:
    """List Procore vendors with sync status, extracted ABN and conflicts."""
    listing = await service.list_vendors(
        user.company_id,
        page=page,
        per_page=per_page,
        project_id=project_id,
        active_only=active,
    )
    return {
        "vendors": [v.model_dump(mode="json") for v in listing.vendors],
        "stats": listing.stats.model_dump(),
        "pagination": {
            "page": listing.page,
            "per_page": listing.per_page,
            "has_more": listing.has_more,
            "total": listing.total,
        },
        "procore_company": {
            "id": listing.procore_company_id,
            "name": listing.procore_company_name,
        },
    }


@router.get("/projects")
async def list_projects(
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=100, ge=1),
    user: AuthenticatedUser = Depends(require_admin_or_risk_manager),
    service: ProcoreIntegrationService = Depends(get_procore_service),
) -> dict[str, Any]:
    """List Procore projects with sync status."""
    listing = await service.list_projects(user.company_id, page=page, per_page=per_page)
    return {
        "projects": [p.model_dump(mode="json") for p in listing.projects],
        "pagination": {
            "page": listing.page,
            "per_page": listing.per_page,
            "has_more": listing.has_more,
            "total": listing.total,
        },
        "procore_company": {
            "id": listing.procore_company_id,
            "name": listing.procore_company_name,
        },
    }


# ── Sync ─────────────────────────────────────────────────────────────────────


@router.post("/projects/sync")
async def sync_projects(
    body: SyncProjectsRequest,
    user: AuthenticatedUser = Depends(require_admin),
    service: ProcoreIntegrationService = Depends(get_procore_service),
) -> dict[str, Any]:
    """Sync selected Procore projects into Shield."""
    result = await service.sync_projects(
        user,
        body.project_ids,
        ProjectSyncOptions(update_existing=body.update_existing),
    )
    return {
        "success": True,
        "message": f"Synced {result.created + result.updated} project(s) from Procore",
        "result": result.model_dump(mode="json"),
        "warnings": result.warnings(),
    }


@router.post("/vendors/sync")
async def sync_vendors(
    body: SyncVendorsRequest,
    user: AuthenticatedUser = Depends(require_admin),
    service: ProcoreIntegrationService = Depends(get_procore_service),
) -> dict[str, Any]:
    """Sync selected Procore vendors into Shield subcontractors."""
    result = await service.sync_vendors(
        user,
        body.vendor_ids,
        VendorSyncOptions(
            project_id=body.project_id,
            skip_duplicates=body.skip_duplicates,
            merge_existing=body.merge_existing,
            update_existing=body.update_existing,
        ),
    )
    return {
        "success": True,
        "message": f"Synced {result.created + result.updated} subcontractor(s) from Procore",
        "result": result.model_dump(mode="json"),
        "warnings": result.warnings(),
    }


@router.get("/sync-history")
async def sync_history(
    limit: int = Query(default=20, ge=1, le=100),
    user: AuthenticatedUser = Depends(require_admin_or_risk_manager),
    service: ProcoreIntegrationService = Depends(get_procore_service),
) -> dict[str, Any]:
    """Recent sync runs for the user's company."""
    history = await service.get_sync_history(user.company_id, limit=limit)
    return {"history": [entry.model_dump(mode="json") for entry in history]}


# ── Compliance Push ──────────────────────────────────────────────────────────


@router.post("/push-compliance")
async def push_compliance(
    body: PushComplianceRequest,
    user: AuthenticatedUser = Depends(require_admin_or_risk_manager),
    service: ProcoreIntegrationService = Depends(get_procore_service),
) -> JSONResponse:
    """Push a subcontractor's compliance status to its Procore vendor."""
    result = await service.push_compliance(
        user.company_id, body.subcontractor_id or "", body.verification_id
    )
    if not result.pushed:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": result.message},
        )
    return JSONResponse(
        content={
            "success": True,
            "message": result.message,
            "procore_vendor_id": result.procore_vendor_id,
        }
    )


@router.get("/push-compliance")
async def push_compliance_history(
    subcontractor_id: str = Query(..., alias="subcontractorId"),
    user: AuthenticatedUser = Depends(get_current_user),
    service: ProcoreIntegrationService = Depends(get_procore_service),
) -> dict[str, Any]:
    """Compliance push history for one subcontractor, newest first."""
    history = await service.get_push_history(user.company_id, subcontractor_id)
    return {"history": [record.model_dump(mode="json") for record in history]}


# ── Connection ───────────────────────────────────────────────────────────────


@router.post("/company")
async def select_company(
    body: SelectCompanyRequest,
    user: AuthenticatedUser = Depends(require_admin),
    service: ProcoreIntegrationService = Depends(get_procore_service),
) -> dict[str, Any]:
    """Select which Procore company this connection syncs with."""
    connection = await service.select_company(user, body.procore_company_id)
    return {
        "success": True,
        "company": {
            "id": connection.procore_company_id,
            "name": connection.procore_company_name,
        },
    }


@router.delete("/connection")
async def disconnect(
    user: AuthenticatedUser = Depends(require_admin),
    service: ProcoreIntegrationService = Depends(get_procore_service),
) -> dict[str, Any]:
    """Disconnect Procore and pause all of the company's mappings."""
    await service.disconnect(user)
    return {"success": True, "message": "Procore disconnected"}
