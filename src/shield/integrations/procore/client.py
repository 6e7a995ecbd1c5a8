"""Async HTTP client for the Procore REST API.

Provides ProcoreClient with retry logic for transient failures (tenacity,
3 attempts, exponential backoff 1-10s) and a mandatory per-call timeout.
The client is stateless with respect to credentials: every call receives
the bearer access token from its caller, and a 401 is raised as
ProcoreUnauthorized rather than retried here. Token refresh and the single
retry after it belong to TokenRefreshCoordinator.

Pagination is explicit: list methods return one ProcorePage and never
auto-paginate, so callers control batch size and partial-run limits.
"""

from __future__ import annotations

from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.shield.config import Settings
from src.shield.integrations.procore.config import (
    API_PREFIX,
    BACKOFF_MAX_SECONDS,
    BACKOFF_MIN_SECONDS,
    COMPLIANCE_CUSTOM_FIELDS,
    MAX_TRANSIENT_ATTEMPTS,
    PROCORE_URLS,
    TOKEN_PATH,
)
from src.shield.integrations.procore.errors import (
    ProcoreAPIError,
    ProcoreTransientError,
    ProcoreUnauthorized,
    TokenRefreshFailed,
)
from src.shield.integrations.procore.field_mapping import coverage_to_insurance_inputs
from src.shield.integrations.procore.schemas import (
    ComplianceStatus,
    OAuthTokens,
    ProcoreCompany,
    ProcorePage,
    ProcoreProject,
    ProcoreVendor,
    ProcoreVendorInsurance,
    PushOutcome,
    VendorInsuranceInput,
)

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_procore_retry = retry(
    stop=stop_after_attempt(MAX_TRANSIENT_ATTEMPTS),
    wait=wait_exponential(multiplier=1, min=BACKOFF_MIN_SECONDS, max=BACKOFF_MAX_SECONDS),
    retry=retry_if_exception_type(
        (httpx.ConnectError, httpx.TimeoutException, ProcoreTransientError)
    ),
    reraise=True,
)


class ProcoreClient:
    """Async client for the Procore company directory, projects and insurances.

    Args:
        api_base_url: Procore API host (production or sandbox).
        auth_base_url: Procore login host serving the OAuth token endpoint.
        client_id: OAuth application client id.
        client_secret: OAuth application client secret.
        timeout: Per-request timeout in seconds.
        max_page_size: Upper bound applied to every per_page argument.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        api_base_url: str,
        auth_base_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 15.0,
        max_page_size: int = 1000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_base_url = api_base_url.rstrip("/")
        self._auth_base_url = auth_base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._max_page_size = max_page_size
        self._transport = transport

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ProcoreClient:
        urls = PROCORE_URLS["sandbox" if settings.PROCORE_SANDBOX else "production"]
        return cls(
            api_base_url=urls["api"],
            auth_base_url=urls["auth"],
            client_id=settings.PROCORE_CLIENT_ID,
            client_secret=settings.PROCORE_CLIENT_SECRET,
            timeout=settings.PROCORE_HTTP_TIMEOUT,
            max_page_size=settings.PROCORE_MAX_PAGE_SIZE,
            transport=transport,
        )

    def _client(self, base_url: str) -> httpx.AsyncClient:
        """Create a new httpx client bound to base_url with the configured timeout."""
        return httpx.AsyncClient(
            base_url=base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    # ── Transport ───────────────────────────────────────────────────────────

    @staticmethod
    def _raise_for_status(response: httpx.Response, path: str) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 401:
            raise ProcoreUnauthorized(f"Procore rejected the access token for {path}")
        if status == 429 or status >= 500:
            logger.warning("procore.transient_error", path=path, status_code=status)
            raise ProcoreTransientError(
                f"Procore returned {status} for {path}", upstream_status=status
            )
        raise ProcoreAPIError(
            f"Procore returned {status} for {path}: {response.text[:200]}",
            upstream_status=status,
        )

    @_procore_retry
    async def _send(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        company_id: int | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response | None:
        """Issue one API request. Returns None for a tolerated 404."""
        headers = {"Authorization": f"Bearer {access_token}"}
        if company_id is not None:
            headers["Procore-Company-Id"] = str(company_id)

        async with self._client(self._api_base_url) as client:
            response = await client.request(
                method,
                f"{API_PREFIX}{path}",
                headers=headers,
                params=params,
                json=json,
            )

        if allow_not_found and response.status_code == 404:
            return None
        self._raise_for_status(response, path)
        return response

    def _clamp(self, page: int, per_page: int) -> tuple[int, int]:
        return max(page, 1), min(max(per_page, 1), self._max_page_size)

    @staticmethod
    def _to_page(
        response: httpx.Response,
        model: type[ModelT],
        page: int,
        per_page: int,
    ) -> ProcorePage[ModelT]:
        data = [model.model_validate(item) for item in response.json()]
        total_header = response.headers.get("Total")
        total = int(total_header) if total_header and total_header.isdigit() else None
        if total is not None:
            has_more = page * per_page < total
        else:
            has_more = len(data) >= per_page
        return ProcorePage[model](
            data=data, page=page, per_page=per_page, total=total, has_more=has_more
        )

    # ── Companies ───────────────────────────────────────────────────────────

    async def list_companies(self, access_token: str) -> list[ProcoreCompany]:
        """Companies visible to the authorizing Procore user."""
        response = await self._send("GET", "/companies", access_token=access_token)
        return [ProcoreCompany.model_validate(item) for item in response.json()]

    # ── Vendors ─────────────────────────────────────────────────────────────

    async def list_vendors(
        self,
        access_token: str,
        company_id: int,
        page: int = 1,
        per_page: int = 100,
        active_only: bool = True,
    ) -> ProcorePage[ProcoreVendor]:
        """One page of the company vendor directory."""
        page, per_page = self._clamp(page, per_page)
        params: dict[str, Any] = {
            "company_id": company_id,
            "page": page,
            "per_page": per_page,
        }
        if active_only:
            params["filters[is_active]"] = "true"

        response = await self._send(
            "GET", "/vendors", access_token=access_token, company_id=company_id, params=params
        )
        result = self._to_page(response, ProcoreVendor, page, per_page)
        logger.info(
            "procore.vendors_listed",
            company_id=company_id,
            page=page,
            count=len(result.data),
            has_more=result.has_more,
        )
        return result

    async def list_project_vendors(
        self,
        access_token: str,
        company_id: int,
        project_id: int,
        page: int = 1,
        per_page: int = 100,
    ) -> ProcorePage[ProcoreVendor]:
        """One page of the vendors assigned to a Procore project."""
        page, per_page = self._clamp(page, per_page)
        response = await self._send(
            "GET",
            f"/projects/{project_id}/vendors",
            access_token=access_token,
            company_id=company_id,
            params={"page": page, "per_page": per_page},
        )
        return self._to_page(response, ProcoreVendor, page, per_page)

    async def get_vendor(
        self, access_token: str, company_id: int, vendor_id: int
    ) -> ProcoreVendor | None:
        response = await self._send(
            "GET",
            f"/vendors/{vendor_id}",
            access_token=access_token,
            company_id=company_id,
            params={"company_id": company_id},
            allow_not_found=True,
        )
        if response is None:
            return None
        return ProcoreVendor.model_validate(response.json())

    async def update_vendor_custom_fields(
        self,
        access_token: str,
        company_id: int,
        vendor_id: int,
        fields: dict[str, Any],
    ) -> ProcoreVendor:
        response = await self._send(
            "PATCH",
            f"/vendors/{vendor_id}",
            access_token=access_token,
            company_id=company_id,
            params={"company_id": company_id},
            json={"vendor": {"custom_fields": fields}},
        )
        return ProcoreVendor.model_validate(response.json())

    # ── Projects ────────────────────────────────────────────────────────────

    async def list_projects(
        self,
        access_token: str,
        company_id: int,
        page: int = 1,
        per_page: int = 100,
    ) -> ProcorePage[ProcoreProject]:
        page, per_page = self._clamp(page, per_page)
        response = await self._send(
            "GET",
            "/projects",
            access_token=access_token,
            company_id=company_id,
            params={"company_id": company_id, "page": page, "per_page": per_page},
        )
        result = self._to_page(response, ProcoreProject, page, per_page)
        logger.info(
            "procore.projects_listed",
            company_id=company_id,
            page=page,
            count=len(result.data),
            has_more=result.has_more,
        )
        return result

    async def get_project(
        self, access_token: str, company_id: int, project_id: int
    ) -> ProcoreProject | None:
        response = await self._send(
            "GET",
            f"/projects/{project_id}",
            access_token=access_token,
            company_id=company_id,
            params={"company_id": company_id},
            allow_not_found=True,
        )
        if response is None:
            return None
        return ProcoreProject.model_validate(response.json())

    # ── Vendor Insurances ───────────────────────────────────────────────────

    async def list_vendor_insurances(
        self, access_token: str, company_id: int, vendor_id: int
    ) -> list[ProcoreVendorInsurance]:
        response = await self._send(
            "GET",
            f"/vendors/{vendor_id}/insurances",
            access_token=access_token,
            company_id=company_id,
            params={"company_id": company_id},
        )
        return [ProcoreVendorInsurance.model_validate(item) for item in response.json()]

    async def create_vendor_insurance(
        self, access_token: str, company_id: int, data: VendorInsuranceInput
    ) -> ProcoreVendorInsurance:
        response = await self._send(
            "POST",
            f"/vendors/{data.vendor_id}/insurances",
            access_token=access_token,
            company_id=company_id,
            params={"company_id": company_id},
            json={"insurance": data.model_dump(exclude_none=True, exclude={"vendor_id"})},
        )
        return ProcoreVendorInsurance.model_validate(response.json())

    async def update_vendor_insurance(
        self,
        access_token: str,
        company_id: int,
        insurance_id: int,
        data: VendorInsuranceInput,
    ) -> ProcoreVendorInsurance:
        response = await self._send(
            "PATCH",
            f"/vendors/{data.vendor_id}/insurances/{insurance_id}",
            access_token=access_token,
            company_id=company_id,
            params={"company_id": company_id},
            json={"insurance": data.model_dump(exclude_none=True, exclude={"vendor_id"})},
        )
        return ProcoreVendorInsurance.model_validate(response.json())

    async def push_compliance_status(
        self,
        access_token: str,
        company_id: int,
        vendor_id: int,
        status: ComplianceStatus,
    ) -> PushOutcome:
        """Mirror a compliance snapshot onto the vendor's insurance records.

        Existing insurances are matched by type and updated, the rest are
        created. The vendor's custom fields are then stamped with the overall
        status; accounts without those fields configured reject the update,
        which is logged and reported in the outcome but not raised.
        """
        outcome = PushOutcome()
        inputs = coverage_to_insurance_inputs(vendor_id, status.coverage_summary)

        if inputs:
            existing = await self.list_vendor_insurances(
                access_token, company_id, vendor_id
            )
            by_type = {ins.insurance_type.lower(): ins for ins in existing}

            for item in inputs:
                try:
                    current = by_type.get(item.insurance_type.lower())
                    if current is not None:
                        await self.update_vendor_insurance(
                            access_token, company_id, current.id, item
                        )
                        outcome.updated += 1
                    else:
                        created = await self.create_vendor_insurance(
                            access_token, company_id, item
                        )
                        by_type[created.insurance_type.lower()] = created
                        outcome.created += 1
                except ProcoreUnauthorized:
                    raise
                except ProcoreAPIError as exc:
                    outcome.errors.append(f"{item.insurance_type}: {exc.message}")

        try:
            await self.update_vendor_custom_fields(
                access_token,
                company_id,
                vendor_id,
                dict(
                    zip(
                        COMPLIANCE_CUSTOM_FIELDS,
                        (
                            status.compliance_status.value,
                            status.last_verified_at,
                            status.verification_id,
                        ),
                    )
                ),
            )
            outcome.custom_fields_updated = True
        except ProcoreUnauthorized:
            raise
        except ProcoreAPIError as exc:
            logger.warning(
                "procore.custom_fields_update_failed",
                vendor_id=vendor_id,
                error=exc.message,
            )

        logger.info(
            "procore.compliance_pushed",
            vendor_id=vendor_id,
            compliance_status=status.compliance_status.value,
            created=outcome.created,
            updated=outcome.updated,
            errors=len(outcome.errors),
        )
        return outcome

    # ── OAuth ───────────────────────────────────────────────────────────────

    @_procore_retry
    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new token pair.

        Raises:
            TokenRefreshFailed: The token endpoint refused the refresh token
                (revoked, expired, or issued to another client).
        """
        async with self._client(self._auth_base_url) as client:
            response = await client.post(
                TOKEN_PATH,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                },
            )

        if response.status_code in (400, 401, 403):
            logger.warning("procore.token_refresh_rejected", status_code=response.status_code)
            raise TokenRefreshFailed(
                f"Procore token endpoint rejected the refresh token ({response.status_code})"
            )
        self._raise_for_status(response, TOKEN_PATH)

        tokens = OAuthTokens.model_validate(response.json())
        logger.info("procore.token_refreshed", expires_in=tokens.expires_in)
        return tokens
