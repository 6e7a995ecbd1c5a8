"""Tests for ProcoreClient against an httpx.MockTransport.

Covers request shape (bearer token, company header, pagination params),
page metadata, 404 tolerance, error classification, transient retry,
token refresh and the compliance push sequence.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest
from tenacity import wait_none

from src.shield.integrations.procore.client import ProcoreClient
from src.shield.integrations.procore.errors import (
    ProcoreAPIError,
    ProcoreTransientError,
    ProcoreUnauthorized,
    TokenRefreshFailed,
)
from src.shield.integrations.procore.schemas import (
    ComplianceStatus,
    ComplianceStatusValue,
    CoverageItem,
    CoverageStatus,
)

API = "https://api.procore.test"
AUTH = "https://login.procore.test"


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    """Retry immediately so transient-failure tests stay fast."""
    monkeypatch.setattr(ProcoreClient._send.retry, "wait", wait_none())
    monkeypatch.setattr(ProcoreClient.refresh_access_token.retry, "wait", wait_none())


def _client(
    handler: Callable[[httpx.Request], httpx.Response], max_page_size: int = 1000
) -> ProcoreClient:
    return ProcoreClient(
        api_base_url=API,
        auth_base_url=AUTH,
        client_id="client-id",
        client_secret="client-secret",
        timeout=5.0,
        max_page_size=max_page_size,
        transport=httpx.MockTransport(handler),
    )


class TestListing:
    @pytest.mark.asyncio
    async def test_list_vendors_sends_auth_company_header_and_filters(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json=[{"id": 1, "name": "Sparky"}, {"id": 2, "name": "Plumbco"}],
                headers={"Total": "5"},
            )

        page = await _client(handler).list_vendors("tok", 1001, page=1, per_page=2)

        request = seen[0]
        assert request.url.path == "/rest/v1.0/vendors"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["Procore-Company-Id"] == "1001"
        assert request.url.params["filters[is_active]"] == "true"
        assert request.url.params["per_page"] == "2"
        assert [v.name for v in page.data] == ["Sparky", "Plumbco"]
        assert page.total == 5
        assert page.has_more is True
        assert page.next_page == 2

    @pytest.mark.asyncio
    async def test_inactive_vendors_included_when_not_active_only(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[])

        await _client(handler).list_vendors("tok", 1001, active_only=False)

        assert "filters[is_active]" not in seen[0].url.params

    @pytest.mark.asyncio
    async def test_has_more_without_total_header_uses_page_fill(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[{"id": 1, "name": "P1"}, {"id": 2, "name": "P2"}])

        full = await _client(handler).list_projects("tok", 1001, page=1, per_page=2)
        short = await _client(handler).list_projects("tok", 1001, page=1, per_page=3)

        assert full.total is None
        assert full.has_more is True
        assert short.has_more is False

    @pytest.mark.asyncio
    async def test_per_page_clamped_to_maximum(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[])

        page = await _client(handler, max_page_size=50).list_projects(
            "tok", 1001, page=0, per_page=500
        )

        assert seen[0].url.params["per_page"] == "50"
        assert seen[0].url.params["page"] == "1"
        assert page.per_page == 50

    @pytest.mark.asyncio
    async def test_project_vendors_path(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"id": 3, "name": "Tiler"}])

        page = await _client(handler).list_project_vendors("tok", 1001, 42)

        assert seen[0].url.path == "/rest/v1.0/projects/42/vendors"
        assert page.data[0].id == 3

    @pytest.mark.asyncio
    async def test_list_companies(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert "Procore-Company-Id" not in request.headers
            return httpx.Response(200, json=[{"id": 1001, "name": "Acme Builders"}])

        companies = await _client(handler).list_companies("tok")

        assert [(c.id, c.name) for c in companies] == [(1001, "Acme Builders")]


class TestFetchAndErrors:
    @pytest.mark.asyncio
    async def test_get_vendor_not_found_returns_none(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"errors": "not found"})

        assert await _client(handler).get_vendor("tok", 1001, 9) is None
        assert await _client(handler).get_project("tok", 1001, 9) is None

    @pytest.mark.asyncio
    async def test_unauthorized_is_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(401)

        with pytest.raises(ProcoreUnauthorized):
            await _client(handler).get_vendor("stale", 1001, 1)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried_then_succeed(self) -> None:
        responses = iter(
            [
                httpx.Response(503),
                httpx.Response(429),
                httpx.Response(200, json={"id": 1, "name": "Sparky"}),
            ]
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return next(responses)

        vendor = await _client(handler).get_vendor("tok", 1001, 1)

        assert vendor is not None
        assert vendor.name == "Sparky"

    @pytest.mark.asyncio
    async def test_transient_errors_give_up_after_three_attempts(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(502)

        with pytest.raises(ProcoreTransientError) as exc_info:
            await _client(handler).list_projects("tok", 1001)
        assert calls == 3
        assert exc_info.value.upstream_status == 502

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(422, text="bad filter")

        with pytest.raises(ProcoreAPIError) as exc_info:
            await _client(handler).list_projects("tok", 1001)
        assert calls == 1
        assert exc_info.value.upstream_status == 422
        assert not isinstance(exc_info.value, ProcoreTransientError)

    @pytest.mark.asyncio
    async def test_connect_errors_are_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=[])

        page = await _client(handler).list_projects("tok", 1001)

        assert calls == 2
        assert page.data == []


class TestRefreshAccessToken:
    @pytest.mark.asyncio
    async def test_posts_refresh_grant_to_auth_host(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "access_token": "new-access",
                    "refresh_token": "new-refresh",
                    "expires_in": 7200,
                    "created_at": 1_700_000_000,
                },
            )

        tokens = await _client(handler).refresh_access_token("old-refresh")

        request = seen[0]
        assert request.url.host == "login.procore.test"
        assert request.url.path == "/oauth/token"
        body = dict(httpx.QueryParams(request.content.decode()))
        assert body["grant_type"] == "refresh_token"
        assert body["refresh_token"] == "old-refresh"
        assert body["client_id"] == "client-id"
        assert tokens.access_token == "new-access"
        assert tokens.expires_at().timestamp() == 1_700_000_000 + 7200

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": "invalid_grant"})

        with pytest.raises(TokenRefreshFailed):
            await _client(handler).refresh_access_token("revoked")


class TestPushComplianceStatus:
    @staticmethod
    def _status() -> ComplianceStatus:
        return ComplianceStatus(
            vendor_id=77,
            shield_subcontractor_id="sub-123",
            compliance_status=ComplianceStatusValue.NON_COMPLIANT,
            coverage_summary=[
                CoverageItem(type="public_liability", status=CoverageStatus.VALID),
                CoverageItem(type="workers_comp", status=CoverageStatus.EXPIRED),
                CoverageItem(type="motor_vehicle", status=CoverageStatus.MISSING),
            ],
            last_verified_at="2026-10-01T00:00:00+00:00",
            verification_id="ver-1",
        )

    @pytest.mark.asyncio
    async def test_updates_matching_insurance_creates_others_and_stamps_fields(self) -> None:
        seen: list[tuple[str, str, dict | None]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content) if request.content else None
            seen.append((request.method, request.url.path, body))
            if request.method == "GET":
                return httpx.Response(
                    200,
                    json=[{"id": 500, "insurance_type": "general liability"}],
                )
            if request.method == "POST":
                return httpx.Response(
                    201, json={"id": 501, "insurance_type": body["insurance"]["insurance_type"]}
                )
            if "insurances" in request.url.path:
                return httpx.Response(200, json={"id": 500, "insurance_type": "General Liability"})
            return httpx.Response(200, json={"id": 77, "name": "Sparky"})

        outcome = await _client(handler).push_compliance_status("tok", 1001, 77, self._status())

        assert outcome.updated == 1
        assert outcome.created == 1
        assert outcome.errors == []
        assert outcome.custom_fields_updated is True

        methods = [(method, path) for method, path, _ in seen]
        assert methods == [
            ("GET", "/rest/v1.0/vendors/77/insurances"),
            ("PATCH", "/rest/v1.0/vendors/77/insurances/500"),
            ("POST", "/rest/v1.0/vendors/77/insurances"),
            ("PATCH", "/rest/v1.0/vendors/77"),
        ]
        assert seen[2][2]["insurance"]["insurance_type"] == "Workers Compensation"
        assert seen[3][2] == {
            "vendor": {
                "custom_fields": {
                    "shield_compliance_status": "non_compliant",
                    "shield_last_verified": "2026-10-01T00:00:00+00:00",
                    "shield_verification_id": "ver-1",
                }
            }
        }

    @pytest.mark.asyncio
    async def test_item_and_custom_field_failures_are_collected_not_raised(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=[])
            return httpx.Response(422, text="field not configured")

        outcome = await _client(handler).push_compliance_status("tok", 1001, 77, self._status())

        assert outcome.created == 0
        assert len(outcome.errors) == 2
        assert outcome.custom_fields_updated is False

    @pytest.mark.asyncio
    async def test_unauthorized_during_push_propagates(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401)

        with pytest.raises(ProcoreUnauthorized):
            await _client(handler).push_compliance_status("stale", 1001, 77, self._status())
