"""Tests for the SQLAlchemy repositories against a SQLite database.

Runs the real repositories on sqlite+aiosqlite with tables created from
Base.metadata, using the same session_factory shape as production.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from src.shield.core.database import Base
from src.shield.entities.models import (
    AuditLogModel,
    ProjectSubcontractorModel,
    SubcontractorModel,
    VerificationModel,
)
from src.shield.entities.repository import AuditLogRepository, EntityRepository
from src.shield.integrations.procore.models import OAuthConnectionModel, ProcoreMappingModel
from src.shield.integrations.procore.repository import (
    CredentialRepository,
    MappingRepository,
    PushHistoryRepository,
    SyncLogRepository,
)
from src.shield.integrations.procore.schemas import (
    AuditEntry,
    CompliancePushRecord,
    MappingStatus,
    MappingUpsert,
    OAuthTokens,
    ProcoreEntityType,
    ProjectFields,
    ShieldEntityType,
    SubcontractorFields,
    SyncResult,
)
from tests.fakes import COMPANY_ID, PROCORE_COMPANY_ID


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shield.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    yield factory
    await engine.dispose()


async def _add(session_factory, *models) -> None:
    async for session in session_factory():
        session.add_all(models)
        await session.commit()


def _vendor_mapping(procore_id: int, shield_id: str) -> MappingUpsert:
    return MappingUpsert(
        company_id=COMPANY_ID,
        procore_company_id=PROCORE_COMPANY_ID,
        procore_entity_type=ProcoreEntityType.VENDOR,
        procore_entity_id=procore_id,
        shield_entity_type=ShieldEntityType.SUBCONTRACTOR,
        shield_entity_id=shield_id,
    )


# ── Credentials ─────────────────────────────────────────────────────────────


class TestCredentialRepository:
    @pytest.fixture
    async def repo(self, session_factory) -> CredentialRepository:
        await _add(
            session_factory,
            OAuthConnectionModel(
                id="conn-1",
                company_id=COMPANY_ID,
                provider="procore",
                access_token="access-1",
                refresh_token="refresh-1",
                pending_company_selection=True,
            ),
        )
        return CredentialRepository(session_factory)

    @pytest.mark.asyncio
    async def test_rotate_tokens_is_compare_and_swap(self, repo: CredentialRepository) -> None:
        tokens = OAuthTokens(access_token="access-2", refresh_token="refresh-2")

        won = await repo.rotate_tokens("conn-1", "access-1", tokens)
        lost = await repo.rotate_tokens(
            "conn-1", "access-1", OAuthTokens(access_token="access-3", refresh_token="r3")
        )

        assert won is True
        assert lost is False
        stored = await repo.get_by_id("conn-1")
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-2"
        assert stored.token_expires_at is not None

    @pytest.mark.asyncio
    async def test_select_company_clears_pending_flag(self, repo: CredentialRepository) -> None:
        connection = await repo.select_company(COMPANY_ID, "procore", 1001, "Acme Builders")

        assert connection.procore_company_id == 1001
        assert connection.pending_company_selection is False
        stored = await repo.get(COMPANY_ID, "procore")
        assert stored.procore_company_name == "Acme Builders"

    @pytest.mark.asyncio
    async def test_delete(self, repo: CredentialRepository) -> None:
        assert await repo.delete(COMPANY_ID, "procore") is True
        assert await repo.delete(COMPANY_ID, "procore") is False
        assert await repo.get(COMPANY_ID, "procore") is None


# ── Identity Mappings ───────────────────────────────────────────────────────


class TestMappingRepository:
    @pytest.mark.asyncio
    async def test_upsert_keeps_existing_row_id(self, session_factory) -> None:
        repo = MappingRepository(session_factory)

        first = await repo.upsert(_vendor_mapping(7, "sub-a"))
        second = await repo.upsert(_vendor_mapping(7, "sub-b"))

        assert first.shield_entity_id == "sub-a"
        assert second.shield_entity_id == "sub-a"
        assert second.id == first.id
        assert await repo.get(COMPANY_ID, PROCORE_COMPANY_ID, ProcoreEntityType.VENDOR, [7]) == {
            7: "sub-a"
        }

    @pytest.mark.asyncio
    async def test_concurrent_upserts_leave_one_row(self, session_factory) -> None:
        repo = MappingRepository(session_factory)

        results = await asyncio.gather(
            repo.upsert(_vendor_mapping(8, "sub-a")),
            repo.upsert(_vendor_mapping(8, "sub-b")),
        )

        assert results[0].shield_entity_id == results[1].shield_entity_id
        async for session in session_factory():
            count = await session.scalar(
                select(func.count()).select_from(ProcoreMappingModel)
            )
        assert count == 1

    @pytest.mark.asyncio
    async def test_get_filters_by_type_and_company(self, session_factory) -> None:
        repo = MappingRepository(session_factory)
        await repo.upsert(_vendor_mapping(1, "sub-1"))
        await repo.upsert(
            _vendor_mapping(2, "sub-2").model_copy(update={"company_id": "other"})
        )

        vendors = await repo.get(
            COMPANY_ID, PROCORE_COMPANY_ID, ProcoreEntityType.VENDOR, [1, 2, 3]
        )
        projects = await repo.get(
            COMPANY_ID, PROCORE_COMPANY_ID, ProcoreEntityType.PROJECT, [1]
        )

        assert vendors == {1: "sub-1"}
        assert projects == {}
        assert await repo.get(COMPANY_ID, PROCORE_COMPANY_ID, ProcoreEntityType.VENDOR, []) == {}

    @pytest.mark.asyncio
    async def test_reverse_lookup_and_pause(self, session_factory) -> None:
        repo = MappingRepository(session_factory)
        await repo.upsert(_vendor_mapping(77, "sub-123"))

        mapping = await repo.get_by_local_entity(
            COMPANY_ID, ShieldEntityType.SUBCONTRACTOR, "sub-123"
        )
        paused = await repo.pause_for_company(COMPANY_ID)
        rows = await repo.list_for_company(COMPANY_ID, ProcoreEntityType.VENDOR)

        assert mapping.procore_entity_id == 77
        assert paused == 1
        assert [row.sync_status for row in rows] == [MappingStatus.PAUSED]


# ── Push History / Sync Log ─────────────────────────────────────────────────


class TestPushHistoryRepository:
    @pytest.mark.asyncio
    async def test_newest_first_with_parsed_details(self, session_factory) -> None:
        repo = PushHistoryRepository(session_factory)
        base = datetime(2026, 10, 1, tzinfo=timezone.utc)
        for offset, pushed in enumerate([False, True, True]):
            await repo.append(
                CompliancePushRecord(
                    id=f"push-{offset}",
                    company_id=COMPANY_ID,
                    subcontractor_id="sub-123",
                    pushed=pushed,
                    message=f"attempt {offset}",
                    details={"attempt": offset},
                    created_at=base + timedelta(minutes=offset),
                )
            )

        history = await repo.list_for_subcontractor(COMPANY_ID, "sub-123", limit=2)

        assert [record.id for record in history] == ["push-2", "push-1"]
        assert history[0].details == {"attempt": 2}
        assert await repo.list_for_subcontractor("other", "sub-123") == []


class TestSyncLogRepository:
    @pytest.mark.asyncio
    async def test_start_complete_and_fail(self, session_factory) -> None:
        repo = SyncLogRepository(session_factory)

        completed_id = await repo.start(COMPANY_ID, PROCORE_COMPANY_ID, "vendors", 3)
        await repo.complete(
            completed_id, SyncResult(total=3, created=2, errors=1, duration_ms=40)
        )
        failed_id = await repo.start(COMPANY_ID, PROCORE_COMPANY_ID, "projects", 2)
        await repo.fail(failed_id, "Procore token refresh failed", 12)

        entries = {entry.id: entry for entry in await repo.history(COMPANY_ID)}

        assert entries[completed_id].status == "completed"
        assert entries[completed_id].created_count == 2
        assert entries[completed_id].error_count == 1
        assert entries[failed_id].status == "failed"
        assert entries[failed_id].error_message == "Procore token refresh failed"
        assert entries[failed_id].duration_ms == 12


# ── Entities ────────────────────────────────────────────────────────────────


class TestEntityRepository:
    @pytest.mark.asyncio
    async def test_update_keeps_local_abn_when_procore_has_none(self, session_factory) -> None:
        repo = EntityRepository(session_factory)
        sub_id = await repo.create_subcontractor(
            COMPANY_ID,
            SubcontractorFields(name="Sparky", abn="51824753556", email="a@sparky.example"),
        )

        await repo.update_subcontractor(
            sub_id, SubcontractorFields(name="Sparky Electrical", city="Parramatta")
        )

        stored = await repo.get_subcontractor(COMPANY_ID, sub_id)
        assert stored.name == "Sparky Electrical"
        assert stored.abn == "51824753556"
        assert stored.email == "a@sparky.example"
        assert stored.city == "Parramatta"

    @pytest.mark.asyncio
    async def test_fill_missing_never_overwrites(self, session_factory) -> None:
        repo = EntityRepository(session_factory)
        sub_id = await repo.create_subcontractor(
            COMPANY_ID, SubcontractorFields(name="Manual Entry", phone="02 1111 1111")
        )

        await repo.fill_missing_subcontractor_fields(
            sub_id,
            SubcontractorFields(
                name="From Procore",
                email="office@sparky.example",
                phone="02 9999 9999",
                status="inactive",
            ),
        )

        stored = await repo.get_subcontractor(COMPANY_ID, sub_id)
        assert stored.name == "Manual Entry"
        assert stored.phone == "02 1111 1111"
        assert stored.email == "office@sparky.example"
        assert stored.status == "active"

    @pytest.mark.asyncio
    async def test_find_by_abn_is_company_scoped(self, session_factory) -> None:
        repo = EntityRepository(session_factory)
        ours = await repo.create_subcontractor(
            COMPANY_ID, SubcontractorFields(name="Ours", abn="51824753556")
        )
        await repo.create_subcontractor(
            "other", SubcontractorFields(name="Theirs", abn="51824753556")
        )

        found = await repo.find_subcontractors_by_abn(COMPANY_ID, ["51824753556", "11111111111"])

        assert [s.id for s in found] == [ours]
        assert await repo.find_subcontractors_by_abn(COMPANY_ID, []) == []

    @pytest.mark.asyncio
    async def test_project_create_update_and_scoped_get(self, session_factory) -> None:
        repo = EntityRepository(session_factory)
        project_id = await repo.create_project(COMPANY_ID, ProjectFields(name="Harbour Tower"))

        await repo.update_project(project_id, ProjectFields(name="Harbour Tower", state="NSW"))

        stored = await repo.get_project(COMPANY_ID, project_id)
        assert stored.state == "NSW"
        assert await repo.get_project("other", project_id) is None

    @pytest.mark.asyncio
    async def test_assignment_is_idempotent(self, session_factory) -> None:
        repo = EntityRepository(session_factory)
        project_id = await repo.create_project(COMPANY_ID, ProjectFields(name="Depot"))
        sub_id = await repo.create_subcontractor(COMPANY_ID, SubcontractorFields(name="Tiler"))

        await repo.assign_subcontractor_to_project(project_id, sub_id)
        await repo.assign_subcontractor_to_project(project_id, sub_id)

        async for session in session_factory():
            count = await session.scalar(
                select(func.count()).select_from(ProjectSubcontractorModel)
            )
        assert count == 1

    @pytest.mark.asyncio
    async def test_latest_verification_and_malformed_checks(self, session_factory) -> None:
        repo = EntityRepository(session_factory)
        await _add(session_factory, SubcontractorModel(id="sub-123", company_id=COMPANY_ID, name="S"))
        await _add(
            session_factory,
            VerificationModel(
                id="ver-old",
                subcontractor_id="sub-123",
                status="fail",
                results=[],
                created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            ),
            VerificationModel(
                id="ver-new",
                subcontractor_id="sub-123",
                status="pass",
                results=[
                    {"check_name": "Public Liability", "status": "passed", "details": None},
                    {"unexpected": True},
                ],
                created_at=datetime(2026, 9, 1, tzinfo=timezone.utc),
            ),
        )

        latest = await repo.get_latest_verification("sub-123")
        by_id = await repo.get_verification("ver-old")

        assert latest.id == "ver-new"
        assert [check.check_name for check in latest.results] == ["Public Liability"]
        assert by_id.status == "fail"
        assert await repo.get_latest_verification("sub-none") is None


class TestAuditLogRepository:
    @pytest.mark.asyncio
    async def test_record(self, session_factory) -> None:
        await AuditLogRepository(session_factory).record(
            AuditEntry(
                company_id=COMPANY_ID,
                user_id="user-1",
                entity_type="integration",
                entity_id="procore",
                action="sync_vendors",
                details={"created": 2},
            )
        )

        async for session in session_factory():
            rows = (await session.execute(select(AuditLogModel))).scalars().all()
        assert [(row.action, row.details) for row in rows] == [("sync_vendors", {"created": 2})]
