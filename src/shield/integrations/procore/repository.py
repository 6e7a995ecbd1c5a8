"""Procore integration repositories -- SQLAlchemy implementations of the
credential, identity mapping, push history and sync log stores.

All repositories use the session_factory callable pattern: an async
generator function yielding one AsyncSession per operation. Uniqueness of
identity mappings is enforced by the database constraint; a losing
concurrent insert falls back to updating the winner's row. Token rotation is
a single conditional UPDATE keyed on the stale access token.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.shield.integrations.procore.errors import NotConnected
from src.shield.integrations.procore.models import (
    CompliancePushModel,
    OAuthConnectionModel,
    ProcoreMappingModel,
    ProcoreSyncLogModel,
)
from src.shield.integrations.procore.schemas import (
    CompliancePushRecord,
    IdentityMapping,
    MappingStatus,
    MappingUpsert,
    OAuthConnection,
    OAuthTokens,
    ProcoreEntityType,
    ShieldEntityType,
    SyncDirection,
    SyncLogEntry,
    SyncResult,
)
from src.shield.integrations.procore.stores import (
    CredentialStore,
    IdentityMappingStore,
    PushHistoryStore,
    SyncLogStore,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_connection(model: OAuthConnectionModel) -> OAuthConnection:
    return OAuthConnection(
        id=model.id,
        company_id=model.company_id,
        provider=model.provider,
        access_token=model.access_token,
        refresh_token=model.refresh_token,
        procore_company_id=model.procore_company_id,
        procore_company_name=model.procore_company_name,
        pending_company_selection=bool(model.pending_company_selection),
        token_expires_at=model.token_expires_at,
    )


def _model_to_mapping(model: ProcoreMappingModel) -> IdentityMapping:
    return IdentityMapping(
        id=model.id,
        company_id=model.company_id,
        procore_company_id=model.procore_company_id,
        procore_entity_type=ProcoreEntityType(model.procore_entity_type),
        procore_entity_id=model.procore_entity_id,
        shield_entity_type=ShieldEntityType(model.shield_entity_type),
        shield_entity_id=model.shield_entity_id,
        sync_direction=SyncDirection(model.sync_direction),
        sync_status=MappingStatus(model.sync_status),
        sync_error=model.sync_error,
        last_synced_at=model.last_synced_at,
    )


def _model_to_push(model: CompliancePushModel) -> CompliancePushRecord:
    """Convert CompliancePushModel to CompliancePushRecord, parsing details JSON."""
    try:
        details = json.loads(model.details) if model.details else {}
    except json.JSONDecodeError:
        details = {}
    return CompliancePushRecord(
        id=model.id,
        company_id=model.company_id,
        subcontractor_id=model.subcontractor_id,
        verification_id=model.verification_id,
        pushed=model.pushed,
        message=model.message,
        procore_vendor_id=model.procore_vendor_id,
        details=details if isinstance(details, dict) else {},
        created_at=model.created_at,
    )


def _model_to_sync_log(model: ProcoreSyncLogModel) -> SyncLogEntry:
    return SyncLogEntry(
        id=model.id,
        company_id=model.company_id,
        procore_company_id=model.procore_company_id,
        sync_type=model.sync_type,
        status=model.status,
        total_items=model.total_items,
        created_count=model.created_count,
        updated_count=model.updated_count,
        skipped_count=model.skipped_count,
        error_count=model.error_count,
        error_message=model.error_message,
        started_at=model.started_at,
        completed_at=model.completed_at,
        duration_ms=model.duration_ms,
    )


# ── Credentials ─────────────────────────────────────────────────────────────


class CredentialRepository(CredentialStore):
    """OAuth connections in the oauth_connections table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(self, company_id: str, provider: str) -> OAuthConnection | None:
        async for session in self._session_factory():
            stmt = select(OAuthConnectionModel).where(
                OAuthConnectionModel.company_id == company_id,
                OAuthConnectionModel.provider == provider,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_connection(model) if model else None

    async def get_by_id(self, connection_id: str) -> OAuthConnection | None:
        async for session in self._session_factory():
            model = await session.get(OAuthConnectionModel, connection_id)
            return _model_to_connection(model) if model else None

    async def rotate_tokens(
        self,
        connection_id: str,
        expected_access_token: str,
        tokens: OAuthTokens,
    ) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                update(OAuthConnectionModel)
                .where(
                    OAuthConnectionModel.id == connection_id,
                    OAuthConnectionModel.access_token == expected_access_token,
                )
                .values(
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    token_expires_at=tokens.expires_at(),
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
            rotated = result.rowcount == 1
            if not rotated:
                logger.info("procore_credentials.rotation_lost", connection_id=connection_id)
            return rotated

    async def select_company(
        self,
        company_id: str,
        provider: str,
        procore_company_id: int,
        procore_company_name: str,
    ) -> OAuthConnection:
        async for session in self._session_factory():
            stmt = select(OAuthConnectionModel).where(
                OAuthConnectionModel.company_id == company_id,
                OAuthConnectionModel.provider == provider,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                raise NotConnected()
            model.procore_company_id = procore_company_id
            model.procore_company_name = procore_company_name
            model.pending_company_selection = False
            await session.commit()
            return _model_to_connection(model)

    async def delete(self, company_id: str, provider: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(OAuthConnectionModel).where(
                    OAuthConnectionModel.company_id == company_id,
                    OAuthConnectionModel.provider == provider,
                )
            )
            await session.commit()
            return result.rowcount > 0


# ── Identity Mappings ───────────────────────────────────────────────────────


class MappingRepository(IdentityMappingStore):
    """Identity mappings in the procore_mappings table.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get(
        self,
        company_id: str,
        procore_company_id: int,
        entity_type: ProcoreEntityType,
        procore_ids: Iterable[int],
    ) -> dict[int, str]:
        ids = list(procore_ids)
        if not ids:
            return {}
        async for session in self._session_factory():
            stmt = select(
                ProcoreMappingModel.procore_entity_id,
                ProcoreMappingModel.shield_entity_id,
            ).where(
                ProcoreMappingModel.company_id == company_id,
                ProcoreMappingModel.procore_company_id == procore_company_id,
                ProcoreMappingModel.procore_entity_type == entity_type.value,
                ProcoreMappingModel.procore_entity_id.in_(ids),
            )
            rows = (await session.execute(stmt)).all()
            return {procore_id: shield_id for procore_id, shield_id in rows}

    @staticmethod
    async def _find(session: AsyncSession, mapping: MappingUpsert) -> ProcoreMappingModel | None:
        stmt = select(ProcoreMappingModel).where(
            ProcoreMappingModel.company_id == mapping.company_id,
            ProcoreMappingModel.procore_company_id == mapping.procore_company_id,
            ProcoreMappingModel.procore_entity_type == mapping.procore_entity_type.value,
            ProcoreMappingModel.procore_entity_id == mapping.procore_entity_id,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def upsert(self, mapping: MappingUpsert) -> IdentityMapping:
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            model = await self._find(session, mapping)
            if model is None:
                model = ProcoreMappingModel(
                    **mapping.model_dump(mode="json"),
                    last_synced_at=now,
                )
                session.add(model)
                try:
                    await session.commit()
                    return _model_to_mapping(model)
                except IntegrityError:
                    await session.rollback()
                    logger.info(
                        "procore_mappings.insert_conflict",
                        company_id=mapping.company_id,
                        procore_entity_type=mapping.procore_entity_type.value,
                        procore_entity_id=mapping.procore_entity_id,
                    )
                    model = await self._find(session, mapping)
                    if model is None:
                        raise

            # Existing row keeps its shield_entity_id
            model.last_synced_at = now
            model.sync_status = mapping.sync_status.value
            model.sync_error = mapping.sync_error
            model.sync_direction = mapping.sync_direction.value
            await session.commit()
            return _model_to_mapping(model)

    async def get_by_local_entity(
        self,
        company_id: str,
        shield_entity_type: ShieldEntityType,
        shield_entity_id: str,
    ) -> IdentityMapping | None:
        async for session in self._session_factory():
            stmt = (
                select(ProcoreMappingModel)
                .where(
                    ProcoreMappingModel.company_id == company_id,
                    ProcoreMappingModel.shield_entity_type == shield_entity_type.value,
                    ProcoreMappingModel.shield_entity_id == shield_entity_id,
                )
                .order_by(ProcoreMappingModel.last_synced_at.desc())
                .limit(1)
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_mapping(model) if model else None

    async def list_for_company(
        self,
        company_id: str,
        entity_type: ProcoreEntityType | None = None,
    ) -> list[IdentityMapping]:
        async for session in self._session_factory():
            stmt = select(ProcoreMappingModel).where(
                ProcoreMappingModel.company_id == company_id
            )
            if entity_type is not None:
                stmt = stmt.where(ProcoreMappingModel.procore_entity_type == entity_type.value)
            models = (await session.execute(stmt)).scalars().all()
            return [_model_to_mapping(m) for m in models]

    async def pause_for_company(self, company_id: str) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                update(ProcoreMappingModel)
                .where(ProcoreMappingModel.company_id == company_id)
                .values(sync_status=MappingStatus.PAUSED.value)
            )
            await session.commit()
            return result.rowcount


# ── Push History ────────────────────────────────────────────────────────────


class PushHistoryRepository(PushHistoryStore):
    """Compliance push records in the procore_compliance_pushes table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def append(self, record: CompliancePushRecord) -> None:
        async for session in self._session_factory():
            session.add(
                CompliancePushModel(
                    id=record.id,
                    company_id=record.company_id,
                    subcontractor_id=record.subcontractor_id,
                    verification_id=record.verification_id,
                    pushed=record.pushed,
                    message=record.message,
                    procore_vendor_id=record.procore_vendor_id,
                    details=json.dumps(record.details, default=str),
                    created_at=record.created_at or datetime.now(timezone.utc),
                )
            )
            await session.commit()

    async def list_for_subcontractor(
        self, company_id: str, subcontractor_id: str, limit: int = 10
    ) -> list[CompliancePushRecord]:
        async for session in self._session_factory():
            stmt = (
                select(CompliancePushModel)
                .where(
                    CompliancePushModel.company_id == company_id,
                    CompliancePushModel.subcontractor_id == subcontractor_id,
                )
                .order_by(CompliancePushModel.created_at.desc())
                .limit(limit)
            )
            models = (await session.execute(stmt)).scalars().all()
            return [_model_to_push(m) for m in models]


# ── Sync Log ────────────────────────────────────────────────────────────────


class SyncLogRepository(SyncLogStore):
    """Sync run log in the procore_sync_log table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def start(
        self,
        company_id: str,
        procore_company_id: int,
        sync_type: str,
        total_items: int,
    ) -> str:
        async for session in self._session_factory():
            model = ProcoreSyncLogModel(
                company_id=company_id,
                procore_company_id=procore_company_id,
                sync_type=sync_type,
                status="started",
                total_items=total_items,
            )
            session.add(model)
            await session.commit()
            return model.id

    async def complete(self, log_id: str, result: SyncResult) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ProcoreSyncLogModel)
                .where(ProcoreSyncLogModel.id == log_id)
                .values(
                    status="completed",
                    created_count=result.created,
                    updated_count=result.updated,
                    skipped_count=result.skipped,
                    error_count=result.errors,
                    completed_at=datetime.now(timezone.utc),
                    duration_ms=result.duration_ms,
                )
            )
            await session.commit()

    async def fail(self, log_id: str, error_message: str, duration_ms: int) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ProcoreSyncLogModel)
                .where(ProcoreSyncLogModel.id == log_id)
                .values(
                    status="failed",
                    error_message=error_message,
                    completed_at=datetime.now(timezone.utc),
                    duration_ms=duration_ms,
                )
            )
            await session.commit()

    async def history(self, company_id: str, limit: int = 20) -> list[SyncLogEntry]:
        async for session in self._session_factory():
            stmt = (
                select(ProcoreSyncLogModel)
                .where(ProcoreSyncLogModel.company_id == company_id)
                .order_by(ProcoreSyncLogModel.started_at.desc())
                .limit(limit)
            )
            models = (await session.execute(stmt)).scalars().all()
            return [_model_to_sync_log(m) for m in models]
