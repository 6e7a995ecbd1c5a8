"""Shield entity repository -- async access to subcontractors, projects,
verifications and the audit log.

Provides EntityRepository (LocalEntityStore) and AuditLogRepository
(AuditSink) with the session_factory callable pattern used across Shield
repositories. Handles conversion between SQLAlchemy models and the Pydantic
records the Procore integration works with.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterable

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.shield.entities.models import (
    AuditLogModel,
    ProjectModel,
    ProjectSubcontractorModel,
    SubcontractorModel,
    VerificationModel,
)
from src.shield.integrations.procore.schemas import (
    AuditEntry,
    LocalProject,
    LocalSubcontractor,
    ProjectFields,
    SubcontractorFields,
    Verification,
    VerificationCheck,
)
from src.shield.integrations.procore.stores import AuditSink, LocalEntityStore

logger = structlog.get_logger(__name__)

# Values Procore may omit; an empty Procore value keeps the local one.
_KEEP_LOCAL_WHEN_MISSING = ("abn", "email", "phone")

_SUBCONTRACTOR_FIELDS = tuple(SubcontractorFields.model_fields)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_subcontractor(model: SubcontractorModel) -> LocalSubcontractor:
    return LocalSubcontractor(
        id=model.id,
        company_id=model.company_id,
        name=model.name,
        abn=model.abn,
        email=model.email,
        phone=model.phone,
        address=model.address,
        city=model.city,
        state=model.state,
        postcode=model.postcode,
        status=model.status,
    )


def _model_to_project(model: ProjectModel) -> LocalProject:
    return LocalProject(
        id=model.id,
        company_id=model.company_id,
        name=model.name,
        address=model.address,
        state=model.state,
        status=model.status,
        start_date=model.start_date,
        end_date=model.end_date,
    )


def _model_to_verification(model: VerificationModel) -> Verification:
    """Convert VerificationModel to Verification, skipping malformed checks."""
    checks: list[VerificationCheck] = []
    for raw in model.results or []:
        if isinstance(raw, dict) and "check_name" in raw and "status" in raw:
            checks.append(VerificationCheck.model_validate(raw))

    return Verification(
        id=model.id,
        subcontractor_id=model.subcontractor_id,
        status=model.status,
        results=checks,
        verified_at=model.verified_at,
        created_at=model.created_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class EntityRepository(LocalEntityStore):
    """Async CRUD for the Shield records synchronized with Procore.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Projects ────────────────────────────────────────────────────────────

    async def create_project(self, company_id: str, data: ProjectFields) -> str:
        async for session in self._session_factory():
            model = ProjectModel(company_id=company_id, **data.model_dump())
            session.add(model)
            await session.commit()
            return model.id

    async def update_project(self, project_id: str, data: ProjectFields) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(ProjectModel)
                .where(ProjectModel.id == project_id)
                .values(**data.model_dump())
            )
            await session.commit()

    async def get_project(self, company_id: str, project_id: str) -> LocalProject | None:
        async for session in self._session_factory():
            stmt = select(ProjectModel).where(
                ProjectModel.company_id == company_id,
                ProjectModel.id == project_id,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_project(model) if model else None

    # ── Subcontractors ──────────────────────────────────────────────────────

    async def create_subcontractor(self, company_id: str, data: SubcontractorFields) -> str:
        async for session in self._session_factory():
            model = SubcontractorModel(company_id=company_id, **data.model_dump())
            session.add(model)
            await session.commit()
            return model.id

    async def update_subcontractor(
        self, subcontractor_id: str, data: SubcontractorFields
    ) -> None:
        """Overwrite from Procore; abn, email and phone survive a missing Procore value."""
        values = data.model_dump()
        for field in _KEEP_LOCAL_WHEN_MISSING:
            if not values.get(field):
                values.pop(field)

        async for session in self._session_factory():
            await session.execute(
                update(SubcontractorModel)
                .where(SubcontractorModel.id == subcontractor_id)
                .values(**values)
            )
            await session.commit()

    async def fill_missing_subcontractor_fields(
        self, subcontractor_id: str, data: SubcontractorFields
    ) -> None:
        """Merge Procore values into a subcontractor without overwriting any local value."""
        incoming = data.model_dump()
        async for session in self._session_factory():
            model = await session.get(SubcontractorModel, subcontractor_id)
            if model is None:
                return
            filled = []
            for field in _SUBCONTRACTOR_FIELDS:
                if field == "status":
                    continue
                if not getattr(model, field) and incoming.get(field):
                    setattr(model, field, incoming[field])
                    filled.append(field)
            await session.commit()
            logger.debug(
                "entities.subcontractor_merged",
                subcontractor_id=subcontractor_id,
                filled=filled,
            )

    async def get_subcontractor(
        self, company_id: str, subcontractor_id: str
    ) -> LocalSubcontractor | None:
        async for session in self._session_factory():
            stmt = select(SubcontractorModel).where(
                SubcontractorModel.company_id == company_id,
                SubcontractorModel.id == subcontractor_id,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_subcontractor(model) if model else None

    async def find_subcontractors_by_abn(
        self, company_id: str, abns: Iterable[str]
    ) -> list[LocalSubcontractor]:
        abn_list = [abn for abn in abns if abn]
        if not abn_list:
            return []
        async for session in self._session_factory():
            stmt = (
                select(SubcontractorModel)
                .where(
                    SubcontractorModel.company_id == company_id,
                    SubcontractorModel.abn.in_(abn_list),
                )
                .order_by(SubcontractorModel.created_at)
            )
            models = (await session.execute(stmt)).scalars().all()
            return [_model_to_subcontractor(m) for m in models]

    async def assign_subcontractor_to_project(
        self, project_id: str, subcontractor_id: str
    ) -> None:
        async for session in self._session_factory():
            stmt = select(ProjectSubcontractorModel.id).where(
                ProjectSubcontractorModel.project_id == project_id,
                ProjectSubcontractorModel.subcontractor_id == subcontractor_id,
            )
            if (await session.execute(stmt)).first() is not None:
                return
            session.add(
                ProjectSubcontractorModel(
                    project_id=project_id, subcontractor_id=subcontractor_id
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # Concurrent assignment of the same pair
                await session.rollback()

    # ── Verifications ───────────────────────────────────────────────────────

    async def get_verification(self, verification_id: str) -> Verification | None:
        async for session in self._session_factory():
            model = await session.get(VerificationModel, verification_id)
            return _model_to_verification(model) if model else None

    async def get_latest_verification(self, subcontractor_id: str) -> Verification | None:
        async for session in self._session_factory():
            stmt = (
                select(VerificationModel)
                .where(VerificationModel.subcontractor_id == subcontractor_id)
                .order_by(VerificationModel.created_at.desc())
                .limit(1)
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_verification(model) if model else None


class AuditLogRepository(AuditSink):
    """Writes audit entries to the audit_logs table."""

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def record(self, entry: AuditEntry) -> None:
        async for session in self._session_factory():
            session.add(AuditLogModel(**entry.model_dump(mode="json")))
            await session.commit()
