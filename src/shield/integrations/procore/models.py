"""Procore integration persistence models.

Four SQLAlchemy models:
- OAuthConnectionModel: One OAuth connection per (company, provider)
- ProcoreMappingModel: Procore id -> Shield id, unique per composite key
- ProcoreSyncLogModel: One row per sync run (started -> completed/failed)
- CompliancePushModel: Append-only compliance push history
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.shield.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OAuthConnectionModel(Base):
    """Stored OAuth token pair and selected Procore company for a Shield company.

    Tokens are only rotated through a compare-and-swap on access_token.
    """

    __tablename__ = "oauth_connections"
    __table_args__ = (
        UniqueConstraint("company_id", "provider", name="uq_oauth_connection_company_provider"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    procore_company_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    procore_company_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    pending_company_selection: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ProcoreMappingModel(Base):
    """Identity mapping between a Procore record and its Shield counterpart."""

    __tablename__ = "procore_mappings"
    __table_args__ = (
        UniqueConstraint(
            "company_id",
            "procore_company_id",
            "procore_entity_type",
            "procore_entity_id",
            name="uq_procore_mapping_entity",
        ),
        Index("ix_procore_mappings_shield", "shield_entity_type", "shield_entity_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    procore_company_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    procore_entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    procore_entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    shield_entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    shield_entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    sync_direction: Mapped[str] = mapped_column(
        String(30), nullable=False, default="procore_to_shield"
    )
    sync_status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ProcoreSyncLogModel(Base):
    """Audit row for one sync run."""

    __tablename__ = "procore_sync_log"
    __table_args__ = (Index("ix_procore_sync_log_company_started", "company_id", "started_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    procore_company_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sync_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="started")
    total_items: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    skipped_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)


class CompliancePushModel(Base):
    """One compliance push attempt. Rows are never updated."""

    __tablename__ = "procore_compliance_pushes"
    __table_args__ = (
        Index(
            "ix_procore_compliance_pushes_subcontractor",
            "company_id",
            "subcontractor_id",
            "created_at",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(String(36), nullable=False)
    subcontractor_id: Mapped[str] = mapped_column(String(36), nullable=False)
    verification_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    pushed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    procore_vendor_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    details: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
