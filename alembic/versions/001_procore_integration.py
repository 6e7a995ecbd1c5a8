"""Add Shield entity tables and Procore integration tables.

Revision ID: 001_procore_integration
Revises:
Create Date: 2026-10-19

Creates the Shield records touched by the integration:
- subcontractors, projects, project_subcontractors, verifications, audit_logs

and the Procore integration tables:
- oauth_connections: One OAuth connection per (company, provider)
- procore_mappings: Procore id -> Shield id, unique per composite key
- procore_sync_log: One row per sync run
- procore_compliance_pushes: Append-only compliance push history
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_procore_integration"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # ── subcontractors ──────────────────────────────────────────────────

    op.create_table(
        "subcontractors",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("abn", sa.String(20), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("state", sa.String(10), nullable=True),
        sa.Column("postcode", sa.String(20), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(),
    )
    op.create_index("ix_subcontractors_company_id", "subcontractors", ["company_id"])
    op.create_index("ix_subcontractors_company_abn", "subcontractors", ["company_id", "abn"])

    # ── projects ────────────────────────────────────────────────────────

    op.create_table(
        "projects",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("address", sa.String(500), nullable=True),
        sa.Column("state", sa.String(10), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("start_date", sa.String(32), nullable=True),
        sa.Column("end_date", sa.String(32), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_projects_company_id", "projects", ["company_id"])

    op.create_table(
        "project_subcontractors",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "project_id",
            sa.String(36),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "subcontractor_id",
            sa.String(36),
            sa.ForeignKey("subcontractors.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("project_id", "subcontractor_id", name="uq_project_subcontractor"),
    )

    # ── verifications / audit ───────────────────────────────────────────

    op.create_table(
        "verifications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "subcontractor_id",
            sa.String(36),
            sa.ForeignKey("subcontractors.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("results", sa.JSON(), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_verifications_subcontractor_created",
        "verifications",
        ["subcontractor_id", "created_at"],
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(100), nullable=False),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_audit_logs_company_id", "audit_logs", ["company_id"])

    # ── oauth_connections ───────────────────────────────────────────────

    op.create_table(
        "oauth_connections",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("procore_company_id", sa.BigInteger(), nullable=True),
        sa.Column("procore_company_name", sa.String(300), nullable=True),
        sa.Column(
            "pending_company_selection",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "company_id", "provider", name="uq_oauth_connection_company_provider"
        ),
    )

    # ── procore_mappings ────────────────────────────────────────────────

    op.create_table(
        "procore_mappings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("procore_company_id", sa.BigInteger(), nullable=False),
        sa.Column("procore_entity_type", sa.String(20), nullable=False),
        sa.Column("procore_entity_id", sa.BigInteger(), nullable=False),
        sa.Column("shield_entity_type", sa.String(20), nullable=False),
        sa.Column("shield_entity_id", sa.String(36), nullable=False),
        sa.Column(
            "sync_direction",
            sa.String(30),
            nullable=False,
            server_default="procore_to_shield",
        ),
        sa.Column("sync_status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "company_id",
            "procore_company_id",
            "procore_entity_type",
            "procore_entity_id",
            name="uq_procore_mapping_entity",
        ),
    )
    op.create_index("ix_procore_mappings_company_id", "procore_mappings", ["company_id"])
    op.create_index(
        "ix_procore_mappings_shield",
        "procore_mappings",
        ["shield_entity_type", "shield_entity_id"],
    )

    # ── procore_sync_log ────────────────────────────────────────────────

    op.create_table(
        "procore_sync_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("procore_company_id", sa.BigInteger(), nullable=False),
        sa.Column("sync_type", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="started"),
        sa.Column("total_items", sa.Integer(), nullable=True),
        sa.Column("created_count", sa.Integer(), nullable=True),
        sa.Column("updated_count", sa.Integer(), nullable=True),
        sa.Column("skipped_count", sa.Integer(), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
    )
    op.create_index(
        "ix_procore_sync_log_company_started",
        "procore_sync_log",
        ["company_id", "started_at"],
    )

    # ── procore_compliance_pushes ───────────────────────────────────────

    op.create_table(
        "procore_compliance_pushes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("company_id", sa.String(36), nullable=False),
        sa.Column("subcontractor_id", sa.String(36), nullable=False),
        sa.Column("verification_id", sa.String(36), nullable=True),
        sa.Column("pushed", sa.Boolean(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("procore_vendor_id", sa.BigInteger(), nullable=True),
        sa.Column("details", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_procore_compliance_pushes_subcontractor",
        "procore_compliance_pushes",
        ["company_id", "subcontractor_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("procore_compliance_pushes")
    op.drop_table("procore_sync_log")
    op.drop_table("procore_mappings")
    op.drop_table("oauth_connections")
    op.drop_table("audit_logs")
    op.drop_table("verifications")
    op.drop_table("project_subcontractors")
    op.drop_table("projects")
    op.drop_table("subcontractors")
