"""Initial schema — shopping events, state history, estimates, decisions, approval packets, audit log.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # ── Standalone tables (no FKs) ─────────────────────────────────────

    op.create_table(
        "audit_log",
        sa.Column("event_type", sa.String(100), nullable=False, index=True),
        sa.Column("shopping_event_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("actor_id", sa.String(100), comment="User ID or 'system'"),
        sa.Column("actor_role", sa.String(50), comment="reviewer, shop, evaluator, system"),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text())),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "shopping_events",
        sa.Column("event_number", sa.String(50), nullable=False, unique=True, index=True),
        sa.Column("car_number", sa.String(20), nullable=False, index=True),
        sa.Column("shop_code", sa.String(10), nullable=False, index=True),
        sa.Column("shopping_type_code", sa.String(50)),
        sa.Column("shopping_reason_code", sa.String(50)),
        sa.Column("state", sa.String(30), nullable=False, server_default="REQUESTED", index=True),
        sa.Column("version", sa.Integer(), nullable=False, comment="Optimistic concurrency counter"),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_by_id", sa.String(100)),
        sa.Column("cancellation_reason", sa.Text()),
        sa.Column("created_by_id", sa.String(100), nullable=False),
        sa.Column("updated_by_id", sa.String(100)),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    # ── Tables depending on shopping_events ───────────────────────────

    op.create_table(
        "shopping_event_state_history",
        sa.Column(
            "shopping_event_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("shopping_events.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("from_state", sa.String(30)),
        sa.Column("to_state", sa.String(30), nullable=False),
        sa.Column("changed_by_id", sa.String(100)),
        sa.Column("changed_by_name", sa.String(200)),
        sa.Column("changed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False, index=True),
        sa.Column("event_version", sa.Integer(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("side_effects", postgresql.JSONB(astext_type=sa.Text())),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "estimate_submissions",
        sa.Column(
            "shopping_event_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("shopping_events.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("version_number", sa.Integer(), nullable=False),
        sa.Column("is_final", sa.Boolean(), nullable=False, server_default=sa.false(), comment="Submitted after QA"),
        sa.Column("status", sa.String(30), nullable=False, server_default="submitted", index=True),
        sa.Column("total_labor_hours", sa.Numeric(10, 2), nullable=False),
        sa.Column("total_material_cost", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_cost", sa.Numeric(12, 2), nullable=False),
        sa.Column("submitted_by", sa.String(255)),
        sa.Column("submitted_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("notes", sa.Text()),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("shopping_event_id", "version_number", name="uq_estimate_submissions_version_number"),
    )

    # ── Tables depending on estimate_submissions ──────────────────────

    op.create_table(
        "estimate_lines",
        sa.Column(
            "estimate_submission_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("estimate_submissions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("job_code", sa.String(50), index=True, comment="Task classification code"),
        sa.Column("aar_code", sa.String(50)),
        sa.Column("description", sa.Text()),
        sa.Column("labor_hours", sa.Numeric(8, 2), nullable=False),
        sa.Column("material_cost", sa.Numeric(10, 2), nullable=False),
        sa.Column("total_cost", sa.Numeric(10, 2), nullable=False),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("estimate_submission_id", "line_number"),
    )

    op.create_table(
        "approval_packets",
        sa.Column(
            "estimate_submission_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("estimate_submissions.id"),
            nullable=False,
            unique=True,
            index=True,
        ),
        sa.Column("overall_decision", sa.String(20), nullable=False, index=True),
        sa.Column("approved_line_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("rejected_line_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("revision_required_line_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("decided_by_id", sa.String(100)),
        sa.Column("released_to_shop_at", sa.DateTime(timezone=True)),
        sa.Column("released_by_id", sa.String(100)),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    # ── Tables depending on estimate_lines ────────────────────────────

    op.create_table(
        "estimate_line_decisions",
        sa.Column(
            "estimate_line_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("estimate_lines.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("decision_source", sa.String(10), nullable=False, index=True),
        sa.Column("decision", sa.String(10), nullable=False, index=True),
        sa.Column("confidence_score", sa.Numeric(3, 2), comment="Automated decisions only"),
        sa.Column("responsibility", sa.String(10), nullable=False, server_default="unknown"),
        sa.Column("basis_type", sa.String(30)),
        sa.Column("basis_reference", sa.String(255)),
        sa.Column("decision_notes", sa.Text()),
        sa.Column("model_version", sa.String(50), comment="Evaluator version (automated only)"),
        sa.Column("policy_version", sa.String(50)),
        sa.Column("decided_by_id", sa.String(100)),
        sa.Column("decided_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False, index=True),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "(decision_source = 'automated' AND confidence_score IS NOT NULL) "
            "OR (decision_source = 'human' AND confidence_score IS NULL)",
            name="ck_decision_confidence_by_source",
        ),
    )


def downgrade() -> None:
    # Drop in reverse dependency order
    op.drop_table("estimate_line_decisions")
    op.drop_table("approval_packets")
    op.drop_table("estimate_lines")
    op.drop_table("estimate_submissions")
    op.drop_table("shopping_event_state_history")
    op.drop_table("shopping_events")
    op.drop_table("audit_log")
