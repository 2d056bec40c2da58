"""Shopping batches — several cars sent to one shop, linked from shopping_events.batch_id.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def upgrade() -> None:
    op.create_table(
        "shopping_batches",
        sa.Column("batch_number", sa.String(50), nullable=False),
        sa.Column("shop_code", sa.String(10), nullable=False),
        sa.Column("shopping_type_code", sa.String(50)),
        sa.Column("shopping_reason_code", sa.String(50)),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by_id", sa.String(100), nullable=False),
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_shopping_batches_batch_number", "shopping_batches", ["batch_number"], unique=True)
    op.create_index("ix_shopping_batches_shop_code", "shopping_batches", ["shop_code"])

    op.add_column(
        "shopping_events",
        sa.Column("batch_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("shopping_batches.id")),
    )
    op.create_index("ix_shopping_events_batch_id", "shopping_events", ["batch_id"])


def downgrade() -> None:
    op.drop_index("ix_shopping_events_batch_id", table_name="shopping_events")
    op.drop_column("shopping_events", "batch_id")
    op.drop_index("ix_shopping_batches_shop_code", table_name="shopping_batches")
    op.drop_index("ix_shopping_batches_batch_number", table_name="shopping_batches")
    op.drop_table("shopping_batches")
