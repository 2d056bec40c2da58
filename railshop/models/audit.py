"""AuditLog model — secondary projection of every system event.

Every workflow action emits a SystemEvent which is persisted here by a
best-effort subscriber. The state history ledger, not this table, is the
system of record. This table is append-only — no updates or deletes.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from railshop.models.base import Base, JSONType, TimestampMixin


class AuditLog(TimestampMixin, Base):
    """Immutable audit trail entry."""

    __tablename__ = "audit_log"

    # Event classification
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Context (all nullable — not every event relates to a shopping event or actor)
    shopping_event_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), index=True)
    actor_id: Mapped[str | None] = mapped_column(String(100), comment="User ID or 'system'")
    actor_role: Mapped[str | None] = mapped_column(String(50), comment="reviewer, shop, evaluator, system")

    # Event data — flexible JSON payload
    data: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    def __repr__(self) -> str:
        return f"<AuditLog event={self.event_type} shopping_event={self.shopping_event_id}>"
