"""StateHistoryEntry model — the compliance record of an event's life.

One row per successful transition, including the initial creation
(`from_state` is NULL). This table is append-only — no updates or deletes.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from railshop.models.base import Base, JSONType, TimestampMixin, utcnow


class StateHistoryEntry(TimestampMixin, Base):
    """Immutable state transition entry."""

    __tablename__ = "shopping_event_state_history"

    shopping_event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("shopping_events.id", ondelete="CASCADE"), nullable=False, index=True
    )

    from_state: Mapped[str | None] = mapped_column(String(30))
    to_state: Mapped[str] = mapped_column(String(30), nullable=False)

    # Who and when
    changed_by_id: Mapped[str | None] = mapped_column(String(100))
    changed_by_name: Mapped[str | None] = mapped_column(String(200))
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    # Event version after this change; orders entries sharing a timestamp
    event_version: Mapped[int] = mapped_column(Integer, nullable=False)

    notes: Mapped[str | None] = mapped_column(Text)
    side_effects: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, comment="Structured markers, e.g. {'estimate_under_review': '<submission id>'}"
    )

    def __repr__(self) -> str:
        return f"<StateHistoryEntry {self.from_state} -> {self.to_state} event={self.shopping_event_id}>"
