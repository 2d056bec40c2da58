"""EstimateLineDecision model — IMMUTABLE per-line decision records.

Never overwritten. Each decision (automated or human, first or repeated) is a
new INSERT; the effective decision and override status are derived at read time.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Numeric, String, Text, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column

from railshop.models.base import Base, TimestampMixin, utcnow
from railshop.models.enums import Responsibility


class EstimateLineDecision(TimestampMixin, Base):
    """One decision on one estimate line from one source."""

    __tablename__ = "estimate_line_decisions"
    __table_args__ = (
        # Confidence belongs to automated decisions only
        CheckConstraint(
            "(decision_source = 'automated' AND confidence_score IS NOT NULL) "
            "OR (decision_source = 'human' AND confidence_score IS NULL)",
            name="ck_decision_confidence_by_source",
        ),
    )

    estimate_line_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("estimate_lines.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Source & verdict
    decision_source: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    decision: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    confidence_score: Mapped[Decimal | None] = mapped_column(Numeric(3, 2), comment="Automated decisions only")

    # Responsibility allocation
    responsibility: Mapped[str] = mapped_column(
        String(10), default=Responsibility.UNKNOWN.value, nullable=False
    )
    basis_type: Mapped[str | None] = mapped_column(String(30))
    basis_reference: Mapped[str | None] = mapped_column(String(255))

    # Context
    decision_notes: Mapped[str | None] = mapped_column(Text)
    model_version: Mapped[str | None] = mapped_column(String(50), comment="Evaluator version (automated only)")
    policy_version: Mapped[str | None] = mapped_column(String(50))

    # Who decided
    decided_by_id: Mapped[str | None] = mapped_column(String(100))
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<EstimateLineDecision line={self.estimate_line_id} "
            f"{self.decision_source}:{self.decision}/{self.responsibility}>"
        )


@event.listens_for(EstimateLineDecision, "before_update")
def _prevent_decision_update(mapper, connection, target) -> None:  # noqa: ARG001
    msg = "estimate_line_decisions records are immutable and cannot be updated"
    raise RuntimeError(msg)
