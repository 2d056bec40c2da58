"""Estimate models — versioned cost submissions and their line items.

All financial amounts use Numeric / Decimal — never float.
Lines are immutable: corrections arrive as a new submission version.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from railshop.models.base import Base, TimestampMixin, utcnow
from railshop.models.enums import EstimateStatus


class EstimateSubmission(TimestampMixin, Base):
    """One versioned cost proposal for a shopping event."""

    __tablename__ = "estimate_submissions"
    __table_args__ = (
        UniqueConstraint("shopping_event_id", "version_number", name="uq_estimate_submissions_version_number"),
    )

    shopping_event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("shopping_events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    is_final: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, comment="Submitted after QA")

    status: Mapped[str] = mapped_column(
        String(30), default=EstimateStatus.SUBMITTED.value, nullable=False, index=True
    )

    # Aggregates (sum of lines)
    total_labor_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_material_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    submitted_by: Mapped[str | None] = mapped_column(String(255))
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)

    lines: Mapped[list[EstimateLine]] = relationship(
        "EstimateLine",
        back_populates="submission",
        lazy="selectin",
        order_by="EstimateLine.line_number",
    )

    @property
    def current_status(self) -> EstimateStatus:
        return EstimateStatus(self.status)

    def __repr__(self) -> str:
        return f"<EstimateSubmission v{self.version_number} status={self.status} final={self.is_final}>"


class EstimateLine(TimestampMixin, Base):
    """One repair-task cost row within a submission."""

    __tablename__ = "estimate_lines"
    __table_args__ = (UniqueConstraint("estimate_submission_id", "line_number"),)

    estimate_submission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("estimate_submissions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    job_code: Mapped[str | None] = mapped_column(String(50), index=True, comment="Task classification code")
    aar_code: Mapped[str | None] = mapped_column(String(50))
    description: Mapped[str | None] = mapped_column(Text)

    labor_hours: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    material_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    submission: Mapped[EstimateSubmission] = relationship("EstimateSubmission", back_populates="lines")

    def __repr__(self) -> str:
        return f"<EstimateLine #{self.line_number} job={self.job_code} total={self.total_cost}>"
