"""ApprovalPacket model — the official verdict on one estimate submission."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from railshop.models.base import Base, JSONType, TimestampMixin


class ApprovalPacket(TimestampMixin, Base):
    """Aggregated decision sent back to the shop for a submission."""

    __tablename__ = "approval_packets"

    # One packet per submission; a new review round is a new submission version
    estimate_submission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("estimate_submissions.id"), nullable=False, unique=True, index=True
    )
    overall_decision: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # Line id lists (stringified UUIDs)
    approved_line_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    rejected_line_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    revision_required_line_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    notes: Mapped[str | None] = mapped_column(Text)
    decided_by_id: Mapped[str | None] = mapped_column(String(100))

    # Release to shop
    released_to_shop_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    released_by_id: Mapped[str | None] = mapped_column(String(100))

    def __repr__(self) -> str:
        return f"<ApprovalPacket submission={self.estimate_submission_id} decision={self.overall_decision}>"
