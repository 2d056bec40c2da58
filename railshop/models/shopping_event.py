"""ShoppingEvent model — one car-to-shop repair cycle, from request to release.

`version` is the optimistic-concurrency counter: SQLAlchemy adds
`WHERE version = :read_version` to every UPDATE and bumps it, so a row changed
by another transaction since it was read fails with StaleDataError.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from railshop.models.base import Base, TimestampMixin
from railshop.models.enums import ShoppingEventState


class ShoppingEvent(TimestampMixin, Base):
    """A single rail car shop visit driven through the workflow state machine."""

    __tablename__ = "shopping_events"

    event_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)

    # Car and shop references (validated against the fleet directory at creation)
    car_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    shop_code: Mapped[str] = mapped_column(String(10), nullable=False, index=True)

    # Set when the event was created as part of a batch
    batch_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("shopping_batches.id"), index=True
    )

    # Classification
    shopping_type_code: Mapped[str | None] = mapped_column(String(50))
    shopping_reason_code: Mapped[str | None] = mapped_column(String(50))

    # State machine
    state: Mapped[str] = mapped_column(
        String(30), default=ShoppingEventState.REQUESTED.value, nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Cancellation
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by_id: Mapped[str | None] = mapped_column(String(100))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    # Actors
    created_by_id: Mapped[str] = mapped_column(String(100), nullable=False)
    updated_by_id: Mapped[str | None] = mapped_column(String(100))

    __mapper_args__ = {"version_id_col": version}

    @property
    def current_state(self) -> ShoppingEventState:
        return ShoppingEventState(self.state)

    def __repr__(self) -> str:
        return f"<ShoppingEvent {self.event_number} car={self.car_number} state={self.state} v{self.version}>"
