"""ShoppingBatch model — several cars sent to one shop under a single request."""

from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from railshop.models.base import Base, TimestampMixin


class ShoppingBatch(TimestampMixin, Base):
    """Groups the shopping events created together for one shop."""

    __tablename__ = "shopping_batches"

    batch_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    shop_code: Mapped[str] = mapped_column(String(10), nullable=False, index=True)

    shopping_type_code: Mapped[str | None] = mapped_column(String(50))
    shopping_reason_code: Mapped[str | None] = mapped_column(String(50))
    notes: Mapped[str | None] = mapped_column(Text)

    created_by_id: Mapped[str] = mapped_column(String(100), nullable=False)

    def __repr__(self) -> str:
        return f"<ShoppingBatch {self.batch_number} shop={self.shop_code}>"
