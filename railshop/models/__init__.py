"""SQLAlchemy ORM models for the shopping event workflow.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from railshop.models.approval_packet import ApprovalPacket
from railshop.models.audit import AuditLog
from railshop.models.base import Base
from railshop.models.batch import ShoppingBatch
from railshop.models.decision import EstimateLineDecision
from railshop.models.enums import (
    BasisType,
    DecisionSource,
    EstimateStatus,
    OverallDecision,
    Responsibility,
    ShoppingEventState,
    Verdict,
)
from railshop.models.estimate import EstimateLine, EstimateSubmission
from railshop.models.shopping_event import ShoppingEvent
from railshop.models.state_history import StateHistoryEntry

__all__ = [
    # Base
    "Base",
    # Models
    "ShoppingEvent",
    "ShoppingBatch",
    "StateHistoryEntry",
    "EstimateSubmission",
    "EstimateLine",
    "EstimateLineDecision",
    "ApprovalPacket",
    "AuditLog",
    # Enums
    "ShoppingEventState",
    "EstimateStatus",
    "DecisionSource",
    "Verdict",
    "Responsibility",
    "BasisType",
    "OverallDecision",
]
