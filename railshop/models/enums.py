"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization; columns store the `.value`.
"""

from __future__ import annotations

from enum import Enum


class ShoppingEventState(str, Enum):
    """Workflow states of a shopping event, in happy-path order."""

    REQUESTED = "REQUESTED"
    ASSIGNED_TO_SHOP = "ASSIGNED_TO_SHOP"
    INBOUND = "INBOUND"
    INSPECTION = "INSPECTION"
    ESTIMATE_SUBMITTED = "ESTIMATE_SUBMITTED"
    ESTIMATE_UNDER_REVIEW = "ESTIMATE_UNDER_REVIEW"
    ESTIMATE_APPROVED = "ESTIMATE_APPROVED"
    CHANGES_REQUIRED = "CHANGES_REQUIRED"
    WORK_AUTHORIZED = "WORK_AUTHORIZED"
    IN_REPAIR = "IN_REPAIR"
    QA_COMPLETE = "QA_COMPLETE"
    FINAL_ESTIMATE_SUBMITTED = "FINAL_ESTIMATE_SUBMITTED"
    FINAL_ESTIMATE_APPROVED = "FINAL_ESTIMATE_APPROVED"
    READY_FOR_RELEASE = "READY_FOR_RELEASE"
    RELEASED = "RELEASED"
    CANCELLED = "CANCELLED"


class EstimateStatus(str, Enum):
    """Lifecycle of one estimate submission."""

    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    CHANGES_REQUIRED = "changes_required"
    REJECTED = "rejected"


class DecisionSource(str, Enum):
    """Who produced a line decision."""

    AUTOMATED = "automated"
    HUMAN = "human"


class Verdict(str, Enum):
    """Per-line decision verdict."""

    APPROVE = "approve"
    REVIEW = "review"
    REJECT = "reject"


class Responsibility(str, Enum):
    """Which party pays for a repair line."""

    LESSOR = "lessor"
    CUSTOMER = "customer"
    UNKNOWN = "unknown"


class BasisType(str, Enum):
    """Kind of justification a decision points at."""

    CRI_TABLE = "cri_table"
    LEASE_CLAUSE = "lease_clause"
    POLICY = "policy"
    MANUAL = "manual"


class OverallDecision(str, Enum):
    """Aggregated verdict of an approval packet."""

    APPROVED = "approved"
    CHANGES_REQUIRED = "changes_required"
    REJECTED = "rejected"

    @property
    def submission_status(self) -> EstimateStatus:
        """Estimate status a submission takes once this verdict is finalized."""
        return EstimateStatus(self.value)
