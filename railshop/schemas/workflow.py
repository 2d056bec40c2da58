"""Pydantic schemas for workflow inputs and read models.

Inputs are validated at the boundary; read models are built from ORM rows
(`from_attributes`) and returned by the HTTP layer.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from railshop.models.enums import (
    BasisType,
    DecisionSource,
    EstimateStatus,
    OverallDecision,
    Responsibility,
    ShoppingEventState,
    Verdict,
)

# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


class Actor(BaseModel):
    """Opaque identity supplied by the authentication collaborator."""

    id: str
    display_name: str | None = None
    role: str | None = None  # "reviewer", "shop", "evaluator", "system"

    model_config = ConfigDict(frozen=True)


SYSTEM_ACTOR = Actor(id="system", display_name="System", role="system")


# ---------------------------------------------------------------------------
# Estimate inputs
# ---------------------------------------------------------------------------


class EstimateLineInput(BaseModel):
    """One repair line as supplied by the shop / estimation source.

    `total_cost` is authoritative: it is stored as given, never re-derived.
    """

    job_code: str | None = None
    aar_code: str | None = None
    description: str | None = None
    labor_hours: Decimal
    material_cost: Decimal
    total_cost: Decimal


# ---------------------------------------------------------------------------
# Decision inputs: a sum type on `source`
# ---------------------------------------------------------------------------


class _DecisionInputBase(BaseModel):
    line_id: uuid.UUID
    verdict: Verdict
    responsibility: Responsibility = Responsibility.UNKNOWN
    basis_type: BasisType | None = None
    basis_reference: str | None = None
    notes: str | None = None
    policy_version: str | None = None


class AutomatedDecisionInput(_DecisionInputBase):
    """Decision from the automated evaluator; carries a confidence score."""

    source: Literal["automated"] = "automated"
    confidence: float = Field(ge=0.0, le=1.0)
    model_version: str | None = None

    model_config = ConfigDict(protected_namespaces=())


class HumanDecisionInput(_DecisionInputBase):
    """Decision from a human reviewer; confidence is not accepted."""

    source: Literal["human"] = "human"

    model_config = ConfigDict(extra="forbid")


DecisionInput = Annotated[
    Union[AutomatedDecisionInput, HumanDecisionInput],
    Field(discriminator="source"),
]


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class ShoppingEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_number: str
    car_number: str
    shop_code: str
    batch_id: uuid.UUID | None = None
    shopping_type_code: str | None = None
    shopping_reason_code: str | None = None
    state: ShoppingEventState
    version: int
    cancelled_at: datetime | None = None
    cancelled_by_id: str | None = None
    cancellation_reason: str | None = None
    created_by_id: str
    created_at: datetime


class ShoppingBatchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    batch_number: str
    shop_code: str
    shopping_type_code: str | None = None
    shopping_reason_code: str | None = None
    notes: str | None = None
    created_by_id: str
    created_at: datetime


class BatchCreatedRead(BaseModel):
    """A new batch with the events created under it, in request order."""

    batch: ShoppingBatchRead
    events: list[ShoppingEventRead]


class StateHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    shopping_event_id: uuid.UUID
    from_state: ShoppingEventState | None = None
    to_state: ShoppingEventState
    changed_by_id: str | None = None
    changed_by_name: str | None = None
    changed_at: datetime
    event_version: int
    notes: str | None = None
    side_effects: dict[str, Any] | None = None


class EstimateLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    line_number: int
    job_code: str | None = None
    aar_code: str | None = None
    description: str | None = None
    labor_hours: Decimal
    material_cost: Decimal
    total_cost: Decimal


class EstimateSubmissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    shopping_event_id: uuid.UUID
    version_number: int
    is_final: bool
    status: EstimateStatus
    total_labor_hours: Decimal
    total_material_cost: Decimal
    total_cost: Decimal
    submitted_by: str | None = None
    submitted_at: datetime
    notes: str | None = None
    lines: list[EstimateLineRead] = Field(default_factory=list)


class DecisionView(BaseModel):
    """One stored line decision, with the source modelled as an enum plus confidence."""

    model_config = ConfigDict(protected_namespaces=())

    id: uuid.UUID
    line_id: uuid.UUID
    source: DecisionSource
    verdict: Verdict
    confidence: float | None = None
    responsibility: Responsibility
    basis_type: str | None = None
    basis_reference: str | None = None
    notes: str | None = None
    model_version: str | None = None
    policy_version: str | None = None
    decided_by_id: str | None = None
    decided_at: datetime

    @classmethod
    def from_model(cls, row: Any) -> DecisionView:
        return cls(
            id=row.id,
            line_id=row.estimate_line_id,
            source=DecisionSource(row.decision_source),
            verdict=Verdict(row.decision),
            confidence=float(row.confidence_score) if row.confidence_score is not None else None,
            responsibility=Responsibility(row.responsibility),
            basis_type=row.basis_type,
            basis_reference=row.basis_reference,
            notes=row.decision_notes,
            model_version=row.model_version,
            policy_version=row.policy_version,
            decided_by_id=row.decided_by_id,
            decided_at=row.decided_at,
        )


class RecordedDecision(DecisionView):
    """A freshly recorded decision, marked when it overrides an automated one."""

    is_override: bool = False
    overridden_decision_id: uuid.UUID | None = None


class LineDecisionSummary(BaseModel):
    """Effective decision for one line plus its full decision history."""

    line_id: uuid.UUID
    line_number: int
    effective: DecisionView | None = None
    is_override: bool = False
    history: list[DecisionView] = Field(default_factory=list)


class ApprovalPacketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    estimate_submission_id: uuid.UUID
    overall_decision: OverallDecision
    approved_line_ids: list[uuid.UUID] = Field(default_factory=list)
    rejected_line_ids: list[uuid.UUID] = Field(default_factory=list)
    revision_required_line_ids: list[uuid.UUID] = Field(default_factory=list)
    notes: str | None = None
    decided_by_id: str | None = None
    released_to_shop_at: datetime | None = None
    released_by_id: str | None = None
    created_at: datetime


# ---------------------------------------------------------------------------
# HTTP request bodies
# ---------------------------------------------------------------------------


class CreateEventRequest(BaseModel):
    car_number: str = Field(min_length=1, max_length=20)
    shop_code: str = Field(min_length=1, max_length=10)
    shopping_type_code: str | None = None
    shopping_reason_code: str | None = None
    actor: Actor


class CreateBatchRequest(BaseModel):
    shop_code: str = Field(min_length=1, max_length=10)
    car_numbers: list[Annotated[str, Field(min_length=1, max_length=20)]] = Field(min_length=1)
    shopping_type_code: str | None = None
    shopping_reason_code: str | None = None
    notes: str | None = None
    actor: Actor


class TransitionRequest(BaseModel):
    to_state: str
    actor: Actor
    notes: str | None = None
    expected_version: int | None = Field(default=None, description="Version the caller last read")
    data: dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    actor: Actor
    reason: str
    expected_version: int | None = None


class SubmitEstimateRequest(BaseModel):
    actor: Actor
    lines: list[EstimateLineInput]
    notes: str | None = None


class RecordDecisionsRequest(BaseModel):
    actor: Actor
    decisions: list[dict[str, Any]]


class FinalizeApprovalRequest(BaseModel):
    actor: Actor
    overall_decision: str
    approved_line_ids: list[uuid.UUID] = Field(default_factory=list)
    notes: str | None = None


class ReleasePacketRequest(BaseModel):
    actor: Actor
