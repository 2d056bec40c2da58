"""Decision engine — per-line decisions from the automated evaluator and human reviewers.

Decisions are append-only: a repeated decision by the same source on the same
line is a new row, and the latest row per source wins. When both sources have
decided a line, the human decision is authoritative; if it disagrees with the
automated one (verdict or responsibility) the pair is an override. The
automated row is never removed.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from railshop.estimates.store import estimate_store
from railshop.events.bus import emit_on_commit
from railshop.models.base import utcnow
from railshop.models.decision import EstimateLineDecision
from railshop.models.enums import DecisionSource
from railshop.models.estimate import EstimateLine
from railshop.schemas.events import EventType, SystemEvent
from railshop.schemas.workflow import (
    Actor,
    AutomatedDecisionInput,
    DecisionInput,
    DecisionView,
    LineDecisionSummary,
    RecordedDecision,
)
from railshop.workflow.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

_decision_list_adapter: TypeAdapter[list[DecisionInput]] = TypeAdapter(list[DecisionInput])


# ── Pure resolution rules ────────────────────────────────────────────


def _latest(decisions: Sequence[DecisionView], source: DecisionSource) -> DecisionView | None:
    candidates = [d for d in decisions if d.source == source]
    if not candidates:
        return None
    # max() keeps the first maximal element; reverse so later rows win ties
    return max(reversed(candidates), key=lambda d: d.decided_at)


def effective_decision(decisions: Sequence[DecisionView]) -> DecisionView | None:
    """Return the authoritative decision for one line.

    The latest human decision if there is one, else the latest automated one,
    else None. `decisions` must all belong to the same line, in insertion order.
    """
    return _latest(decisions, DecisionSource.HUMAN) or _latest(decisions, DecisionSource.AUTOMATED)


def disagrees(human: Any, automated: Any) -> bool:
    """True when two decisions differ on verdict or responsibility."""
    return human.verdict != automated.verdict or human.responsibility != automated.responsibility


def is_override(decisions: Sequence[DecisionView]) -> bool:
    """True when the latest human decision overrides the latest automated one."""
    human = _latest(decisions, DecisionSource.HUMAN)
    automated = _latest(decisions, DecisionSource.AUTOMATED)
    return human is not None and automated is not None and disagrees(human, automated)


def parse_decisions(raw: Sequence[dict[str, Any]]) -> list[DecisionInput]:
    """Validate raw decision payloads into the DecisionInput sum type.

    Raises:
        ValidationError: Unknown source, missing or out-of-range confidence on an
            automated decision, confidence supplied on a human decision, or any
            other malformed field.
    """
    try:
        return _decision_list_adapter.validate_python(list(raw))
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        msg = f"Invalid decisions: {problems}"
        raise ValidationError(msg) from exc


# ── Engine ───────────────────────────────────────────────────────────


class DecisionEngine:
    """Records line decisions and resolves the effective decision per line."""

    async def record_decisions(
        self,
        db: AsyncSession,
        submission_id: uuid.UUID,
        decisions: Sequence[DecisionInput],
        actor: Actor,
    ) -> list[RecordedDecision]:
        """Append one decision row per input.

        Args:
            db: Database session.
            submission_id: Submission whose lines are being decided.
            decisions: Parsed decision inputs (see `parse_decisions`).
            actor: Who records the decisions (reviewer or evaluator identity).

        Returns:
            The recorded decisions in input order, each marked with
            ``is_override`` when it overrides an automated decision.

        Raises:
            NotFound: Submission missing, or a line id not on this submission.
        """
        submission = await estimate_store.get_submission(db, submission_id)
        line_ids = {line.id for line in submission.lines}
        for decision in decisions:
            if decision.line_id not in line_ids:
                raise NotFound(f"Estimate line on submission {submission_id}", decision.line_id)

        latest_automated = await self._latest_automated_rows(db, {d.line_id for d in decisions})

        rows: list[EstimateLineDecision] = []
        overridden: list[EstimateLineDecision | None] = []
        stamp: datetime | None = None
        for decision in decisions:
            stamp = _next_stamp(stamp)
            row = self._build_row(decision, actor, stamp)
            prior = None
            if decision.source == DecisionSource.HUMAN.value:
                automated = latest_automated.get(decision.line_id)
                if automated is not None and _rows_disagree(row, automated):
                    prior = automated
            else:
                latest_automated[decision.line_id] = row
            rows.append(row)
            overridden.append(prior)

        db.add_all(rows)
        await db.flush()

        recorded = [
            RecordedDecision(
                **DecisionView.from_model(row).model_dump(),
                is_override=prior is not None,
                overridden_decision_id=prior.id if prior is not None else None,
            )
            for row, prior in zip(rows, overridden)
        ]

        override_count = sum(1 for r in recorded if r.is_override)
        logger.info(
            "Decisions recorded: submission=%s count=%d overrides=%d actor=%s",
            submission_id,
            len(recorded),
            override_count,
            actor.id,
        )

        emit_on_commit(db, SystemEvent(
            event_type=EventType.DECISIONS_RECORDED,
            shopping_event_id=submission.shopping_event_id,
            actor_id=actor.id,
            actor_role=actor.role,
            data={
                "submission_id": str(submission_id),
                "count": len(recorded),
                "overrides": override_count,
            },
            source_module="estimates.decisions",
        ))
        for record, prior in zip(recorded, overridden):
            if prior is None:
                continue
            emit_on_commit(db, SystemEvent(
                event_type=EventType.DECISION_OVERRIDDEN,
                shopping_event_id=submission.shopping_event_id,
                actor_id=actor.id,
                actor_role=actor.role,
                data={
                    "submission_id": str(submission_id),
                    "line_id": str(record.line_id),
                    "automated_decision": prior.decision,
                    "automated_responsibility": prior.responsibility,
                    "automated_confidence": (
                        float(prior.confidence_score) if prior.confidence_score is not None else None
                    ),
                    "human_decision": record.verdict.value,
                    "human_responsibility": record.responsibility.value,
                },
                source_module="estimates.decisions",
            ))

        return recorded

    async def get_line_decisions(self, db: AsyncSession, line_id: uuid.UUID) -> list[DecisionView]:
        """Full decision history for one line, oldest first."""
        line = await db.get(EstimateLine, line_id)
        if line is None:
            raise NotFound("Estimate line", line_id)
        rows = await self._rows_for_lines(db, [line_id])
        return [DecisionView.from_model(row) for row in rows]

    async def effective_decisions(
        self, db: AsyncSession, submission_id: uuid.UUID
    ) -> dict[uuid.UUID, DecisionView]:
        """Map each decided line of a submission to its effective decision."""
        summaries = await self.summarize(db, submission_id)
        return {s.line_id: s.effective for s in summaries if s.effective is not None}

    async def summarize(self, db: AsyncSession, submission_id: uuid.UUID) -> list[LineDecisionSummary]:
        """Effective decision, override flag and history for every line, in line order."""
        submission = await estimate_store.get_submission(db, submission_id)
        rows = await self._rows_for_lines(db, [line.id for line in submission.lines])

        by_line: dict[uuid.UUID, list[DecisionView]] = {}
        for row in rows:
            by_line.setdefault(row.estimate_line_id, []).append(DecisionView.from_model(row))

        summaries = []
        for line in submission.lines:
            history = by_line.get(line.id, [])
            summaries.append(LineDecisionSummary(
                line_id=line.id,
                line_number=line.line_number,
                effective=effective_decision(history),
                is_override=is_override(history),
                history=history,
            ))
        return summaries

    # ── Internals ────────────────────────────────────────────────────

    async def _rows_for_lines(
        self, db: AsyncSession, line_ids: Sequence[uuid.UUID]
    ) -> list[EstimateLineDecision]:
        if not line_ids:
            return []
        result = await db.execute(
            select(EstimateLineDecision)
            .where(EstimateLineDecision.estimate_line_id.in_(line_ids))
            .order_by(EstimateLineDecision.decided_at.asc())
        )
        return list(result.scalars().all())

    async def _latest_automated_rows(
        self, db: AsyncSession, line_ids: set[uuid.UUID]
    ) -> dict[uuid.UUID, EstimateLineDecision]:
        latest: dict[uuid.UUID, EstimateLineDecision] = {}
        for row in await self._rows_for_lines(db, list(line_ids)):
            if row.decision_source == DecisionSource.AUTOMATED.value:
                latest[row.estimate_line_id] = row
        return latest

    @staticmethod
    def _build_row(decision: DecisionInput, actor: Actor, decided_at: datetime) -> EstimateLineDecision:
        confidence = None
        model_version = None
        if isinstance(decision, AutomatedDecisionInput):
            confidence = Decimal(str(decision.confidence)).quantize(Decimal("0.01"))
            model_version = decision.model_version
        return EstimateLineDecision(
            id=uuid.uuid4(),
            estimate_line_id=decision.line_id,
            decision_source=decision.source,
            decision=decision.verdict.value,
            confidence_score=confidence,
            responsibility=decision.responsibility.value,
            basis_type=decision.basis_type.value if decision.basis_type is not None else None,
            basis_reference=decision.basis_reference,
            decision_notes=decision.notes,
            model_version=model_version,
            policy_version=decision.policy_version,
            decided_by_id=actor.id,
            decided_at=decided_at,
        )


def _rows_disagree(a: EstimateLineDecision, b: EstimateLineDecision) -> bool:
    return a.decision != b.decision or a.responsibility != b.responsibility


def _next_stamp(previous: datetime | None) -> datetime:
    """Strictly increasing timestamps within one batch of decisions."""
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


decision_engine = DecisionEngine()
