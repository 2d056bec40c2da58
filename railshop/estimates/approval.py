"""Approval packet aggregator — turns line decisions into one verdict per submission.

Finalizing a submission creates its approval packet and moves the submission
to the matching terminal status. A new review round needs a new submission
version; a finalized submission is never finalized again.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from railshop.estimates.decisions import decision_engine
from railshop.estimates.store import estimate_store
from railshop.events.bus import emit_on_commit
from railshop.models.approval_packet import ApprovalPacket
from railshop.models.base import utcnow
from railshop.models.enums import DecisionSource, EstimateStatus, OverallDecision, Verdict
from railshop.schemas.events import EventType, SystemEvent
from railshop.schemas.workflow import Actor
from railshop.workflow.errors import InvalidTransition, NotFound, ValidationError

logger = logging.getLogger(__name__)

FINALIZED_STATUSES: frozenset[str] = frozenset({
    EstimateStatus.APPROVED.value,
    EstimateStatus.CHANGES_REQUIRED.value,
    EstimateStatus.REJECTED.value,
})


class ApprovalAggregator:
    """Creates, releases and reads approval packets."""

    async def finalize_approval(
        self,
        db: AsyncSession,
        submission_id: uuid.UUID,
        overall_decision: str,
        approved_line_ids: Sequence[uuid.UUID],
        actor: Actor,
        notes: str | None = None,
    ) -> ApprovalPacket:
        """Record the overall verdict for a submission.

        Lines not listed as approved are classified from their effective
        decision: an effective ``reject`` goes to the rejected list, anything
        else (``review``, undecided, unlisted ``approve``) needs revision.

        Raises:
            ValidationError: Unknown overall decision, or an approved id that is
                not a line of this submission.
            NotFound: Submission does not exist.
            InvalidTransition: Submission already finalized.
        """
        try:
            decision = OverallDecision(overall_decision)
        except ValueError as exc:
            allowed = ", ".join(d.value for d in OverallDecision)
            msg = f"Invalid overall_decision '{overall_decision}'. Must be one of: {allowed}"
            raise ValidationError(msg, overall_decision=overall_decision) from exc

        submission = await estimate_store.get_submission(db, submission_id)

        existing = await self.get_packet_for_submission(db, submission_id)
        if existing is not None or submission.status in FINALIZED_STATUSES:
            raise InvalidTransition(
                submission.status,
                decision.submission_status.value,
                reason="submission already finalized",
            )

        line_ids = [line.id for line in submission.lines]
        approved = list(dict.fromkeys(approved_line_ids))
        foreign = [str(lid) for lid in approved if lid not in set(line_ids)]
        if foreign:
            msg = f"Approved line ids not on submission {submission_id}: {', '.join(foreign)}"
            raise ValidationError(msg, submission_id=submission_id)

        effective = await decision_engine.effective_decisions(db, submission_id)
        approved_set = set(approved)
        rejected: list[uuid.UUID] = []
        revision_required: list[uuid.UUID] = []
        for line_id in line_ids:
            if line_id in approved_set:
                continue
            view = effective.get(line_id)
            if view is not None and view.verdict == Verdict.REJECT:
                rejected.append(line_id)
            else:
                revision_required.append(line_id)

        unlisted_human_approvals = [
            line_id
            for line_id, view in effective.items()
            if view.source == DecisionSource.HUMAN
            and view.verdict == Verdict.APPROVE
            and line_id not in approved_set
        ]
        if unlisted_human_approvals:
            logger.warning(
                "Approved lines do not cover every human-approved line: submission=%s missing=%s",
                submission_id,
                [str(lid) for lid in unlisted_human_approvals],
            )

        effectively_rejected = [lid for lid, view in effective.items() if view.verdict == Verdict.REJECT]
        if decision == OverallDecision.APPROVED and effectively_rejected:
            logger.warning(
                "Submission %s approved while %d line(s) are effectively rejected: %s",
                submission_id,
                len(effectively_rejected),
                [str(lid) for lid in effectively_rejected],
            )

        packet = ApprovalPacket(
            estimate_submission_id=submission_id,
            overall_decision=decision.value,
            approved_line_ids=[str(lid) for lid in approved],
            rejected_line_ids=[str(lid) for lid in rejected],
            revision_required_line_ids=[str(lid) for lid in revision_required],
            notes=notes,
            decided_by_id=actor.id,
        )
        previous_status = submission.status
        submission.status = decision.submission_status.value
        db.add(packet)
        await db.flush()

        logger.info(
            "Estimate finalized: submission=%s %s -> %s approved=%d rejected=%d revision=%d",
            submission_id,
            previous_status,
            submission.status,
            len(approved),
            len(rejected),
            len(revision_required),
        )

        emit_on_commit(db, SystemEvent(
            event_type=EventType.ESTIMATE_FINALIZED,
            shopping_event_id=submission.shopping_event_id,
            actor_id=actor.id,
            actor_role=actor.role,
            data={
                "submission_id": str(submission_id),
                "packet_id": str(packet.id),
                "version_number": submission.version_number,
                "is_final": submission.is_final,
                "overall_decision": decision.value,
                "from_status": previous_status,
                "approved_count": len(approved),
                "rejected_count": len(rejected),
                "revision_required_count": len(revision_required),
                "effectively_rejected_count": len(effectively_rejected),
                "effectively_rejected_line_ids": [str(lid) for lid in effectively_rejected],
            },
            source_module="estimates.approval",
        ))
        return packet

    async def release_packet(self, db: AsyncSession, packet_id: uuid.UUID, actor: Actor) -> ApprovalPacket:
        """Stamp the packet as released to the shop. Releasing twice is rejected."""
        packet = await self.get_packet(db, packet_id)
        if packet.released_to_shop_at is not None:
            raise InvalidTransition("released", "released", reason="approval packet already released to shop")

        packet.released_to_shop_at = utcnow()
        packet.released_by_id = actor.id
        await db.flush()

        submission = await estimate_store.get_submission(db, packet.estimate_submission_id)
        logger.info("Approval packet released: packet=%s by=%s", packet_id, actor.id)

        emit_on_commit(db, SystemEvent(
            event_type=EventType.APPROVAL_PACKET_RELEASED,
            shopping_event_id=submission.shopping_event_id,
            actor_id=actor.id,
            actor_role=actor.role,
            data={
                "packet_id": str(packet_id),
                "submission_id": str(submission.id),
                "overall_decision": packet.overall_decision,
            },
            source_module="estimates.approval",
        ))
        return packet

    async def get_packet(self, db: AsyncSession, packet_id: uuid.UUID) -> ApprovalPacket:
        packet = await db.get(ApprovalPacket, packet_id)
        if packet is None:
            raise NotFound("Approval packet", packet_id)
        return packet

    async def get_packet_for_submission(self, db: AsyncSession, submission_id: uuid.UUID) -> ApprovalPacket | None:
        result = await db.execute(
            select(ApprovalPacket).where(ApprovalPacket.estimate_submission_id == submission_id)
        )
        return result.scalar_one_or_none()


approval_aggregator = ApprovalAggregator()
