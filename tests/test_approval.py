"""Tests for the approval aggregator — finalize, derived line lists, release."""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal

import pytest

from railshop.estimates.approval import approval_aggregator
from railshop.estimates.decisions import decision_engine, parse_decisions
from railshop.estimates.store import estimate_store
from railshop.models.enums import EstimateStatus
from railshop.schemas.events import EventType
from railshop.schemas.workflow import Actor, EstimateLineInput
from railshop.workflow.errors import InvalidTransition, NotFound, ValidationError
from railshop.workflow.machine import shopping_event_service

# ── Helpers ──────────────────────────────────────────────────────────

SHOP = Actor(id="shop-up001", role="shop")
REVIEWER = Actor(id="rev-42", display_name="Dana Reviewer", role="reviewer")


def _line() -> EstimateLineInput:
    return EstimateLineInput(labor_hours=Decimal("1"), material_cost=Decimal("50"), total_cost=Decimal("120"))


async def _submission(db, lines: int = 3):
    event = await shopping_event_service.create_event(db, "GATX12345", "UP001", SHOP)
    return await estimate_store.submit_estimate(db, event.id, [_line() for _ in range(lines)])


async def _decide(db, submission, *decisions: dict):
    await decision_engine.record_decisions(db, submission.id, parse_decisions(list(decisions)), REVIEWER)


# ── finalize_approval ────────────────────────────────────────────────


class TestFinalizeApproval:
    @pytest.mark.asyncio()
    async def test_all_lines_approved(self, db, emitted):
        submission = await _submission(db, lines=2)
        ids = [ln.id for ln in submission.lines]

        packet = await approval_aggregator.finalize_approval(db, submission.id, "approved", ids, REVIEWER)

        assert packet.overall_decision == "approved"
        assert packet.approved_line_ids == [str(i) for i in ids]
        assert packet.rejected_line_ids == []
        assert packet.revision_required_line_ids == []
        assert packet.released_to_shop_at is None
        assert submission.status == EstimateStatus.APPROVED.value

        [finalized] = [e for e in emitted if e.event_type == EventType.ESTIMATE_FINALIZED]
        assert finalized.data["packet_id"] == str(packet.id)
        assert finalized.data["from_status"] == "submitted"
        assert finalized.data["approved_count"] == 2

    @pytest.mark.asyncio()
    async def test_unlisted_lines_are_classified_by_effective_decision(self, db):
        submission = await _submission(db, lines=4)
        l1, l2, l3, l4 = (ln.id for ln in submission.lines)
        await _decide(
            db,
            submission,
            {"line_id": l2, "source": "automated", "verdict": "reject", "confidence": 0.8},
            {"line_id": l3, "source": "automated", "verdict": "reject", "confidence": 0.8},
            {"line_id": l3, "source": "human", "verdict": "review"},
        )

        packet = await approval_aggregator.finalize_approval(db, submission.id, "changes_required", [l1], REVIEWER)

        assert packet.approved_line_ids == [str(l1)]
        assert packet.rejected_line_ids == [str(l2)]
        # l3: human review beats automated reject; l4: undecided
        assert packet.revision_required_line_ids == [str(l3), str(l4)]
        assert submission.status == EstimateStatus.CHANGES_REQUIRED.value

    @pytest.mark.asyncio()
    async def test_rejected_overall(self, db):
        submission = await _submission(db, lines=1)
        await approval_aggregator.finalize_approval(db, submission.id, "rejected", [], REVIEWER)
        assert submission.status == EstimateStatus.REJECTED.value

    @pytest.mark.asyncio()
    async def test_duplicate_approved_ids_are_collapsed(self, db):
        submission = await _submission(db, lines=1)
        line_id = submission.lines[0].id
        packet = await approval_aggregator.finalize_approval(
            db, submission.id, "approved", [line_id, line_id], REVIEWER
        )
        assert packet.approved_line_ids == [str(line_id)]

    @pytest.mark.asyncio()
    async def test_unknown_overall_decision(self, db):
        submission = await _submission(db, lines=1)
        with pytest.raises(ValidationError, match="overall_decision"):
            await approval_aggregator.finalize_approval(db, submission.id, "maybe", [], REVIEWER)

    @pytest.mark.asyncio()
    async def test_foreign_line_id(self, db):
        submission = await _submission(db, lines=1)
        with pytest.raises(ValidationError, match="not on submission"):
            await approval_aggregator.finalize_approval(db, submission.id, "approved", [uuid.uuid4()], REVIEWER)
        assert submission.status == EstimateStatus.SUBMITTED.value
        assert await approval_aggregator.get_packet_for_submission(db, submission.id) is None

    @pytest.mark.asyncio()
    async def test_unknown_submission(self, db):
        with pytest.raises(NotFound):
            await approval_aggregator.finalize_approval(db, uuid.uuid4(), "approved", [], REVIEWER)

    @pytest.mark.asyncio()
    async def test_cannot_finalize_twice(self, db):
        submission = await _submission(db, lines=1)
        await approval_aggregator.finalize_approval(db, submission.id, "changes_required", [], REVIEWER)

        with pytest.raises(InvalidTransition, match="already finalized"):
            await approval_aggregator.finalize_approval(
                db, submission.id, "approved", [submission.lines[0].id], REVIEWER
            )
        assert submission.status == EstimateStatus.CHANGES_REQUIRED.value

    @pytest.mark.asyncio()
    async def test_approved_with_rejected_lines_is_allowed_but_logged(self, db, emitted, caplog):
        submission = await _submission(db, lines=2)
        l1, l2 = (ln.id for ln in submission.lines)
        await _decide(db, submission, {"line_id": l2, "source": "human", "verdict": "reject"})

        with caplog.at_level(logging.WARNING, logger="railshop.estimates.approval"):
            packet = await approval_aggregator.finalize_approval(db, submission.id, "approved", [l1, l2], REVIEWER)

        assert packet.overall_decision == "approved"
        assert "effectively rejected" in caplog.text
        [finalized] = [e for e in emitted if e.event_type == EventType.ESTIMATE_FINALIZED]
        assert finalized.data["effectively_rejected_line_ids"] == [str(l2)]

    @pytest.mark.asyncio()
    async def test_unlisted_human_approval_is_logged(self, db, caplog):
        submission = await _submission(db, lines=2)
        l1, l2 = (ln.id for ln in submission.lines)
        await _decide(db, submission, {"line_id": l2, "source": "human", "verdict": "approve"})

        with caplog.at_level(logging.WARNING, logger="railshop.estimates.approval"):
            packet = await approval_aggregator.finalize_approval(db, submission.id, "changes_required", [l1], REVIEWER)

        assert packet.revision_required_line_ids == [str(l2)]
        assert "human-approved" in caplog.text


# ── release_packet / reads ───────────────────────────────────────────


class TestReleasePacket:
    @pytest.mark.asyncio()
    async def test_release_once(self, db, emitted):
        submission = await _submission(db, lines=1)
        packet = await approval_aggregator.finalize_approval(
            db, submission.id, "approved", [submission.lines[0].id], REVIEWER
        )

        released = await approval_aggregator.release_packet(db, packet.id, SHOP)

        assert released.released_to_shop_at is not None
        assert released.released_by_id == SHOP.id
        [event] = [e for e in emitted if e.event_type == EventType.APPROVAL_PACKET_RELEASED]
        assert event.data["packet_id"] == str(packet.id)
        assert event.shopping_event_id == submission.shopping_event_id

    @pytest.mark.asyncio()
    async def test_second_release_is_rejected(self, db):
        submission = await _submission(db, lines=1)
        packet = await approval_aggregator.finalize_approval(db, submission.id, "rejected", [], REVIEWER)
        await approval_aggregator.release_packet(db, packet.id, SHOP)
        first_release = packet.released_to_shop_at

        with pytest.raises(InvalidTransition, match="already released"):
            await approval_aggregator.release_packet(db, packet.id, REVIEWER)
        assert packet.released_to_shop_at == first_release
        assert packet.released_by_id == SHOP.id

    @pytest.mark.asyncio()
    async def test_get_packet(self, db):
        submission = await _submission(db, lines=1)
        packet = await approval_aggregator.finalize_approval(db, submission.id, "rejected", [], REVIEWER)

        assert (await approval_aggregator.get_packet(db, packet.id)).id == packet.id
        assert (await approval_aggregator.get_packet_for_submission(db, submission.id)).id == packet.id
        with pytest.raises(NotFound):
            await approval_aggregator.get_packet(db, uuid.uuid4())
