"""Tests for the state history ledger — append, ordering, replay."""

from __future__ import annotations

import uuid
from types import SimpleNamespace

import pytest

from railshop.models.enums import ShoppingEventState as S
from railshop.schemas.workflow import Actor
from railshop.workflow.errors import ValidationError
from railshop.workflow.ledger import ledger, replay
from railshop.workflow.machine import shopping_event_service

# ── Helpers ──────────────────────────────────────────────────────────

ACTOR = Actor(id="ops-7", display_name="Ops Desk")


def _entry(from_state: S | None, to_state: S):
    return SimpleNamespace(
        id=uuid.uuid4(),
        from_state=from_state.value if from_state else None,
        to_state=to_state.value,
    )


# ── append / list_history ────────────────────────────────────────────


class TestAppend:
    @pytest.mark.asyncio()
    async def test_append_and_list(self, db):
        event = await shopping_event_service.create_event(db, "GATX12345", "UP001", ACTOR)
        await ledger.append(
            db,
            event.id,
            S.REQUESTED,
            S.ASSIGNED_TO_SHOP,
            ACTOR,
            event_version=2,
            notes="manual entry",
            side_effects={"marker": "x"},
        )

        history = await ledger.list_history(db, event.id)
        assert [h.to_state for h in history] == ["REQUESTED", "ASSIGNED_TO_SHOP"]
        assert history[1].changed_by_id == "ops-7"
        assert history[1].changed_by_name == "Ops Desk"
        assert history[1].side_effects == {"marker": "x"}

    @pytest.mark.asyncio()
    async def test_to_state_is_required(self, db):
        event = await shopping_event_service.create_event(db, "GATX12345", "UP001", ACTOR)
        with pytest.raises(ValidationError):
            await ledger.append(db, event.id, S.REQUESTED, None, ACTOR, event_version=2)

    @pytest.mark.asyncio()
    async def test_empty_side_effects_are_stored_as_null(self, db):
        event = await shopping_event_service.create_event(db, "GATX12345", "UP001", ACTOR)
        entry = await ledger.append(
            db, event.id, S.REQUESTED, S.ASSIGNED_TO_SHOP, ACTOR, event_version=2, side_effects={}
        )
        assert entry.side_effects is None

    @pytest.mark.asyncio()
    async def test_history_of_unknown_event_is_empty(self, db):
        assert await ledger.list_history(db, uuid.uuid4()) == []


# ── replay ───────────────────────────────────────────────────────────


class TestReplay:
    def test_empty_history(self):
        assert replay([]) is None
        assert replay([], initial=S.REQUESTED) == S.REQUESTED

    def test_folds_to_last_state(self):
        entries = [
            _entry(None, S.REQUESTED),
            _entry(S.REQUESTED, S.ASSIGNED_TO_SHOP),
            _entry(S.ASSIGNED_TO_SHOP, S.CANCELLED),
        ]
        assert replay(entries) == S.CANCELLED

    def test_gap_is_detected(self):
        entries = [_entry(None, S.REQUESTED), _entry(S.INBOUND, S.INSPECTION)]
        with pytest.raises(ValueError, match="History gap"):
            replay(entries)
