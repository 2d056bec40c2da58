"""State history ledger — append-only record of every shopping event transition.

The ledger is the system of record, not a log: entries are written in the
same unit of work as the state change they describe and flushed with it, so a
failed ledger write fails the transition.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from railshop.models.enums import ShoppingEventState
from railshop.models.state_history import StateHistoryEntry
from railshop.schemas.workflow import Actor
from railshop.workflow.errors import ValidationError

logger = logging.getLogger(__name__)


class StateHistoryLedger:
    """Writes and reads shopping event state history."""

    async def append(
        self,
        db: AsyncSession,
        event_id: uuid.UUID,
        from_state: ShoppingEventState | None,
        to_state: ShoppingEventState | None,
        actor: Actor,
        *,
        event_version: int,
        notes: str | None = None,
        side_effects: dict[str, Any] | None = None,
    ) -> StateHistoryEntry:
        """Insert one history entry. No validation beyond a non-null `to_state`."""
        if to_state is None:
            msg = "State history entry requires a to_state"
            raise ValidationError(msg)

        entry = StateHistoryEntry(
            shopping_event_id=event_id,
            from_state=from_state.value if from_state is not None else None,
            to_state=to_state.value,
            changed_by_id=actor.id,
            changed_by_name=actor.display_name,
            event_version=event_version,
            notes=notes,
            side_effects=side_effects or None,
        )
        db.add(entry)
        await db.flush()

        logger.debug(
            "Ledger append: event=%s %s -> %s v%d",
            event_id,
            entry.from_state,
            entry.to_state,
            event_version,
        )
        return entry

    async def list_history(self, db: AsyncSession, event_id: uuid.UUID) -> list[StateHistoryEntry]:
        """Return every entry for an event, oldest first."""
        result = await db.execute(
            select(StateHistoryEntry)
            .where(StateHistoryEntry.shopping_event_id == event_id)
            .order_by(StateHistoryEntry.changed_at.asc(), StateHistoryEntry.event_version.asc())
        )
        return list(result.scalars().all())


def replay(
    entries: Iterable[StateHistoryEntry],
    initial: ShoppingEventState | None = None,
) -> ShoppingEventState | None:
    """Fold history entries into the state they lead to.

    Raises ValueError when an entry does not start where the previous one
    ended, i.e. the history has a gap.
    """
    state = initial
    for entry in entries:
        from_state = ShoppingEventState(entry.from_state) if entry.from_state is not None else None
        if from_state != state:
            msg = (
                f"History gap: entry {entry.id} starts at {entry.from_state} "
                f"but the replayed state is {state.value if state else None}"
            )
            raise ValueError(msg)
        state = ShoppingEventState(entry.to_state)
    return state


ledger = StateHistoryLedger()
