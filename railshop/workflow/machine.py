"""Shopping event state machine service.

Validates and applies state transitions, writing the state change and its
ledger entry in the caller's unit of work. Gates and adjacency come from the
transition table in `railshop.workflow.states`; this module never decides a
transition on its own.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from railshop.config import settings
from railshop.estimates.store import estimate_store
from railshop.events.bus import emit, emit_on_commit
from railshop.integrations.fleet.client import fleet_client
from railshop.models.base import utcnow
from railshop.models.batch import ShoppingBatch
from railshop.models.enums import EstimateStatus, ShoppingEventState
from railshop.models.estimate import EstimateSubmission
from railshop.models.shopping_event import ShoppingEvent
from railshop.models.state_history import StateHistoryEntry
from railshop.schemas.events import EventType, SystemEvent
from railshop.schemas.workflow import Actor, EstimateLineInput
from railshop.workflow.errors import (
    ConcurrentModification,
    GateNotSatisfied,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from railshop.workflow.ledger import ledger
from railshop.workflow.states import (
    FINAL_ESTIMATE_STATES,
    GATES,
    INITIAL_ESTIMATE_STATES,
    TRANSITIONS,
    allowed_next_states,
    is_terminal,
)

logger = logging.getLogger(__name__)

_SEQUENCE_WIDTH = 5
_BATCH_SEQUENCE_WIDTH = 4


class ShoppingEventService:
    """Creates shopping events and drives them through the workflow."""

    # ── Creation ─────────────────────────────────────────────────────

    async def create_event(
        self,
        db: AsyncSession,
        car_number: str,
        shop_code: str,
        actor: Actor,
        shopping_type_code: str | None = None,
        shopping_reason_code: str | None = None,
    ) -> ShoppingEvent:
        """Create a shopping event in REQUESTED with its initial ledger entry.

        Raises:
            NotFound: The fleet directory does not know the car or the shop.
            FleetDirectoryUnavailable: The fleet directory could not be reached.
        """
        car = await fleet_client.get_car(car_number)
        if car is None:
            raise NotFound("Car", car_number)
        shop = await fleet_client.get_shop(shop_code)
        if shop is None:
            raise NotFound("Shop", shop_code)

        return await self._insert_event(
            db,
            car.car_number,
            shop.shop_code,
            actor,
            shopping_type_code=shopping_type_code,
            shopping_reason_code=shopping_reason_code,
        )

    async def create_batch(
        self,
        db: AsyncSession,
        shop_code: str,
        car_numbers: Sequence[str],
        actor: Actor,
        shopping_type_code: str | None = None,
        shopping_reason_code: str | None = None,
        notes: str | None = None,
    ) -> tuple[ShoppingBatch, list[ShoppingEvent]]:
        """Send several cars to one shop: a batch row plus one REQUESTED event per car.

        The shop and every car are looked up before anything is written, so an
        unknown car leaves no batch and no events behind. The batch, the events
        and their initial ledger entries all land in the caller's unit of work.

        Raises:
            ValidationError: No cars, or a car listed more than once.
            NotFound: The fleet directory does not know the shop or one of the cars.
            FleetDirectoryUnavailable: The fleet directory could not be reached.
            ConcurrentModification: A concurrent create took a batch or event number.
        """
        if not car_numbers:
            msg = "A batch needs at least one car"
            raise ValidationError(msg)
        repeated = sorted({c for c in car_numbers if car_numbers.count(c) > 1})
        if repeated:
            msg = f"Cars listed more than once: {', '.join(repeated)}"
            raise ValidationError(msg, car_numbers=repeated)

        shop = await fleet_client.get_shop(shop_code)
        if shop is None:
            raise NotFound("Shop", shop_code)
        cars = []
        for car_number in car_numbers:
            car = await fleet_client.get_car(car_number)
            if car is None:
                raise NotFound("Car", car_number)
            cars.append(car)

        batch_number = await self._next_batch_number(db)
        batch = ShoppingBatch(
            id=uuid.uuid4(),
            batch_number=batch_number,
            shop_code=shop.shop_code,
            shopping_type_code=shopping_type_code,
            shopping_reason_code=shopping_reason_code,
            notes=notes,
            created_by_id=actor.id,
        )
        db.add(batch)
        await _flush_numbered(db, "Shopping batch", batch_number, "batch_number")

        events = [
            await self._insert_event(
                db,
                car.car_number,
                shop.shop_code,
                actor,
                shopping_type_code=shopping_type_code,
                shopping_reason_code=shopping_reason_code,
                batch=batch,
            )
            for car in cars
        ]

        logger.info(
            "Shopping batch created: %s shop=%s cars=%d by=%s", batch_number, batch.shop_code, len(events), actor.id
        )

        emit_on_commit(db, SystemEvent(
            event_type=EventType.SHOPPING_BATCH_CREATED,
            actor_id=actor.id,
            actor_role=actor.role,
            data={
                "batch_id": str(batch.id),
                "batch_number": batch_number,
                "shop_code": batch.shop_code,
                "event_numbers": [e.event_number for e in events],
            },
            source_module="workflow.machine",
        ))
        return batch, events

    # ── Transitions ──────────────────────────────────────────────────

    async def request_transition(
        self,
        db: AsyncSession,
        event_id: uuid.UUID,
        to_state: ShoppingEventState | str,
        actor: Actor,
        notes: str | None = None,
        data: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> ShoppingEvent:
        """Move an event to `to_state` if the table and its gate allow it.

        Checks run in a fixed order: existence, target validity, expected
        version, terminal state, gate, adjacency.

        Raises:
            NotFound: Unknown event.
            ValidationError: Unknown target state, or cancellation without a reason.
            ConcurrentModification: `expected_version` is stale, or another
                writer updated the event before this write.
            InvalidTransition: Terminal event, or target not adjacent.
            GateNotSatisfied: Target's business precondition is unmet.
        """
        data = data or {}
        event = await self.get_event(db, event_id)
        target = _parse_state(to_state)
        self._check_version(event, expected_version)

        current = event.current_state
        if is_terminal(current):
            logger.info(
                "Transition refused: %s is terminal (%s -> %s)", event.event_number, current.value, target.value
            )
            raise InvalidTransition(current.value, target.value, reason="event is in a terminal state")

        gate = TRANSITIONS[current].get(target, GATES.get(target))
        if gate is not None:
            condition = await gate(db, event)
            if condition is not None:
                logger.info(
                    "Transition blocked: %s %s -> %s: %s",
                    event.event_number,
                    current.value,
                    target.value,
                    condition,
                )
                await emit(SystemEvent(
                    event_type=EventType.TRANSITION_BLOCKED,
                    shopping_event_id=event.id,
                    actor_id=actor.id,
                    actor_role=actor.role,
                    data={"from_state": current.value, "to_state": target.value, "condition": condition},
                    source_module="workflow.machine",
                ))
                raise GateNotSatisfied(target.value, condition)

        if target not in TRANSITIONS[current]:
            logger.info("Transition refused: %s %s -> %s not allowed", event.event_number, current.value, target.value)
            raise InvalidTransition(current.value, target.value)

        if target == ShoppingEventState.CANCELLED:
            reason = notes or data.get("reason")
            return await self._cancel(db, event, actor, reason)

        return await self._apply(db, event, target, actor, notes=notes, data=data)

    async def cancel_event(
        self,
        db: AsyncSession,
        event_id: uuid.UUID,
        actor: Actor,
        reason: str | None,
        expected_version: int | None = None,
    ) -> ShoppingEvent:
        """Cancel a non-terminal event. Cancelling twice raises InvalidTransition."""
        event = await self.get_event(db, event_id)
        self._check_version(event, expected_version)
        if is_terminal(event.current_state):
            logger.info("Cancel refused: %s is already %s", event.event_number, event.state)
            raise InvalidTransition(
                event.state, ShoppingEventState.CANCELLED.value, reason="event is in a terminal state"
            )
        return await self._cancel(db, event, actor, reason)

    # ── Estimates (workflow-coupled) ─────────────────────────────────

    async def submit_estimate(
        self,
        db: AsyncSession,
        event_id: uuid.UUID,
        lines: Sequence[EstimateLineInput],
        actor: Actor,
        notes: str | None = None,
    ) -> EstimateSubmission:
        """Submit an estimate if the event's state accepts one.

        Initial-round states accept a regular estimate; post-QA states accept
        a final estimate (tagged ``is_final``).

        Raises:
            NotFound: Unknown event.
            GateNotSatisfied: The event is not in an estimate-accepting state.
            ValidationError: Empty estimate or negative amounts.
        """
        event = await self.get_event(db, event_id)
        current = event.current_state
        if current in INITIAL_ESTIMATE_STATES:
            is_final = False
        elif current in FINAL_ESTIMATE_STATES:
            is_final = True
        else:
            raise GateNotSatisfied(
                "estimate submission",
                f"estimates are not accepted while the event is {current.value}",
            )

        submission = await estimate_store.submit_estimate(
            db,
            event.id,
            lines,
            submitted_by=actor.id,
            notes=notes,
            is_final=is_final,
        )

        emit_on_commit(db, SystemEvent(
            event_type=EventType.ESTIMATE_SUBMITTED,
            shopping_event_id=event.id,
            actor_id=actor.id,
            actor_role=actor.role,
            data={
                "submission_id": str(submission.id),
                "version_number": submission.version_number,
                "is_final": is_final,
                "line_count": len(lines),
                "total_cost": str(submission.total_cost),
            },
            source_module="workflow.machine",
        ))
        return submission

    # ── Reads ────────────────────────────────────────────────────────

    async def get_event(self, db: AsyncSession, event_id: uuid.UUID) -> ShoppingEvent:
        event = await db.get(ShoppingEvent, event_id)
        if event is None:
            raise NotFound("Shopping event", event_id)
        return event

    async def get_batch(self, db: AsyncSession, batch_id: uuid.UUID) -> ShoppingBatch:
        batch = await db.get(ShoppingBatch, batch_id)
        if batch is None:
            raise NotFound("Shopping batch", batch_id)
        return batch

    async def get_event_by_number(self, db: AsyncSession, event_number: str) -> ShoppingEvent:
        result = await db.execute(select(ShoppingEvent).where(ShoppingEvent.event_number == event_number))
        event = result.scalar_one_or_none()
        if event is None:
            raise NotFound("Shopping event", event_number)
        return event

    async def list_events(
        self,
        db: AsyncSession,
        state: ShoppingEventState | str | None = None,
        shop_code: str | None = None,
        car_number: str | None = None,
        batch_id: uuid.UUID | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ShoppingEvent]:
        """Newest events first, optionally filtered by state, shop, car and batch."""
        query = select(ShoppingEvent)
        if state is not None:
            query = query.where(ShoppingEvent.state == _parse_state(state).value)
        if shop_code is not None:
            query = query.where(ShoppingEvent.shop_code == shop_code)
        if car_number is not None:
            query = query.where(ShoppingEvent.car_number == car_number)
        if batch_id is not None:
            query = query.where(ShoppingEvent.batch_id == batch_id)
        query = (
            query.order_by(ShoppingEvent.created_at.desc(), ShoppingEvent.event_number.desc())
            .limit(limit or settings.workflow.list_page_size)
            .offset(offset)
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_history(self, db: AsyncSession, event_id: uuid.UUID) -> list[StateHistoryEntry]:
        await self.get_event(db, event_id)
        return await ledger.list_history(db, event_id)

    def allowed_transitions(self, event: ShoppingEvent) -> list[ShoppingEventState]:
        """States structurally reachable from the event's current state (gates not evaluated)."""
        return allowed_next_states(event.current_state)

    # ── Internals ────────────────────────────────────────────────────

    async def _cancel(
        self,
        db: AsyncSession,
        event: ShoppingEvent,
        actor: Actor,
        reason: Any,
    ) -> ShoppingEvent:
        if reason is not None and not isinstance(reason, str):
            msg = f"Cancellation reason must be text (got {type(reason).__name__})"
            raise ValidationError(msg, event_id=event.id)
        if not reason or not reason.strip():
            msg = "Cancellation requires a reason"
            raise ValidationError(msg, event_id=event.id)

        from_state = event.current_state
        event.cancelled_at = utcnow()
        event.cancelled_by_id = actor.id
        event.cancellation_reason = reason.strip()
        await self._apply(db, event, ShoppingEventState.CANCELLED, actor, notes=event.cancellation_reason)

        emit_on_commit(db, SystemEvent(
            event_type=EventType.SHOPPING_EVENT_CANCELLED,
            shopping_event_id=event.id,
            actor_id=actor.id,
            actor_role=actor.role,
            data={
                "event_number": event.event_number,
                "from_state": from_state.value,
                "reason": event.cancellation_reason,
            },
            source_module="workflow.machine",
        ))
        return event

    async def _apply(
        self,
        db: AsyncSession,
        event: ShoppingEvent,
        target: ShoppingEventState,
        actor: Actor,
        notes: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> ShoppingEvent:
        """Write the state change and its ledger entry in the current unit of work."""
        from_state = event.current_state
        # A failed flush expires `event`; log and raise from these copies only
        event_id, event_number, read_version = event.id, event.event_number, event.version

        side_effects: dict[str, Any] = {}
        if target == ShoppingEventState.ESTIMATE_UNDER_REVIEW:
            latest = await estimate_store.get_latest_submission(db, event.id)
            if latest is not None and latest.status == EstimateStatus.SUBMITTED.value:
                latest.status = EstimateStatus.UNDER_REVIEW.value
                side_effects["estimate_under_review"] = str(latest.id)

        event.state = target.value
        event.updated_by_id = actor.id
        try:
            await db.flush()
        except StaleDataError as exc:
            logger.warning(
                "Concurrent modification: %s read at v%d, %s -> %s",
                event_number,
                read_version,
                from_state.value,
                target.value,
            )
            raise ConcurrentModification(event_id) from exc

        await ledger.append(
            db,
            event.id,
            from_state,
            target,
            actor,
            event_version=event.version,
            notes=notes,
            side_effects=side_effects,
        )

        logger.info(
            "State transition: %s %s -> %s v%d by=%s",
            event.event_number,
            from_state.value,
            target.value,
            event.version,
            actor.id,
        )

        emit_on_commit(db, SystemEvent(
            event_type=EventType.SHOPPING_EVENT_STATE_CHANGED,
            shopping_event_id=event.id,
            actor_id=actor.id,
            actor_role=actor.role,
            data={
                **(data or {}),
                "event_number": event.event_number,
                "from_state": from_state.value,
                "to_state": target.value,
                "version": event.version,
                "notes": notes,
            },
            source_module="workflow.machine",
        ))
        return event

    async def _insert_event(
        self,
        db: AsyncSession,
        car_number: str,
        shop_code: str,
        actor: Actor,
        shopping_type_code: str | None = None,
        shopping_reason_code: str | None = None,
        batch: ShoppingBatch | None = None,
    ) -> ShoppingEvent:
        """Insert a REQUESTED event and its initial ledger entry (references already checked)."""
        event_number = await self._next_event_number(db)
        event = ShoppingEvent(
            id=uuid.uuid4(),
            event_number=event_number,
            car_number=car_number,
            shop_code=shop_code,
            batch_id=batch.id if batch is not None else None,
            shopping_type_code=shopping_type_code,
            shopping_reason_code=shopping_reason_code,
            state=ShoppingEventState.REQUESTED.value,
            created_by_id=actor.id,
        )
        db.add(event)
        await _flush_numbered(db, "Shopping event", event_number, "event_number")

        await ledger.append(
            db,
            event.id,
            None,
            ShoppingEventState.REQUESTED,
            actor,
            event_version=event.version,
            notes=f"Shopping event created in batch {batch.batch_number}" if batch else "Shopping event created",
        )

        logger.info(
            "Shopping event created: %s car=%s shop=%s by=%s",
            event.event_number,
            event.car_number,
            event.shop_code,
            actor.id,
        )

        data = {
            "event_number": event.event_number,
            "car_number": event.car_number,
            "shop_code": event.shop_code,
        }
        if batch is not None:
            data["batch_id"] = str(batch.id)
        emit_on_commit(db, SystemEvent(
            event_type=EventType.SHOPPING_EVENT_CREATED,
            shopping_event_id=event.id,
            actor_id=actor.id,
            actor_role=actor.role,
            data=data,
            source_module="workflow.machine",
        ))
        return event

    @staticmethod
    def _check_version(event: ShoppingEvent, expected_version: int | None) -> None:
        if expected_version is not None and expected_version != event.version:
            raise ConcurrentModification(event.id, expected_version=expected_version, actual_version=event.version)

    async def _next_event_number(self, db: AsyncSession, today: datetime | None = None) -> str:
        """SE-YYYYMMDD-NNNNN, sequence restarting every day."""
        day = (today or utcnow()).strftime("%Y%m%d")
        prefix = f"{settings.workflow.event_number_prefix}-{day}-"
        result = await db.execute(
            select(func.max(ShoppingEvent.event_number)).where(ShoppingEvent.event_number.like(f"{prefix}%"))
        )
        last = result.scalar_one_or_none()
        sequence = int(last.rsplit("-", 1)[1]) + 1 if last else 1
        return f"{prefix}{sequence:0{_SEQUENCE_WIDTH}d}"

    async def _next_batch_number(self, db: AsyncSession, today: datetime | None = None) -> str:
        """BATCH-YYYYMMDD-NNNN, sequence restarting every day."""
        day = (today or utcnow()).strftime("%Y%m%d")
        prefix = f"{settings.workflow.batch_number_prefix}-{day}-"
        result = await db.execute(
            select(func.max(ShoppingBatch.batch_number)).where(ShoppingBatch.batch_number.like(f"{prefix}%"))
        )
        last = result.scalar_one_or_none()
        sequence = int(last.rsplit("-", 1)[1]) + 1 if last else 1
        return f"{prefix}{sequence:0{_BATCH_SEQUENCE_WIDTH}d}"


async def _flush_numbered(db: AsyncSession, entity: str, number: str, column: str) -> None:
    """Flush a row carrying a freshly allocated unique number.

    Numbers are allocated by reading the current maximum, so two concurrent
    creates can pick the same one; the loser gets ConcurrentModification.
    """
    try:
        await db.flush()
    except IntegrityError as exc:
        if column not in str(exc.orig):
            raise
        logger.warning("Concurrent create: %s %s already taken", entity, number)
        raise ConcurrentModification(number, entity=entity, reason=f"{column} taken by a concurrent create") from exc


def _parse_state(value: ShoppingEventState | str) -> ShoppingEventState:
    if isinstance(value, ShoppingEventState):
        return value
    try:
        return ShoppingEventState(value)
    except ValueError as exc:
        msg = f"Unknown shopping event state: {value!r}"
        raise ValidationError(msg, state=value) from exc


shopping_event_service = ShoppingEventService()
