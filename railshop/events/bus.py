"""Event emitter and subscriber system.

Async pub/sub for SystemEvents. Every workflow action emits events that are
consumed by the audit projection, the notification sink and the AlertEngine.
These are best-effort side effects: a subscriber failure is retried, then
logged (and handed to the subscriber's `on_failure` callback, if any), and
never reaches the caller whose action emitted the event.

Events describing a database change are published with `emit_on_commit`: they
wait in the session until its transaction commits and are dropped on rollback.

Usage:
    # Emit an event from anywhere:
    from railshop.events.bus import emit

    await emit(SystemEvent(
        event_type=EventType.SHOPPING_EVENT_CREATED,
        shopping_event_id=event.id,
        data={"car_number": event.car_number},
    ))

    # Register a subscriber at startup:
    from railshop.events.bus import subscribe

    subscribe(my_handler)  # async def my_handler(event: SystemEvent) -> None

    # Publish only if the unit of work commits:
    from railshop.events.bus import emit_on_commit

    emit_on_commit(db, SystemEvent(...))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from sqlalchemy import event as sa_event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

from railshop.config import settings
from railshop.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

# Type alias for event handler functions
EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]
# Called once with the event and the last error when a handler exhausts its retries
FailureHandler = Callable[[SystemEvent, BaseException], Coroutine[Any, Any, None]]

# session.info key holding events that wait for the commit
_PENDING_KEY = "railshop.pending_events"

# ── Internal state ───────────────────────────────────────────────────

_subscribers: list[EventHandler] = []
_type_subscribers: dict[EventType, list[EventHandler]] = {}
_failure_handlers: dict[EventHandler, FailureHandler] = {}
_queue: asyncio.Queue[SystemEvent] | None = None
_worker_task: asyncio.Task[None] | None = None


# ── Public API ───────────────────────────────────────────────────────


def subscribe(
    handler: EventHandler,
    event_types: list[EventType] | None = None,
    on_failure: FailureHandler | None = None,
) -> None:
    """Register an event handler.

    Args:
        handler: Async function that accepts a SystemEvent.
        event_types: If provided, handler only receives these event types.
                     If None, handler receives ALL events.
        on_failure: Awaited with the event and the last error once every
                    attempt of `handler` has failed.
    """
    if event_types is None:
        _subscribers.append(handler)
        logger.info("Registered global event subscriber: %s", _handler_name(handler))
    else:
        for et in event_types:
            _type_subscribers.setdefault(et, []).append(handler)
        logger.info(
            "Registered event subscriber %s for types: %s",
            _handler_name(handler),
            [t.value for t in event_types],
        )
    if on_failure is not None:
        _failure_handlers[handler] = on_failure


def unsubscribe(handler: EventHandler) -> None:
    """Remove a previously registered handler."""
    if handler in _subscribers:
        _subscribers.remove(handler)
    for handlers in _type_subscribers.values():
        if handler in handlers:
            handlers.remove(handler)
    _failure_handlers.pop(handler, None)


async def emit(event: SystemEvent) -> None:
    """Publish a SystemEvent to all subscribers.

    Events are placed on an async queue and processed by a background worker
    so the emitter is never blocked by slow subscribers.
    """
    _enqueue(event)


def emit_on_commit(db: AsyncSession, event: SystemEvent) -> None:
    """Publish `event` once `db` commits its current transaction.

    A rollback discards it, so subscribers never hear about a change that was
    not persisted.
    """
    db.info.setdefault(_PENDING_KEY, []).append(event)


async def emit_nowait(event: SystemEvent) -> None:
    """Dispatch directly without queueing, waiting for every subscriber.

    Use sparingly; prefer `emit()` for production code.
    """
    await _dispatch(event)


# ── Background worker ────────────────────────────────────────────────


def _enqueue(event: SystemEvent) -> None:
    global _queue
    if _queue is None:
        _queue = asyncio.Queue()
        _ensure_worker()

    _queue.put_nowait(event)
    logger.debug("Event emitted: %s (shopping_event=%s)", event.event_type.value, event.shopping_event_id)


@sa_event.listens_for(Session, "after_commit")
def _publish_pending(session: Session) -> None:
    for event in session.info.pop(_PENDING_KEY, []):
        _enqueue(event)


@sa_event.listens_for(Session, "after_soft_rollback")
def _discard_pending(session: Session, previous_transaction: SessionTransaction) -> None:
    if previous_transaction.nested:
        return
    dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        logger.info("Discarded %d events from a rolled-back transaction", len(dropped))


def _ensure_worker() -> None:
    """Start the background event worker if not already running."""
    global _worker_task
    if _worker_task is None or _worker_task.done():
        _worker_task = asyncio.create_task(_event_worker())
        logger.info("Event worker started")


async def _event_worker() -> None:
    """Background task that drains the event queue and dispatches to subscribers."""
    global _queue
    if _queue is None:
        return

    while True:
        try:
            event = await _queue.get()
        except asyncio.CancelledError:
            logger.info("Event worker shutting down")
            break
        try:
            await _dispatch(event)
        except Exception:
            logger.exception("Error in event worker")
        finally:
            _queue.task_done()


async def _dispatch(event: SystemEvent) -> None:
    """Dispatch a single event to all matching subscribers."""
    handlers: list[EventHandler] = list(_subscribers)

    # Add type-specific subscribers
    if event.event_type in _type_subscribers:
        handlers.extend(_type_subscribers[event.event_type])

    if not handlers:
        return

    # Run all handlers concurrently; isolate failures
    results = await asyncio.gather(
        *[_safe_call(handler, event) for handler in handlers],
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, Exception):
            logger.error("Event handler failed for %s: %s", event.event_type.value, result)


async def _safe_call(handler: EventHandler, event: SystemEvent) -> None:
    """Call a handler with a timeout and bounded retries.

    The last failure is re-raised so `_dispatch` can report it; it never
    leaves the dispatcher.
    """
    retries = max(settings.events.handler_retries, 0)
    for attempt in range(retries + 1):
        try:
            await asyncio.wait_for(handler(event), timeout=settings.events.handler_timeout_seconds)
            return
        except Exception as exc:
            if attempt < retries:
                logger.warning(
                    "Handler %s failed for event %s (attempt %d/%d): %r",
                    _handler_name(handler),
                    event.event_type.value,
                    attempt + 1,
                    retries + 1,
                    exc,
                )
                await asyncio.sleep(settings.events.retry_backoff_seconds * (attempt + 1))
                continue
            logger.exception(
                "Handler %s failed for event %s after %d attempts",
                _handler_name(handler),
                event.event_type.value,
                retries + 1,
            )
            await _report_failure(handler, event, exc)
            raise


async def _report_failure(handler: EventHandler, event: SystemEvent, exc: BaseException) -> None:
    on_failure = _failure_handlers.get(handler)
    if on_failure is None:
        return
    try:
        await on_failure(event, exc)
    except Exception:
        logger.exception("Failure callback of %s raised", _handler_name(handler))


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


# ── Lifecycle ────────────────────────────────────────────────────────


async def start_event_system() -> None:
    """Initialize the event system. Call during FastAPI lifespan startup."""
    global _queue
    _queue = asyncio.Queue()
    _ensure_worker()
    logger.info(
        "Event system started with %d global + %d typed subscribers",
        len(_subscribers),
        sum(len(v) for v in _type_subscribers.values()),
    )


async def stop_event_system() -> None:
    """Gracefully stop the event system. Call during FastAPI lifespan shutdown."""
    global _worker_task, _queue

    if _queue is not None and _worker_task is not None and not _worker_task.done():
        # Drain remaining events
        await _queue.join()

    if _worker_task is not None and not _worker_task.done():
        _worker_task.cancel()
        try:
            await _worker_task
        except asyncio.CancelledError:
            pass

    _worker_task = None
    _queue = None
    logger.info("Event system stopped")
