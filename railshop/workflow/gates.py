"""Gate predicates — business-rule checks a transition must pass.

A gate returns None when satisfied, or a human-readable description of the
unmet condition. Gates only read; they never mutate the event.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from railshop.config import settings
from railshop.estimates.decisions import decision_engine
from railshop.estimates.store import estimate_store
from railshop.models.enums import EstimateStatus, Responsibility
from railshop.models.shopping_event import ShoppingEvent

logger = logging.getLogger(__name__)

Gate = Callable[[AsyncSession, ShoppingEvent], Awaitable[str | None]]


async def require_approved_estimate(db: AsyncSession, event: ShoppingEvent) -> str | None:
    """The event's latest estimate submission must be approved."""
    latest = await estimate_store.get_latest_submission(db, event.id)
    if latest is None:
        return "no approved estimate (no estimate has been submitted)"
    if latest.status != EstimateStatus.APPROVED.value:
        return f"no approved estimate (latest estimate v{latest.version_number} is {latest.status})"
    return None


async def require_approved_final_estimate(db: AsyncSession, event: ShoppingEvent) -> str | None:
    """The latest estimate tagged as final must be approved."""
    latest_final = await estimate_store.get_latest_final_submission(db, event.id)
    if latest_final is None:
        return "no approved final estimate (no final estimate has been submitted)"
    if latest_final.status != EstimateStatus.APPROVED.value:
        return (
            f"no approved final estimate "
            f"(latest final estimate v{latest_final.version_number} is {latest_final.status})"
        )
    return None


async def require_responsibility_lock(db: AsyncSession, event: ShoppingEvent) -> str | None:
    """Every line of the approved final estimate must name who pays.

    Only enforced when `workflow.enforce_responsibility_lock` is enabled.
    """
    if not settings.workflow.enforce_responsibility_lock:
        return None

    latest_final = await estimate_store.get_latest_final_submission(db, event.id)
    if latest_final is None or latest_final.status != EstimateStatus.APPROVED.value:
        return "no approved final estimate to lock responsibility on"

    effective = await decision_engine.effective_decisions(db, latest_final.id)
    unresolved = [
        line.line_number
        for line in latest_final.lines
        if effective.get(line.id) is None or effective[line.id].responsibility == Responsibility.UNKNOWN
    ]
    if unresolved:
        return (
            f"{len(unresolved)} estimate line(s) have unresolved responsibility "
            f"(lessor vs customer): lines {', '.join(str(n) for n in unresolved)}"
        )
    return None
