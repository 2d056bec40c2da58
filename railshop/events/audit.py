"""Audit log subscriber — persists every SystemEvent to the audit_log table.

Registered as a global subscriber (receives ALL events). The audit log is a
secondary projection for compliance and debugging; the state history ledger
remains the system of record.

Runs in its own session, after the emitting action has already returned. A
failed write is retried and finally logged by the event bus.
"""

from __future__ import annotations

import logging

from railshop.db.engine import async_session_factory
from railshop.models.audit import AuditLog
from railshop.schemas.events import SystemEvent

logger = logging.getLogger(__name__)


async def audit_on_event(event: SystemEvent) -> None:
    """Write a SystemEvent to the audit_log table."""
    async with async_session_factory() as db:
        audit = AuditLog(
            event_type=event.event_type.value,
            shopping_event_id=event.shopping_event_id,
            actor_id=event.actor_id,
            actor_role=event.actor_role,
            data={"event_id": str(event.id), "source_module": event.source_module, **event.data},
        )
        db.add(audit)
        await db.commit()
    logger.debug("Audit event persisted: %s (shopping_event=%s)", event.event_type.value, event.shopping_event_id)
