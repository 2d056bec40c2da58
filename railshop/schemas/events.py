"""SystemEvent schema — the event type that flows through the async event bus.

Every workflow action emits a SystemEvent after its primary write. Subscribers
(audit projection, notification sink, alert engine) consume these events
asynchronously; none of them can affect the outcome of the action itself.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Shopping event lifecycle
    SHOPPING_EVENT_CREATED = "shopping_event.created"
    SHOPPING_BATCH_CREATED = "shopping_batch.created"
    SHOPPING_EVENT_STATE_CHANGED = "shopping_event.state_changed"
    SHOPPING_EVENT_CANCELLED = "shopping_event.cancelled"
    TRANSITION_BLOCKED = "shopping_event.transition_blocked"

    # Estimates
    ESTIMATE_SUBMITTED = "estimate.submitted"
    DECISIONS_RECORDED = "estimate.decisions_recorded"
    DECISION_OVERRIDDEN = "estimate.decision_overridden"
    ESTIMATE_FINALIZED = "estimate.finalized"
    APPROVAL_PACKET_RELEASED = "estimate.packet_released"

    # Collaborators
    NOTIFICATION_FAILED = "notification.failed"
    FLEET_LOOKUP_FAILED = "fleet.lookup_failed"

    # System
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_ERROR = "system.error"


class SystemEvent(BaseModel):
    """Core event that flows through the workflow engine.

    Immutable once created. Consumed by:
    - audit_on_event → writes to audit_log table
    - NotificationSink → forwards to the notification webhook
    - AlertEngine → checks rules and triggers alerts
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Context (optional — not every event relates to a shopping event)
    shopping_event_id: uuid.UUID | None = None
    actor_id: str | None = None
    actor_role: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
