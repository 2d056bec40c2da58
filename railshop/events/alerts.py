"""Alert engine — evaluates events against rules and pushes alerts to operators.

Decoupled from delivery via `set_send_fn()`. The alert engine defines rules
(which events trigger alerts, under what conditions) and formats the alert
messages. The actual delivery is delegated to whatever send function is
injected — typically the notification sink's `send_alert`.

Never raises — failures are logged but never propagate to the event system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from railshop.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

# Automated confidence at or above which a human override is worth a look
HIGH_CONFIDENCE_OVERRIDE = 0.90

SendFn = Callable[[str, str], Coroutine[Any, Any, None]]


@dataclass(frozen=True)
class AlertRule:
    """A single alert rule that maps event conditions to notifications."""

    name: str
    event_types: list[EventType]
    condition: Callable[[SystemEvent], bool]
    template: str  # format string using event.data keys
    level: str  # "info", "warning", "critical"


# ── Alert rules ──────────────────────────────────────────────────────

ALERT_RULES: list[AlertRule] = [
    AlertRule(
        name="High-confidence override",
        event_types=[EventType.DECISION_OVERRIDDEN],
        condition=lambda e: (e.data.get("automated_confidence") or 0.0) >= HIGH_CONFIDENCE_OVERRIDE,
        template=(
            "Reviewer overrode a high-confidence automated decision\n"
            "Line: {line_id}\n"
            "Automated: {automated_decision}/{automated_responsibility} ({automated_confidence:.0%})\n"
            "Human: {human_decision}/{human_responsibility}\n"
            "Event: {shopping_event_id}"
        ),
        level="warning",
    ),
    AlertRule(
        name="Shopping event cancelled",
        event_types=[EventType.SHOPPING_EVENT_CANCELLED],
        condition=lambda _: True,
        template=(
            "Shopping event {event_number} cancelled\n"
            "From state: {from_state}\n"
            "Reason: {reason}"
        ),
        level="info",
    ),
    AlertRule(
        name="Approved with rejected lines",
        event_types=[EventType.ESTIMATE_FINALIZED],
        condition=lambda e: (
            e.data.get("overall_decision") == "approved" and e.data.get("effectively_rejected_count", 0) > 0
        ),
        template=(
            "Estimate v{version_number} approved while {effectively_rejected_count} line(s) are rejected\n"
            "Submission: {submission_id}\n"
            "Event: {shopping_event_id}"
        ),
        level="warning",
    ),
    AlertRule(
        name="Notification delivery failed",
        event_types=[EventType.NOTIFICATION_FAILED],
        condition=lambda _: True,
        template=(
            "Notification webhook failed\n"
            "Event type: {failed_event_type}\n"
            "Error: {error}"
        ),
        level="critical",
    ),
    AlertRule(
        name="System error",
        event_types=[EventType.SYSTEM_ERROR],
        condition=lambda _: True,
        template=(
            "System error\n"
            "Error: {error}\n"
            "Module: {source_module}"
        ),
        level="critical",
    ),
]


class AlertEngine:
    """Evaluates events against alert rules and pushes matching alerts."""

    def __init__(self, rules: list[AlertRule] | None = None) -> None:
        self._rules = rules if rules is not None else ALERT_RULES
        self._send_fn: SendFn | None = None

    @property
    def watched_types(self) -> list[EventType]:
        """Event types this engine cares about — for targeted subscription."""
        types: set[EventType] = set()
        for rule in self._rules:
            types.update(rule.event_types)
        return list(types)

    def set_send_fn(self, fn: SendFn) -> None:
        """Inject the send function, called as ``fn(level, message)``."""
        self._send_fn = fn

    async def on_event(self, event: SystemEvent) -> None:
        """Evaluate event against all rules and push matching alerts.

        Never raises — failures are logged and swallowed.
        """
        if self._send_fn is None:
            return

        for rule in self._rules:
            if event.event_type not in rule.event_types:
                continue
            try:
                if not rule.condition(event):
                    continue
            except Exception:
                logger.exception("Alert rule condition failed: %s", rule.name)
                continue

            # Build template context from event data + top-level fields
            ctx: dict[str, Any] = {**event.data}
            if event.shopping_event_id is not None:
                ctx.setdefault("shopping_event_id", str(event.shopping_event_id)[:8])
            if event.source_module is not None:
                ctx.setdefault("source_module", event.source_module)

            try:
                message = rule.template.format(**ctx)
            except (KeyError, ValueError, TypeError):
                # Missing or mistyped keys, send what we can
                message = f"{rule.name}\n\n(partial data: {ctx})"

            await self._push_alert(rule, message)

    async def _push_alert(self, rule: AlertRule, message: str) -> None:
        if self._send_fn is None:
            return
        try:
            await self._send_fn(rule.level, message)
        except Exception:
            logger.exception("Failed to send alert: %s", rule.name)


# Module-level singleton
alert_engine = AlertEngine()
