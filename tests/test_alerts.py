"""Tests for the AlertEngine rules and delivery isolation."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from railshop.events.alerts import ALERT_RULES, HIGH_CONFIDENCE_OVERRIDE, AlertEngine, AlertRule
from railshop.schemas.events import EventType, SystemEvent

# ── Helpers ──────────────────────────────────────────────────────────


def _engine() -> tuple[AlertEngine, AsyncMock]:
    send = AsyncMock()
    engine = AlertEngine()
    engine.set_send_fn(send)
    return engine, send


def _override(confidence: float | None) -> SystemEvent:
    return SystemEvent(
        event_type=EventType.DECISION_OVERRIDDEN,
        shopping_event_id=uuid.uuid4(),
        data={
            "line_id": "line-1",
            "automated_decision": "approve",
            "automated_responsibility": "lessor",
            "automated_confidence": confidence,
            "human_decision": "reject",
            "human_responsibility": "customer",
        },
    )


class TestRules:
    @pytest.mark.asyncio()
    async def test_high_confidence_override_alerts(self):
        engine, send = _engine()
        await engine.on_event(_override(0.95))

        send.assert_awaited_once()
        level, message = send.await_args.args
        assert level == "warning"
        assert "95%" in message
        assert "approve/lessor" in message

    @pytest.mark.asyncio()
    async def test_threshold_is_inclusive(self):
        engine, send = _engine()
        await engine.on_event(_override(HIGH_CONFIDENCE_OVERRIDE))
        send.assert_awaited_once()

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("confidence", [0.5, 0.89, None])
    async def test_low_confidence_override_is_quiet(self, confidence):
        engine, send = _engine()
        await engine.on_event(_override(confidence))
        send.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_cancellation_alert(self):
        engine, send = _engine()
        await engine.on_event(SystemEvent(
            event_type=EventType.SHOPPING_EVENT_CANCELLED,
            data={"event_number": "SE-20260301-00001", "from_state": "INBOUND", "reason": "car scrapped"},
        ))
        level, message = send.await_args.args
        assert level == "info"
        assert "SE-20260301-00001" in message
        assert "car scrapped" in message

    @pytest.mark.asyncio()
    async def test_approved_with_rejected_lines(self):
        engine, send = _engine()
        data = {
            "overall_decision": "approved",
            "effectively_rejected_count": 1,
            "version_number": 2,
            "submission_id": "sub-1",
        }
        event_id = uuid.uuid4()
        await engine.on_event(
            SystemEvent(event_type=EventType.ESTIMATE_FINALIZED, shopping_event_id=event_id, data=data)
        )
        await engine.on_event(SystemEvent(
            event_type=EventType.ESTIMATE_FINALIZED,
            shopping_event_id=event_id,
            data={**data, "effectively_rejected_count": 0},
        ))

        send.assert_awaited_once()
        assert "v2 approved while 1 line(s)" in send.await_args.args[1]

    @pytest.mark.asyncio()
    async def test_unwatched_event_is_ignored(self):
        engine, send = _engine()
        await engine.on_event(SystemEvent(event_type=EventType.SHOPPING_EVENT_CREATED))
        send.assert_not_awaited()

    def test_watched_types(self):
        engine = AlertEngine()
        assert set(engine.watched_types) == {t for rule in ALERT_RULES for t in rule.event_types}


class TestIsolation:
    @pytest.mark.asyncio()
    async def test_without_send_fn(self):
        await AlertEngine().on_event(_override(0.99))

    @pytest.mark.asyncio()
    async def test_send_failure_is_swallowed(self):
        engine, send = _engine()
        send.side_effect = RuntimeError("webhook down")
        await engine.on_event(_override(0.99))
        send.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_missing_template_keys_send_partial_message(self):
        engine, send = _engine()
        await engine.on_event(SystemEvent(event_type=EventType.SHOPPING_EVENT_CANCELLED, data={"reason": "x"}))
        assert "partial data" in send.await_args.args[1]

    @pytest.mark.asyncio()
    async def test_broken_condition_is_skipped(self):
        def boom(_event):
            raise KeyError("missing")

        rule = AlertRule(
            name="broken",
            event_types=[EventType.SYSTEM_ERROR],
            condition=boom,
            template="{error}",
            level="critical",
        )
        send = AsyncMock()
        engine = AlertEngine(rules=[rule])
        engine.set_send_fn(send)

        await engine.on_event(SystemEvent(event_type=EventType.SYSTEM_ERROR, data={"error": "x"}))
        send.assert_not_awaited()
