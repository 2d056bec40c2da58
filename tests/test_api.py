"""HTTP API tests: routing, request bodies, and domain error → status mapping.

The app runs without its lifespan (no PostgreSQL, no bus worker); sessions
come from a SQLite file and the services' `emit` is recorded by conftest.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from starlette.requests import Request

from railshop.api.routes import _unhandled_error_handler
from railshop.db.engine import get_session
from railshop.integrations.fleet.client import FleetDirectoryUnavailable
from railshop.main import app
from railshop.models.base import Base
from railshop.schemas.events import EventType

# ── Helpers ──────────────────────────────────────────────────────────

REVIEWER = {"id": "rev-42", "display_name": "Dana Reviewer", "role": "reviewer"}
SHOP = {"id": "shop-up001", "role": "shop"}

LINES = [
    {"job_code": "WHL-01", "labor_hours": "8", "material_cost": "500", "total_cost": "1500"},
    {"job_code": "BRK-07", "labor_hours": "4", "material_cost": "200", "total_cost": "800"},
]


@pytest.fixture()
def client(tmp_path):
    path = tmp_path / "api.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    # NullPool: the test client runs requests on its own event loop
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = _session
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(client: TestClient, car: str = "GATX12345") -> dict:
    resp = client.post("/shopping-events", json={"car_number": car, "shop_code": "UP001", "actor": REVIEWER})
    assert resp.status_code == 201, resp.text
    return resp.json()


def _transition(client: TestClient, event_id: str, to_state: str, **extra):
    return client.post(
        f"/shopping-events/{event_id}/transitions",
        json={"to_state": to_state, "actor": REVIEWER, **extra},
    )


def _advance(client: TestClient, event_id: str, *states: str) -> dict:
    body = {}
    for state in states:
        resp = _transition(client, event_id, state)
        assert resp.status_code == 200, resp.text
        body = resp.json()
    return body


# ── Shopping events ──────────────────────────────────────────────────


class TestShoppingEvents:
    def test_create_and_read(self, client):
        created = _create(client)
        assert created["state"] == "REQUESTED"
        assert created["version"] == 1

        fetched = client.get(f"/shopping-events/{created['id']}").json()
        assert fetched["event_number"] == created["event_number"]

        listed = client.get("/shopping-events", params={"state": "REQUESTED"}).json()
        assert [e["id"] for e in listed] == [created["id"]]

    def test_transition_and_history(self, client):
        event = _create(client)
        body = _advance(client, event["id"], "ASSIGNED_TO_SHOP", "INBOUND")
        assert body["state"] == "INBOUND"
        assert body["version"] == 3

        history = client.get(f"/shopping-events/{event['id']}/history").json()
        assert [h["to_state"] for h in history] == ["REQUESTED", "ASSIGNED_TO_SHOP", "INBOUND"]

        allowed = client.get(f"/shopping-events/{event['id']}/allowed-transitions").json()
        assert set(allowed) == {"INSPECTION", "CANCELLED"}

    def test_invalid_transition_is_409(self, client):
        event = _create(client)
        resp = _transition(client, event["id"], "IN_REPAIR")
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_transition"

    def test_gate_blocked_is_409(self, client):
        event = _create(client)
        resp = _transition(client, event["id"], "WORK_AUTHORIZED")
        assert resp.status_code == 409
        assert resp.json()["error"] == "gate_not_satisfied"

    def test_stale_version_is_409_and_retryable(self, client):
        event = _create(client)
        resp = _transition(client, event["id"], "ASSIGNED_TO_SHOP", expected_version=7)
        assert resp.status_code == 409
        assert resp.json()["error"] == "concurrent_modification"
        assert resp.json()["retryable"] is True

    def test_unknown_state_is_422(self, client):
        event = _create(client)
        resp = _transition(client, event["id"], "TELEPORTED")
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

    def test_unknown_event_is_404(self, client):
        resp = client.get(f"/shopping-events/{uuid.uuid4()}")
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_failed_request_is_rolled_back(self, client):
        event = _create(client)
        _transition(client, event["id"], "IN_REPAIR")
        assert client.get(f"/shopping-events/{event['id']}").json()["version"] == 1

    def test_cancel(self, client):
        event = _create(client)
        resp = client.post(
            f"/shopping-events/{event['id']}/cancel",
            json={"actor": REVIEWER, "reason": "car scrapped"},
        )
        assert resp.status_code == 200
        assert resp.json()["state"] == "CANCELLED"
        assert resp.json()["cancellation_reason"] == "car scrapped"

        again = client.post(f"/shopping-events/{event['id']}/cancel", json={"actor": REVIEWER, "reason": "again"})
        assert again.status_code == 409

    def test_fleet_directory_down_is_503(self, client):
        fleet = AsyncMock(side_effect=FleetDirectoryUnavailable("car GATX12345", "timeout"))
        with patch("railshop.workflow.machine.fleet_client.get_car", fleet):
            resp = client.post(
                "/shopping-events",
                json={"car_number": "GATX12345", "shop_code": "UP001", "actor": REVIEWER},
            )
        assert resp.status_code == 503
        assert resp.json()["retryable"] is True

    def test_malformed_body_is_422(self, client):
        resp = client.post("/shopping-events", json={"car_number": "GATX12345"})
        assert resp.status_code == 422

    def test_non_text_cancellation_reason_is_422(self, client):
        event = _create(client)
        resp = _transition(client, event["id"], "CANCELLED", data={"reason": 42})
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"


class TestShoppingBatches:
    def test_create_list_and_read(self, client, emitted):
        resp = client.post(
            "/shopping-events/batch",
            json={"shop_code": "UP001", "car_numbers": ["GATX12345", "UTLX900100"], "actor": REVIEWER},
        )
        assert resp.status_code == 201, resp.text
        body = resp.json()
        batch_id = body["batch"]["id"]
        assert [e["car_number"] for e in body["events"]] == ["GATX12345", "UTLX900100"]
        assert {e["batch_id"] for e in body["events"]} == {batch_id}
        assert EventType.SHOPPING_BATCH_CREATED in [e.event_type for e in emitted]

        _create(client, car="TILX300200")
        listed = client.get("/shopping-events", params={"batch_id": batch_id}).json()
        assert sorted(e["car_number"] for e in listed) == ["GATX12345", "UTLX900100"]

        fetched = client.get(f"/shopping-batches/{batch_id}").json()
        assert fetched["batch_number"] == body["batch"]["batch_number"]

    def test_unknown_batch_is_404(self, client):
        resp = client.get(f"/shopping-batches/{uuid.uuid4()}")
        assert resp.status_code == 404

    @pytest.mark.parametrize("cars", [[], ["GATX12345", "GATX12345"]])
    def test_bad_car_list_is_422_and_writes_nothing(self, client, cars):
        resp = client.post(
            "/shopping-events/batch",
            json={"shop_code": "UP001", "car_numbers": cars, "actor": REVIEWER},
        )
        assert resp.status_code == 422
        assert client.get("/shopping-events").json() == []


# ── Estimates, decisions, approval ───────────────────────────────────


class TestEstimateFlow:
    def test_review_round_end_to_end(self, client):
        event = _create(client)
        _advance(client, event["id"], "ASSIGNED_TO_SHOP", "INBOUND", "INSPECTION")

        resp = client.post(f"/shopping-events/{event['id']}/estimates", json={"actor": SHOP, "lines": LINES})
        assert resp.status_code == 201, resp.text
        submission = resp.json()
        assert submission["version_number"] == 1
        assert Decimal(submission["total_cost"]) == Decimal("2300")
        line_ids = [ln["id"] for ln in submission["lines"]]

        _advance(client, event["id"], "ESTIMATE_SUBMITTED", "ESTIMATE_UNDER_REVIEW")
        assert client.get(f"/estimates/{submission['id']}").json()["status"] == "under_review"

        resp = client.post(
            f"/estimates/{submission['id']}/decisions",
            json={
                "actor": REVIEWER,
                "decisions": [
                    {"line_id": line_ids[0], "source": "automated", "verdict": "approve", "confidence": 0.92},
                    {"line_id": line_ids[0], "source": "human", "verdict": "approve"},
                    {"line_id": line_ids[1], "source": "human", "verdict": "approve"},
                ],
            },
        )
        assert resp.status_code == 201, resp.text
        assert [d["is_override"] for d in resp.json()] == [False, False, False]

        summary = client.get(f"/estimates/{submission['id']}/decisions").json()
        assert [s["effective"]["source"] for s in summary] == ["human", "human"]
        assert len(client.get(f"/estimate-lines/{line_ids[0]}/decisions").json()) == 2

        resp = client.post(
            f"/estimates/{submission['id']}/approval",
            json={"actor": REVIEWER, "overall_decision": "approved", "approved_line_ids": line_ids},
        )
        assert resp.status_code == 201, resp.text
        packet = resp.json()
        assert packet["approved_line_ids"] == line_ids

        released = client.post(f"/approval-packets/{packet['id']}/release", json={"actor": SHOP})
        assert released.status_code == 200
        assert released.json()["released_to_shop_at"] is not None
        assert client.post(f"/approval-packets/{packet['id']}/release", json={"actor": SHOP}).status_code == 409

        body = _advance(client, event["id"], "ESTIMATE_APPROVED", "WORK_AUTHORIZED")
        assert body["state"] == "WORK_AUTHORIZED"

        versions = client.get(f"/shopping-events/{event['id']}/estimates").json()
        assert [v["version_number"] for v in versions] == [1]
        assert client.get(f"/approval-packets/{packet['id']}").json()["overall_decision"] == "approved"

    def test_estimate_outside_window_is_409(self, client):
        event = _create(client)
        resp = client.post(f"/shopping-events/{event['id']}/estimates", json={"actor": SHOP, "lines": LINES})
        assert resp.status_code == 409

    def test_invalid_decision_payload_is_422(self, client):
        event = _create(client)
        _advance(client, event["id"], "ASSIGNED_TO_SHOP", "INBOUND", "INSPECTION")
        submission = client.post(
            f"/shopping-events/{event['id']}/estimates", json={"actor": SHOP, "lines": LINES}
        ).json()

        resp = client.post(
            f"/estimates/{submission['id']}/decisions",
            json={
                "actor": REVIEWER,
                "decisions": [{"line_id": submission["lines"][0]["id"], "source": "automated", "verdict": "approve"}],
            },
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

    def test_negative_amount_is_422(self, client):
        event = _create(client)
        _advance(client, event["id"], "ASSIGNED_TO_SHOP", "INBOUND", "INSPECTION")
        resp = client.post(
            f"/shopping-events/{event['id']}/estimates",
            json={"actor": SHOP, "lines": [{**LINES[0], "material_cost": "-1"}]},
        )
        assert resp.status_code == 422

    def test_unknown_packet_is_404(self, client):
        assert client.get(f"/approval-packets/{uuid.uuid4()}").status_code == 404


# ── Unhandled errors ─────────────────────────────────────────────────


class TestUnhandledErrors:
    @pytest.mark.asyncio()
    async def test_unexpected_exception_becomes_500_and_system_error(self, emitted):
        request = Request({"type": "http", "method": "GET", "path": "/shopping-events", "headers": []})
        resp = await _unhandled_error_handler(request, RuntimeError("pool exhausted"))

        assert resp.status_code == 500
        assert b'"internal_error"' in resp.body
        assert b"pool exhausted" not in resp.body
        assert [e.event_type for e in emitted] == [EventType.SYSTEM_ERROR]
        assert emitted[0].data == {"error": "RuntimeError: pool exhausted", "path": "/shopping-events"}
