"""HTTP API — thin FastAPI router over the workflow services.

Each request is one unit of work (`get_session` commits on success and rolls
back on any error). Domain errors are mapped to HTTP status codes by the
handlers registered in `register_error_handlers`.
"""
# ruff: noqa: B008

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from railshop.db.engine import get_session
from railshop.estimates.approval import approval_aggregator
from railshop.estimates.decisions import decision_engine, parse_decisions
from railshop.estimates.store import estimate_store
from railshop.events.bus import emit
from railshop.integrations.fleet.client import FleetDirectoryUnavailable
from railshop.schemas.events import EventType, SystemEvent
from railshop.schemas.workflow import (
    ApprovalPacketRead,
    BatchCreatedRead,
    CancelRequest,
    CreateBatchRequest,
    CreateEventRequest,
    DecisionView,
    EstimateSubmissionRead,
    FinalizeApprovalRequest,
    LineDecisionSummary,
    RecordDecisionsRequest,
    RecordedDecision,
    ReleasePacketRequest,
    ShoppingBatchRead,
    ShoppingEventRead,
    StateHistoryRead,
    SubmitEstimateRequest,
    TransitionRequest,
)
from railshop.workflow.errors import (
    ConcurrentModification,
    GateNotSatisfied,
    InvalidTransition,
    NotFound,
    ValidationError,
    WorkflowError,
)
from railshop.workflow.machine import shopping_event_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflow"])

_STATUS_BY_ERROR: dict[type[WorkflowError], int] = {
    NotFound: status.HTTP_404_NOT_FOUND,
    ValidationError: 422,
    InvalidTransition: status.HTTP_409_CONFLICT,
    GateNotSatisfied: status.HTTP_409_CONFLICT,
    ConcurrentModification: status.HTTP_409_CONFLICT,
}


# ── Error mapping ────────────────────────────────────────────────────


async def _workflow_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, WorkflowError)
    status_code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    logger.info("%s %s -> %d %s: %s", request.method, request.url.path, status_code, exc.code, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def _fleet_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, FleetDirectoryUnavailable)
    logger.warning("%s %s -> 503: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "fleet_directory_unavailable", "message": str(exc), "retryable": True, "details": {}},
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("%s %s -> 500", request.method, request.url.path, exc_info=exc)
    await emit(SystemEvent(
        event_type=EventType.SYSTEM_ERROR,
        data={"error": f"{type(exc).__name__}: {exc}", "path": request.url.path},
        source_module="api.routes",
    ))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "message": "Internal server error", "retryable": False, "details": {}},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Map domain errors to HTTP responses on `app`; anything else becomes a 500 and a SYSTEM_ERROR event."""
    app.add_exception_handler(WorkflowError, _workflow_error_handler)
    app.add_exception_handler(FleetDirectoryUnavailable, _fleet_unavailable_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)


# ── Shopping events ──────────────────────────────────────────────────


@router.post("/shopping-events", status_code=status.HTTP_201_CREATED)
async def create_shopping_event(
    body: CreateEventRequest,
    db: AsyncSession = Depends(get_session),
) -> ShoppingEventRead:
    event = await shopping_event_service.create_event(
        db,
        body.car_number,
        body.shop_code,
        body.actor,
        shopping_type_code=body.shopping_type_code,
        shopping_reason_code=body.shopping_reason_code,
    )
    return ShoppingEventRead.model_validate(event)


@router.post("/shopping-events/batch", status_code=status.HTTP_201_CREATED)
async def create_shopping_batch(
    body: CreateBatchRequest,
    db: AsyncSession = Depends(get_session),
) -> BatchCreatedRead:
    batch, events = await shopping_event_service.create_batch(
        db,
        body.shop_code,
        body.car_numbers,
        body.actor,
        shopping_type_code=body.shopping_type_code,
        shopping_reason_code=body.shopping_reason_code,
        notes=body.notes,
    )
    return BatchCreatedRead(
        batch=ShoppingBatchRead.model_validate(batch),
        events=[ShoppingEventRead.model_validate(e) for e in events],
    )


@router.get("/shopping-batches/{batch_id}")
async def get_shopping_batch(batch_id: uuid.UUID, db: AsyncSession = Depends(get_session)) -> ShoppingBatchRead:
    return ShoppingBatchRead.model_validate(await shopping_event_service.get_batch(db, batch_id))


@router.get("/shopping-events")
async def list_shopping_events(
    state: str | None = Query(default=None),
    shop_code: str | None = Query(default=None),
    car_number: str | None = Query(default=None),
    batch_id: uuid.UUID | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> list[ShoppingEventRead]:
    events = await shopping_event_service.list_events(
        db,
        state=state,
        shop_code=shop_code,
        car_number=car_number,
        batch_id=batch_id,
        limit=limit,
        offset=offset,
    )
    return [ShoppingEventRead.model_validate(e) for e in events]


@router.get("/shopping-events/{event_id}")
async def get_shopping_event(event_id: uuid.UUID, db: AsyncSession = Depends(get_session)) -> ShoppingEventRead:
    return ShoppingEventRead.model_validate(await shopping_event_service.get_event(db, event_id))


@router.get("/shopping-events/{event_id}/allowed-transitions")
async def get_allowed_transitions(event_id: uuid.UUID, db: AsyncSession = Depends(get_session)) -> list[str]:
    event = await shopping_event_service.get_event(db, event_id)
    return [s.value for s in shopping_event_service.allowed_transitions(event)]


@router.get("/shopping-events/{event_id}/history")
async def get_state_history(event_id: uuid.UUID, db: AsyncSession = Depends(get_session)) -> list[StateHistoryRead]:
    entries = await shopping_event_service.get_history(db, event_id)
    return [StateHistoryRead.model_validate(e) for e in entries]


@router.post("/shopping-events/{event_id}/transitions")
async def transition_shopping_event(
    event_id: uuid.UUID,
    body: TransitionRequest,
    db: AsyncSession = Depends(get_session),
) -> ShoppingEventRead:
    event = await shopping_event_service.request_transition(
        db,
        event_id,
        body.to_state,
        body.actor,
        notes=body.notes,
        data=body.data,
        expected_version=body.expected_version,
    )
    return ShoppingEventRead.model_validate(event)


@router.post("/shopping-events/{event_id}/cancel")
async def cancel_shopping_event(
    event_id: uuid.UUID,
    body: CancelRequest,
    db: AsyncSession = Depends(get_session),
) -> ShoppingEventRead:
    event = await shopping_event_service.cancel_event(
        db, event_id, body.actor, body.reason, expected_version=body.expected_version
    )
    return ShoppingEventRead.model_validate(event)


# ── Estimates ────────────────────────────────────────────────────────


@router.post("/shopping-events/{event_id}/estimates", status_code=status.HTTP_201_CREATED)
async def submit_estimate(
    event_id: uuid.UUID,
    body: SubmitEstimateRequest,
    db: AsyncSession = Depends(get_session),
) -> EstimateSubmissionRead:
    submission = await shopping_event_service.submit_estimate(db, event_id, body.lines, body.actor, notes=body.notes)
    return EstimateSubmissionRead.model_validate(submission)


@router.get("/shopping-events/{event_id}/estimates")
async def list_estimate_versions(
    event_id: uuid.UUID,
    db: AsyncSession = Depends(get_session),
) -> list[EstimateSubmissionRead]:
    await shopping_event_service.get_event(db, event_id)
    submissions = await estimate_store.list_versions(db, event_id)
    return [EstimateSubmissionRead.model_validate(s) for s in submissions]


@router.get("/estimates/{submission_id}")
async def get_estimate(submission_id: uuid.UUID, db: AsyncSession = Depends(get_session)) -> EstimateSubmissionRead:
    return EstimateSubmissionRead.model_validate(await estimate_store.get_submission(db, submission_id))


@router.post("/estimates/{submission_id}/decisions", status_code=status.HTTP_201_CREATED)
async def record_decisions(
    submission_id: uuid.UUID,
    body: RecordDecisionsRequest,
    db: AsyncSession = Depends(get_session),
) -> list[RecordedDecision]:
    decisions = parse_decisions(body.decisions)
    return await decision_engine.record_decisions(db, submission_id, decisions, body.actor)


@router.get("/estimates/{submission_id}/decisions")
async def get_estimate_decisions(
    submission_id: uuid.UUID,
    db: AsyncSession = Depends(get_session),
) -> list[LineDecisionSummary]:
    return await decision_engine.summarize(db, submission_id)


@router.get("/estimate-lines/{line_id}/decisions")
async def get_line_decisions(line_id: uuid.UUID, db: AsyncSession = Depends(get_session)) -> list[DecisionView]:
    return await decision_engine.get_line_decisions(db, line_id)


@router.post("/estimates/{submission_id}/approval", status_code=status.HTTP_201_CREATED)
async def finalize_approval(
    submission_id: uuid.UUID,
    body: FinalizeApprovalRequest,
    db: AsyncSession = Depends(get_session),
) -> ApprovalPacketRead:
    packet = await approval_aggregator.finalize_approval(
        db,
        submission_id,
        body.overall_decision,
        body.approved_line_ids,
        body.actor,
        notes=body.notes,
    )
    return ApprovalPacketRead.model_validate(packet)


# ── Approval packets ─────────────────────────────────────────────────


@router.get("/approval-packets/{packet_id}")
async def get_approval_packet(packet_id: uuid.UUID, db: AsyncSession = Depends(get_session)) -> ApprovalPacketRead:
    return ApprovalPacketRead.model_validate(await approval_aggregator.get_packet(db, packet_id))


@router.post("/approval-packets/{packet_id}/release")
async def release_approval_packet(
    packet_id: uuid.UUID,
    body: ReleasePacketRequest,
    db: AsyncSession = Depends(get_session),
) -> ApprovalPacketRead:
    packet = await approval_aggregator.release_packet(db, packet_id, body.actor)
    return ApprovalPacketRead.model_validate(packet)
