"""Domain errors raised by the workflow services.

All of them are local validation failures returned synchronously to the
caller. Only ConcurrentModification is retryable (after re-reading the event).
"""

from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """Base class for workflow failures surfaced to the caller."""

    code: str = "workflow_error"
    retryable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serializable form used by the HTTP layer and logs."""
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: str(v) if v is not None else None for k, v in self.details.items()},
        }


class NotFound(WorkflowError):
    """Referenced event, submission, line or packet does not exist."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, entity_id=entity_id)


class InvalidTransition(WorkflowError):
    """Requested state is not a valid successor of the current state."""

    code = "invalid_transition"

    def __init__(self, current_state: str, requested_state: str, reason: str | None = None) -> None:
        message = f"Invalid state transition: {current_state} -> {requested_state}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, current_state=current_state, requested_state=requested_state)
        self.current_state = current_state
        self.requested_state = requested_state


class GateNotSatisfied(WorkflowError):
    """Transition is structurally valid but a business precondition is unmet."""

    code = "gate_not_satisfied"

    def __init__(self, requested_state: str, condition: str) -> None:
        super().__init__(f"Gate blocked for {requested_state}: {condition}", requested_state=requested_state)
        self.requested_state = requested_state
        self.condition = condition


class ConcurrentModification(WorkflowError):
    """The event changed since the caller read it, or a concurrent writer took
    the number this write allocated; re-read and retry."""

    code = "concurrent_modification"
    retryable = True

    def __init__(
        self,
        entity_id: Any,
        expected_version: int | None = None,
        actual_version: int | None = None,
        entity: str = "Shopping event",
        reason: str | None = None,
    ) -> None:
        message = f"{entity} {entity_id} was modified concurrently"
        if expected_version is not None:
            message = f"{message} (expected version {expected_version}, found {actual_version})"
        elif reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            entity_id=entity_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )


class ValidationError(WorkflowError):
    """Malformed input: negative cost, missing field, unknown decision source."""

    code = "validation_error"
