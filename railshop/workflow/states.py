"""State definitions and transition table for the shopping event workflow.

The table is exhaustive: every allowed (current, next) pair is listed with the
gate that guards it (None = structural adjacency only). Anything not listed
is an invalid transition.
"""

from __future__ import annotations

from railshop.models.enums import ShoppingEventState as S
from railshop.workflow.gates import (
    Gate,
    require_approved_estimate,
    require_approved_final_estimate,
    require_responsibility_lock,
)

TERMINAL_STATES: frozenset[S] = frozenset({S.RELEASED, S.CANCELLED})

# Ordered happy path
HAPPY_PATH: tuple[S, ...] = (
    S.REQUESTED,
    S.ASSIGNED_TO_SHOP,
    S.INBOUND,
    S.INSPECTION,
    S.ESTIMATE_SUBMITTED,
    S.ESTIMATE_UNDER_REVIEW,
    S.ESTIMATE_APPROVED,
    S.WORK_AUTHORIZED,
    S.IN_REPAIR,
    S.QA_COMPLETE,
    S.FINAL_ESTIMATE_SUBMITTED,
    S.FINAL_ESTIMATE_APPROVED,
    S.READY_FOR_RELEASE,
    S.RELEASED,
)

# Gates keyed by target state
GATES: dict[S, Gate] = {
    S.WORK_AUTHORIZED: require_approved_estimate,
    S.FINAL_ESTIMATE_APPROVED: require_approved_final_estimate,
    S.READY_FOR_RELEASE: require_responsibility_lock,
    S.RELEASED: require_responsibility_lock,
}


def _build_transitions() -> dict[S, dict[S, Gate | None]]:
    table: dict[S, dict[S, Gate | None]] = {state: {} for state in S}

    for current, nxt in zip(HAPPY_PATH, HAPPY_PATH[1:]):
        table[current][nxt] = GATES.get(nxt)

    # Review loop
    table[S.ESTIMATE_UNDER_REVIEW][S.CHANGES_REQUIRED] = None
    table[S.CHANGES_REQUIRED][S.ESTIMATE_SUBMITTED] = None

    # Cancellation from every non-terminal state
    for state in S:
        if state not in TERMINAL_STATES:
            table[state][S.CANCELLED] = None

    return table


# Transition table: {current_state: {next_state: gate_or_None}}
TRANSITIONS: dict[S, dict[S, Gate | None]] = _build_transitions()

# States where an initial-round estimate may be submitted
INITIAL_ESTIMATE_STATES: frozenset[S] = frozenset({S.INSPECTION, S.ESTIMATE_SUBMITTED, S.CHANGES_REQUIRED})

# States where a final estimate may be submitted (tagged is_final)
FINAL_ESTIMATE_STATES: frozenset[S] = frozenset({S.QA_COMPLETE, S.FINAL_ESTIMATE_SUBMITTED})

# States where the event is considered active (not terminal)
ACTIVE_STATES: frozenset[S] = frozenset(s for s in S if s not in TERMINAL_STATES)


def allowed_next_states(current: S) -> list[S]:
    """Return every state reachable in one step from `current`."""
    return list(TRANSITIONS.get(current, {}).keys())


def is_terminal(state: S) -> bool:
    return state in TERMINAL_STATES
