from __future__ import annotations

from enum import Enum

from workitem_orchestrator.errors import ValidationError


class WorkItemState(str, Enum):
    CREATED = "CREATED"
    SPEC_READY = "SPEC_READY"
    IMPLEMENTING = "IMPLEMENTING"
    VERIFIED = "VERIFIED"
    MERGE_READY = "MERGE_READY"
    DONE = "DONE"
    HOLD = "HOLD"
    KILLED = "KILLED"


TERMINAL_STATES: frozenset[WorkItemState] = frozenset({WorkItemState.DONE, WorkItemState.KILLED})

ALLOWED_TRANSITIONS: dict[WorkItemState, frozenset[WorkItemState]] = {
    WorkItemState.CREATED: frozenset(
        {WorkItemState.SPEC_READY, WorkItemState.HOLD, WorkItemState.KILLED}
    ),
    WorkItemState.SPEC_READY: frozenset(
        {WorkItemState.IMPLEMENTING, WorkItemState.HOLD, WorkItemState.KILLED}
    ),
    WorkItemState.IMPLEMENTING: frozenset(
        {
            WorkItemState.VERIFIED,
            WorkItemState.SPEC_READY,
            WorkItemState.HOLD,
            WorkItemState.KILLED,
        }
    ),
    WorkItemState.VERIFIED: frozenset(
        {
            WorkItemState.MERGE_READY,
            WorkItemState.IMPLEMENTING,
            WorkItemState.HOLD,
            WorkItemState.KILLED,
        }
    ),
    WorkItemState.MERGE_READY: frozenset(
        {
            WorkItemState.DONE,
            WorkItemState.VERIFIED,
            WorkItemState.HOLD,
            WorkItemState.KILLED,
        }
    ),
    WorkItemState.HOLD: frozenset(
        {
            WorkItemState.CREATED,
            WorkItemState.SPEC_READY,
            WorkItemState.IMPLEMENTING,
            WorkItemState.VERIFIED,
            WorkItemState.MERGE_READY,
            WorkItemState.KILLED,
        }
    ),
    WorkItemState.DONE: frozenset(),
    WorkItemState.KILLED: frozenset(),
}

# The happy path. HOLD and the terminal states have no canonical successor.
CANONICAL_PROGRESSION: dict[WorkItemState, WorkItemState] = {
    WorkItemState.CREATED: WorkItemState.SPEC_READY,
    WorkItemState.SPEC_READY: WorkItemState.IMPLEMENTING,
    WorkItemState.IMPLEMENTING: WorkItemState.VERIFIED,
    WorkItemState.VERIFIED: WorkItemState.MERGE_READY,
    WorkItemState.MERGE_READY: WorkItemState.DONE,
}

_DESCRIPTIONS: dict[WorkItemState, str] = {
    WorkItemState.CREATED: "Work item created, awaiting specification",
    WorkItemState.SPEC_READY: "Specification complete, ready for implementation",
    WorkItemState.IMPLEMENTING: "Implementation in progress",
    WorkItemState.VERIFIED: "Implementation verified by QA",
    WorkItemState.MERGE_READY: "Changes ready to merge",
    WorkItemState.DONE: "Completed (terminal)",
    WorkItemState.HOLD: "On hold, may resume to any non-terminal state",
    WorkItemState.KILLED: "Cancelled (terminal)",
}


def parse_state(value: str | WorkItemState) -> WorkItemState:
    """Parse a state symbol, accepting the enum itself or its (case-insensitive) name."""

    if isinstance(value, WorkItemState):
        return value
    try:
        return WorkItemState(value.strip().upper())
    except ValueError:
        valid = ", ".join(s.value for s in WorkItemState)
        raise ValidationError(
            f"Unknown work item state {value!r} (expected one of: {valid})"
        ) from None


def is_terminal(state: WorkItemState) -> bool:
    return state in TERMINAL_STATES


def is_active(state: WorkItemState) -> bool:
    """True for states where work is progressing (not HOLD, not terminal)."""

    return state is not WorkItemState.HOLD and not is_terminal(state)


def allowed_transitions(state: WorkItemState) -> frozenset[WorkItemState]:
    return ALLOWED_TRANSITIONS.get(state, frozenset())


def can_transition(from_state: WorkItemState, to_state: WorkItemState) -> bool:
    return to_state in allowed_transitions(from_state)


def next_canonical_state(state: WorkItemState) -> WorkItemState | None:
    return CANONICAL_PROGRESSION.get(state)


def describe_state(state: WorkItemState) -> str:
    return _DESCRIPTIONS[state]
