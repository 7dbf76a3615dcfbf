"""Run lifecycle state machine.

Defines valid transitions for a single agent invocation and enforces
them. Invalid transitions raise ValueError rather than silently
proceeding.

State Diagram:

    IDLE ──> SPAWNING ──> STREAMING ──┬──> COMPLETED
                │                     │
                │                     ├──> TIMED_OUT  (killed by timer)
                │                     │
                │                     ├──> STOPPED    (killed by stop/replace)
                │                     │
                └─────────────────────┴──> FAILED

    Terminal states ──> IDLE  (session ready for the next run)
"""
from __future__ import annotations

from .models import RunState

TERMINAL_STATES: frozenset[RunState] = frozenset({
    RunState.COMPLETED,
    RunState.TIMED_OUT,
    RunState.STOPPED,
    RunState.FAILED,
})

VALID_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.IDLE: {
        RunState.SPAWNING,
    },
    RunState.SPAWNING: {
        RunState.STREAMING,
        RunState.FAILED,
    },
    RunState.STREAMING: {
        RunState.COMPLETED,
        RunState.TIMED_OUT,
        RunState.STOPPED,
        RunState.FAILED,
    },
    **{state: {RunState.IDLE} for state in TERMINAL_STATES},
}


def validate_transition(current: RunState, target: RunState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid run state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


class RunStateTracker:
    """Holds the current state of one run and validates each move."""

    def __init__(self) -> None:
        self.state = RunState.IDLE

    def advance(self, target: RunState) -> None:
        validate_transition(self.state, target)
        self.state = target

    @property
    def accepts_output(self) -> bool:
        """Only a streaming run feeds the dispatcher."""
        return self.state is RunState.STREAMING
