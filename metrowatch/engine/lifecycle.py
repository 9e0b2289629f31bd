"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    STOPPED ──> STARTING ──┬──> RUNNING ──> STOPPING ──> STOPPED
                           │
                           └──> STOPPED  (failure or aborted startup)
"""
from __future__ import annotations

from .models import SessionStatus

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.STOPPED: {
        SessionStatus.STARTING,
    },
    SessionStatus.STARTING: {
        SessionStatus.RUNNING,
        SessionStatus.STOPPED,
    },
    SessionStatus.RUNNING: {
        SessionStatus.STOPPING,
    },
    SessionStatus.STOPPING: {
        SessionStatus.STOPPED,
    },
}


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none"
        raise ValueError(
            f"Invalid status transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
