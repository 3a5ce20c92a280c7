"""
Agent lifecycle state machine.

    initializing → idle ↔ busy
    initializing | idle | busy → error
    idle | busy | error → terminating → terminated
    idle | busy | error ↔ offline
    terminated → initializing   (restart only)

Transitions are looked up in a table keyed by (state, event). A pair that
is not in the table is an invalid transition.
"""

from enum import Enum
from typing import Dict, FrozenSet, Tuple

from .errors import InvalidTransition
from .models import AgentStatus


class LifecycleEvent(str, Enum):
    """Events that drive agent status changes."""
    START = "start"
    TASK_ASSIGNED = "task_assigned"
    DRAINED = "drained"
    FAULT = "fault"
    STOP = "stop"
    FINALIZE = "finalize"
    HEARTBEAT_MISSED = "heartbeat_missed"
    HEARTBEAT_RESTORED = "heartbeat_restored"
    RESTART = "restart"


S = AgentStatus
E = LifecycleEvent

TRANSITIONS: Dict[Tuple[AgentStatus, LifecycleEvent], AgentStatus] = {
    (S.INITIALIZING, E.START): S.IDLE,
    (S.OFFLINE, E.START): S.IDLE,
    (S.IDLE, E.TASK_ASSIGNED): S.BUSY,
    (S.BUSY, E.DRAINED): S.IDLE,
    (S.INITIALIZING, E.FAULT): S.ERROR,
    (S.IDLE, E.FAULT): S.ERROR,
    (S.BUSY, E.FAULT): S.ERROR,
    (S.IDLE, E.STOP): S.TERMINATING,
    (S.BUSY, E.STOP): S.TERMINATING,
    (S.ERROR, E.STOP): S.TERMINATING,
    (S.TERMINATING, E.FINALIZE): S.TERMINATED,
    (S.IDLE, E.HEARTBEAT_MISSED): S.OFFLINE,
    (S.BUSY, E.HEARTBEAT_MISSED): S.OFFLINE,
    (S.ERROR, E.HEARTBEAT_MISSED): S.OFFLINE,
    (S.OFFLINE, E.HEARTBEAT_RESTORED): S.IDLE,
    (S.TERMINATED, E.RESTART): S.INITIALIZING,
}

del S, E

TERMINAL_STATUSES: FrozenSet[AgentStatus] = frozenset({AgentStatus.TERMINATED})


def can_transition(state: AgentStatus, event: LifecycleEvent) -> bool:
    return (state, event) in TRANSITIONS


def next_status(state: AgentStatus, event: LifecycleEvent, subject: str = "") -> AgentStatus:
    """Resolve the target status or raise InvalidTransition."""
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(
            f"Cannot apply '{event.value}' to agent {subject or '?'} in state '{state.value}'",
            subject=subject or None,
            state=state.value,
            event=event.value,
        ) from None


def allowed_events(state: AgentStatus) -> FrozenSet[LifecycleEvent]:
    return frozenset(event for (src, event) in TRANSITIONS if src == state)
