"""
Lifecycle transition table tests.
"""

import itertools

import pytest

from mcp_server_fleet.runtime.errors import InvalidTransition
from mcp_server_fleet.runtime.lifecycle import (
    TRANSITIONS,
    LifecycleEvent,
    allowed_events,
    can_transition,
    next_status,
)
from mcp_server_fleet.runtime.models import AgentStatus


S = AgentStatus
E = LifecycleEvent


class TestTransitionTable:
    """The documented edges, and nothing else."""

    @pytest.mark.parametrize("state,event,target", [
        (S.INITIALIZING, E.START, S.IDLE),
        (S.OFFLINE, E.START, S.IDLE),
        (S.IDLE, E.TASK_ASSIGNED, S.BUSY),
        (S.BUSY, E.DRAINED, S.IDLE),
        (S.INITIALIZING, E.FAULT, S.ERROR),
        (S.IDLE, E.FAULT, S.ERROR),
        (S.BUSY, E.FAULT, S.ERROR),
        (S.IDLE, E.STOP, S.TERMINATING),
        (S.BUSY, E.STOP, S.TERMINATING),
        (S.ERROR, E.STOP, S.TERMINATING),
        (S.TERMINATING, E.FINALIZE, S.TERMINATED),
        (S.IDLE, E.HEARTBEAT_MISSED, S.OFFLINE),
        (S.BUSY, E.HEARTBEAT_MISSED, S.OFFLINE),
        (S.ERROR, E.HEARTBEAT_MISSED, S.OFFLINE),
        (S.OFFLINE, E.HEARTBEAT_RESTORED, S.IDLE),
        (S.TERMINATED, E.RESTART, S.INITIALIZING),
    ])
    def test_valid_edges(self, state, event, target):
        assert can_transition(state, event)
        assert next_status(state, event) == target

    def test_table_has_exactly_the_documented_edges(self):
        assert len(TRANSITIONS) == 16

    def test_every_other_pair_is_rejected(self):
        """Any (state, event) pair missing from the table raises InvalidTransition."""
        for state, event in itertools.product(AgentStatus, LifecycleEvent):
            if (state, event) in TRANSITIONS:
                continue
            with pytest.raises(InvalidTransition) as exc:
                next_status(state, event, "agent-x")
            assert exc.value.state == state.value
            assert exc.value.event == event.value
            assert exc.value.subject == "agent-x"
            assert exc.value.code == "ERR_INVALID_TRANSITION"

    def test_terminated_only_restarts(self):
        assert allowed_events(S.TERMINATED) == frozenset({E.RESTART})

    def test_allowed_events_idle(self):
        assert allowed_events(S.IDLE) == frozenset({
            E.TASK_ASSIGNED, E.FAULT, E.STOP, E.HEARTBEAT_MISSED,
        })

    def test_offline_cannot_stop(self):
        assert not can_transition(S.OFFLINE, E.STOP)
