"""Tests for the coordinator state machine."""
from datetime import timedelta

import pytest

from src.coordinator.state_machine import (
    ALLOWED_TRANSITIONS,
    CoordinatorState,
    CoordinatorStateMachine,
    Transition,
)
from src.core.errors import ConcurrencyConflictError, InvalidTransitionError


@pytest.fixture
def machine(db, settings):
    return CoordinatorStateMachine(db, settings)


class TestTransition:
    """Tests for the allowed edge set."""

    @pytest.mark.parametrize("source,target", sorted(ALLOWED_TRANSITIONS, key=lambda e: (e[0].value, e[1].value)))
    def test_allowed_edges_build(self, source, target):
        assert Transition(source, target).target is target

    @pytest.mark.parametrize("source,target", [
        (CoordinatorState.COMPLETED, CoordinatorState.DISPATCHING),
        (CoordinatorState.IDLE, CoordinatorState.DISPATCHING),
        (CoordinatorState.MONITORING, CoordinatorState.ANALYZING),
        (CoordinatorState.COOLDOWN, CoordinatorState.ANALYZING),
        (CoordinatorState.ERROR_RECOVERY, CoordinatorState.IDLE),
    ])
    def test_other_edges_are_rejected(self, source, target):
        with pytest.raises(InvalidTransitionError):
            Transition(source, target)

    def test_any_state_can_enter_recovery(self):
        for state in CoordinatorState:
            if state is not CoordinatorState.ERROR_RECOVERY:
                Transition(state, CoordinatorState.ERROR_RECOVERY)


class TestCoordinatorStateMachine:
    """Tests for the durable transition log."""

    def test_starts_idle(self, machine):
        assert machine.state == CoordinatorState.IDLE
        assert machine.current() is None

    def test_full_tick_cycle(self, machine, now):
        admission = machine.begin_tick("w1", now)
        assert admission.started
        machine.plan_ready("w1", now + timedelta(seconds=2))
        machine.dispatched("w1", now + timedelta(seconds=3))
        end = machine.tick_finished("w1", now + timedelta(seconds=5))

        assert end.state == CoordinatorState.IDLE
        assert end.previous_state == CoordinatorState.MONITORING
        assert end.previous_duration_ms == 2000
        states = [e.state for e in reversed(machine.history())]
        assert states == [
            CoordinatorState.ANALYZING,
            CoordinatorState.DISPATCHING,
            CoordinatorState.MONITORING,
            CoordinatorState.IDLE,
        ]

    def test_illegal_transition_writes_nothing(self, machine, now):
        with pytest.raises(InvalidTransitionError):
            machine.transition(CoordinatorState.DISPATCHING, now)
        assert machine.history() == []

    def test_second_tick_is_refused_while_in_flight(self, machine, now):
        machine.begin_tick("w1", now)
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            machine.begin_tick("w2", now + timedelta(seconds=10))
        assert exc_info.value.context["owner"] == "w1"
        assert machine.state == CoordinatorState.ANALYZING

    def test_stale_tick_is_recovered(self, machine, settings, now):
        machine.begin_tick("w1", now)
        later = now + timedelta(seconds=settings.stale_tick_seconds + 1)

        admission = machine.begin_tick("w2", later)

        assert not admission.started
        assert admission.reason == "recovered_stale_tick"
        assert machine.state == CoordinatorState.COOLDOWN
        recovery = machine.history()[1]
        assert recovery.state == CoordinatorState.ERROR_RECOVERY
        assert recovery.payload["abandoned_by"] == "w1"

    def test_cooldown_then_resume(self, machine, settings, now):
        machine.begin_tick("w1", now)
        machine.recover("w1", now, {"error": "boom"})
        assert machine.state == CoordinatorState.COOLDOWN

        waiting = machine.begin_tick("w1", now + timedelta(seconds=10))
        assert not waiting.started
        assert waiting.reason == "cooling_down"

        resumed = machine.begin_tick("w1", now + timedelta(seconds=settings.cooldown_seconds))
        assert resumed.started
        assert [e.state for e in machine.history(limit=2)] == [
            CoordinatorState.ANALYZING,
            CoordinatorState.IDLE,
        ]

    def test_left_in_recovery_moves_to_cooldown(self, machine, now):
        machine.transition(CoordinatorState.ERROR_RECOVERY, now, "fault")
        admission = machine.begin_tick("w1", now)
        assert admission.reason == "cooldown_started"
        assert machine.state == CoordinatorState.COOLDOWN

    def test_recover_from_idle(self, machine, now):
        entry = machine.recover("w1", now)
        assert entry.state == CoordinatorState.COOLDOWN
        assert machine.history()[1].previous_state == CoordinatorState.IDLE

    def test_recovery_cannot_dispatch(self, machine, now):
        machine.transition(CoordinatorState.ERROR_RECOVERY, now)
        with pytest.raises(InvalidTransitionError):
            machine.transition(CoordinatorState.DISPATCHING, now)
