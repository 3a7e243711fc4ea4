"""Tick pipeline: execution records, dispatch, state machine, health gate."""
from .callbacks import CallbackResult, ExecutionCallbackHandler
from .coordinator import Coordinator, TickOutcome, TickResult
from .dispatch import DispatchResult, ReservationDispatcher
from .health import HealthGate, HealthReport, HealthStatus, Violation
from .records import (
    ExecutionContext,
    ExecutionRecord,
    ExecutionRecordRepository,
    ExecutionStatus,
)
from .runner import CoordinatorRunner
from .state_machine import (
    ALLOWED_TRANSITIONS,
    CoordinatorState,
    CoordinatorStateMachine,
    StateEntry,
    TickAdmission,
    Transition,
)

__all__ = [
    "CallbackResult",
    "ExecutionCallbackHandler",
    "Coordinator",
    "TickOutcome",
    "TickResult",
    "DispatchResult",
    "ReservationDispatcher",
    "HealthGate",
    "HealthReport",
    "HealthStatus",
    "Violation",
    "ExecutionContext",
    "ExecutionRecord",
    "ExecutionRecordRepository",
    "ExecutionStatus",
    "CoordinatorRunner",
    "ALLOWED_TRANSITIONS",
    "CoordinatorState",
    "CoordinatorStateMachine",
    "StateEntry",
    "TickAdmission",
    "Transition",
]
