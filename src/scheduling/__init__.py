"""Scheduling: priority scoring, admission control, execution planning."""
from .admission import AdmissionController, AdmissionDecision, AdmissionResult
from .planner import (
    DroppedTask,
    ExecutionPlan,
    ExecutionPlanner,
    ExecutionStrategy,
    PlannedTask,
    ResourceFootprint,
    RiskAssessment,
)
from .scheduler import (
    CalendarContext,
    CategoryStats,
    PriorityScheduler,
    SchedulingCandidate,
    ScoreBreakdown,
)

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionResult",
    "DroppedTask",
    "ExecutionPlan",
    "ExecutionPlanner",
    "ExecutionStrategy",
    "PlannedTask",
    "ResourceFootprint",
    "RiskAssessment",
    "CalendarContext",
    "CategoryStats",
    "PriorityScheduler",
    "SchedulingCandidate",
    "ScoreBreakdown",
]
