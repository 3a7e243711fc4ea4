"""Error taxonomy for the coordinator.

Task-level kinds (validation, resource exhaustion, concurrency conflicts)
are recovered locally and reported on result objects. Tick-level kinds
(system faults) abort the cycle.
"""
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Classification of every failure the coordinator can report."""
    VALIDATION = "validation_error"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    TRANSIENT_EXECUTION_FAILURE = "transient_execution_failure"
    PERMANENT_FAILURE = "permanent_failure"
    SYSTEM_FAULT = "system_fault"

    @property
    def is_fatal(self) -> bool:
        """Whether this kind aborts the current tick."""
        return self is ErrorKind.SYSTEM_FAULT


class CoordinatorError(Exception):
    """Base class for coordinator errors."""

    kind: ErrorKind = ErrorKind.SYSTEM_FAULT

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(CoordinatorError):
    """Malformed candidate, plan, or callback data."""
    kind = ErrorKind.VALIDATION


class InvalidTransitionError(ValidationError):
    """A state or status change outside the allowed edge set."""


class ResourceExhaustionError(CoordinatorError):
    """A resource pool cannot absorb the requested amount."""
    kind = ErrorKind.RESOURCE_EXHAUSTION


class ConcurrencyConflictError(CoordinatorError):
    """Lost a race: claim contention, reservation race, or a tick already in flight."""
    kind = ErrorKind.CONCURRENCY_CONFLICT


class TransientExecutionError(CoordinatorError):
    """Executor reported a retryable failure."""
    kind = ErrorKind.TRANSIENT_EXECUTION_FAILURE


class PermanentFailureError(CoordinatorError):
    """Retries exhausted; requires human review."""
    kind = ErrorKind.PERMANENT_FAILURE


class SystemFaultError(CoordinatorError):
    """Unexpected internal fault during a tick."""
    kind = ErrorKind.SYSTEM_FAULT


__all__ = [
    "ErrorKind",
    "CoordinatorError",
    "ValidationError",
    "InvalidTransitionError",
    "ResourceExhaustionError",
    "ConcurrencyConflictError",
    "TransientExecutionError",
    "PermanentFailureError",
    "SystemFaultError",
]
