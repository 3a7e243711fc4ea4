"""Core modules for the Content Coordinator."""
from .config import BatchStrategy, CategoryConfig, CoordinatorSettings, DEFAULT_CATEGORIES, load_settings
from .error_log import ErrorLogRepository, ErrorRecord
from .errors import (
    ConcurrencyConflictError,
    CoordinatorError,
    ErrorKind,
    InvalidTransitionError,
    PermanentFailureError,
    ResourceExhaustionError,
    SystemFaultError,
    TransientExecutionError,
    ValidationError,
)
from .logging import configure_logging
from .store import Database

__all__ = [
    "BatchStrategy",
    "CategoryConfig",
    "CoordinatorSettings",
    "DEFAULT_CATEGORIES",
    "load_settings",
    "ErrorLogRepository",
    "ErrorRecord",
    "ErrorKind",
    "CoordinatorError",
    "ValidationError",
    "InvalidTransitionError",
    "ResourceExhaustionError",
    "ConcurrencyConflictError",
    "TransientExecutionError",
    "PermanentFailureError",
    "SystemFaultError",
    "configure_logging",
    "Database",
]
