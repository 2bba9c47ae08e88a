"""Oncely coordinator: at-most-once execution of side-effecting operations."""

from oncely.coordinator.backoff import BackoffPolicy
from oncely.coordinator.config import (
    ConcurrencyPolicy,
    CoordinatorConfig,
    CoordinatorConfigError,
    FailFast,
    FailurePolicy,
    WaitForCompletion,
    load_coordinator_config,
)
from oncely.coordinator.coordinator import IdempotencyCoordinator
from oncely.coordinator.results import (
    CoordinatorError,
    Err,
    ErrorKind,
    ExecutionFailedError,
    ExecutionResult,
    Ok,
)

__all__ = [
    "BackoffPolicy",
    "ConcurrencyPolicy",
    "CoordinatorConfig",
    "CoordinatorConfigError",
    "CoordinatorError",
    "Err",
    "ErrorKind",
    "ExecutionFailedError",
    "ExecutionResult",
    "FailFast",
    "FailurePolicy",
    "IdempotencyCoordinator",
    "Ok",
    "WaitForCompletion",
    "load_coordinator_config",
]
