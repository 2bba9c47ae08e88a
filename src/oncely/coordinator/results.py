"""Operation results and coordinator error kinds.

Protected operations report their outcome as a value, Ok(value) or
Err(error), instead of raising. The coordinator likewise returns an
ExecutionResult rather than raising, so the operation's own error type
reaches the caller intact.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Generic, TypeAlias, TypeVar

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful operation outcome."""

    value: T


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed operation outcome carrying the operation's own error value."""

    error: E


OperationResult: TypeAlias = Ok[Any] | Err[Any]


class ErrorKind(StrEnum):
    """Coordinator error taxonomy."""

    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    OPERATION_ERROR = "operation_error"
    LEASE_LOST = "lease_lost"
    STORE_UNAVAILABLE = "store_unavailable"


_RETRYABLE_KINDS = frozenset({ErrorKind.CONFLICT, ErrorKind.TIMEOUT, ErrorKind.STORE_UNAVAILABLE})


@dataclass(frozen=True)
class CoordinatorError(Generic[E]):
    """Error returned by IdempotencyCoordinator.execute.

    Attributes:
        kind: Error classification.
        message: Human-readable description.
        operation_error: The operation's error value (OPERATION_ERROR only).
    """

    kind: ErrorKind
    message: str
    operation_error: E | None = None

    @property
    def retryable(self) -> bool:
        """Whether retrying with the same key is safe and may succeed."""
        return self.kind in _RETRYABLE_KINDS


@dataclass(frozen=True)
class ExecutionResult(Generic[T, E]):
    """Outcome of IdempotencyCoordinator.execute.

    Attributes:
        value: The operation's result. Also populated for LEASE_LOST, where the
            operation ran to completion but its result could not be recorded.
        error: None on success.
        replayed: True if the outcome came from a stored record and the
            operation was not invoked by this call.
    """

    value: T | None = None
    error: CoordinatorError[E] | None = None
    replayed: bool = False

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> ErrorKind | None:
        return None if self.error is None else self.error.kind

    def unwrap(self) -> T:
        """Return the value, raising ExecutionFailedError if the call failed."""
        if self.error is not None:
            raise ExecutionFailedError(self.error)
        return self.value  # type: ignore[return-value]


class ExecutionFailedError(Exception):
    """Raised by ExecutionResult.unwrap() for callers that prefer exceptions."""

    def __init__(self, error: CoordinatorError[Any]) -> None:
        super().__init__(f"{error.kind.value}: {error.message}")
        self.error = error
