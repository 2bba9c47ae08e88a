"""FastAPI adapter for the idempotency coordinator.

Maps an HTTP request onto IdempotencyCoordinator.execute:
- Idempotency-Key header + caller-chosen scope -> IdempotencyKey
- Missing or blank header -> 400 INVALID_IDEMPOTENCY_KEY
- Success -> JSON body of the operation value
- CoordinatorError -> structured error body with the status from
  status_code_for_error()
- Replayed outcomes carry X-Idempotency-Replay: true

The coordinator is synchronous, so it runs on a worker thread via
asyncio.to_thread() to keep the event loop free while it waits.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from oncely.coordinator.config import ConcurrencyPolicy, FailurePolicy
from oncely.coordinator.coordinator import IdempotencyCoordinator, Operation
from oncely.coordinator.results import CoordinatorError, ErrorKind
from oncely.idempotency.keys import IdempotencyKey, InvalidKeyError

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
IDEMPOTENCY_REPLAY_HEADER = "X-Idempotency-Replay"

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.CONFLICT: 409,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.LEASE_LOST: 500,
    ErrorKind.STORE_UNAVAILABLE: 503,
    ErrorKind.OPERATION_ERROR: 422,
}


class ErrorResponse(BaseModel):
    """Error envelope returned by the adapter."""

    code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None


class IdempotencyHttpError(Exception):
    """Request-level error raised before the coordinator is invoked."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


def _error_response(
    status_code: int,
    code: str,
    message: str,
    request_id: str | None,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    body = ErrorResponse(code=code, message=message, details=details, request_id=request_id)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def idempotency_key_from_request(request: Request, scope: str) -> IdempotencyKey:
    """Build the idempotency key for a request.

    Raises:
        IdempotencyHttpError: 400 if the header is missing or blank.
    """
    token = request.headers.get(IDEMPOTENCY_KEY_HEADER)
    if token is None or not token.strip():
        raise IdempotencyHttpError(
            400,
            "INVALID_IDEMPOTENCY_KEY",
            f"{IDEMPOTENCY_KEY_HEADER} header is required",
        )
    try:
        return IdempotencyKey(scope=scope, token=token.strip())
    except InvalidKeyError as e:
        raise IdempotencyHttpError(400, "INVALID_IDEMPOTENCY_KEY", str(e)) from e


def status_code_for_error(error: CoordinatorError[Any]) -> int:
    """HTTP status for a coordinator error kind."""
    return _STATUS_BY_KIND[error.kind]


async def idempotency_http_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """FastAPI exception handler for IdempotencyHttpError."""
    assert isinstance(exc, IdempotencyHttpError)
    return _error_response(
        exc.status_code, exc.code, exc.message, getattr(request.state, "request_id", None)
    )


async def execute_idempotent(
    request: Request,
    coordinator: IdempotencyCoordinator,
    scope: str,
    operation: Operation,
    *,
    success_status: int = 200,
    lease_duration: timedelta | None = None,
    retention_duration: timedelta | None = None,
    failure_policy: FailurePolicy | None = None,
    concurrency_policy: ConcurrencyPolicy | None = None,
) -> JSONResponse:
    """Run operation through the coordinator and render the outcome as JSON.

    Args:
        request: Incoming request carrying the Idempotency-Key header.
        coordinator: Coordinator to execute with.
        scope: Namespace for the key, e.g. "payments".
        operation: Zero-argument callable returning Ok or Err.
        success_status: Status code for successful outcomes.
        lease_duration, retention_duration, failure_policy, concurrency_policy:
            Per-route overrides passed to IdempotencyCoordinator.execute;
            None keeps the coordinator config.
    """
    request_id: str | None = getattr(request.state, "request_id", None)

    try:
        key = idempotency_key_from_request(request, scope)
    except IdempotencyHttpError as e:
        return _error_response(e.status_code, e.code, e.message, request_id)

    result = await asyncio.to_thread(
        coordinator.execute,
        key,
        operation,
        lease_duration=lease_duration,
        retention_duration=retention_duration,
        failure_policy=failure_policy,
        concurrency_policy=concurrency_policy,
    )

    if result.error is None:
        response = JSONResponse(status_code=success_status, content=jsonable_encoder(result.value))
    else:
        error = result.error
        details = None
        if error.kind == ErrorKind.OPERATION_ERROR:
            details = {"operation_error": jsonable_encoder(error.operation_error)}
        if error.kind in (ErrorKind.LEASE_LOST, ErrorKind.STORE_UNAVAILABLE):
            logger.error(
                "Idempotent request failed: %s",
                error.message,
                extra={"request_id": request_id, "scope": scope, "kind": error.kind.value},
            )
        response = _error_response(
            status_code_for_error(error),
            error.kind.value.upper(),
            error.message,
            request_id,
            details,
        )

    if result.replayed:
        response.headers[IDEMPOTENCY_REPLAY_HEADER] = "true"
    return response
