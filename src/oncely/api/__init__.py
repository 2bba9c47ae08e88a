"""Oncely HTTP adapters."""

from oncely.api.idempotency import (
    IDEMPOTENCY_KEY_HEADER,
    IDEMPOTENCY_REPLAY_HEADER,
    IdempotencyHttpError,
    execute_idempotent,
    idempotency_http_error_handler,
    idempotency_key_from_request,
    status_code_for_error,
)

__all__ = [
    "IDEMPOTENCY_KEY_HEADER",
    "IDEMPOTENCY_REPLAY_HEADER",
    "IdempotencyHttpError",
    "execute_idempotent",
    "idempotency_http_error_handler",
    "idempotency_key_from_request",
    "status_code_for_error",
]
