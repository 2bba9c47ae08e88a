"""Idempotency key value type.

A key names one logical operation attempt across retries. Keys are scoped so
that identical caller tokens issued against different operations (for example
"payments" and "refunds") never collide.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Final

STORAGE_KEY_SEPARATOR: Final[str] = "\0"


class InvalidKeyError(ValueError):
    """Raised when a scope or token is missing, blank, or malformed.

    This is a caller error and is never retryable.
    """


def _require_text(name: str, value: object) -> str:
    if not isinstance(value, str):
        raise InvalidKeyError(f"{name} must be a string, got {type(value).__name__}")
    if not value.strip():
        raise InvalidKeyError(f"{name} must not be blank")
    return value


@dataclass(frozen=True, order=True)
class IdempotencyKey:
    """Composite (scope, token) key.

    Attributes:
        scope: Namespace for the operation (e.g. "payments").
        token: Caller-supplied opaque identifier (e.g. an Idempotency-Key header).
    """

    scope: str
    token: str

    def __post_init__(self) -> None:
        _require_text("scope", self.scope)
        _require_text("token", self.token)
        if STORAGE_KEY_SEPARATOR in self.scope:
            raise InvalidKeyError("scope must not contain the NUL separator")

    @property
    def storage_key(self) -> str:
        """Single composite key for key-value backends."""
        return f"{self.scope}{STORAGE_KEY_SEPARATOR}{self.token}"

    @property
    def token_sha256(self) -> str:
        """SHA-256 of the token, safe for logs and span attributes."""
        return hashlib.sha256(self.token.encode("utf-8")).hexdigest()

    @classmethod
    def from_storage_key(cls, value: str) -> IdempotencyKey:
        """Parse a composite storage key back into a key.

        Raises:
            InvalidKeyError: If the separator is missing or either part is blank.
        """
        scope, sep, token = value.partition(STORAGE_KEY_SEPARATOR)
        if not sep:
            raise InvalidKeyError("storage key is missing the scope separator")
        return cls(scope=scope, token=token)

    def __str__(self) -> str:
        return f"{self.scope}/{self.token_sha256[:12]}"
