"""Oncely idempotency records.

Keys, record model, and the store contract with in-memory and SQLite
backends. The PostgreSQL backend lives in oncely.idempotency.postgres_store.
"""

from oncely.idempotency.codec import (
    JsonResultCodec,
    PydanticResultCodec,
    ResultCodec,
    ResultCodecError,
)
from oncely.idempotency.keys import IdempotencyKey, InvalidKeyError
from oncely.idempotency.models import (
    ClaimOutcome,
    ClaimResult,
    IdempotencyRecord,
    RecordStatus,
)
from oncely.idempotency.sqlite_store import SqliteIdempotencyStore, create_idempotency_store
from oncely.idempotency.store import (
    IdempotencyStore,
    IdempotencyStoreError,
    InMemoryIdempotencyStore,
    LeaseLostError,
    StoreUnavailableError,
)

__all__ = [
    "ClaimOutcome",
    "ClaimResult",
    "IdempotencyKey",
    "IdempotencyRecord",
    "IdempotencyStore",
    "IdempotencyStoreError",
    "InMemoryIdempotencyStore",
    "InvalidKeyError",
    "JsonResultCodec",
    "LeaseLostError",
    "PydanticResultCodec",
    "RecordStatus",
    "ResultCodec",
    "ResultCodecError",
    "SqliteIdempotencyStore",
    "StoreUnavailableError",
    "create_idempotency_store",
]
