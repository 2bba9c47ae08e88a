"""PostgreSQL-backed idempotency store.

Claims use INSERT ... ON CONFLICT (scope, token) DO NOTHING against the
table's primary key; transitions are conditional UPDATE/DELETE statements
matching owner_token and status.

Every operation accepts an optional SQLAlchemy connection. When one is passed
the statement runs inside the caller's transaction, so a CLAIMED -> COMPLETED
transition can commit atomically with a protected effect that writes to the
same database. Without one, each operation runs in its own transaction.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from oncely.idempotency.keys import IdempotencyKey
from oncely.idempotency.models import (
    ClaimOutcome,
    ClaimResult,
    IdempotencyRecord,
    RecordStatus,
)
from oncely.idempotency.store import (
    IdempotencyStore,
    LeaseLostError,
    StoreUnavailableError,
    ensure_positive,
    lost_reason,
    new_claim_record,
)
from oncely.observability.tracing import traced_store_operation, traced_store_sweep
from oncely.persistence.db import DatabaseConfigError, get_app_engine

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine


_CLAIM_RACE_RETRIES = 3

_COLUMNS = """
    scope, token, status, owner_token, lease_expires_at, created_at,
    completed_at, retention_expires_at, result_payload, error_payload
"""


def _as_bytes(value: Any) -> bytes | None:
    return None if value is None else bytes(value)


@contextmanager
def _store_errors(action: str) -> Generator[None, None, None]:
    """Translate driver and configuration failures into StoreUnavailableError."""
    try:
        yield
    except (SQLAlchemyError, DatabaseConfigError) as e:
        raise StoreUnavailableError(f"Failed to {action}: {e}") from e


class PostgresIdempotencyStore(IdempotencyStore):
    """PostgreSQL-backed idempotency store.

    Args:
        engine: SQLAlchemy engine. If None, the application engine from
            ONCELY_DATABASE_URL is used on first access.
    """

    backend_name = "postgres"

    _SELECT_SQL = text(
        f"""
        SELECT {_COLUMNS}
        FROM idempotency_records
        WHERE scope = :scope AND token = :token
        """
    )

    _INSERT_SQL = text(
        """
        INSERT INTO idempotency_records
        (scope, token, status, owner_token, lease_expires_at, created_at,
         retention_expires_at)
        VALUES
        (:scope, :token, 'claimed', :owner_token, :lease_expires_at, :created_at,
         :retention_expires_at)
        ON CONFLICT (scope, token) DO NOTHING
        RETURNING scope
        """
    )

    _RECLAIM_SQL = text(
        """
        UPDATE idempotency_records
        SET owner_token = :owner_token,
            lease_expires_at = :lease_expires_at,
            created_at = :now,
            retention_expires_at = :lease_expires_at
        WHERE scope = :scope AND token = :token
            AND status = 'claimed'
            AND owner_token = :stale_owner_token
            AND lease_expires_at <= :now
        RETURNING scope
        """
    )

    _FINALIZE_SQL = text(
        f"""
        UPDATE idempotency_records
        SET status = :status,
            completed_at = :now,
            retention_expires_at = :retention_expires_at,
            result_payload = :result_payload,
            error_payload = :error_payload
        WHERE scope = :scope AND token = :token
            AND status = 'claimed'
            AND owner_token = :owner_token
        RETURNING {_COLUMNS}
        """
    )

    _RENEW_SQL = text(
        f"""
        UPDATE idempotency_records
        SET lease_expires_at = :new_expiry, retention_expires_at = :new_expiry
        WHERE scope = :scope AND token = :token
            AND status = 'claimed'
            AND owner_token = :owner_token
            AND lease_expires_at > :now
        RETURNING {_COLUMNS}
        """
    )

    _RELEASE_SQL = text(
        """
        DELETE FROM idempotency_records
        WHERE scope = :scope AND token = :token
            AND status = 'claimed' AND owner_token = :owner_token
        """
    )

    _DELETE_FAILED_SQL = text(
        """
        DELETE FROM idempotency_records
        WHERE scope = :scope AND token = :token AND status = 'failed'
        """
    )

    _DELETE_EXPIRED_LEASES_SQL = text(
        """
        DELETE FROM idempotency_records
        WHERE status = 'claimed' AND lease_expires_at <= :now
        """
    )

    _DELETE_EXPIRED_COMPLETED_SQL = text(
        """
        DELETE FROM idempotency_records
        WHERE status IN ('completed', 'failed') AND retention_expires_at <= :now
        """
    )

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    def _get_engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_app_engine()
        return self._engine

    @contextmanager
    def _transaction(self, conn: Connection | None) -> Generator[Connection, None, None]:
        if conn is not None:
            yield conn
            return
        with self._get_engine().begin() as new_conn:
            yield new_conn

    @staticmethod
    def _row_to_record(row: Any) -> IdempotencyRecord:
        m = row._mapping
        return IdempotencyRecord(
            key=IdempotencyKey(m["scope"], m["token"]),
            status=RecordStatus(m["status"]),
            owner_token=m["owner_token"],
            lease_expires_at=m["lease_expires_at"],
            created_at=m["created_at"],
            retention_expires_at=m["retention_expires_at"],
            completed_at=m["completed_at"],
            result_payload=_as_bytes(m["result_payload"]),
            error_payload=_as_bytes(m["error_payload"]),
        )

    @staticmethod
    def _key_params(key: IdempotencyKey) -> dict[str, Any]:
        return {"scope": key.scope, "token": key.token}

    def _select(self, conn: Connection, key: IdempotencyKey) -> IdempotencyRecord | None:
        row = conn.execute(self._SELECT_SQL, self._key_params(key)).fetchone()
        return None if row is None else self._row_to_record(row)

    def _claim_with_conn(
        self,
        conn: Connection,
        key: IdempotencyKey,
        owner_token: str,
        lease_duration: timedelta,
        now: datetime,
    ) -> ClaimResult:
        record = new_claim_record(key, owner_token, lease_duration, now)
        params = {
            **self._key_params(key),
            "owner_token": owner_token,
            "lease_expires_at": record.lease_expires_at,
            "created_at": record.created_at,
            "retention_expires_at": record.retention_expires_at,
        }
        for _ in range(_CLAIM_RACE_RETRIES):
            if conn.execute(self._INSERT_SQL, params).fetchone() is not None:
                return ClaimResult(ClaimOutcome.CLAIMED, record)
            existing = self._select(conn, key)
            if existing is not None:
                return ClaimResult.from_existing(existing, now)
        raise StoreUnavailableError(f"Claim for {key} did not settle after repeated contention")

    @traced_store_operation("try_claim")
    def try_claim(
        self,
        key: IdempotencyKey,
        owner_token: str,
        lease_duration: timedelta,
        now: datetime,
        conn: Connection | None = None,
    ) -> ClaimResult:
        ensure_positive("lease_duration", lease_duration)
        with _store_errors("claim idempotency key"), self._transaction(conn) as tx:
            return self._claim_with_conn(tx, key, owner_token, lease_duration, now)

    @traced_store_operation("reclaim")
    def reclaim(
        self,
        key: IdempotencyKey,
        stale_owner_token: str,
        owner_token: str,
        lease_duration: timedelta,
        now: datetime,
        conn: Connection | None = None,
    ) -> ClaimResult:
        ensure_positive("lease_duration", lease_duration)
        record = new_claim_record(key, owner_token, lease_duration, now)
        with _store_errors("reclaim idempotency key"), self._transaction(conn) as tx:
            row = tx.execute(
                self._RECLAIM_SQL,
                {
                    **self._key_params(key),
                    "owner_token": owner_token,
                    "stale_owner_token": stale_owner_token,
                    "lease_expires_at": record.lease_expires_at,
                    "now": now,
                },
            ).fetchone()
            if row is not None:
                return ClaimResult(ClaimOutcome.CLAIMED, record)
            return self._claim_with_conn(tx, key, owner_token, lease_duration, now)

    def _finalize(
        self,
        key: IdempotencyKey,
        owner_token: str,
        status: RecordStatus,
        result_payload: bytes | None,
        error_payload: bytes | None,
        retention_duration: timedelta,
        now: datetime,
        conn: Connection | None,
    ) -> IdempotencyRecord:
        ensure_positive("retention_duration", retention_duration)
        with _store_errors("record idempotency outcome"), self._transaction(conn) as tx:
            row = tx.execute(
                self._FINALIZE_SQL,
                {
                    **self._key_params(key),
                    "status": status.value,
                    "now": now,
                    "retention_expires_at": now + retention_duration,
                    "result_payload": result_payload,
                    "error_payload": error_payload,
                    "owner_token": owner_token,
                },
            ).fetchone()
            if row is not None:
                return self._row_to_record(row)
            current = self._select(tx, key)
        raise LeaseLostError(key, owner_token, lost_reason(current, owner_token))

    @traced_store_operation("complete")
    def complete(
        self,
        key: IdempotencyKey,
        owner_token: str,
        result_payload: bytes,
        retention_duration: timedelta,
        now: datetime,
        conn: Connection | None = None,
    ) -> IdempotencyRecord:
        return self._finalize(
            key,
            owner_token,
            RecordStatus.COMPLETED,
            result_payload,
            None,
            retention_duration,
            now,
            conn,
        )

    @traced_store_operation("fail")
    def fail(
        self,
        key: IdempotencyKey,
        owner_token: str,
        error_payload: bytes,
        retention_duration: timedelta,
        now: datetime,
        conn: Connection | None = None,
    ) -> IdempotencyRecord:
        return self._finalize(
            key,
            owner_token,
            RecordStatus.FAILED,
            None,
            error_payload,
            retention_duration,
            now,
            conn,
        )

    @traced_store_operation("release")
    def release(
        self, key: IdempotencyKey, owner_token: str, conn: Connection | None = None
    ) -> None:
        with _store_errors("release idempotency key"), self._transaction(conn) as tx:
            result = tx.execute(
                self._RELEASE_SQL, {**self._key_params(key), "owner_token": owner_token}
            )
            if result.rowcount == 1:
                return
            current = self._select(tx, key)
        raise LeaseLostError(key, owner_token, lost_reason(current, owner_token))

    @traced_store_operation("renew_lease")
    def renew_lease(
        self,
        key: IdempotencyKey,
        owner_token: str,
        new_expiry: datetime,
        now: datetime,
        conn: Connection | None = None,
    ) -> IdempotencyRecord:
        with _store_errors("renew lease"), self._transaction(conn) as tx:
            row = tx.execute(
                self._RENEW_SQL,
                {
                    **self._key_params(key),
                    "owner_token": owner_token,
                    "new_expiry": new_expiry,
                    "now": now,
                },
            ).fetchone()
            if row is not None:
                return self._row_to_record(row)
            current = self._select(tx, key)
        reason = lost_reason(current, owner_token)
        if reason == "record is claimed":
            reason = "lease already expired"
        raise LeaseLostError(key, owner_token, reason)

    @traced_store_operation("delete_failed")
    def delete_failed(self, key: IdempotencyKey, conn: Connection | None = None) -> bool:
        with _store_errors("delete failed record"), self._transaction(conn) as tx:
            result = tx.execute(self._DELETE_FAILED_SQL, self._key_params(key))
            return result.rowcount == 1

    @traced_store_operation("get")
    def get(self, key: IdempotencyKey, conn: Connection | None = None) -> IdempotencyRecord | None:
        with _store_errors("lookup idempotency record"), self._transaction(conn) as tx:
            return self._select(tx, key)

    @traced_store_sweep("delete_expired_leases")
    def delete_expired_leases(self, now: datetime, conn: Connection | None = None) -> int:
        with _store_errors("purge expired leases"), self._transaction(conn) as tx:
            return tx.execute(self._DELETE_EXPIRED_LEASES_SQL, {"now": now}).rowcount

    @traced_store_sweep("delete_expired_completed")
    def delete_expired_completed(self, now: datetime, conn: Connection | None = None) -> int:
        with _store_errors("purge expired records"), self._transaction(conn) as tx:
            return tx.execute(self._DELETE_EXPIRED_COMPLETED_SQL, {"now": now}).rowcount


def get_postgres_idempotency_store(engine: Engine | None = None) -> PostgresIdempotencyStore:
    """Factory function to create a PostgreSQL idempotency store."""
    return PostgresIdempotencyStore(engine=engine)
