"""SQLite-backed idempotency store.

Claim atomicity comes from the (scope, token) primary key: a plain INSERT
either creates the record or fails with IntegrityError, in which case the
existing row is read and classified. Every transition is a conditional
UPDATE/DELETE that matches on owner_token and status, checked via rowcount.

Environment:
    ONCELY_IDEMPOTENCY_DB_PATH: Path to SQLite database file.
        Default: ./var/oncely/idempotency.sqlite3
"""

from __future__ import annotations

import contextlib
import logging
import os
import sqlite3
import threading
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path

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

logger = logging.getLogger(__name__)

ONCELY_IDEMPOTENCY_DB_PATH_ENV = "ONCELY_IDEMPOTENCY_DB_PATH"
DEFAULT_IDEMPOTENCY_DB_PATH = "./var/oncely/idempotency.sqlite3"

_CLAIM_RACE_RETRIES = 3


def _to_db(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 so lexical order matches time order."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class SqliteIdempotencyStore(IdempotencyStore):
    """SQLite-backed idempotency store with thread-local connections.

    Creates the database and parent directories on first use and enables WAL
    mode for better concurrent reads. With in_memory=True a private
    shared-cache in-memory database is used instead (for tests).
    """

    backend_name = "sqlite"

    _CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS idempotency_records (
            scope TEXT NOT NULL,
            token TEXT NOT NULL,
            status TEXT NOT NULL,
            owner_token TEXT NOT NULL,
            lease_expires_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            completed_at TEXT,
            retention_expires_at TEXT NOT NULL,
            result_payload BLOB,
            error_payload BLOB,
            PRIMARY KEY (scope, token)
        )
    """

    _CREATE_INDEXES_SQL = (
        """
        CREATE INDEX IF NOT EXISTS ix_idempotency_records_lease
        ON idempotency_records (status, lease_expires_at)
        """,
        """
        CREATE INDEX IF NOT EXISTS ix_idempotency_records_retention
        ON idempotency_records (retention_expires_at)
        """,
    )

    _SELECT_SQL = """
        SELECT scope, token, status, owner_token, lease_expires_at, created_at,
               completed_at, retention_expires_at, result_payload, error_payload
        FROM idempotency_records
        WHERE scope = ? AND token = ?
    """

    _INSERT_SQL = """
        INSERT INTO idempotency_records
        (scope, token, status, owner_token, lease_expires_at, created_at,
         retention_expires_at)
        VALUES (?, ?, 'claimed', ?, ?, ?, ?)
    """

    _RECLAIM_SQL = """
        UPDATE idempotency_records
        SET owner_token = ?, lease_expires_at = ?, created_at = ?, retention_expires_at = ?
        WHERE scope = ? AND token = ? AND status = 'claimed'
            AND owner_token = ? AND lease_expires_at <= ?
    """

    _FINALIZE_SQL = """
        UPDATE idempotency_records
        SET status = ?, completed_at = ?, retention_expires_at = ?,
            result_payload = ?, error_payload = ?
        WHERE scope = ? AND token = ? AND status = 'claimed' AND owner_token = ?
    """

    _RENEW_SQL = """
        UPDATE idempotency_records
        SET lease_expires_at = ?, retention_expires_at = ?
        WHERE scope = ? AND token = ? AND status = 'claimed' AND owner_token = ?
            AND lease_expires_at > ?
    """

    _RELEASE_SQL = """
        DELETE FROM idempotency_records
        WHERE scope = ? AND token = ? AND status = 'claimed' AND owner_token = ?
    """

    _DELETE_FAILED_SQL = """
        DELETE FROM idempotency_records
        WHERE scope = ? AND token = ? AND status = 'failed'
    """

    _DELETE_EXPIRED_LEASES_SQL = """
        DELETE FROM idempotency_records
        WHERE status = 'claimed' AND lease_expires_at <= ?
    """

    _DELETE_EXPIRED_COMPLETED_SQL = """
        DELETE FROM idempotency_records
        WHERE status IN ('completed', 'failed') AND retention_expires_at <= ?
    """

    def __init__(self, db_path: str | None = None, in_memory: bool = False) -> None:
        """Initialize the idempotency store.

        Args:
            db_path: Path to SQLite database file. If None, uses environment
                variable ONCELY_IDEMPOTENCY_DB_PATH or default path.
            in_memory: Use a private in-memory database shared by this
                store's thread-local connections.
        """
        self._in_memory = in_memory
        if in_memory:
            self._db_path = f"file:oncely-{uuid.uuid4().hex}?mode=memory&cache=shared"
        else:
            self._db_path = db_path or os.environ.get(
                ONCELY_IDEMPOTENCY_DB_PATH_ENV, DEFAULT_IDEMPOTENCY_DB_PATH
            )
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._anchor: sqlite3.Connection | None = None

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._db_path, uri=self._in_memory, check_same_thread=False, timeout=10.0
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create a thread-local database connection.

        Raises:
            StoreUnavailableError: If connection cannot be established.
        """
        if not self._initialized:
            with self._init_lock:
                if not self._initialized:
                    self._ensure_database()
                    self._initialized = True

        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = self._connect()
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Failed to connect to idempotency store: {e}") from e
            self._local.conn = conn
            with self._init_lock:
                self._connections.append(conn)
        return conn

    def _ensure_database(self) -> None:
        """Create database file, table and indexes if they don't exist.

        Raises:
            StoreUnavailableError: If database cannot be created.
        """
        try:
            if self._in_memory:
                # An in-memory database lives only while a connection is open.
                self._anchor = self._connect()
                conn = self._anchor
            else:
                db_path = Path(self._db_path)
                if db_path.is_dir():
                    raise StoreUnavailableError(
                        f"Idempotency store path is a directory: {self._db_path}"
                    )
                db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = self._connect()
                conn.execute("PRAGMA journal_mode=WAL")

            try:
                conn.execute(self._CREATE_TABLE_SQL)
                for statement in self._CREATE_INDEXES_SQL:
                    conn.execute(statement)
                conn.commit()
            finally:
                if conn is not self._anchor:
                    conn.close()

            logger.info("Initialized idempotency store at %s", self._db_path)

        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to initialize idempotency store: {e}") from e
        except OSError as e:
            raise StoreUnavailableError(f"Failed to create idempotency store directory: {e}") from e

    def _row_to_record(self, row: sqlite3.Row) -> IdempotencyRecord:
        result_payload = row["result_payload"]
        error_payload = row["error_payload"]
        return IdempotencyRecord(
            key=IdempotencyKey(row["scope"], row["token"]),
            status=RecordStatus(row["status"]),
            owner_token=row["owner_token"],
            lease_expires_at=datetime.fromisoformat(row["lease_expires_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            retention_expires_at=datetime.fromisoformat(row["retention_expires_at"]),
            completed_at=_from_db(row["completed_at"]),
            result_payload=bytes(result_payload) if result_payload is not None else None,
            error_payload=bytes(error_payload) if error_payload is not None else None,
        )

    def _select(self, conn: sqlite3.Connection, key: IdempotencyKey) -> IdempotencyRecord | None:
        row = conn.execute(self._SELECT_SQL, (key.scope, key.token)).fetchone()
        return None if row is None else self._row_to_record(row)

    def _insert_claim(
        self, conn: sqlite3.Connection, record: IdempotencyRecord
    ) -> bool:
        """Insert a CLAIMED row. Returns False on a primary key conflict."""
        try:
            with conn:
                conn.execute(
                    self._INSERT_SQL,
                    (
                        record.key.scope,
                        record.key.token,
                        record.owner_token,
                        _to_db(record.lease_expires_at),
                        _to_db(record.created_at),
                        _to_db(record.retention_expires_at),
                    ),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def _claim_with_conn(
        self,
        conn: sqlite3.Connection,
        key: IdempotencyKey,
        owner_token: str,
        lease_duration: timedelta,
        now: datetime,
    ) -> ClaimResult:
        record = new_claim_record(key, owner_token, lease_duration, now)
        for _ in range(_CLAIM_RACE_RETRIES):
            if self._insert_claim(conn, record):
                return ClaimResult(ClaimOutcome.CLAIMED, record)
            existing = self._select(conn, key)
            if existing is not None:
                return ClaimResult.from_existing(existing, now)
            # Row was deleted between the failed insert and the read; try again.
        raise StoreUnavailableError(f"Claim for {key} did not settle after repeated contention")

    @traced_store_operation("try_claim")
    def try_claim(
        self,
        key: IdempotencyKey,
        owner_token: str,
        lease_duration: timedelta,
        now: datetime,
    ) -> ClaimResult:
        ensure_positive("lease_duration", lease_duration)
        try:
            conn = self._get_connection()
            return self._claim_with_conn(conn, key, owner_token, lease_duration, now)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to claim idempotency key: {e}") from e

    @traced_store_operation("reclaim")
    def reclaim(
        self,
        key: IdempotencyKey,
        stale_owner_token: str,
        owner_token: str,
        lease_duration: timedelta,
        now: datetime,
    ) -> ClaimResult:
        ensure_positive("lease_duration", lease_duration)
        record = new_claim_record(key, owner_token, lease_duration, now)
        try:
            conn = self._get_connection()
            with conn:
                cursor = conn.execute(
                    self._RECLAIM_SQL,
                    (
                        owner_token,
                        _to_db(record.lease_expires_at),
                        _to_db(now),
                        _to_db(record.retention_expires_at),
                        key.scope,
                        key.token,
                        stale_owner_token,
                        _to_db(now),
                    ),
                )
            if cursor.rowcount == 1:
                return ClaimResult(ClaimOutcome.CLAIMED, record)
            return self._claim_with_conn(conn, key, owner_token, lease_duration, now)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to reclaim idempotency key: {e}") from e

    def _finalize(
        self,
        key: IdempotencyKey,
        owner_token: str,
        status: RecordStatus,
        result_payload: bytes | None,
        error_payload: bytes | None,
        retention_duration: timedelta,
        now: datetime,
    ) -> IdempotencyRecord:
        ensure_positive("retention_duration", retention_duration)
        try:
            conn = self._get_connection()
            with conn:
                cursor = conn.execute(
                    self._FINALIZE_SQL,
                    (
                        status.value,
                        _to_db(now),
                        _to_db(now + retention_duration),
                        result_payload,
                        error_payload,
                        key.scope,
                        key.token,
                        owner_token,
                    ),
                )
            record = self._select(conn, key)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to record idempotency outcome: {e}") from e

        if cursor.rowcount != 1 or record is None:
            raise LeaseLostError(key, owner_token, lost_reason(record, owner_token))
        return record

    @traced_store_operation("complete")
    def complete(
        self,
        key: IdempotencyKey,
        owner_token: str,
        result_payload: bytes,
        retention_duration: timedelta,
        now: datetime,
    ) -> IdempotencyRecord:
        return self._finalize(
            key, owner_token, RecordStatus.COMPLETED, result_payload, None, retention_duration, now
        )

    @traced_store_operation("fail")
    def fail(
        self,
        key: IdempotencyKey,
        owner_token: str,
        error_payload: bytes,
        retention_duration: timedelta,
        now: datetime,
    ) -> IdempotencyRecord:
        return self._finalize(
            key, owner_token, RecordStatus.FAILED, None, error_payload, retention_duration, now
        )

    @traced_store_operation("release")
    def release(self, key: IdempotencyKey, owner_token: str) -> None:
        try:
            conn = self._get_connection()
            with conn:
                cursor = conn.execute(self._RELEASE_SQL, (key.scope, key.token, owner_token))
            if cursor.rowcount == 1:
                return
            record = self._select(conn, key)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to release idempotency key: {e}") from e
        raise LeaseLostError(key, owner_token, lost_reason(record, owner_token))

    @traced_store_operation("renew_lease")
    def renew_lease(
        self,
        key: IdempotencyKey,
        owner_token: str,
        new_expiry: datetime,
        now: datetime,
    ) -> IdempotencyRecord:
        try:
            conn = self._get_connection()
            with conn:
                cursor = conn.execute(
                    self._RENEW_SQL,
                    (
                        _to_db(new_expiry),
                        _to_db(new_expiry),
                        key.scope,
                        key.token,
                        owner_token,
                        _to_db(now),
                    ),
                )
            record = self._select(conn, key)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to renew lease: {e}") from e

        if cursor.rowcount != 1 or record is None:
            reason = lost_reason(record, owner_token)
            if reason == "record is claimed":
                reason = "lease already expired"
            raise LeaseLostError(key, owner_token, reason)
        return record

    @traced_store_operation("delete_failed")
    def delete_failed(self, key: IdempotencyKey) -> bool:
        try:
            conn = self._get_connection()
            with conn:
                cursor = conn.execute(self._DELETE_FAILED_SQL, (key.scope, key.token))
            return cursor.rowcount == 1
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to delete failed record: {e}") from e

    @traced_store_operation("get")
    def get(self, key: IdempotencyKey) -> IdempotencyRecord | None:
        try:
            return self._select(self._get_connection(), key)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to lookup idempotency record: {e}") from e

    def _delete_where(self, sql: str, now: datetime) -> int:
        try:
            conn = self._get_connection()
            with conn:
                cursor = conn.execute(sql, (_to_db(now),))
            return cursor.rowcount
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to purge idempotency records: {e}") from e

    @traced_store_sweep("delete_expired_leases")
    def delete_expired_leases(self, now: datetime) -> int:
        return self._delete_where(self._DELETE_EXPIRED_LEASES_SQL, now)

    @traced_store_sweep("delete_expired_completed")
    def delete_expired_completed(self, now: datetime) -> int:
        return self._delete_where(self._DELETE_EXPIRED_COMPLETED_SQL, now)

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._init_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            with contextlib.suppress(sqlite3.Error):
                conn.close()
        self._local = threading.local()
        if self._anchor is not None:
            with contextlib.suppress(sqlite3.Error):
                self._anchor.close()
            self._anchor = None
            self._initialized = False


def create_idempotency_store(db_path: str | None = None) -> SqliteIdempotencyStore:
    """Factory function to create a SQLite idempotency store.

    Args:
        db_path: Optional path to SQLite database. If None, uses environment
            variable or default path.
    """
    return SqliteIdempotencyStore(db_path=db_path)
