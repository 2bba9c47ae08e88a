"""Idempotency record store interface and in-memory implementation.

The store is the only shared mutable resource of the coordinator. Every
implementation must make claim atomic (unique-constraint insert or an
equivalent conditional write) and must compare owner tokens on every
transition, so a reclaimed (zombie) owner can never overwrite a newer
attempt's outcome.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta

from oncely.idempotency.keys import IdempotencyKey
from oncely.idempotency.models import (
    ClaimOutcome,
    ClaimResult,
    IdempotencyRecord,
    RecordStatus,
)
from oncely.observability.tracing import traced_store_operation, traced_store_sweep

logger = logging.getLogger(__name__)


class IdempotencyStoreError(Exception):
    """Base class for store errors."""


class StoreUnavailableError(IdempotencyStoreError):
    """Raised when the backing store cannot be reached or is corrupted.

    The coordinator never retries these internally; retrying is the caller's
    decision.
    """


class LeaseLostError(IdempotencyStoreError):
    """Raised when a transition is attempted by a caller that no longer holds the lease.

    The record is missing, no longer CLAIMED, or owned by another attempt.
    """

    def __init__(self, key: IdempotencyKey, owner_token: str, reason: str) -> None:
        super().__init__(f"Lease lost for {key}: {reason}")
        self.key = key
        self.owner_token = owner_token
        self.reason = reason


def new_claim_record(
    key: IdempotencyKey, owner_token: str, lease_duration: timedelta, now: datetime
) -> IdempotencyRecord:
    """Build the CLAIMED record written by a successful claim."""
    lease_expires_at = now + lease_duration
    return IdempotencyRecord(
        key=key,
        status=RecordStatus.CLAIMED,
        owner_token=owner_token,
        lease_expires_at=lease_expires_at,
        created_at=now,
        retention_expires_at=lease_expires_at,
    )


def lost_reason(record: IdempotencyRecord | None, owner_token: str) -> str:
    """Explain why a conditional transition for owner_token matched no record."""
    if record is None:
        return "record missing"
    if record.owner_token != owner_token:
        return "owned by another attempt"
    return f"record is {record.status.value}"


def ensure_positive(name: str, value: timedelta) -> None:
    if value <= timedelta(0):
        raise ValueError(f"{name} must be positive, got {value}")


class IdempotencyStore(ABC):
    """Abstract persistence for idempotency records."""

    backend_name: str = "abstract"

    @abstractmethod
    def try_claim(
        self,
        key: IdempotencyKey,
        owner_token: str,
        lease_duration: timedelta,
        now: datetime,
    ) -> ClaimResult:
        """Atomically create a CLAIMED record, or classify the existing one.

        Returns:
            CLAIMED with the new record, otherwise the existing record
            classified as ALREADY_COMPLETED, ALREADY_FAILED or
            ALREADY_IN_PROGRESS (with still_leased evaluated against now).

        Raises:
            StoreUnavailableError: On backend failure.
        """

    @abstractmethod
    def reclaim(
        self,
        key: IdempotencyKey,
        stale_owner_token: str,
        owner_token: str,
        lease_duration: timedelta,
        now: datetime,
    ) -> ClaimResult:
        """Take over an expired lease held by stale_owner_token.

        Succeeds only if the record is still CLAIMED by stale_owner_token and
        its lease has expired at now. Otherwise the current state is returned
        as try_claim would report it; if the record has disappeared a fresh
        claim is attempted.
        """

    @abstractmethod
    def complete(
        self,
        key: IdempotencyKey,
        owner_token: str,
        result_payload: bytes,
        retention_duration: timedelta,
        now: datetime,
    ) -> IdempotencyRecord:
        """Transition CLAIMED -> COMPLETED.

        Raises:
            LeaseLostError: If the record is missing, not CLAIMED, or owned by another token.
        """

    @abstractmethod
    def fail(
        self,
        key: IdempotencyKey,
        owner_token: str,
        error_payload: bytes,
        retention_duration: timedelta,
        now: datetime,
    ) -> IdempotencyRecord:
        """Transition CLAIMED -> FAILED, caching the encoded error for replay.

        Raises:
            LeaseLostError: Same preconditions as complete().
        """

    @abstractmethod
    def release(self, key: IdempotencyKey, owner_token: str) -> None:
        """Delete a CLAIMED record held by owner_token so the next call retries.

        Raises:
            LeaseLostError: If the record is missing, not CLAIMED, or owned by another token.
        """

    @abstractmethod
    def renew_lease(
        self,
        key: IdempotencyKey,
        owner_token: str,
        new_expiry: datetime,
        now: datetime,
    ) -> IdempotencyRecord:
        """Extend the lease of a CLAIMED record held by owner_token.

        Raises:
            LeaseLostError: If the record is missing, not CLAIMED, owned by
                another token, or its lease already expired at now.
        """

    @abstractmethod
    def delete_failed(self, key: IdempotencyKey) -> bool:
        """Delete a FAILED record so the key can be claimed again.

        Returns:
            True if a FAILED record was deleted.
        """

    @abstractmethod
    def get(self, key: IdempotencyKey) -> IdempotencyRecord | None:
        """Read the record for key, or None."""

    @abstractmethod
    def delete_expired_leases(self, now: datetime) -> int:
        """Delete CLAIMED records whose lease expired at or before now."""

    @abstractmethod
    def delete_expired_completed(self, now: datetime) -> int:
        """Delete COMPLETED/FAILED records whose retention expired at or before now."""

    def close(self) -> None:
        """Release backend resources. No-op by default."""
        return None


class InMemoryIdempotencyStore(IdempotencyStore):
    """Thread-safe, process-local store.

    A single lock serialises every operation, which makes claim atomic.
    Suitable for tests and single-process deployments.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self._records: dict[IdempotencyKey, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    def _owned_claim_locked(self, key: IdempotencyKey, owner_token: str) -> IdempotencyRecord:
        record = self._records.get(key)
        if (
            record is None
            or record.owner_token != owner_token
            or record.status != RecordStatus.CLAIMED
        ):
            raise LeaseLostError(key, owner_token, lost_reason(record, owner_token))
        return record

    @traced_store_operation("try_claim")
    def try_claim(
        self,
        key: IdempotencyKey,
        owner_token: str,
        lease_duration: timedelta,
        now: datetime,
    ) -> ClaimResult:
        ensure_positive("lease_duration", lease_duration)
        with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                return ClaimResult.from_existing(existing, now)
            record = new_claim_record(key, owner_token, lease_duration, now)
            self._records[key] = record
            return ClaimResult(ClaimOutcome.CLAIMED, record)

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
        with self._lock:
            existing = self._records.get(key)
            if existing is None:
                record = new_claim_record(key, owner_token, lease_duration, now)
                self._records[key] = record
                return ClaimResult(ClaimOutcome.CLAIMED, record)
            if existing.owner_token == stale_owner_token and existing.is_lease_expired(now):
                record = new_claim_record(key, owner_token, lease_duration, now)
                self._records[key] = record
                return ClaimResult(ClaimOutcome.CLAIMED, record)
            return ClaimResult.from_existing(existing, now)

    @traced_store_operation("complete")
    def complete(
        self,
        key: IdempotencyKey,
        owner_token: str,
        result_payload: bytes,
        retention_duration: timedelta,
        now: datetime,
    ) -> IdempotencyRecord:
        ensure_positive("retention_duration", retention_duration)
        with self._lock:
            record = self._owned_claim_locked(key, owner_token)
            completed = replace(
                record,
                status=RecordStatus.COMPLETED,
                completed_at=now,
                retention_expires_at=now + retention_duration,
                result_payload=bytes(result_payload),
            )
            self._records[key] = completed
            return completed

    @traced_store_operation("fail")
    def fail(
        self,
        key: IdempotencyKey,
        owner_token: str,
        error_payload: bytes,
        retention_duration: timedelta,
        now: datetime,
    ) -> IdempotencyRecord:
        ensure_positive("retention_duration", retention_duration)
        with self._lock:
            record = self._owned_claim_locked(key, owner_token)
            failed = replace(
                record,
                status=RecordStatus.FAILED,
                completed_at=now,
                retention_expires_at=now + retention_duration,
                error_payload=bytes(error_payload),
            )
            self._records[key] = failed
            return failed

    @traced_store_operation("release")
    def release(self, key: IdempotencyKey, owner_token: str) -> None:
        with self._lock:
            self._owned_claim_locked(key, owner_token)
            del self._records[key]

    @traced_store_operation("renew_lease")
    def renew_lease(
        self,
        key: IdempotencyKey,
        owner_token: str,
        new_expiry: datetime,
        now: datetime,
    ) -> IdempotencyRecord:
        with self._lock:
            record = self._owned_claim_locked(key, owner_token)
            if record.is_lease_expired(now):
                raise LeaseLostError(key, owner_token, "lease already expired")
            renewed = replace(record, lease_expires_at=new_expiry, retention_expires_at=new_expiry)
            self._records[key] = renewed
            return renewed

    @traced_store_operation("delete_failed")
    def delete_failed(self, key: IdempotencyKey) -> bool:
        with self._lock:
            record = self._records.get(key)
            if record is None or record.status != RecordStatus.FAILED:
                return False
            del self._records[key]
            return True

    @traced_store_operation("get")
    def get(self, key: IdempotencyKey) -> IdempotencyRecord | None:
        with self._lock:
            return self._records.get(key)

    @traced_store_sweep("delete_expired_leases")
    def delete_expired_leases(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, r in self._records.items() if r.is_lease_expired(now)]
            for k in expired:
                del self._records[k]
        return len(expired)

    @traced_store_sweep("delete_expired_completed")
    def delete_expired_completed(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, r in self._records.items() if r.is_retention_expired(now)]
            for k in expired:
                del self._records[k]
        return len(expired)

    def clear(self) -> None:
        """Remove every record (test utility)."""
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
