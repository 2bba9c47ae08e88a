"""Persisted idempotency record model and claim outcomes.

Record lifecycle:
    Absent -> CLAIMED            (claim)
    CLAIMED -> COMPLETED|FAILED  (lease holder only, owner_token must match)
    CLAIMED -> Absent            (expired lease swept, or released for retry)
    COMPLETED|FAILED -> Absent   (retention elapsed, swept by the reaper)

COMPLETED is terminal: its result payload is never rewritten. Correcting a
completed record requires deleting it out of band.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from oncely.idempotency.keys import IdempotencyKey


class RecordStatus(StrEnum):
    """Status of a persisted idempotency record."""

    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"


class ClaimOutcome(StrEnum):
    """Result classification of a claim attempt."""

    CLAIMED = "claimed"
    ALREADY_COMPLETED = "already_completed"
    ALREADY_FAILED = "already_failed"
    ALREADY_IN_PROGRESS = "already_in_progress"


@dataclass(frozen=True)
class IdempotencyRecord:
    """Coordination record attached to one idempotency key.

    Attributes:
        key: The (scope, token) key this record belongs to.
        status: Current lifecycle status.
        owner_token: Token of the execution attempt holding (or last holding) the lease.
        lease_expires_at: Lease deadline; meaningful only while CLAIMED.
        created_at: When the current claim was taken.
        retention_expires_at: Earliest time the record may be physically deleted.
            For CLAIMED records this mirrors lease_expires_at.
        completed_at: When the record reached COMPLETED or FAILED.
        result_payload: Encoded result, present iff COMPLETED.
        error_payload: Encoded operation error, present iff FAILED.
    """

    key: IdempotencyKey
    status: RecordStatus
    owner_token: str
    lease_expires_at: datetime
    created_at: datetime
    retention_expires_at: datetime
    completed_at: datetime | None = None
    result_payload: bytes | None = None
    error_payload: bytes | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RecordStatus.COMPLETED, RecordStatus.FAILED)

    def is_lease_expired(self, now: datetime) -> bool:
        """True if this is a CLAIMED record whose lease has run out."""
        return self.status == RecordStatus.CLAIMED and self.lease_expires_at <= now

    def is_retention_expired(self, now: datetime) -> bool:
        """True if this is a terminal record past its retention window."""
        return self.is_terminal and self.retention_expires_at <= now


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of try_claim / reclaim.

    Attributes:
        outcome: What the claim attempt observed.
        record: The record now associated with the key.
        still_leased: For ALREADY_IN_PROGRESS, whether the other owner's lease is live.
    """

    outcome: ClaimOutcome
    record: IdempotencyRecord
    still_leased: bool = False

    @property
    def claimed(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED

    @classmethod
    def from_existing(cls, record: IdempotencyRecord, now: datetime) -> ClaimResult:
        """Classify a record that blocked a claim attempt."""
        if record.status == RecordStatus.COMPLETED:
            return cls(ClaimOutcome.ALREADY_COMPLETED, record)
        if record.status == RecordStatus.FAILED:
            return cls(ClaimOutcome.ALREADY_FAILED, record)
        return cls(
            ClaimOutcome.ALREADY_IN_PROGRESS,
            record,
            still_leased=not record.is_lease_expired(now),
        )
