"""Tests for idempotency keys and record classification."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime, timedelta

import pytest

from oncely.idempotency.keys import IdempotencyKey, InvalidKeyError
from oncely.idempotency.models import (
    ClaimOutcome,
    ClaimResult,
    IdempotencyRecord,
    RecordStatus,
)

EPOCH = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class TestIdempotencyKey:
    """Tests for IdempotencyKey construction and encoding."""

    def test_equal_keys_compare_equal_and_hash_equal(self) -> None:
        a = IdempotencyKey("payments", "abc123")
        b = IdempotencyKey("payments", "abc123")

        assert a == b
        assert hash(a) == hash(b)

    def test_scope_separates_identical_tokens(self) -> None:
        assert IdempotencyKey("payments", "t-1") != IdempotencyKey("refunds", "t-1")

    @pytest.mark.parametrize(
        ("scope", "token"),
        [("", "t"), ("   ", "t"), ("payments", ""), ("payments", "\t\n")],
    )
    def test_blank_parts_rejected(self, scope: str, token: str) -> None:
        with pytest.raises(InvalidKeyError):
            IdempotencyKey(scope, token)

    def test_non_string_rejected(self) -> None:
        with pytest.raises(InvalidKeyError, match="must be a string"):
            IdempotencyKey("payments", 123)  # type: ignore[arg-type]

    def test_scope_with_separator_rejected(self) -> None:
        with pytest.raises(InvalidKeyError):
            IdempotencyKey("pay\0ments", "t")

    def test_invalid_key_is_value_error(self) -> None:
        assert issubclass(InvalidKeyError, ValueError)

    def test_storage_key_round_trips(self) -> None:
        key = IdempotencyKey("payments", "token/with:odd chars")

        assert IdempotencyKey.from_storage_key(key.storage_key) == key

    def test_storage_key_without_separator_rejected(self) -> None:
        with pytest.raises(InvalidKeyError, match="separator"):
            IdempotencyKey.from_storage_key("payments-abc123")

    def test_str_does_not_leak_token(self) -> None:
        key = IdempotencyKey("payments", "secret-token")

        assert "secret-token" not in str(key)
        assert str(key).startswith("payments/")

    def test_token_sha256(self) -> None:
        key = IdempotencyKey("payments", "abc123")

        assert key.token_sha256 == hashlib.sha256(b"abc123").hexdigest()


def _record(status: RecordStatus, lease_seconds: float = 30) -> IdempotencyRecord:
    lease = EPOCH + timedelta(seconds=lease_seconds)
    return IdempotencyRecord(
        key=IdempotencyKey("payments", "abc123"),
        status=status,
        owner_token="owner-1",
        lease_expires_at=lease,
        created_at=EPOCH,
        retention_expires_at=lease,
    )


class TestClaimClassification:
    """Tests for ClaimResult.from_existing and record predicates."""

    def test_completed_record(self) -> None:
        result = ClaimResult.from_existing(_record(RecordStatus.COMPLETED), EPOCH)

        assert result.outcome == ClaimOutcome.ALREADY_COMPLETED
        assert not result.claimed

    def test_failed_record(self) -> None:
        result = ClaimResult.from_existing(_record(RecordStatus.FAILED), EPOCH)

        assert result.outcome == ClaimOutcome.ALREADY_FAILED

    def test_live_claim_is_still_leased(self) -> None:
        result = ClaimResult.from_existing(_record(RecordStatus.CLAIMED), EPOCH)

        assert result.outcome == ClaimOutcome.ALREADY_IN_PROGRESS
        assert result.still_leased is True

    def test_lease_expired_exactly_at_deadline(self) -> None:
        record = _record(RecordStatus.CLAIMED, lease_seconds=30)
        at_deadline = EPOCH + timedelta(seconds=30)

        assert record.is_lease_expired(at_deadline)
        assert ClaimResult.from_existing(record, at_deadline).still_leased is False

    def test_terminal_records_never_lease_expire(self) -> None:
        record = _record(RecordStatus.COMPLETED)

        assert record.is_terminal
        assert not record.is_lease_expired(EPOCH + timedelta(days=365))

    def test_claimed_records_never_retention_expire(self) -> None:
        record = _record(RecordStatus.CLAIMED)

        assert not record.is_retention_expired(EPOCH + timedelta(days=365))
