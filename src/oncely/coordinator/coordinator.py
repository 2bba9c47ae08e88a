"""Idempotent operation coordinator.

Runs a side-effecting operation at most once per idempotency key, despite
retries and duplicate submissions, and gives every caller for that key the
same outcome.

Lifecycle of one execute() call:
    1. Generate an owner token unique to this call.
    2. Claim the key in the store (atomic insert).
    3. CLAIMED            -> run the operation (step 4).
       ALREADY_COMPLETED  -> decode and return the stored result; never re-run.
       ALREADY_FAILED     -> CACHE_FAILURES: return the stored error.
                             RETRY_FAILURES: delete the failed record and claim again.
       ALREADY_IN_PROGRESS, lease live    -> FailFast: CONFLICT.
                                             WaitForCompletion: poll with backoff.
       ALREADY_IN_PROGRESS, lease expired -> take over the lease and run.
    4. Run the operation with no store lock held; the lease alone excludes
       other executions.
    5. Ok  -> complete(); Err -> fail() or release() per failure policy.

Boundary condition: if the operation outlives its lease, another caller may
reclaim the key and run the operation again. The first caller then gets
LEASE_LOST and its result is not cached. The coordinator cannot undo an
external effect; choose lease durations well above worst-case latency, enable
the heartbeat for long operations, or make the effect idempotent at its own
storage layer.

The coordinator holds no mutable state. All shared state lives in the store,
so one instance can serve any number of threads.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

from oncely.coordinator.config import (
    ConcurrencyPolicy,
    CoordinatorConfig,
    CoordinatorConfigError,
    FailFast,
    FailurePolicy,
    load_coordinator_config,
)
from oncely.coordinator.heartbeat import LeaseHeartbeat
from oncely.coordinator.results import (
    CoordinatorError,
    Err,
    ErrorKind,
    ExecutionResult,
    Ok,
    OperationResult,
)
from oncely.idempotency.codec import JsonResultCodec, ResultCodec, ResultCodecError
from oncely.idempotency.keys import IdempotencyKey
from oncely.idempotency.models import ClaimOutcome, ClaimResult, IdempotencyRecord
from oncely.idempotency.store import (
    IdempotencyStore,
    LeaseLostError,
    StoreUnavailableError,
)

logger = logging.getLogger(__name__)

Operation = Callable[[], OperationResult]


def utc_now() -> datetime:
    """Current UTC time (default coordinator clock)."""
    return datetime.now(UTC)


class IdempotencyCoordinator:
    """Coordinate claim -> execute -> finalize around an operation.

    Args:
        store: Shared record store.
        config: Defaults for per-call settings. If None, loads from environment.
        result_codec: Codec for successful results (default: JSON).
        error_codec: Codec for cached operation errors (default: JSON).
        clock: Returns the current aware datetime.
        sleep: Blocks the calling thread for the given seconds (wait polling).
    """

    def __init__(
        self,
        store: IdempotencyStore,
        config: CoordinatorConfig | None = None,
        result_codec: ResultCodec[Any] | None = None,
        error_codec: ResultCodec[Any] | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if config is None:
            config = load_coordinator_config()
        self._store = store
        self._config = config
        self._result_codec: ResultCodec[Any] = result_codec or JsonResultCodec()
        self._error_codec: ResultCodec[Any] = error_codec or JsonResultCodec()
        self._clock = clock or utc_now
        self._sleep = sleep or time.sleep

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    @property
    def store(self) -> IdempotencyStore:
        return self._store

    def execute(
        self,
        key: IdempotencyKey,
        operation: Operation,
        *,
        lease_duration: timedelta | None = None,
        retention_duration: timedelta | None = None,
        failure_policy: FailurePolicy | None = None,
        concurrency_policy: ConcurrencyPolicy | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ExecutionResult[Any, Any]:
        """Run operation at most once for key and return the shared outcome.

        Args:
            key: Idempotency key of the logical operation.
            operation: Zero-argument callable returning Ok(value) or Err(error).
            lease_duration: Overrides config.lease_duration.
            retention_duration: Overrides config.retention_duration.
            failure_policy: Overrides config.failure_policy.
            concurrency_policy: Overrides config.concurrency_policy.
            cancel_event: Set if the lease is lost while the operation runs
                (requires the heartbeat); cooperative operations may poll it.

        Returns:
            ExecutionResult with the value, or a CoordinatorError of kind
            CONFLICT, TIMEOUT, OPERATION_ERROR, LEASE_LOST or STORE_UNAVAILABLE.

        Raises:
            Exception: Whatever the operation itself raises (the claim is
                released first). Operations should report expected failures as Err.
        """
        lease = self._config.lease_duration if lease_duration is None else lease_duration
        retention = (
            self._config.retention_duration if retention_duration is None else retention_duration
        )
        if lease <= timedelta(0) or retention <= timedelta(0):
            raise CoordinatorConfigError("lease and retention durations must be positive")

        owner_token = uuid.uuid4().hex
        try:
            return self._claim_and_run(
                key,
                owner_token,
                operation,
                lease,
                retention,
                failure_policy or self._config.failure_policy,
                concurrency_policy or self._config.concurrency_policy,
                cancel_event,
            )
        except StoreUnavailableError as e:
            logger.error(
                "Idempotency store unavailable for %s: %s",
                key,
                e,
                extra={"scope": key.scope, "owner_token": owner_token},
            )
            return ExecutionResult(
                error=CoordinatorError(ErrorKind.STORE_UNAVAILABLE, str(e))
            )

    def _claim_and_run(
        self,
        key: IdempotencyKey,
        owner_token: str,
        operation: Operation,
        lease: timedelta,
        retention: timedelta,
        failure_policy: FailurePolicy,
        concurrency_policy: ConcurrencyPolicy,
        cancel_event: threading.Event | None,
    ) -> ExecutionResult[Any, Any]:
        reclaim_attempts = 0
        polls = 0
        wait_deadline: datetime | None = None

        claim = self._store.try_claim(key, owner_token, lease, self._clock())
        while True:
            if claim.claimed:
                logger.debug(
                    "Claimed %s", key, extra={"scope": key.scope, "owner_token": owner_token}
                )
                return self._run_claimed(
                    key, owner_token, operation, lease, retention, failure_policy, cancel_event
                )

            record = claim.record
            if claim.outcome == ClaimOutcome.ALREADY_COMPLETED:
                return self._replay_completed(record)

            if claim.outcome == ClaimOutcome.ALREADY_FAILED:
                if failure_policy == FailurePolicy.CACHE_FAILURES:
                    return self._replay_failed(record)
                reclaim_attempts += 1
                if reclaim_attempts > self._config.max_reclaim_attempts:
                    return self._conflict(key, "retry attempts exhausted after cached failures")
                self._store.delete_failed(key)
                claim = self._store.try_claim(key, owner_token, lease, self._clock())
                continue

            if not claim.still_leased:
                reclaim_attempts += 1
                if reclaim_attempts > self._config.max_reclaim_attempts:
                    return self._conflict(key, "reclaim attempts exhausted")
                logger.warning(
                    "Reclaiming expired lease for %s held by %s",
                    key,
                    record.owner_token,
                    extra={"scope": key.scope, "owner_token": owner_token},
                )
                claim = self._store.reclaim(
                    key, record.owner_token, owner_token, lease, self._clock()
                )
                if not (claim.outcome == ClaimOutcome.ALREADY_IN_PROGRESS and claim.still_leased):
                    continue
                # Another reclaimer won; treat it like any live owner.

            if isinstance(concurrency_policy, FailFast):
                return self._conflict(key, "another execution is in progress")

            now = self._clock()
            if wait_deadline is None:
                wait_deadline = now + concurrency_policy.timeout
            remaining = (wait_deadline - now).total_seconds()
            if remaining <= 0:
                logger.info("Timed out waiting for %s", key, extra={"scope": key.scope})
                return ExecutionResult(
                    error=CoordinatorError(
                        ErrorKind.TIMEOUT,
                        f"Timed out after {concurrency_policy.timeout} waiting for {key}",
                    )
                )

            self._sleep(min(concurrency_policy.backoff.delay(polls), remaining))
            polls += 1
            claim = self._poll(key, owner_token, lease)

    def _poll(self, key: IdempotencyKey, owner_token: str, lease: timedelta) -> ClaimResult:
        current = self._store.get(key)
        now = self._clock()
        if current is None:
            # Owner released (retry policy) or the reaper swept it: compete for it.
            return self._store.try_claim(key, owner_token, lease, now)
        return ClaimResult.from_existing(current, now)

    @contextlib.contextmanager
    def _heartbeat(
        self,
        key: IdempotencyKey,
        owner_token: str,
        lease: timedelta,
        cancel_event: threading.Event | None,
    ) -> Iterator[LeaseHeartbeat | None]:
        if not self._config.heartbeat_enabled:
            yield None
            return
        heartbeat = LeaseHeartbeat(
            self._store,
            key,
            owner_token,
            lease,
            self._config.heartbeat_interval_for(lease),
            self._clock,
            cancel_event,
        )
        with heartbeat:
            yield heartbeat

    def _run_claimed(
        self,
        key: IdempotencyKey,
        owner_token: str,
        operation: Operation,
        lease: timedelta,
        retention: timedelta,
        failure_policy: FailurePolicy,
        cancel_event: threading.Event | None,
    ) -> ExecutionResult[Any, Any]:
        try:
            with self._heartbeat(key, owner_token, lease, cancel_event):
                outcome = operation()
        except Exception:
            self._release_quietly(key, owner_token)
            raise

        if isinstance(outcome, Ok):
            return self._record_success(key, owner_token, outcome, retention)
        if isinstance(outcome, Err):
            return self._record_failure(key, owner_token, outcome, retention, failure_policy)

        self._release_quietly(key, owner_token)
        raise TypeError(f"operation must return Ok or Err, got {type(outcome).__name__}")

    def _record_success(
        self,
        key: IdempotencyKey,
        owner_token: str,
        outcome: Ok[Any],
        retention: timedelta,
    ) -> ExecutionResult[Any, Any]:
        try:
            payload = self._result_codec.encode(outcome.value)
        except ResultCodecError:
            self._release_quietly(key, owner_token)
            raise

        try:
            self._store.complete(key, owner_token, payload, retention, self._clock())
        except LeaseLostError as e:
            logger.warning(
                "Lease lost before completion of %s (%s); result not cached and the "
                "operation may have run twice. Lease duration is likely too short.",
                key,
                e.reason,
                extra={"scope": key.scope, "owner_token": owner_token},
            )
            return ExecutionResult(
                value=outcome.value,
                error=CoordinatorError(ErrorKind.LEASE_LOST, str(e)),
            )

        logger.debug("Completed %s", key, extra={"scope": key.scope, "owner_token": owner_token})
        return ExecutionResult(value=outcome.value)

    def _record_failure(
        self,
        key: IdempotencyKey,
        owner_token: str,
        outcome: Err[Any],
        retention: timedelta,
        failure_policy: FailurePolicy,
    ) -> ExecutionResult[Any, Any]:
        try:
            if failure_policy == FailurePolicy.CACHE_FAILURES:
                payload = self._error_codec.encode(outcome.error)
                self._store.fail(key, owner_token, payload, retention, self._clock())
            else:
                self._store.release(key, owner_token)
        except LeaseLostError as e:
            logger.warning(
                "Lease lost before recording failure of %s: %s",
                key,
                e.reason,
                extra={"scope": key.scope, "owner_token": owner_token},
            )
        except ResultCodecError as e:
            logger.error("Cannot encode operation error for %s, not caching it: %s", key, e)
            self._release_quietly(key, owner_token)

        return ExecutionResult(
            error=CoordinatorError(
                ErrorKind.OPERATION_ERROR,
                "operation returned an error",
                operation_error=outcome.error,
            )
        )

    def _replay_completed(self, record: IdempotencyRecord) -> ExecutionResult[Any, Any]:
        if record.result_payload is None:
            raise StoreUnavailableError(f"Completed record for {record.key} has no result payload")
        try:
            value = self._result_codec.decode(record.result_payload)
        except ResultCodecError as e:
            raise StoreUnavailableError(f"Corrupted result payload for {record.key}: {e}") from e
        logger.debug("Replaying completed result for %s", record.key)
        return ExecutionResult(value=value, replayed=True)

    def _replay_failed(self, record: IdempotencyRecord) -> ExecutionResult[Any, Any]:
        if record.error_payload is None:
            raise StoreUnavailableError(f"Failed record for {record.key} has no error payload")
        try:
            error = self._error_codec.decode(record.error_payload)
        except ResultCodecError as e:
            raise StoreUnavailableError(f"Corrupted error payload for {record.key}: {e}") from e
        logger.debug("Replaying cached failure for %s", record.key)
        return ExecutionResult(
            error=CoordinatorError(
                ErrorKind.OPERATION_ERROR,
                "cached operation error",
                operation_error=error,
            ),
            replayed=True,
        )

    def _conflict(self, key: IdempotencyKey, reason: str) -> ExecutionResult[Any, Any]:
        logger.debug("Conflict on %s: %s", key, reason, extra={"scope": key.scope})
        return ExecutionResult(error=CoordinatorError(ErrorKind.CONFLICT, reason))

    def _release_quietly(self, key: IdempotencyKey, owner_token: str) -> None:
        """Release a claim after an unexpected fault without masking that fault."""
        try:
            self._store.release(key, owner_token)
        except LeaseLostError as e:
            logger.debug("Claim on %s already taken over: %s", key, e.reason)
        except StoreUnavailableError as e:
            logger.error(
                "Could not release claim on %s; it will expire with its lease: %s", key, e
            )
