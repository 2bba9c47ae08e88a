"""Coordinator configuration.

Values are loaded from environment variables and validated eagerly; any
invalid value fails closed with CoordinatorConfigError.

Environment variables:
    ONCELY_LEASE_SECONDS: Lease duration (default: 30)
    ONCELY_RETENTION_SECONDS: Retention of terminal records (default: 86400)
    ONCELY_FAILURE_POLICY: "cache" or "retry" (default: cache)
    ONCELY_CONCURRENCY_POLICY: "fail_fast" or "wait" (default: fail_fast)
    ONCELY_WAIT_TIMEOUT_SECONDS: Wait budget for the "wait" policy (default: 10)
    ONCELY_WAIT_BASE_SECONDS: First poll delay (default: 0.05)
    ONCELY_WAIT_CAP_SECONDS: Maximum poll delay (default: 1.0)
    ONCELY_REAPER_INTERVAL_SECONDS: Reaper tick (default: half the lease)
    ONCELY_MAX_RECLAIM_ATTEMPTS: Bound on reclaim / retry loops (default: 3)
    ONCELY_HEARTBEAT_ENABLED: "1" to renew leases while operations run (default: 0)
    ONCELY_HEARTBEAT_SECONDS: Renewal interval (default: a third of the lease)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from typing import Final, TypeAlias

from oncely.coordinator.backoff import (
    DEFAULT_BASE_SECONDS,
    DEFAULT_CAP_SECONDS,
    BackoffPolicy,
)

ENV_LEASE_SECONDS: Final[str] = "ONCELY_LEASE_SECONDS"
ENV_RETENTION_SECONDS: Final[str] = "ONCELY_RETENTION_SECONDS"
ENV_FAILURE_POLICY: Final[str] = "ONCELY_FAILURE_POLICY"
ENV_CONCURRENCY_POLICY: Final[str] = "ONCELY_CONCURRENCY_POLICY"
ENV_WAIT_TIMEOUT_SECONDS: Final[str] = "ONCELY_WAIT_TIMEOUT_SECONDS"
ENV_WAIT_BASE_SECONDS: Final[str] = "ONCELY_WAIT_BASE_SECONDS"
ENV_WAIT_CAP_SECONDS: Final[str] = "ONCELY_WAIT_CAP_SECONDS"
ENV_REAPER_INTERVAL_SECONDS: Final[str] = "ONCELY_REAPER_INTERVAL_SECONDS"
ENV_MAX_RECLAIM_ATTEMPTS: Final[str] = "ONCELY_MAX_RECLAIM_ATTEMPTS"
ENV_HEARTBEAT_ENABLED: Final[str] = "ONCELY_HEARTBEAT_ENABLED"
ENV_HEARTBEAT_SECONDS: Final[str] = "ONCELY_HEARTBEAT_SECONDS"

DEFAULT_LEASE_SECONDS: Final[float] = 30.0
DEFAULT_RETENTION_SECONDS: Final[float] = 86400.0
DEFAULT_WAIT_TIMEOUT_SECONDS: Final[float] = 10.0
DEFAULT_MAX_RECLAIM_ATTEMPTS: Final[int] = 3


class CoordinatorConfigError(Exception):
    """Raised when coordinator configuration is invalid."""


class FailurePolicy(StrEnum):
    """What a later call observes after an operation returned Err."""

    CACHE_FAILURES = "cache"
    RETRY_FAILURES = "retry"


@dataclass(frozen=True)
class FailFast:
    """Return CONFLICT immediately while another live execution owns the key."""


@dataclass(frozen=True)
class WaitForCompletion:
    """Poll the record until the owning execution finishes or timeout elapses."""

    timeout: timedelta = timedelta(seconds=DEFAULT_WAIT_TIMEOUT_SECONDS)
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    def __post_init__(self) -> None:
        if self.timeout <= timedelta(0):
            raise CoordinatorConfigError(f"wait timeout must be positive, got {self.timeout}")


ConcurrencyPolicy: TypeAlias = FailFast | WaitForCompletion


@dataclass(frozen=True)
class CoordinatorConfig:
    """Coordinator defaults (immutable).

    Attributes:
        lease_duration: How long a claim excludes other executions.
            Choose it safely above the operation's worst-case latency.
        retention_duration: How long terminal records stay replayable.
        failure_policy: CACHE_FAILURES or RETRY_FAILURES.
        concurrency_policy: FailFast or WaitForCompletion.
        reaper_interval: Reaper tick; None means half the lease duration.
        max_reclaim_attempts: Bound on reclaim and retry-after-failure loops.
        heartbeat_enabled: Renew the lease while the operation runs.
        heartbeat_interval: Renewal period; None means a third of the lease.
    """

    lease_duration: timedelta = timedelta(seconds=DEFAULT_LEASE_SECONDS)
    retention_duration: timedelta = timedelta(seconds=DEFAULT_RETENTION_SECONDS)
    failure_policy: FailurePolicy = FailurePolicy.CACHE_FAILURES
    concurrency_policy: ConcurrencyPolicy = field(default_factory=FailFast)
    reaper_interval: timedelta | None = None
    max_reclaim_attempts: int = DEFAULT_MAX_RECLAIM_ATTEMPTS
    heartbeat_enabled: bool = False
    heartbeat_interval: timedelta | None = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.lease_duration <= timedelta(0):
            raise CoordinatorConfigError(
                f"lease_duration must be positive, got {self.lease_duration}"
            )
        if self.retention_duration <= timedelta(0):
            raise CoordinatorConfigError(
                f"retention_duration must be positive, got {self.retention_duration}"
            )
        if self.reaper_interval is not None and self.reaper_interval <= timedelta(0):
            raise CoordinatorConfigError(
                f"reaper_interval must be positive, got {self.reaper_interval}"
            )
        if self.max_reclaim_attempts < 1:
            raise CoordinatorConfigError(
                f"max_reclaim_attempts must be >= 1, got {self.max_reclaim_attempts}"
            )
        if self.heartbeat_interval is not None and not (
            timedelta(0) < self.heartbeat_interval < self.lease_duration / 2
        ):
            raise CoordinatorConfigError(
                "heartbeat_interval must be positive and less than half the lease duration, "
                f"got {self.heartbeat_interval} for lease {self.lease_duration}"
            )

    @property
    def effective_reaper_interval(self) -> timedelta:
        return self.reaper_interval or self.lease_duration / 2

    @property
    def effective_heartbeat_interval(self) -> timedelta:
        return self.heartbeat_interval_for(self.lease_duration)

    def heartbeat_interval_for(self, lease_duration: timedelta) -> timedelta:
        """Renewal period for a lease of the given length.

        Never longer than a third of the lease, so a per-call lease shorter
        than the configured one is still renewed in time.
        """
        ceiling = lease_duration / 3
        if self.heartbeat_interval is None:
            return ceiling
        return min(self.heartbeat_interval, ceiling)


def _parse_positive_float(env_var: str, default: float) -> float:
    """Parse a positive number from an environment variable.

    Raises:
        CoordinatorConfigError: If value is set but not a positive number.
    """
    raw = os.environ.get(env_var)
    if raw is None or not raw.strip():
        return default

    raw = raw.strip()
    try:
        value = float(raw)
    except ValueError as e:
        raise CoordinatorConfigError(f"{env_var} must be a positive number, got '{raw}'") from e

    if value <= 0:
        raise CoordinatorConfigError(f"{env_var} must be a positive number, got {value}")

    return value


def _parse_positive_int(env_var: str, default: int) -> int:
    raw = os.environ.get(env_var)
    if raw is None or not raw.strip():
        return default

    raw = raw.strip()
    try:
        value = int(raw)
    except ValueError as e:
        raise CoordinatorConfigError(f"{env_var} must be a positive integer, got '{raw}'") from e

    if value <= 0:
        raise CoordinatorConfigError(f"{env_var} must be a positive integer, got {value}")

    return value


def _parse_choice(env_var: str, choices: tuple[str, ...], default: str) -> str:
    raw = os.environ.get(env_var, "").strip().lower()
    if not raw:
        return default
    if raw not in choices:
        raise CoordinatorConfigError(f"{env_var} must be one of {list(choices)}, got '{raw}'")
    return raw


def _parse_bool(env_var: str) -> bool:
    return os.environ.get(env_var, "").strip().lower() in ("1", "true", "yes")


def load_coordinator_config() -> CoordinatorConfig:
    """Load coordinator configuration from environment variables.

    Raises:
        CoordinatorConfigError: If any value is invalid.
    """
    lease = timedelta(seconds=_parse_positive_float(ENV_LEASE_SECONDS, DEFAULT_LEASE_SECONDS))
    retention = timedelta(
        seconds=_parse_positive_float(ENV_RETENTION_SECONDS, DEFAULT_RETENTION_SECONDS)
    )
    failure_policy = FailurePolicy(
        _parse_choice(
            ENV_FAILURE_POLICY,
            tuple(p.value for p in FailurePolicy),
            FailurePolicy.CACHE_FAILURES.value,
        )
    )

    concurrency_policy: ConcurrencyPolicy = FailFast()
    if _parse_choice(ENV_CONCURRENCY_POLICY, ("fail_fast", "wait"), "fail_fast") == "wait":
        try:
            backoff = BackoffPolicy(
                base_seconds=_parse_positive_float(ENV_WAIT_BASE_SECONDS, DEFAULT_BASE_SECONDS),
                cap_seconds=_parse_positive_float(ENV_WAIT_CAP_SECONDS, DEFAULT_CAP_SECONDS),
            )
        except ValueError as e:
            raise CoordinatorConfigError(str(e)) from e
        concurrency_policy = WaitForCompletion(
            timeout=timedelta(
                seconds=_parse_positive_float(
                    ENV_WAIT_TIMEOUT_SECONDS, DEFAULT_WAIT_TIMEOUT_SECONDS
                )
            ),
            backoff=backoff,
        )

    reaper_interval: timedelta | None = None
    if os.environ.get(ENV_REAPER_INTERVAL_SECONDS, "").strip():
        reaper_interval = timedelta(seconds=_parse_positive_float(ENV_REAPER_INTERVAL_SECONDS, 1.0))

    heartbeat_interval: timedelta | None = None
    if os.environ.get(ENV_HEARTBEAT_SECONDS, "").strip():
        heartbeat_interval = timedelta(seconds=_parse_positive_float(ENV_HEARTBEAT_SECONDS, 1.0))

    return CoordinatorConfig(
        lease_duration=lease,
        retention_duration=retention,
        failure_policy=failure_policy,
        concurrency_policy=concurrency_policy,
        reaper_interval=reaper_interval,
        max_reclaim_attempts=_parse_positive_int(
            ENV_MAX_RECLAIM_ATTEMPTS, DEFAULT_MAX_RECLAIM_ATTEMPTS
        ),
        heartbeat_enabled=_parse_bool(ENV_HEARTBEAT_ENABLED),
        heartbeat_interval=heartbeat_interval,
    )
