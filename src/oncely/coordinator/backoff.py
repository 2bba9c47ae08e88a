"""Exponential backoff with jitter for wait-for-completion polling.

Delay for poll attempt n is base * 2**n, capped at cap, plus up to
jitter_ratio * delay of random jitter so that many waiters on one key do not
poll the store in lockstep.

Schedule (base=0.05s, cap=1.0s, no jitter):
    0.05, 0.1, 0.2, 0.4, 0.8, 1.0, 1.0, ...
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Final

DEFAULT_BASE_SECONDS: Final[float] = 0.05
DEFAULT_CAP_SECONDS: Final[float] = 1.0
DEFAULT_JITTER_RATIO: Final[float] = 0.1


def compute_backoff_seconds(
    attempt_index: int,
    base_seconds: float = DEFAULT_BASE_SECONDS,
    cap_seconds: float = DEFAULT_CAP_SECONDS,
    jitter: bool = False,
    jitter_ratio: float = DEFAULT_JITTER_RATIO,
) -> float:
    """Compute the backoff delay in seconds for a given poll attempt.

    Args:
        attempt_index: Zero-based poll attempt.
        base_seconds: Delay for the first attempt.
        cap_seconds: Maximum delay before jitter.
        jitter: If True, add random jitter up to jitter_ratio of the delay.
        jitter_ratio: Fraction of the delay used as the jitter ceiling.

    Example:
        >>> compute_backoff_seconds(0)
        0.05
        >>> compute_backoff_seconds(10)
        1.0
    """
    if attempt_index < 0:
        return 0.0

    # Cap the exponent so huge attempt counts do not overflow to inf.
    delay = base_seconds * (2 ** min(attempt_index, 62))
    delay = min(delay, cap_seconds)

    if jitter:
        delay += delay * jitter_ratio * random.random()

    return delay


@dataclass(frozen=True)
class BackoffPolicy:
    """Poll backoff settings for WaitForCompletion."""

    base_seconds: float = DEFAULT_BASE_SECONDS
    cap_seconds: float = DEFAULT_CAP_SECONDS
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError(f"base_seconds must be positive, got {self.base_seconds}")
        if self.cap_seconds < self.base_seconds:
            raise ValueError(
                f"cap_seconds ({self.cap_seconds}) must be >= base_seconds ({self.base_seconds})"
            )

    def delay(self, attempt_index: int) -> float:
        return compute_backoff_seconds(
            attempt_index,
            base_seconds=self.base_seconds,
            cap_seconds=self.cap_seconds,
            jitter=self.jitter,
        )
