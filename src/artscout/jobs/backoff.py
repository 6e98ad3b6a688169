"""Retry delay computation for failed job attempts."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

DEFAULT_MAX_BACKOFF_DELAY_MS = 60 * 60 * 1000


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    type: BackoffType
    delay_ms: int
    max_delay_ms: int = DEFAULT_MAX_BACKOFF_DELAY_MS

    def __post_init__(self) -> None:
        if self.delay_ms < 0:
            raise ValueError("delay_ms cannot be negative")
        if self.max_delay_ms < 0:
            raise ValueError("max_delay_ms cannot be negative")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    attempts: int
    backoff: BackoffConfig

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")


def compute_backoff_delay(backoff: BackoffConfig, attempts: int) -> int:
    """Return the delay in milliseconds before the next attempt.

    ``attempts`` is the number of attempts already made (1 after the first
    failure). Fixed backoff always waits ``delay_ms``; exponential backoff
    waits ``delay_ms * 2^(attempts - 1)`` capped at ``max_delay_ms``.
    """
    if attempts < 1:
        attempts = 1

    if backoff.type == BackoffType.FIXED:
        return backoff.delay_ms

    # Avoid computing huge powers for runaway attempt counts
    exponent = min(attempts - 1, 62)
    delay = backoff.delay_ms * (2**exponent)
    return min(delay, backoff.max_delay_ms)


def should_retry(attempts: int, max_attempts: int) -> bool:
    return attempts < max_attempts
