"""Rolling-window rate limiting for queue dispatch.

The window admits at most ``max`` dispatches in any span of ``duration_ms``.
A slot is taken when a job is handed to a worker, so jobs running in parallel
cannot overshoot the budget while their handlers are still in flight. An
entry stops counting once it is ``duration_ms`` old.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Iterable


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    max: int
    duration_ms: int

    def __post_init__(self) -> None:
        if self.max < 1:
            raise ValueError("rate limit max must be at least 1")
        if self.duration_ms < 1:
            raise ValueError("rate limit duration_ms must be at least 1")


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int = 0


def evaluate_window(
    config: RateLimitConfig, dispatch_times_ms: Iterable[int], now_ms: int
) -> RateLimitDecision:
    """Decide whether one more dispatch fits into the window ending at ``now_ms``."""
    window_start = now_ms - config.duration_ms
    in_window = sorted(t for t in dispatch_times_ms if t > window_start)
    if len(in_window) < config.max:
        return RateLimitDecision(allowed=True)

    # The oldest entry in the window is the first to free a slot
    oldest = in_window[len(in_window) - config.max]
    return RateLimitDecision(
        allowed=False, retry_after_ms=max(1, oldest + config.duration_ms - now_ms)
    )


@dataclass(slots=True)
class RollingWindowRateLimiter:
    """In-process rolling window; the Redis store keeps the same window in a sorted set."""

    config: RateLimitConfig
    _dispatches: Deque[int] = field(init=False, default_factory=deque, repr=False)

    def _prune(self, now_ms: int) -> None:
        window_start = now_ms - self.config.duration_ms
        while self._dispatches and self._dispatches[0] <= window_start:
            self._dispatches.popleft()

    def check(self, now_ms: int) -> RateLimitDecision:
        self._prune(now_ms)
        return evaluate_window(self.config, self._dispatches, now_ms)

    def try_acquire(self, now_ms: int) -> RateLimitDecision:
        decision = self.check(now_ms)
        if decision.allowed:
            self._dispatches.append(now_ms)
        return decision

    def in_window(self, now_ms: int) -> int:
        self._prune(now_ms)
        return len(self._dispatches)
