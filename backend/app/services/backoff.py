from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class BackoffStrategy(str, Enum):
    linear = "linear"
    exponential = "exponential"


@dataclass(frozen=True)
class BackoffPolicy:
    """Attempt budget plus the delay that follows each failed attempt.

    Attempts are numbered from 1. ``delay_after(n)`` is the wait between
    attempt ``n`` failing and attempt ``n + 1`` starting.
    """

    max_attempts: int
    base_delay_seconds: float
    strategy: BackoffStrategy = BackoffStrategy.exponential

    def delay_after(self, attempt: int) -> float:
        step = max(1, attempt)
        if self.strategy == BackoffStrategy.linear:
            return self.base_delay_seconds * step
        return self.base_delay_seconds * (2 ** (step - 1))

    def has_attempts_left(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def schedule(self) -> list[float]:
        return [self.delay_after(attempt) for attempt in range(1, self.max_attempts)]


def dispatch_policy(*, max_attempts: int = 3, backoff_seconds: float = 1.0) -> BackoffPolicy:
    return BackoffPolicy(
        max_attempts=max_attempts,
        base_delay_seconds=backoff_seconds,
        strategy=BackoffStrategy.linear,
    )


def admission_policy(*, max_attempts: int = 10, initial_delay_seconds: float = 30.0) -> BackoffPolicy:
    return BackoffPolicy(
        max_attempts=max_attempts,
        base_delay_seconds=initial_delay_seconds,
        strategy=BackoffStrategy.exponential,
    )
