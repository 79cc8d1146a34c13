from __future__ import annotations

from backend.app.services.backoff import (
    BackoffPolicy,
    BackoffStrategy,
    admission_policy,
    dispatch_policy,
)


def test_dispatch_policy_is_linear_with_three_attempts() -> None:
    policy = dispatch_policy()
    assert policy.max_attempts == 3
    assert policy.strategy == BackoffStrategy.linear
    assert policy.schedule() == [1.0, 2.0]


def test_admission_policy_grows_exponentially_from_thirty_seconds() -> None:
    policy = admission_policy()
    delays = policy.schedule()
    assert policy.max_attempts == 10
    assert len(delays) == 9
    assert delays[:4] == [30.0, 60.0, 120.0, 240.0]
    assert all(later > earlier for earlier, later in zip(delays, delays[1:]))


def test_attempt_budget() -> None:
    policy = BackoffPolicy(max_attempts=2, base_delay_seconds=5)
    assert policy.has_attempts_left(0)
    assert policy.has_attempts_left(1)
    assert not policy.has_attempts_left(2)
