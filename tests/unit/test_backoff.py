import random
from datetime import timedelta

import pytest

from leadflow.config import RetryConfig
from leadflow.utils.retry import RetryPolicy, compute_backoff


def test_compute_backoff_grows_exponentially_without_jitter():
    delays = [compute_backoff(n, base=30, factor=2, cap=3600, jitter=0) for n in (1, 2, 3, 4)]
    assert delays == [30, 60, 120, 240]


def test_compute_backoff_is_capped():
    assert compute_backoff(20, base=30, factor=2, cap=3600, jitter=0) == 3600
    # Jitter never pushes past the cap either.
    assert compute_backoff(20, base=30, factor=2, cap=3600, jitter=0.5) == 3600


def test_compute_backoff_jitter_stays_within_fraction():
    rng = random.Random(7)
    for _ in range(50):
        delay = compute_backoff(3, base=10, factor=2, cap=1000, jitter=0.1, rng=rng)
        assert 40 <= delay <= 44


def test_retry_policy_delay_is_non_decreasing_without_jitter():
    policy = RetryPolicy(max_attempts=10, base_delay=5, factor=3, max_delay=500, jitter=0)
    delays = [policy.next_delay(n) for n in range(1, 10)]
    assert delays == sorted(delays)
    assert delays[0] == timedelta(seconds=5)
    assert delays[-1] == timedelta(seconds=500)


def test_retry_policy_terminal_after_max_attempts():
    policy = RetryPolicy(max_attempts=3)
    assert not policy.is_terminal(1)
    assert not policy.is_terminal(2)
    assert policy.is_terminal(3)
    assert policy.is_terminal(4)


def test_retry_policy_from_config():
    policy = RetryPolicy.from_config(
        RetryConfig(max_attempts=2, base_delay_seconds=1, factor=4, max_delay_seconds=8, jitter=0)
    )
    assert policy.max_attempts == 2
    assert policy.next_delay(1) == timedelta(seconds=1)
    assert policy.next_delay(2) == timedelta(seconds=4)
    assert policy.next_delay(3) == timedelta(seconds=8)


def test_retry_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
