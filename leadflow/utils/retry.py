from __future__ import annotations

import random
from datetime import timedelta
from typing import Optional

from ..config import RetryConfig


def compute_backoff(
    attempt: int,
    base: float = 30.0,
    factor: float = 2.0,
    cap: float = 3600.0,
    jitter: float = 0.1,
    rng: Optional[random.Random] = None,
) -> float:
    """Compute capped exponential backoff with proportional jitter."""
    attempt = max(attempt, 1)
    delay = min(cap, base * factor ** (attempt - 1))
    spread = (rng or random).uniform(0, jitter * delay) if jitter else 0.0
    return min(cap, delay + spread)


class RetryPolicy:
    """Decides when and whether a transiently failing step is retried.

    ``attempt_count`` is the number of consecutive ``error`` runs recorded for
    the enrollment, read from the run audit trail by the caller.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 30.0,
        factor: float = 2.0,
        max_delay: float = 3600.0,
        jitter: float = 0.1,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.factor = factor
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            factor=config.factor,
            max_delay=config.max_delay_seconds,
            jitter=config.jitter,
        )

    def next_delay(self, attempt_count: int) -> timedelta:
        seconds = compute_backoff(
            attempt_count,
            base=self.base_delay,
            factor=self.factor,
            cap=self.max_delay,
            jitter=self.jitter,
            rng=self._rng,
        )
        return timedelta(seconds=seconds)

    def is_terminal(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts
