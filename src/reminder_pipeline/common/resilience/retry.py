"""Exponential backoff policy shared by connection setup."""

import random
from dataclasses import dataclass


@dataclass
class RetryConfig:
    """Backoff settings for a capped series of attempts."""

    max_attempts: int = 5
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    multiplier: float = 2.0
    # Fraction of the computed delay randomized to avoid lockstep reconnects
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """
        Seconds to wait after the given failed attempt (1-indexed).

        Grows geometrically from initial_delay_seconds and is capped at
        max_delay_seconds before jitter is applied.
        """
        base = self.initial_delay_seconds * (self.multiplier ** max(attempt - 1, 0))
        base = min(base, self.max_delay_seconds)
        if self.jitter:
            spread = base * self.jitter
            base += random.uniform(-spread, spread)
        return max(base, 0.0)


DEFAULT_RETRY = RetryConfig()
