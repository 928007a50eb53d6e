"""Tests for RetryConfig backoff."""

import pytest

from reminder_pipeline.common.resilience.retry import RetryConfig


class TestRetryConfig:
    def test_exponential_growth(self):
        retry = RetryConfig(initial_delay_seconds=1, multiplier=2, max_delay_seconds=100, jitter=0)

        assert [retry.delay_for(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 8]

    def test_capped_at_max_delay(self):
        retry = RetryConfig(initial_delay_seconds=5, max_delay_seconds=12, jitter=0)
        assert retry.delay_for(10) == 12

    def test_jitter_stays_in_range(self):
        retry = RetryConfig(initial_delay_seconds=10, max_delay_seconds=10, jitter=0.1)
        for _ in range(50):
            assert 9.0 <= retry.delay_for(1) <= 11.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"initial_delay_seconds": -1},
            {"max_delay_seconds": -1},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)
