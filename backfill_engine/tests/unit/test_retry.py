"""Unit tests for backfill_engine.executor.retry."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from backfill_engine.executor.retry import RetryConfig, compute_delay, should_retry
from backfill_engine.options import BackfillDefaults

# ---------------------------------------------------------------------------
# RetryConfig
# ---------------------------------------------------------------------------


class TestRetryConfig:
    def test_default_values(self):
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.base_delay == 0.0
        assert config.max_delay == 60.0
        assert config.jitter is False

    def test_from_defaults(self):
        defaults = BackfillDefaults(retry_delay_seconds=2, retry_max_delay_seconds=10)
        config = RetryConfig.from_defaults(defaults, max_attempts=5)
        assert config.max_attempts == 5
        assert config.base_delay == 2
        assert config.max_delay == 10

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValidationError):
            RetryConfig(max_attempts=0)


# ---------------------------------------------------------------------------
# compute_delay / should_retry
# ---------------------------------------------------------------------------


class TestComputeDelay:
    def test_zero_base_disables_sleeping(self):
        assert compute_delay(3, RetryConfig()) == 0.0

    def test_exponential_growth_no_jitter(self):
        config = RetryConfig(base_delay=1.0, max_delay=100.0)
        assert [compute_delay(n, config) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_max_delay_cap(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0)
        assert compute_delay(10, config) == 5.0

    def test_jitter_stays_within_bounds(self):
        config = RetryConfig(base_delay=10.0, max_delay=100.0, jitter=True)
        for _ in range(100):
            assert 5.0 <= compute_delay(1, config) <= 15.0


class TestShouldRetry:
    def test_attempt_budget(self):
        config = RetryConfig(max_attempts=3)
        assert [should_retry(n, config) for n in range(5)] == [True, True, True, False, False]
