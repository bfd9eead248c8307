"""Backoff schedule between chunk attempts.

The coordinator owns the attempt loop (each attempt is checkpointed), so this
module only computes delays; it does not wrap callables.
"""

from __future__ import annotations

import random

from pydantic import BaseModel, Field

from backfill_engine.options import BackfillDefaults


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum number of attempts, including the first one.",
    )
    base_delay: float = Field(
        default=0.0,
        ge=0.0,
        description="Base delay in seconds for exponential backoff (0 disables sleeping).",
    )
    max_delay: float = Field(
        default=60.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=False,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )

    @classmethod
    def from_defaults(cls, defaults: BackfillDefaults, max_attempts: int) -> RetryConfig:
        return cls(
            max_attempts=max_attempts,
            base_delay=defaults.retry_delay_seconds,
            max_delay=defaults.retry_max_delay_seconds,
        )


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay after the *attempt*-th failure (1-based)."""
    if config.base_delay <= 0:
        return 0.0
    delay: float = min(config.base_delay * (2 ** max(attempt - 1, 0)), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def should_retry(attempts: int, config: RetryConfig) -> bool:
    """Return ``True`` while another attempt is permitted."""
    return attempts < config.max_attempts
