"""
Delivery retry policy: exponential backoff with an attempt budget.

Attempt N (1-based) is rescheduled ``base * multiplier^(N-1)`` seconds after
it failed, capped at ``cap`` seconds. Jitter is off by default so that
scheduled times are reproducible under a simulated clock.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import timedelta

from ..config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one (event, terminal) delivery."""

    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    cap: float = 300.0
    ack_timeout: float = 30.0
    jitter: bool = False

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.delivery_max_attempts,
            base_delay=settings.delivery_backoff_base_seconds,
            multiplier=settings.delivery_backoff_multiplier,
            cap=settings.delivery_backoff_cap_seconds,
            ack_timeout=settings.delivery_ack_timeout_seconds,
        )

    def delay_for(self, attempt: int) -> timedelta:
        return timedelta(
            seconds=calculate_retry_delay(
                attempt,
                base_delay=self.base_delay,
                multiplier=self.multiplier,
                cap=self.cap,
                jitter=self.jitter,
            )
        )

    def is_exhausted(self, failed_attempts: int) -> bool:
        return failed_attempts >= self.max_attempts


def calculate_retry_delay(
    attempt: int,
    base_delay: float = 1.0,
    multiplier: float = 2.0,
    cap: float = 300.0,
    jitter: bool = False,
) -> float:
    """
    Calculate retry delay using exponential backoff.

    Args:
        attempt: Failed attempt number (1-based)
        base_delay: Delay after the first failed attempt, in seconds
        multiplier: Growth factor per attempt
        cap: Maximum delay in seconds
        jitter: Whether to apply +/-50% jitter

    Returns:
        float: Delay in seconds
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")

    capped_delay = min(cap, base_delay * (multiplier ** (attempt - 1)))

    if jitter:
        return capped_delay * random.uniform(0.5, 1.5)
    return capped_delay
