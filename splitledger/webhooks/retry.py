"""Exponential backoff for failed delivery attempts."""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from splitledger.webhooks.config import WebhookSettings


def calculate_backoff_seconds(
    attempt_count: int,
    *,
    base_seconds: float,
    max_backoff_seconds: float,
) -> float:
    """
    Calculate ``base_seconds * 2 ** attempt_count`` with a hard upper bound.

    Avoids computing huge powers when attempt_count is unexpectedly large.
    """
    if attempt_count < 0:
        attempt_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0.0

    if base_seconds >= max_backoff_seconds:
        return float(max_backoff_seconds)

    # 2**64 exceeds any sane ratio between the cap and the base
    if attempt_count >= 64:
        return float(max_backoff_seconds)

    return float(min(base_seconds * (1 << attempt_count), max_backoff_seconds))


@dataclass(frozen=True)
class RetryPolicy:
    """Decides whether a failed delivery is retried and when."""

    max_attempts: int
    base_seconds: float
    max_backoff_seconds: float
    jitter_ratio: float = 0.0

    @classmethod
    def from_settings(cls, settings: WebhookSettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_seconds=settings.retry_base_delay_seconds,
            max_backoff_seconds=settings.retry_max_delay_seconds,
            jitter_ratio=settings.retry_jitter_ratio,
        )

    def should_retry(self, attempt_count: int) -> bool:
        """True while the delivery still has attempts left."""
        return attempt_count < self.max_attempts

    def backoff_seconds(
        self,
        attempt_count: int,
        rand: Callable[[], float] = random.random,
    ) -> float:
        """Delay before the next attempt, after ``attempt_count`` attempts were made.

        Jitter only ever adds delay (up to ``jitter_ratio`` of the base delay),
        with ``jitter_ratio < 1`` delays stay strictly increasing until the cap
        is reached. Configured ratios are bounded below 1.
        """
        delay = calculate_backoff_seconds(
            attempt_count,
            base_seconds=self.base_seconds,
            max_backoff_seconds=self.max_backoff_seconds,
        )
        if self.jitter_ratio > 0:
            delay = min(delay + delay * self.jitter_ratio * rand(), self.max_backoff_seconds)
        return delay

    def next_retry_at(self, attempt_count: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.backoff_seconds(attempt_count))
