"""Exponential backoff for failed poll cycles."""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass
class BackoffPolicy:
    """Delay before the next poll after consecutive failures.

    The k-th consecutive failure waits ``base * exponential_base ** (k - 1)``
    seconds, capped at ``max_delay``. With a 1s base: 1s, 2s, 4s, ...
    """

    max_delay: float = 900.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = False  # ±25% random variation

    def calculate_delay(self, base: float, failures: int) -> float:
        """Calculate the delay for a given failure count.

        Args:
            base: Normal poll interval of the account
            failures: Consecutive failed cycles (0 = healthy)

        Returns:
            Delay in seconds
        """
        if failures <= 0:
            return base

        delay = base * (self.exponential_base ** (failures - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)
