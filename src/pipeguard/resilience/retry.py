"""
Exponential backoff policy for repeated attempts of a single operation.
"""

from __future__ import annotations

import random
from typing import Optional

from pipeguard.config.config import RetryConfig
from pipeguard.protocols import CrawlerError


class RetryPolicy:
    """
    Computes backoff delays and retry decisions from a RetryConfig.

    The policy holds no per-invocation state, so one instance is shared by
    every call against a service.
    """

    def __init__(self, config: RetryConfig, rng: Optional[random.Random] = None) -> None:
        self.config = config
        self._rng = rng or random.Random()

    def base_delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` without jitter."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        cfg = self.config
        try:
            delay = cfg.base_delay * cfg.backoff_multiplier ** (attempt - 1)
        except OverflowError:
            return cfg.max_delay
        return min(cfg.max_delay, delay)

    def next_delay(self, attempt: int) -> float:
        delay = self.base_delay_for(attempt)
        if self.config.jitter:
            return self._rng.uniform(delay / 2, delay)
        return delay

    def should_retry(self, attempt: int, error: CrawlerError) -> bool:
        """True when another attempt is allowed after ``attempt`` failed with ``error``."""
        if not error.recoverable:
            return False
        return attempt <= self.config.max_retries
