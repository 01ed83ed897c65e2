"""Per-gap retry policy with capped exponential backoff."""

from __future__ import annotations

from dataclasses import dataclass

import config


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff for a single gap.

    ``attempts`` counts retries already granted (0 before the first failure).
    """

    max_attempts: int = config.RECONCILE_MAX_ATTEMPTS
    backoff_base: float = config.RECONCILE_BACKOFF_BASE
    backoff_max: float = config.RECONCILE_BACKOFF_MAX

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {self.max_attempts}")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ValueError("backoff values must be >= 0")

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def delay(self, attempts: int) -> float:
        """Seconds to wait before retry number ``attempts + 1``."""
        return min(self.backoff_base * (2 ** attempts), self.backoff_max)
