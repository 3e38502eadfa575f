"""
Retry backoff for transient handler failures.
"""

import random
from dataclasses import dataclass

from ai_jobs.config import Settings, get_settings


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(base_delay * 2**attempt, max_delay)``."""

    base_delay: float = 1.0
    max_delay: float = 300.0
    jitter: bool = False

    def delay(self, attempt: int) -> float:
        """
        Seconds to wait before the job becomes claimable again.

        Args:
            attempt: The attempt that just failed (1-based).
        """
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            # Add 0-50% jitter, never past the cap
            delay = min(delay * (1 + random.random() * 0.5), self.max_delay)
        return delay

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter,
        )
