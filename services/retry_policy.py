"""Retry decisions and exponential backoff for failed sync operations.

Delays grow as 1s, 2s, 4s, 8s, 16s and are capped at 32s, with up to 10%
random jitter added so that many clients coming back online at once do not
hit the backend in lockstep.
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

from core.settings import SYNC, SyncSettings


# Client errors that still make sense to retry
RETRYABLE_CLIENT_STATUS = {408, 425, 429}


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 32000
    jitter_ratio: float = 0.1
    retry_client_errors: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < self.base_delay_ms:
            raise ValueError("delays must satisfy 0 <= base_delay_ms <= max_delay_ms")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be between 0 and 1")

    @classmethod
    def from_settings(cls, settings: SyncSettings = SYNC) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_ms=settings.base_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            jitter_ratio=settings.jitter_ratio,
            retry_client_errors=settings.retry_client_errors,
        )

    def is_retryable(self, status: Optional[int] = None, error: Optional[BaseException] = None) -> bool:
        """Classify one failed dispatch.

        Thrown errors (network, timeout) and responses without a status are
        transient. 4xx responses burn the retry budget only when
        ``retry_client_errors`` is on.
        """
        if error is not None or status is None:
            return True
        if status >= 500:
            return True
        if 400 <= status < 500:
            return self.retry_client_errors or status in RETRYABLE_CLIENT_STATUS
        return True

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def should_retry(
        self,
        attempts: int,
        status: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> bool:
        return not self.is_exhausted(attempts) and self.is_retryable(status, error)

    def next_delay(self, attempts: int, rng: Optional[random.Random] = None) -> int:
        """Backoff before the next attempt, in milliseconds."""
        exponent = max(attempts, 0)
        delay = min(self.base_delay_ms * (2 ** exponent), self.max_delay_ms)
        if self.jitter_ratio:
            source = rng or random
            delay += delay * source.random() * self.jitter_ratio
        return int(round(delay))

    def next_delay_seconds(self, attempts: int, rng: Optional[random.Random] = None) -> float:
        return self.next_delay(attempts, rng) / 1000

    def describe(self, attempts: int) -> str:
        return f"Retry {min(attempts, self.max_attempts)}/{self.max_attempts}"


__all__ = ["RetryPolicy", "RETRYABLE_CLIENT_STATUS"]
