"""
Retry policy for remote device calls.

Delays grow exponentially from the initial backoff and are capped:

    delay(n) = min(initial_backoff_ms * multiplier ** n, max_backoff_ms)

for the n-th wait (zero based). A policy with max_attempts=3 makes three
calls and waits twice in between.
"""
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration."""

    max_attempts: int = 3
    initial_backoff_ms: int = 1000
    multiplier: float = 2.0
    max_backoff_ms: int = 10000
    timeout: float = 30.0  # per-call timeout in seconds

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_backoff_ms < 0 or self.max_backoff_ms < 0:
            raise ValueError("backoff delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1 based)."""
        delay_ms = self.initial_backoff_ms * (self.multiplier ** (attempt - 1))
        return min(delay_ms, self.max_backoff_ms) / 1000.0

    def delays(self) -> List[float]:
        """Full sequence of inter-attempt waits in seconds."""
        return [self.backoff(n) for n in range(1, self.max_attempts)]

    @classmethod
    def no_retry(cls, timeout: float = 30.0) -> "RetryPolicy":
        return cls(max_attempts=1, timeout=timeout)
