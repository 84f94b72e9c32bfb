"""
Reconnect Backoff
=================

Exponential reconnect delay: min(base * 2^(attempt - 1), max_delay).
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Capped exponential backoff in milliseconds.

    Attempts are numbered from 1. With the defaults the sequence is
    1s, 2s, 4s, 8s, 16s, 30s, 30s, ...
    """

    base_delay_ms: int = 1000
    max_delay_ms: int = 30000

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("backoff delays must be >= 0")

    def delay_ms(self, attempt: int) -> int:
        """Delay before reconnect attempt `attempt` (1-based)."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        # Cap the exponent so huge attempt numbers don't build huge ints
        exponent = min(attempt - 1, 32)
        return min(self.base_delay_ms * (2 ** exponent), self.max_delay_ms)

    def delay_seconds(self, attempt: int) -> float:
        return self.delay_ms(attempt) / 1000.0
