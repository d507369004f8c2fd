"""Bounded retry with exponential backoff.

Used by the configuration manager's optimistic update loop when the caller
wants a cap on how many times a contended write is retried.
"""

import random
from dataclasses import dataclass
from typing import Optional


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 5
    base_delay: float = 0.05  # Base delay in seconds
    max_delay: float = 2.0  # Maximum delay in seconds
    exponential_base: float = 2.0  # Exponential backoff base
    jitter: float = 0.1  # Random jitter factor (0-1)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, max_attempts: Optional[int], base_delay: float) -> Optional["RetryConfig"]:
        """Build a config from settings; None when retries are unbounded."""
        if max_attempts is None:
            return None
        return cls(max_attempts=max_attempts, base_delay=base_delay)


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Delay before retrying after the given number of lost races.

    ``attempt`` counts from 0. The result is capped at ``max_delay``.
    """
    nominal = config.base_delay * config.exponential_base**attempt
    spread = nominal * config.jitter
    return max(0.0, min(nominal + random.uniform(-spread, spread), config.max_delay))
