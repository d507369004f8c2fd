"""Resilience helpers for tunnelvault.

This module provides:
- Bounded retry with exponential backoff for contended store writes
"""

from .retry import RetryConfig, calculate_backoff

__all__ = [
    "RetryConfig",
    "calculate_backoff",
]
