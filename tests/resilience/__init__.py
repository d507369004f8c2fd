"""Tests for resilience module."""

import pytest


def test_resilience_imports():
    """Test that resilience module can be imported."""
    from tunnelvault.resilience import RetryConfig, calculate_backoff

    assert RetryConfig is not None
    assert calculate_backoff is not None
