"""Tests for security module."""

import pytest


def test_security_imports():
    """Test that security module can be imported."""
    from tunnelvault.security import (
        EncryptionError,
        EncryptionManager,
        WireguardPrivateKey,
        decrypt_bytes,
        encrypt_bytes,
        generate_key,
    )

    assert EncryptionManager is not None
    assert WireguardPrivateKey is not None
    assert issubclass(EncryptionError, Exception)
