"""Security primitives for tunnelvault.

This module provides:
- AES-256-GCM at-rest encryption for stored configurations
- WireGuard key generation and public key derivation
"""

from .encryption import EncryptionError, EncryptionManager, decrypt_bytes, encrypt_bytes, generate_key
from .keys import WireguardPrivateKey, public_key_from_base64, public_key_to_base64

__all__ = [
    "EncryptionManager",
    "EncryptionError",
    "encrypt_bytes",
    "decrypt_bytes",
    "generate_key",
    "WireguardPrivateKey",
    "public_key_to_base64",
    "public_key_from_base64",
]
