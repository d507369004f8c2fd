"""At-rest encryption for stored tunnel configurations.

Provides:
- AES-256-GCM encryption/decryption of raw bytes
- Associated data binding a ciphertext to its store item
- Key loading from settings or the environment
"""

import base64
import logging
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12  # 96-bit GCM nonce
KEY_ENV_VAR = "TUNNELVAULT_ENCRYPTION_KEY"


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""

    pass


def generate_key() -> bytes:
    """Generate a new 256-bit encryption key.

    Returns:
        32-byte key
    """
    return secrets.token_bytes(KEY_SIZE)


def load_key(encoded: Optional[str] = None) -> bytes:
    """Decode an encryption key given as base64 or hex.

    Args:
        encoded: Encoded key (read from TUNNELVAULT_ENCRYPTION_KEY if not provided)

    Returns:
        32-byte key

    Raises:
        EncryptionError: If the key is missing or malformed
    """
    if encoded is None:
        encoded = os.getenv(KEY_ENV_VAR)
    if not encoded:
        raise EncryptionError(f"{KEY_ENV_VAR} environment variable not set")

    key: Optional[bytes] = None
    try:
        key = base64.b64decode(encoded, validate=True)
    except ValueError:
        pass

    # 64 hex digits are also valid base64, so fall back on length too
    if key is None or len(key) != KEY_SIZE:
        try:
            key = bytes.fromhex(encoded)
        except ValueError:
            raise EncryptionError("Invalid encryption key format") from None

    if len(key) != KEY_SIZE:
        raise EncryptionError("Key must be 32 bytes (256 bits)")
    return key


def encrypt_bytes(data: bytes, key: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """Encrypt data using AES-256-GCM.

    Args:
        data: Plaintext bytes
        key: 256-bit encryption key
        associated_data: Optional authenticated, unencrypted context

    Returns:
        nonce || ciphertext || tag

    Raises:
        EncryptionError: If encryption fails
    """
    if len(key) != KEY_SIZE:
        raise EncryptionError("Key must be 32 bytes (256 bits)")

    nonce = secrets.token_bytes(NONCE_SIZE)
    try:
        return nonce + AESGCM(key).encrypt(nonce, data, associated_data)
    except (TypeError, ValueError, OverflowError) as e:
        raise EncryptionError(f"Encryption failed: {e}") from e


def decrypt_bytes(blob: bytes, key: bytes, associated_data: Optional[bytes] = None) -> bytes:
    """Decrypt data produced by encrypt_bytes.

    Args:
        blob: nonce || ciphertext || tag
        key: 256-bit encryption key
        associated_data: The context passed at encryption time

    Returns:
        Plaintext bytes

    Raises:
        EncryptionError: If the key is wrong or the blob was tampered with
    """
    if len(key) != KEY_SIZE:
        raise EncryptionError("Key must be 32 bytes (256 bits)")
    if len(blob) < NONCE_SIZE + 16:
        raise EncryptionError("Ciphertext too short")

    try:
        return AESGCM(key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], associated_data)
    except InvalidTag:
        raise EncryptionError("Decryption failed: authentication tag mismatch") from None


class EncryptionManager:
    """Holds the at-rest key for a store and binds ciphertexts to items.

    Usage:
        manager = EncryptionManager(key)
        blob = manager.seal(data, b"service/account")
        data = manager.open(blob, b"service/account")
    """

    def __init__(self, key: Optional[bytes] = None):
        """Initialize encryption manager.

        Args:
            key: Optional encryption key (loaded from the environment if not provided)
        """
        if key is None:
            key = load_key()
            logger.info("Encryption key loaded from environment")
        if len(key) != KEY_SIZE:
            raise EncryptionError("Key must be 32 bytes (256 bits)")
        self._key = key

    def seal(self, data: bytes, context: bytes) -> bytes:
        """Encrypt data bound to context."""
        return encrypt_bytes(data, self._key, context)

    def open(self, blob: bytes, context: bytes) -> bytes:
        """Decrypt data bound to context."""
        return decrypt_bytes(blob, self._key, context)
