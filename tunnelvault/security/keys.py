"""WireGuard (X25519) key material."""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import x25519

KEY_LENGTH = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WireguardPrivateKey:
    """A WireGuard private key and the moment it was created.

    The creation date drives the rotation policy, so it travels with the
    key through encoding and storage.
    """

    raw: bytes = field(repr=False)
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if len(self.raw) != KEY_LENGTH:
            raise ValueError(f"Private key must be {KEY_LENGTH} bytes, got {len(self.raw)}")
        if self.created_at.tzinfo is None:
            raise ValueError("created_at must be timezone-aware")

    @classmethod
    def generate(cls, created_at: Optional[datetime] = None) -> "WireguardPrivateKey":
        """Generate a fresh private key."""
        raw = x25519.X25519PrivateKey.generate().private_bytes_raw()
        return cls(raw=raw, created_at=created_at or _utcnow())

    @property
    def public_key(self) -> bytes:
        """Raw 32-byte public key derived from this private key."""
        private = x25519.X25519PrivateKey.from_private_bytes(self.raw)
        return private.public_key().public_bytes_raw()

    @property
    def public_key_base64(self) -> str:
        return public_key_to_base64(self.public_key)

    def age(self, now: Optional[datetime] = None):
        """Time elapsed since the key was created."""
        return (now or _utcnow()) - self.created_at


def public_key_to_base64(public_key: bytes) -> str:
    """Encode a raw public key the way WireGuard tooling prints it."""
    return base64.b64encode(public_key).decode("ascii")


def public_key_from_base64(encoded: str) -> bytes:
    """Decode a base64 WireGuard public key.

    Raises:
        ValueError: If the value is not base64 or not 32 bytes long
    """
    raw = base64.b64decode(encoded, validate=True)
    if len(raw) != KEY_LENGTH:
        raise ValueError(f"Public key must be {KEY_LENGTH} bytes, got {len(raw)}")
    return raw
