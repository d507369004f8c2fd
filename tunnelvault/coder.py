"""Binary codec for stored tunnel configurations.

The blob starts with a big-endian uint16 format version so the layout can
evolve; decoders refuse versions newer than they understand. Version 1:

    u16 version
    32B private key, i64 key creation time (microseconds since epoch, UTC)
    u8 address count, address ranges
    u8 dns count, addresses
    u16 peer count, peers

    range   = u8 family (4|6), u8 prefix length, 4B|16B address
    address = u8 family (4|6), 4B|16B address
    peer    = 32B public key, u8 has endpoint [address, u16 port],
              u16 keepalive (0 = off), u8 allowed ip count, ranges
"""

import struct
from datetime import datetime, timedelta, timezone
from ipaddress import IPv4Address, IPv6Address, ip_interface
from typing import Optional

from .configuration import (
    Endpoint,
    InterfaceConfiguration,
    IPAddress,
    IPAddressRange,
    PeerConfiguration,
    TunnelConfiguration,
)
from .security.keys import KEY_LENGTH, WireguardPrivateKey

FORMAT_VERSION = 1

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)
_ADDRESS_SIZE = {4: 4, 6: 16}


class CodecError(Exception):
    """Base class for codec failures."""

    pass


class CorruptDataError(CodecError):
    """The blob is truncated or malformed."""

    pass


class UnsupportedVersionError(CodecError):
    """The blob was written by a newer format version."""

    def __init__(self, version: int):
        super().__init__(f"Unsupported format version {version} (highest known: {FORMAT_VERSION})")
        self.version = version


class InvalidConfigurationError(CodecError):
    """The configuration holds values the format cannot carry."""

    pass


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _count(values: list, limit: int, what: str) -> int:
    if len(values) > limit:
        raise InvalidConfigurationError(f"Too many {what}: {len(values)} (max {limit})")
    return len(values)


def _pack_address(address: IPAddress) -> bytes:
    return struct.pack(">B", address.version) + address.packed


def _pack_range(value: IPAddressRange) -> bytes:
    return struct.pack(">BB", value.version, value.network.prefixlen) + value.ip.packed


def _pack_peer(peer: PeerConfiguration) -> bytes:
    if len(peer.public_key) != KEY_LENGTH:
        raise InvalidConfigurationError("Peer public key must be 32 bytes")
    keepalive = peer.persistent_keepalive or 0
    if peer.persistent_keepalive is not None and not 1 <= keepalive <= 0xFFFF:
        raise InvalidConfigurationError(f"Keepalive out of range: {peer.persistent_keepalive}")

    parts = [peer.public_key]
    if peer.endpoint is None:
        parts.append(b"\x00")
    else:
        parts.append(b"\x01" + _pack_address(peer.endpoint.address) + struct.pack(">H", peer.endpoint.port))
    parts.append(struct.pack(">HB", keepalive, _count(peer.allowed_ips, 0xFF, "allowed IPs")))
    parts.extend(_pack_range(r) for r in peer.allowed_ips)
    return b"".join(parts)


def encode(configuration: TunnelConfiguration) -> bytes:
    """Serialize a configuration.

    Raises:
        InvalidConfigurationError: If a value doesn't fit the format
    """
    interface = configuration.interface
    created_us = (interface.private_key.created_at - _EPOCH) // _MICROSECOND

    try:
        parts = [
            struct.pack(">H", FORMAT_VERSION),
            interface.private_key.raw,
            struct.pack(">q", created_us),
            struct.pack(">B", _count(interface.addresses, 0xFF, "addresses")),
            *(_pack_range(r) for r in interface.addresses),
            struct.pack(">B", _count(interface.dns, 0xFF, "DNS servers")),
            *(_pack_address(a) for a in interface.dns),
            struct.pack(">H", _count(configuration.peers, 0xFFFF, "peers")),
            *(_pack_peer(p) for p in configuration.peers),
        ]
    except (struct.error, AttributeError) as e:
        raise InvalidConfigurationError(f"Cannot encode configuration: {e}") from e
    return b"".join(parts)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class _Reader:
    def __init__(self, data: bytes):
        self._data = data
        self._offset = 0

    def take(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise CorruptDataError(f"Truncated data at offset {self._offset}")
        chunk = self._data[self._offset:end]
        self._offset = end
        return chunk

    def unpack(self, fmt: str) -> tuple:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))

    def finish(self) -> None:
        if self._offset != len(self._data):
            raise CorruptDataError(f"{len(self._data) - self._offset} trailing bytes")

    def family(self) -> int:
        (family,) = self.unpack(">B")
        if family not in _ADDRESS_SIZE:
            raise CorruptDataError(f"Unknown address family: {family}")
        return family

    def address(self) -> IPAddress:
        family = self.family()
        raw = self.take(_ADDRESS_SIZE[family])
        return IPv4Address(raw) if family == 4 else IPv6Address(raw)

    def range(self) -> IPAddressRange:
        family = self.family()
        (prefix,) = self.unpack(">B")
        if prefix > _ADDRESS_SIZE[family] * 8:
            raise CorruptDataError(f"Prefix length {prefix} out of range")
        raw = self.take(_ADDRESS_SIZE[family])
        address = IPv4Address(raw) if family == 4 else IPv6Address(raw)
        return ip_interface(f"{address}/{prefix}")


def _read_peer(reader: _Reader) -> PeerConfiguration:
    public_key = reader.take(KEY_LENGTH)
    (has_endpoint,) = reader.unpack(">B")
    endpoint: Optional[Endpoint] = None
    if has_endpoint == 1:
        address = reader.address()
        (port,) = reader.unpack(">H")
        endpoint = Endpoint(address, port)
    elif has_endpoint != 0:
        raise CorruptDataError(f"Invalid endpoint flag: {has_endpoint}")
    keepalive, allowed_count = reader.unpack(">HB")
    return PeerConfiguration(
        public_key=public_key,
        endpoint=endpoint,
        allowed_ips=[reader.range() for _ in range(allowed_count)],
        persistent_keepalive=keepalive or None,
    )


def decode(data: bytes) -> TunnelConfiguration:
    """Deserialize a configuration.

    Raises:
        CorruptDataError: If the blob is malformed
        UnsupportedVersionError: If the blob's version is newer than FORMAT_VERSION
    """
    reader = _Reader(data)
    (version,) = reader.unpack(">H")
    if version == 0:
        raise CorruptDataError("Format version 0 is invalid")
    if version > FORMAT_VERSION:
        raise UnsupportedVersionError(version)

    raw_key = reader.take(KEY_LENGTH)
    (created_us,) = reader.unpack(">q")
    try:
        created_at = _EPOCH + timedelta(microseconds=created_us)
    except OverflowError:
        raise CorruptDataError(f"Key creation time out of range: {created_us}") from None

    (address_count,) = reader.unpack(">B")
    addresses = [reader.range() for _ in range(address_count)]
    (dns_count,) = reader.unpack(">B")
    dns = [reader.address() for _ in range(dns_count)]
    (peer_count,) = reader.unpack(">H")
    peers = [_read_peer(reader) for _ in range(peer_count)]
    reader.finish()

    return TunnelConfiguration(
        interface=InterfaceConfiguration(
            private_key=WireguardPrivateKey(raw=raw_key, created_at=created_at),
            addresses=addresses,
            dns=dns,
        ),
        peers=peers,
    )
