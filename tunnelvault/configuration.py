"""Tunnel configuration data model."""

from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv4Interface, IPv6Address, IPv6Interface, ip_address, ip_interface
from typing import Optional, Union

from .security.keys import KEY_LENGTH, WireguardPrivateKey

IPAddress = Union[IPv4Address, IPv6Address]
IPAddressRange = Union[IPv4Interface, IPv6Interface]


def parse_range(value: Union[str, IPAddressRange]) -> IPAddressRange:
    """Parse "10.64.0.1/32" style ranges; a bare address is a host prefix."""
    if isinstance(value, (IPv4Interface, IPv6Interface)):
        return value
    return ip_interface(value)


@dataclass(frozen=True)
class Endpoint:
    """Peer endpoint."""

    address: IPAddress
    port: int

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"Port out of range: {self.port}")

    @classmethod
    def parse(cls, value: str) -> "Endpoint":
        """Parse "1.2.3.4:51820" or "[::1]:51820"."""
        host, sep, port = value.rpartition(":")
        if not sep:
            raise ValueError(f"Endpoint has no port: {value}")
        return cls(ip_address(host.strip("[]")), int(port))

    def __str__(self) -> str:
        if self.address.version == 6:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


@dataclass
class PeerConfiguration:
    """A WireGuard peer (relay)."""

    public_key: bytes
    endpoint: Optional[Endpoint] = None
    allowed_ips: list[IPAddressRange] = field(default_factory=list)
    persistent_keepalive: Optional[int] = None

    def __post_init__(self) -> None:
        if len(self.public_key) != KEY_LENGTH:
            raise ValueError(f"Peer public key must be {KEY_LENGTH} bytes")


@dataclass
class InterfaceConfiguration:
    """The local side of the tunnel."""

    private_key: WireguardPrivateKey
    addresses: list[IPAddressRange] = field(default_factory=list)
    dns: list[IPAddress] = field(default_factory=list)


@dataclass
class TunnelConfiguration:
    """Everything needed to bring a tunnel up."""

    interface: InterfaceConfiguration
    peers: list[PeerConfiguration] = field(default_factory=list)

    @classmethod
    def new(cls) -> "TunnelConfiguration":
        """A configuration with a freshly generated key and nothing else."""
        return cls(interface=InterfaceConfiguration(private_key=WireguardPrivateKey.generate()))
