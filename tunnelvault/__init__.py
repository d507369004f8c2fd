"""tunnelvault: encrypted storage and rotation of WireGuard tunnel keys."""

__version__ = "0.1.0"

from .api import KeyExchangeClient, WireguardAssociatedAddresses
from .configuration import InterfaceConfiguration, PeerConfiguration, TunnelConfiguration
from .manager import SearchTerm, TunnelConfigurationManager
from .rotation import RotationOutcome, RotationPrecondition, WireguardKeyRotation

__all__ = [
    "TunnelConfiguration",
    "InterfaceConfiguration",
    "PeerConfiguration",
    "TunnelConfigurationManager",
    "SearchTerm",
    "KeyExchangeClient",
    "WireguardAssociatedAddresses",
    "WireguardKeyRotation",
    "RotationPrecondition",
    "RotationOutcome",
]
