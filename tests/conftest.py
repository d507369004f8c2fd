"""Pytest configuration and fixtures for tunnelvault tests."""

import base64
from datetime import datetime, timezone
from ipaddress import ip_address, ip_interface
from unittest.mock import AsyncMock, Mock

import pytest

from tunnelvault.api import WireguardAssociatedAddresses
from tunnelvault.configuration import (
    Endpoint,
    InterfaceConfiguration,
    PeerConfiguration,
    TunnelConfiguration,
)
from tunnelvault.manager import TunnelConfigurationManager
from tunnelvault.security.encryption import EncryptionManager, generate_key
from tunnelvault.security.keys import WireguardPrivateKey
from tunnelvault.store.sqlite_store import SQLiteAttributeStore

ACCOUNT = "1234567890123456"
KEY_CREATED_AT = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def use_test_environment(monkeypatch):
    """Ensure all tests use test environment variables."""
    monkeypatch.setenv("TUNNELVAULT_ENCRYPTION_KEY", base64.b64encode(b"k" * 32).decode("ascii"))
    monkeypatch.setenv("TUNNELVAULT_API_URL", "http://localhost:8080/rpc/")


@pytest.fixture
def encryption_key():
    """Random at-rest key."""
    return generate_key()


@pytest.fixture
def store(tmp_path, encryption_key):
    """SQLite store in a temporary directory."""
    store = SQLiteAttributeStore(str(tmp_path / "keychain.db"), EncryptionManager(encryption_key))
    yield store
    store.close()


@pytest.fixture
def manager(store):
    """Configuration manager over the temporary store."""
    return TunnelConfigurationManager(store, service_name="tunnelvault-test")


@pytest.fixture
def private_key():
    """Deterministic private key created at KEY_CREATED_AT."""
    return WireguardPrivateKey(raw=bytes(range(1, 33)), created_at=KEY_CREATED_AT)


@pytest.fixture
def sample_configuration(private_key):
    """A configuration with addresses, DNS and two relays."""
    return TunnelConfiguration(
        interface=InterfaceConfiguration(
            private_key=private_key,
            addresses=[ip_interface("10.64.0.2/32"), ip_interface("fc00:bbbb:bbbb:bb01::2/128")],
            dns=[ip_address("10.64.0.1")],
        ),
        peers=[
            PeerConfiguration(
                public_key=b"\x11" * 32,
                endpoint=Endpoint(ip_address("185.65.135.1"), 51820),
                allowed_ips=[ip_interface("0.0.0.0/0"), ip_interface("::/0")],
                persistent_keepalive=25,
            ),
            PeerConfiguration(
                public_key=b"\x22" * 32,
                endpoint=Endpoint(ip_address("2a03:1b20:1:f011::a01f"), 51820),
            ),
        ],
    )


@pytest.fixture
def exchanged_addresses():
    """Addresses returned by a successful key exchange."""
    return WireguardAssociatedAddresses(
        ipv4_address=ip_interface("1.2.3.4"),
        ipv6_address=ip_interface("fd00::1"),
    )


@pytest.fixture
def api_client(exchanged_addresses):
    """Mock key exchange client that accepts every key."""
    client = Mock()
    client.replace_wireguard_key = AsyncMock(return_value=exchanged_addresses)
    client.push_wireguard_key = AsyncMock(return_value=exchanged_addresses)
    client.check_wireguard_key = AsyncMock(return_value=True)
    return client
