"""Key exchange API client.

Talks JSON-RPC 2.0 over HTTP POST. Public keys travel base64-encoded.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from ipaddress import IPv4Interface, IPv6Interface, ip_interface
from typing import Any, Optional

import aiohttp
from aiohttp import ClientTimeout

from .config import settings
from .security.keys import public_key_to_base64

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Base class for key exchange API failures."""

    pass


class ApiTransportError(ApiError):
    """The request never got a usable answer (network, HTTP status, bad body)."""

    pass


class ApiRejectedError(ApiError):
    """The server answered with a JSON-RPC error."""

    def __init__(self, code: Any, message: str = ""):
        super().__init__(f"Request rejected ({code}): {message}")
        self.code = code
        self.message = message


@dataclass(frozen=True)
class WireguardAssociatedAddresses:
    """Tunnel addresses the server assigned to a public key."""

    ipv4_address: IPv4Interface
    ipv6_address: IPv6Interface

    @classmethod
    def from_result(cls, result: Any) -> "WireguardAssociatedAddresses":
        try:
            ipv4 = ip_interface(result["ipv4_address"])
            ipv6 = ip_interface(result["ipv6_address"])
        except (KeyError, TypeError, ValueError) as e:
            raise ApiTransportError(f"Malformed address response: {e}") from e
        if ipv4.version != 4 or ipv6.version != 6:
            raise ApiTransportError("Malformed address response: address families swapped")
        return cls(ipv4_address=ipv4, ipv6_address=ipv6)

    def as_list(self) -> list:
        return [self.ipv4_address, self.ipv6_address]


class KeyExchangeClient:
    """Client for the account key registration API.

    Usage:
        async with KeyExchangeClient("https://api.example.net/rpc/") as client:
            addresses = await client.replace_wireguard_key(account, old_key, new_key)
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize API client.

        Args:
            api_url: JSON-RPC endpoint. If not provided, uses settings.
            timeout_seconds: Total timeout per request. If not provided, uses settings.
            session: Optional shared session (not closed by this client)
        """
        self.api_url = api_url or settings.api_url
        self.timeout = ClientTimeout(total=timeout_seconds or settings.api_timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "KeyExchangeClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _call(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with self._get_session().post(self.api_url, json=payload) as response:
                status = response.status
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{method} request failed: {e!r}")
            raise ApiTransportError(f"{method} request failed: {e!r}") from e

        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            error = body["error"]
            logger.warning(f"{method} rejected with code {error.get('code')}")
            raise ApiRejectedError(error.get("code"), str(error.get("message", "")))
        if not 200 <= status < 300:
            raise ApiTransportError(f"{method} failed with HTTP {status}")
        if not isinstance(body, dict) or "result" not in body:
            raise ApiTransportError(f"{method} returned a malformed response")
        return body["result"]

    async def replace_wireguard_key(
        self,
        account_token: str,
        old_public_key: bytes,
        new_public_key: bytes,
    ) -> WireguardAssociatedAddresses:
        """Swap the account's registered key for a new one.

        Fails with ApiRejectedError if old_public_key is no longer the
        account's registered key.
        """
        result = await self._call(
            "replace_wireguard_key",
            [account_token, public_key_to_base64(old_public_key), public_key_to_base64(new_public_key)],
        )
        return WireguardAssociatedAddresses.from_result(result)

    async def push_wireguard_key(self, account_token: str, public_key: bytes) -> WireguardAssociatedAddresses:
        """Register an additional key for the account."""
        result = await self._call("push_wg_key", [account_token, public_key_to_base64(public_key)])
        return WireguardAssociatedAddresses.from_result(result)

    async def check_wireguard_key(self, account_token: str, public_key: bytes) -> bool:
        """Ask whether the key is registered for the account."""
        result = await self._call("check_wg_key", [account_token, public_key_to_base64(public_key)])
        if not isinstance(result, bool):
            raise ApiTransportError("check_wg_key returned a malformed response")
        return result
