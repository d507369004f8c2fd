"""Tunnel configuration storage on top of the secure attribute store.

Provides:
- Load/add/remove of per-account tunnel configurations
- Read-modify-write updates guarded by the item's modification version
- Persistent references that address an item without reading its payload
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from . import coder
from .config import settings
from .configuration import TunnelConfiguration
from .resilience.retry import RetryConfig, calculate_backoff
from .store.attributes import Attributes, StoredItem
from .store.base import AttributeStore, ItemNotFoundError, StoreError

logger = logging.getLogger(__name__)


class TunnelConfigurationError(Exception):
    """Base class for configuration manager failures.

    The underlying store or codec error is kept in ``source``.
    """

    def __init__(self, message: str = "", source: Optional[Exception] = None):
        super().__init__(message)
        self.source = source


class EncodeError(TunnelConfigurationError):
    """The configuration could not be serialized."""


class DecodeError(TunnelConfigurationError):
    """The stored blob could not be deserialized."""


class AddToStoreError(TunnelConfigurationError):
    """The store rejected a new item (source is DuplicateItemError if the account has one)."""


class UpdateStoreError(TunnelConfigurationError):
    """The store rejected an update for a reason other than a concurrent write."""


class RemoveFromStoreError(TunnelConfigurationError):
    """The store failed to delete the item."""


class GetFromStoreError(TunnelConfigurationError):
    """The item could not be read (source is ItemNotFoundError if it doesn't exist)."""


class GetPersistentReferenceError(TunnelConfigurationError):
    """The item's persistent reference could not be read."""


class TooManyRetriesError(TunnelConfigurationError):
    """Concurrent writers kept winning until the retry bound was reached."""

    def __init__(self, attempts: int):
        super().__init__(f"Update gave up after {attempts} conflicting attempts")
        self.attempts = attempts


def mask_account(account_token: str) -> str:
    """Shorten an account token for log output."""
    return f"...{account_token[-4:]}"


@dataclass(frozen=True)
class SearchTerm:
    """Addresses exactly one stored configuration."""

    account_token: Optional[str] = None
    persistent_reference: Optional[bytes] = None

    def __post_init__(self) -> None:
        if (self.account_token is None) == (self.persistent_reference is None):
            raise ValueError("SearchTerm needs exactly one of account_token or persistent_reference")

    @classmethod
    def by_account(cls, account_token: str) -> "SearchTerm":
        return cls(account_token=account_token)

    @classmethod
    def by_reference(cls, persistent_reference: bytes) -> "SearchTerm":
        return cls(persistent_reference=persistent_reference)

    def apply(self, attributes: Attributes) -> Attributes:
        """Return attributes narrowed to this search term."""
        return attributes.merged(
            Attributes(account=self.account_token, persistent_reference=self.persistent_reference)
        )

    def __str__(self) -> str:
        if self.account_token is not None:
            return f"account {mask_account(self.account_token)}"
        return f"reference {self.persistent_reference.hex()[:8]}"


@dataclass
class TunnelConfigurationEntry:
    """A loaded configuration and the account it belongs to."""

    account_token: str
    tunnel_configuration: TunnelConfiguration


class TunnelConfigurationManager:
    """Stores one tunnel configuration per account.

    Usage:
        manager = TunnelConfigurationManager(store)
        await manager.add(TunnelConfiguration.new(), "1234567890123456")
        await manager.update(SearchTerm.by_account("1234567890123456"), transform)
    """

    def __init__(
        self,
        store: AttributeStore,
        service_name: Optional[str] = None,
        access_group: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        """Initialize the manager.

        Args:
            store: Secure attribute store holding the configurations
            service_name: Service attribute every item is filed under. If not provided, uses settings.
            access_group: Access group for new items. If not provided, uses settings.
            retry_config: Bound on update retries. If not provided, built from settings
                (None there retries until the write lands)
        """
        self.store = store
        self.service_name = service_name or settings.service_name
        self.access_group = access_group or settings.access_group
        self.retry_config = retry_config or RetryConfig.from_settings(
            settings.update_max_attempts, settings.update_base_delay
        )

    def _attributes(self) -> Attributes:
        return Attributes(service=self.service_name)

    @staticmethod
    def _encode(configuration: TunnelConfiguration) -> bytes:
        try:
            return coder.encode(configuration)
        except coder.CodecError as e:
            raise EncodeError(f"Failed to encode tunnel configuration: {e}", e) from e

    @staticmethod
    def _decode(data: bytes) -> TunnelConfiguration:
        try:
            return coder.decode(data)
        except coder.CodecError as e:
            raise DecodeError(f"Failed to decode tunnel configuration: {e}", e) from e

    async def _find(self, search_term: SearchTerm) -> StoredItem:
        query = search_term.apply(self._attributes())
        try:
            item = await self.store.find_first(query)
        except StoreError as e:
            raise GetFromStoreError(f"Failed to read {search_term}: {e}", e) from e
        if item is None:
            error = ItemNotFoundError(f"No configuration for {search_term}")
            raise GetFromStoreError(str(error), error) from error
        return item

    async def load(self, search_term: SearchTerm) -> TunnelConfigurationEntry:
        """Load and decode a configuration.

        Raises:
            GetFromStoreError: If the item can't be read
            DecodeError: If the stored blob is invalid
        """
        item = await self._find(search_term)
        return TunnelConfigurationEntry(
            account_token=item.account,
            tunnel_configuration=self._decode(item.value_data),
        )

    async def add(self, configuration: TunnelConfiguration, account_token: str) -> None:
        """Store a configuration for an account that has none yet.

        Raises:
            EncodeError: If the configuration can't be serialized
            AddToStoreError: If the store rejects the item, e.g. a duplicate
        """
        attributes = self._attributes().merged(
            Attributes(
                account=account_token,
                access_group=self.access_group,
                value_data=self._encode(configuration),
            )
        )
        try:
            await self.store.add(attributes)
        except StoreError as e:
            raise AddToStoreError(f"Failed to add configuration for {mask_account(account_token)}: {e}", e) from e
        logger.info(f"Added tunnel configuration for account {mask_account(account_token)}")

    async def remove(self, search_term: SearchTerm) -> None:
        """Delete a configuration.

        Raises:
            RemoveFromStoreError: If the item can't be deleted
        """
        try:
            await self.store.delete(search_term.apply(self._attributes()))
        except StoreError as e:
            raise RemoveFromStoreError(f"Failed to remove {search_term}: {e}", e) from e
        logger.info(f"Removed tunnel configuration for {search_term}")

    async def update(
        self,
        search_term: SearchTerm,
        transform: Callable[[TunnelConfiguration], None],
        retry_config: Optional[RetryConfig] = None,
    ) -> TunnelConfiguration:
        """Apply transform to a stored configuration atomically.

        The item is read, transformed in place and written back with a query
        pinned to the persistent reference and modification version that
        were read. If another writer got there first the store reports
        ItemNotFoundError and the whole cycle starts over on the fresh item.

        Args:
            search_term: Which configuration to change
            transform: Mutates the decoded configuration in place
            retry_config: Overrides the manager's retry bound for this call

        Returns:
            The configuration as written

        Raises:
            GetFromStoreError: If the item can't be read
            DecodeError: If the stored blob is invalid
            EncodeError: If the transformed configuration can't be serialized
            UpdateStoreError: If the store rejects the write
            TooManyRetriesError: If a retry bound is set and exhausted
        """
        retry = retry_config or self.retry_config
        attempt = 0

        while True:
            attempt += 1
            item = await self._find(search_term)
            configuration = self._decode(item.value_data)
            transform(configuration)
            data = self._encode(configuration)

            # Pin the write to the item and version we read. Versions restart
            # when an item is re-added, the persistent reference does not.
            query = search_term.apply(self._attributes())
            query.persistent_reference = item.persistent_reference
            query.modification_version = item.modification_version

            try:
                await self.store.update(query, Attributes(value_data=data))
            except ItemNotFoundError:
                logger.debug(
                    f"Configuration for {search_term} changed since version "
                    f"{item.modification_version}, retrying (attempt {attempt})"
                )
                if retry is not None:
                    if attempt >= retry.max_attempts:
                        raise TooManyRetriesError(attempt) from None
                    await asyncio.sleep(calculate_backoff(attempt - 1, retry))
                continue
            except StoreError as e:
                raise UpdateStoreError(f"Failed to update {search_term}: {e}", e) from e

            return configuration

    async def get_persistent_reference(self, account_token: str) -> bytes:
        """Return the store's stable handle for an account's configuration.

        Raises:
            GetPersistentReferenceError: If the item can't be found or read
        """
        query = SearchTerm.by_account(account_token).apply(self._attributes())
        try:
            item = await self.store.find_first(query)
        except StoreError as e:
            raise GetPersistentReferenceError(
                f"Failed to read reference for {mask_account(account_token)}: {e}", e
            ) from e
        if item is None:
            error = ItemNotFoundError(f"No configuration for account {mask_account(account_token)}")
            raise GetPersistentReferenceError(str(error), error) from error
        return item.persistent_reference
