"""Secure attribute store contract and errors."""

from abc import ABC, abstractmethod
from typing import Optional

from .attributes import Attributes, StoredItem


class StoreError(Exception):
    """Base class for store failures."""

    pass


class ItemNotFoundError(StoreError):
    """No item matched the query.

    Raised by update() when a version constraint no longer matches, which
    is how callers detect a concurrent write.
    """

    pass


class DuplicateItemError(StoreError):
    """An item with the same service and account already exists."""

    pass


class StoreUnavailableError(StoreError):
    """The store cannot be opened, is locked, or cannot decrypt the item."""

    pass


class UnknownStoreError(StoreError):
    """Any other backend failure."""

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class AttributeStore(ABC):
    """Encrypted key/value store addressed by item attributes.

    Implementations must make update() an atomic compare-and-swap: the query
    either matches and the change applies as a whole, or it fails with
    ItemNotFoundError. A successful update advances modification_version.
    """

    @abstractmethod
    async def add(self, attributes: Attributes) -> bytes:
        """Insert a new item.

        Args:
            attributes: Must include service, account and value_data

        Returns:
            The persistent reference assigned to the item

        Raises:
            DuplicateItemError: If service and account are already taken
        """

    @abstractmethod
    async def find_first(self, query: Attributes) -> Optional[StoredItem]:
        """Return the first item matching query, or None."""

    @abstractmethod
    async def update(self, query: Attributes, changes: Attributes) -> None:
        """Apply changes to the item matching query.

        Raises:
            ItemNotFoundError: If query matches no item
        """

    @abstractmethod
    async def delete(self, query: Attributes) -> None:
        """Delete the items matching query.

        Raises:
            ItemNotFoundError: If query matches no item
        """

    def close(self) -> None:
        """Release backend resources."""
