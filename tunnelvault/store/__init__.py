"""Secure attribute store for tunnelvault.

This module provides:
- The attribute store contract with compare-and-swap updates
- An encrypted SQLite backend
- A HashiCorp Vault KV v2 backend
"""

from typing import Optional

from ..config import Settings, settings as default_settings
from ..security.encryption import EncryptionManager, load_key
from .attributes import Attributes, StoredItem
from .base import (
    AttributeStore,
    DuplicateItemError,
    ItemNotFoundError,
    StoreError,
    StoreUnavailableError,
    UnknownStoreError,
)
from .sqlite_store import SQLiteAttributeStore
from .vault_store import VaultAttributeStore, VaultConfig


def create_store(settings: Optional[Settings] = None) -> AttributeStore:
    """Build the store backend selected in settings.

    Args:
        settings: Settings to use (module defaults if not provided)

    Returns:
        Configured attribute store
    """
    settings = settings or default_settings
    if settings.store_backend == "sqlite":
        return SQLiteAttributeStore(settings.store_path, EncryptionManager(load_key(settings.encryption_key)))
    if settings.store_backend == "vault":
        config = VaultConfig(
            url=settings.vault_url,
            token=settings.vault_token,
            namespace=settings.vault_namespace,
            mount_point=settings.vault_mount_point,
            path_prefix=settings.vault_path_prefix,
        )
        encryption = EncryptionManager(load_key(settings.encryption_key)) if settings.encryption_key else None
        return VaultAttributeStore(config, encryption=encryption)
    raise ValueError(f"Unsupported store backend: {settings.store_backend}")


__all__ = [
    "AttributeStore",
    "Attributes",
    "StoredItem",
    "StoreError",
    "ItemNotFoundError",
    "DuplicateItemError",
    "StoreUnavailableError",
    "UnknownStoreError",
    "SQLiteAttributeStore",
    "VaultAttributeStore",
    "VaultConfig",
    "create_store",
]
