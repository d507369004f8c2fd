"""Tests for store module."""

import pytest


def test_store_imports():
    """Test that store module can be imported."""
    from tunnelvault.store import (
        AttributeStore,
        Attributes,
        DuplicateItemError,
        ItemNotFoundError,
        SQLiteAttributeStore,
        StoreError,
        VaultAttributeStore,
        create_store,
    )

    assert issubclass(ItemNotFoundError, StoreError)
    assert issubclass(DuplicateItemError, StoreError)
    assert issubclass(SQLiteAttributeStore, AttributeStore)
    assert issubclass(VaultAttributeStore, AttributeStore)
    assert Attributes is not None
    assert create_store is not None
