"""SQLite-backed secure attribute store.

Item payloads are sealed with AES-256-GCM before they touch the disk, bound
to their (service, account) so a blob copied into another row fails to open.
"""

import asyncio
import logging
import os
import secrets
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from ..security.encryption import EncryptionError, EncryptionManager
from .attributes import Attributes, StoredItem
from .base import (
    AttributeStore,
    DuplicateItemError,
    ItemNotFoundError,
    StoreUnavailableError,
    UnknownStoreError,
)

logger = logging.getLogger(__name__)

PERSISTENT_REFERENCE_SIZE = 20

# Attribute name -> column name for everything a query may filter on
_QUERY_COLUMNS = {
    "service": "service",
    "account": "account",
    "access_group": "access_group",
    "persistent_reference": "persistent_reference",
    "modification_version": "version",
}

_SELECT_COLUMNS = (
    "rowid, service, account, access_group, persistent_reference, version, "
    "value_data, created_at, modified_at"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _context(service: str, account: str) -> bytes:
    return f"{service}\x00{account}".encode("utf-8")


def _translate(e: sqlite3.Error) -> Exception:
    code = getattr(e, "sqlite_errorname", type(e).__name__)
    if isinstance(e, sqlite3.OperationalError):
        return StoreUnavailableError(f"Store unavailable: {e}")
    return UnknownStoreError(f"Store failure: {e}", code=code)


class SQLiteAttributeStore(AttributeStore):
    """Attribute store persisted in a single SQLite table.

    Usage:
        store = SQLiteAttributeStore("~/.tunnelvault/keychain.db", EncryptionManager(key))
        ref = await store.add(Attributes(service="vpn", account="1234", value_data=blob))
    """

    def __init__(self, path: str = ":memory:", encryption: Optional[EncryptionManager] = None):
        """Open (and create if needed) the store.

        Args:
            path: Database file, or ":memory:"
            encryption: At-rest encryption (key loaded from the environment if not provided)

        Raises:
            StoreUnavailableError: If the database cannot be opened
        """
        self.path = path if path == ":memory:" else os.path.expanduser(path)
        self._encryption = encryption or EncryptionManager()
        self._lock = threading.Lock()

        if self.path != ":memory:":
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

        try:
            # Transactions are managed explicitly in _transaction()
            self._db = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
            self._init()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open store at {self.path}: {e}") from e

    def _init(self) -> None:
        self._db.execute(
            """CREATE TABLE IF NOT EXISTS items(
                service TEXT NOT NULL,
                account TEXT NOT NULL,
                access_group TEXT,
                persistent_reference BLOB NOT NULL UNIQUE,
                version INTEGER NOT NULL,
                value_data BLOB NOT NULL,
                created_at TEXT NOT NULL,
                modified_at TEXT NOT NULL,
                UNIQUE(service, account)
            )"""
        )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                try:
                    yield self._db
                except BaseException:
                    self._db.execute("ROLLBACK")
                    raise
                self._db.execute("COMMIT")
            except sqlite3.Error as e:
                raise _translate(e) from e

    @staticmethod
    def _where(query: Attributes) -> tuple[str, list[Any]]:
        clauses = []
        params: list[Any] = []
        for name, value in query.present().items():
            if name not in _QUERY_COLUMNS:
                raise ValueError(f"{name} cannot be used as a query attribute")
            clauses.append(f"{_QUERY_COLUMNS[name]} = ?")
            params.append(value)
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def _row_to_item(self, row: tuple) -> StoredItem:
        _, service, account, access_group, reference, version, blob, created, modified = row
        try:
            data = self._encryption.open(blob, _context(service, account))
        except EncryptionError as e:
            raise StoreUnavailableError(f"Cannot decrypt item: {e}") from e
        return StoredItem(
            service=service,
            account=account,
            access_group=access_group,
            value_data=data,
            persistent_reference=reference,
            modification_version=version,
            creation_date=datetime.fromisoformat(created),
            modification_date=datetime.fromisoformat(modified),
        )

    # ------------------------------------------------------------------
    # Blocking implementations, run in a worker thread
    # ------------------------------------------------------------------

    def _add_sync(self, attributes: Attributes) -> bytes:
        if attributes.service is None or attributes.account is None or attributes.value_data is None:
            raise ValueError("service, account and value_data are required to add an item")

        reference = secrets.token_bytes(PERSISTENT_REFERENCE_SIZE)
        sealed = self._encryption.seal(attributes.value_data, _context(attributes.service, attributes.account))
        now = _now()
        try:
            with self._transaction() as db:
                db.execute(
                    "INSERT INTO items(service, account, access_group, persistent_reference, "
                    "version, value_data, created_at, modified_at) VALUES(?,?,?,?,?,?,?,?)",
                    (attributes.service, attributes.account, attributes.access_group, reference, 1, sealed, now, now),
                )
        except UnknownStoreError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise DuplicateItemError(f"Item already exists for service {attributes.service!r}") from e
            raise
        return reference

    def _find_first_sync(self, query: Attributes) -> Optional[StoredItem]:
        where, params = self._where(query)
        with self._lock:
            try:
                row = self._db.execute(
                    f"SELECT {_SELECT_COLUMNS} FROM items{where} ORDER BY rowid LIMIT 1", params
                ).fetchone()
            except sqlite3.Error as e:
                raise _translate(e) from e
        if row is None:
            return None
        return self._row_to_item(row)

    def _update_sync(self, query: Attributes, changes: Attributes) -> None:
        unsupported = set(changes.present()) - {"value_data", "access_group"}
        if unsupported:
            raise ValueError(f"Cannot change attributes: {sorted(unsupported)}")

        where, params = self._where(query)
        with self._transaction() as db:
            rows = db.execute(f"SELECT rowid, service, account FROM items{where}", params).fetchall()
            if not rows:
                raise ItemNotFoundError("No item matches the update query")

            now = _now()
            for rowid, service, account in rows:
                assignments = ["version = version + 1", "modified_at = ?"]
                values: list[Any] = [now]
                if changes.value_data is not None:
                    assignments.append("value_data = ?")
                    values.append(self._encryption.seal(changes.value_data, _context(service, account)))
                if changes.access_group is not None:
                    assignments.append("access_group = ?")
                    values.append(changes.access_group)
                db.execute(f"UPDATE items SET {', '.join(assignments)} WHERE rowid = ?", values + [rowid])

    def _delete_sync(self, query: Attributes) -> None:
        where, params = self._where(query)
        with self._transaction() as db:
            cursor = db.execute(f"DELETE FROM items{where}", params)
            if cursor.rowcount == 0:
                raise ItemNotFoundError("No item matches the delete query")

    # ------------------------------------------------------------------
    # AttributeStore
    # ------------------------------------------------------------------

    async def add(self, attributes: Attributes) -> bytes:
        reference = await asyncio.to_thread(self._add_sync, attributes)
        logger.debug(f"Added item for service {attributes.service}")
        return reference

    async def find_first(self, query: Attributes) -> Optional[StoredItem]:
        return await asyncio.to_thread(self._find_first_sync, query)

    async def update(self, query: Attributes, changes: Attributes) -> None:
        await asyncio.to_thread(self._update_sync, query, changes)

    async def delete(self, query: Attributes) -> None:
        await asyncio.to_thread(self._delete_sync, query)

    def close(self) -> None:
        with self._lock:
            self._db.close()
