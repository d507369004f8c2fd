"""HashiCorp Vault backed secure attribute store.

Each item is a KV v2 secret at ``<path_prefix>/<service>/<account>``. The
KV secret version serves as the item's modification version and writes use
Vault's check-and-set, so a stale update is rejected by the server itself.
"""

import asyncio
import base64
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import hvac
from hvac import exceptions as hvac_exceptions

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


@dataclass
class VaultConfig:
    """Configuration for the Vault store."""

    url: str = "http://localhost:8200"
    token: Optional[str] = None
    namespace: Optional[str] = None
    verify_ssl: bool = True
    mount_point: str = "secret"
    path_prefix: str = "tunnelvault"

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create config from environment variables."""
        return cls(
            url=os.getenv("VAULT_ADDR", "http://localhost:8200"),
            token=os.getenv("VAULT_TOKEN"),
            namespace=os.getenv("VAULT_NAMESPACE"),
        )


def _parse_time(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    # Vault reports nanoseconds; datetime takes microseconds
    value = value.replace("Z", "+00:00")
    if "." in value:
        head, tail = value.split(".", 1)
        frac, sep, offset = tail.partition("+")
        value = f"{head}.{frac[:6].ljust(6, '0')}{sep}{offset}"
    return datetime.fromisoformat(value)


class VaultAttributeStore(AttributeStore):
    """Attribute store on top of Vault's KV v2 secrets engine.

    Usage:
        store = VaultAttributeStore(VaultConfig.from_env())
        item = await store.find_first(Attributes(service="vpn", account="1234"))
    """

    def __init__(
        self,
        config: Optional[VaultConfig] = None,
        client: Optional[Any] = None,
        encryption: Optional[EncryptionManager] = None,
    ):
        """Initialize the Vault store.

        Args:
            config: Vault configuration
            client: Optional pre-built hvac client
            encryption: Optional extra payload encryption on top of Vault's own
        """
        self.config = config or VaultConfig.from_env()
        self._encryption = encryption
        self._client = client or hvac.Client(
            url=self.config.url,
            token=self.config.token,
            namespace=self.config.namespace,
            verify=self.config.verify_ssl,
        )

    @property
    def is_authenticated(self) -> bool:
        try:
            return bool(self._client.is_authenticated())
        except (hvac_exceptions.VaultError, OSError) as e:
            logger.warning(f"Failed to reach Vault: {e}")
            return False

    @property
    def _kv(self) -> Any:
        return self._client.secrets.kv.v2

    def _path(self, service: str, account: str) -> str:
        return f"{self.config.path_prefix}/{service}/{account}"

    def _context(self, service: str, account: str) -> bytes:
        return f"{service}\x00{account}".encode("utf-8")

    def _call(self, func: Any, passthrough: tuple = (), **kwargs: Any) -> Any:
        # Errors in passthrough are left for the caller to interpret
        try:
            return func(mount_point=self.config.mount_point, **kwargs)
        except passthrough:
            raise
        except (
            hvac_exceptions.VaultDown,
            hvac_exceptions.Forbidden,
            hvac_exceptions.Unauthorized,
            hvac_exceptions.VaultNotInitialized,
        ) as e:
            raise StoreUnavailableError(f"Vault unavailable: {e}") from e
        except hvac_exceptions.VaultError as e:
            raise UnknownStoreError(f"Vault failure: {e}", code=type(e).__name__) from e
        except OSError as e:
            raise StoreUnavailableError(f"Cannot reach Vault: {e}") from e

    def _list(self, path: str) -> list[str]:
        try:
            response = self._call(self._kv.list_secrets, (hvac_exceptions.InvalidPath,), path=path)
        except hvac_exceptions.InvalidPath:
            return []
        return response.get("data", {}).get("keys", [])

    def _candidate_paths(self, query: Attributes) -> list[tuple[str, str]]:
        if query.service is not None and query.account is not None:
            return [(query.service, query.account)]

        services = [query.service] if query.service is not None else [
            key.rstrip("/") for key in self._list(self.config.path_prefix) if key.endswith("/")
        ]
        candidates = []
        for service in services:
            for account in self._list(f"{self.config.path_prefix}/{service}"):
                if query.account is None or account == query.account:
                    candidates.append((service, account))
        return candidates

    def _read(self, service: str, account: str) -> Optional[StoredItem]:
        try:
            response = self._call(
                self._kv.read_secret_version,
                (hvac_exceptions.InvalidPath,),
                path=self._path(service, account),
                raise_on_deleted_version=True,
            )
        except hvac_exceptions.InvalidPath:
            return None

        data = response["data"]["data"]
        metadata = response["data"]["metadata"]
        value = base64.b64decode(data["value_data"])
        if self._encryption is not None:
            try:
                value = self._encryption.open(value, self._context(service, account))
            except EncryptionError as e:
                raise StoreUnavailableError(f"Cannot decrypt item: {e}") from e

        return StoredItem(
            service=service,
            account=account,
            access_group=data.get("access_group"),
            value_data=value,
            persistent_reference=bytes.fromhex(data["persistent_reference"]),
            modification_version=int(metadata["version"]),
            creation_date=_parse_time(data.get("created_at")),
            modification_date=_parse_time(metadata.get("created_time")),
        )

    def _payload(self, service: str, account: str, value: bytes, reference: bytes,
                 access_group: Optional[str], created_at: datetime) -> dict[str, Any]:
        if self._encryption is not None:
            value = self._encryption.seal(value, self._context(service, account))
        return {
            "value_data": base64.b64encode(value).decode("ascii"),
            "persistent_reference": reference.hex(),
            "access_group": access_group,
            "created_at": created_at.isoformat(),
        }

    def _matching(self, query: Attributes) -> list[StoredItem]:
        items = []
        for service, account in self._candidate_paths(query):
            item = self._read(service, account)
            if item is not None and item.matches(query):
                items.append(item)
        return items

    # ------------------------------------------------------------------
    # Blocking implementations, run in a worker thread
    # ------------------------------------------------------------------

    def _add_sync(self, attributes: Attributes) -> bytes:
        if attributes.service is None or attributes.account is None or attributes.value_data is None:
            raise ValueError("service, account and value_data are required to add an item")

        reference = secrets.token_bytes(PERSISTENT_REFERENCE_SIZE)
        payload = self._payload(
            attributes.service,
            attributes.account,
            attributes.value_data,
            reference,
            attributes.access_group,
            datetime.now(timezone.utc),
        )
        try:
            # cas=0 only writes if the secret does not exist yet
            self._call(
                self._kv.create_or_update_secret,
                (hvac_exceptions.InvalidRequest,),
                path=self._path(attributes.service, attributes.account),
                secret=payload,
                cas=0,
            )
        except hvac_exceptions.InvalidRequest as e:
            raise DuplicateItemError(f"Item already exists for service {attributes.service!r}") from e
        return reference

    def _find_first_sync(self, query: Attributes) -> Optional[StoredItem]:
        items = self._matching(query)
        return items[0] if items else None

    def _update_sync(self, query: Attributes, changes: Attributes) -> None:
        unsupported = set(changes.present()) - {"value_data", "access_group"}
        if unsupported:
            raise ValueError(f"Cannot change attributes: {sorted(unsupported)}")

        items = self._matching(query)
        if not items:
            raise ItemNotFoundError("No item matches the update query")

        for item in items:
            payload = self._payload(
                item.service,
                item.account,
                changes.value_data if changes.value_data is not None else item.value_data,
                item.persistent_reference,
                changes.access_group if changes.access_group is not None else item.access_group,
                item.creation_date,
            )
            try:
                self._call(
                    self._kv.create_or_update_secret,
                    (hvac_exceptions.InvalidRequest,),
                    path=self._path(item.service, item.account),
                    secret=payload,
                    cas=item.modification_version,
                )
            except hvac_exceptions.InvalidRequest as e:
                raise ItemNotFoundError("Item changed since it was read") from e

    def _delete_sync(self, query: Attributes) -> None:
        items = self._matching(query)
        if not items:
            raise ItemNotFoundError("No item matches the delete query")
        for item in items:
            try:
                self._call(
                    self._kv.delete_metadata_and_all_versions,
                    (hvac_exceptions.InvalidPath,),
                    path=self._path(item.service, item.account),
                )
            except hvac_exceptions.InvalidPath as e:
                raise ItemNotFoundError("Item was removed concurrently") from e

    # ------------------------------------------------------------------
    # AttributeStore
    # ------------------------------------------------------------------

    async def add(self, attributes: Attributes) -> bytes:
        return await asyncio.to_thread(self._add_sync, attributes)

    async def find_first(self, query: Attributes) -> Optional[StoredItem]:
        return await asyncio.to_thread(self._find_first_sync, query)

    async def update(self, query: Attributes, changes: Attributes) -> None:
        await asyncio.to_thread(self._update_sync, query, changes)

    async def delete(self, query: Attributes) -> None:
        await asyncio.to_thread(self._delete_sync, query)
