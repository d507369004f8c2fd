"""Attribute patches used to query and change store items."""

from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any, Optional


@dataclass
class Attributes:
    """Sparse set of item attributes.

    Used both as a query (unset fields don't filter) and as a change set
    (unset fields are left untouched).
    """

    service: Optional[str] = None
    account: Optional[str] = None
    access_group: Optional[str] = None
    persistent_reference: Optional[bytes] = None
    modification_version: Optional[int] = None
    value_data: Optional[bytes] = None

    def present(self) -> dict[str, Any]:
        """Return only the fields that are set."""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def merged(self, other: "Attributes") -> "Attributes":
        """Return a copy with the fields set in other applied on top."""
        return replace(self, **other.present())

    def __repr__(self) -> str:
        shown = {k: v for k, v in self.present().items() if k != "value_data"}
        if self.value_data is not None:
            shown["value_data"] = f"<{len(self.value_data)} bytes>"
        body = ", ".join(f"{k}={v!r}" for k, v in shown.items())
        return f"Attributes({body})"


@dataclass(frozen=True)
class StoredItem:
    """A stored item as returned by a lookup."""

    service: str
    account: str
    value_data: bytes
    persistent_reference: bytes
    modification_version: int
    creation_date: datetime
    modification_date: datetime
    access_group: Optional[str] = None

    def matches(self, query: Attributes) -> bool:
        """Check whether every attribute set in query equals this item's."""
        for name, value in query.present().items():
            if getattr(self, name) != value:
                return False
        return True

    def __repr__(self) -> str:
        return (
            f"StoredItem(service={self.service!r}, account=...{self.account[-4:]!r}, "
            f"version={self.modification_version}, value_data=<{len(self.value_data)} bytes>)"
        )
