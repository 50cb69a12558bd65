"""
Ledger objects for the whitelist module.

Every durable entity lives in an ``ObjectRecord`` envelope (id, type, owner,
version) whose ``contents`` is one of:

    Whitelist   shared; membership, capacity and the one-way admin-mode flag
    Cap         owned; credential naming one whitelist plus a role
    TGA         shared; binds a whitelist to a gated asset type
    Asset       owned; any other object (coins, blobs) presented for gating
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set, Union

from sealkit.whitelist.hardening import InvariantChecker
from sealkit.whitelist.typetags import StructTag, parse_struct_tag


MODULE_NAME = "whitelist"


class CapRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"


class AdminMode(Enum):
    """Administration state of a whitelist."""
    ADMIN = "admin_mode"
    OWNER_ONLY = "owner_only"


ADMIN_MODE_TRANSITIONS = {
    AdminMode.ADMIN: {AdminMode.OWNER_ONLY},
    AdminMode.OWNER_ONLY: set(),
}


class OwnerKind(str, Enum):
    ADDRESS = "AddressOwner"
    SHARED = "Shared"
    IMMUTABLE = "Immutable"


@dataclass(frozen=True)
class Owner:
    kind: OwnerKind
    address: str = ""
    initial_shared_version: int = 0

    @classmethod
    def address_owner(cls, address: str) -> "Owner":
        return cls(OwnerKind.ADDRESS, address=address)

    @classmethod
    def shared(cls, initial_shared_version: int) -> "Owner":
        return cls(OwnerKind.SHARED, initial_shared_version=initial_shared_version)

    @classmethod
    def immutable(cls) -> "Owner":
        return cls(OwnerKind.IMMUTABLE)

    def is_owned_by(self, address: str) -> bool:
        return self.kind == OwnerKind.ADDRESS and self.address == address

    def to_json(self) -> Union[str, Dict[str, Any]]:
        if self.kind == OwnerKind.ADDRESS:
            return {"AddressOwner": self.address}
        if self.kind == OwnerKind.SHARED:
            return {"Shared": {"initial_shared_version": self.initial_shared_version}}
        return "Immutable"

    @classmethod
    def from_json(cls, data: Union[str, Dict[str, Any]]) -> "Owner":
        if data == "Immutable":
            return cls.immutable()
        if isinstance(data, dict) and "AddressOwner" in data:
            return cls.address_owner(data["AddressOwner"])
        if isinstance(data, dict) and "Shared" in data:
            return cls.shared(int(data["Shared"]["initial_shared_version"]))
        raise ValueError(f"unrecognized owner: {data!r}")


# =============================================================================
# CONTENTS
# =============================================================================

@dataclass
class Whitelist:
    """
    One access-control list bound to an external vault id.

    The owner is fixed at creation. Admin mode can only be revoked; there is
    no operation that turns it back on.
    """
    id: str
    vault_id: str
    owner: str
    capacity: int
    addresses: Set[str] = field(default_factory=set)
    gating_type: Optional[str] = None
    _admin_mode: bool = False

    @property
    def admin_mode(self) -> bool:
        return self._admin_mode

    @property
    def state(self) -> AdminMode:
        return AdminMode.ADMIN if self._admin_mode else AdminMode.OWNER_ONLY

    def revoke_admin_mode(self) -> None:
        InvariantChecker.check_state_transition(
            self.state, AdminMode.OWNER_ONLY, ADMIN_MODE_TRANSITIONS
        )
        self._admin_mode = False

    def contains(self, address: str) -> bool:
        return address in self.addresses

    def is_full(self) -> bool:
        return len(self.addresses) >= self.capacity

    def insert(self, address: str) -> None:
        if address in self.addresses:
            return
        InvariantChecker.check_capacity(len(self.addresses) + 1, self.capacity)
        self.addresses.add(address)

    def discard(self, address: str) -> None:
        self.addresses.discard(address)

    def to_fields(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vault_id": self.vault_id,
            "owner": self.owner,
            "capacity": self.capacity,
            "admin_mode": self._admin_mode,
            "addresses": sorted(self.addresses),
            "gating_type": self.gating_type,
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "Whitelist":
        return cls(
            id=fields["id"],
            vault_id=fields["vault_id"],
            owner=fields["owner"],
            capacity=int(fields["capacity"]),
            addresses=set(fields.get("addresses") or []),
            gating_type=fields.get("gating_type"),
            _admin_mode=bool(fields.get("admin_mode")),
        )


@dataclass(frozen=True)
class Cap:
    id: str
    wl_id: str
    role: CapRole

    def to_fields(self) -> Dict[str, Any]:
        return {"id": self.id, "wl_id": self.wl_id, "role": self.role.value}

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "Cap":
        return cls(id=fields["id"], wl_id=fields["wl_id"], role=CapRole(fields["role"]))


@dataclass(frozen=True)
class TGA:
    """Token-gate descriptor: which asset type grants automatic approval."""
    id: str
    wl_id: str
    type_name: str

    def to_fields(self) -> Dict[str, Any]:
        return {"id": self.id, "wl_id": self.wl_id, "type_name": self.type_name}

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "TGA":
        return cls(id=fields["id"], wl_id=fields["wl_id"], type_name=fields["type_name"])


@dataclass
class Asset:
    """Any object outside the whitelist module (e.g. a Coin or a Blob)."""
    id: str
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_fields(self) -> Dict[str, Any]:
        return {"id": self.id, **self.fields}

    @classmethod
    def from_fields(cls, fields: Dict[str, Any]) -> "Asset":
        rest = {k: v for k, v in fields.items() if k != "id"}
        return cls(id=fields["id"], fields=rest)


Contents = Union[Whitelist, Cap, TGA, Asset]

_CONTENT_TYPES = {"Whitelist": Whitelist, "Cap": Cap, "TGA": TGA}


# =============================================================================
# ENVELOPE
# =============================================================================

@dataclass
class ObjectRecord:
    object_id: str
    object_type: StructTag
    owner: Owner
    version: int
    contents: Contents
    previous_transaction: str = ""

    def copy(self) -> "ObjectRecord":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "objectId": self.object_id,
            "objectType": self.object_type.canonical(),
            "owner": self.owner.to_json(),
            "version": self.version,
            "previousTransaction": self.previous_transaction,
            "fields": self.contents.to_fields(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], package_id: str) -> "ObjectRecord":
        object_type = parse_struct_tag(data["objectType"])
        contents_cls = Asset
        if object_type.address == package_id and object_type.module == MODULE_NAME:
            contents_cls = _CONTENT_TYPES.get(object_type.name, Asset)
        return cls(
            object_id=data["objectId"],
            object_type=object_type,
            owner=Owner.from_json(data["owner"]),
            version=int(data["version"]),
            contents=contents_cls.from_fields(data["fields"]),
            previous_transaction=data.get("previousTransaction", ""),
        )
