"""
Whitelist contract.

The authorization state machine itself. Functions here are pure with respect
to the ledger: they read and mutate the contents handed to them by the
execution engine and register new objects on the ``TxContext``. Every
precondition is checked before the first mutation, and a failure is reported
by raising ``WhitelistAbort`` with one canonical code.

Capabilities are checked by identity and role, never by who signed:

    owner Cap   always administers its whitelist
    admin Cap   administers its whitelist only while admin mode is on

States:  {ADMIN, OWNER_ONLY} x members x capacity
         ADMIN -> OWNER_ONLY via remove_admin_mode (one-way)
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sealkit.whitelist.core import blake2b256
from sealkit.whitelist.errors import WhitelistAbort, WhitelistErrorCode
from sealkit.whitelist.hardening import CryptoUtils, Validators
from sealkit.whitelist.objects import (
    MODULE_NAME,
    TGA,
    Asset,
    Cap,
    CapRole,
    ObjectRecord,
    Owner,
    Whitelist,
)
from sealkit.whitelist.typetags import StructTag, TypeTag, canonical_type_name


@dataclass
class TxContext:
    """Per-transaction context: sender, digest and created-object registry."""
    sender: str
    digest: bytes
    package_id: str
    created: List[ObjectRecord] = field(default_factory=list)
    _ids_created: int = 0

    def fresh_object_id(self) -> str:
        """Derive a new object id from the transaction digest and a counter."""
        seed = self.digest + struct.pack("<Q", self._ids_created)
        self._ids_created += 1
        return "0x" + blake2b256(seed).hex()

    def struct_tag(self, name: str) -> StructTag:
        return StructTag(self.package_id, MODULE_NAME, name)

    def transfer(self, contents, name: str, recipient: str) -> None:
        self.created.append(ObjectRecord(
            object_id=contents.id,
            object_type=self.struct_tag(name),
            owner=Owner.address_owner(recipient),
            version=0,
            contents=contents,
        ))

    def share(self, contents, name: str) -> None:
        self.created.append(ObjectRecord(
            object_id=contents.id,
            object_type=self.struct_tag(name),
            owner=Owner.shared(0),
            version=0,
            contents=contents,
        ))


def _abort(code: WhitelistErrorCode, function: str) -> WhitelistAbort:
    return WhitelistAbort(code, function)


def _id_bytes(object_id: str) -> bytes:
    return bytes.fromhex(object_id[2:])


# =============================================================================
# CREATION
# =============================================================================

def _create(
    ctx: TxContext,
    owner: str,
    vault_id: str,
    gating_type: Optional[str],
    capacity: int,
    admin: bool,
) -> Tuple[Whitelist, Cap, Optional[Cap], Optional[TGA]]:
    capacity = Validators.validate_capacity(capacity).raise_if_invalid()
    vault_id = Validators.validate_vault_id(vault_id).raise_if_invalid()
    type_name = canonical_type_name(gating_type) if gating_type else None

    wl = Whitelist(
        id=ctx.fresh_object_id(),
        vault_id=vault_id,
        owner=owner,
        capacity=capacity,
        gating_type=type_name,
        _admin_mode=admin,
    )
    owner_cap = Cap(id=ctx.fresh_object_id(), wl_id=wl.id, role=CapRole.OWNER)
    admin_cap = Cap(id=ctx.fresh_object_id(), wl_id=wl.id, role=CapRole.ADMIN) if admin else None
    tga = TGA(id=ctx.fresh_object_id(), wl_id=wl.id, type_name=type_name) if type_name else None

    ctx.share(wl, "Whitelist")
    ctx.transfer(owner_cap, "Cap", owner)
    if admin_cap is not None:
        ctx.transfer(admin_cap, "Cap", ctx.sender)
    if tga is not None:
        ctx.share(tga, "TGA")
    return wl, owner_cap, admin_cap, tga


def create_whitelist(
    ctx: TxContext,
    vault_id: str,
    gating_type: Optional[str],
    capacity: int,
) -> Tuple[Whitelist, Cap, Optional[TGA]]:
    """Create an owner-only whitelist owned by the sender."""
    wl, owner_cap, _, tga = _create(ctx, ctx.sender, vault_id, gating_type, capacity, admin=False)
    return wl, owner_cap, tga


def create_admin_whitelist(
    ctx: TxContext,
    owner: str,
    vault_id: str,
    gating_type: Optional[str],
    capacity: int,
) -> Tuple[Whitelist, Cap, Cap, Optional[TGA]]:
    """Create an admin-mode whitelist.

    The owner Cap goes to ``owner``; the sender keeps an admin Cap.
    """
    owner = Validators.validate_address(owner, "owner").raise_if_invalid()
    wl, owner_cap, admin_cap, tga = _create(ctx, owner, vault_id, gating_type, capacity, admin=True)
    return wl, owner_cap, admin_cap, tga


# =============================================================================
# MEMBERSHIP
# =============================================================================

def check_policy(wl: Whitelist, cap: Cap, function: str) -> None:
    """Abort with EInvalidCap unless ``cap`` may administer ``wl``."""
    if cap.wl_id != wl.id:
        raise _abort(WhitelistErrorCode.EInvalidCap, function)
    if cap.role == CapRole.ADMIN and not wl.admin_mode:
        raise _abort(WhitelistErrorCode.EInvalidCap, function)


def add(ctx: TxContext, wl: Whitelist, cap: Cap, account: str) -> None:
    check_policy(wl, cap, "add")
    account = Validators.validate_address(account, "account").raise_if_invalid()
    if wl.contains(account):
        raise _abort(WhitelistErrorCode.EDuplicate, "add")
    if wl.is_full():
        raise _abort(WhitelistErrorCode.EExceededCapacity, "add")
    wl.insert(account)


def remove(ctx: TxContext, wl: Whitelist, cap: Cap, account: str) -> None:
    """Remove ``account``; removing a non-member succeeds without change."""
    check_policy(wl, cap, "remove")
    account = Validators.validate_address(account, "account").raise_if_invalid()
    wl.discard(account)


def remove_admin_mode(ctx: TxContext, wl: Whitelist, cap: Cap) -> None:
    if cap.wl_id != wl.id:
        raise _abort(WhitelistErrorCode.EInvalidCap, "remove_admin_mode")
    if cap.role != CapRole.OWNER:
        raise _abort(WhitelistErrorCode.EInvalidOwnerCap, "remove_admin_mode")
    if not wl.admin_mode:
        raise _abort(WhitelistErrorCode.EWhitelistWithNoAdmin, "remove_admin_mode")
    wl.revoke_admin_mode()


# =============================================================================
# APPROVAL QUERIES
# =============================================================================

def seal_approve(
    ctx: TxContext,
    type_arg: TypeTag,
    id: bytes,
    tga: TGA,
    token: ObjectRecord,
) -> bool:
    """Approve the sender if it owns an asset of the TGA's gated type.

    ``id`` must be namespaced under the TGA's object id.
    """
    if not CryptoUtils.has_prefix(id, _id_bytes(tga.id)):
        raise _abort(WhitelistErrorCode.ENoAccess, "seal_approve")
    if type_arg.canonical() != tga.type_name:
        raise _abort(WhitelistErrorCode.ENoAccess, "seal_approve")
    if not isinstance(token.contents, Asset) or token.object_type.canonical() != tga.type_name:
        raise _abort(WhitelistErrorCode.ENoAccess, "seal_approve")
    if not token.owner.is_owned_by(ctx.sender):
        raise _abort(WhitelistErrorCode.ENoAccess, "seal_approve")
    return True


def seal_approve_whitelist(ctx: TxContext, id: bytes, wl: Whitelist) -> bool:
    """Approve the sender if it is a member of ``wl``.

    ``id`` must be namespaced under the whitelist's object id.
    """
    if not CryptoUtils.has_prefix(id, _id_bytes(wl.id)):
        raise _abort(WhitelistErrorCode.ENoAccess, "seal_approve_whitelist")
    if not wl.contains(ctx.sender):
        raise _abort(WhitelistErrorCode.ENoAccess, "seal_approve_whitelist")
    return True
