"""
Whitelist client.

Drives the contract through a ``LedgerNode`` the way a wallet would: attach
the call, set gas budget and sender, build, sign, dry run; only a successful
dry run is executed. A failed dry run raises ``WhitelistTransactionError``
with the decoded message. There are no retries.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from sealkit.whitelist.config import get_config
from sealkit.whitelist.errors import TaxonomyVersion, decode_failure, resolve_taxonomy
from sealkit.whitelist.hardening import Validators
from sealkit.whitelist.keys import Ed25519Keypair
from sealkit.whitelist.node import LedgerNode, ObjectChange, TransactionResponse
from sealkit.whitelist.objects import Cap, CapRole
from sealkit.whitelist.observability import (
    WhitelistLayer,
    correlation_id_var,
    generate_correlation_id,
    get_logger,
    timed_operation,
)
from sealkit.whitelist.transactions import Transaction

logger = get_logger("client", WhitelistLayer.CLIENT)

ObjectChanges = Union[TransactionResponse, Iterable[Union[ObjectChange, Mapping[str, Any]]], None]


def _normalize(address: str) -> str:
    return Validators.validate_address(address).raise_if_invalid()


class WhitelistTransactionError(Exception):
    """A transaction failed its dry run.

    ``code`` is the numeric abort code, or None when the failure was not a
    contract abort (bad arguments, ownership, gas).
    """

    def __init__(self, message: str, code: Optional[int] = None, raw: str = "",
                 response: Optional[TransactionResponse] = None):
        self.message = message
        self.code = code
        self.raw = raw
        self.response = response
        super().__init__(message)


# =============================================================================
# OBJECT CHANGE LOOKUP
# =============================================================================

def _change_dicts(changes: ObjectChanges) -> List[Dict[str, Any]]:
    if changes is None:
        return []
    if isinstance(changes, TransactionResponse):
        changes = changes.object_changes
    return [c.to_dict() if isinstance(c, ObjectChange) else dict(c) for c in changes]


def _find_created(changes: ObjectChanges, type_fragment: str,
                  predicate: Callable[[Dict[str, Any]], bool] = lambda c: True) -> Optional[str]:
    for change in _change_dicts(changes):
        if (
            change.get("type") == "created"
            and type_fragment in (change.get("objectType") or "")
            and predicate(change)
        ):
            return change.get("objectId")
    return None


def get_whitelist_id(changes: ObjectChanges) -> Optional[str]:
    return _find_created(changes, "whitelist::Whitelist")


def get_tga_id(changes: ObjectChanges) -> Optional[str]:
    return _find_created(changes, "whitelist::TGA")


def get_cap_id(changes: ObjectChanges, owner: str) -> Optional[str]:
    """Id of the created Cap transferred to ``owner``."""
    owner = _normalize(owner)

    def owned(change: Dict[str, Any]) -> bool:
        owner_json = change.get("owner")
        return isinstance(owner_json, dict) and owner_json.get("AddressOwner") == owner
    return _find_created(changes, "whitelist::Cap", owned)


@dataclass(frozen=True)
class CreatedWhitelist:
    whitelist_id: str
    owner_cap_id: str
    admin_cap_id: Optional[str]
    tga_id: Optional[str]
    digest: str


# =============================================================================
# CLIENT
# =============================================================================

class WhitelistClient:
    """Typed wrappers over every whitelist entry point."""

    def __init__(
        self,
        node: LedgerNode,
        package_id: Optional[str] = None,
        gas_budget: Optional[int] = None,
        settle_delay_ms: Optional[int] = None,
        taxonomy: Union[TaxonomyVersion, str, None] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        config = get_config()
        self.node = node
        self.package_id = package_id or node.package_id
        # Bad settings raise here, never after an execution.
        self.gas_budget = Validators.validate_positive_u64(
            gas_budget if gas_budget is not None else config.client.gas_budget.get(),
            "gas_budget",
        ).raise_if_invalid()
        self.settle_delay_ms = Validators.validate_u64(
            settle_delay_ms if settle_delay_ms is not None else config.client.settle_delay_ms.get(),
            "settle_delay_ms",
        ).raise_if_invalid()
        self.taxonomy = resolve_taxonomy(taxonomy or config.client.error_taxonomy.get())
        self._sleep = sleep

    def target(self, function: str) -> str:
        return f"{self.package_id}::whitelist::{function}"

    @timed_operation(logger, "execute_transaction")
    def execute_transaction(
        self,
        move_call: Mapping[str, Any],
        tx: Transaction,
        signer: Ed25519Keypair,
    ) -> TransactionResponse:
        """Attach ``move_call`` to ``tx``, dry run it, then execute it.

        ``move_call`` holds ``target``, ``arguments`` and optionally
        ``typeArguments`` (or ``type_arguments``).
        """
        token = correlation_id_var.set(correlation_id_var.get() or generate_correlation_id())
        try:
            tx.move_call(
                target=move_call["target"],
                arguments=move_call.get("arguments") or (),
                type_arguments=move_call.get("typeArguments") or move_call.get("type_arguments") or (),
            )
            tx.set_gas_budget(self.gas_budget)
            tx.set_sender(signer.to_address())
            tx_bytes = tx.build()
            signature = signer.sign_transaction(tx_bytes)

            dry_run = self.node.dry_run(tx_bytes)
            if not dry_run.succeeded:
                raw = dry_run.execution_error_source or dry_run.error or ""
                decoded = decode_failure(raw, self.taxonomy)
                logger.info(
                    "Dry run failed",
                    operation="execute_transaction",
                    error_code=decoded.error.name if decoded.error else "",
                    target=move_call["target"],
                    raw=raw,
                )
                raise WhitelistTransactionError(decoded.message, decoded.abort_code, raw, dry_run)

            response = self.node.execute(tx_bytes, signature, show_object_changes=True)
            if not response.succeeded:
                raw = response.execution_error_source or response.error or ""
                decoded = decode_failure(raw, self.taxonomy)
                raise WhitelistTransactionError(decoded.message, decoded.abort_code, raw, response)
            if self.settle_delay_ms:
                self._sleep(self.settle_delay_ms / 1000.0)
            return response
        finally:
            correlation_id_var.reset(token)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def _created(self, response: TransactionResponse) -> CreatedWhitelist:
        caps: Dict[CapRole, str] = {}
        for change in response.created():
            record = self.node.get_object(change.object_id)
            if record is not None and isinstance(record.contents, Cap):
                caps[record.contents.role] = change.object_id
        return CreatedWhitelist(
            whitelist_id=get_whitelist_id(response),
            owner_cap_id=caps[CapRole.OWNER],
            admin_cap_id=caps.get(CapRole.ADMIN),
            tga_id=get_tga_id(response),
            digest=response.digest,
        )

    def create_whitelist(
        self,
        signer: Ed25519Keypair,
        vault_id: str,
        capacity: int,
        gating_type: str = "",
    ) -> CreatedWhitelist:
        tx = Transaction()
        res = self.execute_transaction({
            "target": self.target("create_whitelist"),
            "arguments": [tx.pure.string(vault_id), tx.pure.string(gating_type), tx.pure.u64(capacity)],
        }, tx, signer)
        return self._created(res)

    def create_whitelist_entry(
        self,
        signer: Ed25519Keypair,
        gating_type: str,
        vault_id: str,
        capacity: int,
    ) -> CreatedWhitelist:
        tx = Transaction()
        res = self.execute_transaction({
            "target": self.target("create_whitelist_entry"),
            "typeArguments": [gating_type],
            "arguments": [tx.pure.string(vault_id), tx.pure.u64(capacity)],
        }, tx, signer)
        return self._created(res)

    def create_admin_whitelist(
        self,
        signer: Ed25519Keypair,
        owner: str,
        vault_id: str,
        capacity: int,
        gating_type: str = "",
    ) -> CreatedWhitelist:
        tx = Transaction()
        res = self.execute_transaction({
            "target": self.target("create_admin_whitelist"),
            "arguments": [
                tx.pure.address(owner),
                tx.pure.string(vault_id),
                tx.pure.string(gating_type),
                tx.pure.u64(capacity),
            ],
        }, tx, signer)
        return self._created(res)

    def create_admin_whitelist_entry(
        self,
        signer: Ed25519Keypair,
        gating_type: str,
        vault_id: str,
        owner: str,
        capacity: int,
    ) -> CreatedWhitelist:
        tx = Transaction()
        res = self.execute_transaction({
            "target": self.target("create_admin_whitelist_entry"),
            "typeArguments": [gating_type],
            "arguments": [tx.pure.string(vault_id), tx.pure.address(owner), tx.pure.u64(capacity)],
        }, tx, signer)
        return self._created(res)

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def add(self, signer: Ed25519Keypair, whitelist_id: str, cap_id: str, account: str) -> TransactionResponse:
        tx = Transaction()
        return self.execute_transaction({
            "target": self.target("add"),
            "arguments": [tx.object(whitelist_id), tx.object(cap_id), tx.pure.address(account)],
        }, tx, signer)

    def remove(self, signer: Ed25519Keypair, whitelist_id: str, cap_id: str, account: str) -> TransactionResponse:
        tx = Transaction()
        return self.execute_transaction({
            "target": self.target("remove"),
            "arguments": [tx.object(whitelist_id), tx.object(cap_id), tx.pure.address(account)],
        }, tx, signer)

    def remove_admin_mode(self, signer: Ed25519Keypair, whitelist_id: str, cap_id: str) -> TransactionResponse:
        tx = Transaction()
        return self.execute_transaction({
            "target": self.target("remove_admin_mode"),
            "arguments": [tx.object(whitelist_id), tx.object(cap_id)],
        }, tx, signer)

    # -------------------------------------------------------------------------
    # Approval
    # -------------------------------------------------------------------------

    def seal_approve(
        self,
        signer: Ed25519Keypair,
        gating_type: str,
        tga_id: str,
        token_id: str,
        id: Optional[bytes] = None,
    ) -> TransactionResponse:
        """Request approval as ``signer`` by presenting ``token_id``.

        ``id`` defaults to the TGA id itself.
        """
        tx = Transaction()
        return self.execute_transaction({
            "target": self.target("seal_approve"),
            "typeArguments": [gating_type],
            "arguments": [
                tx.pure.vector("u8", id if id is not None else tga_id),
                tx.object(tga_id),
                tx.object(token_id),
            ],
        }, tx, signer)

    def seal_approve_whitelist(
        self,
        signer: Ed25519Keypair,
        whitelist_id: str,
        id: Optional[bytes] = None,
    ) -> TransactionResponse:
        """Request approval as ``signer`` by whitelist membership."""
        tx = Transaction()
        return self.execute_transaction({
            "target": self.target("seal_approve_whitelist"),
            "arguments": [
                tx.pure.vector("u8", id if id is not None else whitelist_id),
                tx.object(whitelist_id),
            ],
        }, tx, signer)
