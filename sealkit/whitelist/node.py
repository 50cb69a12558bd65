"""
Ledger execution engine.

``LedgerNode`` hosts the whitelist module at a package id and executes signed
transactions against an ``ObjectStore``:

    tx_bytes ──► decode + schema check
             ──► signature / replay checks            (execute only)
             ──► lock every input object (sorted ids)
             ──► link call, check arguments, resolve objects
             ──► run contract on private copies
             ──► gas check
             ──► commit staged writes                 (execute only)

Any failure after decoding produces a ``failure`` status and commits nothing.
Contract aborts carry ``sub status <code>`` in their error text; linking,
argument and gas failures never do, so they can't be mistaken for a
whitelist error.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from sealkit.whitelist import contract
from sealkit.whitelist.core import b58decode, blake2b256, load_json, now_iso8601, write_canonical_json
from sealkit.whitelist.errors import WhitelistAbort
from sealkit.whitelist.hardening import (
    AtomicCounter,
    SecurityViolation,
    ValidationErrors,
    Validators,
)
from sealkit.whitelist.keys import verify_transaction_signature
from sealkit.whitelist.objects import MODULE_NAME, Asset, ObjectRecord, Owner, OwnerKind
from sealkit.whitelist.observability import (
    AuditEventType,
    AuditLogger,
    WhitelistLayer,
    get_logger,
    timed_operation,
)
from sealkit.whitelist.schema import LEDGER_STATE_SCHEMA, SchemaValidationError, require_valid
from sealkit.whitelist.store import ObjectStore, StagedWrites
from sealkit.whitelist.transactions import (
    MoveCall,
    ObjectInput,
    PureInput,
    TransactionData,
)
from sealkit.whitelist.typetags import StructTag, TypeTag, TypeTagError, parse_struct_tag, parse_type_tag

logger = get_logger("node", WhitelistLayer.LEDGER)

LEDGER_FORMAT = "sealkit.whitelist.ledger/1"

COMPUTATION_COST_PER_CALL = 1_000_000
STORAGE_COST_PER_OBJECT = 988_000


class ReplayAttempt(SecurityViolation):
    """A transaction digest was submitted for execution twice."""
    pass


class ExecutionFailure(Exception):
    """Non-abort execution failure (linking, arguments, ownership, gas)."""

    def __init__(self, kind: str, detail: str, command: Optional[int] = None):
        self.kind = kind
        self.detail = detail
        self.command = command
        where = f" in command {command}" if command is not None else ""
        super().__init__(f"{kind}{where}: {detail}")


# =============================================================================
# FUNCTION SIGNATURES
# =============================================================================

@dataclass(frozen=True)
class Param:
    kind: str  # "pure" | "object"
    type: str = ""  # pure type, or struct name inside the whitelist module
    mutable: bool = False
    type_param: Optional[int] = None  # object typed by a call type argument

    def describe(self, package_id: str) -> str:
        if self.kind == "pure":
            return self.type
        if self.type_param is not None:
            return f"T{self.type_param}"
        prefix = "&mut " if self.mutable else "&"
        return f"{prefix}{package_id}::{MODULE_NAME}::{self.type}"


def _pure(type_: str) -> Param:
    return Param("pure", type_)


def _obj(name: str, mutable: bool = False) -> Param:
    return Param("object", name, mutable)


def _typed(index: int) -> Param:
    return Param("object", type_param=index)


@dataclass(frozen=True)
class FunctionSignature:
    name: str
    params: Tuple[Param, ...]
    handler: Callable[..., Any]
    type_params: int = 0


def _pure_value_ok(item: PureInput) -> bool:
    value = item.value
    if item.type == "bool":
        return isinstance(value, bool)
    if item.type in ("u8", "u64"):
        if not Validators.validate_u64(value).is_valid or isinstance(value, str):
            return False
        return item.type == "u64" or value <= 0xFF
    if item.type == "vector<u8>":
        return isinstance(value, str) and value.startswith("0x") and Validators.validate_bytes(value, "id").is_valid
    return isinstance(value, str)


def _is_digest(value: str) -> bool:
    try:
        return len(b58decode(value)) == 32
    except ValueError:
        return False


def _gating(type_args: Sequence[TypeTag]) -> str:
    return type_args[0].canonical()


WHITELIST_FUNCTIONS: Dict[str, FunctionSignature] = {
    sig.name: sig for sig in (
        FunctionSignature(
            "create_whitelist",
            (_pure("string"), _pure("string"), _pure("u64")),
            lambda ctx, ta, vault_id, gating, capacity:
                contract.create_whitelist(ctx, vault_id, gating or None, capacity),
        ),
        FunctionSignature(
            "create_admin_whitelist",
            (_pure("address"), _pure("string"), _pure("string"), _pure("u64")),
            lambda ctx, ta, owner, vault_id, gating, capacity:
                contract.create_admin_whitelist(ctx, owner, vault_id, gating or None, capacity),
        ),
        FunctionSignature(
            "create_whitelist_entry",
            (_pure("string"), _pure("u64")),
            lambda ctx, ta, vault_id, capacity:
                contract.create_whitelist(ctx, vault_id, _gating(ta), capacity),
            type_params=1,
        ),
        FunctionSignature(
            "create_admin_whitelist_entry",
            (_pure("string"), _pure("address"), _pure("u64")),
            lambda ctx, ta, vault_id, owner, capacity:
                contract.create_admin_whitelist(ctx, owner, vault_id, _gating(ta), capacity),
            type_params=1,
        ),
        FunctionSignature(
            "add",
            (_obj("Whitelist", mutable=True), _obj("Cap"), _pure("address")),
            lambda ctx, ta, wl, cap, account: contract.add(ctx, wl, cap, account),
        ),
        FunctionSignature(
            "remove",
            (_obj("Whitelist", mutable=True), _obj("Cap"), _pure("address")),
            lambda ctx, ta, wl, cap, account: contract.remove(ctx, wl, cap, account),
        ),
        FunctionSignature(
            "remove_admin_mode",
            (_obj("Whitelist", mutable=True), _obj("Cap")),
            lambda ctx, ta, wl, cap: contract.remove_admin_mode(ctx, wl, cap),
        ),
        FunctionSignature(
            "seal_approve",
            (_pure("vector<u8>"), _obj("TGA"), _typed(0)),
            lambda ctx, ta, id, tga, token: contract.seal_approve(ctx, ta[0], id, tga, token),
            type_params=1,
        ),
        FunctionSignature(
            "seal_approve_whitelist",
            (_pure("vector<u8>"), _obj("Whitelist")),
            lambda ctx, ta, id, wl: contract.seal_approve_whitelist(ctx, id, wl),
        ),
    )
}


# =============================================================================
# RESPONSES
# =============================================================================

@dataclass
class GasCostSummary:
    computation_cost: int = 0
    storage_cost: int = 0
    storage_rebate: int = 0

    @property
    def total(self) -> int:
        return self.computation_cost + self.storage_cost - self.storage_rebate

    def to_dict(self) -> Dict[str, str]:
        return {
            "computationCost": str(self.computation_cost),
            "storageCost": str(self.storage_cost),
            "storageRebate": str(self.storage_rebate),
        }


@dataclass
class ObjectChange:
    type: str  # created | mutated
    sender: str
    owner: Owner
    object_type: str
    object_id: str
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "sender": self.sender,
            "owner": self.owner.to_json(),
            "objectType": self.object_type,
            "objectId": self.object_id,
            "version": str(self.version),
        }


@dataclass
class TransactionResponse:
    """Outcome of a dry run or an execution."""
    digest: str
    status: str  # success | failure
    gas_used: GasCostSummary
    error: Optional[str] = None
    execution_error_source: Optional[str] = None
    abort_code: Optional[int] = None
    object_changes: List[ObjectChange] = field(default_factory=list)
    committed: bool = False
    show_object_changes: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def created(self) -> List[ObjectChange]:
        return [c for c in self.object_changes if c.type == "created"]

    def to_dict(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {"status": self.status}
        if self.error is not None:
            status["error"] = self.error
        result: Dict[str, Any] = {
            "digest": self.digest,
            "effects": {
                "status": status,
                "gasUsed": self.gas_used.to_dict(),
                "transactionDigest": self.digest,
                "created": [
                    {"owner": c.owner.to_json(), "reference": {"objectId": c.object_id, "version": c.version}}
                    for c in self.object_changes if c.type == "created"
                ],
                "mutated": [
                    {"owner": c.owner.to_json(), "reference": {"objectId": c.object_id, "version": c.version}}
                    for c in self.object_changes if c.type == "mutated"
                ],
            },
            "confirmedLocalExecution": self.committed,
        }
        if self.show_object_changes:
            result["objectChanges"] = [c.to_dict() for c in self.object_changes]
        if self.execution_error_source is not None:
            result["executionErrorSource"] = self.execution_error_source
        return result


@dataclass
class _Outcome:
    staged: StagedWrites
    gas: GasCostSummary


# =============================================================================
# NODE
# =============================================================================

class LedgerNode:
    """
    In-process ledger hosting the whitelist module.

    Thread-safe: transactions touching disjoint objects run in parallel,
    transactions sharing an object are serialized by the store's locks.
    """

    def __init__(self, package_id: str, store: Optional[ObjectStore] = None):
        self.package_id = Validators.validate_object_id(package_id).raise_if_invalid()
        self._store = store or ObjectStore()
        self._executed: Set[str] = set()
        self._executed_lock = threading.Lock()
        self._genesis_counter = AtomicCounter(0)
        self.audit = AuditLogger(logger)

    @property
    def store(self) -> ObjectStore:
        return self._store

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_object(self, object_id: str) -> Optional[ObjectRecord]:
        object_id = Validators.validate_object_id(object_id).raise_if_invalid()
        return self._store.get(object_id)

    def owned_objects(self, address: str) -> List[ObjectRecord]:
        address = Validators.validate_address(address).raise_if_invalid()
        return self._store.owned_by(address)

    def is_executed(self, digest: str) -> bool:
        with self._executed_lock:
            return digest in self._executed

    # -------------------------------------------------------------------------
    # Genesis
    # -------------------------------------------------------------------------

    def mint_object(
        self,
        object_type: str,
        owner: str,
        fields: Optional[Dict[str, Any]] = None,
        object_id: Optional[str] = None,
    ) -> ObjectRecord:
        """Create an owned asset outside of any transaction (test faucet)."""
        tag = parse_struct_tag(object_type)
        owner = Validators.validate_address(owner, "owner").raise_if_invalid()
        if object_id is None:
            seed = b"genesis::" + self.package_id.encode() + self._genesis_counter.increment().to_bytes(8, "little")
            object_id = "0x" + blake2b256(seed).hex()
        else:
            object_id = Validators.validate_object_id(object_id).raise_if_invalid()

        record = ObjectRecord(
            object_id=object_id,
            object_type=tag,
            owner=Owner.address_owner(owner),
            version=0,
            contents=Asset(id=object_id, fields=dict(fields or {})),
        )
        self._store.insert_genesis(record)
        self.audit.log(
            AuditEventType.OBJECT_MINTED, owner, object_id, "mint", "success",
            details={"objectType": tag.canonical()},
        )
        logger.info("Minted object", operation="mint_object", object_id=object_id, object_type=tag.canonical())
        return self._store.get(object_id)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    @timed_operation(logger, "dry_run")
    def dry_run(self, tx_bytes: bytes) -> TransactionResponse:
        """Execute against private copies and report effects. Never commits."""
        data = TransactionData.from_bytes(tx_bytes)
        with self._store.locked(data.object_ids()):
            return self._run(data, tx_bytes, commit=False, show_object_changes=True)

    @timed_operation(logger, "execute")
    def execute(
        self,
        tx_bytes: bytes,
        signature: str,
        show_object_changes: bool = True,
    ) -> TransactionResponse:
        """Verify, execute and commit a signed transaction."""
        data = TransactionData.from_bytes(tx_bytes)

        try:
            signer = verify_transaction_signature(tx_bytes, signature)
        except SecurityViolation as e:
            self.audit.log(AuditEventType.SIGNATURE_INVALID, data.sender, data.digest, "execute", "rejected",
                           details={"reason": str(e)})
            logger.warning("Rejected transaction signature", operation="execute", digest=data.digest)
            raise
        if signer != data.sender:
            self.audit.log(AuditEventType.SIGNATURE_INVALID, data.sender, data.digest, "execute", "rejected",
                           details={"signer": signer})
            raise SecurityViolation(f"signature is from {signer}, transaction sender is {data.sender}")

        with self._executed_lock:
            if data.digest in self._executed:
                replayed = True
            else:
                self._executed.add(data.digest)
                replayed = False
        if replayed:
            self.audit.log(AuditEventType.REPLAY_ATTEMPT, data.sender, data.digest, "execute", "rejected")
            logger.warning("Rejected replayed transaction", operation="execute", digest=data.digest)
            raise ReplayAttempt(f"transaction {data.digest} was already executed")

        with self._store.locked(data.object_ids()):
            response = self._run(data, tx_bytes, commit=True, show_object_changes=show_object_changes)

        event_type = AuditEventType.TX_EXECUTED if response.succeeded else AuditEventType.TX_ABORTED
        self.audit.log(
            event_type, data.sender, data.digest,
            ",".join(c.function for c in data.commands),
            response.status,
            details={"abortCode": response.abort_code} if response.abort_code is not None else None,
        )
        return response

    def _run(
        self,
        data: TransactionData,
        tx_bytes: bytes,
        commit: bool,
        show_object_changes: bool,
    ) -> TransactionResponse:
        digest_bytes = blake2b256(b"TransactionData::" + tx_bytes)
        computation = COMPUTATION_COST_PER_CALL * len(data.commands)
        gas = GasCostSummary(computation_cost=computation)

        try:
            if computation > data.gas_budget:
                raise ExecutionFailure("InsufficientGas", f"budget {data.gas_budget} < computation cost {computation}")
            outcome = self._apply(data, digest_bytes)
            gas = outcome.gas
            if gas.total > data.gas_budget:
                raise ExecutionFailure("InsufficientGas", f"budget {data.gas_budget} < total cost {gas.total}")
        except WhitelistAbort as abort:
            command = abort.command or 0
            location = f"{self.package_id}::{MODULE_NAME}::{abort.function}"
            error = (
                f"MoveAbort(MoveLocation {{ module: {self.package_id}::{MODULE_NAME}, "
                f"function_name: Some(\"{abort.function}\") }}, {int(abort.code)}) "
                f"in command {command}, sub status {int(abort.code)}"
            )
            logger.info(
                "Transaction aborted",
                operation="execute" if commit else "dry_run",
                error_code=abort.code.name,
                digest=data.digest,
                location=location,
            )
            return TransactionResponse(
                digest=data.digest,
                status="failure",
                gas_used=gas,
                error=error,
                execution_error_source=f"Move abort in {location} with sub status {int(abort.code)}",
                abort_code=int(abort.code),
                show_object_changes=show_object_changes,
            )
        except ExecutionFailure as failure:
            logger.info(
                "Transaction failed",
                operation="execute" if commit else "dry_run",
                error_code=failure.kind,
                digest=data.digest,
                detail=failure.detail,
            )
            return TransactionResponse(
                digest=data.digest,
                status="failure",
                gas_used=gas,
                error=str(failure),
                show_object_changes=show_object_changes,
            )

        staged = outcome.staged
        if commit:
            version = self._store.commit(staged, data.digest) if not staged.is_empty() else self._store.lamport_version
        else:
            version = max([self._store.lamport_version] + [r.version for r in staged.mutated.values()]) + 1

        changes: List[ObjectChange] = []
        for change_type, records in (("mutated", staged.mutated), ("created", staged.created)):
            for record in records.values():
                owner = record.owner
                if owner.kind == OwnerKind.SHARED and owner.initial_shared_version == 0:
                    owner = Owner.shared(version)
                changes.append(ObjectChange(
                    type=change_type,
                    sender=data.sender,
                    owner=owner,
                    object_type=record.object_type.canonical(),
                    object_id=record.object_id,
                    version=version,
                ))

        if commit:
            logger.info("Transaction executed", operation="execute", digest=data.digest,
                        created=len(staged.created), mutated=len(staged.mutated))
        return TransactionResponse(
            digest=data.digest,
            status="success",
            gas_used=gas,
            object_changes=changes,
            committed=commit,
            show_object_changes=show_object_changes,
        )

    def _apply(self, data: TransactionData, digest_bytes: bytes) -> _Outcome:
        working: Dict[str, ObjectRecord] = {}
        for object_id in data.object_ids():
            record = self._store.get(object_id)
            if record is None:
                raise ExecutionFailure("ObjectNotFound", f"object {object_id} does not exist")
            if record.owner.kind == OwnerKind.ADDRESS and record.owner.address != data.sender:
                raise ExecutionFailure(
                    "InvalidObjectOwner",
                    f"object {object_id} is owned by {record.owner.address}, not the sender {data.sender}",
                )
            working[object_id] = record

        ctx = contract.TxContext(sender=data.sender, digest=digest_bytes, package_id=self.package_id)
        mutated: Dict[str, ObjectRecord] = {}

        for index, call in enumerate(data.commands):
            sig = self._link(call, index)
            type_args = self._type_arguments(call, sig, index)
            args = self._arguments(data, call, sig, type_args, working, index)
            try:
                sig.handler(ctx, type_args, *args)
            except WhitelistAbort as abort:
                abort.command = index
                raise
            except (ValidationErrors, TypeTagError) as e:
                raise ExecutionFailure("InvalidArgument", str(e), index) from e

            for param, arg_index in zip(sig.params, call.arguments):
                if param.mutable:
                    object_id = data.inputs[arg_index].object_id
                    mutated[object_id] = working[object_id]

        created = {r.object_id: r for r in ctx.created}
        gas = GasCostSummary(
            computation_cost=COMPUTATION_COST_PER_CALL * len(data.commands),
            storage_cost=STORAGE_COST_PER_OBJECT * (len(created) + len(mutated)),
        )
        return _Outcome(StagedWrites(mutated=mutated, created=created), gas)

    # -------------------------------------------------------------------------
    # Linking and argument checks
    # -------------------------------------------------------------------------

    def _link(self, call: MoveCall, index: int) -> FunctionSignature:
        if call.package != self.package_id:
            raise ExecutionFailure("PackageNotFound", f"package {call.package} is not published", index)
        if call.module != MODULE_NAME:
            raise ExecutionFailure("ModuleNotFound", f"{call.package}::{call.module}", index)
        sig = WHITELIST_FUNCTIONS.get(call.function)
        if sig is None:
            raise ExecutionFailure("FunctionNotFound", call.target, index)
        if len(call.arguments) != len(sig.params):
            raise ExecutionFailure(
                "ArityMismatch",
                f"{call.function} expects {len(sig.params)} arguments, got {len(call.arguments)}",
                index,
            )
        return sig

    def _type_arguments(self, call: MoveCall, sig: FunctionSignature, index: int) -> List[TypeTag]:
        if len(call.type_arguments) != sig.type_params:
            raise ExecutionFailure(
                "TypeArityMismatch",
                f"{call.function} expects {sig.type_params} type arguments, got {len(call.type_arguments)}",
                index,
            )
        try:
            return [parse_type_tag(t) for t in call.type_arguments]
        except TypeTagError as e:
            raise ExecutionFailure("TypeArgumentError", str(e), index) from e

    def _arguments(
        self,
        data: TransactionData,
        call: MoveCall,
        sig: FunctionSignature,
        type_args: List[TypeTag],
        working: Dict[str, ObjectRecord],
        index: int,
    ) -> List[Any]:
        args: List[Any] = []
        for position, (param, input_index) in enumerate(zip(sig.params, call.arguments)):
            item = data.inputs[input_index]
            expected = param.describe(self.package_id)

            if param.kind == "pure":
                if not isinstance(item, PureInput) or item.type != param.type:
                    raise ExecutionFailure("TypeMismatch", f"argument {position}: expected {expected}", index)
                if not _pure_value_ok(item):
                    raise ExecutionFailure(
                        "InvalidArgument", f"argument {position}: malformed {item.type} value", index)
                args.append(item.decode())
                continue

            if not isinstance(item, ObjectInput):
                raise ExecutionFailure("TypeMismatch", f"argument {position}: expected object {expected}", index)
            record = working[item.object_id]

            if param.type_param is not None:
                wanted = type_args[param.type_param].canonical()
                matches = record.object_type.canonical() == wanted
            else:
                # whitelist module structs are not generic
                wanted = StructTag(self.package_id, MODULE_NAME, param.type).canonical()
                matches = record.object_type.is_struct(self.package_id, MODULE_NAME, param.type)
            if not matches:
                raise ExecutionFailure(
                    "TypeMismatch",
                    f"argument {position}: expected {wanted}, got {record.object_type.canonical()}",
                    index,
                )
            if param.mutable and record.owner.kind == OwnerKind.IMMUTABLE:
                raise ExecutionFailure("InvalidObjectOwner", f"argument {position}: object is immutable", index)

            args.append(record if param.type_param is not None else record.contents)
        return args

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        with self._executed_lock:
            executed = sorted(self._executed)
        return {
            "format": LEDGER_FORMAT,
            "packageId": self.package_id,
            "lamportVersion": self._store.lamport_version,
            "objects": self._store.to_list(),
            "executedDigests": executed,
        }

    def save(self, path: Union[str, Path]) -> str:
        """Write a validated snapshot; returns its BLAKE2b digest (hex)."""
        snapshot = self.snapshot()
        require_valid(snapshot, LEDGER_STATE_SCHEMA)
        digest = write_canonical_json(Path(path), snapshot)
        logger.info("Saved ledger state", operation="save", path=str(path), objects=len(snapshot["objects"]))
        return digest

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "LedgerNode":
        require_valid(snapshot, LEDGER_STATE_SCHEMA)
        package_id = snapshot["packageId"]
        node = cls(package_id)
        records = [ObjectRecord.from_dict(o, package_id) for o in snapshot["objects"]]
        node._store.load_records(records, snapshot["lamportVersion"])
        digests = snapshot["executedDigests"]
        bad = [d for d in digests if not _is_digest(d)]
        if bad:
            raise SchemaValidationError(
                LEDGER_STATE_SCHEMA, [f"executedDigests: not a 32-byte base58 digest: {d!r}" for d in bad]
            )
        node._executed = set(digests)
        return node

    @classmethod
    def load(cls, path: Union[str, Path]) -> "LedgerNode":
        node = cls.from_snapshot(load_json(Path(path)))
        logger.info("Loaded ledger state", operation="load", path=str(path), loaded_at=now_iso8601())
        return node
