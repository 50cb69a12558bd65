"""
Transaction construction and decoding.

A transaction is a list of inputs (pure values and object references) and a
list of Move calls whose arguments index into the inputs. ``Transaction.build``
serializes it to canonical JSON, validated against ``transaction.schema.json``.
The bytes are what gets signed, dry-run and executed.

Usage:

    tx = Transaction()
    tx.move_call(
        target=f"{package_id}::whitelist::add",
        arguments=[tx.object(wl_id), tx.object(cap_id), tx.pure.address(account)],
    )
    tx.set_gas_budget(10_000_000)
    tx.set_sender(signer.to_address())
    tx_bytes = tx.build()
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from sealkit.whitelist.core import b58encode, blake2b256, canonical_json_bytes
from sealkit.whitelist.hardening import CryptoUtils, Validators
from sealkit.whitelist.schema import TRANSACTION_SCHEMA, require_valid
from sealkit.whitelist.typetags import canonical_type_name, normalize_address


DEFAULT_GAS_BUDGET = 10_000_000
TRANSACTION_FORMAT_VERSION = 1


@dataclass(frozen=True)
class TransactionArgument:
    """Reference to a transaction input by index."""
    index: int

    def to_json(self) -> Dict[str, int]:
        return {"Input": self.index}


@dataclass(frozen=True)
class PureInput:
    type: str
    value: Union[bool, int, str]

    def to_json(self) -> Dict[str, Any]:
        return {"kind": "pure", "type": self.type, "value": self.value}

    def decode(self) -> Any:
        if self.type == "vector<u8>":
            return bytes.fromhex(self.value[2:])
        return self.value


@dataclass(frozen=True)
class ObjectInput:
    object_id: str

    def to_json(self) -> Dict[str, Any]:
        return {"kind": "object", "objectId": self.object_id}


TransactionInput = Union[PureInput, ObjectInput]


@dataclass(frozen=True)
class MoveCall:
    package: str
    module: str
    function: str
    type_arguments: Tuple[str, ...] = ()
    arguments: Tuple[int, ...] = ()

    @property
    def target(self) -> str:
        return f"{self.package}::{self.module}::{self.function}"

    def to_json(self) -> Dict[str, Any]:
        return {
            "MoveCall": {
                "package": self.package,
                "module": self.module,
                "function": self.function,
                "typeArguments": list(self.type_arguments),
                "arguments": [{"Input": i} for i in self.arguments],
            }
        }


def parse_target(target: str) -> Tuple[str, str, str]:
    """Split ``package::module::function``, normalizing the package address."""
    parts = target.split("::")
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Move call target must be package::module::function, got {target!r}")
    return normalize_address(parts[0]), parts[1], parts[2]


def transaction_digest(tx_bytes: bytes) -> str:
    """Base58 digest identifying a transaction."""
    return b58encode(blake2b256(b"TransactionData::" + tx_bytes))


# =============================================================================
# BUILDER
# =============================================================================

class _PureBuilder:
    """Serializers for pure (non-object) arguments, reached via ``tx.pure``."""

    def __init__(self, tx: "Transaction"):
        self._tx = tx

    def _add(self, type_: str, value: Any) -> TransactionArgument:
        return self._tx._add_input(PureInput(type_, value))

    def bool(self, value: bool) -> TransactionArgument:
        if not isinstance(value, bool):
            raise TypeError(f"expected bool, got {type(value).__name__}")
        return self._add("bool", value)

    def u8(self, value: int) -> TransactionArgument:
        value = Validators.validate_u64(value, "u8").raise_if_invalid()
        if value > 0xFF:
            raise ValueError(f"u8 out of range: {value}")
        return self._add("u8", value)

    def u64(self, value: Union[int, str]) -> TransactionArgument:
        return self._add("u64", Validators.validate_u64(value).raise_if_invalid())

    def address(self, value: str) -> TransactionArgument:
        return self._add("address", Validators.validate_address(value).raise_if_invalid())

    def string(self, value: str) -> TransactionArgument:
        return self._add("string", Validators.validate_string(value, "string").raise_if_invalid())

    def vector(self, element_type: str, value: Any) -> TransactionArgument:
        if element_type != "u8":
            raise ValueError(f"only vector<u8> pure arguments are supported, got vector<{element_type}>")
        raw = Validators.validate_bytes(value, "vector<u8>").raise_if_invalid()
        return self._add("vector<u8>", "0x" + raw.hex())


class Transaction:
    """Mutable transaction builder."""

    def __init__(self):
        self._inputs: List[TransactionInput] = []
        self._commands: List[MoveCall] = []
        self._sender: Optional[str] = None
        self._gas_budget: int = DEFAULT_GAS_BUDGET
        self.pure = _PureBuilder(self)

    def _add_input(self, item: TransactionInput) -> TransactionArgument:
        if isinstance(item, ObjectInput):
            for i, existing in enumerate(self._inputs):
                if existing == item:
                    return TransactionArgument(i)
        self._inputs.append(item)
        return TransactionArgument(len(self._inputs) - 1)

    def object(self, object_id: str) -> TransactionArgument:
        return self._add_input(ObjectInput(Validators.validate_object_id(object_id).raise_if_invalid()))

    def move_call(
        self,
        target: str,
        arguments: Sequence[TransactionArgument] = (),
        type_arguments: Sequence[str] = (),
    ) -> None:
        package, module, function = parse_target(target)
        for arg in arguments:
            if not isinstance(arg, TransactionArgument) or arg.index >= len(self._inputs):
                raise ValueError(f"argument {arg!r} does not belong to this transaction")
        self._commands.append(MoveCall(
            package=package,
            module=module,
            function=function,
            type_arguments=tuple(canonical_type_name(t) for t in type_arguments),
            arguments=tuple(a.index for a in arguments),
        ))

    def set_sender(self, address: str) -> None:
        self._sender = Validators.validate_address(address, "sender").raise_if_invalid()

    def set_gas_budget(self, budget: int) -> None:
        self._gas_budget = Validators.validate_u64(budget, "gas_budget").raise_if_invalid()

    @property
    def sender(self) -> Optional[str]:
        return self._sender

    def to_json(self) -> Dict[str, Any]:
        if self._sender is None:
            raise ValueError("transaction sender is not set")
        return {
            "version": TRANSACTION_FORMAT_VERSION,
            "sender": self._sender,
            "gasBudget": self._gas_budget,
            "nonce": "0x" + CryptoUtils.secure_random_hex(16),
            "inputs": [i.to_json() for i in self._inputs],
            "commands": [c.to_json() for c in self._commands],
        }

    def build(self) -> bytes:
        """Serialize to canonical bytes. Each call yields a fresh nonce."""
        data = self.to_json()
        require_valid(data, TRANSACTION_SCHEMA)
        return canonical_json_bytes(data)


# =============================================================================
# DECODED FORM
# =============================================================================

@dataclass(frozen=True)
class TransactionData:
    sender: str
    gas_budget: int
    nonce: str
    inputs: Tuple[TransactionInput, ...] = field(default_factory=tuple)
    commands: Tuple[MoveCall, ...] = field(default_factory=tuple)
    digest: str = ""

    @classmethod
    def from_bytes(cls, tx_bytes: bytes) -> "TransactionData":
        """Decode and validate transaction bytes. Raises ValueError if malformed."""
        try:
            data = json.loads(tx_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"transaction bytes are not valid JSON: {e}") from None
        require_valid(data, TRANSACTION_SCHEMA)

        inputs: List[TransactionInput] = []
        for item in data["inputs"]:
            if item["kind"] == "object":
                inputs.append(ObjectInput(item["objectId"]))
            else:
                inputs.append(PureInput(item["type"], item["value"]))

        commands: List[MoveCall] = []
        for cmd in data["commands"]:
            call = cmd["MoveCall"]
            indexes = tuple(a["Input"] for a in call["arguments"])
            for i in indexes:
                if i >= len(inputs):
                    raise ValueError(f"argument index {i} out of range ({len(inputs)} inputs)")
            commands.append(MoveCall(
                package=call["package"],
                module=call["module"],
                function=call["function"],
                type_arguments=tuple(call["typeArguments"]),
                arguments=indexes,
            ))

        return cls(
            sender=data["sender"],
            gas_budget=data["gasBudget"],
            nonce=data["nonce"],
            inputs=tuple(inputs),
            commands=tuple(commands),
            digest=transaction_digest(tx_bytes),
        )

    def object_ids(self) -> List[str]:
        return [i.object_id for i in self.inputs if isinstance(i, ObjectInput)]
