"""
Type tag parsing and normalization.

Token gating compares the type of a presented asset against the type recorded
on the whitelist's TGA. Type descriptors arrive in several spellings
(``0x2::coin::Coin<...>`` vs the fully padded address form), so both sides
are parsed and rendered canonically before comparison.

Grammar:

    type_tag   := primitive | "vector<" type_tag ">" | struct_tag
    primitive  := bool | u8 | u16 | u32 | u64 | u128 | u256 | address | signer
    struct_tag := ADDRESS "::" IDENT "::" IDENT [ "<" type_tag ("," type_tag)* ">" ]
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Tuple, Union

from sealkit.whitelist.hardening import Validators


PRIMITIVES = frozenset({"bool", "u8", "u16", "u32", "u64", "u128", "u256", "address", "signer"})

_TOKEN = re.compile(r"\s*(::|<|>|,|[A-Za-z0-9_]+)")
_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class TypeTagError(ValueError):
    """Malformed type descriptor."""
    pass


@dataclass(frozen=True)
class PrimitiveTag:
    name: str

    def canonical(self, with_prefix: bool = True) -> str:
        return self.name


@dataclass(frozen=True)
class VectorTag:
    element: "TypeTag"

    def canonical(self, with_prefix: bool = True) -> str:
        return f"vector<{self.element.canonical(with_prefix)}>"


@dataclass(frozen=True)
class StructTag:
    address: str  # normalized, 0x + 64 hex
    module: str
    name: str
    type_params: Tuple["TypeTag", ...] = ()

    def canonical(self, with_prefix: bool = True) -> str:
        addr = self.address if with_prefix else self.address[2:]
        base = f"{addr}::{self.module}::{self.name}"
        if self.type_params:
            inner = ", ".join(p.canonical(with_prefix) for p in self.type_params)
            base += f"<{inner}>"
        return base

    def is_struct(self, address: str, module: str, name: str) -> bool:
        """True if this tag names ``address::module::name`` (ignoring type params)."""
        return (
            self.address == normalize_address(address)
            and self.module == module
            and self.name == name
        )

    def __str__(self) -> str:
        return self.canonical()


TypeTag = Union[PrimitiveTag, VectorTag, StructTag]


def normalize_address(address: str) -> str:
    """Pad and lowercase an address to its 32-byte ``0x`` form."""
    result = Validators.validate_address(address)
    if not result.is_valid:
        raise TypeTagError(f"invalid address in type tag: {address!r}")
    return result.sanitized_value


def _tokenize(text: str) -> List[str]:
    tokens: List[str] = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m:
            raise TypeTagError(f"unexpected character at {pos} in {text!r}")
        tokens.append(m.group(1))
        pos = m.end()
    return tokens


class _Parser:

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> str:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else ""

    def take(self, expected: str = "") -> str:
        tok = self.peek()
        if not tok:
            raise TypeTagError(f"unexpected end of type tag {self.text!r}")
        if expected and tok != expected:
            raise TypeTagError(f"expected {expected!r}, got {tok!r} in {self.text!r}")
        self.pos += 1
        return tok

    def parse_tag(self) -> TypeTag:
        head = self.take()
        if head in (":", "<", ">", ",", "::"):
            raise TypeTagError(f"unexpected {head!r} in {self.text!r}")

        if head == "vector" and self.peek() == "<":
            self.take("<")
            element = self.parse_tag()
            self.take(">")
            return VectorTag(element)

        if head in PRIMITIVES and self.peek() != "::":
            return PrimitiveTag(head)

        address = normalize_address(head)
        self.take("::")
        module = self.take()
        self.take("::")
        name = self.take()
        for ident in (module, name):
            if not _IDENT.match(ident):
                raise TypeTagError(f"invalid identifier {ident!r} in {self.text!r}")

        params: List[TypeTag] = []
        if self.peek() == "<":
            self.take("<")
            params.append(self.parse_tag())
            while self.peek() == ",":
                self.take(",")
                params.append(self.parse_tag())
            self.take(">")
        return StructTag(address, module, name, tuple(params))


def parse_type_tag(text: str) -> TypeTag:
    """Parse a type descriptor. Raises TypeTagError on malformed input."""
    if not isinstance(text, str) or not text.strip():
        raise TypeTagError("empty type tag")
    parser = _Parser(text)
    tag = parser.parse_tag()
    if parser.peek():
        raise TypeTagError(f"trailing input {parser.peek()!r} in {text!r}")
    return tag


def parse_struct_tag(text: str) -> StructTag:
    tag = parse_type_tag(text)
    if not isinstance(tag, StructTag):
        raise TypeTagError(f"expected a struct type, got {text!r}")
    return tag


def canonical_type_name(text: str) -> str:
    """Canonical rendering used for gating comparisons."""
    return parse_type_tag(text).canonical()
