"""
Whitelist error taxonomy.

The contract reports every failed precondition as exactly one numeric abort
code. Two numeric mappings exist in the wild:

    v2 (canonical)  emitted by this package's contract
    v1 (legacy)     emitted by the earlier deployment, kept for decoding only

The two mappings are not reconciled. A decoder is always bound to
one taxonomy version, and a code it does not know is reported as a generic
contract error rather than guessed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Optional, Union


class WhitelistErrorCode(IntEnum):
    """Canonical (v2) abort codes."""
    EInvalidCap = 1
    EInvalidOwnerCap = 2
    ENoAccess = 3
    EDuplicate = 4
    EExceededCapacity = 5
    EWhitelistWithNoAdmin = 6


ERROR_MESSAGES: Dict[WhitelistErrorCode, str] = {
    WhitelistErrorCode.EInvalidCap: "Only the contract owner/admin can perform this action.",
    WhitelistErrorCode.EInvalidOwnerCap: "Only the contract owner can perform this action.",
    WhitelistErrorCode.ENoAccess: "The address does not belong to the whitelist.",
    WhitelistErrorCode.EDuplicate: "The address is already in the whitelist.",
    WhitelistErrorCode.EExceededCapacity: "The whitelist capacity exceeded.",
    WhitelistErrorCode.EWhitelistWithNoAdmin: "The whitelist does not have the admin mode.",
}

GENERIC_CONTRACT_ERROR = "Smart contract error."

_SUB_STATUS = re.compile(r"sub status\s+(\d+)", re.IGNORECASE)


class TaxonomyVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"


# numeric code -> error class, per deployed taxonomy
TAXONOMIES: Dict[TaxonomyVersion, Dict[int, WhitelistErrorCode]] = {
    TaxonomyVersion.V1: {
        12: WhitelistErrorCode.EInvalidCap,
        77: WhitelistErrorCode.ENoAccess,
        1: WhitelistErrorCode.EDuplicate,
        2: WhitelistErrorCode.EExceededCapacity,
        3: WhitelistErrorCode.EInvalidOwnerCap,
        4: WhitelistErrorCode.EWhitelistWithNoAdmin,
    },
    TaxonomyVersion.V2: {code.value: code for code in WhitelistErrorCode},
}

CANONICAL_TAXONOMY = TaxonomyVersion.V2


class WhitelistAbort(Exception):
    """Raised by the contract when a precondition fails.

    Carries the canonical code; the ledger turns it into a failed execution
    status and never lets it escape into committed state.
    """

    def __init__(self, code: WhitelistErrorCode, function: str = ""):
        self.code = WhitelistErrorCode(code)
        self.function = function
        self.command: Optional[int] = None
        super().__init__(f"{self.code.name} ({int(self.code)}) in whitelist::{function}")

    @property
    def message(self) -> str:
        return ERROR_MESSAGES[self.code]


@dataclass(frozen=True)
class DecodedFailure:
    """A failure source decoded against one taxonomy version."""
    message: str
    raw: str
    abort_code: Optional[int] = None
    error: Optional[WhitelistErrorCode] = None

    @property
    def is_known(self) -> bool:
        return self.error is not None


def parse_abort_code(error_source: Optional[str]) -> Optional[int]:
    """Extract the numeric ``sub status`` from an execution error source."""
    if not error_source:
        return None
    match = _SUB_STATUS.search(error_source)
    if match:
        return int(match.group(1))
    return None


def resolve_taxonomy(version: Union[TaxonomyVersion, str]) -> TaxonomyVersion:
    try:
        return TaxonomyVersion(str(getattr(version, "value", version)).lower())
    except ValueError:
        raise ValueError(
            f"unknown error taxonomy {version!r}; expected one of {[v.value for v in TaxonomyVersion]}"
        ) from None


def decode_failure(
    error_source: Optional[str],
    taxonomy: Union[TaxonomyVersion, str] = CANONICAL_TAXONOMY,
) -> DecodedFailure:
    """Decode an execution error source into a human-readable failure."""
    mapping = TAXONOMIES[resolve_taxonomy(taxonomy)]
    raw = error_source or ""
    code = parse_abort_code(error_source)

    if code is None:
        return DecodedFailure(message=f"Smart contract error: {raw}", raw=raw)

    error = mapping.get(code)
    if error is None:
        return DecodedFailure(message=GENERIC_CONTRACT_ERROR, raw=raw, abort_code=code)

    return DecodedFailure(
        message=ERROR_MESSAGES[error],
        raw=raw,
        abort_code=code,
        error=error,
    )


def get_whitelist_error_message(
    error_source: Optional[str],
    taxonomy: Union[TaxonomyVersion, str] = CANONICAL_TAXONOMY,
) -> str:
    return decode_failure(error_source, taxonomy).message
