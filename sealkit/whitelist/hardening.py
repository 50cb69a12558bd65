"""
Whitelist Validation and Hardening Module

Validation, security hardening and invariant utilities for the
whitelist ledger. It addresses:

1. Input validation with sanitization (addresses, object ids, u64 values)
2. Constant-time comparisons for identity prefixes
3. Thread-safety primitives
4. State machine invariant enforcement

Security Model:
    - All inputs are untrusted until validated
    - Identity comparisons use constant-time primitives
    - All state mutations are atomic (staged, then committed)
"""

from __future__ import annotations

import hmac
import re
import secrets
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set


U64_MAX = 2 ** 64 - 1


# =============================================================================
# VALIDATION ERROR TYPES
# =============================================================================

class ValidationError(Exception):
    """Base exception for validation failures."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(Exception):
    """Collection of validation errors."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


class SecurityViolation(Exception):
    """Security constraint violated."""
    pass


class InvariantViolation(Exception):
    """State machine invariant violated."""
    pass


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> Any:
        """Raise ValidationErrors if validation failed, else return the sanitized value."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)
        return self.sanitized_value

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """Collection of input validators."""

    # Patterns
    HEX_ADDRESS_PATTERN = re.compile(r'^(0x)?[0-9a-fA-F]{1,64}$')
    HEX_PATTERN = re.compile(r'^(0x)?([0-9a-fA-F]{2})*$')

    # Limits
    MAX_STRING_LENGTH = 4096
    MAX_VAULT_ID_LENGTH = 256
    MAX_ID_BYTES = 1024

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 0,
        max_length: Optional[int] = None,
    ) -> ValidationResult:
        """Validate a string value."""
        max_length = max_length or cls.MAX_STRING_LENGTH
        errors = []

        if not isinstance(value, str):
            errors.append(ValidationError(field_name, f"Expected string, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        if '\x00' in value:
            errors.append(ValidationError(field_name, "Contains null bytes", value))

        if len(value) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} chars)", value))

        if len(value) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} chars)", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(value)

    @classmethod
    def validate_address(cls, value: Any, field_name: str = "address") -> ValidationResult:
        """Validate and normalize a 32-byte account or object address.

        Short forms such as ``0x2`` are left-padded to 64 hex characters.
        """
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])

        stripped = value.strip()
        if not cls.HEX_ADDRESS_PATTERN.match(stripped):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be hex with at most 64 digits", value)
            ])

        digits = stripped[2:] if stripped.lower().startswith("0x") else stripped
        return ValidationResult.success("0x" + digits.lower().rjust(64, "0"))

    @classmethod
    def validate_object_id(cls, value: Any) -> ValidationResult:
        return cls.validate_address(value, "object_id")

    @classmethod
    def validate_u64(cls, value: Any, field_name: str = "u64") -> ValidationResult:
        """Validate an unsigned 64-bit integer."""
        if isinstance(value, bool) or not isinstance(value, int):
            if isinstance(value, str) and value.strip().isdigit():
                value = int(value.strip())
            else:
                return ValidationResult.failure([
                    ValidationError(field_name, f"Expected integer, got {type(value).__name__}", value)
                ])

        if value < 0 or value > U64_MAX:
            return ValidationResult.failure([
                ValidationError(field_name, "Out of u64 range", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_positive_u64(cls, value: Any, field_name: str) -> ValidationResult:
        result = cls.validate_u64(value, field_name)
        if not result.is_valid:
            return result
        if result.sanitized_value == 0:
            return ValidationResult.failure([
                ValidationError(field_name, "Must be positive", value)
            ])
        return result

    @classmethod
    def validate_capacity(cls, value: Any) -> ValidationResult:
        """Validate a whitelist capacity (positive u64)."""
        return cls.validate_positive_u64(value, "capacity")

    @classmethod
    def validate_vault_id(cls, value: Any) -> ValidationResult:
        return cls.validate_string(value, "vault_id", min_length=0, max_length=cls.MAX_VAULT_ID_LENGTH)

    @classmethod
    def validate_bytes(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 0,
        max_length: int = MAX_ID_BYTES,
    ) -> ValidationResult:
        """Validate bytes; hex strings (with or without 0x) are decoded."""
        errors = []

        if isinstance(value, str):
            if not cls.HEX_PATTERN.match(value):
                errors.append(ValidationError(field_name, "Invalid hex string", value))
                return ValidationResult.failure(errors)
            value = bytes.fromhex(value[2:] if value.lower().startswith("0x") else value)
        elif isinstance(value, (bytearray, list)):
            try:
                value = bytes(value)
            except (TypeError, ValueError):
                errors.append(ValidationError(field_name, "List items must be bytes (0-255)", value))
                return ValidationResult.failure(errors)

        if not isinstance(value, bytes):
            errors.append(ValidationError(field_name, f"Expected bytes, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        if len(value) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} bytes)", value))

        if len(value) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} bytes)", value))

        if errors:
            return ValidationResult.failure(errors)

        return ValidationResult.success(value)


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

class CryptoUtils:
    """Cryptographic utility functions with security hardening."""

    @staticmethod
    def has_prefix(data: bytes, prefix: bytes) -> bool:
        """Constant-time check that ``data`` starts with ``prefix``."""
        if len(data) < len(prefix):
            return False
        return hmac.compare_digest(data[:len(prefix)], prefix)

    @staticmethod
    def secure_random_hex(n_bytes: int = 32) -> str:
        """Generate cryptographically secure random hex string."""
        return secrets.token_hex(n_bytes)


# =============================================================================
# THREAD SAFETY
# =============================================================================

class AtomicCounter:
    """Thread-safe counter."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def increment(self, delta: int = 1) -> int:
        """Atomically increment and return new value."""
        with self._lock:
            self._value += delta
            return self._value

    def get(self) -> int:
        """Get current value."""
        with self._lock:
            return self._value

    def reset(self, value: int = 0) -> None:
        """Atomically reset the counter to the given value."""
        with self._lock:
            self._value = value


# =============================================================================
# STATE MACHINE INVARIANTS
# =============================================================================

class InvariantChecker:
    """Enforces state machine invariants."""

    @staticmethod
    def check_state_transition(
        current_state: Enum,
        target_state: Enum,
        valid_transitions: Dict[Enum, Set[Enum]],
    ) -> None:
        """Verify state transition is valid."""
        valid_targets = valid_transitions.get(current_state, set())
        if target_state not in valid_targets:
            raise InvariantViolation(
                f"Invalid state transition: {current_state.value} -> {target_state.value}. "
                f"Valid targets: {sorted(s.value for s in valid_targets)}"
            )

    @staticmethod
    def check_capacity(member_count: int, capacity: int) -> None:
        """Ensure a member set never exceeds its capacity."""
        if member_count > capacity:
            raise InvariantViolation(
                f"member count {member_count} exceeds capacity {capacity}"
            )
