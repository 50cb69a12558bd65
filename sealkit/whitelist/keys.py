"""Ed25519 keypairs, addresses and transaction signatures.

Conventions:
- Addresses are ``0x`` + hex(blake2b-256(flag || public_key)), flag 0x00 for Ed25519.
- A transaction is signed over blake2b-256(intent || tx_bytes), intent = [0, 0, 0].
- The serialized signature is base64(flag || signature(64) || public_key(32)).
"""

from __future__ import annotations

import base64
import binascii
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from sealkit.whitelist.core import blake2b256
from sealkit.whitelist.hardening import SecurityViolation


ED25519_FLAG = 0x00
TRANSACTION_INTENT = bytes([0, 0, 0])

_SIG_LEN = 64
_PUB_LEN = 32


def address_from_public_key(public_key: bytes) -> str:
    if len(public_key) != _PUB_LEN:
        raise ValueError(f"Ed25519 public key must be {_PUB_LEN} bytes, got {len(public_key)}")
    return "0x" + blake2b256(bytes([ED25519_FLAG]) + public_key).hex()


def intent_digest(tx_bytes: bytes) -> bytes:
    return blake2b256(TRANSACTION_INTENT + tx_bytes)


def _decode_secret(secret: str) -> bytes:
    text = secret.strip()
    hex_text = text[2:] if text.lower().startswith("0x") else text
    if len(hex_text) == 64:
        try:
            return bytes.fromhex(hex_text)
        except ValueError:
            pass
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("secret key must be 32 bytes as hex or base64") from None
    # Sui keystore form: flag byte followed by the 32-byte seed
    if len(raw) == _PUB_LEN + 1 and raw[0] == ED25519_FLAG:
        raw = raw[1:]
    if len(raw) != 32:
        raise ValueError(f"secret key must decode to 32 bytes, got {len(raw)}")
    return raw


class Ed25519Keypair:
    """Signing identity for transactions."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key

    @classmethod
    def generate(cls) -> "Ed25519Keypair":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_secret_key(cls, secret) -> "Ed25519Keypair":
        """Load from raw 32 bytes, or a hex / base64 string."""
        raw = secret if isinstance(secret, (bytes, bytearray)) else _decode_secret(secret)
        if len(raw) != 32:
            raise ValueError(f"secret key must be 32 bytes, got {len(raw)}")
        return cls(Ed25519PrivateKey.from_private_bytes(bytes(raw)))

    def export_secret_key(self) -> str:
        raw = self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return raw.hex()

    def public_key_bytes(self) -> bytes:
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def to_address(self) -> str:
        return address_from_public_key(self.public_key_bytes())

    def sign_transaction(self, tx_bytes: bytes) -> str:
        sig = self._private_key.sign(intent_digest(tx_bytes))
        serialized = bytes([ED25519_FLAG]) + sig + self.public_key_bytes()
        return base64.b64encode(serialized).decode("ascii")

    def __repr__(self) -> str:
        return f"Ed25519Keypair(address={self.to_address()})"


def _split_signature(signature: str) -> Tuple[bytes, bytes]:
    try:
        raw = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise SecurityViolation("signature is not valid base64") from None
    if len(raw) != 1 + _SIG_LEN + _PUB_LEN or raw[0] != ED25519_FLAG:
        raise SecurityViolation("unsupported signature scheme or length")
    return raw[1:1 + _SIG_LEN], raw[1 + _SIG_LEN:]


def verify_transaction_signature(tx_bytes: bytes, signature: str) -> str:
    """Verify ``signature`` over ``tx_bytes`` and return the signer's address."""
    sig, pub = _split_signature(signature)
    try:
        Ed25519PublicKey.from_public_bytes(pub).verify(sig, intent_digest(tx_bytes))
    except InvalidSignature:
        raise SecurityViolation("transaction signature does not verify") from None
    return address_from_public_key(pub)
