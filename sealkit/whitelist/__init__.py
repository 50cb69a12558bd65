"""
Whitelist access-control ledger.

Authorization state for Seal-style encrypted vaults: who may decrypt, and who
may change that. A whitelist names the accounts approved for one vault; token
gating additionally approves any holder of a chosen asset type.

Architecture
────────────

    client.py        dry-run-then-execute harness, typed wrappers
    node.py          ledger node: linking, ownership, gas, atomic commit
    contract.py      whitelist state machine (aborts with canonical codes)
    errors.py        versioned abort-code taxonomies and decoding
    transactions.py  transaction builder and decoder
    keys.py          Ed25519 keypairs, addresses, signatures
    store.py         object store with per-object locks
    objects.py       Whitelist / Cap / TGA / asset objects
    typetags.py      type descriptor parsing and normalization

Ambient
───────

    config.py        YAML + environment configuration
    observability.py structured logging, audit chain
    hardening.py     validators and invariant checks
    schema.py        JSON Schema validation of transactions and snapshots
    cli.py           command-line interface

Usage
─────

    from sealkit.whitelist import LedgerNode, WhitelistClient, Ed25519Keypair

    node = LedgerNode(package_id)
    client = WhitelistClient(node)
    owner = Ed25519Keypair.generate()
    created = client.create_whitelist(owner, "vault-id-here", capacity=10)
    client.add(owner, created.whitelist_id, created.owner_cap_id, member_address)
"""

__version__ = "0.3.0"


def __getattr__(name):
    """Lazy import modules on first access."""

    if name in ("LedgerNode", "TransactionResponse", "ObjectChange", "ExecutionFailure", "ReplayAttempt"):
        from sealkit.whitelist import node
        return getattr(node, name)

    if name in ("WhitelistClient", "WhitelistTransactionError", "CreatedWhitelist",
                "get_whitelist_id", "get_cap_id", "get_tga_id"):
        from sealkit.whitelist import client
        return getattr(client, name)

    if name in ("WhitelistErrorCode", "WhitelistAbort", "TaxonomyVersion",
                "decode_failure", "get_whitelist_error_message"):
        from sealkit.whitelist import errors
        return getattr(errors, name)

    if name in ("Transaction", "TransactionData"):
        from sealkit.whitelist import transactions
        return getattr(transactions, name)

    if name == "Ed25519Keypair":
        from sealkit.whitelist.keys import Ed25519Keypair
        return Ed25519Keypair

    if name in ("ConfigManager", "get_config", "get_config_manager"):
        from sealkit.whitelist import config
        return getattr(config, name)

    raise AttributeError(f"module 'sealkit.whitelist' has no attribute {name!r}")


__all__ = [
    "__version__",
    "LedgerNode",
    "TransactionResponse",
    "ObjectChange",
    "ExecutionFailure",
    "ReplayAttempt",
    "WhitelistClient",
    "WhitelistTransactionError",
    "CreatedWhitelist",
    "get_whitelist_id",
    "get_cap_id",
    "get_tga_id",
    "WhitelistErrorCode",
    "WhitelistAbort",
    "TaxonomyVersion",
    "decode_failure",
    "get_whitelist_error_message",
    "Transaction",
    "TransactionData",
    "Ed25519Keypair",
    "ConfigManager",
    "get_config",
    "get_config_manager",
]
