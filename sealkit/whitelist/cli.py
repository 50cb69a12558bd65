#!/usr/bin/env python3
"""
Whitelist CLI

Command-line interface for a file-backed whitelist ledger. Every command
loads the ledger snapshot (``--state`` or ``WHITELIST_STATE_PATH``), runs,
and saves it back when state changed.

Usage:
    python -m sealkit.whitelist <command> [subcommand] [options]

Commands:
    keygen              Generate an Ed25519 keypair
    create              Create an owner-only whitelist
    create-admin        Create an admin-mode whitelist
    add                 Add an address to a whitelist
    remove              Remove an address from a whitelist
    remove-admin-mode   Permanently revoke admin mode
    approve             Check approval by whitelist membership
    approve-token       Check approval by token ownership
    mint                Mint an owned asset (faucet)
    show                Show a ledger object
    errors              Decode execution error sources
    config              Configuration management
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from sealkit.whitelist import __version__
from sealkit.whitelist.client import WhitelistClient, WhitelistTransactionError
from sealkit.whitelist.config import ConfigError, get_config_manager
from sealkit.whitelist.errors import TaxonomyVersion, decode_failure
from sealkit.whitelist.hardening import SecurityViolation, ValidationErrors, Validators
from sealkit.whitelist.keys import Ed25519Keypair
from sealkit.whitelist.node import LedgerNode
from sealkit.whitelist.observability import WhitelistLayer, configure_logging, get_logger


class OutputFormat(Enum):
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


EXIT_TRANSACTION_FAILED = 2


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    return _format_table(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:68] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


class WhitelistCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="whitelist",
            description="Whitelist access-control ledger CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument("--version", "-V", action="version", version=f"whitelist {__version__}")
        self.parser.add_argument(
            "--format", "-f",
            choices=[f.value for f in OutputFormat],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument("--quiet", "-q", action="store_true", help="Suppress error output")
        self.parser.add_argument("--config", "-c", help="YAML configuration file")
        self.parser.add_argument("--state", "-s", help="Ledger state file (overrides ledger.state_path)")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()
        self._logger = get_logger("cli", WhitelistLayer.CLI)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    @staticmethod
    def _add_signer(parser: argparse.ArgumentParser, default: str) -> None:
        parser.add_argument(
            "--signer",
            choices=["admin", "owner"],
            default=default,
            help=f"Configured key that signs the transaction (default: {default})",
        )
        parser.add_argument("--secret-key", help="Sign with this secret key (hex or base64) instead")

    def _register_commands(self) -> None:
        self.subparsers.add_parser("keygen", help="Generate an Ed25519 keypair")

        create = self.subparsers.add_parser("create", help="Create an owner-only whitelist")
        create.add_argument("--vault", required=True, help="Vault id the whitelist protects")
        create.add_argument("--capacity", type=int, required=True, help="Maximum number of members")
        create.add_argument("--gating-type", default="", help="Asset type granting token-gated approval")
        create.add_argument("--entry", action="store_true",
                            help="Pass the gating type as a type argument (create_whitelist_entry)")
        self._add_signer(create, "owner")

        create_admin = self.subparsers.add_parser("create-admin", help="Create an admin-mode whitelist")
        create_admin.add_argument("--owner", required=True, help="Address receiving the owner Cap")
        create_admin.add_argument("--vault", required=True, help="Vault id the whitelist protects")
        create_admin.add_argument("--capacity", type=int, required=True, help="Maximum number of members")
        create_admin.add_argument("--gating-type", default="", help="Asset type granting token-gated approval")
        create_admin.add_argument("--entry", action="store_true",
                                  help="Pass the gating type as a type argument")
        self._add_signer(create_admin, "admin")

        for name, help_text in (("add", "Add an address"), ("remove", "Remove an address")):
            cmd = self.subparsers.add_parser(name, help=help_text)
            cmd.add_argument("--whitelist", "-w", required=True, help="Whitelist object id")
            cmd.add_argument("--cap", required=True, help="Cap object id")
            cmd.add_argument("--account", "-a", required=True, help="Account address")
            self._add_signer(cmd, "owner")

        remove_admin = self.subparsers.add_parser("remove-admin-mode", help="Permanently revoke admin mode")
        remove_admin.add_argument("--whitelist", "-w", required=True, help="Whitelist object id")
        remove_admin.add_argument("--cap", required=True, help="Owner Cap object id")
        self._add_signer(remove_admin, "owner")

        approve = self.subparsers.add_parser("approve", help="Check approval by whitelist membership")
        approve.add_argument("--whitelist", "-w", required=True, help="Whitelist object id")
        approve.add_argument("--id", help="Key id bytes (hex); defaults to the whitelist id")
        self._add_signer(approve, "admin")

        approve_token = self.subparsers.add_parser("approve-token", help="Check approval by token ownership")
        approve_token.add_argument("--tga", required=True, help="TGA object id")
        approve_token.add_argument("--token", required=True, help="Token object id")
        approve_token.add_argument("--gating-type", required=True, help="Gated asset type")
        approve_token.add_argument("--id", help="Key id bytes (hex); defaults to the TGA id")
        self._add_signer(approve_token, "admin")

        mint = self.subparsers.add_parser("mint", help="Mint an owned asset (faucet)")
        mint.add_argument("--type", required=True, dest="object_type", help="Asset struct type")
        mint.add_argument("--owner", required=True, help="Owner address")
        mint.add_argument("--field", action="append", default=[], metavar="KEY=VALUE", help="Asset field")
        mint.add_argument("--object-id", help="Explicit object id")

        show = self.subparsers.add_parser("show", help="Show a ledger object")
        show.add_argument("object_id", help="Object id")

        errors = self.subparsers.add_parser("errors", help="Error taxonomy")
        errors_sub = errors.add_subparsers(dest="subcommand")
        decode = errors_sub.add_parser("decode", help="Decode an execution error source")
        decode.add_argument("source", help="Error source text, e.g. '... with sub status 4'")
        decode.add_argument("--taxonomy", choices=[v.value for v in TaxonomyVersion],
                            help="Taxonomy version (default: client.error_taxonomy)")

        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g. client.gas_budget)")
        config_sub.add_parser("show", help="Show all configuration (secrets masked)")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            mgr = get_config_manager()
            if parsed.config:
                mgr.load_from_file(parsed.config)
            else:
                mgr.load_defaults()
            configure_logging(mgr.get("logging.level"), mgr.get("logging.format"))

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)
            if result is not None:
                print(format_output(result, fmt))
            return 0

        except WhitelistTransactionError as e:
            if not parsed.quiet:
                suffix = f" (abort code {e.code})" if e.code is not None else ""
                print(f"Error: {e.message}{suffix}", file=sys.stderr)
            return EXIT_TRANSACTION_FAILED

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (ConfigError, ValidationErrors, SecurityViolation, ValueError, OSError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")

        return handler(args)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _state_path(self, args: argparse.Namespace) -> Path:
        return Path(args.state or get_config_manager().get("ledger.state_path"))

    def _load_node(self, args: argparse.Namespace) -> LedgerNode:
        path = self._state_path(args)
        if path.exists():
            node = LedgerNode.load(path)
            configured = get_config_manager().get("ledger.package_id")
            if node.package_id != Validators.validate_object_id(configured).raise_if_invalid():
                self._logger.warning(
                    "State file package id differs from configuration; using the state file",
                    operation="load_state",
                    state_package=node.package_id,
                )
            return node
        return LedgerNode(get_config_manager().get("ledger.package_id"))

    def _save_node(self, args: argparse.Namespace, node: LedgerNode) -> None:
        node.save(self._state_path(args))

    def _signer(self, args: argparse.Namespace) -> Ed25519Keypair:
        if getattr(args, "secret_key", None):
            return Ed25519Keypair.from_secret_key(args.secret_key)
        mgr = get_config_manager()
        secret = mgr.get(f"keys.{args.signer}_private_key")
        if not secret:
            env_var = "ADMIN_PRIVATE_KEY" if args.signer == "admin" else "OWNER_PRIVATE_KEY"
            raise CLIError(f"No {args.signer} key configured (set {env_var} or pass --secret-key)")
        return Ed25519Keypair.from_secret_key(secret)

    def _transact(self, args: argparse.Namespace, action) -> Dict[str, Any]:
        node = self._load_node(args)
        client = WhitelistClient(node)
        try:
            result = action(client, self._signer(args))
        finally:
            self._save_node(args, node)
        return result

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _handle_keygen(self, args: argparse.Namespace) -> Any:
        keypair = Ed25519Keypair.generate()
        return {"address": keypair.to_address(), "secretKey": keypair.export_secret_key()}

    def _created_output(self, created) -> Dict[str, Any]:
        return {
            "digest": created.digest,
            "whitelistId": created.whitelist_id,
            "ownerCapId": created.owner_cap_id,
            "adminCapId": created.admin_cap_id,
            "tgaId": created.tga_id,
        }

    def _handle_create(self, args: argparse.Namespace) -> Any:
        if args.entry and not args.gating_type:
            raise CLIError("--entry requires --gating-type")

        def action(client: WhitelistClient, signer: Ed25519Keypair):
            if args.entry:
                return client.create_whitelist_entry(signer, args.gating_type, args.vault, args.capacity)
            return client.create_whitelist(signer, args.vault, args.capacity, args.gating_type)
        return self._created_output(self._transact(args, action))

    def _handle_create_admin(self, args: argparse.Namespace) -> Any:
        if args.entry and not args.gating_type:
            raise CLIError("--entry requires --gating-type")

        def action(client: WhitelistClient, signer: Ed25519Keypair):
            if args.entry:
                return client.create_admin_whitelist_entry(
                    signer, args.gating_type, args.vault, args.owner, args.capacity)
            return client.create_admin_whitelist(signer, args.owner, args.vault, args.capacity, args.gating_type)
        return self._created_output(self._transact(args, action))

    def _handle_add(self, args: argparse.Namespace) -> Any:
        res = self._transact(args, lambda c, s: c.add(s, args.whitelist, args.cap, args.account))
        return {"digest": res.digest, "status": res.status, "added": args.account}

    def _handle_remove(self, args: argparse.Namespace) -> Any:
        res = self._transact(args, lambda c, s: c.remove(s, args.whitelist, args.cap, args.account))
        return {"digest": res.digest, "status": res.status, "removed": args.account}

    def _handle_remove_admin_mode(self, args: argparse.Namespace) -> Any:
        res = self._transact(args, lambda c, s: c.remove_admin_mode(s, args.whitelist, args.cap))
        return {"digest": res.digest, "status": res.status, "adminMode": False}

    def _handle_approve(self, args: argparse.Namespace) -> Any:
        res = self._transact(args, lambda c, s: c.seal_approve_whitelist(s, args.whitelist, args.id))
        return {"digest": res.digest, "approved": res.succeeded}

    def _handle_approve_token(self, args: argparse.Namespace) -> Any:
        res = self._transact(
            args, lambda c, s: c.seal_approve(s, args.gating_type, args.tga, args.token, args.id))
        return {"digest": res.digest, "approved": res.succeeded}

    def _handle_mint(self, args: argparse.Namespace) -> Any:
        fields: Dict[str, Any] = {}
        for item in args.field:
            key, sep, value = item.partition("=")
            if not sep or not key:
                raise CLIError(f"--field must be KEY=VALUE, got {item!r}")
            fields[key] = int(value) if value.isdigit() else value
        node = self._load_node(args)
        record = node.mint_object(args.object_type, args.owner, fields, args.object_id)
        self._save_node(args, node)
        return record.to_dict()

    def _handle_show(self, args: argparse.Namespace) -> Any:
        record = self._load_node(args).get_object(args.object_id)
        if record is None:
            raise CLIError(f"Object not found: {args.object_id}")
        return record.to_dict()

    def _handle_errors_decode(self, args: argparse.Namespace) -> Any:
        taxonomy = args.taxonomy or get_config_manager().get("client.error_taxonomy")
        decoded = decode_failure(args.source, taxonomy)
        return {
            "message": decoded.message,
            "abortCode": decoded.abort_code,
            "error": decoded.error.name if decoded.error else None,
            "taxonomy": taxonomy,
        }

    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        return {"path": args.path, "value": get_config_manager().display(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        if errors:
            raise CLIError("Invalid configuration: " + "; ".join(errors))
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    return WhitelistCLI().run(argv)


if __name__ == "__main__":
    sys.exit(main())
