#!/usr/bin/env python3
"""
docstate CLI

Usage:
    docstate <command> [subcommand] [options]

Commands:
    id          Identifier encode / decode and document id derivation
    schema      Validate properties against a contract's document type
    config      Show, validate or describe configuration
    demo        Run the Claim create -> price -> purchase scenario in memory
"""

from __future__ import annotations

import argparse
import json
import secrets
import sys
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml

from docstate import __version__
from docstate.errors import DocStateError
from docstate.identifier import Identifier, decode, encode
from docstate.runtime.config import ConfigManager
from docstate.runtime.observability import Layer, configure_logging, get_logger
from docstate.schema import DataContract, example_contract_schema, load_contract_schema

_log = get_logger("cli", Layer.CLI)


class OutputFormat(Enum):
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    if isinstance(data, str):
        return data
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    if fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    if isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _parse_hex(value: str, what: str) -> bytes:
    try:
        return bytes.fromhex(value.strip().removeprefix("0x"))
    except ValueError:
        raise CLIError(f"{what} must be hex") from None


class DocStateCLI:
    """Main CLI application."""

    def __init__(self) -> None:
        self.parser = argparse.ArgumentParser(
            prog="docstate",
            description="Document state transitions for schema-governed data contracts",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument("--version", "-V", action="version", version=f"docstate {__version__}")
        self.parser.add_argument(
            "--format", "-f",
            choices=[f.value for f in OutputFormat],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument("--config", "-c", help="YAML configuration file")
        self.parser.add_argument("--quiet", "-q", action="store_true", help="Suppress error output")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_id_commands()
        self._register_schema_commands()
        self._register_config_commands()
        self.subparsers.add_parser("demo", help="Run the in-memory Claim scenario and print OK")

    def _register_id_commands(self) -> None:
        ident = self.subparsers.add_parser("id", help="Identifier utilities")
        sub = ident.add_subparsers(dest="subcommand")

        enc = sub.add_parser("encode", help="32 bytes (hex) to base-58")
        enc.add_argument("hex", help="64 hex characters")

        dec = sub.add_parser("decode", help="base-58 to 32 bytes (hex)")
        dec.add_argument("identifier", help="base-58 identifier")

        gen = sub.add_parser("generate", help="Derive a document id")
        gen.add_argument("--contract", required=True, help="Data contract id (base-58)")
        gen.add_argument("--owner", required=True, help="Owner identity id (base-58)")
        gen.add_argument("--type", required=True, dest="type_name", help="Document type name")
        gen.add_argument("--entropy", help="32 bytes of entropy as hex (random if omitted)")

    def _register_schema_commands(self) -> None:
        schema = self.subparsers.add_parser("schema", help="Schema utilities")
        sub = schema.add_subparsers(dest="subcommand")

        val = sub.add_parser("validate", help="Validate document properties")
        val.add_argument("--contract", help="Contract schema JSON file (default: bundled example)")
        val.add_argument("--type", required=True, dest="type_name", help="Document type name")
        val.add_argument(
            "--properties", "-p", required=True,
            help="Properties as a JSON object, or @path to a JSON file",
        )

        sub.add_parser("types", help="List document types of the bundled example contract")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration")
        sub = config.add_subparsers(dest="subcommand")
        show = sub.add_parser("show", help="Show resolved settings")
        show.add_argument("--reveal", action="store_true", help="Do not redact secrets")
        sub.add_parser("validate", help="Validate configuration")
        sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        parsed = self.parser.parse_args(args)
        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            result = self._dispatch(parsed)
            if result is not None:
                print(format_output(result, OutputFormat(parsed.format)))
            return 0
        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code
        except DocStateError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 2

    def _dispatch(self, args: argparse.Namespace) -> Any:
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)
        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)
        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}".strip())
        return handler(args)

    def _manager(self, args: argparse.Namespace) -> ConfigManager:
        mgr = ConfigManager()
        if args.config:
            mgr.load_from_file(args.config)
        return mgr

    # Identifier handlers
    def _handle_id_encode(self, args: argparse.Namespace) -> Any:
        return {"identifier": encode(_parse_hex(args.hex, "identifier bytes"))}

    def _handle_id_decode(self, args: argparse.Namespace) -> Any:
        return {"hex": decode(args.identifier).hex()}

    def _handle_id_generate(self, args: argparse.Namespace) -> Any:
        from docstate.document_id import DefaultEntropyGenerator, generate_document_id

        entropy = _parse_hex(args.entropy, "entropy") if args.entropy else DefaultEntropyGenerator().generate()
        document_id = generate_document_id(
            Identifier.from_string(args.contract),
            Identifier.from_string(args.owner),
            args.type_name,
            entropy,
        )
        return {"document_id": str(document_id), "entropy": entropy.hex()}

    # Schema handlers
    def _load_contract(self, path: Optional[str]) -> DataContract:
        schema = load_contract_schema(Path(path)) if path else example_contract_schema()
        zero = Identifier(bytes(32))
        return DataContract.from_schema(zero, zero, schema)

    def _handle_schema_validate(self, args: argparse.Namespace) -> Any:
        raw = args.properties
        try:
            if raw.startswith("@"):
                raw = Path(raw[1:]).read_text(encoding="utf-8")
            properties = json.loads(raw)
        except (OSError, ValueError) as ex:
            raise CLIError(f"cannot read properties: {ex}") from ex
        if not isinstance(properties, dict):
            raise CLIError("properties must be a JSON object")

        document_type = self._load_contract(args.contract).document_type(args.type_name)
        normalized = document_type.validate_properties(properties)
        return {
            "valid": True,
            "document_type": document_type.name,
            "fields": [name for name in normalized],
        }

    def _handle_schema_types(self, args: argparse.Namespace) -> Any:
        contract = self._load_contract(None)
        return {
            name: {
                "fields": [f.name for f in dt.fields],
                "required": list(dt.required),
                "transferable": dt.is_transferable,
                "direct_purchase": dt.supports_direct_purchase,
            }
            for name, dt in contract.document_types.items()
        }

    # Config handlers
    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return self._manager(args).resolve().to_dict(redact=not args.reveal)

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = self._manager(args).validate()
        if errors:
            raise CLIError("; ".join(errors))
        return {"valid": True, "errors": []}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return self._manager(args).export_schema()

    # Demo
    def _handle_demo(self, args: argparse.Namespace) -> Any:
        settings = self._manager(args).resolve()
        configure_logging(level=settings.log_level, fmt=settings.log_format, stream=sys.stderr)
        return run_demo(replace(settings, poll_interval_seconds=min(settings.poll_interval_seconds, 0.05)))


def run_demo(settings) -> str:
    """Create a Claim, price it at 200 credits and sell it; returns "OK"."""
    from docstate.lifecycle import DocumentLifecycleController
    from docstate.platform.memory import InMemoryPlatform
    from docstate.signer import KeyStore

    platform = InMemoryPlatform(network=settings.network)
    contract = platform.register_contract(
        DataContract.from_schema(
            Identifier(secrets.token_bytes(32)),
            Identifier(secrets.token_bytes(32)),
            example_contract_schema(),
        )
    )
    seller, seller_secret = platform.create_identity(balance=0)
    buyer, buyer_secret = platform.create_identity(balance=1_000)

    key_store = KeyStore()
    key_store.add(seller.id, seller.get_public_key_by_id(1), seller_secret)
    key_store.add(buyer.id, buyer.get_public_key_by_id(1), buyer_secret)

    controller = DocumentLifecycleController(platform, key_store, settings)
    claim = controller.create(
        contract,
        "Claim",
        seller,
        {"taskId": secrets.token_bytes(32), "amountCredits": 20, "amountUSD": 500},
    )
    _log.info("claim created", document_id=str(claim.document_id), revision=claim.revision)

    controller.update_price(claim, seller, 200)
    _log.info("claim priced", document_id=str(claim.document_id), price=claim.document.price)

    controller.purchase(claim, buyer)
    document = claim.document
    if document.owner_id != buyer.id or document.transferred_at is None or document.revision != 3:
        raise CLIError("purchase did not transfer the claim")
    _log.info(
        "claim purchased",
        document_id=str(document.id),
        owner_id=str(document.owner_id),
        buyer_balance=platform.balance_of(buyer.id),
        seller_balance=platform.balance_of(seller.id),
    )
    return "OK"


def main() -> int:
    return DocStateCLI().run()


if __name__ == "__main__":
    sys.exit(main())
