#!/usr/bin/env python3
"""
hamtmap CLI

Command-line access to a map kept in a file store.

Usage:
    hamtmap [--store DIR] [--root CID] <command> [args]

Commands:
    init              Create an empty map and make it current
    put KEY VALUE     Bind KEY to VALUE, print the new root
    get KEY           Print the value of KEY
    delete KEY        Remove KEY, print the new root
    list              List every entry
    stats             Trie shape and store counters
    config            Configuration management (show, validate, schema)

The current root and the trie shape it was built with are kept in
``<store>/map.json``; later commands reuse that shape whatever the
configuration says. ``--root`` reads an older version without touching it.

Configuration comes from the default YAML files, then ``--config``.
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
from enum import Enum
from typing import Any, Dict, List, Optional

from hamtmap import __version__
from hamtmap.config import ConfigError, get_config, get_config_manager
from hamtmap.core import canonical_json_bytes, is_valid_cid
from hamtmap.errors import HamtError
from hamtmap.hashing import TrieOptions
from hamtmap.map import Map
from hamtmap.observability import HamtLayer, configure_logging, get_logger
from hamtmap.schema import HEAD_SCHEMA, validate_with_schema
from hamtmap.store import describe_store, open_store

logger = get_logger("cli", HamtLayer.CLI)

HEAD_FILE = "map.json"


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        import yaml
        return yaml.dump(data, default_flow_style=False)
    return _format_text(data)


def _format_text(data: Any) -> str:
    if isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    if isinstance(data, list):
        return "\n".join(_format_text(item) if isinstance(item, dict) else str(item) for item in data)
    return str(data)


def _display(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return "0x" + raw.hex()


class HamtCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="hamtmap",
            description="Persistent content-addressed key-value map",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"hamtmap {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )
        self.parser.add_argument("--store", "-s", help="Store directory (default: store.root_dir)")
        self.parser.add_argument("--root", "-r", help="Read this root instead of the current one")
        self.parser.add_argument("--config", "-c", help="YAML configuration file")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all commands."""
        self.subparsers.add_parser("init", help="Create an empty map")

        put = self.subparsers.add_parser("put", help="Set a key")
        put.add_argument("key", help="Key (UTF-8)")
        put.add_argument("value", help="Value (UTF-8, or 0x-prefixed hex)")

        get = self.subparsers.add_parser("get", help="Look a key up")
        get.add_argument("key", help="Key (UTF-8)")

        delete = self.subparsers.add_parser("delete", help="Remove a key")
        delete.add_argument("key", help="Key (UTF-8)")
        delete.add_argument("--strict", action="store_true", help="Fail when the key is absent")

        self.subparsers.add_parser("list", help="List entries")
        self.subparsers.add_parser("stats", help="Trie and store statistics")
        self._register_config_commands()

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        # config show
        config_sub.add_parser("show", help="Show all configuration")

        # config validate
        config_sub.add_parser("validate", help="Validate configuration")

        # config schema
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            get_config_manager().load_defaults()
            if parsed.config:
                get_config_manager().load_from_file(parsed.config)
            configure_logging()
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (HamtError, ConfigError) as e:
            logger.error("Command failed", error_code=type(e).__name__, command=parsed.command)
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 2

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Store helpers
    def _store_dir(self, args: argparse.Namespace) -> pathlib.Path:
        return pathlib.Path(args.store or get_config().store.root_dir.get())

    def _open(self, args: argparse.Namespace, readonly: bool = False) -> Map:
        head = self._read_head(args)
        root = args.root if readonly and args.root else head["root"]
        if not is_valid_cid(root):
            raise CLIError(f"invalid root identifier: {root!r}")
        options = TrieOptions(bit_width=head["bit_width"], bucket_size=head["bucket_size"])
        return Map(open_store(self._store_dir(args)), root, options)

    def _read_head(self, args: argparse.Namespace) -> Dict[str, Any]:
        path = self._store_dir(args) / HEAD_FILE
        if not path.is_file():
            raise CLIError(f"no map at {self._store_dir(args)}; run 'hamtmap init' first")
        try:
            head = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise CLIError(f"corrupt head file {path}: {e}") from e
        errors = validate_with_schema(head, HEAD_SCHEMA)
        if errors:
            raise CLIError(f"corrupt head file {path}: " + "; ".join(errors))
        return head

    def _write_head(self, args: argparse.Namespace, m: Map) -> None:
        """Record the root together with the trie shape needed to read it."""
        path = self._store_dir(args) / HEAD_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        head = {
            "root": m.root(),
            "bit_width": m.options.bit_width,
            "bucket_size": m.options.bucket_size,
        }
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(canonical_json_bytes(head) + b"\n")
        tmp.replace(path)

    @staticmethod
    def _value(raw: str) -> bytes:
        if raw.startswith("0x"):
            try:
                return bytes.fromhex(raw[2:])
            except ValueError as e:
                raise CLIError(f"invalid hex value: {e}") from e
        return raw.encode("utf-8")

    # Map handlers
    def _handle_init(self, args: argparse.Namespace) -> Any:
        m = Map.empty(open_store(self._store_dir(args)))
        self._write_head(args, m)
        return {"root": m.root(), "store": str(self._store_dir(args))}

    def _handle_put(self, args: argparse.Namespace) -> Any:
        m = self._open(args)
        m.put(args.key, self._value(args.value))
        self._write_head(args, m)
        return {"key": args.key, "root": m.root()}

    def _handle_get(self, args: argparse.Namespace) -> Any:
        m = self._open(args, readonly=True)
        data = m.get_bytes(args.key)
        if data is None:
            raise CLIError(f"key not found: {args.key}", exit_code=3)
        return {"key": args.key, "value": _display(data), "hex": data.hex()}

    def _handle_delete(self, args: argparse.Namespace) -> Any:
        m = self._open(args)
        found = m.delete(args.key)
        if not found and args.strict:
            raise CLIError(f"key not found: {args.key}", exit_code=3)
        if found:
            self._write_head(args, m)
        return {"key": args.key, "deleted": found, "root": m.root()}

    def _handle_list(self, args: argparse.Namespace) -> Any:
        m = self._open(args, readonly=True)
        entries = [{"key": _display(k), "value": _display(v)} for k, v in m.items()]
        return {"root": m.root(), "entries": entries, "count": len(entries)}

    def _handle_stats(self, args: argparse.Namespace) -> Any:
        m = self._open(args, readonly=True)
        return {
            "root": m.root(),
            "options": {"bit_width": m.options.bit_width, "bucket_size": m.options.bucket_size},
            "trie": m.stats().to_dict(),
            "store": describe_store(m.store),
        }

    # Config handlers
    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()


def main() -> int:
    """CLI entry point."""
    cli = HamtCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
