#!/usr/bin/env python3
"""Command-line interface for Splurge Secrets Encrypt."""

import argparse
import json
import logging
import os
import socket
import sys
from typing import Any, Optional

from splurge_secrets_encrypt.config import SecretsEncryptConfig
from splurge_secrets_encrypt.constants import Constants
from splurge_secrets_encrypt.exceptions import (
    ConfigCorruptError,
    ConfigMissingError,
    IllegalTransitionError,
    PersistenceFailureError,
    ReencryptionAbortedError,
    ReencryptionFailureError,
    ValidationError,
)
from splurge_secrets_encrypt.models import ClusterReport, EncryptionConfig, KeyMode
from splurge_secrets_encrypt.node import ControlPlaneNode
from splurge_secrets_encrypt.services import FileDatastore

# Checked in order; subclasses before their bases
_ERROR_CODES = (
    (ConfigMissingError, "config_missing"),
    (ConfigCorruptError, "config_corrupt"),
    (IllegalTransitionError, "illegal_transition"),
    (PersistenceFailureError, "persistence_failure"),
    (ReencryptionAbortedError, "reencryption_aborted"),
    (ReencryptionFailureError, "reencryption_failure"),
    (ValidationError, "validation_error"),
)


def render_status(report: ClusterReport) -> str:
    """Render a cluster report as the plain-text status output."""
    local = report.local_report
    if local is None or (local.reachable and local.stage is None):
        return "Encryption Status: Disabled, no configuration file found\n"

    lines = [
        f"Encryption Status: {'Enabled' if report.enabled else 'Disabled'}",
        f"Current Rotation Stage: {report.stage.value if report.stage else 'unknown'}",
        f"Server Encryption Hashes: {report.hash_summary()}",
    ]

    rows = [("Active", "Key Type", "Name"), ("------", "--------", "----")]
    if report.active_key:
        key_type, _, name = report.active_key.rpartition(" ")
        rows.append(("*", key_type, name))
    for inactive in report.inactive_keys:
        key_type, _, name = inactive.rpartition(" ")
        rows.append(("", key_type, name))

    widths = [max(len(row[column]) for row in rows) for column in range(2)]
    lines.append("")
    for row in rows:
        lines.append(f"{row[0].ljust(widths[0])}  {row[1].ljust(widths[1])}  {row[2]}".rstrip())

    unreachable = report.unreachable_nodes
    if unreachable:
        lines.append("")
        lines.append(f"Unreachable nodes: {', '.join(unreachable)}")

    return "\n".join(lines) + "\n"


class SecretsEncryptCLI:
    """Command-line interface for secrets encryption key rotation."""

    def __init__(self) -> None:
        """Initialize the CLI."""
        self._parser = self._create_parser()
        self._pretty = False

    def _default_data_dir(self) -> str:
        """Compute a platform-appropriate default data directory."""
        # Environment override for tests/CI or advanced users
        env_dir = os.getenv("SSE_DATA_DIR")
        if env_dir:
            return env_dir

        # Windows: use %APPDATA%\splurge-secrets-encrypt
        appdata = os.getenv("APPDATA")
        if appdata:
            return os.path.join(appdata, "splurge-secrets-encrypt")

        # POSIX: ~/.config/splurge-secrets-encrypt
        home = os.path.expanduser("~")
        if home:
            return os.path.join(home, ".config", "splurge-secrets-encrypt")

        return os.path.join(os.getcwd(), ".sse")

    def _default_node_name(self) -> str:
        return os.getenv("SSE_NODE_NAME") or socket.gethostname()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create the argument parser.

        Returns:
            Configured argument parser
        """
        parser = argparse.ArgumentParser(
            prog="splurge-secrets-encrypt",
            description="Splurge Secrets Encrypt - Staged rotation of secrets encryption keys",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Create the first encryption config on this node
  splurge-secrets-encrypt -d /var/lib/node1 --datastore-dir /shared/ds bootstrap

  # Staged rotation; reload every node between stages
  splurge-secrets-encrypt -d /var/lib/node1 --datastore-dir /shared/ds prepare
  splurge-secrets-encrypt -d /var/lib/node2 --datastore-dir /shared/ds reload
  splurge-secrets-encrypt -d /var/lib/node1 --datastore-dir /shared/ds rotate
  splurge-secrets-encrypt -d /var/lib/node1 --datastore-dir /shared/ds reencrypt

  # All three stages in one call
  splurge-secrets-encrypt -d /var/lib/node1 --datastore-dir /shared/ds rotate-keys

  # Cluster status
  splurge-secrets-encrypt -d /var/lib/node1 --datastore-dir /shared/ds status -o json
            """,
        )

        # Global arguments
        parser.add_argument(
            "-d",
            "--data-dir",
            default=self._default_data_dir(),
            help="Node data directory (default: $SSE_DATA_DIR or platform config dir)",
        )
        parser.add_argument(
            "--datastore-dir",
            default=os.getenv("SSE_DATASTORE_DIR"),
            help="Shared datastore directory (default: $SSE_DATASTORE_DIR or <data-dir>/datastore)",
        )
        parser.add_argument(
            "-n",
            "--node-name",
            default=self._default_node_name(),
            help="Name of this node (default: $SSE_NODE_NAME or the hostname)",
        )
        parser.add_argument(
            "--provider",
            choices=[KeyMode.AESCBC.value, KeyMode.AESGCM.value],
            default=KeyMode.AESCBC.value,
            help="Cipher for newly generated keys (default: aescbc)",
        )
        parser.add_argument(
            "--log-level",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            default="WARNING",
            help="Log level for diagnostics written to stderr",
        )
        parser.add_argument(
            "--pretty",
            action="store_true",
            help="Pretty-print JSON outputs",
        )

        # Subcommands
        subparsers = parser.add_subparsers(
            dest="command",
            help="Available commands",
        )

        status_parser = subparsers.add_parser(
            "status",
            help="Show encryption status and whether every node's config hash matches",
        )
        status_parser.add_argument(
            "-o",
            "--output",
            choices=["text", "json"],
            default="text",
            help="Output format (default: text)",
        )

        subparsers.add_parser(
            "bootstrap",
            help="Create the first encryption config with one generated key",
        )

        prepare_parser = subparsers.add_parser(
            "prepare",
            help="Add a new key as the second key",
        )
        prepare_parser.add_argument(
            "-f",
            "--force",
            action="store_true",
            help="Ignore the current rotation stage",
        )

        rotate_parser = subparsers.add_parser(
            "rotate",
            help="Promote the new key to primary",
        )
        rotate_parser.add_argument(
            "-f",
            "--force",
            action="store_true",
            help="Ignore the current rotation stage",
        )

        reencrypt_parser = subparsers.add_parser(
            "reencrypt",
            help="Rewrite every secret with the primary key and drop old keys",
        )
        reencrypt_parser.add_argument(
            "-f",
            "--force",
            action="store_true",
            help="Ignore the current rotation stage",
        )
        reencrypt_parser.add_argument(
            "--skip",
            action="store_true",
            help="Mark re-encryption finished without rewriting secrets or dropping keys",
        )

        subparsers.add_parser(
            "rotate-keys",
            help="Prepare, rotate and re-encrypt in one step",
        )
        subparsers.add_parser(
            "disable",
            help="Store new secrets unencrypted; existing keys are kept",
        )
        subparsers.add_parser(
            "enable",
            help="Re-enable encryption with the first available key",
        )
        subparsers.add_parser(
            "reload",
            help="Adopt the cluster's latest encryption config (stands in for a restart)",
        )

        return parser

    def _get_node(self, args: argparse.Namespace) -> ControlPlaneNode:
        """Build the local node from global arguments."""
        datastore_dir = args.datastore_dir or os.path.join(
            args.data_dir, Constants.DATASTORE_DIR_NAME()
        )
        try:
            settings = SecretsEncryptConfig(provider=args.provider)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return ControlPlaneNode(
            args.node_name,
            args.data_dir,
            FileDatastore(datastore_dir, secure_permissions=settings.secure_permissions),
            config=settings,
        )

    def _print_json(self, payload: dict[str, Any]) -> None:
        """Print a JSON payload to stdout."""
        print(json.dumps(payload, indent=2 if self._pretty else None))

    def _print_error(self, *, message: str, code: str = "error", extra: dict[str, Any] | None = None) -> None:
        """Print a JSON error to stderr and exit non-zero."""
        error_obj = {
            "success": False,
            "error_code": code,
            "message": message,
        }
        if extra:
            error_obj["data"] = extra
        print(json.dumps(error_obj, indent=2), file=sys.stderr)
        sys.exit(1)

    def _print_transition(
        self,
        command: str,
        config: EncryptionConfig,
        **fields: Any
    ) -> None:
        payload = {
            "success": True,
            "command": command,
            "stage": config.stage.value,
            "enabled": config.enabled,
            "active_key": config.primary.display_name,
            "config_hash": config.hash(),
        }
        payload.update(fields)
        self._print_json(payload)

    def _handle_status(self, node: ControlPlaneNode, args: argparse.Namespace) -> None:
        """Handle status command."""
        report = node.status()
        if args.output == "json":
            self._print_json(report.to_dict())
        else:
            sys.stdout.write(render_status(report))

    def _handle_reencrypt(self, node: ControlPlaneNode, args: argparse.Namespace) -> None:
        """Handle reencrypt command."""
        result = node.controller.reencrypt(force=args.force, skip=args.skip, wait=True)
        config = node.controller.current_config()
        if result is None:
            self._print_transition("reencrypt", config, skipped=True)
        else:
            self._print_transition(
                "reencrypt",
                config,
                skipped=False,
                records=result.total,
                rewritten=result.rewritten,
            )

    def _handle_rotate_keys(self, node: ControlPlaneNode) -> None:
        """Handle rotate-keys command."""
        result = node.controller.rotate_keys()
        self._print_transition(
            "rotate-keys",
            node.controller.current_config(),
            records=result.total,
            rewritten=result.rewritten,
        )

    def _handle_reload(self, node: ControlPlaneNode) -> None:
        """Handle reload command."""
        config = node.reload()
        if config is None:
            raise ConfigMissingError("No local encryption config and no generation marker to adopt")
        self._print_transition("reload", config)

    def _dispatch(self, node: ControlPlaneNode, args: argparse.Namespace) -> None:
        controller = node.controller
        command = args.command

        if command == "status":
            self._handle_status(node, args)
        elif command == "bootstrap":
            self._print_transition(command, controller.bootstrap())
        elif command == "prepare":
            self._print_transition(command, controller.prepare(force=args.force))
        elif command == "rotate":
            self._print_transition(command, controller.rotate(force=args.force))
        elif command == "reencrypt":
            self._handle_reencrypt(node, args)
        elif command == "rotate-keys":
            self._handle_rotate_keys(node)
        elif command == "disable":
            self._print_transition(command, controller.disable())
        elif command == "enable":
            self._print_transition(command, controller.enable())
        elif command == "reload":
            self._handle_reload(node)
        else:
            self._print_error(message=f"Unknown command: {command}", code="unknown_command")

    def run(self, args: Optional[list[str]] = None) -> None:
        """Run the CLI with given arguments."""
        try:
            parsed_args = self._parser.parse_args(args)
            self._pretty = bool(getattr(parsed_args, "pretty", False))

            if not parsed_args.command:
                self._print_error(message="No command specified", code="missing_command")

            logging.basicConfig(
                level=getattr(logging, parsed_args.log_level),
                stream=sys.stderr,
                format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            )

            node = self._get_node(parsed_args)
            try:
                self._dispatch(node, parsed_args)
            finally:
                node.close()

        except KeyboardInterrupt:
            self._print_error(message="Operation cancelled by user", code="cancelled")
        except Exception as e:
            for error_type, code in _ERROR_CODES:
                if isinstance(e, error_type):
                    self._print_error(message=str(e), code=code)
            self._print_error(message=str(e), code="unexpected_error")


def main() -> None:
    """Main entry point for the CLI."""
    cli = SecretsEncryptCLI()
    cli.run()


if __name__ == "__main__":
    main()
