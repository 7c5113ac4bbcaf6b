#!/usr/bin/env python3
"""unifi-converge command line.

Usage:
    unifi-converge validate CONFIG
    unifi-converge diff CONFIG HOST [--snapshot FILE]
    unifi-converge deploy CONFIG HOST [--dry-run]
    unifi-converge history [--collection C] [--name N]

Environment variables:
    UNIFI_PASSWORD              Controller password (see password_env)
    UNIFI_CONVERGE_LOG_LEVEL    Console log level (default: INFO)
    UNIFI_CONVERGE_AUDIT_DIR    Audit log directory (default: ~/.unifi-converge)
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from .config.settings import load_settings
from .controller.base import Controller, ControllerConfig
from .controller.memory import InMemoryController
from .controller.unifi import UniFiController
from .errors import ConvergeError
from .reconcile import (
    ConfigParser,
    ConfigValidator,
    ConvergeEngine,
    ExecuteOptions,
    SchemaRegistry,
    default_backend,
    load_document,
    summarize_changeset,
    summarize_report,
)
from .reconcile.registry import LATEST
from .utils.audit_log import get_recent_changes, setup_audit_logging
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CHANGES = 1
EXIT_ERROR = 2


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2, default=str))


def _schema_version(args: argparse.Namespace, config: ControllerConfig) -> Optional[str]:
    """Explicit flag wins; a configured pin applies only when not 'latest'."""
    if getattr(args, "schema_version", None):
        return args.schema_version
    if config.schema_version and config.schema_version != LATEST:
        return config.schema_version
    return None


def _build_engine(
    args: argparse.Namespace,
    config: ControllerConfig,
    controller: Controller,
    dry_run: bool,
) -> ConvergeEngine:
    options = ExecuteOptions(
        dry_run=dry_run,
        concurrency=getattr(args, "concurrency", None) or config.concurrency,
        max_attempts=config.max_attempts,
        timeout=getattr(args, "timeout", None),
        audit_context=args.config,
    )
    return ConvergeEngine(
        controller,
        registry=SchemaRegistry(args.schema_dir or config.schema_dir),
        secrets=default_backend(args.secrets_dir or config.secrets_dir),
        options=options,
        schema_version=_schema_version(args, config),
    )


def _controller(args: argparse.Namespace, config: ControllerConfig) -> Controller:
    snapshot = getattr(args, "snapshot", None)
    if snapshot:
        logger.info(f"Planning against snapshot {snapshot}")
        return InMemoryController.from_documents(
            load_document(snapshot), host=config.host, site=config.site
        )
    return UniFiController(config)


def cmd_validate(args: argparse.Namespace) -> int:
    """Parse and validate a document without contacting a controller."""
    document = load_document(args.config)
    desired = ConfigParser().parse(document)
    version = args.schema_version or desired.schema_version or LATEST
    schema = SchemaRegistry(args.schema_dir).resolve(version)
    result = ConfigValidator(schema).validate(desired)

    if args.json:
        _print_json(result.to_dict())
    else:
        for error in result.errors:
            print(f"error: {error}")
        for warning in result.warnings:
            print(f"warning: {warning}")
        print(f"{args.config}: {'valid' if result.valid else 'invalid'} "
              f"({len(desired)} entities)")
    return EXIT_OK if result.valid else EXIT_CHANGES


async def _diff(args: argparse.Namespace) -> int:
    config = load_settings(args.host, args.settings)
    document = load_document(args.config)
    async with _controller(args, config) as controller:
        engine = _build_engine(args, config, controller, dry_run=True)
        result = await engine.plan(document)

    if args.json:
        _print_json(result.to_dict())
    else:
        for warning in result.warnings:
            print(f"warning: {warning}")
        if result.error:
            print(f"error: {result.error}")
            if result.validation is not None:
                for error in result.validation.errors:
                    print(f"  {error}")
        if result.changeset is not None:
            print(summarize_changeset(result.changeset))

    if result.error or result.changeset is None:
        return EXIT_ERROR
    return EXIT_OK if result.changeset.no_change else EXIT_CHANGES


async def _deploy(args: argparse.Namespace) -> int:
    config = load_settings(args.host, args.settings)
    document = load_document(args.config)
    if not args.dry_run:
        audit_file = setup_audit_logging(args.audit_dir)
        logger.debug(f"Audit log: {audit_file}")

    async with _controller(args, config) as controller:
        engine = _build_engine(args, config, controller, dry_run=args.dry_run)
        result = await engine.converge(document)

    if args.json:
        _print_json(result.to_dict())
    else:
        for warning in result.warnings:
            print(f"warning: {warning}")
        if result.error:
            print(f"error: {result.error}")
            if result.validation is not None:
                for error in result.validation.errors:
                    print(f"  {error}")
        if result.report is not None:
            print(summarize_report(result.report))
    return EXIT_OK if result.success else EXIT_CHANGES


def cmd_history(args: argparse.Namespace) -> int:
    """Show recent audit records."""
    log_file = None
    if args.audit_dir:
        log_file = f"{args.audit_dir.rstrip('/')}/audit.log"
    records = get_recent_changes(log_file, args.collection, args.name, args.limit)
    if args.json:
        _print_json({"records": [r.__dict__ for r in records]})
        return EXIT_OK
    for r in records:
        outcome = "ok" if r.success else f"{r.status}: {r.error}"
        print(f"{r.timestamp} {r.host}/{r.site} {r.operation} {r.collection} '{r.name}' {outcome}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="unifi-converge",
        description="Converge a UniFi controller site toward a declarative document",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Check a document offline
    unifi-converge validate site.yaml

    # Show what would change (exit 1 when there is drift)
    unifi-converge diff site.yaml 192.168.1.1

    # Plan against a saved snapshot instead of a live controller
    unifi-converge diff site.yaml udm --snapshot live.json

    # Apply
    unifi-converge deploy site.yaml 192.168.1.1 --concurrency 8
""",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-log-file", action="store_true", help="Log to the console only")
    sub = parser.add_subparsers(dest="command", required=True)

    def common(p: argparse.ArgumentParser) -> None:
        p.add_argument("config", help="Desired-state document (YAML or JSON)")
        p.add_argument("--schema-dir", help="Schema descriptor directory")
        p.add_argument("--schema-version", help="Pin a schema version")
        p.add_argument("--json", action="store_true", help="Machine-readable output")

    def remote(p: argparse.ArgumentParser) -> None:
        p.add_argument("host", help="Controller host or settings alias")
        p.add_argument("--settings", help="Settings file (default: search path)")
        p.add_argument("--secrets-dir", help="Directory holding secret files")
        p.add_argument("--snapshot", help="Use a saved snapshot instead of the controller")

    p_validate = sub.add_parser("validate", help="Validate a document")
    common(p_validate)

    p_diff = sub.add_parser("diff", help="Show the changeset (0 none, 1 changes, 2 error)")
    common(p_diff)
    remote(p_diff)

    p_deploy = sub.add_parser("deploy", help="Apply a document to a controller")
    common(p_deploy)
    remote(p_deploy)
    p_deploy.add_argument("--dry-run", action="store_true", help="Plan only")
    p_deploy.add_argument("--concurrency", type=int, help="Parallel operations per stage")
    p_deploy.add_argument("--timeout", type=float, help="Stop starting operations after N seconds")
    p_deploy.add_argument("--audit-dir", help="Audit log directory")

    p_history = sub.add_parser("history", help="Show recent applied changes")
    p_history.add_argument("--collection", help="Filter by collection")
    p_history.add_argument("--name", help="Filter by logical name")
    p_history.add_argument("--limit", type=int, default=20)
    p_history.add_argument("--audit-dir", help="Audit log directory")
    p_history.add_argument("--json", action="store_true", help="Machine-readable output")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging("DEBUG" if args.verbose else None, log_to_file=not args.no_log_file)

    try:
        if args.command == "validate":
            return cmd_validate(args)
        if args.command == "diff":
            return asyncio.run(_diff(args))
        if args.command == "deploy":
            return asyncio.run(_deploy(args))
        return cmd_history(args)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except ConvergeError as e:
        logger.error(str(e))
        return EXIT_ERROR
    except (OSError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
