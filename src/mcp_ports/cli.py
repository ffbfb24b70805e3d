"""
Command-line interface for the MCP port registry.

Subcommands:
    register NAME [--port N]   Claim a port for NAME and print it
    occupied                   Print every occupied port
    list                       Print the latest port per service
    compact                    Keep only the latest entry per service
    supervise                  Launch and supervise the services file

Exit codes: 0 on success, 1 on registry or startup failure, 2 on usage
errors.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

import yaml

from mcp_ports import __version__
from mcp_ports.config import AppConfig, load_config
from mcp_ports.errors import RegistryError
from mcp_ports.ledger import PortLedger
from mcp_ports.logging import get_logger, setup_logging
from mcp_ports.registrar import ServiceRegistrar
from mcp_ports.supervisor import ProcessSupervisor

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the mcp-ports command."""
    parser = argparse.ArgumentParser(
        prog="mcp-ports",
        description="Shared port ledger for MCP servers on one host",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("--config", "-c", help="Path to configuration file")
    parser.add_argument("--ledger", help="Path to the shared port ledger")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--json", action="store_true", dest="json_output", help="Print JSON output"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    register = subparsers.add_parser("register", help="Claim a port for a service")
    register.add_argument("service_name", help="Service name")
    register.add_argument("--port", type=int, help="Explicit port (no collision check)")
    register.add_argument("--range-low", type=int, help="Inclusive range start")
    register.add_argument("--range-high", type=int, help="Exclusive range end")
    register.add_argument(
        "--max-attempts", type=int, help="Random probes before giving up"
    )
    register.add_argument(
        "--no-lock", action="store_true", help="Do not take the ledger lock"
    )

    subparsers.add_parser("occupied", help="Print every occupied port")
    subparsers.add_parser("list", help="Print the latest port per service")
    subparsers.add_parser("compact", help="Keep only the latest entry per service")

    supervise = subparsers.add_parser("supervise", help="Run the services file")
    supervise.add_argument("--services", help="Services file")
    supervise.add_argument(
        "--transport",
        choices=["stdio", "sse", "streamable-http"],
        help="Transport passed to every service",
    )
    supervise.add_argument("--max-restarts", type=int, help="Restarts per service")

    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    def put(section: str, key: str, value: Any) -> None:
        if value is not None:
            overrides.setdefault(section, {})[key] = value

    put("ledger", "path", args.ledger)
    put("logging", "level", args.log_level)
    if args.debug:
        put("logging", "debug_mode", True)

    if args.command == "register":
        put("allocation", "range_low", args.range_low)
        put("allocation", "range_high", args.range_high)
        put("allocation", "max_attempts", args.max_attempts)
        if args.no_lock:
            put("ledger", "lock_enabled", False)
    elif args.command == "supervise":
        put("supervisor", "services_file", args.services)
        put("supervisor", "transport", args.transport)
        put("supervisor", "max_restarts", args.max_restarts)

    return overrides


def _emit(args: argparse.Namespace, data: Any, text: str) -> None:
    if args.json_output:
        print(json.dumps(data, indent=2, sort_keys=True))
    else:
        print(text)


def _cmd_register(args: argparse.Namespace, config: AppConfig) -> int:
    registrar = ServiceRegistrar.from_config(config)
    port = registrar.register(args.service_name, args.port)
    _emit(args, {"service_name": args.service_name, "port": port}, str(port))
    return EXIT_OK


def _cmd_occupied(args: argparse.Namespace, config: AppConfig) -> int:
    ledger = PortLedger(config.ledger.path)
    ports = sorted(ledger.read_occupied_ports())
    _emit(
        args,
        {"ports": ports, "skipped_lines": ledger.skipped_lines},
        "\n".join(str(p) for p in ports),
    )
    return EXIT_OK


def _cmd_list(args: argparse.Namespace, config: AppConfig) -> int:
    latest = PortLedger(config.ledger.path).latest_ports()
    _emit(
        args,
        latest,
        "\n".join(f"{name}:{port}" for name, port in latest.items()),
    )
    return EXIT_OK


def _cmd_compact(args: argparse.Namespace, config: AppConfig) -> int:
    removed = PortLedger(config.ledger.path).compact(
        lock_timeout=config.ledger.lock_timeout_seconds
    )
    _emit(args, {"removed": removed}, f"removed {removed} stale entries")
    return EXIT_OK


def _cmd_supervise(args: argparse.Namespace, config: AppConfig) -> int:
    supervisor = ProcessSupervisor.from_config(config)
    return asyncio.run(supervisor.run())


_COMMANDS = {
    "register": _cmd_register,
    "occupied": _cmd_occupied,
    "list": _cmd_list,
    "compact": _cmd_compact,
    "supervise": _cmd_supervise,
}


def main(argv: list[str] | None = None) -> int:
    """Entry point of the mcp-ports command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config, overrides=_overrides(args))
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"error: invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE

    # Command output goes to stdout; keep logs on stderr
    setup_logging(config.logging, stream=sys.stderr)

    try:
        return _COMMANDS[args.command](args, config)
    except RegistryError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return EXIT_FAILURE
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return EXIT_OK
