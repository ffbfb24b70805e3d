"""
Startup helpers shared by every hardware MCP server.

A server built on these helpers accepts ``--transport``, ``--host`` and
``--port``. For the network transports (``sse``, ``streamable-http``) it
registers in the port ledger before opening its listener and announces the
chosen port. The ``stdio`` transport opens no listener and never touches
the ledger.

Example server script:

    from mcp_ports.startup import run_server

    async def serve(binding):
        await app.run(transport=binding.transport, host=binding.host,
                      port=binding.port)

    if __name__ == "__main__":
        raise SystemExit(run_server("camera", serve))
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TextIO

import yaml

from mcp_ports.config import TRANSPORTS, AppConfig, load_config
from mcp_ports.errors import InvalidArgumentError, RegistryError
from mcp_ports.logging import get_logger, setup_logging
from mcp_ports.registrar import ServiceRegistrar

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


@dataclass(frozen=True)
class ServerBinding:
    """
    Where a server should listen.

    Attributes:
        service_name: Name recorded in the ledger.
        transport: 'stdio', 'sse' or 'streamable-http'.
        host: Bind host.
        port: Bind port; None for stdio.
        allocated: True if the port came from ledger allocation rather than
            operator configuration.
    """

    service_name: str
    transport: str
    host: str
    port: int | None
    allocated: bool = False

    @property
    def is_network(self) -> bool:
        """Whether the transport opens a network listener."""
        return self.transport != "stdio"


def add_server_arguments(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    """Add the standard server entry point options to a parser."""
    parser.add_argument(
        "--transport",
        choices=TRANSPORTS,
        help="Transport to serve on",
    )
    parser.add_argument("--host", help="Bind host")
    parser.add_argument(
        "--port",
        type=int,
        help="Bind port; allocated from the shared ledger when omitted",
    )
    parser.add_argument("--service-name", help="Name recorded in the port ledger")
    parser.add_argument("--ledger", help="Path to the shared port ledger")
    parser.add_argument("--config", "-c", help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    """Translate parsed server arguments into configuration overrides."""
    server: dict[str, Any] = {}
    for key in ("transport", "host", "port", "service_name"):
        value = getattr(args, key, None)
        if value is not None:
            server[key] = value

    overrides: dict[str, Any] = {}
    if server:
        overrides["server"] = server
    if getattr(args, "ledger", None):
        overrides["ledger"] = {"path": args.ledger}
    if getattr(args, "log_level", None):
        overrides["logging"] = {"level": args.log_level}
    return overrides


def prepare_binding(
    config: AppConfig,
    registrar: ServiceRegistrar | None = None,
    announce: TextIO | None = None,
) -> ServerBinding:
    """
    Resolve the binding of a server, registering its port if needed.

    Args:
        config: Application configuration; ``config.server`` describes the
            server.
        registrar: Registrar to use. Built from config when omitted.
        announce: Stream receiving the human-readable "listening on" line.
            Defaults to sys.stderr.

    Returns:
        The resolved ServerBinding.

    Raises:
        InvalidArgumentError: If no service name is configured.
        RegistryError: Any registration failure; the server must not bind.
    """
    server = config.server
    if not server.service_name:
        raise InvalidArgumentError("A service name is required to register a port")

    if server.transport == "stdio":
        logger.info(
            "Serving over stdio, skipping port registration",
            extra={"service_name": server.service_name},
        )
        return ServerBinding(
            service_name=server.service_name,
            transport=server.transport,
            host=server.host,
            port=None,
        )

    if registrar is None:
        registrar = ServiceRegistrar.from_config(config)

    port = registrar.register(server.service_name, server.port)
    binding = ServerBinding(
        service_name=server.service_name,
        transport=server.transport,
        host=server.host,
        port=port,
        allocated=server.port is None,
    )

    logger.info(
        "Server binding resolved",
        extra={
            "service_name": binding.service_name,
            "transport": binding.transport,
            "host": binding.host,
            "port": binding.port,
            "allocated": binding.allocated,
        },
    )
    stream = announce if announce is not None else sys.stderr
    stream.write(f"{binding.service_name} listening on {binding.host}:{binding.port}\n")
    stream.flush()
    return binding


def run_server(
    service_name: str,
    serve: Callable[[ServerBinding], Awaitable[None] | None],
    argv: list[str] | None = None,
    registrar: ServiceRegistrar | None = None,
    env_prefix: str = "MCP_PORTS_",
) -> int:
    """
    Parse arguments, register, then hand the binding to ``serve``.

    ``serve`` may be a plain function or a coroutine function. A
    KeyboardInterrupt while registering or serving counts as a clean shutdown.

    Args:
        service_name: Default service name (``--service-name`` overrides it).
        serve: Callable that starts the actual MCP server.
        argv: Command-line arguments. If None, uses sys.argv.
        registrar: Optional registrar, mainly for tests.
        env_prefix: Prefix for configuration environment variables.

    Returns:
        Process exit code: 0 on clean shutdown, 1 on registration failure.
    """
    parser = argparse.ArgumentParser(
        description=f"{service_name} MCP server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    add_server_arguments(parser)
    args = parser.parse_args(argv)

    overrides = overrides_from_args(args)
    overrides.setdefault("server", {}).setdefault("service_name", service_name)

    try:
        config = load_config(args.config, env_prefix=env_prefix, overrides=overrides)
    except (OSError, ValueError, yaml.YAMLError) as e:
        sys.stderr.write(f"error: invalid configuration: {e}\n")
        return EXIT_FAILURE

    # stdout belongs to the protocol when serving over stdio
    setup_logging(config.logging, stream=sys.stderr)

    try:
        binding = prepare_binding(config, registrar=registrar)
    except RegistryError as e:
        logger.error(
            "Startup aborted: port registration failed",
            extra={
                "service_name": config.server.service_name,
                "error_code": e.error_code,
                "error": e.message,
                "details": e.details,
            },
        )
        sys.stderr.write(f"error: {e.message}\n")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.info(
            "Interrupted during registration, shutting down",
            extra={"service_name": config.server.service_name},
        )
        return EXIT_OK

    try:
        result = serve(binding)
        if asyncio.iscoroutine(result):
            asyncio.run(result)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down", extra={"service_name": binding.service_name})

    return EXIT_OK
