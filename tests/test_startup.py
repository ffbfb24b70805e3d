"""
Tests for the server startup helpers.
"""

from __future__ import annotations

import argparse
from io import StringIO
from pathlib import Path
from unittest import mock

import pytest

from mcp_ports.config import AppConfig
from mcp_ports.errors import InvalidArgumentError
from mcp_ports.ledger import PortLedger
from mcp_ports.registrar import ServiceRegistrar
from mcp_ports.startup import (
    EXIT_FAILURE,
    EXIT_OK,
    ServerBinding,
    add_server_arguments,
    overrides_from_args,
    prepare_binding,
    run_server,
)


@pytest.fixture
def isolated_env(tmp_path: Path):
    """No config file and no MCP_PORTS_* variables."""
    with mock.patch(
        "mcp_ports.config.DEFAULT_CONFIG_PATH", tmp_path / "missing.yml"
    ), mock.patch.dict("os.environ", {}, clear=True):
        yield


def _config(ledger_path: Path, **server: object) -> AppConfig:
    return AppConfig(
        ledger={"path": str(ledger_path)},
        server={"service_name": "camera", **server},
    )


# =============================================================================
# Tests for argument handling
# =============================================================================


class TestArguments:
    """Tests for add_server_arguments / overrides_from_args."""

    def test_parses_standard_options(self) -> None:
        """Test the standard entry point options are accepted."""
        parser = add_server_arguments(argparse.ArgumentParser())
        args = parser.parse_args(
            ["--transport", "sse", "--host", "127.0.0.1", "--port", "8123"]
        )

        assert overrides_from_args(args) == {
            "server": {"transport": "sse", "host": "127.0.0.1", "port": 8123}
        }

    def test_omitted_options_not_overridden(self) -> None:
        """Test missing options leave configuration untouched."""
        parser = add_server_arguments(argparse.ArgumentParser())
        assert overrides_from_args(parser.parse_args([])) == {}

    def test_ledger_and_log_level(self) -> None:
        """Test ledger path and log level overrides."""
        parser = add_server_arguments(argparse.ArgumentParser())
        args = parser.parse_args(["--ledger", "/srv/p.txt", "--log-level", "debug"])

        assert overrides_from_args(args) == {
            "ledger": {"path": "/srv/p.txt"},
            "logging": {"level": "debug"},
        }

    def test_unknown_transport_rejected(self) -> None:
        """Test argparse rejects unknown transports."""
        parser = add_server_arguments(argparse.ArgumentParser())
        with pytest.raises(SystemExit):
            parser.parse_args(["--transport", "telnet"])


# =============================================================================
# Tests for prepare_binding
# =============================================================================


class TestPrepareBinding:
    """Tests for prepare_binding()."""

    def test_allocates_when_no_port(self, ledger_path: Path) -> None:
        """Test a network transport without a port registers through the ledger."""
        announce = StringIO()

        binding = prepare_binding(_config(ledger_path), announce=announce)

        assert binding.allocated is True
        assert binding.is_network is True
        assert 8000 <= binding.port < 9000
        assert PortLedger(ledger_path).lookup("camera") == binding.port
        assert announce.getvalue() == f"camera listening on 0.0.0.0:{binding.port}\n"

    def test_explicit_port_recorded(self, ledger_path: Path) -> None:
        """Test an explicit port is used as-is and recorded."""
        binding = prepare_binding(
            _config(ledger_path, port=8123, transport="streamable-http"),
            announce=StringIO(),
        )

        assert binding == ServerBinding(
            service_name="camera",
            transport="streamable-http",
            host="0.0.0.0",
            port=8123,
            allocated=False,
        )
        assert ledger_path.read_text() == "camera:8123\n"

    def test_stdio_skips_ledger(self, ledger_path: Path) -> None:
        """Test the stdio transport never touches the ledger."""
        binding = prepare_binding(_config(ledger_path, transport="stdio"))

        assert binding.port is None
        assert binding.is_network is False
        assert not ledger_path.exists()

    def test_uses_given_registrar(self, ledger_path: Path, scripted_random) -> None:
        """Test an injected registrar is used."""
        registrar = ServiceRegistrar(PortLedger(ledger_path), rng=scripted_random([8555]))

        binding = prepare_binding(
            _config(ledger_path), registrar=registrar, announce=StringIO()
        )

        assert binding.port == 8555

    def test_requires_service_name(self, ledger_path: Path) -> None:
        """Test a service name is mandatory."""
        config = AppConfig(ledger={"path": str(ledger_path)})
        with pytest.raises(InvalidArgumentError):
            prepare_binding(config)


# =============================================================================
# Tests for run_server
# =============================================================================


class TestRunServer:
    """Tests for run_server()."""

    def test_serves_with_registered_binding(
        self, ledger_path: Path, isolated_env: None
    ) -> None:
        """Test serve receives the binding after registration."""
        received: list[ServerBinding] = []

        code = run_server("camera", received.append, argv=["--ledger", str(ledger_path)])

        assert code == EXIT_OK
        assert len(received) == 1
        assert received[0].port in PortLedger(ledger_path).read_occupied_ports()

    def test_coroutine_serve(self, ledger_path: Path, isolated_env: None) -> None:
        """Test coroutine serve functions are run to completion."""
        received: list[ServerBinding] = []

        async def serve(binding: ServerBinding) -> None:
            received.append(binding)

        code = run_server(
            "camera", serve, argv=["--ledger", str(ledger_path), "--port", "8200"]
        )

        assert code == EXIT_OK
        assert received[0].port == 8200

    def test_service_name_option(self, ledger_path: Path, isolated_env: None) -> None:
        """Test --service-name overrides the default name."""
        run_server(
            "camera",
            lambda binding: None,
            argv=["--ledger", str(ledger_path), "--service-name", "camera-2"],
        )

        assert PortLedger(ledger_path).lookup("camera-2") is not None

    def test_interrupt_is_clean_exit(self, ledger_path: Path, isolated_env: None) -> None:
        """Test an operator interrupt exits with code 0."""

        def serve(binding: ServerBinding) -> None:
            raise KeyboardInterrupt

        assert run_server("camera", serve, argv=["--ledger", str(ledger_path)]) == EXIT_OK

    def test_interrupt_during_registration_is_clean_exit(
        self, ledger_path: Path, isolated_env: None
    ) -> None:
        """Test an interrupt while waiting for the ledger lock exits with code 0."""
        registrar = ServiceRegistrar(PortLedger(ledger_path))
        served: list[ServerBinding] = []

        with mock.patch.object(registrar, "register", side_effect=KeyboardInterrupt):
            code = run_server(
                "camera",
                served.append,
                argv=["--ledger", str(ledger_path)],
                registrar=registrar,
            )

        assert code == EXIT_OK
        assert served == []
        assert not ledger_path.exists()

    def test_exhaustion_aborts_startup(
        self, ledger_path: Path, isolated_env: None, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test serve is never called when registration fails."""
        ledger = PortLedger(ledger_path)
        ledger.append_entry("old", 8000)
        registrar = ServiceRegistrar(ledger, range_low=8000, range_high_exclusive=8001)
        served: list[ServerBinding] = []

        code = run_server(
            "camera", served.append, argv=["--ledger", str(ledger_path)], registrar=registrar
        )

        assert code == EXIT_FAILURE
        assert served == []
        assert "100 attempts" in capsys.readouterr().err

    def test_storage_error_aborts_startup(self, tmp_path: Path, isolated_env: None) -> None:
        """Test an unreadable ledger aborts startup."""
        served: list[ServerBinding] = []

        code = run_server("camera", served.append, argv=["--ledger", str(tmp_path)])

        assert code == EXIT_FAILURE
        assert served == []

    def test_invalid_config_file(self, tmp_path: Path, isolated_env: None) -> None:
        """Test a missing config file is a startup failure."""
        code = run_server(
            "camera", lambda b: None, argv=["--config", str(tmp_path / "nope.yml")]
        )
        assert code == EXIT_FAILURE
