"""
Tests for the logging module.

This test module validates:
- JSON-formatted structured logging output
- Logger configuration and setup
- Log level handling
- Stream selection
"""

from __future__ import annotations

import json
import logging
import sys
from io import StringIO

from mcp_ports.config import LoggingConfig
from mcp_ports.logging import JSONFormatter, get_logger, setup_logging


def _record(msg: str = "Test message", level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="test_logger",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )


# =============================================================================
# Tests for JSONFormatter
# =============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_format_basic_log_record(self) -> None:
        """Test formatting a basic log record as JSON."""
        parsed = json.loads(JSONFormatter().format(_record()))

        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test_logger"
        assert parsed["message"] == "Test message"
        assert "timestamp" in parsed

    def test_format_with_extra_fields(self) -> None:
        """Test extra fields are included."""
        record = _record("Service registered")
        record.service_name = "camera"
        record.port = 8123

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["service_name"] == "camera"
        assert parsed["port"] == 8123

    def test_none_extra_fields_are_omitted(self) -> None:
        """Test extra fields with None values are dropped."""
        record = _record()
        record.pid = None

        parsed = json.loads(JSONFormatter().format(record))

        assert "pid" not in parsed

    def test_format_with_exception(self) -> None:
        """Test exception info is rendered."""
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                name="test_logger",
                level=logging.ERROR,
                pathname="test.py",
                lineno=10,
                msg="Failure",
                args=(),
                exc_info=sys.exc_info(),
            )

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError: boom" in parsed["exception"]


# =============================================================================
# Tests for setup_logging / get_logger
# =============================================================================


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_returns_package_logger(self) -> None:
        """Test the package root logger is returned."""
        logger = setup_logging(stream=StringIO())

        assert logger.name == "mcp_ports"
        assert logger.propagate is False

    def test_level_from_parameter(self) -> None:
        """Test log level keyword parameter."""
        logger = setup_logging(level="DEBUG", stream=StringIO())
        assert logger.level == logging.DEBUG

    def test_config_overrides_parameters(self) -> None:
        """Test LoggingConfig takes precedence."""
        logger = setup_logging(
            LoggingConfig(level="error"), level="DEBUG", stream=StringIO()
        )
        assert logger.level == logging.ERROR

    def test_debug_mode_forces_debug(self) -> None:
        """Test debug_mode forces DEBUG level."""
        logger = setup_logging(
            LoggingConfig(level="error", debug_mode=True), stream=StringIO()
        )
        assert logger.level == logging.DEBUG

    def test_writes_json_to_stream(self) -> None:
        """Test records are written as JSON to the chosen stream."""
        stream = StringIO()
        setup_logging(stream=stream)

        get_logger("tests").info("hello", extra={"port": 8001})

        parsed = json.loads(stream.getvalue().strip())
        assert parsed["message"] == "hello"
        assert parsed["port"] == 8001
        assert parsed["logger"] == "mcp_ports.tests"

    def test_plain_text_format(self) -> None:
        """Test json_format=False yields plain text."""
        stream = StringIO()
        setup_logging(json_format=False, stream=stream)

        get_logger("tests").info("hello")

        assert "INFO - hello" in stream.getvalue()

    def test_no_handler_when_disabled(self) -> None:
        """Test log_to_stdout=False installs no handler."""
        logger = setup_logging(log_to_stdout=False)
        assert logger.handlers == []

    def test_repeated_setup_does_not_duplicate_handlers(self) -> None:
        """Test handlers are replaced, not accumulated."""
        setup_logging(stream=StringIO())
        logger = setup_logging(stream=StringIO())
        assert len(logger.handlers) == 1


class TestGetLogger:
    """Tests for get_logger function."""

    def test_prefix_added(self) -> None:
        """Test the package prefix is added."""
        assert get_logger("ledger").name == "mcp_ports.ledger"

    def test_prefix_not_duplicated(self) -> None:
        """Test module names already prefixed are kept."""
        assert get_logger("mcp_ports.ledger").name == "mcp_ports.ledger"
