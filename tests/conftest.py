"""
Pytest configuration for the MCP port registry tests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from mcp_ports.ledger import PortLedger

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


class ScriptedRandom:
    """Deterministic random source replaying a fixed sequence of draws."""

    def __init__(self, values: list[int], repeat_last: bool = True) -> None:
        self.values = list(values)
        self.repeat_last = repeat_last
        self.calls: list[tuple[int, int]] = []

    def randrange(self, start: int, stop: int) -> int:
        self.calls.append((start, stop))
        index = len(self.calls) - 1
        if index < len(self.values):
            return self.values[index]
        if self.repeat_last and self.values:
            return self.values[-1]
        raise AssertionError("ScriptedRandom ran out of values")


@pytest.fixture
def ledger_path(tmp_path: Path) -> Path:
    """Path of a ledger file that does not exist yet."""
    return tmp_path / "shared" / "port_registry.txt"


@pytest.fixture
def ledger(ledger_path: Path) -> PortLedger:
    """PortLedger on a fresh path."""
    return PortLedger(ledger_path)


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> Iterator[None]:
    """Drop handlers installed by setup_logging() during a test."""
    yield
    logger = logging.getLogger("mcp_ports")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def scripted_random() -> type[ScriptedRandom]:
    """Factory for deterministic random sources."""
    return ScriptedRandom
