"""
Append-only port ledger shared by every MCP server on the host.

The ledger is a plain text file with one ``service_name:port`` claim per
line. A port is occupied if it appears on any line, whichever service
claimed it and whether or not that service is still running. Stale entries
therefore shrink the allocatable pool until the ledger is compacted or
removed by an operator.

Malformed lines are skipped, never fatal. They are reported through an
optional hook and counted in ``PortLedger.skipped_lines`` for diagnostics.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from mcp_ports.errors import InvalidArgumentError, StorageError
from mcp_ports.locking import ledger_lock, lock_path_for
from mcp_ports.logging import get_logger

logger = get_logger(__name__)

MIN_PORT = 1
MAX_PORT = 65535


def validate_service_name(service_name: str) -> str:
    """
    Check that a service name can be stored as a ledger line.

    Raises:
        InvalidArgumentError: If the name is empty or contains ':' or a line break.
    """
    if not service_name or not service_name.strip():
        raise InvalidArgumentError("Service name must not be empty")
    # Any str.splitlines() boundary counts, e.g. \x85 or \u2028
    if ":" in service_name or service_name.splitlines() != [service_name]:
        raise InvalidArgumentError(
            "Service name must not contain ':' or line breaks",
            details={"service_name": service_name},
        )
    return service_name


def validate_port(port: int) -> int:
    """
    Check that a port number is within [1, 65535].

    Raises:
        InvalidArgumentError: If the port is out of range.
    """
    if isinstance(port, bool) or not isinstance(port, int):
        raise InvalidArgumentError(
            f"Port must be an integer, got {type(port).__name__}",
            details={"port": port},
        )
    if not MIN_PORT <= port <= MAX_PORT:
        raise InvalidArgumentError(
            f"Port must be between {MIN_PORT} and {MAX_PORT}",
            details={"port": port},
        )
    return port


@dataclass(frozen=True)
class PortLedgerEntry:
    """One ``service_name:port`` claim."""

    service_name: str
    port: int

    def to_line(self) -> str:
        """Serialize the entry as a ledger line, newline included."""
        return f"{self.service_name}:{self.port}\n"


@dataclass(frozen=True)
class MalformedLedgerLine:
    """
    A non-empty ledger line that could not be parsed.

    Attributes:
        line_number: 1-based line number in the ledger file.
        text: The raw line without its line terminator.
        reason: Why the line was skipped.
    """

    line_number: int
    text: str
    reason: str


def parse_ledger_line(text: str) -> PortLedgerEntry | str:
    """
    Parse one stripped ledger line.

    Returns:
        The parsed entry, or a short reason string if the line is malformed.
    """
    if ":" not in text:
        return "missing ':' separator"

    name, port_text = text.split(":", 1)
    try:
        port = int(port_text)
    except ValueError:
        return f"port {port_text!r} is not an integer"

    if not MIN_PORT <= port <= MAX_PORT:
        return f"port {port} is outside [{MIN_PORT}, {MAX_PORT}]"

    return PortLedgerEntry(service_name=name, port=port)


class PortLedger:
    """
    Durable storage of the claimed-port history.

    Example:
        >>> ledger = PortLedger("/srv/mcp/port_registry.txt")
        >>> ledger.append_entry("camera", 8123)
        >>> 8123 in ledger.read_occupied_ports()
        True

    Attributes:
        path: Ledger file path.
        lock_path: Sidecar advisory lock file path.
        skipped_lines: Number of malformed lines skipped by the last read.
    """

    def __init__(
        self,
        path: Path | str,
        on_malformed: Callable[[MalformedLedgerLine], None] | None = None,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            path: Ledger file path. The file is created on first append.
            on_malformed: Optional hook called once per skipped line.
        """
        self.path = Path(path)
        self.lock_path = lock_path_for(self.path)
        self.skipped_lines = 0
        self._on_malformed = on_malformed

    def __repr__(self) -> str:
        return f"PortLedger(path={str(self.path)!r})"

    def _read_lines(self) -> list[str]:
        try:
            # Only "\n" separates lines; "\r\n" and "\r" are translated on read
            with open(self.path, encoding="utf-8", errors="replace") as f:
                return f.read().split("\n")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(
                f"Cannot read port ledger {self.path}: {e}",
                details={"operation": "read", "path": str(self.path)},
            ) from e

    def read_entries(self) -> list[PortLedgerEntry]:
        """
        Parse every valid line of the ledger, in file order.

        A missing ledger yields an empty list. Malformed lines are skipped
        and reported; empty lines are ignored.

        Raises:
            StorageError: If the ledger exists but cannot be read.
        """
        entries: list[PortLedgerEntry] = []
        skipped = 0

        for line_number, raw in enumerate(self._read_lines(), start=1):
            text = raw.strip()
            if not text:
                continue

            parsed = parse_ledger_line(text)
            if isinstance(parsed, PortLedgerEntry):
                entries.append(parsed)
                continue

            skipped += 1
            malformed = MalformedLedgerLine(
                line_number=line_number, text=raw, reason=parsed
            )
            logger.warning(
                "Skipping malformed ledger line",
                extra={
                    "path": str(self.path),
                    "line_number": line_number,
                    "reason": parsed,
                },
            )
            if self._on_malformed is not None:
                self._on_malformed(malformed)

        self.skipped_lines = skipped
        return entries

    def read_occupied_ports(self) -> set[int]:
        """
        Return every port claimed on any valid line of the ledger.

        Raises:
            StorageError: If the ledger exists but cannot be read.
        """
        return {entry.port for entry in self.read_entries()}

    def latest_ports(self) -> dict[str, int]:
        """Return the authoritative port per service (last entry wins)."""
        return {entry.service_name: entry.port for entry in self.read_entries()}

    def lookup(self, service_name: str) -> int | None:
        """Return the latest port recorded for a service, or None."""
        return self.latest_ports().get(service_name)

    def append_entry(self, service_name: str, port: int) -> PortLedgerEntry:
        """
        Append one claim to the ledger.

        The file (and its directory) is created if missing. If the file does
        not end with a newline (e.g. edited by hand), one is written first so
        the new claim never merges into the previous line. No occupancy
        check is performed. The write is flushed and synced before return.

        Raises:
            InvalidArgumentError: If the name or port cannot be stored.
            StorageError: If the ledger cannot be written.
        """
        entry = PortLedgerEntry(
            service_name=validate_service_name(service_name),
            port=validate_port(port),
        )

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a+b") as f:
                data = entry.to_line().encode("utf-8")
                if f.seek(0, os.SEEK_END) > 0:
                    f.seek(-1, os.SEEK_END)
                    if f.read(1) != b"\n":
                        data = b"\n" + data
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(
                f"Cannot append to port ledger {self.path}: {e}",
                details={
                    "operation": "append",
                    "path": str(self.path),
                    "service_name": service_name,
                    "port": port,
                },
            ) from e

        logger.debug(
            "Ledger entry appended",
            extra={"path": str(self.path), "service_name": service_name, "port": port},
        )
        return entry

    def compact(self, lock_timeout: float | None = None) -> int:
        """
        Rewrite the ledger keeping only the latest entry per service.

        Surviving entries keep the order in which their service first
        appeared. Malformed lines are dropped. The rewrite is atomic and
        runs under the ledger lock so it cannot interleave with a
        registration. This is a maintenance operation and is never run
        implicitly.

        Args:
            lock_timeout: Maximum wait for the ledger lock (None = blocking).

        Returns:
            Number of lines removed.

        Raises:
            RegistrationTimeout: If the lock cannot be acquired in time.
            StorageError: If the ledger cannot be read or rewritten.
        """
        with ledger_lock(self.lock_path, timeout=lock_timeout):
            if not self.path.exists():
                return 0

            total_lines = sum(1 for line in self._read_lines() if line.strip())
            latest: dict[str, int] = {}
            for entry in self.read_entries():
                latest[entry.service_name] = entry.port

            content = "".join(
                PortLedgerEntry(name, port).to_line() for name, port in latest.items()
            )
            self._replace_contents(content)

        removed = total_lines - len(latest)
        logger.info(
            "Ledger compacted",
            extra={"path": str(self.path), "kept": len(latest), "removed": removed},
        )
        return removed

    def _replace_contents(self, content: str) -> None:
        tmp_name: str | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", dir=str(self.path.parent)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            if self.path.exists():
                os.chmod(tmp_name, self.path.stat().st_mode & 0o777)
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise StorageError(
                f"Cannot rewrite port ledger {self.path}: {e}",
                details={"operation": "compact", "path": str(self.path)},
            ) from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
