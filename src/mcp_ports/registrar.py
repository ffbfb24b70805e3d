"""
Service registration: claim a port for a named service.

Registration runs once per server process, before the server opens its
network listener:

- Explicit port: append ``name:port`` without checking occupancy and
  return the port unchanged.
- Otherwise: read the occupied set, allocate a free port, append the claim.

Reading, allocating and appending are a check-then-act sequence. Two
processes starting together could both see the same port as free, so the
sequence runs under an exclusive advisory lock on the ledger. The lock can
be disabled, which restores the unguarded behaviour.

Per-service state transitions:
- unregistered → registered (explicit port)
- unregistered → allocating → registered
- unregistered → allocating → failed
- unregistered → failed (explicit append failed)

``failed`` and ``registered`` are terminal for a registrar instance.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Iterator
from enum import Enum
from typing import TYPE_CHECKING

from mcp_ports.allocator import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RANGE_HIGH,
    DEFAULT_RANGE_LOW,
    RandomSource,
    allocate,
    validate_range,
)
from mcp_ports.errors import (
    FailedPreconditionError,
    InternalError,
    RegistrationTimeout,
    RegistryError,
)
from mcp_ports.ledger import PortLedger, validate_port, validate_service_name
from mcp_ports.locking import ledger_lock
from mcp_ports.logging import get_logger

if TYPE_CHECKING:
    from mcp_ports.config import AppConfig

logger = get_logger(__name__)


class RegistrationState(str, Enum):
    """Registration lifecycle of one service."""

    UNREGISTERED = "unregistered"
    ALLOCATING = "allocating"
    REGISTERED = "registered"
    FAILED = "failed"


_VALID_TRANSITIONS: dict[RegistrationState, set[RegistrationState]] = {
    RegistrationState.UNREGISTERED: {
        RegistrationState.ALLOCATING,
        RegistrationState.REGISTERED,
        RegistrationState.FAILED,
    },
    RegistrationState.ALLOCATING: {
        RegistrationState.REGISTERED,
        RegistrationState.FAILED,
    },
    RegistrationState.REGISTERED: set(),
    RegistrationState.FAILED: set(),
}


class ServiceRegistrar:
    """
    Claims ports in a shared ledger on behalf of named services.

    Example:
        >>> registrar = ServiceRegistrar(PortLedger("/srv/mcp/port_registry.txt"))
        >>> port = registrar.register("camera")
        >>> registrar.state("camera")
        <RegistrationState.REGISTERED: 'registered'>

    Attributes:
        ledger: The shared port ledger.
        range_low: Default inclusive lower bound of the allocation range.
        range_high_exclusive: Default exclusive upper bound.
        max_attempts: Random probes per allocation.
        lock_enabled: Whether the critical section is guarded by a file lock.
        timeout: Budget in seconds for one registration (None = unbounded).
    """

    def __init__(
        self,
        ledger: PortLedger,
        range_low: int = DEFAULT_RANGE_LOW,
        range_high_exclusive: int = DEFAULT_RANGE_HIGH,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        rng: RandomSource | None = None,
        lock_enabled: bool = True,
        timeout: float | None = None,
    ) -> None:
        validate_range(range_low, range_high_exclusive)
        self.ledger = ledger
        self.range_low = range_low
        self.range_high_exclusive = range_high_exclusive
        self.max_attempts = max_attempts
        self.lock_enabled = lock_enabled
        self.timeout = timeout
        self._rng = rng
        self._states: dict[str, RegistrationState] = {}

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        ledger: PortLedger | None = None,
        rng: RandomSource | None = None,
    ) -> ServiceRegistrar:
        """Build a registrar from application configuration."""
        return cls(
            ledger=ledger if ledger is not None else PortLedger(config.ledger.path),
            range_low=config.allocation.range_low,
            range_high_exclusive=config.allocation.range_high,
            max_attempts=config.allocation.max_attempts,
            rng=rng,
            lock_enabled=config.ledger.lock_enabled,
            timeout=config.registration.timeout_seconds,
        )

    def state(self, service_name: str) -> RegistrationState:
        """Return the registration state of a service on this registrar."""
        return self._states.get(service_name, RegistrationState.UNREGISTERED)

    def _transition(self, service_name: str, new_state: RegistrationState) -> None:
        current = self.state(service_name)
        if new_state not in _VALID_TRANSITIONS[current]:
            raise InternalError(
                f"Invalid registration state transition: {current.value} -> {new_state.value}",
                details={"service_name": service_name},
            )
        self._states[service_name] = new_state

    def _remaining(self, deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return deadline - time.monotonic()

    def _check_deadline(self, deadline: float | None, service_name: str) -> None:
        remaining = self._remaining(deadline)
        if remaining is not None and remaining <= 0:
            raise RegistrationTimeout(
                f"Registration of {service_name!r} exceeded {self.timeout}s",
                details={
                    "service_name": service_name,
                    "path": str(self.ledger.path),
                    "timeout_seconds": self.timeout,
                },
            )

    @contextlib.contextmanager
    def _critical_section(self, deadline: float | None) -> Iterator[None]:
        if not self.lock_enabled:
            yield
            return

        remaining = self._remaining(deadline)
        lock_timeout = max(remaining, 0.0) if remaining is not None else None
        with ledger_lock(self.ledger.lock_path, timeout=lock_timeout):
            yield

    def register(
        self,
        service_name: str,
        explicit_port: int | None = None,
        range_low: int | None = None,
        range_high_exclusive: int | None = None,
    ) -> int:
        """
        Claim a port for a service and record it in the ledger.

        Args:
            service_name: Name written to the ledger.
            explicit_port: Operator-supplied port. Used as-is, with no
                collision check.
            range_low: Inclusive lower bound (defaults to the registrar's).
            range_high_exclusive: Exclusive upper bound (defaults to the
                registrar's).

        Returns:
            The registered port.

        Raises:
            InvalidArgumentError: For an unusable name, port or range.
            FailedPreconditionError: If the service was already handled by
                this registrar.
            AllocationExhausted: If no free port was found.
            StorageError: If the ledger cannot be read or written.
            RegistrationTimeout: If the time budget was exceeded.
        """
        return self._register(
            service_name,
            explicit_port,
            range_low,
            range_high_exclusive,
            self._new_deadline(),
        )

    def _new_deadline(self) -> float | None:
        if self.timeout is None:
            return None
        return time.monotonic() + self.timeout

    def _register(
        self,
        service_name: str,
        explicit_port: int | None,
        range_low: int | None,
        range_high_exclusive: int | None,
        deadline: float | None,
    ) -> int:
        validate_service_name(service_name)
        low = self.range_low if range_low is None else range_low
        high = (
            self.range_high_exclusive
            if range_high_exclusive is None
            else range_high_exclusive
        )
        if explicit_port is not None:
            validate_port(explicit_port)
        else:
            validate_range(low, high)

        current = self.state(service_name)
        if current is not RegistrationState.UNREGISTERED:
            raise FailedPreconditionError(
                f"Service {service_name!r} is already {current.value}",
                details={"service_name": service_name, "state": current.value},
            )

        try:
            if explicit_port is not None:
                port = self._register_explicit(service_name, explicit_port, deadline)
            else:
                self._transition(service_name, RegistrationState.ALLOCATING)
                port = self._register_allocated(service_name, low, high, deadline)
        except RegistryError as e:
            self._transition(service_name, RegistrationState.FAILED)
            logger.error(
                "Service registration failed",
                extra={
                    "service_name": service_name,
                    "path": str(self.ledger.path),
                    "error_code": e.error_code,
                    "error": e.message,
                },
            )
            raise

        self._transition(service_name, RegistrationState.REGISTERED)
        logger.info(
            "Service registered",
            extra={
                "service_name": service_name,
                "port": port,
                "explicit": explicit_port is not None,
                "path": str(self.ledger.path),
            },
        )
        return port

    def _register_explicit(
        self, service_name: str, port: int, deadline: float | None
    ) -> int:
        with self._critical_section(deadline):
            self._check_deadline(deadline, service_name)
            self.ledger.append_entry(service_name, port)
        return port

    def _register_allocated(
        self,
        service_name: str,
        range_low: int,
        range_high_exclusive: int,
        deadline: float | None,
    ) -> int:
        with self._critical_section(deadline):
            occupied = self.ledger.read_occupied_ports()
            port = allocate(
                occupied,
                range_low,
                range_high_exclusive,
                max_attempts=self.max_attempts,
                rng=self._rng,
            )
            self._check_deadline(deadline, service_name)
            self.ledger.append_entry(service_name, port)
        return port

    async def register_async(
        self,
        service_name: str,
        explicit_port: int | None = None,
        range_low: int | None = None,
        range_high_exclusive: int | None = None,
    ) -> int:
        """
        Run register() in a worker thread, bounded by the registrar timeout.

        The worker checks the same deadline before appending, so a worker
        that outlives the wait never records a claim afterwards. An append
        that already started when the wait expired cannot be cancelled.

        Raises:
            RegistrationTimeout: If the worker does not finish in time.
        """
        call = asyncio.to_thread(
            self._register,
            service_name,
            explicit_port,
            range_low,
            range_high_exclusive,
            self._new_deadline(),
        )
        if self.timeout is None:
            return await call

        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except TimeoutError as exc:
            raise RegistrationTimeout(
                f"Registration of {service_name!r} exceeded {self.timeout}s",
                details={
                    "service_name": service_name,
                    "path": str(self.ledger.path),
                    "timeout_seconds": self.timeout,
                },
            ) from exc
