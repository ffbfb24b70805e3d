"""
Error types for the MCP port registry.

This module defines the RegistryError base class and subclasses for the
failure categories of ledger access, port allocation and registration.
Callers should catch RegistryError (or a subclass) at the startup boundary
and translate it into a non-zero process exit code.
"""

from __future__ import annotations

from typing import Any


class RegistryError(Exception):
    """
    Base exception class for port registry errors.

    Attributes:
        error_code: Internal error code string (e.g., "storage_error",
            "allocation_exhausted", "invalid_argument").
        message: Human-readable error message.
        details: Optional structured details (e.g., ledger path, port range).

    Example:
        >>> raise RegistryError(
        ...     error_code="storage_error",
        ...     message="Cannot read port ledger",
        ...     details={"path": "/srv/mcp/port_registry.txt"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a RegistryError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(RegistryError):
    """
    Error raised for invalid service names, ports or port ranges.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class FailedPreconditionError(RegistryError):
    """
    Error raised when an operation is not allowed in the current state,
    such as registering the same service twice.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class StorageError(RegistryError):
    """
    Error raised when the ledger file cannot be read or written.

    A missing ledger is not an error on read; every other I/O failure
    (permissions, disk full, invalid path) surfaces as StorageError because
    hiding it would hide real port conflicts.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a StorageError."""
        super().__init__(error_code="storage_error", message=message, details=details)


class AllocationExhausted(RegistryError):
    """
    Error raised when every probe of the port range hit an occupied port.

    Attributes:
        range_low: Inclusive lower bound of the probed range.
        range_high_exclusive: Exclusive upper bound of the probed range.
        attempts: Number of probes made before giving up.
    """

    def __init__(
        self,
        range_low: int,
        range_high_exclusive: int,
        attempts: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize an AllocationExhausted error."""
        self.range_low = range_low
        self.range_high_exclusive = range_high_exclusive
        self.attempts = attempts
        merged = {
            "range_low": range_low,
            "range_high_exclusive": range_high_exclusive,
            "attempts": attempts,
        }
        merged.update(details or {})
        super().__init__(
            error_code="allocation_exhausted",
            message=(
                f"Port allocation failed: no free port in "
                f"[{range_low}, {range_high_exclusive}) after {attempts} attempts; "
                "widen the range or compact stale ledger entries"
            ),
            details=merged,
        )


class RegistrationTimeout(RegistryError):
    """
    Error raised when registration does not finish within its time budget.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RegistrationTimeout."""
        super().__init__(
            error_code="deadline_exceeded", message=message, details=details
        )


class InternalError(RegistryError):
    """
    Error raised for unexpected internal errors, such as an invalid
    registration state transition.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)
