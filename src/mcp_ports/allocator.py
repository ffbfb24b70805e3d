"""
Randomized port allocation.

Candidates are drawn uniformly from the configured range instead of scanned
sequentially, so servers starting at the same moment do not all converge on
the lowest free port. The result is free only as observed at call time;
there is no reservation step.
"""

from __future__ import annotations

import random
from collections.abc import Collection
from typing import Protocol

from mcp_ports.errors import AllocationExhausted, InvalidArgumentError
from mcp_ports.logging import get_logger

logger = get_logger(__name__)

DEFAULT_RANGE_LOW = 8000
DEFAULT_RANGE_HIGH = 9000
DEFAULT_MAX_ATTEMPTS = 100


class RandomSource(Protocol):
    """Anything with ``randrange``, e.g. ``random.Random``."""

    def randrange(self, start: int, stop: int) -> int: ...


def validate_range(range_low: int, range_high_exclusive: int) -> None:
    """
    Check that ``[range_low, range_high_exclusive)`` is a usable port range.

    Raises:
        InvalidArgumentError: If the range is empty or outside [1, 65536).
    """
    if range_low >= range_high_exclusive:
        raise InvalidArgumentError(
            f"Invalid port range [{range_low}, {range_high_exclusive}): "
            "lower bound must be below the exclusive upper bound",
            details={"range_low": range_low, "range_high_exclusive": range_high_exclusive},
        )
    if range_low < 1 or range_high_exclusive > 65536:
        raise InvalidArgumentError(
            f"Invalid port range [{range_low}, {range_high_exclusive}): "
            "ports must lie within [1, 65535]",
            details={"range_low": range_low, "range_high_exclusive": range_high_exclusive},
        )


def allocate(
    occupied: Collection[int],
    range_low: int = DEFAULT_RANGE_LOW,
    range_high_exclusive: int = DEFAULT_RANGE_HIGH,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    rng: RandomSource | None = None,
) -> int:
    """
    Pick a port from the range that is not in ``occupied``.

    Args:
        occupied: Ports already claimed.
        range_low: Inclusive lower bound.
        range_high_exclusive: Exclusive upper bound.
        max_attempts: Number of random draws before giving up.
        rng: Random source. Defaults to ``random.SystemRandom``.

    Returns:
        The first drawn port not in ``occupied``.

    Raises:
        InvalidArgumentError: If the range is empty or max_attempts < 1.
        AllocationExhausted: If all ``max_attempts`` draws were occupied.
    """
    validate_range(range_low, range_high_exclusive)
    if max_attempts < 1:
        raise InvalidArgumentError(
            "max_attempts must be at least 1",
            details={"max_attempts": max_attempts},
        )

    source = rng if rng is not None else random.SystemRandom()

    for attempt in range(1, max_attempts + 1):
        candidate = source.randrange(range_low, range_high_exclusive)
        if candidate not in occupied:
            logger.debug(
                "Port allocated",
                extra={"port": candidate, "attempt": attempt},
            )
            return candidate

    logger.error(
        "Port range exhausted",
        extra={
            "range_low": range_low,
            "range_high_exclusive": range_high_exclusive,
            "attempts": max_attempts,
            "occupied_count": len(occupied),
        },
    )
    raise AllocationExhausted(range_low, range_high_exclusive, max_attempts)
