"""
Advisory file locking for the shared port ledger.

The lock lives in a sidecar file next to the ledger (``<ledger>.lock``) so it
survives ledger compaction, which replaces the ledger file itself.
"""

from __future__ import annotations

import fcntl
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from mcp_ports.errors import RegistrationTimeout, StorageError
from mcp_ports.logging import get_logger

logger = get_logger(__name__)

LOCK_POLL_INTERVAL_SECONDS = 0.05


def lock_path_for(ledger_path: Path | str) -> Path:
    """Return the sidecar lock file path for a ledger file."""
    ledger_path = Path(ledger_path)
    return ledger_path.with_name(ledger_path.name + ".lock")


@contextmanager
def ledger_lock(lock_path: Path | str, timeout: float | None = None) -> Iterator[None]:
    """Hold an exclusive advisory lock on the ledger.

    The lock is released on every exit path, including exceptions raised
    inside the ``with`` block.

    Args:
        lock_path: Lock file path (created if missing).
        timeout: Acquisition timeout in seconds (None = blocking).

    Yields:
        None when the lock is acquired.

    Raises:
        RegistrationTimeout: If the lock cannot be acquired within timeout.
        StorageError: If the lock file cannot be opened.
    """
    lock_path = Path(lock_path)

    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o644)
    except OSError as e:
        raise StorageError(
            f"Cannot open ledger lock file {lock_path}: {e}",
            details={"operation": "lock", "path": str(lock_path)},
        ) from e

    logger.debug("Acquiring ledger lock", extra={"lock_path": str(lock_path)})

    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise RegistrationTimeout(
                            f"Timed out after {timeout:.2f}s waiting for ledger "
                            f"lock {lock_path}",
                            details={
                                "operation": "lock",
                                "path": str(lock_path),
                                "timeout_seconds": timeout,
                            },
                        ) from None
                    time.sleep(LOCK_POLL_INTERVAL_SECONDS)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Ledger lock acquired", extra={"lock_path": str(lock_path)})
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Ledger lock released", extra={"lock_path": str(lock_path)})
        os.close(fd)
