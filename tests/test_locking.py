"""
Tests for the advisory ledger lock.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from mcp_ports.errors import RegistrationTimeout, StorageError
from mcp_ports.locking import ledger_lock, lock_path_for


class TestLockPathFor:
    """Tests for lock_path_for()."""

    def test_sidecar_name(self, tmp_path: Path) -> None:
        """Test the lock file sits next to the ledger."""
        assert lock_path_for(tmp_path / "ports.txt") == tmp_path / "ports.txt.lock"


class TestLedgerLock:
    """Tests for ledger_lock()."""

    def test_creates_lock_file(self, tmp_path: Path) -> None:
        """Test the lock file and its directory are created."""
        lock_path = tmp_path / "nested" / "ports.txt.lock"

        with ledger_lock(lock_path):
            assert lock_path.exists()

    def test_reacquire_after_release(self, tmp_path: Path) -> None:
        """Test the lock is released when the block exits."""
        lock_path = tmp_path / "ports.txt.lock"

        with ledger_lock(lock_path, timeout=0.5):
            pass
        with ledger_lock(lock_path, timeout=0.5):
            pass

    def test_released_on_exception(self, tmp_path: Path) -> None:
        """Test the lock is released when the block raises."""
        lock_path = tmp_path / "ports.txt.lock"

        with pytest.raises(RuntimeError), ledger_lock(lock_path, timeout=0.5):
            raise RuntimeError("boom")

        with ledger_lock(lock_path, timeout=0.5):
            pass

    def test_timeout_while_held(self, tmp_path: Path) -> None:
        """Test a second holder times out while the lock is taken."""
        lock_path = tmp_path / "ports.txt.lock"

        with ledger_lock(lock_path):
            start = time.monotonic()
            with pytest.raises(RegistrationTimeout) as exc_info:
                with ledger_lock(lock_path, timeout=0.2):
                    pass
            elapsed = time.monotonic() - start

        assert elapsed >= 0.2
        assert exc_info.value.details["operation"] == "lock"

    def test_excludes_other_threads(self, tmp_path: Path) -> None:
        """Test critical sections never overlap."""
        lock_path = tmp_path / "ports.txt.lock"
        inside = 0
        overlaps = 0
        guard = threading.Lock()

        def worker() -> None:
            nonlocal inside, overlaps
            for _ in range(5):
                with ledger_lock(lock_path, timeout=5):
                    with guard:
                        inside += 1
                        if inside > 1:
                            overlaps += 1
                    time.sleep(0.005)
                    with guard:
                        inside -= 1

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == 0

    def test_unopenable_lock_raises_storage_error(self, tmp_path: Path) -> None:
        """Test failing to create the lock file surfaces StorageError."""
        blocker = tmp_path / "file"
        blocker.write_text("")

        with pytest.raises(StorageError), ledger_lock(blocker / "ports.txt.lock"):
            pass
