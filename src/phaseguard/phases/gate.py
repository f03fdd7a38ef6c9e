"""Shared mutual-exclusion gate for every state-mutating engine operation.

Snapshot capture, pruning, validation flags, phase transitions and rollback
execution all write to the same persisted state, so they share one gate. A
caller that finds the gate held is rejected immediately with :class:`Busy`;
nothing is queued. The owning thread may re-enter (an advance holds the gate
across its checks, the capture and the commit).

Exclusion has two layers. Threads of one process meet on a re-entrant lock.
Processes sharing a state directory (CLI invocations, the HTTP server) meet
on an ``flock`` over ``<state_dir>/phaseguard.lock``, taken when the
outermost hold starts and released when it ends. The kernel drops the file
lock when its holder dies, so a crashed process never leaves the state
directory locked.
"""

from __future__ import annotations

import fcntl
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from phaseguard.core.errors import Busy
from phaseguard.core.settings import get_logger

logger = get_logger(__name__)

LOCK_FILE = "phaseguard.lock"


class OperationGate:
    """Non-blocking, re-entrant exclusivity guard.

    Parameters
    ----------
    lock_path:
        File used to exclude other processes. ``None`` keeps the gate
        process-local.
    """

    def __init__(self, lock_path: Path | None = None) -> None:
        self.lock_path = lock_path
        self._lock = threading.RLock()
        self._holders: list[str] = []
        self._fd: int | None = None

    @contextmanager
    def hold(self, operation: str) -> Iterator[None]:
        """Hold the gate for ``operation`` or raise :class:`Busy`."""
        if not self._lock.acquire(blocking=False):
            active = self._holders[0] if self._holders else "another operation"
            raise Busy(f"cannot start {operation}: {active} is in progress")
        if not self._holders:
            try:
                self._lock_file(operation)
            except BaseException:
                self._lock.release()
                raise
        self._holders.append(operation)
        try:
            yield
        finally:
            self._holders.pop()
            if not self._holders:
                self._unlock_file()
            self._lock.release()

    def _lock_file(self, operation: str) -> None:
        if self.lock_path is None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise Busy(
                f"cannot start {operation}: another process holds {self.lock_path}"
            ) from None
        except OSError:
            os.close(fd)
            raise
        # Holder note for operators; the lock itself is the flock.
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()} {operation}\n".encode())
        self._fd = fd

    def _unlock_file(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as exc:
            logger.warning("Failed to release %s: %s", self.lock_path, exc)
        finally:
            os.close(fd)

    @property
    def active(self) -> str | None:
        """Name of the outermost operation holding the gate in this process."""
        holders = self._holders
        return holders[0] if holders else None

    def is_rollback_in_progress(self) -> bool:
        return self.active in ("rollback", "rollback-recovery")


__all__ = ["OperationGate", "LOCK_FILE"]
