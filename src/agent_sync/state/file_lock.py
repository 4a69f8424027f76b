"""
Short-lived exclusive lock around read-modify-write of a shared file.

The session lock serializes sync runs, but adapters keep appending deltas
while a run holds it. Appends and the metrics rewrite therefore also take
this OS-level lock on a sidecar file, so an append can never land on the
inode a rewrite is about to replace.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

# Platform-specific locking imports
try:
    import fcntl
    HAS_FCNTL = True
except ImportError:
    HAS_FCNTL = False

try:
    import msvcrt
    HAS_MSVCRT = True
except ImportError:
    HAS_MSVCRT = False

DEFAULT_FILE_LOCK_TIMEOUT = 10.0


class FileLock:
    """
    Blocking exclusive lock on a sidecar file.

    The sidecar is never deleted: removing it would let a waiter lock an
    unlinked inode while a newcomer locks a fresh one.

    Example:
        with FileLock(paths.metrics_lock_file(session_id)):
            ...
    """

    def __init__(self, lock_file: Path, timeout: float = DEFAULT_FILE_LOCK_TIMEOUT):
        self.lock_file = Path(lock_file)
        self.timeout = timeout
        self._fd: IO[str] | None = None

    def acquire(self) -> bool:
        """
        Wait for the lock.

        Returns:
            True if acquired, False on timeout
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        wait = 0.01

        while True:
            fd = open(self.lock_file, "a+", encoding="utf-8")
            try:
                if HAS_FCNTL:
                    fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                elif HAS_MSVCRT:
                    fd.seek(0)
                    msvcrt.locking(fd.fileno(), msvcrt.LK_NBLCK, 1)
                self._fd = fd
                return True
            except OSError:
                fd.close()
                if time.monotonic() >= deadline:
                    return False
                time.sleep(wait)
                wait = min(wait * 2, 0.5)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            if HAS_FCNTL:
                fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
            elif HAS_MSVCRT:
                self._fd.seek(0)
                msvcrt.locking(self._fd.fileno(), msvcrt.LK_UNLCK, 1)
        except OSError as e:
            logger.warning(f"[FileLock] Could not unlock {self.lock_file}: {e}")
        finally:
            self._fd.close()
            self._fd = None

    def __enter__(self) -> "FileLock":
        if not self.acquire():
            raise TimeoutError(f"Could not acquire lock on {self.lock_file} within {self.timeout}s")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
