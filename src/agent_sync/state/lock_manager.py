"""
Cross-process session lock.

A session is synced by at most one process at a time. The lock is a small
JSON file <sessions>/<session-id>.lock created with O_CREAT | O_EXCL. A lock
whose owner process is gone, or that is older than the TTL, is abandoned and
may be reclaimed. Reclaiming renames the file to a private tombstone first
and checks that the tombstone still holds the lock that was judged
abandoned, so two processes can never both reclaim the same lock.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from .atomic_writer import write_json_atomic
from .paths import SessionPaths

logger = logging.getLogger(__name__)

# Must outlast one worst-case send (4 attempts x 30 s plus 8 s of backoff).
# Holders also refresh the timestamp while they run.
DEFAULT_LOCK_TTL_SECONDS = 300.0


@dataclass
class LockInfo:
    """Owner of a session lock."""
    pid: int
    timestamp: int
    hostname: str
    agent: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "timestamp": self.timestamp,
            "hostname": self.hostname,
            "agent": self.agent,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LockInfo":
        return cls(
            pid=int(data["pid"]),
            timestamp=int(data["timestamp"]),
            hostname=str(data.get("hostname", "")),
            agent=str(data.get("agent", "")),
        )

    @classmethod
    def current(cls, agent: str = "") -> "LockInfo":
        return cls(
            pid=os.getpid(),
            timestamp=int(time.time() * 1000),
            hostname=socket.gethostname(),
            agent=agent,
        )


def is_process_alive(pid: int) -> bool:
    """Check whether a process with this PID exists on this machine."""
    if pid <= 0:
        return False
    if os.name == "nt":
        # No signal-0 probe on Windows; the TTL decides.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _is_own(info: LockInfo) -> bool:
    return info.pid == os.getpid() and info.hostname == socket.gethostname()


class SessionLockManager:
    """
    Acquires and releases per-session lock files.

    Example:
        locks = SessionLockManager(agent="claude")
        with locks.hold(session_id) as acquired:
            if acquired:
                ...
    """

    def __init__(
        self,
        paths: SessionPaths | None = None,
        ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
        agent: str = "",
    ):
        self.paths = paths or SessionPaths()
        self.ttl_seconds = ttl_seconds
        self.agent = agent

    def lock_path(self, session_id: str) -> Path:
        return self.paths.lock_file(session_id)

    def read_lock(self, session_id: str) -> LockInfo | None:
        """Return the current holder, or None if unlocked or unreadable."""
        raw = self._read_raw(self.lock_path(session_id))
        return self._parse(raw) if raw is not None else None

    def acquire(self, session_id: str) -> bool:
        """
        Try to take the session lock without waiting.

        Returns:
            True if this process now holds the lock, False if another live
            holder has it
        """
        path = self.lock_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        if self._try_create(path):
            return True

        raw = self._read_raw(path)
        if raw is None:
            # Holder released between our create and read.
            return self._try_create(path)

        info = self._parse(raw)
        if not self._is_abandoned(path, info):
            logger.debug(f"[lock] Session {session_id} is locked by pid {info.pid if info else '?'}")
            return False

        if not self._reclaim(path, raw):
            return False
        logger.info(f"[lock] Reclaimed abandoned lock for session {session_id}")
        return self._try_create(path)

    def release(self, session_id: str) -> bool:
        """Remove the lock if this process owns it."""
        path = self.lock_path(session_id)
        info = self.read_lock(session_id)
        if info is None:
            return False
        if not _is_own(info):
            logger.warning(f"[lock] Not releasing lock of session {session_id} held by pid {info.pid}")
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug(f"[lock] Released lock for session {session_id}")
        return True

    def refresh(self, session_id: str) -> bool:
        """
        Move the timestamp of a lock this process holds to now.

        Long runs call this periodically so the lock never ages past the TTL
        while its holder is still working.
        """
        info = self.read_lock(session_id)
        if info is None or not _is_own(info):
            return False
        write_json_atomic(self.lock_path(session_id), LockInfo.current(self.agent).to_dict())
        logger.debug(f"[lock] Refreshed lock for session {session_id}")
        return True

    @contextmanager
    def hold(self, session_id: str) -> Iterator[bool]:
        """Context manager yielding whether the lock was obtained."""
        acquired = self.acquire(session_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(session_id)

    def _try_create(self, path: Path) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        payload = json.dumps(LockInfo.current(self.agent).to_dict())
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        return True

    @staticmethod
    def _read_raw(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    @staticmethod
    def _parse(raw: str) -> LockInfo | None:
        try:
            return LockInfo.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            return None

    def _is_abandoned(self, path: Path, info: LockInfo | None) -> bool:
        now_ms = time.time() * 1000
        ttl_ms = self.ttl_seconds * 1000

        if info is None:
            # Empty or torn file: the writer may still be filling it in.
            try:
                age_ms = now_ms - path.stat().st_mtime * 1000
            except FileNotFoundError:
                return True
            return age_ms > ttl_ms

        if now_ms - info.timestamp > ttl_ms:
            return True
        if info.hostname == socket.gethostname() and not is_process_alive(info.pid):
            return True
        return False

    def _reclaim(self, path: Path, expected: str) -> bool:
        """Move an abandoned lock out of the way; False if someone else got there first."""
        tombstone = path.with_name(f"{path.name}.{os.getpid()}.stale")
        try:
            os.replace(path, tombstone)
        except FileNotFoundError:
            # Another process reclaimed (or the holder released) it.
            return True

        try:
            actual = tombstone.read_text(encoding="utf-8")
        except OSError:
            actual = None

        if actual != expected:
            # We moved a fresh lock taken after our check; put it back.
            try:
                os.link(tombstone, path)
            except FileExistsError:
                pass
            except OSError as e:
                logger.warning(f"[lock] Could not restore lock {path}: {e}")
            tombstone.unlink(missing_ok=True)
            return False

        tombstone.unlink(missing_ok=True)
        return True
