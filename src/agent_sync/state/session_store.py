"""
Session metadata persistence.

One pretty-printed JSON document per session: <sessions>/<session-id>.json.
Only the orchestrator writes it, always through the atomic writer.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .atomic_writer import write_json_atomic
from .paths import SessionPaths
from .sync_state import SyncState

logger = logging.getLogger(__name__)

ACTIVE_WINDOW_MS = 30 * 60 * 1000
ENDED_AFTER_MS = 24 * 60 * 60 * 1000


class CorrelationStatus(Enum):
    """Whether the wrapper session was matched to an agent transcript."""
    PENDING = "pending"
    MATCHED = "matched"
    FAILED = "failed"


class ActivityStatus(Enum):
    """Activity status derived from inactivity."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    ENDED = "ended"
    FINAL = "final"


@dataclass
class Correlation:
    status: CorrelationStatus = CorrelationStatus.PENDING
    agent_session_id: str | None = None
    agent_session_file: str | None = None
    retry_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status.value}
        if self.agent_session_id:
            result["agentSessionId"] = self.agent_session_id
        if self.agent_session_file:
            result["agentSessionFile"] = self.agent_session_file
        result["retryCount"] = self.retry_count
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Correlation":
        data = data or {}
        try:
            status = CorrelationStatus(data.get("status", "pending"))
        except ValueError:
            status = CorrelationStatus.PENDING
        return cls(
            status=status,
            agent_session_id=data.get("agentSessionId"),
            agent_session_file=data.get("agentSessionFile"),
            retry_count=int(data.get("retryCount", 0) or 0),
        )


@dataclass
class SessionMetadata:
    """
    Metadata of one wrapped agent session.

    Attributes:
        session_id: Our session id (UUID)
        agent_name: Agent key in the registry ("claude", ...)
        provider: Auth provider the session ran against
        start_time: Unix ms
        end_time: Unix ms, set when the session ended explicitly
        working_directory: CWD the agent was launched in
        git_branch: Branch at session start
        correlation: Link to the agent's own transcript
        sync: Per-processor cursors
    """
    session_id: str
    agent_name: str
    provider: str = ""
    start_time: int = 0
    end_time: int | None = None
    working_directory: str = ""
    git_branch: str | None = None
    project: str | None = None
    correlation: Correlation = field(default_factory=Correlation)
    sync: SyncState = field(default_factory=SyncState)

    @property
    def is_matched(self) -> bool:
        return self.correlation.status == CorrelationStatus.MATCHED

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "sessionId": self.session_id,
            "agentName": self.agent_name,
            "provider": self.provider,
            "startTime": self.start_time,
        }
        if self.end_time is not None:
            result["endTime"] = self.end_time
        result["workingDirectory"] = self.working_directory
        if self.git_branch:
            result["gitBranch"] = self.git_branch
        if self.project:
            result["project"] = self.project
        result["correlation"] = self.correlation.to_dict()
        result["sync"] = self.sync.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionMetadata":
        return cls(
            session_id=data["sessionId"],
            agent_name=data.get("agentName", ""),
            provider=data.get("provider", ""),
            start_time=int(data.get("startTime", 0) or 0),
            end_time=data.get("endTime"),
            working_directory=data.get("workingDirectory", ""),
            git_branch=data.get("gitBranch"),
            project=data.get("project"),
            correlation=Correlation.from_dict(data.get("correlation")),
            sync=SyncState.from_dict(data.get("sync")),
        )


def derive_activity_status(
    session: SessionMetadata,
    last_activity: int | None = None,
    now: int | None = None,
) -> ActivityStatus:
    """
    Derive the activity status of a session.

    Args:
        session: Session metadata
        last_activity: Unix ms of the last observed update (defaults to start/sync times)
        now: Unix ms, defaults to the current time
    """
    if session.sync.metrics.final_sent:
        return ActivityStatus.FINAL
    if session.end_time is not None:
        return ActivityStatus.ENDED

    now = now if now is not None else int(time.time() * 1000)
    candidates = [
        session.start_time,
        last_activity or 0,
        session.sync.metrics.last_sync_at or 0,
        session.sync.conversations.last_sync_at or 0,
    ]
    idle = now - max(candidates)
    if idle < ACTIVE_WINDOW_MS:
        return ActivityStatus.ACTIVE
    if idle <= ENDED_AFTER_MS:
        return ActivityStatus.INACTIVE
    return ActivityStatus.ENDED


class SessionStore:
    """Loads and saves session metadata files."""

    def __init__(self, paths: SessionPaths | None = None):
        self.paths = paths or SessionPaths()

    def load(self, session_id: str) -> SessionMetadata | None:
        """Load a session; a missing or unreadable file returns None."""
        path = self.paths.session_file(session_id)
        if not path.exists():
            logger.debug(f"[SessionStore] Session file not found: {session_id}")
            return None
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return SessionMetadata.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"[SessionStore] Failed to load session {session_id}: {e}")
            return None

    def save(self, session: SessionMetadata) -> None:
        """Atomically persist a session. I/O errors propagate."""
        write_json_atomic(self.paths.session_file(session.session_id), session.to_dict())
        logger.debug(f"[SessionStore] Saved session: {session.session_id}")

    def list_sessions(self) -> list[SessionMetadata]:
        sessions = []
        for session_id in self.paths.list_session_ids():
            session = self.load(session_id)
            if session is not None:
                sessions.append(session)
        return sessions

    def last_activity(self, session_id: str) -> int | None:
        """Unix ms of the most recent write to any of the session's files."""
        mtimes = []
        for path in (
            self.paths.session_file(session_id),
            self.paths.metrics_file(session_id),
            self.paths.conversation_file(session_id),
        ):
            try:
                mtimes.append(path.stat().st_mtime)
            except OSError:
                continue
        return int(max(mtimes) * 1000) if mtimes else None

    def activity_status(self, session: SessionMetadata, now: int | None = None) -> ActivityStatus:
        return derive_activity_status(session, self.last_activity(session.session_id), now=now)
