"""
Path helpers for agent-sync runtime files.

All per-session state lives in one flat directory:

    ~/.agent-sync/sessions/
        <session-id>.json               session metadata
        <session-id>_metrics.jsonl      metric deltas
        <session-id>_conversation.jsonl conversation payload log
        <session-id>.lock               sync lock
        <session-id>_metrics.lock       delta file write lock

The base directory can be moved with the AGENT_SYNC_HOME environment
variable (useful for tests and for running several installs side by side).
"""

from __future__ import annotations

import os
from pathlib import Path

SESSIONS_DIR = "sessions"
METRICS_SUFFIX = "_metrics.jsonl"
CONVERSATION_SUFFIX = "_conversation.jsonl"
LOCK_SUFFIX = ".lock"
METRICS_LOCK_SUFFIX = "_metrics.lock"


def get_home_dir() -> Path:
    """Return the agent-sync home directory (usually ~/.agent-sync)."""
    override = os.environ.get("AGENT_SYNC_HOME")
    if override:
        return Path(override).expanduser().resolve()
    return Path.home() / ".agent-sync"


class SessionPaths:
    """Resolves the on-disk files that belong to a session."""

    def __init__(self, base_dir: Path | None = None):
        self.base_dir = Path(base_dir) if base_dir else get_home_dir()

    @property
    def sessions_dir(self) -> Path:
        return self.base_dir / SESSIONS_DIR

    def ensure_dirs(self) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def session_file(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def metrics_file(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}{METRICS_SUFFIX}"

    def conversation_file(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}{CONVERSATION_SUFFIX}"

    def lock_file(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}{LOCK_SUFFIX}"

    def metrics_lock_file(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}{METRICS_LOCK_SUFFIX}"

    def list_session_ids(self) -> list[str]:
        """Return ids of all sessions that have a metadata file."""
        if not self.sessions_dir.exists():
            return []
        try:
            return sorted(p.stem for p in self.sessions_dir.glob("*.json") if p.is_file())
        except OSError:
            return []
