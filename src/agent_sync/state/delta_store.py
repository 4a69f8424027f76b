"""
Metric delta store.

Stores one JSON line per agent interaction in
<sessions>/<session-id>_metrics.jsonl. Adapters append pending deltas; the
metrics processor flips them to "synced" with a full atomic rewrite. Both
sides hold the delta file lock (FileLock) while touching the file.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from .atomic_writer import append_jsonl, write_jsonl_atomic
from .file_lock import FileLock
from .jsonl_reader import stream_jsonl
from .paths import SessionPaths

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Sync status of a metric delta."""
    PENDING = "pending"
    SYNCED = "synced"


@dataclass
class TokenCounts:
    """Token usage of one interaction."""
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "cacheRead": self.cache_read,
            "cacheWrite": self.cache_write,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TokenCounts":
        data = data or {}
        return cls(
            input=int(data.get("input", 0) or 0),
            output=int(data.get("output", 0) or 0),
            cache_read=int(data.get("cacheRead", 0) or 0),
            # Older writers call this field cacheCreation.
            cache_write=int(data.get("cacheWrite", data.get("cacheCreation", 0)) or 0),
        )


@dataclass
class FileOperation:
    """A file touched by a tool call."""
    type: str
    path: str | None = None
    lines_added: int = 0
    lines_removed: int = 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": self.type}
        if self.path is not None:
            result["path"] = self.path
        result["linesAdded"] = self.lines_added
        result["linesRemoved"] = self.lines_removed
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileOperation":
        return cls(
            type=str(data.get("type", "")),
            path=data.get("path"),
            lines_added=int(data.get("linesAdded", 0) or 0),
            lines_removed=int(data.get("linesRemoved", 0) or 0),
        )


@dataclass
class MetricDelta:
    """
    Incremental usage metrics for one agent interaction.

    Attributes:
        record_id: Stable unique id (the transcript message uuid)
        timestamp: Unix ms or ISO-8601 string
        git_branch: Branch at the time of the interaction
        tools: Tool name -> call count
        tool_status: Tool name -> {"success": n, "failure": n}
        sync_status: pending until the metrics processor has handled it
    """
    record_id: str
    timestamp: int | float | str
    session_id: str = ""
    agent_session_id: str = ""
    git_branch: str | None = None
    tokens: TokenCounts = field(default_factory=TokenCounts)
    tools: dict[str, int] = field(default_factory=dict)
    tool_status: dict[str, dict[str, int]] = field(default_factory=dict)
    file_operations: list[FileOperation] = field(default_factory=list)
    models: list[str] = field(default_factory=list)
    user_prompts: list[dict[str, Any]] = field(default_factory=list)
    api_error_message: str | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_attempts: int = 0
    synced_at: int | None = None

    @property
    def is_pending(self) -> bool:
        return self.sync_status == SyncStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        """Convert to the on-disk (camelCase) representation."""
        result: dict[str, Any] = {
            "recordId": self.record_id,
            "sessionId": self.session_id,
            "agentSessionId": self.agent_session_id,
            "timestamp": self.timestamp,
        }
        if self.git_branch is not None:
            result["gitBranch"] = self.git_branch
        result["tokens"] = self.tokens.to_dict()
        result["tools"] = dict(self.tools)
        result["toolStatus"] = {k: dict(v) for k, v in self.tool_status.items()}
        result["fileOperations"] = [op.to_dict() for op in self.file_operations]
        if self.models:
            result["models"] = list(self.models)
        if self.user_prompts:
            result["userPrompts"] = list(self.user_prompts)
        if self.api_error_message:
            result["apiErrorMessage"] = self.api_error_message
        result["syncStatus"] = self.sync_status.value
        result["syncAttempts"] = self.sync_attempts
        if self.synced_at is not None:
            result["syncedAt"] = self.synced_at
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetricDelta":
        """Create from the on-disk representation."""
        try:
            status = SyncStatus(data.get("syncStatus", "pending"))
        except ValueError:
            # "syncing"/"failed" from older writers are treated as not yet synced.
            status = SyncStatus.PENDING
        return cls(
            record_id=str(data["recordId"]),
            timestamp=data.get("timestamp", 0),
            session_id=data.get("sessionId", ""),
            agent_session_id=data.get("agentSessionId", ""),
            git_branch=data.get("gitBranch"),
            tokens=TokenCounts.from_dict(data.get("tokens")),
            tools={str(k): int(v or 0) for k, v in (data.get("tools") or {}).items()},
            tool_status={
                str(k): {
                    "success": int((v or {}).get("success", 0) or 0),
                    "failure": int((v or {}).get("failure", 0) or 0),
                }
                for k, v in (data.get("toolStatus") or {}).items()
            },
            file_operations=[FileOperation.from_dict(op) for op in data.get("fileOperations") or []],
            models=list(data.get("models") or []),
            user_prompts=list(data.get("userPrompts") or []),
            api_error_message=data.get("apiErrorMessage"),
            sync_status=status,
            sync_attempts=int(data.get("syncAttempts", 0) or 0),
            synced_at=data.get("syncedAt"),
        )


class DeltaStore:
    """Reads and rewrites the metric delta file of one session."""

    def __init__(self, session_id: str, paths: SessionPaths | None = None):
        self.session_id = session_id
        self.paths = paths or SessionPaths()
        self.file_path: Path = self.paths.metrics_file(session_id)

    def exists(self) -> bool:
        return self.file_path.exists()

    def append_delta(self, delta: MetricDelta) -> str:
        """
        Append a new pending delta (adapter write path).

        Returns:
            The delta's record id
        """
        record = replace(delta, sync_status=SyncStatus.PENDING, sync_attempts=0, synced_at=None)
        if not record.session_id:
            record.session_id = self.session_id
        with FileLock(self.paths.metrics_lock_file(self.session_id)):
            append_jsonl(self.file_path, record.to_dict())
        logger.debug(f"[DeltaStore] Appended delta {record.record_id}")
        return record.record_id

    def read_all(self) -> list[MetricDelta]:
        """Read every delta; malformed records are logged and skipped."""
        deltas = []
        for raw in stream_jsonl(self.file_path):
            if not isinstance(raw, dict) or "recordId" not in raw:
                logger.warning(f"[DeltaStore] Ignoring record without recordId in {self.file_path}")
                continue
            try:
                deltas.append(MetricDelta.from_dict(raw))
            except (TypeError, ValueError) as e:
                logger.warning(f"[DeltaStore] Ignoring malformed delta {raw.get('recordId')}: {e}")
        return deltas

    def read_pending(self) -> list[MetricDelta]:
        return [d for d in self.read_all() if d.is_pending]

    def write_all(self, deltas: Iterable[MetricDelta]) -> int:
        """Atomically replace the whole file."""
        return write_jsonl_atomic(self.file_path, (d.to_dict() for d in deltas))

    def mark_synced(self, record_ids: Iterable[str], synced_at: int | None = None) -> list[MetricDelta]:
        """
        Flip the given pending deltas to synced in one atomic rewrite.

        The re-read and the rewrite run under the delta file lock that
        append_delta also takes, so deltas appended while the caller was
        sending (or during the rewrite itself) are preserved and stay pending.

        Returns:
            The full, updated delta list
        """
        ids = set(record_ids)
        synced_at = synced_at if synced_at is not None else int(time.time() * 1000)
        updated = []
        with FileLock(self.paths.metrics_lock_file(self.session_id)):
            for delta in self.read_all():
                if delta.record_id in ids and delta.is_pending:
                    delta = replace(
                        delta,
                        sync_status=SyncStatus.SYNCED,
                        sync_attempts=delta.sync_attempts + 1,
                        synced_at=synced_at,
                    )
                updated.append(delta)
            self.write_all(updated)
        return updated

    def stats(self) -> dict[str, int]:
        deltas = self.read_all()
        pending = sum(1 for d in deltas if d.is_pending)
        return {"total": len(deltas), "pending": pending, "synced": len(deltas) - pending}
