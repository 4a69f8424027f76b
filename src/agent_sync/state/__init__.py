"""
agent-sync State Module

Contains the on-disk state of synced sessions:
- jsonl_reader: Resilient JSON Lines reader
- atomic_writer: Temp-file + rename writes
- DeltaStore: Per-session metric deltas
- PayloadLog: Conversation payload audit log
- SyncState: Processor cursors and their merge rules
- SessionStore: Session metadata persistence
- SessionLockManager: Cross-process session lock
- SessionPaths: Path resolution for session files
"""

from .atomic_writer import append_jsonl, write_json_atomic, write_jsonl_atomic
from .delta_store import DeltaStore, FileOperation, MetricDelta, SyncStatus, TokenCounts
from .jsonl_reader import JsonlStats, read_jsonl, stream_jsonl
from .lock_manager import LockInfo, SessionLockManager
from .paths import SessionPaths, get_home_dir
from .payload_log import ConversationPayloadRecord, PayloadLog, PayloadStatus
from .session_store import (
    ActivityStatus,
    Correlation,
    CorrelationStatus,
    SessionMetadata,
    SessionStore,
    derive_activity_status,
)
from .sync_state import (
    ConversationsSyncPatch,
    ConversationsSyncState,
    MetricsSyncPatch,
    MetricsSyncState,
    StatePatch,
    SyncState,
    merge_patches,
)

__all__ = [
    # Parsing / writing
    "JsonlStats",
    "stream_jsonl",
    "read_jsonl",
    "write_jsonl_atomic",
    "write_json_atomic",
    "append_jsonl",
    # Deltas
    "DeltaStore",
    "MetricDelta",
    "TokenCounts",
    "FileOperation",
    "SyncStatus",
    # Payload log
    "PayloadLog",
    "ConversationPayloadRecord",
    "PayloadStatus",
    # Cursors
    "SyncState",
    "MetricsSyncState",
    "ConversationsSyncState",
    "MetricsSyncPatch",
    "ConversationsSyncPatch",
    "StatePatch",
    "merge_patches",
    # Sessions
    "SessionMetadata",
    "SessionStore",
    "Correlation",
    "CorrelationStatus",
    "ActivityStatus",
    "derive_activity_status",
    # Locking / paths
    "SessionLockManager",
    "LockInfo",
    "SessionPaths",
    "get_home_dir",
]
