"""
agent-sync - Session synchronization for AI coding-assistant telemetry

Reads the per-session artifacts an agent wrapper leaves on disk (metric
deltas, transcripts) and forwards them to a remote ingestion API at most
once, keeping per-session cursors so a crash or a concurrent run never
resends or loses progress.

Architecture:
    - State Layer: resilient JSONL reading, atomic writes, cursors, locks
    - Sync Layer: prioritized processor chain run by SessionSyncer
    - API Layer: RemoteSender with bounded retry

Example usage:
    from agent_sync import SessionSyncer, create_default_registry
    from agent_sync.settings import SettingsStorage

    storage = SettingsStorage()
    settings = storage.load()
    syncer = SessionSyncer(create_default_registry())
    result = await syncer.sync(session_id, storage.build_context(settings))
"""

__version__ = "1.0.0"

from .api import RemoteSender, SendResult, SyncApiError
from .state import (
    DeltaStore,
    MetricDelta,
    PayloadLog,
    SessionLockManager,
    SessionMetadata,
    SessionPaths,
    SessionStore,
    read_jsonl,
    stream_jsonl,
)
from .sync import (
    AgentRegistry,
    ConversationsProcessor,
    MetricsProcessor,
    ProcessingContext,
    ProcessingResult,
    SessionProcessor,
    SessionSyncer,
    SessionSyncResult,
    create_default_registry,
)

__all__ = [
    "__version__",
    # State
    "stream_jsonl",
    "read_jsonl",
    "DeltaStore",
    "MetricDelta",
    "PayloadLog",
    "SessionMetadata",
    "SessionStore",
    "SessionLockManager",
    "SessionPaths",
    # Sync
    "SessionProcessor",
    "ProcessingContext",
    "ProcessingResult",
    "MetricsProcessor",
    "ConversationsProcessor",
    "AgentRegistry",
    "create_default_registry",
    "SessionSyncer",
    "SessionSyncResult",
    # API
    "RemoteSender",
    "SendResult",
    "SyncApiError",
]
