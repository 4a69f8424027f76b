"""
Per-session sync cursors and their merge rules.

Processors never write session metadata. They return a StatePatch and the
orchestrator folds every patch of a run into the stored state in one pass:

  - counters add
  - cursors (timestamps, history index) take the max
  - record-id sets union

so replaying an old or duplicated patch can never move a cursor backwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable


@dataclass
class MetricsSyncState:
    """Metrics processor cursor."""
    last_processed_timestamp: int = 0
    processed_record_ids: list[str] = field(default_factory=list)
    total_deltas: int = 0
    total_synced: int = 0
    total_failed: int = 0
    last_sync_at: int | None = None
    last_sync_error: str | None = None
    final_sent: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "lastProcessedTimestamp": self.last_processed_timestamp,
            "processedRecordIds": list(self.processed_record_ids),
            "totalDeltas": self.total_deltas,
            "totalSynced": self.total_synced,
            "totalFailed": self.total_failed,
        }
        if self.last_sync_at is not None:
            result["lastSyncAt"] = self.last_sync_at
        if self.last_sync_error:
            result["lastSyncError"] = self.last_sync_error
        if self.final_sent:
            result["finalSent"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MetricsSyncState":
        data = data or {}
        return cls(
            last_processed_timestamp=int(data.get("lastProcessedTimestamp", 0) or 0),
            processed_record_ids=[str(r) for r in data.get("processedRecordIds") or []],
            total_deltas=int(data.get("totalDeltas", 0) or 0),
            total_synced=int(data.get("totalSynced", 0) or 0),
            total_failed=int(data.get("totalFailed", 0) or 0),
            last_sync_at=data.get("lastSyncAt"),
            last_sync_error=data.get("lastSyncError"),
            final_sent=bool(data.get("finalSent", False)),
        )


@dataclass
class ConversationsSyncState:
    """Conversations processor cursor. A history index of -1 means nothing was sent yet."""
    conversation_id: str | None = None
    last_synced_message_uuid: str | None = None
    last_synced_history_index: int = -1
    last_sync_at: int | None = None
    total_messages_synced: int = 0
    total_sync_attempts: int = 0
    last_sync_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.conversation_id:
            result["conversationId"] = self.conversation_id
        if self.last_synced_message_uuid:
            result["lastSyncedMessageUuid"] = self.last_synced_message_uuid
        result["lastSyncedHistoryIndex"] = self.last_synced_history_index
        if self.last_sync_at is not None:
            result["lastSyncAt"] = self.last_sync_at
        result["totalMessagesSynced"] = self.total_messages_synced
        result["totalSyncAttempts"] = self.total_sync_attempts
        if self.last_sync_error:
            result["lastSyncError"] = self.last_sync_error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ConversationsSyncState":
        data = data or {}
        index = data.get("lastSyncedHistoryIndex")
        return cls(
            conversation_id=data.get("conversationId"),
            last_synced_message_uuid=data.get("lastSyncedMessageUuid"),
            last_synced_history_index=-1 if index is None else int(index),
            last_sync_at=data.get("lastSyncAt"),
            total_messages_synced=int(data.get("totalMessagesSynced", 0) or 0),
            total_sync_attempts=int(data.get("totalSyncAttempts", 0) or 0),
            last_sync_error=data.get("lastSyncError"),
        )


@dataclass
class SyncState:
    """The `sync` section of session metadata."""
    metrics: MetricsSyncState = field(default_factory=MetricsSyncState)
    conversations: ConversationsSyncState = field(default_factory=ConversationsSyncState)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metrics": self.metrics.to_dict(),
            "conversations": self.conversations.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncState":
        data = data or {}
        return cls(
            metrics=MetricsSyncState.from_dict(data.get("metrics")),
            conversations=ConversationsSyncState.from_dict(data.get("conversations")),
        )


@dataclass
class MetricsSyncPatch:
    """
    Changes produced by one metrics run.

    Counter fields are increments, not absolute values.
    """
    processed_record_ids: list[str] = field(default_factory=list)
    last_processed_timestamp: int | None = None
    deltas: int = 0
    synced: int = 0
    failed: int = 0
    last_sync_at: int | None = None
    last_sync_error: str | None = None
    clear_error: bool = False
    final_sent: bool = False


@dataclass
class ConversationsSyncPatch:
    """
    Changes produced by one conversations run.

    `messages_synced` and `sync_attempts` are increments.
    """
    conversation_id: str | None = None
    last_synced_message_uuid: str | None = None
    last_synced_history_index: int | None = None
    last_sync_at: int | None = None
    messages_synced: int = 0
    sync_attempts: int = 0
    last_sync_error: str | None = None
    clear_error: bool = False


@dataclass
class StatePatch:
    """What a processor asks the orchestrator to persist."""
    metrics: MetricsSyncPatch | None = None
    conversations: ConversationsSyncPatch | None = None


def _max_optional(a: int | None, b: int | None) -> int | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def merge_metrics(state: MetricsSyncState, patch: MetricsSyncPatch) -> MetricsSyncState:
    """Fold a metrics patch into a cursor. Returns a new object."""
    known = set(state.processed_record_ids)
    record_ids = list(state.processed_record_ids)
    for record_id in patch.processed_record_ids:
        if record_id not in known:
            known.add(record_id)
            record_ids.append(record_id)

    error = state.last_sync_error
    if patch.last_sync_error:
        error = patch.last_sync_error
    elif patch.clear_error:
        error = None

    return MetricsSyncState(
        last_processed_timestamp=max(state.last_processed_timestamp, patch.last_processed_timestamp or 0),
        processed_record_ids=record_ids,
        total_deltas=state.total_deltas + patch.deltas,
        total_synced=state.total_synced + patch.synced,
        total_failed=state.total_failed + patch.failed,
        last_sync_at=_max_optional(state.last_sync_at, patch.last_sync_at),
        last_sync_error=error,
        final_sent=state.final_sent or patch.final_sent,
    )


def merge_conversations(
    state: ConversationsSyncState, patch: ConversationsSyncPatch
) -> ConversationsSyncState:
    """Fold a conversations patch into a cursor. Returns a new object."""
    index = state.last_synced_history_index
    uuid = state.last_synced_message_uuid
    if patch.last_synced_message_uuid:
        # A patch from behind the stored cursor must not move the uuid back.
        if patch.last_synced_history_index is None or patch.last_synced_history_index >= index:
            uuid = patch.last_synced_message_uuid
    if patch.last_synced_history_index is not None:
        index = max(index, patch.last_synced_history_index)

    error = state.last_sync_error
    if patch.last_sync_error:
        error = patch.last_sync_error
    elif patch.clear_error:
        error = None

    return ConversationsSyncState(
        conversation_id=patch.conversation_id or state.conversation_id,
        last_synced_message_uuid=uuid,
        last_synced_history_index=index,
        last_sync_at=_max_optional(state.last_sync_at, patch.last_sync_at),
        total_messages_synced=state.total_messages_synced + patch.messages_synced,
        total_sync_attempts=state.total_sync_attempts + patch.sync_attempts,
        last_sync_error=error,
    )


def merge_patches(state: SyncState, patches: Iterable[StatePatch]) -> SyncState:
    """Fold all patches of a run, in order, into the stored sync state."""
    metrics = state.metrics
    conversations = state.conversations
    for patch in patches:
        if patch.metrics is not None:
            metrics = merge_metrics(metrics, patch.metrics)
        if patch.conversations is not None:
            conversations = merge_conversations(conversations, patch.conversations)
    return SyncState(metrics=metrics, conversations=conversations)
