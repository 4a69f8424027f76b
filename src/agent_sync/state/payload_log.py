"""
Conversation payload log.

Append-only JSONL audit trail of every conversation upsert:
<sessions>/<session-id>_conversation.jsonl. A record is appended as
"pending" before the network call and rewritten to "success"/"failed"
after it, so a crash between the two leaves a pending record that the
catch-up path can resend. Pending records whose history a later sync
already delivered are marked failed instead (supersede_pending).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .atomic_writer import append_jsonl, write_jsonl_atomic
from .jsonl_reader import stream_jsonl
from .paths import SessionPaths

logger = logging.getLogger(__name__)

SUPERSEDED_ERROR = "Superseded by a later sync"


class PayloadStatus(Enum):
    """Outcome of a conversation upsert."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class ConversationPayloadRecord:
    """
    One conversation upsert attempt.

    Attributes:
        timestamp: Unix ms of the attempt
        is_turn_continuation: True when the first history entry extends a turn already sent
        history_indices: Distinct history indices carried by the payload
        message_count: Number of history entries in the payload
        payload: {"conversation_id": ..., "history": [...]}
        status: pending until the send finished
        error: Error message of a failed send
        response: Response metadata of the send (status code, synced count)
        last_message_uuid: Uuid of the newest transcript message the payload covers
    """
    timestamp: int
    is_turn_continuation: bool
    history_indices: list[int]
    message_count: int
    payload: dict[str, Any]
    status: PayloadStatus = PayloadStatus.PENDING
    error: str | None = None
    response: dict[str, Any] | None = None
    last_message_uuid: str | None = None

    @property
    def conversation_id(self) -> str:
        return self.payload.get("conversation_id", "")

    @property
    def history(self) -> list[dict[str, Any]]:
        return self.payload.get("history", [])

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "timestamp": self.timestamp,
            "isTurnContinuation": self.is_turn_continuation,
            "historyIndices": list(self.history_indices),
            "messageCount": self.message_count,
            "payload": {
                "conversationId": self.conversation_id,
                "history": self.history,
            },
            "status": self.status.value,
        }
        if self.error:
            result["error"] = self.error
        if self.response is not None:
            result["response"] = self.response
        if self.last_message_uuid:
            result["lastMessageUuid"] = self.last_message_uuid
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationPayloadRecord":
        payload = data.get("payload") or {}
        try:
            status = PayloadStatus(data.get("status", "pending"))
        except ValueError:
            status = PayloadStatus.FAILED
        history = payload.get("history") or []
        return cls(
            timestamp=int(data.get("timestamp", 0) or 0),
            is_turn_continuation=bool(data.get("isTurnContinuation", False)),
            history_indices=[int(i) for i in data.get("historyIndices") or []],
            message_count=int(data.get("messageCount", len(history)) or 0),
            payload={
                "conversation_id": payload.get("conversationId", payload.get("conversation_id", "")),
                "history": history,
            },
            status=status,
            error=data.get("error"),
            response=data.get("response"),
            last_message_uuid=data.get("lastMessageUuid"),
        )


class PayloadLog:
    """Append/update access to the conversation payload log of one session."""

    def __init__(self, session_id: str, paths: SessionPaths | None = None):
        self.session_id = session_id
        self.paths = paths or SessionPaths()
        self.file_path: Path = self.paths.conversation_file(session_id)

    def append_pending(
        self,
        conversation_id: str,
        history: list[dict[str, Any]],
        is_turn_continuation: bool,
        history_indices: list[int],
        last_message_uuid: str | None = None,
    ) -> ConversationPayloadRecord:
        """Append a pending record for a payload about to be sent."""
        record = ConversationPayloadRecord(
            timestamp=int(time.time() * 1000),
            is_turn_continuation=is_turn_continuation,
            history_indices=list(history_indices),
            message_count=len(history),
            payload={"conversation_id": conversation_id, "history": history},
            last_message_uuid=last_message_uuid,
        )
        append_jsonl(self.file_path, record.to_dict())
        logger.debug(
            f"[PayloadLog] Appended payload: conversation={conversation_id}, "
            f"messages={len(history)}, indices={history_indices}, "
            f"continuation={is_turn_continuation}"
        )
        return record

    def read_all(self) -> list[ConversationPayloadRecord]:
        records = []
        for raw in stream_jsonl(self.file_path):
            if not isinstance(raw, dict):
                logger.warning(f"[PayloadLog] Ignoring non-object record in {self.file_path}")
                continue
            records.append(ConversationPayloadRecord.from_dict(raw))
        return records

    def update_status(
        self,
        index: int,
        status: PayloadStatus,
        error: str | None = None,
        response: dict[str, Any] | None = None,
    ) -> bool:
        """
        Set the outcome of the record at position `index` (negative counts from the end).

        Returns:
            False if there is no such record
        """
        records = self.read_all()
        if not records:
            logger.warning("[PayloadLog] No records to update")
            return False
        try:
            record = records[index]
        except IndexError:
            logger.warning(f"[PayloadLog] No record at index {index}")
            return False

        record.status = status
        if error:
            record.error = error
        if response is not None:
            record.response = response
        write_jsonl_atomic(self.file_path, (r.to_dict() for r in records))
        logger.debug(f"[PayloadLog] Record {index} -> {status.value}")
        return True

    def update_last_status(
        self,
        status: PayloadStatus,
        error: str | None = None,
        response: dict[str, Any] | None = None,
    ) -> bool:
        return self.update_status(-1, status, error=error, response=response)

    def supersede_pending(self, history_index: int) -> int:
        """
        Mark pending records fully covered by `history_index` as failed.

        A later sync already delivered those history indices, so resending
        them would only move the cursor back.

        Returns:
            Number of records marked
        """
        records = self.read_all()
        marked = 0
        for record in records:
            if (
                record.status == PayloadStatus.PENDING
                and record.history_indices
                and max(record.history_indices) <= history_index
            ):
                record.status = PayloadStatus.FAILED
                record.error = SUPERSEDED_ERROR
                marked += 1
        if marked:
            write_jsonl_atomic(self.file_path, (r.to_dict() for r in records))
            logger.debug(f"[PayloadLog] Superseded {marked} pending record(s) up to index {history_index}")
        return marked

    def pending(self) -> list[tuple[int, ConversationPayloadRecord]]:
        """Records whose send outcome was never recorded, with their positions."""
        return [(i, r) for i, r in enumerate(self.read_all()) if r.status == PayloadStatus.PENDING]

    def last_successful(self) -> ConversationPayloadRecord | None:
        for record in reversed(self.read_all()):
            if record.status == PayloadStatus.SUCCESS:
                return record
        return None

    def get_sync_stats(self) -> dict[str, int]:
        stats = {"total": 0, "pending": 0, "success": 0, "failed": 0}
        for record in self.read_all():
            stats["total"] += 1
            stats[record.status.value] += 1
        return stats
