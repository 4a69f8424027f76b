"""
Conversations Processor

Keeps the remote copy of a session's conversation in step with its
transcript. Two modes, selected by the message list:

- live (messages present): transform the messages past the stored cursor,
  log the payload as pending, upsert it, record the outcome and advance
  the cursor only when the upsert succeeded
- replay (no messages): resend payload-log records still marked pending
  because an earlier run stopped between logging and recording the outcome,
  skipping those whose history the stored cursor already covers
"""

import logging
import time
from typing import Any, Dict, List, Optional

from ..api.client import RemoteSender, SendResult
from ..state.paths import SessionPaths
from ..state.payload_log import PayloadLog, PayloadStatus
from ..state.sync_state import ConversationsSyncPatch, StatePatch
from .base import ParsedSession, ProcessingContext, ProcessingResult, SessionProcessor
from .metrics_processor import SenderFactory
from .registry import AgentRegistry
from .transformers.claude import DEFAULT_ASSISTANT_ID

logger = logging.getLogger(__name__)


def _response_meta(result: SendResult, history_len: int) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"syncedCount": history_len}
    if result.status_code is not None:
        meta["statusCode"] = result.status_code
    if "new_messages" in result.data:
        meta["newMessages"] = result.data["new_messages"]
    if "total_messages" in result.data:
        meta["totalMessages"] = result.data["total_messages"]
    return meta


class ConversationsProcessor(SessionProcessor):
    """Upserts conversation history built by the agent's transformer."""

    name = "conversations"
    priority = 2

    def __init__(
        self,
        registry: AgentRegistry,
        paths: Optional[SessionPaths] = None,
        sender_factory: Optional[SenderFactory] = None,
    ):
        self.registry = registry
        self.paths = paths or SessionPaths()
        self.sender_factory = sender_factory or RemoteSender.from_context

    async def process(self, session: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        if session.messages:
            return await self._process_live(session, context)
        return await self._replay_pending(session, context)

    def _assistant_id(self, agent_name: str) -> str:
        transformer = self.registry.get_transformer(agent_name)
        return getattr(transformer, "assistant_id", None) or DEFAULT_ASSISTANT_ID

    async def _process_live(self, session: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        transformer = self.registry.get_transformer(session.agent_name)
        if transformer is None:
            logger.warning(f"[{self.name}] No conversation transformer for agent: {session.agent_name}")
            return ProcessingResult(success=True, message="Conversations sync not supported for this agent")

        cursor = session.metadata.sync.conversations
        result = transformer.transform(session.messages, cursor)

        if not result.history:
            logger.debug(f"[{self.name}] No new history for session {session.session_id}")
            patch = None
            moved = result.last_processed_message_uuid
            if moved and moved != cursor.last_synced_message_uuid:
                patch = StatePatch(conversations=ConversationsSyncPatch(last_synced_message_uuid=moved))
            return ProcessingResult(
                success=True,
                message="No new history",
                metadata={"messages_processed": 0},
                state_patch=patch,
            )

        conversation_id = cursor.conversation_id or session.session_id
        folder = self.registry.get_display_name(session.agent_name)
        payload_log = PayloadLog(session.session_id, self.paths)
        payload_log.append_pending(
            conversation_id,
            result.history,
            result.is_turn_continuation,
            result.history_indices,
            last_message_uuid=result.last_processed_message_uuid,
        )

        logger.info(
            f"[{self.name}] Syncing conversation {conversation_id} "
            f"({len(result.history)} entries, index {result.current_history_index}"
            f"{', continuation' if result.is_turn_continuation else ''})"
        )

        sender = self.sender_factory(context)
        try:
            sent = await sender.upsert_conversation(
                conversation_id,
                result.history,
                self._assistant_id(session.agent_name),
                folder,
            )
        finally:
            await sender.close()

        if not sent.success:
            payload_log.update_last_status(PayloadStatus.FAILED, error=sent.message)
            logger.error(f"[{self.name}] Failed to sync conversation {conversation_id}: {sent.message}")
            return ProcessingResult(
                success=False,
                message=f"Failed to sync conversation: {sent.message}",
                metadata={"conversation_id": conversation_id, "messages_processed": 0},
                state_patch=StatePatch(conversations=ConversationsSyncPatch(
                    sync_attempts=1,
                    last_sync_error=sent.message,
                )),
            )

        payload_log.update_last_status(
            PayloadStatus.SUCCESS,
            response=_response_meta(sent, len(result.history)),
        )
        payload_log.supersede_pending(result.current_history_index)
        patch = ConversationsSyncPatch(
            conversation_id=conversation_id,
            last_synced_message_uuid=result.last_processed_message_uuid,
            last_synced_history_index=result.current_history_index,
            last_sync_at=int(time.time() * 1000),
            messages_synced=len(result.history),
            sync_attempts=1,
            clear_error=True,
        )
        logger.info(f"[{self.name}] Synced conversation {conversation_id}")
        return ProcessingResult(
            success=True,
            message=f"Synced {len(result.history)} history entries",
            metadata={
                "conversation_id": conversation_id,
                "messages_processed": len(result.history),
                "history_index": result.current_history_index,
            },
            state_patch=StatePatch(conversations=patch),
        )

    async def _replay_pending(self, session: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        payload_log = PayloadLog(session.session_id, self.paths)
        superseded = payload_log.supersede_pending(session.metadata.sync.conversations.last_synced_history_index)
        if superseded:
            logger.info(f"[{self.name}] Dropped {superseded} pending payload(s) already covered by the cursor")
        pending = payload_log.pending()
        if not pending:
            logger.debug(f"[{self.name}] No pending payloads for session {session.session_id}")
            return ProcessingResult(
                success=True,
                message="No pending payloads",
                metadata={"messages_processed": 0, "payloads_superseded": superseded},
            )

        logger.info(f"[{self.name}] Replaying {len(pending)} pending payload(s) for session {session.session_id}")

        folder = self.registry.get_display_name(session.agent_name)
        assistant_id = self._assistant_id(session.agent_name)
        errors: List[str] = []
        best_index: Optional[int] = None
        best_uuid: Optional[str] = None
        conversation_id: Optional[str] = None
        messages_synced = 0

        sender = self.sender_factory(context)
        try:
            for position, record in pending:
                sent = await sender.upsert_conversation(
                    record.conversation_id, record.history, assistant_id, folder
                )
                if not sent.success:
                    payload_log.update_status(position, PayloadStatus.FAILED, error=sent.message)
                    errors.append(sent.message)
                    logger.error(f"[{self.name}] Replay failed for conversation {record.conversation_id}: {sent.message}")
                    continue

                payload_log.update_status(
                    position,
                    PayloadStatus.SUCCESS,
                    response=_response_meta(sent, len(record.history)),
                )
                messages_synced += len(record.history)
                conversation_id = conversation_id or record.conversation_id
                if record.history_indices:
                    top = max(record.history_indices)
                    if best_index is None or top >= best_index:
                        best_index = top
                        best_uuid = record.last_message_uuid
        finally:
            await sender.close()

        succeeded = len(pending) - len(errors)
        patch = ConversationsSyncPatch(
            sync_attempts=len(pending),
            last_sync_error=errors[-1] if errors else None,
        )
        if succeeded:
            patch.conversation_id = conversation_id
            patch.last_synced_history_index = best_index
            patch.last_synced_message_uuid = best_uuid
            patch.last_sync_at = int(time.time() * 1000)
            patch.messages_synced = messages_synced
            patch.clear_error = not errors

        return ProcessingResult(
            success=not errors,
            message=f"Replayed {succeeded}/{len(pending)} pending payloads",
            metadata={
                "conversation_id": conversation_id,
                "messages_processed": messages_synced,
                "payloads_replayed": succeeded,
            },
            state_patch=StatePatch(conversations=patch),
        )
