"""
Session Sync Orchestrator

Runs the processor chain for one session:

1. guard against a second run of the same session in this process
2. take the cross-process session lock (contention is a skip, not a failure)
   and refresh it in the background while the run lasts
3. load metadata and require a matched correlation
4. run processors in priority order, isolating their failures
5. merge every state patch and persist the metadata once
6. release the lock
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from ..state.lock_manager import SessionLockManager
from ..state.paths import SessionPaths
from ..state.payload_log import PayloadLog
from ..state.session_store import SessionMetadata, SessionStore
from ..state.sync_state import merge_patches
from .base import ParsedSession, ProcessingContext, ProcessingResult, SessionProcessor
from .conversations_processor import ConversationsProcessor
from .metrics_processor import MetricsProcessor, SenderFactory
from .registry import AgentRegistry

logger = logging.getLogger(__name__)


@dataclass
class SessionSyncResult:
    """
    Outcome of one orchestrated sync.

    Attributes:
        success: False if a processor failed or metadata could not be saved
        message: Human-readable summary
        processor_results: Result per processor name
        failed_processors: Names of processors that failed
        skipped: True when the run did nothing because the session was busy
    """
    success: bool
    message: str
    processor_results: Dict[str, ProcessingResult] = field(default_factory=dict)
    failed_processors: List[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "processorResults": {name: r.to_dict() for name, r in self.processor_results.items()},
            "failedProcessors": list(self.failed_processors),
            "skipped": self.skipped,
        }


class SessionSyncer:
    """
    Syncs sessions through the processor chain.

    Example:
        syncer = SessionSyncer(create_default_registry())
        result = await syncer.sync(session_id, context)
    """

    def __init__(
        self,
        registry: AgentRegistry,
        processors: Optional[List[SessionProcessor]] = None,
        paths: Optional[SessionPaths] = None,
        lock_manager: Optional[SessionLockManager] = None,
        store: Optional[SessionStore] = None,
        sender_factory: Optional[SenderFactory] = None,
    ):
        self.registry = registry
        self.paths = paths or SessionPaths()
        self.lock_manager = lock_manager or SessionLockManager(self.paths)
        self.store = store or SessionStore(self.paths)
        if processors is None:
            processors = [
                MetricsProcessor(registry, self.paths, sender_factory),
                ConversationsProcessor(registry, self.paths, sender_factory),
            ]
        self.processors = sorted(processors, key=lambda p: p.priority)
        self._in_flight: Set[str] = set()

    def is_syncing(self, session_id: str) -> bool:
        return session_id in self._in_flight

    async def sync(
        self,
        session_id: str,
        context: ProcessingContext,
        messages: Optional[List[Dict[str, Any]]] = None,
    ) -> SessionSyncResult:
        """
        Sync one session.

        Args:
            session_id: Session to sync
            context: Credentials and switches for the remote sender
            messages: Live transcript records; None runs the catch-up path
                (pending deltas and unsent payloads only)
        """
        if session_id in self._in_flight:
            logger.debug(f"[SessionSyncer] Sync already in progress for session {session_id}")
            return SessionSyncResult(success=True, message="Sync already in progress", skipped=True)

        self._in_flight.add(session_id)
        try:
            with self.lock_manager.hold(session_id) as acquired:
                if not acquired:
                    logger.info(f"[SessionSyncer] Session {session_id} is locked by another process, skipping")
                    return SessionSyncResult(success=True, message="Session locked by another process", skipped=True)
                heartbeat = asyncio.create_task(self._keep_lock_alive(session_id))
                try:
                    return await self._sync_locked(session_id, context, messages or [])
                finally:
                    heartbeat.cancel()
                    try:
                        await heartbeat
                    except asyncio.CancelledError:
                        pass
        finally:
            self._in_flight.discard(session_id)

    async def _keep_lock_alive(self, session_id: str) -> None:
        """Refresh the session lock until cancelled so a slow run is never reclaimed."""
        interval = max(self.lock_manager.ttl_seconds / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                self.lock_manager.refresh(session_id)
            except OSError as e:
                logger.warning(f"[SessionSyncer] Could not refresh lock of session {session_id}: {e}")

    async def _sync_locked(
        self,
        session_id: str,
        context: ProcessingContext,
        messages: List[Dict[str, Any]],
    ) -> SessionSyncResult:
        metadata = self.store.load(session_id)
        if metadata is None:
            logger.error(f"[SessionSyncer] Session not found: {session_id}")
            return SessionSyncResult(success=False, message="Session not found")

        if not metadata.is_matched:
            logger.info(
                f"[SessionSyncer] Session {session_id} not correlated "
                f"(status: {metadata.correlation.status.value}), skipping"
            )
            return SessionSyncResult(
                success=False,
                message=f"Session not correlated (status: {metadata.correlation.status.value})",
            )

        session = ParsedSession(
            session_id=session_id,
            agent_name=metadata.agent_name,
            metadata=metadata,
            messages=messages,
        )

        results: Dict[str, ProcessingResult] = {}
        failed: List[str] = []
        for processor in self.processors:
            if not processor.should_process(session):
                logger.debug(f"[SessionSyncer] Skipping processor {processor.name} for session {session_id}")
                continue
            try:
                result = await processor.process(session, context)
            except Exception as e:
                logger.error(f"[SessionSyncer] Processor {processor.name} raised: {e}", exc_info=True)
                result = ProcessingResult(success=False, message=f"Processor error: {e}")
            results[processor.name] = result
            if not result.success:
                failed.append(processor.name)

        patches = [r.state_patch for r in results.values() if r.state_patch is not None]
        if patches:
            metadata.sync = merge_patches(metadata.sync, patches)
            try:
                self.store.save(metadata)
            except OSError as e:
                logger.error(f"[SessionSyncer] Failed to persist metadata for session {session_id}: {e}")
                return SessionSyncResult(
                    success=False,
                    message=f"Failed to persist session metadata: {e}",
                    processor_results=results,
                    failed_processors=failed,
                )

        message = _summarize(results, failed)
        logger.info(f"[SessionSyncer] Session {session_id}: {message}")
        return SessionSyncResult(
            success=not failed,
            message=message,
            processor_results=results,
            failed_processors=failed,
        )

    async def sync_all(self, context: ProcessingContext) -> Dict[str, SessionSyncResult]:
        """Run the catch-up path for every matched session that can still produce data."""
        results = {}
        for metadata in self.store.list_sessions():
            if not self._has_catch_up_work(metadata):
                continue
            results[metadata.session_id] = await self.sync(metadata.session_id, context)
        return results

    def _has_catch_up_work(self, metadata: SessionMetadata) -> bool:
        # A final session sends no more metrics but may still hold unsent payloads.
        if not metadata.is_matched:
            return False
        if not metadata.sync.metrics.final_sent:
            return True
        return bool(PayloadLog(metadata.session_id, self.paths).pending())


def _summarize(results: Dict[str, ProcessingResult], failed: List[str]) -> str:
    if failed:
        return f"Sync completed with {len(failed)}/{len(results)} failures"

    metrics = results.get("metrics")
    conversations = results.get("conversations")
    metric_count = metrics.metadata.get("deltas_processed", 0) if metrics else 0
    conversation_count = conversations.metadata.get("messages_processed", 0) if conversations else 0
    if metric_count or conversation_count:
        return f"Synced {metric_count} metrics, {conversation_count} conversations"
    return "No pending data to sync"
