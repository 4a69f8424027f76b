"""
Metrics Processor

Syncs a session's pending metric deltas:

1. read the delta file and keep only pending deltas
2. aggregate them into one session metric per branch
3. send each branch metric (a failed branch does not stop the others)
4. flip every pending delta to "synced" in one atomic rewrite
5. describe the cursor changes in a StatePatch

Step 4 runs even when a branch failed. A delta is never sent twice; a
failed branch is reported through total_failed and last_sync_error.
"""

import logging
import time
from typing import Callable, List, Optional

from ..api.client import RemoteSender
from ..state.delta_store import DeltaStore
from ..state.paths import SessionPaths
from ..state.sync_state import MetricsSyncPatch, StatePatch
from .base import ParsedSession, ProcessingContext, ProcessingResult, SessionProcessor
from .metrics_aggregator import aggregate_deltas, timestamp_to_ms
from .registry import AgentRegistry

logger = logging.getLogger(__name__)

SenderFactory = Callable[[ProcessingContext], RemoteSender]


class MetricsProcessor(SessionProcessor):
    """Aggregates pending deltas per branch and sends them as session metrics."""

    name = "metrics"
    priority = 1

    def __init__(
        self,
        registry: AgentRegistry,
        paths: Optional[SessionPaths] = None,
        sender_factory: Optional[SenderFactory] = None,
    ):
        self.registry = registry
        self.paths = paths or SessionPaths()
        self.sender_factory = sender_factory or RemoteSender.from_context

    def should_process(self, session: ParsedSession) -> bool:
        # Nothing may follow the terminal session metric.
        return not session.metadata.sync.metrics.final_sent

    async def process(self, session: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        store = DeltaStore(session.session_id, self.paths)
        pending = store.read_pending()

        if not pending:
            logger.debug(f"[{self.name}] No pending deltas for session {session.session_id}")
            return ProcessingResult(
                success=True,
                message="No pending deltas",
                metadata={"deltas_processed": 0},
            )

        metadata = session.metadata
        is_final = metadata.end_time is not None
        config = self.registry.get_metrics_config(session.agent_name)
        metrics = aggregate_deltas(pending, metadata, context.version, config, is_final=is_final)

        logger.info(
            f"[{self.name}] Syncing {len(pending)} deltas across {len(metrics)} branch(es) "
            f"for session {session.session_id}"
        )

        failed_branches: List[str] = []
        failed_deltas = 0
        errors: List[str] = []

        sender = self.sender_factory(context)
        try:
            for metric in metrics:
                branch = metric.attributes.branch
                result = await sender.send_metric(metric.to_payload())
                if not result.success:
                    logger.error(f"[{self.name}] Sync failed for branch \"{branch}\": {result.message}")
                    failed_branches.append(branch)
                    failed_deltas += len(metric.record_ids)
                    errors.append(f"{branch}: {result.message}")
                    continue
                logger.info(f"[{self.name}] Synced metric for branch \"{branch}\"")
        finally:
            await sender.close()

        synced_at = int(time.time() * 1000)
        record_ids = [d.record_id for d in pending]
        store.mark_synced(record_ids, synced_at)

        timestamps = [ms for ms in (timestamp_to_ms(d.timestamp) for d in pending) if ms is not None]
        patch = MetricsSyncPatch(
            processed_record_ids=record_ids,
            last_processed_timestamp=max(timestamps) if timestamps else None,
            deltas=len(pending),
            synced=len(pending) - failed_deltas,
            failed=failed_deltas,
            last_sync_at=synced_at,
            last_sync_error="; ".join(errors) if errors else None,
            clear_error=not errors,
            final_sent=is_final and not failed_branches,
        )

        if failed_branches:
            message = f"Synced {len(metrics) - len(failed_branches)}/{len(metrics)} branches ({len(pending)} deltas)"
        else:
            message = f"Synced {len(pending)} deltas across {len(metrics)} branches"

        return ProcessingResult(
            success=not failed_branches,
            message=message,
            metadata={
                "deltas_processed": len(pending),
                "branch_count": len(metrics),
                "failed_branches": failed_branches,
                "is_final": is_final,
            },
            state_patch=StatePatch(metrics=patch),
        )
