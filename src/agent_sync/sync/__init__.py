"""
agent-sync Sync Module

Contains the processor chain and its orchestration:
- SessionProcessor: Base class of per-kind processors
- MetricsProcessor: Aggregates and sends pending metric deltas
- ConversationsProcessor: Upserts conversation history
- AgentRegistry: Per-agent transformers and metrics config
- SessionSyncer: Lock, run processors, merge and persist cursors
"""

from .base import ParsedSession, ProcessingContext, ProcessingResult, SessionProcessor
from .conversations_processor import ConversationsProcessor
from .metrics_aggregator import (
    METRIC_NAME,
    SessionMetric,
    SessionMetricAttributes,
    aggregate_deltas,
    truncate_project_path,
)
from .metrics_processor import MetricsProcessor
from .orchestrator import SessionSyncer, SessionSyncResult
from .registry import AgentDefinition, AgentRegistry, MetricsConfig, create_default_registry
from .transformers import ClaudeConversationTransformer, ConversationTransformer, TransformResult

__all__ = [
    # Processor base
    "SessionProcessor",
    "ParsedSession",
    "ProcessingContext",
    "ProcessingResult",
    # Processors
    "MetricsProcessor",
    "ConversationsProcessor",
    # Metrics aggregation
    "METRIC_NAME",
    "SessionMetric",
    "SessionMetricAttributes",
    "aggregate_deltas",
    "truncate_project_path",
    # Agents
    "AgentRegistry",
    "AgentDefinition",
    "MetricsConfig",
    "create_default_registry",
    "ConversationTransformer",
    "ClaudeConversationTransformer",
    "TransformResult",
    # Orchestration
    "SessionSyncer",
    "SessionSyncResult",
]
