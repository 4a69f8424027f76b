"""
Base Processor Abstraction for agent-sync

A sync run hands one ParsedSession to a chain of SessionProcessor
implementations, each responsible for one kind of remote data:

1. MetricsProcessor (priority 1)
   - Aggregates pending metric deltas per branch and sends them

2. ConversationsProcessor (priority 2)
   - Turns transcript messages into conversation history and upserts it

Processors never write session metadata. They return a ProcessingResult
whose optional state_patch the orchestrator merges and persists once.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..state.session_store import SessionMetadata
from ..state.sync_state import StatePatch


@dataclass
class ProcessingContext:
    """
    Credentials and switches shared by every processor of a run.

    Attributes:
        api_base_url: Base URL of the ingestion API
        cookies: SSO cookie header value (SSO auth)
        api_key: User id sent as `user-id` (API key auth)
        client_type: Value of the X-Agent-Sync-Client header
        version: Client version reported in User-Agent
        dry_run: Run every state transition but never hit the network
    """
    api_base_url: str
    cookies: str = ""
    api_key: Optional[str] = None
    client_type: str = "agent-sync"
    version: str = "unknown"
    dry_run: bool = False


@dataclass
class ProcessingResult:
    """
    Outcome of one processor on one session.

    Attributes:
        success: Whether processing succeeded
        message: Short status message
        metadata: Counters for the run summary (e.g. deltas_processed)
        state_patch: Cursor changes to persist, if any
    """
    success: bool
    message: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    state_patch: Optional[StatePatch] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "metadata": self.metadata,
        }


@dataclass
class ParsedSession:
    """
    Agent-agnostic view of a session handed to processors.

    `messages` holds the agent's raw transcript records; an empty list
    selects the catch-up path (pending deltas and unsent payloads only).
    """
    session_id: str
    agent_name: str
    metadata: SessionMetadata
    messages: List[Dict[str, Any]] = field(default_factory=list)


class SessionProcessor(ABC):
    """
    Abstract base class for session processors.

    Subclasses must implement:
    - name / priority: identification and ordering (lower runs first)
    - process(): do the work and describe cursor changes in the result

    Optional overrides:
    - should_process(): skip sessions this processor has nothing to do for
    """

    name: str = "processor"
    priority: int = 100

    def should_process(self, session: ParsedSession) -> bool:
        return True

    @abstractmethod
    async def process(self, session: ParsedSession, context: ProcessingContext) -> ProcessingResult:
        """
        Process a session.

        Expected failures (network, empty input) are reported through the
        result; anything raised is caught by the orchestrator and recorded
        as a failure of this processor.
        """
        pass
