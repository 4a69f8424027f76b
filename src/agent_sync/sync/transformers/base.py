"""
Conversation transformer contract.

A transformer turns an agent's raw transcript records into the history
entries the conversation API accepts. It is stateless: everything it
needs to resume is passed in as the stored cursor.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ...state.sync_state import ConversationsSyncState


@dataclass
class TransformResult:
    """
    New history produced from a message list.

    Attributes:
        history: Entries with history_index, role and message
        is_turn_continuation: True when the first entry extends the turn
            already sent at the cursor's history index
        current_history_index: Highest history index in `history`
            (the cursor's index when nothing new was produced)
        last_processed_message_uuid: Uuid of the last message consumed
    """
    history: List[Dict[str, Any]] = field(default_factory=list)
    is_turn_continuation: bool = False
    current_history_index: int = -1
    last_processed_message_uuid: Optional[str] = None

    @property
    def history_indices(self) -> List[int]:
        seen: List[int] = []
        for entry in self.history:
            index = entry.get("history_index")
            if index is not None and index not in seen:
                seen.append(index)
        return seen


class ConversationTransformer(ABC):
    """Converts one agent's transcript dialect into conversation history."""

    agent_name: str = ""

    @abstractmethod
    def transform(
        self,
        messages: List[Dict[str, Any]],
        cursor: ConversationsSyncState,
    ) -> TransformResult:
        """Produce the history not yet covered by `cursor`."""
        pass
