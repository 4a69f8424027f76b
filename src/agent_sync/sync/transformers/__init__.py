"""
Conversation transformers, one per agent transcript dialect.
"""

from .base import ConversationTransformer, TransformResult
from .claude import ClaudeConversationTransformer

__all__ = [
    "ConversationTransformer",
    "TransformResult",
    "ClaudeConversationTransformer",
]
