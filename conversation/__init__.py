"""
conversation — Conversation records, stores and the context budget policy.
"""

from conversation.context import ContextManager, estimate_tokens
from conversation.models import Conversation, Message, Role
from conversation.references import ReferenceResolver
from conversation.store import ConversationStore, InMemoryConversationStore

__all__ = [
    "ContextManager",
    "Conversation",
    "ConversationStore",
    "InMemoryConversationStore",
    "Message",
    "ReferenceResolver",
    "Role",
    "estimate_tokens",
]
