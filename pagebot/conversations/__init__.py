"""Conversation and message storage."""

from . import schemas
from .models import ConversationStatus, MessageRole
from .repository import (
    ConversationNotFoundError,
    ConversationRepository,
    InMemoryConversationRepository,
    PostgresConversationRepository,
)

__all__ = [
    "ConversationNotFoundError",
    "ConversationRepository",
    "ConversationStatus",
    "InMemoryConversationRepository",
    "MessageRole",
    "PostgresConversationRepository",
    "schemas",
]
