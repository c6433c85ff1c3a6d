"""Conversation memory."""

from .manager import (
    ConversationMemory,
    ConversationMemoryManager,
    LLMSummarizer,
    MemoryTurn,
    estimate_tokens,
)

__all__ = [
    "ConversationMemory",
    "ConversationMemoryManager",
    "LLMSummarizer",
    "MemoryTurn",
    "estimate_tokens",
]
