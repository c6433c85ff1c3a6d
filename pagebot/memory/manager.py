"""Bounded conversation memory with a rolling summary.

The window of recent turns is always rebuilt from the message repository; only
the summary is written back, into ``Conversation.notes``.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Literal, Protocol

from ..conversations.models import MessageRole
from ..conversations.repository import ConversationNotFoundError, ConversationRepository
from ..llm.gateway import LLMGateway
from ..llm.types import ChatMessage, GenerationRequest

logger = logging.getLogger(__name__)

CONTEXT_TURNS = 6
SUMMARY_FALLBACK = "Previous conversation occurred."
SUMMARY_SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise conversation summaries."
)


@dataclass(frozen=True)
class MemoryTurn:
    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class ConversationMemory:
    conversation_id: str
    messages: tuple[MemoryTurn, ...] = field(default_factory=tuple)
    summary: str | None = None


class Summarizer(Protocol):
    def __call__(self, previous_summary: str | None, turns: Sequence[MemoryTurn]) -> str: ...


def estimate_tokens(text: str) -> int:
    """Rough token count (four characters per token)."""

    return math.ceil(len(text) / 4)


def _format_turns(turns: Sequence[MemoryTurn]) -> str:
    return "\n".join(
        f"{'User' if t.role == 'user' else 'Assistant'}: {t.content}" for t in turns
    )


class LLMSummarizer:
    """Summarise older turns through the gateway with the tenant's provider."""

    def __init__(self, gateway: LLMGateway, request: GenerationRequest) -> None:
        self._gateway = gateway
        self._request = replace(
            request,
            temperature=0.3,
            max_tokens=300,
            system_prompt=SUMMARY_SYSTEM_PROMPT,
        )

    def __call__(self, previous_summary: str | None, turns: Sequence[MemoryTurn]) -> str:
        prompt = ""
        if previous_summary:
            prompt += f"Previous summary: {previous_summary}\n\n"
        prompt += (
            f"New conversation to add to summary:\n{_format_turns(turns)}\n\n"
            "Please create a concise summary that combines the previous summary "
            "(if any) with the new conversation. Focus on key topics, user needs "
            "and important context. Keep it under 200 words."
        )
        result = self._gateway.generate(
            self._request, [ChatMessage(role="user", content=prompt)]
        )
        return result.text.strip() or SUMMARY_FALLBACK


class ConversationMemoryManager:
    def __init__(
        self,
        repository: ConversationRepository,
        *,
        max_messages: int = 10,
        summary_threshold: int = 8,
        keep_recent: int = 4,
    ) -> None:
        if keep_recent < 1:
            raise ValueError("keep_recent must be at least 1")
        if keep_recent > summary_threshold:
            raise ValueError("keep_recent must not exceed summary_threshold")
        self._repository = repository
        self.max_messages = max_messages
        self.summary_threshold = summary_threshold
        self.keep_recent = keep_recent

    def load(self, conversation_id: str) -> ConversationMemory:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        messages = self._repository.list_recent_messages(conversation_id, self.max_messages)
        turns = tuple(
            MemoryTurn(
                role="user" if m.role == MessageRole.USER else "assistant",
                content=m.text,
            )
            for m in messages
        )
        return ConversationMemory(
            conversation_id=conversation_id,
            messages=turns,
            summary=conversation.notes or None,
        )

    @staticmethod
    def append(
        memory: ConversationMemory, role: Literal["user", "assistant"], content: str
    ) -> ConversationMemory:
        return replace(memory, messages=memory.messages + (MemoryTurn(role, content),))

    def reconcile(
        self, memory: ConversationMemory, summarizer: Summarizer | None
    ) -> ConversationMemory:
        """Fold older turns into the summary once the window passes the threshold."""

        if len(memory.messages) <= self.summary_threshold:
            return memory
        older = memory.messages[: -self.keep_recent]
        recent = memory.messages[-self.keep_recent :]
        if summarizer is None:
            return replace(memory, messages=memory.messages[-self.max_messages :])
        try:
            summary = summarizer(memory.summary, older)
        except Exception as exc:
            logger.warning(
                "Summarisation failed for conversation %s, keeping window: %s",
                memory.conversation_id,
                exc,
            )
            return replace(memory, messages=memory.messages[-self.max_messages :])
        return replace(memory, messages=recent, summary=summary or SUMMARY_FALLBACK)

    def persist(self, memory: ConversationMemory) -> None:
        self._repository.set_notes(memory.conversation_id, memory.summary)

    @staticmethod
    def build_context(memory: ConversationMemory) -> str:
        context = ""
        if memory.summary:
            context += f"Previous conversation summary: {memory.summary}\n\n"
        recent = memory.messages[-CONTEXT_TURNS:]
        if recent:
            context += "Recent conversation:\n" + _format_turns(recent) + "\n"
        return context
