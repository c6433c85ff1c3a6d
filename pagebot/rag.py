"""Retrieval-augmented reply generation for one conversation turn.

Steps
-----
1. Load the conversation memory (recent turns plus rolling summary).
2. Make sure the incoming user turn is in the window and fold older turns
   into the summary once the window passes the threshold.
3. Search the tenant's document chunks for the user message.
4. Assemble memory context, document context and the user message into a
   single prompt and generate with the tenant's provider.
5. Append the reply to memory, reconcile again and persist the summary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from .conversations import schemas
from .llm.gateway import LLMGateway
from .llm.types import ChatMessage, GenerationRequest, Usage
from .memory.manager import ConversationMemoryManager, LLMSummarizer
from .retrieval.vector_store import VectorMatch, VectorRetrievalService

logger = logging.getLogger(__name__)

PROMPT_SUFFIX = (
    "Please provide a helpful response based on the conversation history "
    "and available information."
)


@dataclass
class RagReply:
    text: str
    provider: str
    model: str
    usage: Usage | None = None
    sources: list[str] = field(default_factory=list)
    relevant_chunks: int = 0


def build_document_context(matches: list[VectorMatch]) -> str:
    if not matches:
        return ""
    return "Relevant information from documents:\n\n" + "\n\n".join(
        m.content for m in matches
    )


def build_prompt(system_prompt: str | None, context: str, query: str) -> str:
    parts = [system_prompt or ""]
    if context:
        parts.append(context.strip())
    parts.append(f"Current user message: {query}")
    parts.append(PROMPT_SUFFIX)
    return "\n\n".join(p for p in parts if p)


class RagResponder:
    def __init__(
        self,
        gateway: LLMGateway,
        memory: ConversationMemoryManager,
        retrieval: VectorRetrievalService | None,
        *,
        search_limit: int = 3,
        min_similarity: float = 0.1,
        temperature_cap: float | None = 0.2,
    ) -> None:
        self._gateway = gateway
        self._memory = memory
        self._retrieval = retrieval
        self.search_limit = search_limit
        self.min_similarity = min_similarity
        self.temperature_cap = temperature_cap

    def _search(self, query: str, tenant_id: str) -> list[VectorMatch]:
        if self._retrieval is None:
            return []
        try:
            return self._retrieval.search_text(
                query, tenant_id, self.search_limit, self.min_similarity
            )
        except Exception as exc:
            logger.warning("Document search failed for tenant %s: %s", tenant_id, exc)
            return []

    def respond(
        self,
        conversation: schemas.Conversation,
        request: GenerationRequest,
        query: str,
    ) -> RagReply:
        if self.temperature_cap is not None:
            request = replace(request, temperature=min(request.temperature, self.temperature_cap))
        summarizer = LLMSummarizer(self._gateway, request)

        memory = self._memory.load(conversation.id)
        last = memory.messages[-1] if memory.messages else None
        if last is None or last.role != "user" or last.content != query:
            memory = self._memory.append(memory, "user", query)
        memory = self._memory.reconcile(memory, summarizer)

        matches = self._search(query, conversation.tenant_id)
        context = self._memory.build_context(memory)
        documents = build_document_context(matches)
        if documents:
            context = f"{context}\n{documents}" if context else documents

        prompt = build_prompt(request.system_prompt, context, query)
        result = self._gateway.generate(
            replace(request, system_prompt=None),
            [ChatMessage(role="user", content=prompt)],
        )

        memory = self._memory.append(memory, "assistant", result.text)
        memory = self._memory.reconcile(memory, summarizer)
        self._memory.persist(memory)

        sources = sorted(
            {str(m.metadata.get("documentName")) for m in matches if m.metadata.get("documentName")}
        )
        logger.info(
            "Generated reply for conversation %s with %d relevant chunks",
            conversation.id,
            len(matches),
        )
        return RagReply(
            text=result.text,
            provider=result.provider,
            model=result.model,
            usage=result.usage,
            sources=sources,
            relevant_chunks=len(matches),
        )
