from conftest import FakeAdapter, KeywordEmbedder
from pagebot.conversations import schemas
from pagebot.conversations.models import MessageRole
from pagebot.conversations.repository import InMemoryConversationRepository
from pagebot.llm.gateway import LLMGateway
from pagebot.llm.types import GenerationRequest, Provider
from pagebot.memory.manager import ConversationMemoryManager
from pagebot.rag import RagResponder, build_document_context, build_prompt
from pagebot.retrieval.vector_store import (
    InMemoryVectorStore,
    StoredChunk,
    VectorMatch,
    VectorRetrievalService,
)


def _setup(history):
    repo = InMemoryConversationRepository()
    connection = repo.add_connection(
        schemas.ChannelConnection(id="conn", tenant_id="t1", page_id="pg1", page_access_token_enc="e")
    )
    conversation, _ = repo.get_or_create_conversation(connection, "psid1")
    for i, text in enumerate(history):
        role = MessageRole.USER if i % 2 == 0 else MessageRole.BOT
        repo.add_message(conversation.id, role, text)
    return repo, conversation


def _request(temperature=0.7):
    return GenerationRequest(
        provider=Provider.OPENAI,
        api_key="k",
        model="gpt-4o-mini",
        temperature=temperature,
        system_prompt="You answer questions about our shop.",
    )


def test_build_prompt_sections():
    prompt = build_prompt("System.", "Recent conversation:\nUser: hi\n", "hi")
    assert prompt.split("\n\n")[0] == "System."
    assert "Current user message: hi" in prompt
    assert prompt.endswith("available information.")
    assert build_document_context([]) == ""
    context = build_document_context([VectorMatch(id="1", content="A", similarity=0.9)])
    assert context == "Relevant information from documents:\n\nA"


def test_responder_summarises_long_history_and_persists_summary():
    history = [f"turn {i}" for i in range(9)]
    repo, conversation = _setup(history)
    adapter = FakeAdapter(replies=["user asked about turns", "Here you go", "condensed again"])
    gateway = LLMGateway(factories={Provider.OPENAI: lambda: adapter})
    responder = RagResponder(gateway, ConversationMemoryManager(repo), None)

    reply = responder.respond(conversation, _request(), "turn 8")

    assert reply.text == "Here you go"
    assert reply.relevant_chunks == 0
    summary_request, summary_messages = adapter.calls[0]
    assert summary_request.temperature == 0.3
    assert "turn 0" in summary_messages[0].content

    generation_request, generation_messages = adapter.calls[1]
    assert generation_request.temperature == 0.2
    assert generation_request.system_prompt is None
    prompt = generation_messages[0].content
    assert prompt.startswith("You answer questions about our shop.")
    assert "Previous conversation summary: user asked about turns" in prompt
    assert repo.get_conversation(conversation.id).notes == "user asked about turns"


def test_responder_includes_sources_and_survives_search_failure():
    repo, conversation = _setup(["shipping times?"])
    store = InMemoryVectorStore(
        [
            StoredChunk(
                id="c1",
                tenant_id="t1",
                content="We ship in 2 days.",
                embedding=[0.0, 1.0, 0.0, 0.0],
                document_name="shipping.md",
            )
        ]
    )
    adapter = FakeAdapter(replies=["Two days."])
    gateway = LLMGateway(factories={Provider.OPENAI: lambda: adapter})
    retrieval = VectorRetrievalService(store, store, KeywordEmbedder())
    reply = RagResponder(gateway, ConversationMemoryManager(repo), retrieval).respond(
        conversation, _request(temperature=0.1), "shipping times?"
    )
    assert reply.sources == ["shipping.md"]
    assert adapter.calls[0][0].temperature == 0.1

    class BrokenRetrieval:
        def search_text(self, *args, **kwargs):
            raise RuntimeError("embedding model unavailable")

    adapter.replies = ["Still answering."]
    reply = RagResponder(gateway, ConversationMemoryManager(repo), BrokenRetrieval()).respond(
        conversation, _request(), "shipping times?"
    )
    assert reply.text == "Still answering."
    assert reply.sources == []
