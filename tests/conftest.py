import pathlib
import sys
from dataclasses import dataclass, field, replace

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from pagebot.app_logging import init_logging
from pagebot.config import Settings, reset_settings_cache
from pagebot.conversations import schemas
from pagebot.conversations.repository import InMemoryConversationRepository
from pagebot.db import in_memory_unit_of_work
from pagebot.llm.gateway import LLMGateway
from pagebot.llm.providers import ProviderAdapter
from pagebot.llm.types import GenerationResult, Provider, Usage
from pagebot.pipeline.startup import PipelineHandles, build_pipeline
from pagebot.pipeline.workers import StageWorker
from pagebot.queue.backends import InMemoryJobQueue
from pagebot.queue.jobs import Stage
from pagebot.realtime.broadcaster import LocalBroadcaster
from pagebot.retrieval.vector_store import InMemoryVectorStore, VectorRetrievalService
from pagebot.security.vault import CredentialVault, generate_key

PAGE_ID = "pg1"
TENANT_ID = "t1"
PAGE_TOKEN = "page-access-token"
VERIFY_TOKEN = "page-verify-token"
API_KEY = "sk-test"

VOCABULARY = ("refund", "shipping", "hours", "price")


class FakeAdapter(ProviderAdapter):
    """Scripted adapter: pops replies in order (raising queued exceptions)."""

    provider = Provider.OPENAI

    def __init__(self, replies=None, error: Exception | None = None):
        self.replies = list(replies or [])
        self.error = error
        self.calls = []

    def generate(self, request, messages):
        self.calls.append((request, list(messages)))
        if self.error is not None:
            raise self.error
        text = self.replies.pop(0) if self.replies else "Thanks for reaching out!"
        if isinstance(text, Exception):
            raise text
        return GenerationResult(
            text=text,
            provider=request.provider.value,
            model=request.model,
            usage=Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )


class FakeMessenger:
    """Records sends; raises queued ``failures`` first."""

    def __init__(self):
        self.sent = []
        self.failures = []
        self.profile_requests = []
        self.profile = schemas.CustomerProfile.from_graph(
            {"first_name": "Ada", "last_name": "Lovelace", "locale": "en_GB"}
        )

    def send_message(self, page_id, recipient_id, text, access_token):
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(
            {"page_id": page_id, "recipient_id": recipient_id, "text": text, "token": access_token}
        )
        return f"mid.{len(self.sent)}"

    def get_user_profile(self, psid, access_token):
        self.profile_requests.append(psid)
        return self.profile


class KeywordEmbedder:
    """Bag-of-words vectors over a tiny vocabulary."""

    def embed(self, text):
        words = text.lower().split()
        return [float(sum(1 for w in words if w.startswith(term))) for term in VOCABULARY]


class RecordingBroadcaster:
    def __init__(self):
        self.events = []

    def publish(self, topic, event, payload):
        self.events.append((topic, event, payload))

    def names(self, topic=None):
        return [e for t, e, _ in self.events if topic is None or t == topic]


@dataclass
class PipelineContext:
    handles: PipelineHandles
    repo: InMemoryConversationRepository
    queue: InMemoryJobQueue
    adapter: FakeAdapter
    messenger: FakeMessenger
    store: InMemoryVectorStore
    broadcaster: RecordingBroadcaster
    vault: CredentialVault
    settings: Settings
    connection: schemas.ChannelConnection = field(default=None)

    @property
    def pipeline(self):
        return self.handles.pipeline


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    for name in ("DATABASE_URL", "REDIS_URL", "QUEUE_BACKEND", "FB_APP_SECRET", "APP_ENV"):
        monkeypatch.delenv(name, raising=False)
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def vault():
    return CredentialVault(generate_key())


@pytest.fixture
def settings():
    return Settings(
        webhook_verify_token="global-verify-token",
        deliver_backoff_seconds=0.0,
        start_workers=False,
    )


@pytest.fixture
def pipeline_context(settings, vault):
    repo = InMemoryConversationRepository()
    connection = repo.add_connection(
        schemas.ChannelConnection(
            id="conn-1",
            tenant_id=TENANT_ID,
            page_id=PAGE_ID,
            page_name="Test Page",
            page_access_token_enc=vault.encrypt(PAGE_TOKEN),
            verify_token_enc=vault.encrypt(VERIFY_TOKEN),
        )
    )
    repo.set_generation_config(
        schemas.GenerationConfig(
            tenant_id=TENANT_ID,
            provider="OPENAI",
            api_key_enc=vault.encrypt(API_KEY),
            model="gpt-4o-mini",
            temperature=0.7,
        )
    )
    adapter = FakeAdapter()
    messenger = FakeMessenger()
    store = InMemoryVectorStore()
    broadcaster = RecordingBroadcaster()
    queue = InMemoryJobQueue()
    handles = build_pipeline(
        settings,
        unit_of_work=in_memory_unit_of_work(repo),
        queue=queue,
        vault=vault,
        gateway=LLMGateway(factories={Provider.OPENAI: lambda: adapter}),
        messenger=messenger,
        retrieval=VectorRetrievalService(store, store, KeywordEmbedder()),
        local_broadcaster=LocalBroadcaster(),
        broadcaster=broadcaster,
    )
    return PipelineContext(
        handles=handles,
        repo=repo,
        queue=queue,
        adapter=adapter,
        messenger=messenger,
        store=store,
        broadcaster=broadcaster,
        vault=vault,
        settings=settings,
        connection=connection,
    )


@pytest.fixture
def make_context(pipeline_context):
    """Rebuild the pipeline context with some settings overridden."""

    def _make(**overrides):
        ctx = pipeline_context
        new_settings = replace(ctx.settings, **overrides)
        handles = build_pipeline(
            new_settings,
            unit_of_work=ctx.handles.unit_of_work,
            queue=ctx.queue,
            vault=ctx.vault,
            gateway=LLMGateway(factories={Provider.OPENAI: lambda: ctx.adapter}),
            messenger=ctx.messenger,
            retrieval=VectorRetrievalService(ctx.store, ctx.store, KeywordEmbedder()),
            local_broadcaster=ctx.handles.local_broadcaster,
            broadcaster=ctx.broadcaster,
        )
        return replace(ctx, handles=handles, settings=new_settings)

    return _make


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


def drain(ctx, stages=tuple(Stage)):
    """Run stage workers synchronously until every queue is empty."""

    workers = [StageWorker(ctx.pipeline, ctx.queue, stage, poll_timeout=0) for stage in stages]
    progressed = True
    while progressed:
        progressed = False
        for worker in workers:
            while worker.run_once(timeout=0):
                progressed = True
