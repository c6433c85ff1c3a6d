"""Explicit pipeline construction, called once per process at boot."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from ..channels.messenger import MessengerClient
from ..config import Settings, get_settings
from ..conversations.repository import InMemoryConversationRepository
from ..db import UnitOfWork, in_memory_unit_of_work, postgres_unit_of_work
from ..llm.gateway import LLMGateway
from ..queue.backends import JobQueue, QueueUnavailableError, RedisJobQueue, create_job_queue
from ..queue.jobs import Stage
from ..realtime.broadcaster import (
    Broadcaster,
    EventPublisher,
    LocalBroadcaster,
    RedisBroadcaster,
    RedisRelay,
)
from ..retrieval.embeddings import Embedder
from ..retrieval.vector_store import (
    InMemoryVectorStore,
    PgVectorStore,
    VectorRetrievalService,
)
from ..security.vault import CredentialVault
from .stages import Pipeline
from .workers import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class PipelineHandles:
    """Everything the HTTP app and worker processes need, built once."""

    settings: Settings
    pipeline: Pipeline
    queue: JobQueue
    unit_of_work: UnitOfWork
    vault: CredentialVault
    events: EventPublisher
    local_broadcaster: LocalBroadcaster
    workers: WorkerPool | None = None
    relay: RedisRelay | None = None

    def stop(self) -> None:
        if self.workers is not None:
            self.workers.stop()
            self.workers = None
        self.queue.close()


def build_pipeline(
    settings: Settings | None = None,
    *,
    unit_of_work: UnitOfWork | None = None,
    queue: JobQueue | None = None,
    vault: CredentialVault | None = None,
    gateway: LLMGateway | None = None,
    messenger: MessengerClient | None = None,
    retrieval: VectorRetrievalService | None = None,
    local_broadcaster: LocalBroadcaster | None = None,
    broadcaster: Broadcaster | None = None,
) -> PipelineHandles:
    settings = settings or get_settings()
    vault = vault or CredentialVault(settings.encryption_key or "")

    if unit_of_work is None:
        if settings.database_url:
            unit_of_work = postgres_unit_of_work(settings.database_url)
        else:
            logger.warning("DATABASE_URL not set; using in-memory conversation store")
            unit_of_work = in_memory_unit_of_work(InMemoryConversationRepository())

    if retrieval is None:
        if settings.database_url:
            store = PgVectorStore.from_dsn(settings.database_url)
            retrieval = VectorRetrievalService(store, store, Embedder(settings.embedding_model))
        else:
            memory_store = InMemoryVectorStore()
            retrieval = VectorRetrievalService(
                memory_store, memory_store, Embedder(settings.embedding_model)
            )

    local_broadcaster = local_broadcaster or LocalBroadcaster()
    relay = None
    if broadcaster is None:
        if settings.redis_url:
            broadcaster = RedisBroadcaster.from_url(settings.redis_url)
            relay = RedisRelay(settings.redis_url, local_broadcaster)
        else:
            broadcaster = local_broadcaster
    events = EventPublisher(broadcaster)

    queue = queue or create_job_queue(settings)
    pipeline = Pipeline(
        unit_of_work,
        vault=vault,
        gateway=gateway or LLMGateway(),
        messenger=messenger
        or MessengerClient(settings.graph_api_version, settings.graph_api_timeout),
        events=events,
        retrieval=retrieval,
        settings=settings,
        queue=queue,
    )
    return PipelineHandles(
        settings=settings,
        pipeline=pipeline,
        queue=queue,
        unit_of_work=unit_of_work,
        vault=vault,
        events=events,
        local_broadcaster=local_broadcaster,
        relay=relay,
    )


def recover_in_flight(queue: JobQueue, stages: Iterable[Stage]) -> int:
    """Requeue jobs a crashed consumer left reserved on a durable queue."""

    if not isinstance(queue, RedisJobQueue):
        return 0
    try:
        return sum(queue.recover(stage) for stage in stages)
    except QueueUnavailableError as exc:
        logger.warning("Skipping in-flight job recovery: %s", exc)
        return 0


def start_pipeline(
    settings: Settings | None = None,
    *,
    stages: Iterable[Stage] | None = None,
    start_workers: bool | None = None,
    **overrides,
) -> PipelineHandles:
    """Build the pipeline and, unless disabled, start the stage workers."""

    handles = build_pipeline(settings, **overrides)
    run_workers = handles.settings.start_workers if start_workers is None else start_workers
    if run_workers:
        stages = tuple(stages) if stages is not None else tuple(Stage)
        recover_in_flight(handles.queue, stages)
        handles.workers = WorkerPool(
            handles.pipeline,
            handles.queue,
            stages=stages,
            concurrency=handles.settings.worker_concurrency,
        )
        handles.workers.start()
        logger.info(
            "Pipeline started with %d worker(s) per stage",
            handles.settings.worker_concurrency,
        )
    return handles
