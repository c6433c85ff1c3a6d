"""Connection helpers handing repositories to pipeline jobs.

Every repository operation the pipeline performs is a single atomic
statement (upsert, insert-on-conflict, compare-and-set update), so job
connections run in autocommit mode and no transaction stays open while a job
waits on an embedding, generation or platform call.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager

import psycopg

from .conversations.repository import (
    ConversationRepository,
    InMemoryConversationRepository,
    PostgresConversationRepository,
)

logger = logging.getLogger(__name__)

UnitOfWork = Callable[[], AbstractContextManager[ConversationRepository]]


def postgres_unit_of_work(dsn: str) -> UnitOfWork:
    @contextmanager
    def _open() -> Iterator[ConversationRepository]:
        conn = psycopg.connect(dsn, autocommit=True)
        try:
            yield PostgresConversationRepository(conn)
        finally:
            conn.close()

    return _open


def in_memory_unit_of_work(repository: InMemoryConversationRepository) -> UnitOfWork:
    @contextmanager
    def _open() -> Iterator[ConversationRepository]:
        yield repository

    return _open
