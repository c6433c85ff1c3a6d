"""Tables backing channel connections, conversations, messages and chunks.

Uniqueness rules the workers rely on live here as indexes:

* ``conversations (page_id, psid)`` makes conversation creation an upsert.
* ``messages (conversation_id, dedupe_key)`` collapses redelivered messages.
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Engine,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from . import Base

logger = logging.getLogger(__name__)

EMBEDDING_DIMENSIONS = 384

_Json = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ChannelConnection(Base):
    """A connected messaging page and its encrypted credentials."""

    __tablename__ = "channel_connections"
    __table_args__ = (
        Index("ix_channel_connections_page_id_unique", "page_id", unique=True),
        Index("ix_channel_connections_tenant_id", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    page_id: Mapped[str] = mapped_column(String(64), nullable=False)
    page_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    page_access_token_enc: Mapped[str] = mapped_column(Text(), nullable=False)
    verify_token_enc: Mapped[str | None] = mapped_column(Text(), nullable=True)


class GenerationConfig(Base):
    """Per-tenant LLM provider settings."""

    __tablename__ = "generation_configs"

    tenant_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    api_key_enc: Mapped[str | None] = mapped_column(Text(), nullable=True)
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    temperature: Mapped[float] = mapped_column(
        Float(), nullable=False, default=0.7, server_default=text("0.7")
    )
    max_tokens: Mapped[int] = mapped_column(
        Integer(), nullable=False, default=1000, server_default=text("1000")
    )
    system_prompt: Mapped[str] = mapped_column(Text(), nullable=False)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_thread_unique", "page_id", "psid", unique=True),
        Index("ix_conversations_tenant_last_message", "tenant_id", "last_message_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    connection_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("channel_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    page_id: Mapped[str] = mapped_column(String(64), nullable=False)
    psid: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="OPEN", server_default=text("'OPEN'")
    )
    auto_bot: Mapped[bool] = mapped_column(
        Boolean(), nullable=False, default=True, server_default=text("true")
    )
    last_message_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text(), nullable=True)
    tags: Mapped[list[str]] = mapped_column(_Json, nullable=False, default=list)
    meta: Mapped[dict[str, Any]] = mapped_column(_Json, nullable=False, default=dict)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_dedupe_unique", "conversation_id", "dedupe_key", unique=True),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    text: Mapped[str] = mapped_column(Text(), nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(_Json, nullable=False, default=dict)
    provider_used: Mapped[str | None] = mapped_column(String(32), nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(160), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class DocumentChunk(Base):
    """Embedded document chunk written by the (external) training flow."""

    __tablename__ = "document_chunks"
    __table_args__ = (Index("ix_document_chunks_tenant_id", "tenant_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    document_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    chunk_index: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    embedding: Mapped[Any] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=True)


MATCH_DOCUMENTS_SQL = """
CREATE OR REPLACE FUNCTION match_documents(
    query_embedding vector,
    company_id text,
    match_threshold float,
    match_count int
)
RETURNS TABLE (id text, content text, metadata jsonb, similarity float)
LANGUAGE sql STABLE
AS $$
    SELECT c.id,
           c.content,
           jsonb_build_object(
               'documentName', c.document_name,
               'fileType', c.file_type,
               'chunkIndex', c.chunk_index
           ) AS metadata,
           1 - (c.embedding <=> query_embedding) AS similarity
    FROM document_chunks c
    WHERE c.tenant_id = company_id
      AND c.embedding IS NOT NULL
      AND 1 - (c.embedding <=> query_embedding) >= match_threshold
    ORDER BY c.embedding <=> query_embedding
    LIMIT match_count;
$$;
"""


def ensure_schema(engine: Engine) -> None:
    """Create the tables (and on Postgres the search function) if missing."""

    is_postgres = engine.dialect.name == "postgresql"
    if is_postgres:
        with engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
    Base.metadata.create_all(engine)
    if is_postgres:
        with engine.begin() as conn:
            conn.execute(text(MATCH_DOCUMENTS_SQL))
        logger.info("match_documents function installed")
