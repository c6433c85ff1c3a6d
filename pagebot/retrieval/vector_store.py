"""Tenant-scoped similarity search over embedded document chunks.

Searches go through the ``match_documents`` SQL function first. When that
call fails (function missing, pgvector index unavailable, driver error) the
service scans the tenant's chunk rows and ranks them in-process, returning the
same shape, filter, order and limit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np
import psycopg
from pgvector.psycopg import register_vector
from psycopg.rows import dict_row

from .embeddings import Embedder

logger = logging.getLogger(__name__)


class VectorStoreError(RuntimeError):
    """Raised when the remote similarity search cannot be completed."""


@dataclass
class VectorMatch:
    id: str
    content: str
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "metadata": dict(self.metadata),
            "similarity": self.similarity,
        }


@dataclass
class StoredChunk:
    id: str
    tenant_id: str
    content: str
    embedding: Sequence[float] | None
    document_name: str | None = None
    file_type: str | None = None
    chunk_index: int = 0

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "documentName": self.document_name,
            "fileType": self.file_type,
            "chunkIndex": self.chunk_index,
        }


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return ``dot(a, b) / (|a| * |b|)``; 0.0 when either norm is zero."""

    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions differ: {va.shape[0]} != {vb.shape[0]}")
    norm = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def rank_chunks(
    query_vector: Sequence[float],
    chunks: Sequence[StoredChunk],
    top_k: int,
    min_similarity: float,
) -> list[VectorMatch]:
    """Filter, sort descending and truncate chunks by cosine similarity."""

    matches: list[VectorMatch] = []
    for chunk in chunks:
        if chunk.embedding is None or len(chunk.embedding) != len(query_vector):
            continue
        score = cosine_similarity(query_vector, chunk.embedding)
        if score >= min_similarity:
            matches.append(
                VectorMatch(
                    id=chunk.id,
                    content=chunk.content,
                    similarity=score,
                    metadata=chunk.metadata,
                )
            )
    matches.sort(key=lambda m: m.similarity, reverse=True)
    return matches[: max(top_k, 0)]


class SimilaritySearch(Protocol):
    def match_documents(
        self,
        query_embedding: Sequence[float],
        tenant_id: str,
        match_threshold: float,
        match_count: int,
    ) -> list[VectorMatch]: ...


class ChunkSource(Protocol):
    def list_chunks(self, tenant_id: str) -> list[StoredChunk]: ...


class PgVectorStore:
    """pgvector-backed store implementing both search paths."""

    def __init__(self, connect: Callable[[], psycopg.Connection]) -> None:
        self._connect = connect

    @classmethod
    def from_dsn(cls, dsn: str) -> "PgVectorStore":
        def _connect() -> psycopg.Connection:
            conn = psycopg.connect(dsn)
            register_vector(conn)
            return conn

        return cls(_connect)

    def match_documents(
        self,
        query_embedding: Sequence[float],
        tenant_id: str,
        match_threshold: float,
        match_count: int,
    ) -> list[VectorMatch]:
        try:
            with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    "SELECT * FROM match_documents(%s, %s, %s, %s)",
                    (
                        np.asarray(query_embedding, dtype=np.float32),
                        tenant_id,
                        match_threshold,
                        match_count,
                    ),
                )
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise VectorStoreError(f"match_documents failed: {exc}") from exc
        return [
            VectorMatch(
                id=str(row["id"]),
                content=row["content"],
                similarity=float(row["similarity"]),
                metadata=dict(row.get("metadata") or {}),
            )
            for row in rows
        ]

    def list_chunks(self, tenant_id: str) -> list[StoredChunk]:
        with self._connect() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT id, tenant_id, content, embedding, document_name, file_type, chunk_index
                FROM document_chunks
                WHERE tenant_id = %s AND embedding IS NOT NULL
                """,
                (tenant_id,),
            )
            rows = cur.fetchall()
        return [
            StoredChunk(
                id=str(row["id"]),
                tenant_id=row["tenant_id"],
                content=row["content"],
                embedding=list(row["embedding"]) if row["embedding"] is not None else None,
                document_name=row["document_name"],
                file_type=row["file_type"],
                chunk_index=row["chunk_index"],
            )
            for row in rows
        ]


class InMemoryVectorStore:
    """Chunk store kept in a list; serves both the RPC and the scan path."""

    def __init__(self, chunks: Sequence[StoredChunk] | None = None) -> None:
        self._chunks: list[StoredChunk] = list(chunks or [])

    def add(self, chunk: StoredChunk) -> StoredChunk:
        self._chunks.append(chunk)
        return chunk

    def delete_tenant(self, tenant_id: str) -> int:
        before = len(self._chunks)
        self._chunks = [c for c in self._chunks if c.tenant_id != tenant_id]
        return before - len(self._chunks)

    def list_chunks(self, tenant_id: str) -> list[StoredChunk]:
        return [c for c in self._chunks if c.tenant_id == tenant_id]

    def match_documents(
        self,
        query_embedding: Sequence[float],
        tenant_id: str,
        match_threshold: float,
        match_count: int,
    ) -> list[VectorMatch]:
        return rank_chunks(
            query_embedding, self.list_chunks(tenant_id), match_count, match_threshold
        )


class VectorRetrievalService:
    def __init__(
        self,
        remote: SimilaritySearch | None,
        chunks: ChunkSource,
        embedder: Embedder | None = None,
    ) -> None:
        self._remote = remote
        self._chunks = chunks
        self._embedder = embedder

    def embed(self, text: str) -> list[float]:
        if self._embedder is None:
            raise VectorStoreError("No embedder configured")
        return self._embedder.embed(text)

    def search(
        self,
        query_vector: Sequence[float],
        tenant_id: str,
        top_k: int = 5,
        min_similarity: float = 0.7,
    ) -> list[VectorMatch]:
        """Return matches with ``similarity >= min_similarity``, best first."""

        if top_k <= 0:
            return []
        if self._remote is not None:
            try:
                matches = self._remote.match_documents(
                    query_vector, tenant_id, min_similarity, top_k
                )
            except (VectorStoreError, psycopg.Error) as exc:
                logger.warning(
                    "Vector RPC failed for tenant %s, scanning locally: %s", tenant_id, exc
                )
            else:
                # Hold the remote path to the same contract as the local scan.
                filtered = [m for m in matches if m.similarity >= min_similarity]
                filtered.sort(key=lambda m: m.similarity, reverse=True)
                return filtered[:top_k]
        return rank_chunks(
            query_vector, self._chunks.list_chunks(tenant_id), top_k, min_similarity
        )

    def search_text(
        self, query: str, tenant_id: str, top_k: int = 5, min_similarity: float = 0.7
    ) -> list[VectorMatch]:
        return self.search(self.embed(query), tenant_id, top_k, min_similarity)
