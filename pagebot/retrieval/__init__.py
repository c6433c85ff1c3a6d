"""Embedding and similarity search."""

from .embeddings import Embedder
from .vector_store import (
    InMemoryVectorStore,
    PgVectorStore,
    StoredChunk,
    VectorMatch,
    VectorRetrievalService,
    VectorStoreError,
    cosine_similarity,
    rank_chunks,
)

__all__ = [
    "Embedder",
    "InMemoryVectorStore",
    "PgVectorStore",
    "StoredChunk",
    "VectorMatch",
    "VectorRetrievalService",
    "VectorStoreError",
    "cosine_similarity",
    "rank_chunks",
]
