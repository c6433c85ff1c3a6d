"""SQLAlchemy declarative base and the tables consumed by the pipeline.

The repositories talk raw SQL through psycopg; the models here mirror that
DDL so the schema can be created (or diffed) from Python in one place.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


from .pipeline import (  # noqa: E402
    ChannelConnection,
    Conversation,
    DocumentChunk,
    GenerationConfig,
    Message,
    ensure_schema,
)

__all__ = [
    "Base",
    "ChannelConnection",
    "Conversation",
    "DocumentChunk",
    "GenerationConfig",
    "Message",
    "ensure_schema",
]
