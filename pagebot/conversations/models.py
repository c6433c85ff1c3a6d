"""Domain enums and helpers used by the conversation pipeline."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class ConversationStatus(str, Enum):
    OPEN = "OPEN"
    SNOOZED = "SNOOZED"
    CLOSED = "CLOSED"


class MessageRole(str, Enum):
    USER = "USER"
    BOT = "BOT"
    AGENT = "AGENT"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def user_dedupe_key(
    text: str, source_timestamp: int | None, source_message_id: str | None = None
) -> str:
    """Key collapsing redelivered webhook messages of one conversation.

    The platform timestamp is preferred; events without one fall back to the
    platform message id, which is equally stable across redeliveries.
    """

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    if source_timestamp is not None:
        return f"USER:{source_timestamp}:{digest}"
    if source_message_id:
        return f"USER:mid:{source_message_id}:{digest}"
    raise ValueError("Inbound message needs a source timestamp or message id")


def reply_dedupe_key(trigger_message_id: str) -> str:
    """Key allowing at most one bot reply per triggering message."""

    return f"BOT:{trigger_message_id}"


@dataclass(frozen=True)
class InboundEvent:
    """A classified messaging event extracted from a webhook entry."""

    kind: str
    page_id: str
    sender_id: str
    payload: dict
    timestamp: int | None = None
