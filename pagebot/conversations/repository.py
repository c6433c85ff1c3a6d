"""Persistence for channel connections, conversations and messages."""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from . import schemas
from .models import ConversationStatus, MessageRole, utcnow


class ConversationNotFoundError(RuntimeError):
    """Raised when a conversation id does not resolve to a stored row."""


class ConversationRepository(Protocol):
    """Abstraction over the conversation/message store used by the pipeline."""

    def get_connection_by_page(self, page_id: str) -> Optional[schemas.ChannelConnection]: ...

    def list_connections(self) -> List[schemas.ChannelConnection]: ...

    def get_generation_config(self, tenant_id: str) -> Optional[schemas.GenerationConfig]: ...

    def get_or_create_conversation(
        self, connection: schemas.ChannelConnection, psid: str
    ) -> Tuple[schemas.Conversation, bool]: ...

    def get_conversation(self, conversation_id: str) -> Optional[schemas.Conversation]: ...

    def get_conversation_by_thread(
        self, page_id: str, psid: str
    ) -> Optional[schemas.Conversation]: ...

    def update_conversation_meta(
        self, conversation_id: str, patch: Dict[str, Any]
    ) -> schemas.Conversation: ...

    def touch_conversation(self, conversation_id: str, last_message_at: datetime) -> None: ...

    def set_notes(self, conversation_id: str, notes: Optional[str]) -> None: ...

    def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        text: str,
        *,
        meta: Optional[Dict[str, Any]] = None,
        provider_used: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> Tuple[schemas.Message, bool]: ...

    def get_message(self, message_id: str) -> Optional[schemas.Message]: ...

    def get_message_by_dedupe_key(
        self, conversation_id: str, dedupe_key: str
    ) -> Optional[schemas.Message]: ...

    def find_recent_bot_message(
        self, conversation_id: str, text: str, provider: Optional[str], since: datetime
    ) -> Optional[schemas.Message]: ...

    def list_recent_messages(self, conversation_id: str, limit: int) -> List[schemas.Message]: ...

    def count_messages(self, conversation_id: str) -> int: ...

    def claim_message_flag(self, message_id: str, flag: str) -> bool: ...

    def update_message_meta(
        self, message_id: str, patch: Dict[str, Any]
    ) -> Optional[schemas.Message]: ...

    def mark_delivered(self, platform_message_ids: List[str], delivered_at: datetime) -> List[str]: ...


class PostgresConversationRepository:
    """PostgreSQL implementation of :class:`ConversationRepository`.

    Conversation creation relies on the unique ``(page_id, psid)`` index and
    message dedupe on the unique ``(conversation_id, dedupe_key)`` index, so
    concurrent workers never need an application-level lock.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    # Utility -----------------------------------------------------------------
    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    @staticmethod
    def _conversation(row: Dict[str, Any]) -> schemas.Conversation:
        data = dict(row)
        data["tags"] = list(data.get("tags") or [])
        data["meta"] = dict(data.get("meta") or {})
        return schemas.Conversation(**data)

    @staticmethod
    def _message(row: Dict[str, Any]) -> schemas.Message:
        data = dict(row)
        data["meta"] = dict(data.get("meta") or {})
        return schemas.Message(**data)

    # Channel configuration -----------------------------------------------------
    def get_connection_by_page(self, page_id: str) -> Optional[schemas.ChannelConnection]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM channel_connections WHERE page_id = %s", (page_id,))
            row = cur.fetchone()
        return schemas.ChannelConnection(**row) if row else None

    def list_connections(self) -> List[schemas.ChannelConnection]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM channel_connections ORDER BY page_id")
            rows = cur.fetchall()
        return [schemas.ChannelConnection(**row) for row in rows]

    def get_generation_config(self, tenant_id: str) -> Optional[schemas.GenerationConfig]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM generation_configs WHERE tenant_id = %s", (tenant_id,))
            row = cur.fetchone()
        return schemas.GenerationConfig(**row) if row else None

    # Conversation operations --------------------------------------------------
    def get_or_create_conversation(
        self, connection: schemas.ChannelConnection, psid: str
    ) -> Tuple[schemas.Conversation, bool]:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO conversations
                    (id, tenant_id, connection_id, page_id, psid, status, auto_bot,
                     last_message_at, tags, meta, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, true, now(), %s, %s, now())
                ON CONFLICT (page_id, psid) DO NOTHING
                RETURNING *
                """,
                (
                    str(uuid4()),
                    connection.tenant_id,
                    connection.id,
                    connection.page_id,
                    psid,
                    ConversationStatus.OPEN.value,
                    Jsonb([]),
                    Jsonb({}),
                ),
            )
            row = cur.fetchone()
            if row:
                return self._conversation(row), True
            cur.execute(
                "SELECT * FROM conversations WHERE page_id = %s AND psid = %s",
                (connection.page_id, psid),
            )
            row = cur.fetchone()
        if not row:  # pragma: no cover - row deleted between statements
            raise ConversationNotFoundError(f"Conversation for {psid} vanished during upsert")
        return self._conversation(row), False

    def get_conversation(self, conversation_id: str) -> Optional[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM conversations WHERE id = %s", (conversation_id,))
            row = cur.fetchone()
        return self._conversation(row) if row else None

    def get_conversation_by_thread(
        self, page_id: str, psid: str
    ) -> Optional[schemas.Conversation]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM conversations WHERE page_id = %s AND psid = %s",
                (page_id, psid),
            )
            row = cur.fetchone()
        return self._conversation(row) if row else None

    def update_conversation_meta(
        self, conversation_id: str, patch: Dict[str, Any]
    ) -> schemas.Conversation:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE conversations SET meta = coalesce(meta, '{}'::jsonb) || %s
                WHERE id = %s
                RETURNING *
                """,
                (Jsonb(patch), conversation_id),
            )
            row = cur.fetchone()
        if not row:
            raise ConversationNotFoundError(conversation_id)
        return self._conversation(row)

    def touch_conversation(self, conversation_id: str, last_message_at: datetime) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE conversations SET last_message_at = %s WHERE id = %s",
                (last_message_at, conversation_id),
            )

    def set_notes(self, conversation_id: str, notes: Optional[str]) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE conversations SET notes = %s WHERE id = %s",
                (notes, conversation_id),
            )

    # Message operations ---------------------------------------------------------
    def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        text: str,
        *,
        meta: Optional[Dict[str, Any]] = None,
        provider_used: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> Tuple[schemas.Message, bool]:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO messages
                    (id, conversation_id, role, text, meta, provider_used, dedupe_key, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, now())
                ON CONFLICT (conversation_id, dedupe_key) DO NOTHING
                RETURNING *
                """,
                (
                    str(uuid4()),
                    conversation_id,
                    MessageRole(role).value,
                    text,
                    Jsonb(meta or {}),
                    provider_used,
                    dedupe_key,
                ),
            )
            row = cur.fetchone()
            if row:
                return self._message(row), True
            cur.execute(
                "SELECT * FROM messages WHERE conversation_id = %s AND dedupe_key = %s",
                (conversation_id, dedupe_key),
            )
            row = cur.fetchone()
        return self._message(row), False

    def get_message(self, message_id: str) -> Optional[schemas.Message]:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM messages WHERE id = %s", (message_id,))
            row = cur.fetchone()
        return self._message(row) if row else None

    def get_message_by_dedupe_key(
        self, conversation_id: str, dedupe_key: str
    ) -> Optional[schemas.Message]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM messages WHERE conversation_id = %s AND dedupe_key = %s",
                (conversation_id, dedupe_key),
            )
            row = cur.fetchone()
        return self._message(row) if row else None

    def find_recent_bot_message(
        self, conversation_id: str, text: str, provider: Optional[str], since: datetime
    ) -> Optional[schemas.Message]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM messages
                WHERE conversation_id = %s AND role = %s AND text = %s
                  AND provider_used IS NOT DISTINCT FROM %s AND created_at >= %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (conversation_id, MessageRole.BOT.value, text, provider, since),
            )
            row = cur.fetchone()
        return self._message(row) if row else None

    def list_recent_messages(self, conversation_id: str, limit: int) -> List[schemas.Message]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM messages WHERE conversation_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (conversation_id, limit),
            )
            rows = cur.fetchall()
        return [self._message(row) for row in reversed(rows)]

    def count_messages(self, conversation_id: str) -> int:
        with self._cursor() as cur:
            cur.execute(
                "SELECT count(*) AS total FROM messages WHERE conversation_id = %s",
                (conversation_id,),
            )
            row = cur.fetchone()
        return int(row["total"]) if row else 0

    def claim_message_flag(self, message_id: str, flag: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE messages
                SET meta = coalesce(meta, '{}'::jsonb) || jsonb_build_object(%s::text, true)
                WHERE id = %s AND coalesce((meta ->> %s)::boolean, false) = false
                RETURNING id
                """,
                (flag, message_id, flag),
            )
            row = cur.fetchone()
        return row is not None

    def update_message_meta(
        self, message_id: str, patch: Dict[str, Any]
    ) -> Optional[schemas.Message]:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE messages SET meta = coalesce(meta, '{}'::jsonb) || %s
                WHERE id = %s
                RETURNING *
                """,
                (Jsonb(patch), message_id),
            )
            row = cur.fetchone()
        return self._message(row) if row else None

    def mark_delivered(self, platform_message_ids: List[str], delivered_at: datetime) -> List[str]:
        if not platform_message_ids:
            return []
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE messages
                SET meta = coalesce(meta, '{}'::jsonb) || %s
                WHERE meta ->> 'facebookMessageId' = ANY(%s)
                RETURNING id
                """,
                (
                    Jsonb({"delivered": True, "deliveredAt": delivered_at.isoformat()}),
                    list(platform_message_ids),
                ),
            )
            rows = cur.fetchall()
        return [row["id"] for row in rows]


# ---------------------------------------------------------------------------
# In-memory repository (useful for testing and sandbox environments)


class InMemoryConversationRepository:
    """Thread-safe in-process store honouring the same uniqueness rules."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._connections: Dict[str, schemas.ChannelConnection] = {}
        self._configs: Dict[str, schemas.GenerationConfig] = {}
        self._conversations: Dict[str, schemas.Conversation] = {}
        self._threads: Dict[Tuple[str, str], str] = {}
        self._messages: Dict[str, schemas.Message] = {}
        self._dedupe: Dict[Tuple[str, str], str] = {}

    # Seeding helpers used by tests and the sandbox
    def add_connection(self, connection: schemas.ChannelConnection) -> schemas.ChannelConnection:
        with self._lock:
            self._connections[connection.page_id] = connection
        return connection

    def set_generation_config(self, config: schemas.GenerationConfig) -> schemas.GenerationConfig:
        with self._lock:
            self._configs[config.tenant_id] = config
        return config

    def get_connection_by_page(self, page_id: str) -> Optional[schemas.ChannelConnection]:
        with self._lock:
            return self._connections.get(page_id)

    def list_connections(self) -> List[schemas.ChannelConnection]:
        with self._lock:
            return sorted(self._connections.values(), key=lambda c: c.page_id)

    def get_generation_config(self, tenant_id: str) -> Optional[schemas.GenerationConfig]:
        with self._lock:
            return self._configs.get(tenant_id)

    def get_or_create_conversation(
        self, connection: schemas.ChannelConnection, psid: str
    ) -> Tuple[schemas.Conversation, bool]:
        key = (connection.page_id, psid)
        with self._lock:
            existing = self._threads.get(key)
            if existing:
                return self._conversations[existing].model_copy(deep=True), False
            now = utcnow()
            conversation = schemas.Conversation(
                id=str(uuid4()),
                tenant_id=connection.tenant_id,
                connection_id=connection.id,
                page_id=connection.page_id,
                psid=psid,
                last_message_at=now,
                created_at=now,
            )
            self._conversations[conversation.id] = conversation
            self._threads[key] = conversation.id
            return conversation.model_copy(deep=True), True

    def get_conversation(self, conversation_id: str) -> Optional[schemas.Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    def get_conversation_by_thread(
        self, page_id: str, psid: str
    ) -> Optional[schemas.Conversation]:
        with self._lock:
            conversation_id = self._threads.get((page_id, psid))
        return self.get_conversation(conversation_id) if conversation_id else None

    def update_conversation_meta(
        self, conversation_id: str, patch: Dict[str, Any]
    ) -> schemas.Conversation:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if not conversation:
                raise ConversationNotFoundError(conversation_id)
            conversation.meta = {**conversation.meta, **patch}
            return conversation.model_copy(deep=True)

    def touch_conversation(self, conversation_id: str, last_message_at: datetime) -> None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation:
                conversation.last_message_at = last_message_at

    def set_notes(self, conversation_id: str, notes: Optional[str]) -> None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation:
                conversation.notes = notes

    def set_auto_bot(self, conversation_id: str, enabled: bool) -> None:
        with self._lock:
            self._conversations[conversation_id].auto_bot = enabled

    def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        text: str,
        *,
        meta: Optional[Dict[str, Any]] = None,
        provider_used: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> Tuple[schemas.Message, bool]:
        with self._lock:
            if dedupe_key is not None:
                existing = self._dedupe.get((conversation_id, dedupe_key))
                if existing:
                    return self._messages[existing].model_copy(deep=True), False
            message = schemas.Message(
                id=str(uuid4()),
                conversation_id=conversation_id,
                role=MessageRole(role),
                text=text,
                created_at=utcnow(),
                meta=dict(meta or {}),
                provider_used=provider_used,
                dedupe_key=dedupe_key,
            )
            self._messages[message.id] = message
            if dedupe_key is not None:
                self._dedupe[(conversation_id, dedupe_key)] = message.id
            return message.model_copy(deep=True), True

    def get_message(self, message_id: str) -> Optional[schemas.Message]:
        with self._lock:
            message = self._messages.get(message_id)
            return message.model_copy(deep=True) if message else None

    def get_message_by_dedupe_key(
        self, conversation_id: str, dedupe_key: str
    ) -> Optional[schemas.Message]:
        with self._lock:
            message_id = self._dedupe.get((conversation_id, dedupe_key))
        return self.get_message(message_id) if message_id else None

    def find_recent_bot_message(
        self, conversation_id: str, text: str, provider: Optional[str], since: datetime
    ) -> Optional[schemas.Message]:
        with self._lock:
            candidates = [
                m
                for m in self._messages.values()
                if m.conversation_id == conversation_id
                and m.role == MessageRole.BOT
                and m.text == text
                and m.provider_used == provider
                and m.created_at >= since
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda m: m.created_at).model_copy(deep=True)

    def list_recent_messages(self, conversation_id: str, limit: int) -> List[schemas.Message]:
        with self._lock:
            messages = [
                m.model_copy(deep=True)
                for m in self._messages.values()
                if m.conversation_id == conversation_id
            ]
        messages.sort(key=lambda m: m.created_at)
        return messages[-limit:] if limit else []

    def count_messages(self, conversation_id: str) -> int:
        with self._lock:
            return sum(1 for m in self._messages.values() if m.conversation_id == conversation_id)

    def claim_message_flag(self, message_id: str, flag: str) -> bool:
        with self._lock:
            message = self._messages.get(message_id)
            if not message or message.meta.get(flag):
                return False
            message.meta = {**message.meta, flag: True}
            return True

    def update_message_meta(
        self, message_id: str, patch: Dict[str, Any]
    ) -> Optional[schemas.Message]:
        with self._lock:
            message = self._messages.get(message_id)
            if not message:
                return None
            message.meta = {**message.meta, **patch}
            return message.model_copy(deep=True)

    def mark_delivered(self, platform_message_ids: List[str], delivered_at: datetime) -> List[str]:
        wanted = set(platform_message_ids)
        updated: List[str] = []
        with self._lock:
            for message in self._messages.values():
                if message.meta.get("facebookMessageId") in wanted:
                    message.meta = {
                        **message.meta,
                        "delivered": True,
                        "deliveredAt": delivered_at.isoformat(),
                    }
                    updated.append(message.id)
        return updated
