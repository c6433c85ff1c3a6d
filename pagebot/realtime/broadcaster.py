"""Topic fan-out of pipeline state changes to dashboard sessions.

Publishing is fire-and-forget: nothing is stored, and an event with no
subscriber is dropped. Workers run in threads, so the local broadcaster hands
events to each subscriber's event loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol
from uuid import uuid4

import redis
import redis.asyncio as aioredis

from ..conversations import schemas

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "pagebot:events"


def conversation_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def company_topic(tenant_id: str) -> str:
    return f"company:{tenant_id}"


class Broadcaster(Protocol):
    def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None: ...


class Subscription:
    """One live session's mailbox, bound to the loop that created it."""

    def __init__(self, hub: "LocalBroadcaster", loop: asyncio.AbstractEventLoop) -> None:
        self.id = uuid4().hex
        self._hub = hub
        self._loop = loop
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=hub.max_pending)
        self.topics: set[str] = set()

    def join(self, topic: str) -> None:
        self._hub._join(self, topic)

    def leave(self, topic: str) -> None:
        self._hub._leave(self, topic)

    async def get(self) -> dict[str, Any]:
        return await self._queue.get()

    def _offer(self, message: dict[str, Any]) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Dropping event for slow subscriber %s", self.id)

    def deliver(self, message: dict[str, Any]) -> None:
        try:
            self._loop.call_soon_threadsafe(self._offer, message)
        except RuntimeError:
            # Loop already closed; the session is gone.
            self.close()

    def close(self) -> None:
        self._hub._drop(self)


class LocalBroadcaster:
    def __init__(self, max_pending: int = 1000) -> None:
        self.max_pending = max_pending
        self._lock = threading.Lock()
        self._topics: dict[str, set[Subscription]] = {}

    def subscribe(self, topics: Iterable[str] = ()) -> Subscription:
        """Create a subscription; must be called from inside a running loop."""

        subscription = Subscription(self, asyncio.get_running_loop())
        for topic in topics:
            subscription.join(topic)
        return subscription

    def _join(self, subscription: Subscription, topic: str) -> None:
        with self._lock:
            self._topics.setdefault(topic, set()).add(subscription)
            subscription.topics.add(topic)

    def _leave(self, subscription: Subscription, topic: str) -> None:
        with self._lock:
            members = self._topics.get(topic)
            if members is not None:
                members.discard(subscription)
                if not members:
                    del self._topics[topic]
            subscription.topics.discard(topic)

    def _drop(self, subscription: Subscription) -> None:
        for topic in list(subscription.topics):
            self._leave(subscription, topic)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._topics.get(topic, ()))

    def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        with self._lock:
            members = list(self._topics.get(topic, ()))
        if not members:
            return
        message = {"topic": topic, "event": event, "data": payload}
        for subscription in members:
            subscription.deliver(message)


class RedisBroadcaster:
    """Publish events on a Redis channel so every web process can relay them."""

    def __init__(self, client: redis.Redis, channel: str = DEFAULT_CHANNEL) -> None:
        self._redis = client
        self.channel = channel

    @classmethod
    def from_url(cls, url: str, channel: str = DEFAULT_CHANNEL) -> "RedisBroadcaster":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            retry_on_timeout=True,
            socket_timeout=5,
            health_check_interval=30,
        )
        return cls(client, channel)

    def publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps({"topic": topic, "event": event, "data": payload}, default=str)
        self._redis.publish(self.channel, message)


class RedisRelay:
    """Forward events from the Redis channel into a local broadcaster."""

    def __init__(self, url: str, local: LocalBroadcaster, channel: str = DEFAULT_CHANNEL) -> None:
        self._url = url
        self._local = local
        self._channel = channel
        self._task: asyncio.Task | None = None

    async def _run(self) -> None:
        while True:
            try:
                async with aioredis.from_url(self._url, decode_responses=True) as client:
                    async with client.pubsub() as pubsub:
                        await pubsub.subscribe(self._channel)
                        logger.info("Relaying realtime events from %s", self._channel)
                        async for message in pubsub.listen():
                            if message.get("type") != "message":
                                continue
                            self._forward(message["data"])
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Realtime relay disconnected: %s; retrying", exc)
                await asyncio.sleep(2)

    def _forward(self, raw: str) -> None:
        try:
            message = json.loads(raw)
            self._local.publish(message["topic"], message["event"], message.get("data") or {})
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring malformed realtime event: %s", exc)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class EventPublisher:
    """Typed helpers for the dashboard event taxonomy.

    Every method swallows and logs broadcaster errors: a missed live update is
    recovered by the viewer's next reload, while a raised error would fail the
    pipeline job that produced it.
    """

    def __init__(self, broadcaster: Broadcaster) -> None:
        self._broadcaster = broadcaster

    def _emit(self, topic: str, event: str, data: dict[str, Any]) -> None:
        try:
            self._broadcaster.publish(topic, event, data)
        except Exception as exc:
            logger.warning("Failed to publish %s to %s: %s", event, topic, exc)

    @staticmethod
    def conversation_payload(
        conversation: schemas.Conversation, message_count: int = 0
    ) -> dict[str, Any]:
        data = conversation.model_dump(mode="json")
        data["customerName"] = conversation.customer_name
        data["messageCount"] = message_count
        return data

    def conversation_new(self, conversation: schemas.Conversation) -> None:
        self._emit(
            company_topic(conversation.tenant_id),
            "conversation:new",
            {"conversation": self.conversation_payload(conversation)},
        )

    def conversation_updated(
        self,
        conversation: schemas.Conversation,
        last_message_at: datetime | None,
        message_count: int,
    ) -> None:
        self._emit(
            company_topic(conversation.tenant_id),
            "conversation:updated",
            {
                "conversationId": conversation.id,
                "lastMessageAt": _iso(last_message_at),
                "messageCount": message_count,
            },
        )

    def message_new(self, message: schemas.Message, conversation: schemas.Conversation) -> None:
        payload = {
            "message": message.model_dump(mode="json", exclude={"dedupe_key"}),
            "conversation": {
                "id": conversation.id,
                "psid": conversation.psid,
                "status": conversation.status.value,
                "autoBot": conversation.auto_bot,
                "customerName": conversation.customer_name,
            },
        }
        self._emit(conversation_topic(conversation.id), "message:new", payload)
        self._emit(company_topic(conversation.tenant_id), "message:new", payload)

    def message_sent(
        self,
        conversation_id: str,
        message_id: str,
        platform_message_id: str,
        sent_at: datetime,
    ) -> None:
        self._emit(
            conversation_topic(conversation_id),
            "message:sent",
            {
                "messageId": message_id,
                "platformMessageId": platform_message_id,
                "sentAt": _iso(sent_at),
            },
        )

    def conversation_read(
        self, conversation: schemas.Conversation, user_id: str, timestamp: datetime
    ) -> None:
        payload = {
            "conversationId": conversation.id,
            "userId": user_id,
            "timestamp": _iso(timestamp),
        }
        self._emit(conversation_topic(conversation.id), "conversation:read", payload)
        self._emit(company_topic(conversation.tenant_id), "conversation:read", payload)

    def typing(self, conversation_id: str, user_id: str, active: bool) -> None:
        self._emit(
            conversation_topic(conversation_id),
            "typing:start" if active else "typing:stop",
            {"userId": user_id, "conversationId": conversation_id},
        )

    def presence(self, tenant_id: str, user_id: str, status: str) -> None:
        self._emit(
            company_topic(tenant_id),
            "presence:update",
            {"userId": user_id, "status": status},
        )
