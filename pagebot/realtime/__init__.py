"""Realtime dashboard events."""

from .broadcaster import (
    Broadcaster,
    EventPublisher,
    LocalBroadcaster,
    RedisBroadcaster,
    RedisRelay,
    Subscription,
    company_topic,
    conversation_topic,
)

__all__ = [
    "Broadcaster",
    "EventPublisher",
    "LocalBroadcaster",
    "RedisBroadcaster",
    "RedisRelay",
    "Subscription",
    "company_topic",
    "conversation_topic",
]
