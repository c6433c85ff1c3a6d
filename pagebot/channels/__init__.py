"""Messaging platform integration."""

from .messenger import (
    MessengerAPIError,
    MessengerClient,
    classify_event,
    iter_events,
    verify_signature,
)

__all__ = [
    "MessengerAPIError",
    "MessengerClient",
    "classify_event",
    "iter_events",
    "verify_signature",
]
