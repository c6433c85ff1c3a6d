"""Messenger platform client, webhook signature checks and event parsing."""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Iterable, Mapping
from typing import Any

import requests

from ..conversations.models import InboundEvent
from ..conversations.schemas import CustomerProfile

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com"

# Graph API error codes that signal throttling or temporary outages.
TRANSIENT_ERROR_CODES = {1, 2, 4, 17, 32, 613}

EVENT_MESSAGE = "message"
EVENT_DELIVERY = "delivery"
EVENT_READ = "read"
EVENT_POSTBACK = "postback"


class MessengerAPIError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        if self.error_code in TRANSIENT_ERROR_CODES:
            return True
        return self.status_code == 429 or self.status_code >= 500


class MessengerClient:
    """Thin wrapper over the Graph API send and profile endpoints."""

    def __init__(
        self,
        api_version: str = "v18.0",
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_version = api_version
        self.timeout = timeout
        self._session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{GRAPH_API_BASE}/{self.api_version}/{path}"

    def _raise_for(self, response: requests.Response) -> None:
        if response.ok:
            return
        error_code = None
        detail = response.text
        try:
            error = (response.json() or {}).get("error") or {}
            error_code = error.get("code")
            detail = error.get("message") or detail
        except ValueError:
            pass
        raise MessengerAPIError(
            f"Graph API error {response.status_code}: {detail}",
            status_code=response.status_code,
            error_code=error_code,
        )

    def send_message(self, page_id: str, recipient_id: str, text: str, access_token: str) -> str:
        """Send a text message and return the platform message id."""

        try:
            response = self._session.post(
                self._url(f"{page_id}/messages"),
                json={
                    "recipient": {"id": recipient_id},
                    "message": {"text": text},
                    "access_token": access_token,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise MessengerAPIError(f"Graph API request failed: {exc}") from exc
        self._raise_for(response)
        data = response.json()
        message_id = data.get("message_id")
        if not message_id:
            raise MessengerAPIError(
                "Graph API response missing message_id", status_code=response.status_code
            )
        return message_id

    def get_user_profile(self, psid: str, access_token: str) -> CustomerProfile:
        try:
            response = self._session.get(
                self._url(psid),
                params={
                    "fields": "first_name,last_name,profile_pic,locale",
                    "access_token": access_token,
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise MessengerAPIError(f"Profile request failed: {exc}") from exc
        self._raise_for(response)
        return CustomerProfile.from_graph(response.json())


# ---------------------------------------------------------------------------
# Webhook helpers


def verify_signature(body: bytes, headers: Mapping[str, str], secret: str) -> bool:
    """Check ``X-Hub-Signature-256`` (or legacy ``X-Hub-Signature``) over ``body``."""

    received = headers.get("x-hub-signature-256")
    algorithm = hashlib.sha256
    prefix = "sha256="
    if not received:
        received = headers.get("x-hub-signature")
        algorithm = hashlib.sha1
        prefix = "sha1="
    if not received:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, algorithm).hexdigest()
    return hmac.compare_digest(received.strip(), f"{prefix}{digest}")


def classify_event(event: Mapping[str, Any]) -> str | None:
    message = event.get("message")
    if isinstance(message, Mapping) and message.get("text") and not message.get("is_echo"):
        return EVENT_MESSAGE
    if event.get("delivery"):
        return EVENT_DELIVERY
    if event.get("read"):
        return EVENT_READ
    if event.get("postback"):
        return EVENT_POSTBACK
    return None


def iter_events(payload: Mapping[str, Any]) -> Iterable[InboundEvent | Exception]:
    """Yield classified events in order; malformed entries yield the error."""

    for entry in payload.get("entry", []):
        try:
            page_id = str(entry["id"])
            events = entry.get("messaging") or []
        except (KeyError, TypeError, AttributeError) as exc:
            yield ValueError(f"Malformed entry: {exc!r}")
            continue
        for event in events:
            try:
                kind = classify_event(event)
                if kind is None:
                    logger.debug("Skipping unrecognised messaging event on page %s", page_id)
                    continue
                yield InboundEvent(
                    kind=kind,
                    page_id=page_id,
                    sender_id=str(event["sender"]["id"]),
                    payload=dict(event),
                    timestamp=event.get("timestamp"),
                )
            except (KeyError, TypeError, AttributeError) as exc:
                yield ValueError(f"Malformed messaging event: {exc!r}")
