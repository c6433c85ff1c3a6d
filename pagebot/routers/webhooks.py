"""Messenger webhook verification and event ingestion."""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections.abc import Mapping
from typing import Any

from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from ..channels.messenger import (
    EVENT_DELIVERY,
    EVENT_MESSAGE,
    EVENT_POSTBACK,
    EVENT_READ,
    iter_events,
    verify_signature,
)
from ..conversations.models import InboundEvent
from ..pipeline.stages import Pipeline
from ..pipeline.startup import PipelineHandles
from ..queue.backends import QueueUnavailableError
from ..queue.jobs import IngestJob

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/messenger", tags=["webhooks"])


def get_handles(request: Request) -> PipelineHandles:
    handles = getattr(request.app.state, "pipeline", None)
    if handles is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline not started"
        )
    return handles


def _known_verify_tokens(handles: PipelineHandles) -> list[str]:
    tokens: list[str] = []
    if handles.settings.webhook_verify_token:
        tokens.append(handles.settings.webhook_verify_token)
    try:
        with handles.unit_of_work() as repo:
            connections = repo.list_connections()
    except Exception as exc:
        logger.warning("Could not load page verify tokens: %s", exc)
        return tokens
    for connection in connections:
        token = handles.vault.decrypt_or_none(connection.verify_token_enc)
        if token:
            tokens.append(token)
    return tokens


def token_matches(candidate: str, known: list[str]) -> bool:
    """Compare against every known token without short-circuiting."""

    matched = False
    for token in known:
        matched |= hmac.compare_digest(candidate.encode("utf-8"), token.encode("utf-8"))
    return matched


@router.get("")
def verify_webhook(request: Request) -> Response:
    params = request.query_params
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token")
    challenge = params.get("hub.challenge")
    if not mode or not token or challenge is None:
        raise HTTPException(status_code=400, detail="Missing verification parameters")
    if mode != "subscribe":
        raise HTTPException(status_code=403, detail="Invalid verification mode")
    handles = get_handles(request)
    if not token_matches(token, _known_verify_tokens(handles)):
        logger.warning("Webhook verification rejected")
        raise HTTPException(status_code=403, detail="Verification token mismatch")
    logger.info("Webhook verified")
    return PlainTextResponse(challenge)


# ---------------------------------------------------------------------------
# Event handling


def _text_for(event: InboundEvent) -> str:
    if event.kind == EVENT_POSTBACK:
        postback = event.payload.get("postback") or {}
        return str(postback.get("title") or postback.get("payload") or "")
    return str(event.payload["message"]["text"])


def _source_message_id(event: InboundEvent) -> str | None:
    body = event.payload.get("postback" if event.kind == EVENT_POSTBACK else "message") or {}
    mid = body.get("mid")
    return str(mid) if mid else None


def submit_ingest(pipeline: Pipeline, job: IngestJob) -> str:
    """Enqueue ``job``; run it synchronously if the queue is down."""

    try:
        pipeline.dispatch(job)
        return "queued"
    except QueueUnavailableError as exc:
        logger.warning("Queue unavailable (%s); processing message inline", exc)
        pipeline.run_inline(job)
        return "inline"


def handle_event(pipeline: Pipeline, event: InboundEvent) -> str:
    if event.kind in (EVENT_MESSAGE, EVENT_POSTBACK):
        text = _text_for(event)
        if not text:
            return "skipped"
        mid = _source_message_id(event)
        timestamp = event.timestamp
        if timestamp is None and mid is None:
            timestamp = int(time.time() * 1000)
        job = IngestJob(
            channel_id=event.page_id,
            sender_id=event.sender_id,
            text=text,
            source_timestamp=int(timestamp) if timestamp is not None else None,
            source_message_id=mid,
        )
        return submit_ingest(pipeline, job)
    if event.kind == EVENT_DELIVERY:
        mids = (event.payload.get("delivery") or {}).get("mids") or []
        pipeline.record_delivery(event.page_id, [str(m) for m in mids])
        return "delivery"
    if event.kind == EVENT_READ:
        watermark = (event.payload.get("read") or {}).get("watermark")
        pipeline.record_read(event.page_id, event.sender_id, watermark)
        return "read"
    return "skipped"


def process_webhook_payload(pipeline: Pipeline, payload: Mapping[str, Any]) -> dict[str, int]:
    """Handle every event in order; one bad event never aborts the batch."""

    summary = {"processed": 0, "failed": 0}
    for item in iter_events(payload):
        if isinstance(item, Exception):
            logger.warning("Skipping malformed webhook event: %s", item)
            summary["failed"] += 1
            continue
        try:
            handle_event(pipeline, item)
            summary["processed"] += 1
        except Exception:
            logger.exception(
                "Failed to process %s event for page %s", item.kind, item.page_id
            )
            summary["failed"] += 1
    return summary


@router.post("")
async def receive_webhook(request: Request) -> Response:
    handles = get_handles(request)
    body = await request.body()

    secret = handles.settings.app_secret
    if secret:
        if not verify_signature(body, request.headers, secret):
            logger.warning("Webhook signature mismatch")
            raise HTTPException(status_code=403, detail="Invalid signature")
    elif handles.settings.is_production:
        logger.error("FB_APP_SECRET is not configured; rejecting unsigned webhook")
        raise HTTPException(status_code=403, detail="Signature verification unavailable")
    else:
        logger.warning("FB_APP_SECRET not configured; accepting unsigned webhook")

    try:
        payload = json.loads(body.decode("utf-8")) if body else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict) or payload.get("object") != "page":
        raise HTTPException(status_code=400, detail="Unsupported webhook object")
    if not isinstance(payload.get("entry"), list):
        raise HTTPException(status_code=400, detail="Webhook entry must be a list")

    summary = await run_in_threadpool(process_webhook_payload, handles.pipeline, payload)
    return JSONResponse({"status": "EVENT_RECEIVED", **summary})
