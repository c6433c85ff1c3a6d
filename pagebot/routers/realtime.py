"""WebSocket endpoint streaming pipeline events to dashboard sessions.

Clients connect to ``/ws?companyId=...&userId=...`` and are subscribed to
their company topic. They can then send JSON actions:

- ``{"action": "join", "conversationId": ...}`` / ``"leave"``
- ``{"action": "typing:start" | "typing:stop", "conversationId": ...}``
- ``{"action": "presence", "status": "online" | "away" | ...}``
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from ..realtime.broadcaster import Subscription, company_topic, conversation_topic

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        message = await subscription.get()
        await websocket.send_json(message)


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    companyId: str | None = None,
    userId: str | None = None,
) -> None:
    handles = getattr(websocket.app.state, "pipeline", None)
    if handles is None:
        await websocket.close(code=1013)
        return
    events = handles.events
    await websocket.accept()
    subscription = handles.local_broadcaster.subscribe()
    if companyId:
        subscription.join(company_topic(companyId))
        if userId:
            await run_in_threadpool(events.presence, companyId, userId, "online")
    pump = asyncio.create_task(_pump(websocket, subscription))
    try:
        while True:
            data = await websocket.receive_json()
            action = data.get("action") if isinstance(data, dict) else None
            conversation_id = data.get("conversationId") if isinstance(data, dict) else None
            if action == "join" and conversation_id:
                subscription.join(conversation_topic(conversation_id))
                await websocket.send_json({"event": "joined", "data": {"conversationId": conversation_id}})
            elif action == "leave" and conversation_id:
                subscription.leave(conversation_topic(conversation_id))
            elif action in ("typing:start", "typing:stop") and conversation_id and userId:
                await run_in_threadpool(
                    events.typing, conversation_id, userId, action == "typing:start"
                )
            elif action == "presence" and companyId and userId:
                await run_in_threadpool(
                    events.presence, companyId, userId, str(data.get("status") or "online")
                )
            else:
                await websocket.send_json({"event": "error", "data": {"detail": "Unknown action"}})
    except WebSocketDisconnect:
        pass
    except ValueError as exc:
        logger.warning("Closing realtime socket after bad frame: %s", exc)
    finally:
        pump.cancel()
        subscription.close()
        if companyId and userId:
            await run_in_threadpool(events.presence, companyId, userId, "offline")
