"""WebSocket endpoint carrying client commands in and notifications out."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from agentwatch.models import CloseSessionRequest, CreateSessionRequest, FocusSessionRequest
from agentwatch.session_registry import DuplicateSessionError, SessionNotFoundError, SessionRegistry

logger = logging.getLogger("agentwatch.ws")

ws_router = APIRouter(tags=["ws"])


def handle_client_message(registry: SessionRegistry, data: Any) -> None:
    """Apply one inbound client message. Invalid messages are logged and ignored."""
    msg_type = data.get("type") if isinstance(data, dict) else None
    try:
        if msg_type == "clientReady":
            registry.client_ready()
        elif msg_type == "createSession":
            body = CreateSessionRequest(**data)
            registry.create_session(body.sessionKey, body.logPath, body.projectDir, pid=body.pid)
        elif msg_type == "closeSession":
            body = CloseSessionRequest(**data)
            if not registry.remove_session(body.id):
                logger.warning(f"closeSession for unknown session {body.id}")
        elif msg_type == "focusSession":
            registry.focus_session(FocusSessionRequest(**data).id)
        else:
            logger.warning(f"Ignoring unknown client message type: {msg_type!r}")
    except ValidationError as exc:
        logger.warning(f"Invalid {msg_type} message: {exc}")
    except DuplicateSessionError as exc:
        logger.warning(f"createSession ignored, {exc} is already tracked")
    except SessionNotFoundError as exc:
        logger.warning(f"focusSession ignored, unknown session {exc}")


async def _pump(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        payload = await queue.get()
        await websocket.send_json(payload)


@ws_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    hub = websocket.app.state.notification_hub
    registry: SessionRegistry = websocket.app.state.session_registry
    queue = hub.subscribe()
    sender = asyncio.create_task(_pump(websocket, queue))
    logger.info(f"Client connected ({hub.subscriber_count} total)")

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (json.JSONDecodeError, ValueError):
                logger.warning("Ignoring malformed client message")
                continue
            handle_client_message(registry, data)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.warning("WebSocket error", exc_info=True)
    finally:
        hub.unsubscribe(queue)
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        logger.info(f"Client disconnected ({hub.subscriber_count} remaining)")
