"""WebSocket handling for the realtime world channel."""

from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .protocol import ClientMessage

logger = logging.getLogger(__name__)

router = APIRouter()


async def _resolve_user_id(websocket: WebSocket) -> Optional[str]:
    """签名会话 cookie 优先，其次是 ``?token=`` 查询参数中的会话令牌。"""

    if "session" in websocket.scope:
        user_id = websocket.session.get("user_id")
        if user_id:
            return str(user_id)
    token = websocket.query_params.get("token")
    if token:
        runtime = websocket.app.state.runtime
        return await runtime.users.get_user_id_by_token(token)
    return None


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    runtime = websocket.app.state.runtime
    user_id = await _resolve_user_id(websocket)
    connection = await runtime.connections.connect(websocket, user_id)

    try:
        await runtime.connections.send(connection.id, "state", runtime.world.snapshot())
        while True:
            raw = await websocket.receive_text()
            if raw == "ping":
                await websocket.send_text("pong")
                continue
            try:
                message = ClientMessage.model_validate(json.loads(raw))
            except (ValueError, ValidationError):
                logger.debug("Ignoring malformed message: %s", raw[:100])
                continue
            await runtime.handlers.dispatch(
                connection, message.event, message.data, message.ack
            )
    except WebSocketDisconnect:
        logger.info("Client disconnected normally")
    except Exception as exc:
        logger.warning("WebSocket error: %s", exc)
    finally:
        await runtime.connections.disconnect(connection.id)
        await runtime.handlers.on_disconnect(connection)


__all__ = ["router"]
