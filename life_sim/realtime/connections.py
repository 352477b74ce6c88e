"""WebSocket 连接登记与消息投递。"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """一条已接受的连接；``user_id`` 为空表示只读（未登录）连接。"""

    id: str
    websocket: WebSocket
    user_id: Optional[str] = None
    connected_at: float = field(default_factory=time.time)

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


def envelope(event: str, data: Any, ack: Optional[Any] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {"event": event, "data": data}
    if ack is not None:
        message["ack"] = ack
    return message


class ConnectionManager:
    """Manage active WebSocket connections."""

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: Optional[str] = None) -> Connection:
        """Accept and register a new connection."""
        await websocket.accept()
        return await self.register(websocket, user_id)

    async def register(self, websocket: WebSocket, user_id: Optional[str] = None) -> Connection:
        connection = Connection(id=uuid.uuid4().hex, websocket=websocket, user_id=user_id)
        async with self._lock:
            self._connections[connection.id] = connection
        logger.info(
            "WebSocket connected (user=%s). Total connections: %d",
            user_id,
            len(self._connections),
        )
        return connection

    async def disconnect(self, connection_id: str) -> Optional[Connection]:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
        if connection is not None:
            logger.info(
                "WebSocket disconnected. Total connections: %d", len(self._connections)
            )
        return connection

    def get(self, connection_id: Optional[str]) -> Optional[Connection]:
        if connection_id is None:
            return None
        return self._connections.get(connection_id)

    async def send(
        self, connection_id: Optional[str], event: str, data: Any, *, ack: Optional[Any] = None
    ) -> bool:
        """向单个连接发送消息；发送失败时移除该连接并返回 False。"""

        connection = self.get(connection_id)
        if connection is None:
            return False
        try:
            await connection.websocket.send_text(json.dumps(envelope(event, data, ack)))
        except Exception as exc:
            logger.warning("Failed to send to WebSocket %s: %s", connection_id, exc)
            await self.disconnect(connection.id)
            return False
        return True

    async def broadcast(self, event: str, data: Any) -> int:
        """Send a message to all connected clients; returns the number delivered."""
        if not self._connections:
            return 0

        payload = json.dumps(envelope(event, data))
        disconnected: List[str] = []
        delivered = 0

        async with self._lock:
            for connection in list(self._connections.values()):
                try:
                    await connection.websocket.send_text(payload)
                    delivered += 1
                except Exception as exc:
                    logger.warning("Failed to send to WebSocket %s: %s", connection.id, exc)
                    disconnected.append(connection.id)

            for connection_id in disconnected:
                self._connections.pop(connection_id, None)
        return delivered

    @property
    def connection_count(self) -> int:
        return len(self._connections)


__all__ = ["Connection", "ConnectionManager", "envelope"]
