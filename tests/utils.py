"""Shared testing helpers: in-memory runtimes, fake sockets and a manual clock."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from life_sim.core.runtime import GameRuntime
from life_sim.data_access.document_store import InMemoryDocumentStore, PersistenceError
from life_sim.realtime.connections import Connection
from life_sim.utils.settings import (
    AgentConfig,
    GameConfig,
    PersistenceConfig,
    WorldParameters,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeWebSocket:
    """记录发送内容的 WebSocket 替身；``fail`` 为真时发送抛出异常。"""

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.accepted = False
        self.fail = fail

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [m for m in self.sent if name is None or m["event"] == name]

    def clear(self) -> None:
        self.sent.clear()


class FailingDocumentStore(InMemoryDocumentStore):
    """可读但写入总是失败的文档存储。"""

    async def save(self, key: str, document: Dict[str, Any]) -> None:
        raise PersistenceError(f"refusing to write {key}")


def make_config(**sections: Any) -> GameConfig:
    """内存后端、无代理、无去抖延迟的测试配置；可按段覆盖。"""

    defaults: Dict[str, Any] = {
        "persistence": PersistenceConfig(
            backend="memory", brain_debounce_seconds=0.0, ledger_debounce_seconds=0.0
        ),
        "agents": AgentConfig(count=0, shop_visit_probability=0.0, seed=7),
        "world": WorldParameters(),
    }
    defaults.update(sections)
    return GameConfig(**defaults)


def make_runtime(
    *, store: Any = None, clock: Any = None, **sections: Any
) -> GameRuntime:
    kwargs: Dict[str, Any] = {"store": store if store is not None else InMemoryDocumentStore()}
    if clock is not None:
        kwargs["clock"] = clock
    return GameRuntime(make_config(**sections), **kwargs)


async def join(
    runtime: GameRuntime, user_id: Optional[str], **player: Any
) -> tuple[Connection, FakeWebSocket]:
    """注册一条假连接；给出 user_id 时同时创建其在线玩家。"""

    socket = FakeWebSocket()
    connection = await runtime.connections.register(socket, user_id)
    if user_id is not None:
        await runtime.handlers.dispatch(connection, "createPlayer", {"code": user_id, **player})
    return connection, socket
