"""
限流工具。

- :class:`RateLimiter`：固定窗口（fixed-window）计数器，按 (key, 窗口) 计数，
    用于登录等粗粒度的接口防刷。传入 Redis 客户端时计数在多进程间共享，
    否则使用单进程内存计数（本地运行与测试场景）。
- :class:`UpdateThrottle`：按连接的最小间隔节流，用于实时通道上高频的
    ``update`` 事件，间隔内到达的事件直接丢弃。
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from redis.asyncio import Redis


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_seconds: int


class RateLimiter:
    def __init__(
        self,
        *,
        window_seconds: int,
        max_calls: int,
        prefix: str = "life_sim:rl",
        redis: Optional[Redis] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.window = int(window_seconds)
        self.max_calls = int(max_calls)
        self.prefix = prefix
        self._redis = redis
        self._clock = clock
        self._memory: Dict[str, Tuple[int, int]] = {}
        self._lock = asyncio.Lock()

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    async def check(self, name: str) -> RateLimitResult:
        if self._redis is not None:
            return await self._check_redis(name)
        return await self._check_memory(name)

    def _window_start(self) -> Tuple[int, int]:
        now = int(self._clock())
        return now, now - (now % self.window)

    def _result(self, calls: int, now: int, window_start: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=calls <= self.max_calls,
            remaining=max(0, self.max_calls - calls),
            reset_seconds=self.window - (now - window_start),
        )

    async def _check_redis(self, name: str) -> RateLimitResult:
        assert self._redis is not None
        now, window_start = self._window_start()
        # 每个窗口一个计数键，过期时间略长于窗口
        key = self._key(f"{name}:{window_start}")
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(key, 1)
            pipe.expire(key, self.window + 2)
            calls, _ = await pipe.execute()
        return self._result(int(calls or 0), now, window_start)

    async def _check_memory(self, name: str) -> RateLimitResult:
        now, window_start = self._window_start()
        key = self._key(name)
        async with self._lock:
            calls, started = self._memory.get(key, (0, window_start))
            calls = calls + 1 if started == window_start else 1
            self._memory[key] = (calls, window_start)
        return self._result(calls, now, window_start)


class UpdateThrottle:
    """同一个 key 两次放行之间至少间隔 ``min_interval`` 秒。"""

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval = float(min_interval)
        self._clock = clock
        self._last: Dict[str, float] = {}

    def allow(self, key: str) -> bool:
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last < self.min_interval:
            return False
        self._last[key] = now
        return True

    def forget(self, key: str) -> None:
        self._last.pop(key, None)


__all__ = ["RateLimitResult", "RateLimiter", "UpdateThrottle"]
