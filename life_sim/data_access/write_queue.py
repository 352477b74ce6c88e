"""写入合并队列：把频繁的持久化请求合并成一次整份文档写入。

刷新策略：

- ``schedule()``：按时间去抖（delay-and-coalesce），窗口内的多次请求只写一次最新快照；
- ``flush()``：强制同步写入并等待完成，写入失败时向调用方抛出
  :class:`~life_sim.data_access.document_store.PersistenceError`（用于登出等关键路径）；
- 常规去抖写入失败只记录日志，写入器保持 dirty 状态，由下一次调度或强制刷新重试。

允许进行中的写入被后续写入覆盖（last-writer-wins）。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from .document_store import DocumentStore, PersistenceError

logger = logging.getLogger(__name__)


class DebouncedWriter:
    def __init__(
        self,
        store: DocumentStore,
        key: str,
        snapshot: Callable[[], Dict[str, Any]],
        *,
        delay: float = 0.25,
    ) -> None:
        self._store = store
        self._key = key
        self._snapshot = snapshot
        self._delay = max(0.0, float(delay))
        self._timer: Optional[asyncio.Task] = None
        self._dirty = False
        self.writes = 0
        self.failures = 0

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def schedule(self) -> None:
        """标记为 dirty 并（重新）启动去抖计时器。"""

        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop yet; the next flush() or schedule() inside the loop writes
            return
        if self.pending:
            self._timer.cancel()
        self._timer = loop.create_task(self._debounced())

    async def _debounced(self) -> None:
        try:
            await asyncio.sleep(self._delay)
        except asyncio.CancelledError:
            return
        try:
            await self._write()
        except PersistenceError:
            logger.warning(
                "Debounced write of %s failed; will retry on next write", self._key,
                exc_info=True,
            )

    async def _write(self) -> None:
        payload = self._snapshot()
        self._dirty = False
        try:
            await self._store.save(self._key, payload)
        except PersistenceError:
            self._dirty = True
            self.failures += 1
            raise
        except Exception as exc:
            self._dirty = True
            self.failures += 1
            raise PersistenceError(f"Failed to persist {self._key!r}") from exc
        self.writes += 1

    async def flush(self) -> None:
        """取消挂起的计时器并立即写入最新快照，失败时抛出异常。"""

        if self.pending:
            self._timer.cancel()
        self._timer = None
        await self._write()

    async def close(self) -> None:
        """关闭前的最终刷新：仅在有未写入变更时写入。"""

        if self.pending:
            self._timer.cancel()
        self._timer = None
        if self._dirty:
            await self._write()


__all__ = ["DebouncedWriter"]
