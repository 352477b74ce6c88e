"""持久化文档存储：以整份文档为读写单元的键值存储及其实现。

存储边界上没有「局部更新」原语，调用方必须读-改-写整份文档。

- :class:`InMemoryDocumentStore`：测试与本地运行使用；
- :class:`JsonFileDocumentStore`：本地磁盘，每个键一个 ``<key>.json``，
  通过临时文件 + ``os.replace`` 原子替换；
- :class:`RedisDocumentStore`：跨进程共享的 JSON 存储；
- :class:`CompositeDocumentStore`：主存储 + 本地兜底，生产模式下主存储写入失败
  直接抛出 :class:`PersistenceError`，避免静默丢数据。
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from redis.asyncio import Redis

from ..utils.settings import PersistenceConfig

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """在持久化流程出现不可恢复错误时抛出的异常。"""


class DocumentStore(Protocol):
    """通用文档存储接口，抽象出加载与保存操作。"""

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        """读取整份文档，若不存在则返回 ``None``。"""

    async def save(self, key: str, document: Dict[str, Any]) -> None:
        """整份写入文档；失败时抛出 :class:`PersistenceError`。"""

    async def delete(self, key: str) -> None:
        """删除指定文档。"""


class InMemoryDocumentStore:
    """使用内存字典保存文档，主要用于测试或本地运行。"""

    def __init__(self) -> None:
        self._storage: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self.save_calls = 0

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            document = self._storage.get(key)
            return copy.deepcopy(document) if document is not None else None

    async def save(self, key: str, document: Dict[str, Any]) -> None:
        async with self._lock:
            self._storage[key] = copy.deepcopy(document)
            self.save_calls += 1

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._storage.pop(key, None)


class JsonFileDocumentStore:
    """本地磁盘 JSON 文档存储。"""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)

    def _path(self, key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return self._directory / f"{safe}.json"

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        raw = path.read_text(encoding="utf-8")
        parsed = json.loads(raw) if raw.strip() else None
        return parsed if isinstance(parsed, dict) else None

    def _write(self, path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, path)

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read, self._path(key))

    async def save(self, key: str, document: Dict[str, Any]) -> None:
        payload = json.dumps(document, ensure_ascii=False, indent=2)
        try:
            await asyncio.to_thread(self._write, self._path(key), payload)
        except OSError as exc:
            raise PersistenceError(f"Failed to write document {key!r} to disk") from exc

    async def delete(self, key: str) -> None:
        path = self._path(key)
        await asyncio.to_thread(path.unlink, True)


class RedisDocumentStore:
    """基于 Redis 的 JSON 文档存储，实现跨进程持久化。"""

    def __init__(self, redis: Redis, prefix: str = "life_sim") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:doc:{key}"

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        data = await self._redis.get(self._key(key))
        if data is None:
            return None
        return json.loads(data)

    async def save(self, key: str, document: Dict[str, Any]) -> None:
        try:
            await self._redis.set(self._key(key), json.dumps(document))
        except Exception as exc:
            raise PersistenceError(f"Failed to write document {key!r} to redis") from exc

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))


class CompositeDocumentStore:
    """组合存储：主存储优先，本地兜底。"""

    def __init__(
        self,
        *,
        primary: DocumentStore,
        fallback: Optional[DocumentStore] = None,
        allow_fallback_writes: bool = True,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._allow_fallback_writes = allow_fallback_writes

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        """优先从主存储读取；主存储读取失败视为致命错误。"""

        try:
            document = await self._primary.load(key)
        except Exception as exc:
            logger.error("Failed to load document %s from primary store", key, exc_info=exc)
            raise PersistenceError(f"Cannot load document {key!r}") from exc
        if document is not None or self._fallback is None:
            return document
        document = await self._fallback.load(key)
        if document is not None:
            # 回填主存储，之后的读取不再依赖本地副本
            try:
                await self._primary.save(key, document)
            except Exception:
                logger.warning("Backfill of %s into primary store failed", key, exc_info=True)
        return document

    async def save(self, key: str, document: Dict[str, Any]) -> None:
        try:
            await self._primary.save(key, document)
            return
        except Exception as exc:
            if self._fallback is None or not self._allow_fallback_writes:
                raise PersistenceError(
                    f"Failed to persist document {key!r} to primary store"
                ) from exc
            logger.warning(
                "Primary store write failed for %s; writing local fallback", key,
                exc_info=exc,
            )
        await self._fallback.save(key, document)

    async def delete(self, key: str) -> None:
        await self._primary.delete(key)
        if self._fallback is not None:
            await self._fallback.delete(key)


def build_document_store(config: PersistenceConfig) -> DocumentStore:
    """根据配置构造文档存储；Redis 后端附带本地磁盘兜底。"""

    if config.backend == "memory":
        return InMemoryDocumentStore()
    local = JsonFileDocumentStore(config.data_dir)
    if config.backend == "redis" and config.redis_url:
        redis = Redis.from_url(config.redis_url, encoding="utf-8", decode_responses=True)
        return CompositeDocumentStore(
            primary=RedisDocumentStore(redis, prefix=config.redis_prefix),
            fallback=local,
            allow_fallback_writes=not config.production,
        )
    return local


__all__ = [
    "CompositeDocumentStore",
    "DocumentStore",
    "InMemoryDocumentStore",
    "JsonFileDocumentStore",
    "PersistenceError",
    "RedisDocumentStore",
    "build_document_store",
]
