"""游戏主文档（brain）的内存容器与持久化调度。

主文档包含用户、每个用户的 Progress、政府、工厂/银行/房屋全局列表以及活动日志。
ProfileStore、WorldRegistry、GovernmentTreasury 与用户存储都是这份文档之上的视图，
它们修改内存后调用 :meth:`GameDatabase.schedule_persist`，由去抖写入器合并落盘。
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from .document_store import DocumentStore
from .models import ActivityRecord, Bank, Factory, Government, House, Progress
from .write_queue import DebouncedWriter

logger = logging.getLogger(__name__)

BRAIN_DOCUMENT_KEY = "brain"


class GameDatabase:
    """持有主文档的全部内存状态。"""

    def __init__(
        self,
        store: DocumentStore,
        *,
        key: str = BRAIN_DOCUMENT_KEY,
        debounce_seconds: float = 0.25,
        activity_log_limit: int = 5000,
    ) -> None:
        self._store = store
        self._key = key
        self.users: Dict[str, Dict[str, Any]] = {}
        self.progress: Dict[str, Progress] = {}
        self.government = Government()
        self.factories: List[Factory] = []
        self.banks: List[Bank] = []
        self.houses: List[House] = []
        self.activity_log: Deque[ActivityRecord] = deque(maxlen=activity_log_limit)
        self._writer = DebouncedWriter(
            store, key, self.to_document, delay=debounce_seconds
        )
        self.loaded = False

    @property
    def writer(self) -> DebouncedWriter:
        return self._writer

    async def load(self) -> None:
        """读取主文档；缺失字段按当前模型默认值回填。"""

        document = await self._store.load(self._key)
        if document is None:
            logger.warning(
                "Document %s not found; using empty initial state until first save",
                self._key,
            )
            self.loaded = True
            return
        self.apply_document(document)
        self.loaded = True
        logger.info(
            "Loaded %s: %d users, %d progress records, %d houses",
            self._key,
            len(self.users),
            len(self.progress),
            len(self.houses),
        )

    def apply_document(self, document: Dict[str, Any]) -> None:
        users = document.get("users") or {}
        if isinstance(users, list):
            # older saves kept users as a list
            users = {str(u.get("id")): u for u in users if isinstance(u, dict)}
        self.users = {str(k): dict(v) for k, v in users.items() if isinstance(v, dict)}
        self.progress = {
            str(user_id): Progress.model_validate(raw)
            for user_id, raw in (document.get("progress") or {}).items()
            if isinstance(raw, dict)
        }
        gov = document.get("government")
        self.government = Government.model_validate(gov if isinstance(gov, dict) else {})
        self.factories = [Factory.model_validate(f) for f in document.get("factories") or []]
        self.banks = [Bank.model_validate(b) for b in document.get("banks") or []]
        self.houses = [House.model_validate(h) for h in document.get("houses") or []]
        self.activity_log.clear()
        for raw in document.get("activityLog") or []:
            try:
                self.activity_log.append(ActivityRecord.model_validate(raw))
            except Exception:
                logger.debug("Skipping malformed activity record: %r", raw)

    def to_document(self) -> Dict[str, Any]:
        return {
            "users": {k: dict(v) for k, v in self.users.items()},
            "progress": {
                user_id: progress.model_dump(mode="json", by_alias=True)
                for user_id, progress in self.progress.items()
            },
            "government": self.government.model_dump(mode="json"),
            "factories": [f.model_dump(mode="json", by_alias=True) for f in self.factories],
            "banks": [b.model_dump(mode="json", by_alias=True) for b in self.banks],
            "houses": [h.model_dump(mode="json", by_alias=True) for h in self.houses],
            "activityLog": [
                record.model_dump(mode="json", by_alias=True)
                for record in self.activity_log
            ],
        }

    def log_activity(
        self,
        type_: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.activity_log.append(
            ActivityRecord(type=type_, user_id=user_id, details=details)
        )
        self.schedule_persist()

    def schedule_persist(self) -> None:
        self._writer.schedule()

    async def flush(self) -> None:
        await self._writer.flush()

    async def close(self) -> None:
        await self._writer.close()


__all__ = ["BRAIN_DOCUMENT_KEY", "GameDatabase"]
