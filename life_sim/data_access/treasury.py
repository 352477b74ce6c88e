"""政府国库：租金与工资的汇入方，公共设施的出资方。"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .database import GameDatabase
from .models import Government, coerce_amount, now_ms

logger = logging.getLogger(__name__)


class GovernmentTreasury:
    def __init__(self, database: GameDatabase) -> None:
        self._db = database

    def get(self) -> Government:
        return self._db.government

    def snapshot(self) -> Dict[str, Any]:
        return self._db.government.model_dump(mode="json")

    def add_funds(self, delta: Any) -> int:
        """累加资金（向下取整，结果不低于 0），返回新余额。"""

        try:
            amount = int(float(delta or 0))
        except (TypeError, ValueError):
            amount = 0
        government = self._db.government
        government.funds = max(0, government.funds + amount)
        self._db.log_activity("gov_funds", None, {"delta": amount, "funds": government.funds})
        return government.funds

    def set(self, funds: Any = None, placed: Optional[List[Dict[str, Any]]] = None) -> Government:
        government = self._db.government
        if funds is not None:
            government.funds = coerce_amount(funds)
        if isinstance(placed, list):
            government.placed = list(placed)
        self._db.schedule_persist()
        return government

    def place(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(payload)
        record.setdefault("ts", now_ms())
        self._db.government.placed.append(record)
        self._db.log_activity("gov_place", record.get("by"), {"type": record.get("type")})
        return record

    def spend(self, cost: Any) -> bool:
        """资金足够时扣款并返回 True；不足时不做任何修改。"""

        amount = coerce_amount(cost)
        government = self._db.government
        if government.funds < amount:
            return False
        government.funds -= amount
        self._db.schedule_persist()
        return True


__all__ = ["GovernmentTreasury"]
