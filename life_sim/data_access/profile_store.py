"""用户 Progress 存储。

核心一致性约束：**任何余额变更都必须经过账本**。``set_money`` / ``add_money``
以及 patch 中携带的 money/bank 都会同步调用 ``LedgerStore.record_movement``，
因此 Progress 与账本快照始终一致。
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .database import GameDatabase
from .ledger_store import LedgerStore
from .models import (
    CreditResult,
    House,
    Progress,
    ProgressPatch,
    Shop,
    coerce_amount,
)

logger = logging.getLogger(__name__)

_LIST_FIELDS = {"vehicles", "shops", "houses", "likes"}
# 只能由服务器修改的商店字段
_SERVER_SHOP_FIELDS = ("owner_id", "cashbox", "employee_id", "created_at")


class ProfileStore:
    """对外暴露 Progress 的读取、白名单更新与资金操作。"""

    def __init__(
        self,
        database: GameDatabase,
        ledger: LedgerStore,
        *,
        default_money: int = 400,
    ) -> None:
        self._db = database
        self._ledger = ledger
        self._default_money = default_money
        ledger.bind_accounts(self)

    def username_for(self, user_id: str) -> Optional[str]:
        user = self._db.users.get(user_id)
        if user is not None:
            return user.get("username")
        progress = self._db.progress.get(user_id)
        return progress.name if progress is not None else None

    def schedule_persist(self) -> None:
        self._db.schedule_persist()

    def ensure_progress(self, user_id: str) -> Progress:
        """返回已有 Progress，或按默认值惰性创建。"""

        progress = self._db.progress.get(user_id)
        if progress is None:
            progress = Progress(money=self._default_money)
            self._db.progress[user_id] = progress
            self._db.schedule_persist()
        return progress

    def get_progress(self, user_id: Optional[str]) -> Optional[Progress]:
        if not user_id:
            return None
        return self.ensure_progress(user_id)

    def has_progress(self, user_id: str) -> bool:
        return user_id in self._db.progress

    def register_agent(
        self, agent_id: str, *, name: Optional[str] = None, money: Optional[int] = None
    ) -> Progress:
        """为服务器代理创建 Progress 条目（不创建用户）。"""

        existing = self._db.progress.get(agent_id)
        if existing is not None:
            return existing
        progress = self.ensure_progress(agent_id)
        progress.name = name or agent_id
        progress.money = coerce_amount(self._default_money if money is None else money)
        progress.is_bot = True
        self._db.log_activity("bot_register", agent_id, {"name": progress.name})
        return progress

    def update_progress(self, user_id: Optional[str], patch: Any) -> bool:
        """按白名单更新字段；未知键忽略，列表字段整体替换。"""

        if not user_id:
            return False
        if isinstance(patch, ProgressPatch):
            parsed = patch
        elif isinstance(patch, dict):
            parsed = ProgressPatch.model_validate(patch)
        else:
            return False
        progress = self.ensure_progress(user_id)
        fields = parsed.provided_fields()
        money = fields.pop("money", None)
        bank = fields.pop("bank", None)
        for name, value in fields.items():
            if name == "shops":
                value = self._merge_shops(user_id, progress.shops, value)
            elif name in _LIST_FIELDS:
                value = list(value)
            setattr(progress, name, value)
        if money is not None or bank is not None:
            self.set_money(
                user_id,
                money if money is not None else progress.money,
                bank,
                reason="progress",
            )
        self._db.log_activity(
            "progress_update", user_id, {"keys": sorted(parsed.model_fields_set)}
        )
        return True

    @staticmethod
    def _merge_shops(user_id: str, current: List[Shop], incoming: List[Shop]) -> List[Shop]:
        """客户端提交的商店列表整体替换旧列表，但收银箱、雇员等字段沿用服务器的值。

        有雇员的商店不能通过进度更新删除，需先解雇。
        """

        existing = {shop.id: shop for shop in current if shop.id}
        merged: List[Shop] = []
        for shop in incoming:
            shop = shop.model_copy(deep=True)
            previous = existing.pop(shop.id, None) if shop.id else None
            if previous is not None:
                for field_name in _SERVER_SHOP_FIELDS:
                    setattr(shop, field_name, getattr(previous, field_name))
            else:
                shop.owner_id = user_id
                shop.cashbox = 0
                shop.employee_id = None
            merged.append(shop)
        merged.extend(shop for shop in existing.values() if shop.employee_id)
        return merged

    def set_money(
        self,
        user_id: str,
        money: Any,
        bank: Any = None,
        *,
        reason: str = "update",
    ) -> Progress:
        progress = self.ensure_progress(user_id)
        previous = progress.money
        if money is not None:
            progress.money = coerce_amount(money)
        if bank is not None:
            progress.bank = coerce_amount(bank)
        self._db.schedule_persist()
        self._ledger.record_movement(
            user_id,
            self.username_for(user_id),
            progress.money - previous,
            progress.money,
            progress.bank,
            reason,
        )
        return progress

    def add_money(self, user_id: str, delta: int, reason: str = "credit") -> Optional[int]:
        """按增量修改余额（结果截断为非负），返回新余额；零增量视为无效。"""

        if not user_id:
            return None
        amount = int(delta or 0)
        if amount == 0:
            return None
        progress = self.ensure_progress(user_id)
        previous = progress.money
        progress.money = max(0, previous + amount)
        self._db.schedule_persist()
        self._ledger.record_movement(
            user_id,
            self.username_for(user_id),
            progress.money - previous,
            progress.money,
            progress.bank,
            reason or "credit",
        )
        return progress.money

    def credit_once(self, user_id: str, delta: Any, reason_key: str) -> CreditResult:
        return self._ledger.credit_once(user_id, delta, reason_key)

    async def save_money_and_flush(
        self, user_id: str, money: Any = None, bank: Any = None
    ) -> Progress:
        """登出时保存余额并等待两份文档都落盘；失败时向上抛出。"""

        progress = self.set_money(user_id, money, bank, reason="logout-save")
        await self._db.flush()
        await self._ledger.flush()
        return progress

    def set_vehicle(self, user_id: str, vehicle: Optional[str]) -> None:
        progress = self.ensure_progress(user_id)
        progress.vehicle = vehicle or None
        self._db.schedule_persist()

    def add_owned_vehicle(self, user_id: str, vehicle: Optional[str]) -> bool:
        progress = self.ensure_progress(user_id)
        if not vehicle or vehicle in progress.vehicles:
            return False
        progress.vehicles.append(vehicle)
        self._db.log_activity("vehicle_add", user_id, {"vehicle": vehicle})
        return True

    def add_shop(self, user_id: str, shop: Shop) -> None:
        progress = self.ensure_progress(user_id)
        progress.shops.append(shop)
        self._db.log_activity("shop_add", user_id, {"id": shop.id})

    def add_house(self, user_id: str, house: House) -> None:
        progress = self.ensure_progress(user_id)
        progress.houses.append(house)
        self._db.log_activity("house_add", user_id, {"id": house.id})

    def public_progress(self, user_id: str) -> Dict[str, Any]:
        return self.ensure_progress(user_id).model_dump(mode="json", by_alias=True)


__all__ = ["ProfileStore"]
