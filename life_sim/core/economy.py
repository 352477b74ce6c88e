"""经济引擎：周期性收租、发放工资以及商店雇员的雇佣/解雇。

- 收租：对每套「有租客且无房主」的房屋，若租客余额足够则扣除固定租金、
  经 ProfileStore 记账并汇入国库；余额不足只发通知，不扣款也不记债。
- 工资：对每个有雇员的商店，收银箱足够时扣除工资并汇入国库；不足时立即解雇
  雇员（移除代理、清空商店的 ``employeeId`` 并广播 ``playerLeft``），不做部分扣款。

两个流程都按实体隔离异常，单个实体失败不会中断同一轮中其余实体的处理。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from ..data_access.models import LivePlayer, Shop
from ..data_access.profile_store import ProfileStore
from ..data_access.treasury import GovernmentTreasury
from ..data_access.world_registry import WorldRegistry
from ..utils.settings import EconomyConfig
from .agents import AgentBehaviorEngine
from .world import LiveWorld

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(
        self, connection_id: Optional[str], event: str, data: Any, *, ack: Optional[Any] = None
    ) -> bool: ...

    async def broadcast(self, event: str, data: Any) -> int: ...


@dataclass
class RentReport:
    collected: int = 0
    paid: List[str] = field(default_factory=list)
    insufficient: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class SalaryReport:
    paid: int = 0
    fired: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class EconomyEngine:
    def __init__(
        self,
        world: LiveWorld,
        registry: WorldRegistry,
        profiles: ProfileStore,
        treasury: GovernmentTreasury,
        notifier: Notifier,
        agents: AgentBehaviorEngine,
        *,
        config: EconomyConfig,
    ) -> None:
        self._world = world
        self._registry = registry
        self._profiles = profiles
        self._treasury = treasury
        self._notifier = notifier
        self._agents = agents
        self._cfg = config

    async def _toast(self, player: LivePlayer, message: str) -> None:
        if player.connection_id is not None:
            await self._notifier.send(player.connection_id, "toast", {"message": message})

    async def collect_rent(self) -> RentReport:
        rent = self._cfg.rent_amount
        report = RentReport()
        for house in list(self._registry.houses()):
            if not house.rented_by or house.owner_id:
                continue
            try:
                player = self._world.get(house.rented_by)
                if player is None:
                    continue
                if player.money >= rent:
                    progress = self._profiles.set_money(
                        player.id, player.money - rent, player.bank, reason="rent"
                    )
                    player.money = progress.money
                    report.collected += rent
                    report.paid.append(player.id)
                    await self._toast(player, f"Rent charged: -{rent}")
                else:
                    report.insufficient.append(player.id)
                    await self._toast(player, "Insufficient funds to pay rent.")
            except Exception:
                logger.exception("Rent collection failed for house %s", house.id)
                report.failed.append(str(house.id))
        if report.collected > 0:
            self._treasury.add_funds(report.collected)
            logger.info(
                "Collected %d in rent from %d tenants", report.collected, len(report.paid)
            )
        return report

    async def pay_salaries(self) -> SalaryReport:
        salary = self._cfg.salary_amount
        report = SalaryReport()
        for _, shop in self._registry.shops_with_owner():
            if not shop.employee_id:
                continue
            try:
                if shop.cashbox >= salary:
                    self._registry.update_shop(shop.id, {"cashbox": shop.cashbox - salary})
                    report.paid += salary
                else:
                    employee_id = await self._dismiss(shop)
                    report.fired.append(employee_id)
                    logger.info(
                        "Employee %s fired from shop %s: cashbox %d < salary %d",
                        employee_id,
                        shop.id,
                        shop.cashbox,
                        salary,
                    )
            except Exception:
                logger.exception("Salary payment failed for shop %s", shop.id)
                report.failed.append(str(shop.id))
        if report.paid > 0:
            self._treasury.add_funds(report.paid)
        return report

    async def _dismiss(self, shop: Shop) -> str:
        employee_id = shop.employee_id or ""
        self._registry.update_shop(shop.id, {"employeeId": None})
        self._world.remove(employee_id)
        await self._notifier.broadcast("playerLeft", {"id": employee_id})
        return employee_id

    def _owned_shop(self, owner_id: str, shop_id: Optional[str]) -> Tuple[Optional[Shop], Optional[str]]:
        for holder_id, shop in self._registry.shops_with_owner():
            if shop.id == shop_id:
                if (shop.owner_id or holder_id) != owner_id:
                    return None, "Not your shop"
                return shop, None
        return None, "Shop not found"

    async def hire_employee(self, owner_id: str, shop_id: Optional[str]) -> Dict[str, Any]:
        shop, error = self._owned_shop(owner_id, shop_id)
        if shop is None:
            return {"ok": False, "msg": error}
        if shop.employee_id:
            return {"ok": False, "msg": "Shop already has an employee"}
        employee = self._agents.spawn_employee(shop, owner_id)
        self._registry.update_shop(shop.id, {"employeeId": employee.id})
        await self._notifier.broadcast("playerJoined", employee.as_public_dict())
        return {"ok": True, "employeeId": employee.id}

    async def fire_employee(self, owner_id: str, shop_id: Optional[str]) -> Dict[str, Any]:
        shop, error = self._owned_shop(owner_id, shop_id)
        if shop is None:
            return {"ok": False, "msg": error}
        if not shop.employee_id:
            return {"ok": False, "msg": "Shop has no employee"}
        employee_id = await self._dismiss(shop)
        return {"ok": True, "employeeId": employee_id}


__all__ = ["EconomyEngine", "Notifier", "RentReport", "SalaryReport"]
