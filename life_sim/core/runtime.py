"""游戏运行时：按依赖顺序装配全部组件，并管理启动与关闭。

装配顺序为 文档存储 → 主文档 → 账本 → Progress → 建筑登记表 → 国库 →
在线世界 → 引擎 → 连接与事件处理。实例在应用 lifespan 中创建并挂到
``app.state.runtime``，路由通过依赖注入取用，不使用模块级全局状态。
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional

import numpy as np
from redis.asyncio import Redis

from ..auth import UserManager, build_user_manager
from ..data_access.database import GameDatabase
from ..data_access.document_store import DocumentStore, PersistenceError, build_document_store
from ..data_access.ledger_store import LedgerStore
from ..data_access.profile_store import ProfileStore
from ..data_access.treasury import GovernmentTreasury
from ..data_access.world_registry import WorldRegistry
from ..realtime.connections import ConnectionManager
from ..realtime.handlers import RealtimeHandlers
from ..utils.rate_limiter import RateLimiter
from ..utils.settings import GameConfig
from .agents import AgentBehaviorEngine
from .economy import EconomyEngine
from .payments import PaymentService
from .scheduler import PeriodicTaskManager
from .world import LiveWorld

logger = logging.getLogger(__name__)


def timers_enabled() -> bool:
    """设置了 ``LIFE_SIM_SKIP_TIMERS`` 或运行在 pytest 下时不启动周期任务。"""

    if os.getenv("LIFE_SIM_SKIP_TIMERS"):
        return False
    return "PYTEST_CURRENT_TEST" not in os.environ


def _limiter_backend(config: GameConfig) -> Optional[Redis]:
    persistence = config.persistence
    if persistence.backend == "redis" and persistence.redis_url:
        return Redis.from_url(persistence.redis_url, encoding="utf-8", decode_responses=True)
    return None


class GameRuntime:
    def __init__(
        self,
        config: GameConfig,
        *,
        store: Optional[DocumentStore] = None,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        persistence = config.persistence
        self.store = store if store is not None else build_document_store(persistence)
        self.database = GameDatabase(
            self.store,
            debounce_seconds=persistence.brain_debounce_seconds,
            activity_log_limit=persistence.activity_log_limit,
        )
        self.ledger = LedgerStore(
            self.store,
            max_movements=persistence.ledger_max_movements,
            debounce_seconds=persistence.ledger_debounce_seconds,
        )
        self.profiles = ProfileStore(
            self.database, self.ledger, default_money=config.economy.default_money
        )
        self.registry = WorldRegistry(self.database)
        self.treasury = GovernmentTreasury(self.database)
        self.world = LiveWorld(self.registry, self.treasury)
        self.connections = ConnectionManager()
        self.agents = AgentBehaviorEngine(
            self.world,
            self.registry,
            self.profiles,
            world_params=config.world,
            agent_config=config.agents,
            economy_config=config.economy,
            rng=rng,
            clock=clock,
        )
        self.economy = EconomyEngine(
            self.world,
            self.registry,
            self.profiles,
            self.treasury,
            self.connections,
            self.agents,
            config=config.economy,
        )
        self.handlers = RealtimeHandlers(
            self.world,
            self.registry,
            self.profiles,
            self.treasury,
            self.economy,
            self.connections,
            config=config,
            clock=clock,
        )
        self.users: UserManager = build_user_manager(self.database)
        self.payments = PaymentService(self.profiles, config.payments)
        self.login_limiter = RateLimiter(
            window_seconds=60,
            max_calls=10,
            prefix=f"{persistence.redis_prefix}:rl:login",
            redis=_limiter_backend(config),
        )
        self.scheduler = PeriodicTaskManager()
        self.started = False

    async def start(self, *, start_timers: bool = True) -> None:
        """加载持久化状态，恢复代理与雇员，然后启动周期任务。"""

        await self.database.load()
        await self.ledger.load()
        self._restore_employees()
        self.agents.ensure_agents(self.config.agents.count)
        if start_timers:
            self._start_timers()
        self.started = True
        logger.info(
            "Game runtime started (%d players live, timers %s)",
            len(self.world),
            "on" if start_timers else "off",
        )

    def _restore_employees(self) -> None:
        for owner_id, shop in self.registry.shops_with_owner():
            if shop.employee_id and shop.employee_id not in self.world:
                self.agents.spawn_employee(shop, owner_id, employee_id=shop.employee_id)

    def _start_timers(self) -> None:
        cfg = self.config
        self.scheduler.add(
            "snapshot", cfg.realtime.snapshot_interval_seconds, self.broadcast_snapshot
        )
        self.scheduler.add("agents", cfg.agents.tick_seconds, self.agents.tick)
        self.scheduler.add("rent", cfg.economy.rent_interval_seconds, self.economy.collect_rent)
        self.scheduler.add(
            "salary", cfg.economy.salary_interval_seconds, self.economy.pay_salaries
        )
        self.scheduler.add(
            "exploration-reset",
            cfg.world.explore_reset_seconds,
            self.agents.reset_exploration,
        )

    async def broadcast_snapshot(self) -> int:
        if not self.connections.connection_count:
            return 0
        return await self.connections.broadcast("state", self.world.snapshot())

    async def shutdown(self) -> None:
        """停止周期任务并做最后一次落盘；落盘失败只记录日志。"""

        await self.scheduler.shutdown()
        for name, closer in (("brain", self.database.close), ("ledger", self.ledger.close)):
            try:
                await closer()
            except PersistenceError:
                logger.exception("Final flush of %s failed during shutdown", name)
        self.started = False


__all__ = ["GameRuntime", "timers_enabled"]
