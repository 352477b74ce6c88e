"""服务器控制代理的行为引擎与探索网格。

每个代理是一个有限状态机::

    idle -> go_work -> work -> go_bank -> idle      （打工循环）
    idle -> go_shop -> idle                         （购物循环）

另有常驻的购房判定：已婚、无房且余额达到房价时，买下离自己最近的空闲房屋。
空闲代理按探索网格巡游：朝随机一个未访问扇区前进，途经的扇区即标记为已访问，
全部访问后网格自动重置。

所有资金变动（存款、购物、购房）都经过 :class:`ProfileStore`，因此在账本中可见。
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..data_access.models import AgentRole, House, LivePlayer, RelationshipState, Shop
from ..data_access.profile_store import ProfileStore
from ..data_access.world_registry import WorldRegistry
from ..utils.geometry import clamp, distance, nearest_structure, rect_center
from ..utils.settings import AgentConfig, EconomyConfig, WorldParameters
from .world import LiveWorld

logger = logging.getLogger(__name__)

MALE_NAMES = (
    "Carlos", "Luis", "Javier", "Miguel", "Andrés", "José", "Pedro", "Diego",
    "Sergio", "Fernando", "Juan", "Víctor", "Pablo", "Eduardo", "Hugo", "Mario",
)
FEMALE_NAMES = (
    "María", "Ana", "Lucía", "Sofía", "Camila", "Valeria", "Paula", "Elena",
    "Sara", "Isabella", "Daniela", "Carla", "Laura", "Diana", "Andrea", "Noelia",
)
LAST_NAMES = (
    "García", "Martínez", "López", "González", "Rodríguez", "Pérez", "Sánchez",
    "Ramírez", "Torres", "Flores", "Vargas", "Castro", "Romero", "Navarro",
    "Molina", "Ortega",
)
# avatar -> gender
PRESET_AVATARS: Tuple[Tuple[str, str], ...] = (
    ("/assets/avatar1.png", "M"),
    ("/assets/avatar2.png", "M"),
    ("/assets/avatar3.png", "F"),
    ("/assets/avatar4.png", "F"),
)


class ExplorationGrid:
    """把世界划分为 ``sectors_x × sectors_y`` 个扇区并记录访问情况。"""

    def __init__(self, sectors_x: int, sectors_y: int, width: float, height: float) -> None:
        self.sectors_x = int(sectors_x)
        self.sectors_y = int(sectors_y)
        self.width = float(width)
        self.height = float(height)
        self._visited = np.zeros((self.sectors_y, self.sectors_x), dtype=bool)
        self.completed_passes = 0
        self.resets = 0

    @property
    def total(self) -> int:
        return self.sectors_x * self.sectors_y

    @property
    def visited_count(self) -> int:
        return int(self._visited.sum())

    def sector_at(self, x: float, y: float) -> Tuple[int, int]:
        ix = int(clamp(math.floor(x / (self.width / self.sectors_x)), 0, self.sectors_x - 1))
        iy = int(clamp(math.floor(y / (self.height / self.sectors_y)), 0, self.sectors_y - 1))
        return ix, iy

    def is_visited(self, ix: int, iy: int) -> bool:
        return bool(self._visited[iy, ix])

    def mark(self, x: float, y: float) -> None:
        """标记坐标所在扇区；全部扇区访问完毕时记一轮并重置。"""

        ix, iy = self.sector_at(x, y)
        self._visited[iy, ix] = True
        if self._visited.all():
            self.completed_passes += 1
            self.reset()

    def reset(self) -> None:
        self._visited[:] = False
        self.resets += 1

    def sector_center(self, ix: int, iy: int) -> Tuple[float, float]:
        return (
            (ix + 0.5) * (self.width / self.sectors_x),
            (iy + 0.5) * (self.height / self.sectors_y),
        )

    def next_target(self, rng: np.random.Generator) -> Tuple[float, float]:
        """随机选择一个未访问扇区的中心作为目标。"""

        unvisited = np.argwhere(~self._visited)
        if len(unvisited) == 0:
            return self.width / 2.0, self.height / 2.0
        iy, ix = unvisited[int(rng.integers(len(unvisited)))]
        return self.sector_center(int(ix), int(iy))


class AgentBehaviorEngine:
    def __init__(
        self,
        world: LiveWorld,
        registry: WorldRegistry,
        profiles: ProfileStore,
        *,
        world_params: WorldParameters,
        agent_config: AgentConfig,
        economy_config: EconomyConfig,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._world = world
        self._registry = registry
        self._profiles = profiles
        self._params = world_params
        self._cfg = agent_config
        self._economy = economy_config
        self._rng = rng if rng is not None else np.random.default_rng(agent_config.seed)
        self._clock = clock
        self._marker_counts: Dict[str, int] = {}
        self.grid = ExplorationGrid(
            world_params.explore_sectors_x,
            world_params.explore_sectors_y,
            world_params.width,
            world_params.height,
        )

    # ----------------------------------------------------------------- spawning
    def _random_name(self, gender: str) -> str:
        firsts = FEMALE_NAMES if gender == "F" else MALE_NAMES
        first = firsts[int(self._rng.integers(len(firsts)))]
        last = LAST_NAMES[int(self._rng.integers(len(LAST_NAMES)))]
        return f"{first} {last}"

    def _marker_for(self, name: str) -> str:
        initial = (name.strip()[:1] or "A").upper()
        count = self._marker_counts.get(initial, 0) + 1
        self._marker_counts[initial] = count
        return initial if count == 1 else f"{initial}{count}"

    def _free_agent_id(self, index: int) -> str:
        candidate = f"B{index + 1}"
        while candidate in self._world:
            index += 1
            candidate = f"B{index + 1}"
        return candidate

    def ensure_agents(self, count: int) -> List[LivePlayer]:
        """补齐到 ``count`` 个巡游代理，并把空闲房屋依次租给新代理。"""

        existing = [p for p in self._world.bots() if p.target_role != AgentRole.EMPLOYEE]
        created: List[LivePlayer] = []
        available = self._registry.available_houses()
        for index in range(len(existing), count):
            avatar, gender = PRESET_AVATARS[int(self._rng.integers(len(PRESET_AVATARS)))]
            agent_id = self._free_agent_id(index)
            name = self._random_name(gender)
            progress = self._profiles.register_agent(
                agent_id, name=name, money=self._economy.default_money
            )
            name = progress.name or name
            target_x, target_y = self.grid.next_target(self._rng)
            agent = LivePlayer(
                id=agent_id,
                code=name,
                x=float(self._rng.uniform(0, self._params.width)),
                y=float(self._rng.uniform(0, self._params.height)),
                gender=gender,
                avatar=avatar,
                is_bot=True,
                speed=float(self._rng.uniform(self._cfg.min_speed, self._cfg.max_speed)),
                target_x=target_x,
                target_y=target_y,
            )
            LiveWorld.sync_from_progress(agent, progress)
            agent.owns_house = any(h.owner_id == agent_id for h in self._registry.houses())
            self._world.add(agent)
            created.append(agent)

            rents = any(h.rented_by == agent_id for h in self._registry.houses())
            if available and not agent.owns_house and not rents:
                house = available.pop(0)
                self._registry.update_global_house(
                    house.id, {"rentedBy": agent_id, "_markerInitial": self._marker_for(name)}
                )
        if created:
            logger.info("Spawned %d agents (%d total)", len(created), len(existing) + len(created))
        return created

    def spawn_employee(
        self, shop: Shop, owner_id: str, *, employee_id: Optional[str] = None
    ) -> LivePlayer:
        """为商店生成一名驻店雇员；雇员不参与打工循环，也没有独立收入。

        重启后可传入存档中的 ``employee_id`` 以恢复原雇员。
        """

        cx, cy = rect_center(shop)
        avatar, gender = PRESET_AVATARS[int(self._rng.integers(len(PRESET_AVATARS)))]
        employee = LivePlayer(
            id=employee_id or f"E{uuid.uuid4().hex[:8]}",
            code=self._random_name(gender),
            x=cx,
            y=cy,
            gender=gender,
            avatar=avatar,
            is_bot=True,
            speed=float(self._cfg.min_speed),
            target_x=cx,
            target_y=cy,
            target_role=AgentRole.EMPLOYEE,
            employer_shop_id=shop.id,
        )
        self._world.add(employee)
        logger.info("Shop %s (owner %s) hired %s", shop.id, owner_id, employee.id)
        return employee

    # ---------------------------------------------------------------- behaviour
    def tick(self, dt: Optional[float] = None) -> None:
        now = self._clock()
        self.tick_server_agents(now)
        self.move_players(self._cfg.tick_seconds if dt is None else dt, now)

    def _arrived(self, agent: LivePlayer) -> bool:
        if agent.target_x is None or agent.target_y is None:
            return False
        return (
            distance(agent.x, agent.y, agent.target_x, agent.target_y)
            < self._cfg.arrival_threshold
        )

    def _set_target(self, agent: LivePlayer, structure: object, role: AgentRole) -> None:
        agent.target_x, agent.target_y = rect_center(structure)
        agent.target_role = role

    def tick_server_agents(self, now: float) -> None:
        structures = self._registry.get_game_structures()
        factories: Sequence = structures["factories"]
        banks: Sequence = structures["banks"]
        shops: Sequence[Shop] = structures["shops"]
        for agent in self._world.bots():
            if agent.target_role == AgentRole.EMPLOYEE:
                continue
            try:
                self._step_agent(agent, now, factories, banks, shops)
            except Exception:
                logger.exception("Agent %s tick failed", agent.id)

    def _step_agent(
        self,
        agent: LivePlayer,
        now: float,
        factories: Sequence,
        banks: Sequence,
        shops: Sequence[Shop],
    ) -> None:
        cfg = self._cfg

        if agent.target_role == AgentRole.IDLE and now >= agent.next_work_at:
            factory = nearest_structure(agent.x, agent.y, factories)
            if factory is not None:
                self._set_target(agent, factory, AgentRole.GO_WORK)

        if agent.target_role == AgentRole.GO_WORK and self._arrived(agent):
            agent.target_role = AgentRole.WORK
            agent.working_until = now + cfg.work_seconds

        if agent.target_role == AgentRole.WORK and now >= agent.working_until:
            agent.pending_deposit += cfg.work_deposit
            agent.working_until = 0.0
            bank = nearest_structure(agent.x, agent.y, banks)
            if bank is not None:
                self._set_target(agent, bank, AgentRole.GO_BANK)

        if agent.target_role == AgentRole.GO_BANK and self._arrived(agent):
            self._deposit(agent)
            agent.target_role = AgentRole.IDLE
            agent.next_work_at = now + cfg.rest_seconds

        if agent.target_role == AgentRole.IDLE and self._rng.random() < cfg.shop_visit_probability:
            owned = [shop for shop in shops if shop.owner_id]
            if owned:
                shop = owned[int(self._rng.integers(len(owned)))]
                self._set_target(agent, shop, AgentRole.GO_SHOP)
                agent.shop_target_id = shop.id

        if agent.target_role == AgentRole.GO_SHOP and self._arrived(agent):
            self._purchase(agent, now)
            agent.target_role = AgentRole.IDLE
            agent.shop_target_id = None

        self._maybe_buy_house(agent)

    def _deposit(self, agent: LivePlayer) -> None:
        amount = agent.pending_deposit
        agent.pending_deposit = 0
        if amount <= 0:
            return
        money = self._profiles.add_money(agent.id, amount, "agent-wage")
        if money is not None:
            agent.money = money

    def _purchase(self, agent: LivePlayer, now: float) -> None:
        shop = self._registry.find_shop(agent.shop_target_id)
        if shop is None:
            return
        if now - agent.last_purchase_at <= self._cfg.purchase_cooldown_seconds:
            return
        price = shop.price or self._economy.default_shop_price
        if agent.money < price:
            return
        money = self._profiles.add_money(agent.id, -price, f"shop-purchase:{shop.id}")
        if money is None:
            return
        agent.money = money
        agent.last_purchase_at = now
        self._registry.update_shop(shop.id, {"cashbox": shop.cashbox + price})

    def _maybe_buy_house(self, agent: LivePlayer) -> Optional[House]:
        cost = self._economy.house_buy_cost
        if agent.owns_house or agent.state != RelationshipState.PAIRED or agent.money < cost:
            return None
        house = nearest_structure(agent.x, agent.y, self._registry.available_houses())
        if house is None:
            return None
        money = self._profiles.add_money(agent.id, -cost, f"house-buy:{house.id}")
        if money is None:
            return None
        agent.money = money
        agent.owns_house = True
        for rented in self._registry.houses():
            if rented.rented_by == agent.id:
                self._registry.update_global_house(
                    rented.id, {"rentedBy": None, "_markerInitial": None}
                )
        self._registry.update_global_house(
            house.id, {"ownerId": agent.id, "_markerInitial": None}
        )
        self._profiles.add_house(agent.id, house.model_copy(deep=True))
        logger.info("Agent %s (%s) bought house %s", agent.code, agent.id, house.id)
        return house

    # ----------------------------------------------------------------- movement
    def move_players(self, dt: float, now: float) -> None:
        """积分所有玩家的位置：速度对朝向目标的方向做指数平滑。"""

        cfg = self._cfg
        width, height = self._params.width, self._params.height
        for player in self._world:
            if not player.is_bot:
                if now - player.last_update_from_client < cfg.idle_player_timeout_seconds:
                    continue
                if (
                    player.target_x is None
                    or player.target_y is None
                    or self._rng.random() < cfg.idle_player_retarget_probability
                    or self._arrived(player)
                ):
                    player.target_x = float(self._rng.uniform(0, width))
                    player.target_y = float(self._rng.uniform(0, height))
            elif player.target_role == AgentRole.IDLE:
                self._explore(player)
            self._integrate(player, dt, width, height)

    def _explore(self, agent: LivePlayer) -> None:
        self.grid.mark(agent.x, agent.y)
        if (
            agent.target_x is None
            or agent.target_y is None
            or distance(agent.x, agent.y, agent.target_x, agent.target_y)
            < self._cfg.explore_retarget_radius
            or self._rng.random() < self._cfg.explore_retarget_probability
        ):
            agent.target_x, agent.target_y = self.grid.next_target(self._rng)

    def _integrate(self, player: LivePlayer, dt: float, width: float, height: float) -> None:
        smoothing = self._cfg.velocity_smoothing
        nx = ny = 0.0
        if player.target_x is not None and player.target_y is not None:
            dx = player.target_x - player.x
            dy = player.target_y - player.y
            dist = math.hypot(dx, dy)
            # non-idle agents hold position once they reach their target
            holding = player.is_bot and player.target_role != AgentRole.IDLE and (
                dist < self._cfg.arrival_threshold
            )
            if not holding:
                nx, ny = dx / (dist or 1.0), dy / (dist or 1.0)
        player.vx = player.vx * smoothing + nx * player.speed * (1.0 - smoothing)
        player.vy = player.vy * smoothing + ny * player.speed * (1.0 - smoothing)
        player.x = clamp(player.x + player.vx * dt, 0.0, width)
        player.y = clamp(player.y + player.vy * dt, 0.0, height)
        player.updated_at = int(self._clock() * 1000)

    def reset_exploration(self) -> None:
        self.grid.reset()
        logger.info("Exploration grid reset")


__all__ = [
    "AgentBehaviorEngine",
    "ExplorationGrid",
    "FEMALE_NAMES",
    "LAST_NAMES",
    "MALE_NAMES",
    "PRESET_AVATARS",
]
