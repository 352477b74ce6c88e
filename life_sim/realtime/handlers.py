"""实时事件处理：把客户端事件映射为对在线世界与持久化存储的修改。

每个处理函数返回 :class:`Outcome`：先回给调用方的 ack，再依次发出的广播。
处理函数内部的任何异常只影响当前调用方（ack 为 ``{ok: false, msg: "error"}``），
不会影响其他连接。未登录的连接只能接收广播，所有修改类事件都会被拒绝。
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..core.economy import EconomyEngine
from ..core.world import LiveWorld
from ..data_access.models import (
    House,
    LivePlayer,
    RelationshipState,
    Shop,
    coerce_amount,
    dump_structure,
    now_ms,
)
from ..data_access.profile_store import ProfileStore
from ..data_access.treasury import GovernmentTreasury
from ..data_access.world_registry import WorldRegistry, new_structure_id
from ..utils.geometry import clamp
from ..utils.rate_limiter import UpdateThrottle
from ..utils.settings import GameConfig
from .connections import Connection, ConnectionManager
from .protocol import (
    ChatSendPayload,
    CreatePlayerPayload,
    MarriagePayload,
    PlaceGovPayload,
    PlaceHousePayload,
    PlaceShopPayload,
    RestoreItemsPayload,
    ShopRefPayload,
    UpdatePayload,
)

logger = logging.getLogger(__name__)


@dataclass
class Outcome:
    ack: Dict[str, Any]
    broadcasts: List[Tuple[str, Any]] = field(default_factory=list)


def _fail(msg: str) -> Outcome:
    return Outcome({"ok": False, "msg": msg})


Handler = Callable[[Connection, Any], Awaitable[Outcome]]


class RealtimeHandlers:
    def __init__(
        self,
        world: LiveWorld,
        registry: WorldRegistry,
        profiles: ProfileStore,
        treasury: GovernmentTreasury,
        economy: EconomyEngine,
        connections: ConnectionManager,
        *,
        config: GameConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._world = world
        self._registry = registry
        self._profiles = profiles
        self._treasury = treasury
        self._economy = economy
        self._connections = connections
        self._config = config
        self._clock = clock
        self.throttle = UpdateThrottle(
            config.realtime.update_min_interval_seconds, clock=clock
        )
        self._handlers: Dict[str, Handler] = {
            "createPlayer": self.create_player,
            "update": self.update,
            "placeShop": self.place_shop,
            "placeHouse": self.place_house,
            "restoreItems": self.restore_items,
            "marriage": self.marriage,
            "placeGov": self.place_gov,
            "hireEmployee": self.hire_employee,
            "fireEmployee": self.fire_employee,
            "chat:send": self.chat_send,
        }

    @property
    def events(self) -> List[str]:
        return sorted(self._handlers)

    async def dispatch(
        self, connection: Connection, event: str, data: Any, ack_id: Optional[Any] = None
    ) -> Optional[Dict[str, Any]]:
        """处理一条客户端事件：先发送 ack（若请求了），再执行广播。"""

        handler = self._handlers.get(event)
        if handler is None:
            outcome = _fail("unknown event")
        elif not connection.authenticated:
            outcome = _fail("unauthenticated")
        else:
            try:
                outcome = await handler(connection, data if data is not None else {})
            except ValidationError:
                outcome = _fail("invalid payload")
            except Exception:
                logger.exception("Handler %s failed for connection %s", event, connection.id)
                outcome = _fail("error")
        if ack_id is not None:
            await self._connections.send(connection.id, "ack", outcome.ack, ack=ack_id)
        for name, payload in outcome.broadcasts:
            await self._connections.broadcast(name, payload)
        return outcome.ack

    # ---------------------------------------------------------------- players
    async def create_player(self, connection: Connection, data: Any) -> Outcome:
        """按用户幂等：重连时只更新连接句柄，首次创建时从 Progress 初始化。"""

        payload = CreatePlayerPayload.model_validate(data)
        user_id = connection.user_id
        if user_id is None:
            return _fail("unauthenticated")
        player = self._world.get(user_id)
        if player is not None:
            player.connection_id = connection.id
            player.last_update_from_client = self._clock()
            return Outcome({"ok": True, "id": player.id, "reconnected": True})

        progress = self._profiles.ensure_progress(user_id)
        world = self._config.world
        player = LivePlayer(
            id=user_id,
            code=payload.code or progress.name or self._profiles.username_for(user_id) or user_id,
            x=clamp(payload.x if payload.x is not None else 100.0, 0.0, world.width),
            y=clamp(payload.y if payload.y is not None else 100.0, 0.0, world.height),
            gender=payload.gender or progress.gender or "M",
            avatar=payload.avatar or progress.avatar,
            connection_id=connection.id,
            last_update_from_client=self._clock(),
        )
        LiveWorld.sync_from_progress(player, progress)
        player.owns_house = any(h.owner_id == user_id for h in self._registry.houses())
        self._world.add(player)
        return Outcome(
            {"ok": True, "id": player.id},
            [("playerJoined", player.as_public_dict())],
        )

    def _bound_player(self, connection: Connection) -> Optional[LivePlayer]:
        player = self._world.get(connection.user_id)
        if player is None or player.connection_id != connection.id:
            return None
        return player

    async def update(self, connection: Connection, data: Any) -> Outcome:
        if not self.throttle.allow(connection.id):
            return _fail("throttled")
        payload = UpdatePayload.model_validate(data)
        player = self._bound_player(connection)
        if player is None:
            return _fail("no player")
        world = self._config.world
        fields = payload.model_fields_set
        if "x" in fields and payload.x is not None:
            player.x = clamp(payload.x, 0.0, world.width)
        if "y" in fields and payload.y is not None:
            player.y = clamp(payload.y, 0.0, world.height)
        money_changed = "money" in fields and payload.money is not None
        bank_changed = "bank" in fields and payload.bank is not None
        if money_changed or bank_changed:
            progress = self._profiles.set_money(
                player.id,
                payload.money if money_changed else None,
                payload.bank if bank_changed else None,
                reason="client-update",
            )
            player.money = progress.money
            player.bank = progress.bank
        if "vehicle" in fields:
            player.vehicle = payload.vehicle or None
            self._profiles.set_vehicle(player.id, player.vehicle)
            self._profiles.add_owned_vehicle(player.id, player.vehicle)
        player.updated_at = now_ms()
        player.last_update_from_client = self._clock()
        return Outcome({"ok": True})

    # ------------------------------------------------------------- structures
    async def place_shop(self, connection: Connection, data: Any) -> Outcome:
        payload = PlaceShopPayload.model_validate(data)
        user_id = connection.user_id
        if user_id is None:
            return _fail("unauthenticated")
        shop = self._new_shop(user_id, payload.model_dump())
        self._profiles.add_shop(user_id, shop)
        wire = dump_structure(shop)
        return Outcome({"ok": True, "shop": wire}, [("shopPlaced", wire)])

    def _new_shop(self, owner_id: str, raw: Dict[str, Any]) -> Shop:
        price = raw.get("price")
        raw.update(
            {
                "id": new_structure_id("S"),
                "ownerId": owner_id,
                "cashbox": 0,
                "employeeId": None,
                "price": self._config.economy.default_shop_price if price is None else price,
                "createdAt": now_ms(),
            }
        )
        raw.pop("owner_id", None)
        raw.pop("employee_id", None)
        raw.pop("created_at", None)
        return Shop.model_validate(raw)

    def _new_house(self, placed_by: str, raw: Dict[str, Any]) -> House:
        for key in ("rented_by", "owner_id", "placed_by", "marker_initial", "created_at"):
            raw.pop(key, None)
        raw.update(
            {
                "id": new_structure_id("H"),
                "rentedBy": None,
                "ownerId": None,
                "placedBy": placed_by,
                "_markerInitial": None,
                "createdAt": now_ms(),
            }
        )
        return House.model_validate(raw)

    async def place_house(self, connection: Connection, data: Any) -> Outcome:
        payload = PlaceHousePayload.model_validate(data)
        user_id = connection.user_id
        if user_id is None:
            return _fail("unauthenticated")
        house = self._new_house(user_id, payload.model_dump())
        if not self._registry.add_global_house(house):
            return _fail("A house already exists at this position")
        self._profiles.add_house(user_id, house.model_copy(deep=True))
        wire = dump_structure(house)
        return Outcome({"ok": True, "house": wire}, [("housePlaced", wire)])

    async def restore_items(self, connection: Connection, data: Any) -> Outcome:
        """重新登记客户端上报、但在线世界中找不到近似匹配的建筑。"""

        payload = RestoreItemsPayload.model_validate(data)
        user_id = connection.user_id
        if user_id is None:
            return _fail("unauthenticated")
        realtime = self._config.realtime
        tolerances = {
            "position_tolerance": realtime.restore_position_tolerance,
            "size_tolerance": realtime.restore_size_tolerance,
        }
        broadcasts: List[Tuple[str, Any]] = []
        for raw in payload.shops:
            if self._registry.find_matching_shop(raw, **tolerances) is not None:
                continue
            shop = self._new_shop(user_id, dict(raw))
            self._profiles.add_shop(user_id, shop)
            broadcasts.append(("shopPlaced", dump_structure(shop)))
        for raw in payload.houses:
            if self._registry.find_matching_house(raw, **tolerances) is not None:
                continue
            house = self._new_house(user_id, dict(raw))
            if self._registry.add_global_house(house):
                self._profiles.add_house(user_id, house.model_copy(deep=True))
                broadcasts.append(("housePlaced", dump_structure(house)))
        ack = {
            "ok": True,
            "restored": len(broadcasts),
            "shops": [dump_structure(s) for s in self._registry.all_shops()],
            "houses": [dump_structure(h) for h in self._registry.houses()],
        }
        return Outcome(ack, broadcasts)

    # ----------------------------------------------------------------- social
    async def marriage(self, connection: Connection, data: Any) -> Outcome:
        """双方同时进入 paired 状态（要么都成功要么都不变）；重复调用无副作用。"""

        payload = MarriagePayload.model_validate(data)
        if payload.a_id == payload.b_id:
            return _fail("Cannot marry yourself")
        a = self._world.get(payload.a_id)
        b = self._world.get(payload.b_id)
        if a is None or b is None:
            return _fail("Player not found")
        if a.spouse_id == b.id and b.spouse_id == a.id:
            return Outcome({"ok": True, "already": True})
        if a.state == RelationshipState.PAIRED or b.state == RelationshipState.PAIRED:
            return _fail("Already married")

        for player, spouse in ((a, b), (b, a)):
            player.state = RelationshipState.PAIRED
            player.spouse_id = spouse.id
            self._profiles.update_progress(
                player.id, {"state": RelationshipState.PAIRED.value, "spouseId": spouse.id}
            )
        logger.info("Registered marriage between %s and %s", a.id, b.id)
        return Outcome({"ok": True, "aId": a.id, "bId": b.id})

    async def chat_send(self, connection: Connection, data: Any) -> Outcome:
        """私聊：只投递给解析出的收件人，并回显给发送者。"""

        payload = ChatSendPayload.model_validate(data)
        sender = self._bound_player(connection)
        if sender is None:
            return _fail("no-sender")
        target = self._world.get(payload.to) if payload.to else None
        if target is None and payload.to_name:
            target = self._world.find_by_name(payload.to_name)
        if target is None:
            return _fail("notfound")
        if target.connection_id is None or self._connections.get(target.connection_id) is None:
            return _fail("offline")
        limit = self._config.realtime.chat_max_length
        message = {
            "from": {"id": sender.id, "name": sender.code, "avatar": sender.avatar},
            "to": {"id": target.id, "name": target.code},
            "text": payload.text[:limit] if payload.text is not None else None,
            "gift": payload.gift,
            "ts": now_ms(),
        }
        await self._connections.send(target.connection_id, "chat:msg", message)
        # 回显总是单独发送，给自己发消息时也会收到两条
        await self._connections.send(connection.id, "chat:msg", message)
        return Outcome({"ok": True})

    # ------------------------------------------------------------- government
    async def place_gov(self, connection: Connection, data: Any) -> Outcome:
        payload = PlaceGovPayload.model_validate(data)
        if not math.isfinite(payload.cost):
            return _fail("invalid cost")
        cost = coerce_amount(abs(payload.cost))
        if not self._treasury.spend(cost):
            return _fail("Insufficient government funds")
        record = self._treasury.place({**payload.model_dump(), "cost": cost, "by": connection.user_id})
        return Outcome(
            {"ok": True, "funds": self._treasury.get().funds},
            [("govPlaced", record)],
        )

    # -------------------------------------------------------------- employees
    async def hire_employee(self, connection: Connection, data: Any) -> Outcome:
        payload = ShopRefPayload.model_validate(data)
        return Outcome(await self._economy.hire_employee(connection.user_id or "", payload.shop_id))

    async def fire_employee(self, connection: Connection, data: Any) -> Outcome:
        payload = ShopRefPayload.model_validate(data)
        return Outcome(await self._economy.fire_employee(connection.user_id or "", payload.shop_id))

    # ------------------------------------------------------------- lifecycle
    async def on_disconnect(self, connection: Connection) -> None:
        """移除该连接绑定的玩家并广播离开；持久化的 Progress 不受影响。"""

        self.throttle.forget(connection.id)
        player = self._world.get(connection.user_id)
        if player is None or player.connection_id != connection.id:
            return
        self._world.remove(player.id)
        await self._connections.broadcast("playerLeft", {"id": player.id})


__all__ = ["Outcome", "RealtimeHandlers"]
