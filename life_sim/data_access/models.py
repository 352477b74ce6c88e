"""定义游戏世界与经济领域模型的 Pydantic 数据结构。

持久化文档中的记录均通过 ``model_validate`` 读入：缺失字段以默认值回填
（backfill-on-read），未知字段通过 ``extra="allow"`` 原样保留，保证旧版本
存档在新代码下既能读出也不会丢数据。
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def coerce_amount(value: Any) -> int:
    """把任意数值规范化为非负整数：小数向下取整，负数截断为 0。"""

    if value is None or isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0
    return max(0, int(math.floor(number)))


def now_ms() -> int:
    return int(time.time() * 1000)


class RelationshipState(str, Enum):
    """玩家/代理的婚恋状态。"""

    SINGLE = "single"
    PAIRED = "paired"


class AgentRole(str, Enum):
    """代理状态机中的目标角色。"""

    IDLE = "idle"
    GO_WORK = "go_work"
    WORK = "work"
    GO_BANK = "go_bank"
    GO_SHOP = "go_shop"
    EMPLOYEE = "employee"


class Structure(BaseModel):
    """世界中的矩形建筑基础模型（工厂、银行、房屋、商店共用）。"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    x: float = 0.0
    y: float = 0.0
    w: float = 0.0
    h: float = 0.0

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.w / 2.0, self.y + self.h / 2.0


class Factory(Structure):
    pass


class Bank(Structure):
    pass


class House(Structure):
    """房屋：租住 (``rented_by``) 与拥有 (``owner_id``) 互斥。"""

    rented_by: Optional[str] = Field(default=None, alias="rentedBy")
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    placed_by: Optional[str] = Field(default=None, alias="placedBy")
    marker_initial: Optional[str] = Field(default=None, alias="_markerInitial")
    created_at: int = Field(default_factory=now_ms, alias="createdAt")

    @property
    def is_available(self) -> bool:
        return self.rented_by is None and self.owner_id is None

    def apply_occupancy(
        self,
        *,
        owner_id: Optional[str] = None,
        rented_by: Optional[str] = None,
        set_owner: bool = False,
        set_renter: bool = False,
    ) -> None:
        """在同一次更新中维护租住/拥有互斥；同时设置两者时以拥有为准。"""

        if set_renter:
            self.rented_by = rented_by
            if rented_by is not None:
                self.owner_id = None
        if set_owner:
            self.owner_id = owner_id
            if owner_id is not None:
                self.rented_by = None


class Shop(Structure):
    """商店：归属玩家，带收银箱与可选雇员。"""

    kind: Optional[str] = None
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    cashbox: int = 0
    employee_id: Optional[str] = Field(default=None, alias="employeeId")
    price: Optional[int] = None
    created_at: int = Field(default_factory=now_ms, alias="createdAt")

    @field_validator("cashbox", mode="before")
    @classmethod
    def _coerce_cashbox(cls, value: Any) -> int:
        return coerce_amount(value)

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, value: Any) -> Optional[int]:
        return None if value is None else coerce_amount(value)


class Government(BaseModel):
    """政府单例：国库资金与已放置的公共设施记录。"""

    model_config = ConfigDict(extra="allow")

    funds: int = 0
    placed: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("funds", mode="before")
    @classmethod
    def _coerce_funds(cls, value: Any) -> int:
        return coerce_amount(value)


class Progress(BaseModel):
    """每个用户（含代理）的持久化经济/社交状态。"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    money: int = 400
    bank: int = 0
    vehicle: Optional[str] = None
    vehicles: List[str] = Field(default_factory=list)
    shops: List[Shop] = Field(default_factory=list)
    houses: List[House] = Field(default_factory=list)
    name: Optional[str] = None
    avatar: Optional[str] = None
    likes: List[Any] = Field(default_factory=list)
    gender: Optional[str] = None
    age: Optional[int] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    initial_rent_paid: bool = Field(default=False, alias="initialRentPaid")
    rented_house_idx: Optional[int] = Field(default=None, alias="rentedHouseIdx")
    state: RelationshipState = RelationshipState.SINGLE
    spouse_id: Optional[str] = Field(default=None, alias="spouseId")
    is_bot: bool = Field(default=False, alias="isBot")

    @field_validator("money", "bank", mode="before")
    @classmethod
    def _coerce_balance(cls, value: Any) -> int:
        return coerce_amount(value)

    @field_validator("likes", "vehicles", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> List[Any]:
        return list(value) if isinstance(value, list) else []


class ProgressPatch(BaseModel):
    """``update_progress`` 允许修改的字段白名单。

    未知键被静默忽略；列表字段若提供则整体替换，不做逐项合并。
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    money: Optional[float] = None
    bank: Optional[float] = None
    vehicle: Optional[str] = None
    vehicles: Optional[List[str]] = None
    shops: Optional[List[Shop]] = None
    houses: Optional[List[House]] = None
    name: Optional[str] = None
    avatar: Optional[str] = None
    likes: Optional[List[Any]] = None
    gender: Optional[str] = None
    age: Optional[int] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    initial_rent_paid: Optional[bool] = Field(default=None, alias="initialRentPaid")
    rented_house_idx: Optional[int] = Field(default=None, alias="rentedHouseIdx")
    state: Optional[RelationshipState] = None
    spouse_id: Optional[str] = Field(default=None, alias="spouseId")

    @field_validator("vehicles", "shops", "houses", "likes", mode="before")
    @classmethod
    def _drop_non_lists(cls, value: Any) -> Any:
        # 非数组值视同未提供
        return value if isinstance(value, list) else None

    def provided_fields(self) -> Dict[str, Any]:
        """返回调用方显式提供且取值有效的字段。"""

        provided: Dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if name in {"vehicles", "shops", "houses", "likes"} and value is None:
                continue
            provided[name] = value
        return provided


class LedgerMovement(BaseModel):
    """账本中的一条不可变资金流水。"""

    ts: int = Field(default_factory=now_ms)
    user_id: str = Field(alias="userId")
    username: Optional[str] = None
    delta: int = 0
    money: int = 0
    bank: int = 0
    reason: str = "update"

    model_config = ConfigDict(populate_by_name=True)


class LedgerSnapshot(BaseModel):
    """每个用户最新的余额快照，随最新流水覆盖。"""

    username: Optional[str] = None
    last_money: int = Field(default=0, alias="lastMoney")
    last_bank: int = Field(default=0, alias="lastBank")
    updated_at: int = Field(default_factory=now_ms, alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class CreditResult(BaseModel):
    """幂等入账的结果；``duplicated`` 是预期的安全空操作而非错误。"""

    applied: bool
    duplicated: bool = False
    money: Optional[int] = None


class ActivityRecord(BaseModel):
    ts: int = Field(default_factory=now_ms)
    type: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True)


@dataclass
class LivePlayer:
    """仅存在于内存中的在线玩家/代理，每个广播周期序列化一次。"""

    id: str
    code: str
    x: float = 100.0
    y: float = 100.0
    vx: float = 0.0
    vy: float = 0.0
    money: int = 0
    bank: int = 0
    vehicle: Optional[str] = None
    gender: Optional[str] = None
    avatar: Optional[str] = None
    state: RelationshipState = RelationshipState.SINGLE
    spouse_id: Optional[str] = None
    is_bot: bool = False
    connection_id: Optional[str] = None
    speed: float = 100.0
    target_x: Optional[float] = None
    target_y: Optional[float] = None
    target_role: AgentRole = AgentRole.IDLE
    working_until: float = 0.0
    pending_deposit: int = 0
    next_work_at: float = 0.0
    last_purchase_at: float = 0.0
    shop_target_id: Optional[str] = None
    employer_shop_id: Optional[str] = None
    owns_house: bool = False
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    last_update_from_client: float = 0.0

    def as_public_dict(self) -> Dict[str, Any]:
        """广播给客户端的字段；连接句柄等内部字段不外泄。"""

        return {
            "id": self.id,
            "code": self.code,
            "x": self.x,
            "y": self.y,
            "vx": self.vx,
            "vy": self.vy,
            "money": self.money,
            "bank": self.bank,
            "vehicle": self.vehicle,
            "gender": self.gender,
            "avatar": self.avatar,
            "state": self.state.value,
            "spouseId": self.spouse_id,
            "isBot": self.is_bot,
            "targetRole": self.target_role.value,
            "ownsHouse": self.owns_house,
            "online": self.connection_id is not None,
            "updatedAt": self.updated_at,
        }


def dump_structure(structure: BaseModel) -> Dict[str, Any]:
    """按线上协议（camelCase 别名）序列化建筑记录。"""

    return structure.model_dump(mode="json", by_alias=True)


__all__ = [
    "ActivityRecord",
    "AgentRole",
    "Bank",
    "CreditResult",
    "Factory",
    "Government",
    "House",
    "LedgerMovement",
    "LedgerSnapshot",
    "LivePlayer",
    "Progress",
    "ProgressPatch",
    "RelationshipState",
    "Shop",
    "Structure",
    "coerce_amount",
    "dump_structure",
    "now_ms",
]
