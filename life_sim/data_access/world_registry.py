"""全局建筑登记表：工厂、银行、房屋与（从各用户 Progress 汇总的）商店。

房屋的全局列表是占用状态（租住/拥有）的唯一权威来源；商店的权威记录保存在
其所有者的 ``Progress.shops`` 中，登记表只负责汇总与查找。
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel

from ..utils.geometry import is_duplicate_house, structures_match
from .database import GameDatabase
from .models import Bank, Factory, House, Shop, coerce_amount, dump_structure

logger = logging.getLogger(__name__)

_OWNER_KEYS = ("ownerId", "owner_id")
_RENTER_KEYS = ("rentedBy", "rented_by")


def new_structure_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:10]}"


def _field_names(model: BaseModel) -> Dict[str, str]:
    names: Dict[str, str] = {}
    for name, info in type(model).model_fields.items():
        names[name] = name
        if info.alias:
            names[info.alias] = name
    return names


def _merge_fields(model: BaseModel, patch: Mapping[str, Any], skip: Iterable[str] = ()) -> None:
    """把 patch 中的键按字段名或别名合并进模型；未知键作为附加字段保留。"""

    names = _field_names(model)
    skipped = set(skip)
    for key, value in patch.items():
        if key in skipped or key == "id":
            continue
        setattr(model, names.get(key, key), value)


class WorldRegistry:
    """建筑的权威列表及查询。"""

    def __init__(self, database: GameDatabase) -> None:
        self._db = database

    @property
    def factories(self) -> List[Factory]:
        return self._db.factories

    @property
    def banks(self) -> List[Bank]:
        return self._db.banks

    def set_world_structures(
        self,
        factories: Optional[List[Any]] = None,
        banks: Optional[List[Any]] = None,
    ) -> None:
        """整体替换工厂/银行列表；非列表参数保持原值。"""

        if isinstance(factories, list):
            self._db.factories = [Factory.model_validate(_as_dict(f)) for f in factories]
        if isinstance(banks, list):
            self._db.banks = [Bank.model_validate(_as_dict(b)) for b in banks]
        self._db.schedule_persist()
        logger.info(
            "World structures set: %d factories, %d banks",
            len(self._db.factories),
            len(self._db.banks),
        )

    # ------------------------------------------------------------------ houses
    def houses(self) -> List[House]:
        return self._db.houses

    def find_house(self, house_id: Optional[str]) -> Optional[House]:
        if house_id is None:
            return None
        for house in self._db.houses:
            if house.id == house_id:
                return house
        return None

    def add_global_house(self, house: Any) -> bool:
        """登记房屋；同 id 或位置近似重合（< 2 单位）时视为重复并忽略。"""

        candidate = house if isinstance(house, House) else House.model_validate(_as_dict(house))
        if any(is_duplicate_house(existing, candidate) for existing in self._db.houses):
            return False
        self._db.houses.append(candidate)
        self._db.schedule_persist()
        return True

    def update_global_house(self, house_id: Optional[str], patch: Mapping[str, Any]) -> bool:
        """部分合并房屋字段；占用字段经 :meth:`House.apply_occupancy` 保持互斥。"""

        house = self.find_house(house_id)
        if house is None:
            return False
        set_owner = any(key in patch for key in _OWNER_KEYS)
        set_renter = any(key in patch for key in _RENTER_KEYS)
        _merge_fields(house, patch, skip=_OWNER_KEYS + _RENTER_KEYS)
        house.apply_occupancy(
            owner_id=_first(patch, _OWNER_KEYS),
            rented_by=_first(patch, _RENTER_KEYS),
            set_owner=set_owner,
            set_renter=set_renter,
        )
        self._db.schedule_persist()
        return True

    def available_houses(self) -> List[House]:
        return [house for house in self._db.houses if house.is_available]

    def find_matching_house(
        self, candidate: Any, *, position_tolerance: float, size_tolerance: float
    ) -> Optional[House]:
        for house in self._db.houses:
            if structures_match(
                house,
                candidate,
                position_tolerance=position_tolerance,
                size_tolerance=size_tolerance,
            ):
                return house
        return None

    # ------------------------------------------------------------------- shops
    def shops_with_owner(self) -> List[Tuple[str, Shop]]:
        pairs: List[Tuple[str, Shop]] = []
        for user_id, progress in self._db.progress.items():
            for shop in progress.shops:
                pairs.append((user_id, shop))
        return pairs

    def all_shops(self) -> List[Shop]:
        return [shop for _, shop in self.shops_with_owner()]

    def find_shop(self, shop_id: Optional[str]) -> Optional[Shop]:
        if shop_id is None:
            return None
        for shop in self.all_shops():
            if shop.id == shop_id:
                return shop
        return None

    def update_shop(self, shop_id: Optional[str], patch: Mapping[str, Any]) -> bool:
        shop = self.find_shop(shop_id)
        if shop is None:
            return False
        _merge_fields(shop, patch)
        shop.cashbox = coerce_amount(shop.cashbox)
        if shop.price is not None:
            shop.price = coerce_amount(shop.price)
        self._db.schedule_persist()
        return True

    def find_matching_shop(
        self, candidate: Any, *, position_tolerance: float, size_tolerance: float
    ) -> Optional[Shop]:
        for shop in self.all_shops():
            if structures_match(
                shop,
                candidate,
                position_tolerance=position_tolerance,
                size_tolerance=size_tolerance,
                compare_kind=True,
            ):
                return shop
        return None

    def get_game_structures(self) -> Dict[str, List[Any]]:
        """代理引擎使用的聚合视图。"""

        return {
            "factories": list(self._db.factories),
            "banks": list(self._db.banks),
            "shops": self.all_shops(),
        }

    def public_structures(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "factories": [dump_structure(f) for f in self._db.factories],
            "banks": [dump_structure(b) for b in self._db.banks],
            "shops": [dump_structure(s) for s in self.all_shops()],
            "houses": [dump_structure(h) for h in self._db.houses],
        }


def _as_dict(item: Any) -> Dict[str, Any]:
    if isinstance(item, BaseModel):
        return item.model_dump(by_alias=True)
    return dict(item) if isinstance(item, Mapping) else {}


def _first(patch: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if key in patch:
            return patch[key]
    return None


__all__ = ["WorldRegistry", "new_structure_id"]
