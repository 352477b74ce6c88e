"""世界坐标上的空间谓词。

客户端在重连或重放时可能提交位置略有偏差、id 已丢失的建筑记录，
下面的容差比较用于把这些记录与已注册建筑对齐，而不是重复插入。
"""

from __future__ import annotations

import math
from typing import Any, Iterable, Optional, Tuple, TypeVar

HOUSE_DUPLICATE_TOLERANCE = 2.0

T = TypeVar("T")


def _coord(item: Any, name: str) -> float:
    value = item.get(name) if isinstance(item, dict) else getattr(item, name, None)
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def _field(item: Any, name: str) -> Any:
    return item.get(name) if isinstance(item, dict) else getattr(item, name, None)


def within_tolerance(a: float, b: float, tolerance: float) -> bool:
    """``|a - b| <= tolerance``。"""

    return abs(float(a) - float(b)) <= tolerance


def is_duplicate_house(existing: Any, candidate: Any) -> bool:
    """同 id，或左上角在两个坐标轴上都相距小于 2 个单位。"""

    existing_id = _field(existing, "id")
    if existing_id is not None and existing_id == _field(candidate, "id"):
        return True
    return (
        abs(_coord(existing, "x") - _coord(candidate, "x")) < HOUSE_DUPLICATE_TOLERANCE
        and abs(_coord(existing, "y") - _coord(candidate, "y")) < HOUSE_DUPLICATE_TOLERANCE
    )


def structures_match(
    existing: Any,
    candidate: Any,
    *,
    position_tolerance: float = 16.0,
    size_tolerance: float = 12.0,
    compare_kind: bool = False,
) -> bool:
    """近似相等：位置与尺寸都落在各自的容差之内（商店还要求种类相同）。"""

    if compare_kind and _field(existing, "kind") != _field(candidate, "kind"):
        return False
    return (
        within_tolerance(_coord(existing, "x"), _coord(candidate, "x"), position_tolerance)
        and within_tolerance(_coord(existing, "y"), _coord(candidate, "y"), position_tolerance)
        and within_tolerance(_coord(existing, "w"), _coord(candidate, "w"), size_tolerance)
        and within_tolerance(_coord(existing, "h"), _coord(candidate, "h"), size_tolerance)
    )


def rect_center(item: Any) -> Tuple[float, float]:
    return (
        _coord(item, "x") + _coord(item, "w") / 2.0,
        _coord(item, "y") + _coord(item, "h") / 2.0,
    )


def distance(ax: float, ay: float, bx: float, by: float) -> float:
    return math.hypot(ax - bx, ay - by)


def nearest_structure(x: float, y: float, structures: Iterable[T]) -> Optional[T]:
    """按到矩形中心的欧氏距离返回最近的建筑；列表为空时返回 ``None``。"""

    best: Optional[T] = None
    best_distance = math.inf
    for structure in structures:
        cx, cy = rect_center(structure)
        d = distance(x, y, cx, cy)
        if d < best_distance:
            best, best_distance = structure, d
    return best


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


__all__ = [
    "HOUSE_DUPLICATE_TOLERANCE",
    "clamp",
    "distance",
    "is_duplicate_house",
    "nearest_structure",
    "rect_center",
    "structures_match",
    "within_tolerance",
]
