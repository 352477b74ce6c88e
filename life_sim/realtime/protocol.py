"""实时通道上客户端事件的载荷模型。

客户端消息的外层格式为 ``{"event": str, "data": {...}, "ack": id?}``；
带 ``ack`` 的消息会收到 ``{"event": "ack", "ack": id, "data": {ok, msg?, ...}}``。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

GIFTS = {"roses", "chocolates"}


class ClientMessage(BaseModel):
    event: str
    data: Any = None
    ack: Optional[Any] = None


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CreatePlayerPayload(_Payload):
    code: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None
    gender: Optional[str] = None
    avatar: Optional[str] = None


class UpdatePayload(_Payload):
    x: Optional[float] = None
    y: Optional[float] = None
    money: Optional[float] = None
    bank: Optional[float] = None
    vehicle: Optional[str] = None


class RectPayload(BaseModel):
    """建筑矩形；附加字段原样保留，随建筑一起存储与广播。"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    x: float = 0.0
    y: float = 0.0
    w: float = 0.0
    h: float = 0.0


class PlaceShopPayload(RectPayload):
    kind: Optional[str] = None
    price: Optional[float] = None


class PlaceHousePayload(RectPayload):
    pass


class RestoreItemsPayload(_Payload):
    shops: List[Dict[str, Any]] = Field(default_factory=list)
    houses: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("shops", "houses", mode="before")
    @classmethod
    def _only_dicts(cls, value: Any) -> List[Dict[str, Any]]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]


class MarriagePayload(_Payload):
    a_id: str = Field(alias="aId", min_length=1)
    b_id: str = Field(alias="bId", min_length=1)


class PlaceGovPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    cost: float = 0.0


class ShopRefPayload(_Payload):
    shop_id: str = Field(alias="shopId", min_length=1)


class ChatSendPayload(_Payload):
    to: Optional[str] = None
    to_name: Optional[str] = Field(default=None, alias="toName")
    text: Optional[str] = None
    gift: Optional[str] = None

    @field_validator("to", "to_name", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Optional[str]:
        return str(value) if value not in (None, "") else None

    @field_validator("gift", mode="before")
    @classmethod
    def _known_gift(cls, value: Any) -> Optional[str]:
        return value if value in GIFTS else None

    @field_validator("text", mode="before")
    @classmethod
    def _text_only(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None


__all__ = [
    "ChatSendPayload",
    "ClientMessage",
    "CreatePlayerPayload",
    "GIFTS",
    "MarriagePayload",
    "PlaceGovPayload",
    "PlaceHousePayload",
    "PlaceShopPayload",
    "RectPayload",
    "RestoreItemsPayload",
    "ShopRefPayload",
    "UpdatePayload",
]
