"""基于 FastAPI 暴露玩家进度、政府资金、世界建筑与账本查询的接口定义。"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..core.runtime import GameRuntime
from ..data_access.models import Bank, Factory, LedgerMovement, ProgressPatch

router = APIRouter(prefix="/api", tags=["game"])


def get_runtime(request: Request) -> GameRuntime:
    return request.app.state.runtime


async def require_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    runtime: GameRuntime = Depends(get_runtime),
) -> str:
    """根据会话 cookie 或 Bearer Token 获取当前登录用户 ID。"""

    user_id = request.session.get("user_id") if "session" in request.scope else None
    if user_id:
        return str(user_id)
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid Authorization header",
            )
        user_id = await runtime.users.get_user_id_by_token(token.strip())
        if user_id:
            return user_id
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired access token",
        )
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")


class GovFundsRequest(BaseModel):
    amount: Any = None


class WorldStructuresRequest(BaseModel):
    factories: List[Factory] = Field(default_factory=list)
    banks: List[Bank] = Field(default_factory=list)


class LedgerMovementsResponse(BaseModel):
    ok: bool = True
    movements: List[LedgerMovement]


@router.get("/progress")
async def get_progress(
    user_id: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    return {"ok": True, "progress": runtime.profiles.public_progress(user_id)}


@router.post("/progress")
async def update_progress(
    patch: ProgressPatch,
    user_id: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """按白名单更新进度；在线玩家的实时镜像同步刷新。"""

    runtime.profiles.update_progress(user_id, patch)
    player = runtime.world.get(user_id)
    if player is not None:
        runtime.world.sync_from_progress(player, runtime.profiles.ensure_progress(user_id))
    return {"ok": True, "progress": runtime.profiles.public_progress(user_id)}


@router.get("/gov")
async def get_government(
    _: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    return {"ok": True, "government": runtime.treasury.snapshot()}


@router.post("/gov/funds/add")
async def add_government_funds(
    payload: GovFundsRequest,
    _: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    try:
        amount = float(payload.amount)
    except (TypeError, ValueError):
        amount = math.nan
    if not math.isfinite(amount) or int(amount) == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid amount")
    funds = runtime.treasury.add_funds(int(amount))
    return {"ok": True, "funds": funds}


@router.get("/world/structures")
async def get_world_structures(
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    return {"ok": True, **runtime.registry.public_structures()}


@router.post("/world/structures")
async def set_world_structures(
    payload: WorldStructuresRequest,
    _: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    runtime.registry.set_world_structures(payload.factories, payload.banks)
    return {
        "ok": True,
        "factories": len(runtime.registry.factories),
        "banks": len(runtime.registry.banks),
    }


@router.get("/ledger/balance")
async def get_ledger_balance(
    user_id: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    progress = runtime.profiles.ensure_progress(user_id)
    return {
        "ok": True,
        "money": progress.money,
        "bank": progress.bank,
        "snapshot": runtime.ledger.latest_balance(user_id),
    }


@router.get("/ledger/movements", response_model=LedgerMovementsResponse, response_model_by_alias=True)
async def get_ledger_movements(
    limit: int = Query(default=50, ge=1, le=500),
    user_id: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> LedgerMovementsResponse:
    return LedgerMovementsResponse(movements=runtime.ledger.movements_for(user_id, limit))


__all__ = ["get_runtime", "require_user", "router"]
