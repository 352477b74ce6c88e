"""充值接口：创建支付意向、接收支付方回调、查询入账状态。"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..core.payments import PaymentRejected
from ..core.runtime import GameRuntime
from .endpoints import get_runtime, require_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pay", tags=["payments"])


@router.post("/create-intent")
async def create_intent(
    user_id: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    intent = runtime.payments.create_intent(user_id)
    return {"ok": True, "url": runtime.payments.checkout_url(intent), "ref": intent.ref}


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """支付方回调；同一 ``txId`` 重复回调返回 ``duplicated=True`` 且不再入账。"""

    raw = await request.body()
    provided = request.headers.get("x-pay-secret") or request.headers.get("x-pay-signature")
    if not runtime.payments.verify(provided, raw):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="bad signature")

    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid body")

    tx_id = body.get("txId")
    ref = body.get("ref")
    if not tx_id or not ref:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing txId or ref")
    intent = runtime.payments.get_intent(str(ref))
    if intent is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="unknown ref")

    try:
        result = runtime.payments.credit(
            intent, str(tx_id), _as_float(body.get("amountUsd")), body.get("currency", "USD")
        )
    except PaymentRejected as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    player = runtime.world.get(intent.user_id)
    if player is not None and result.applied:
        runtime.world.sync_from_progress(player, runtime.profiles.ensure_progress(intent.user_id))
    logger.info(
        "Payment %s for %s: applied=%s duplicated=%s",
        tx_id,
        intent.user_id,
        result.applied,
        result.duplicated,
    )
    return {"ok": True, "credited": result.applied, "duplicated": result.duplicated}


@router.get("/status")
async def payment_status(
    ref: Optional[str] = Query(default=None),
    user_id: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    intent = runtime.payments.get_intent(ref)
    if intent is None or intent.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return {"ok": True, "credited": intent.credited_at is not None, "txId": intent.tx_id}


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


__all__ = ["router"]
