"""用户注册、登录与会话相关的 FastAPI 接口。"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..auth.user_manager import (
    AuthenticationError,
    NotFoundError,
    UserAlreadyExistsError,
    UserProfile,
)
from ..auth.validators import ValidationFailure
from ..core.runtime import GameRuntime
from ..data_access.document_store import PersistenceError
from .endpoints import get_runtime, require_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])


class RegisterRequest(BaseModel):
    username: str = ""
    password: str = ""
    gender: Optional[str] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    username: str = ""
    password: str = ""


class LoginResponse(BaseModel):
    ok: bool = True
    access_token: str
    token_type: str = Field(default="bearer")
    user: UserProfile
    progress: Dict[str, Any]


class ChangePasswordRequest(BaseModel):
    new_password: str = Field(default="", alias="newPassword")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_user(
    payload: RegisterRequest,
    request: Request,
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """注册新用户并创建默认进度，注册成功即登录。"""

    try:
        profile = await runtime.users.register_user(
            payload.username,
            payload.password,
            gender=payload.gender,
            country=payload.country,
            email=payload.email,
            phone=payload.phone,
        )
    except ValidationFailure as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except UserAlreadyExistsError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    progress = runtime.profiles.ensure_progress(profile.id)
    if profile.gender and not progress.gender:
        runtime.profiles.update_progress(profile.id, {"gender": profile.gender})
    request.session["user_id"] = profile.id
    return {
        "ok": True,
        "user": profile.model_dump(),
        "progress": runtime.profiles.public_progress(profile.id),
    }


@router.post("/login", response_model=LoginResponse)
async def login_user(
    payload: LoginRequest,
    request: Request,
    runtime: GameRuntime = Depends(get_runtime),
) -> LoginResponse:
    """校验用户名密码，按账本快照恢复余额，并返回会话令牌。"""

    limit = await runtime.login_limiter.check(payload.username.strip().lower() or "anonymous")
    if not limit.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts",
        )
    try:
        result = await runtime.users.authenticate_user(payload.username, payload.password)
    except AuthenticationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))

    user_id = result.profile.id
    runtime.profiles.ensure_progress(user_id)
    runtime.ledger.restore_from_snapshot(user_id)
    request.session["user_id"] = user_id
    return LoginResponse(
        access_token=result.token,
        user=result.profile,
        progress=runtime.profiles.public_progress(user_id),
    )


@router.post("/logout")
async def logout_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    user_id: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    """以实时镜像中的余额为准保存并等待落盘，随后清除会话。"""

    player = runtime.world.get(user_id)
    money = player.money if player is not None else None
    bank = player.bank if player is not None else None
    try:
        await runtime.profiles.save_money_and_flush(user_id, money, bank)
    except PersistenceError as exc:
        logger.error("Logout save failed for %s: %s", user_id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not save progress, please retry",
        )
    await runtime.users.revoke_token(_bearer_token(authorization))
    request.session.clear()
    return {"ok": True}


@router.get("/me")
async def get_me(
    user_id: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    profile = await runtime.users.get_profile(user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")
    return {
        "ok": True,
        "user": profile.model_dump(),
        "progress": runtime.profiles.public_progress(user_id),
    }


@router.post("/change-password")
async def change_password(
    payload: ChangePasswordRequest,
    user_id: str = Depends(require_user),
    runtime: GameRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    try:
        await runtime.users.change_password(user_id, payload.new_password)
    except ValidationFailure as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return {"ok": True}


__all__ = ["router"]
