"""用户注册与登录管理逻辑。"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel

from ..data_access.database import GameDatabase
from ..data_access.models import now_ms
from .passwords import hash_password, verify_password
from .validators import (
    MIN_NEW_PASSWORD_LENGTH,
    normalize_gender,
    validate_email,
    validate_password,
    validate_username,
)

logger = logging.getLogger(__name__)


class UserAlreadyExistsError(RuntimeError):
    """当尝试注册已存在的用户名（不区分大小写）时抛出。"""


class AuthenticationError(RuntimeError):
    """登录失败时的统一异常。"""


class NotFoundError(RuntimeError):
    """引用了不存在的用户。"""


@dataclass
class UserRecord:
    """存储用户的持久化信息（字段名与存档中的 camelCase 保持一致）。"""

    id: str
    username: str
    passHash: str
    createdAt: int = field(default_factory=now_ms)
    lastLoginAt: Optional[int] = None
    gender: Optional[str] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "UserRecord":
        known = {name: payload.get(name) for name in cls.__dataclass_fields__ if name in payload}
        known.setdefault("createdAt", now_ms())
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UserStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    async def get_by_username(self, username: str) -> Optional[UserRecord]: ...

    async def save_user(self, record: UserRecord) -> None: ...

    async def list_users(self) -> List[UserRecord]: ...


class InMemoryUserStore:
    """简单的内存用户存储，实现并发安全。"""

    def __init__(self) -> None:
        self._users: Dict[str, UserRecord] = {}
        self._lock = asyncio.Lock()

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        async with self._lock:
            return self._users.get(user_id)

    async def get_by_username(self, username: str) -> Optional[UserRecord]:
        wanted = username.strip().lower()
        async with self._lock:
            for record in self._users.values():
                if record.username.lower() == wanted:
                    return record
        return None

    async def save_user(self, record: UserRecord) -> None:
        async with self._lock:
            self._users[record.id] = record

    async def list_users(self) -> List[UserRecord]:
        async with self._lock:
            return list(self._users.values())


class DatabaseUserStore:
    """把用户记录保存在主文档的 ``users`` 映射中，随主文档一起持久化。"""

    def __init__(self, database: GameDatabase) -> None:
        self._db = database

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        raw = self._db.users.get(user_id)
        return UserRecord.from_dict(raw) if raw is not None else None

    async def get_by_username(self, username: str) -> Optional[UserRecord]:
        wanted = username.strip().lower()
        for raw in self._db.users.values():
            if str(raw.get("username", "")).lower() == wanted:
                return UserRecord.from_dict(raw)
        return None

    async def save_user(self, record: UserRecord) -> None:
        self._db.users[record.id] = record.to_dict()
        self._db.schedule_persist()

    async def list_users(self) -> List[UserRecord]:
        return [UserRecord.from_dict(raw) for raw in self._db.users.values()]


class SessionStore(Protocol):
    async def create_session(self, user_id: str) -> str: ...

    async def get_user_id(self, token: str) -> Optional[str]: ...

    async def revoke(self, token: str) -> None: ...


class InMemorySessionStore:
    """管理登录会话令牌的内存实现。"""

    def __init__(self) -> None:
        self._tokens: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, user_id: str) -> str:
        token = uuid.uuid4().hex
        async with self._lock:
            self._tokens[token] = user_id
        return token

    async def get_user_id(self, token: str) -> Optional[str]:
        async with self._lock:
            return self._tokens.get(token)

    async def revoke(self, token: str) -> None:
        async with self._lock:
            self._tokens.pop(token, None)


class UserProfile(BaseModel):
    id: str
    username: str
    gender: Optional[str] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_record(cls, record: UserRecord) -> "UserProfile":
        return cls(
            id=record.id,
            username=record.username,
            gender=record.gender,
            country=record.country,
            email=record.email,
            phone=record.phone,
        )


class LoginResult(BaseModel):
    profile: UserProfile
    token: str


AuditHook = Callable[[str, Optional[str], Dict[str, Any]], None]


class UserManager:
    """对外暴露用户注册、认证以及会话管理能力。"""

    def __init__(
        self,
        store: UserStore,
        session_store: Optional[SessionStore] = None,
        *,
        audit: Optional[AuditHook] = None,
    ) -> None:
        self._store = store
        self._sessions = session_store or InMemorySessionStore()
        self._audit = audit

    def _log(self, type_: str, user_id: Optional[str], details: Dict[str, Any]) -> None:
        if self._audit is not None:
            self._audit(type_, user_id, details)

    async def register_user(
        self,
        username: str,
        password: str,
        *,
        gender: Optional[str] = None,
        country: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> UserProfile:
        name = validate_username(username)
        validate_password(password)
        if await self._store.get_by_username(name) is not None:
            raise UserAlreadyExistsError("User already exists")

        record = UserRecord(
            id=uuid.uuid4().hex,
            username=name,
            passHash=hash_password(password),
            gender=normalize_gender(gender),
            country=str(country) if country else None,
            email=validate_email(email) if email else None,
            phone=str(phone) if phone else None,
        )
        await self._store.save_user(record)
        self._log("register", record.id, {"username": name})
        logger.info("Registered user %s (%s)", name, record.id)
        return UserProfile.from_record(record)

    async def authenticate_user(self, username: str, password: str) -> LoginResult:
        record = await self._store.get_by_username(str(username or ""))
        if record is None or not verify_password(password, record.passHash):
            raise AuthenticationError("Invalid username or password")
        record.lastLoginAt = now_ms()
        await self._store.save_user(record)
        self._log("login", record.id, {"username": record.username})
        token = await self._sessions.create_session(record.id)
        return LoginResult(profile=UserProfile.from_record(record), token=token)

    async def get_user_id_by_token(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        return await self._sessions.get_user_id(token)

    async def revoke_token(self, token: Optional[str]) -> None:
        if token:
            await self._sessions.revoke(token)

    async def get_profile(self, user_id: Optional[str]) -> Optional[UserProfile]:
        if not user_id:
            return None
        record = await self._store.get_user(user_id)
        return UserProfile.from_record(record) if record is not None else None

    async def change_password(self, user_id: str, new_password: str) -> None:
        validate_password(new_password, min_length=MIN_NEW_PASSWORD_LENGTH)
        record = await self._store.get_user(user_id)
        if record is None:
            raise NotFoundError("User not found")
        record.passHash = hash_password(new_password)
        await self._store.save_user(record)
        self._log("password_change", user_id, {})

    async def list_users(self) -> List[UserProfile]:
        records = await self._store.list_users()
        records.sort(key=lambda item: item.createdAt)
        return [UserProfile.from_record(record) for record in records]


__all__ = [
    "AuthenticationError",
    "DatabaseUserStore",
    "InMemorySessionStore",
    "InMemoryUserStore",
    "LoginResult",
    "NotFoundError",
    "SessionStore",
    "UserAlreadyExistsError",
    "UserManager",
    "UserProfile",
    "UserRecord",
    "UserStore",
]
