"""用户认证相关功能入口。"""

from typing import Optional

from ..data_access.database import GameDatabase
from .user_manager import (
    AuthenticationError,
    DatabaseUserStore,
    InMemorySessionStore,
    InMemoryUserStore,
    NotFoundError,
    UserAlreadyExistsError,
    UserManager,
)


def build_user_manager(database: Optional[GameDatabase] = None) -> UserManager:
    """有主文档时把用户存进主文档，否则使用纯内存存储。"""

    if database is not None:
        return UserManager(
            DatabaseUserStore(database),
            InMemorySessionStore(),
            audit=database.log_activity,
        )
    return UserManager(InMemoryUserStore(), InMemorySessionStore())


__all__ = [
    "AuthenticationError",
    "NotFoundError",
    "UserAlreadyExistsError",
    "UserManager",
    "build_user_manager",
]
