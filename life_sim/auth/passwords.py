"""提供密码哈希与校验的工具函数。"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Optional, Tuple

_ALGORITHM = "pbkdf2_sha256"
DEFAULT_ITERATIONS = 260_000
_SALT_BYTES = 16


def _encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def _decode(data: str) -> bytes:
    return base64.b64decode(data.encode("utf-8"))


def hash_password(password: str, *, iterations: int = DEFAULT_ITERATIONS) -> str:
    """对明文密码执行 PBKDF2 哈希，返回 ``算法$迭代次数$盐$摘要`` 格式的字符串。"""

    salt = secrets.token_bytes(_SALT_BYTES)
    derived = hashlib.pbkdf2_hmac("sha256", str(password).encode("utf-8"), salt, iterations)
    return f"{_ALGORITHM}${iterations}${_encode(salt)}${_encode(derived)}"


def _parse_hash(password_hash: str) -> Optional[Tuple[int, bytes, bytes]]:
    parts = (password_hash or "").split("$")
    if len(parts) != 4 or parts[0] != _ALGORITHM:
        return None
    try:
        return int(parts[1]), _decode(parts[2]), _decode(parts[3])
    except ValueError:
        return None


def verify_password(password: str, password_hash: str) -> bool:
    """校验明文密码；无法识别的哈希格式一律视为不匹配。"""

    parsed = _parse_hash(password_hash)
    if parsed is None:
        return False
    iterations, salt, expected = parsed
    derived = hashlib.pbkdf2_hmac("sha256", str(password).encode("utf-8"), salt, iterations)
    return hmac.compare_digest(derived, expected)


__all__ = ["DEFAULT_ITERATIONS", "hash_password", "verify_password"]
