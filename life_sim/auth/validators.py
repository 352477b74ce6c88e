"""用户名、密码与资料字段的校验工具。"""

from __future__ import annotations

import re
from typing import Optional

_EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 4
MIN_NEW_PASSWORD_LENGTH = 8
ALLOWED_GENDERS = {"M", "F", "X"}


class ValidationFailure(ValueError):
    """对修改类调用的输入不合法；调用方不应产生任何状态变化。"""


def validate_username(username: str) -> str:
    """去除首尾空白后至少 3 个字符，返回规范化后的用户名。"""

    name = str(username or "").strip()
    if len(name) < MIN_USERNAME_LENGTH:
        raise ValidationFailure("Invalid username")
    return name


def validate_password(password: str, *, min_length: int = MIN_PASSWORD_LENGTH) -> str:
    value = str(password or "")
    if len(value) < min_length:
        raise ValidationFailure("Password too short")
    return value


def validate_email(email: str) -> str:
    """若邮箱格式不合法则抛出 ValidationFailure，合法时返回去除空白后的邮箱。"""

    if not _EMAIL_REGEX.match(email.strip()):
        raise ValidationFailure("Invalid email format")
    return email.strip()


def normalize_gender(gender: Optional[str]) -> Optional[str]:
    """仅接受 M/F/X，其他取值视为未提供。"""

    value = str(gender or "").strip().upper()
    return value if value in ALLOWED_GENDERS else None


__all__ = [
    "ALLOWED_GENDERS",
    "MIN_NEW_PASSWORD_LENGTH",
    "MIN_PASSWORD_LENGTH",
    "MIN_USERNAME_LENGTH",
    "ValidationFailure",
    "normalize_gender",
    "validate_email",
    "validate_password",
    "validate_username",
]
