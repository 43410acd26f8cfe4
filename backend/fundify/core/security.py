"""
JWT 工具

令牌由平台的认证服务签发，本服务只负责校验（见 api/deps.py）。
create_access_token 用于运维脚本和测试生成调用者令牌。
"""
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from fundify.core.config import settings

ALGORITHM = "HS256"


def create_access_token(subject: str | Any, expires_delta: timedelta | None = None) -> str:
    if expires_delta is None:
        expires_delta = timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS)
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode = {"exp": expire, "sub": str(subject)}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    """解析并校验令牌，失败时抛出 jwt.InvalidTokenError"""
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
