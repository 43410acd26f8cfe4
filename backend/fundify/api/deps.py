"""
FastAPI 依赖注入模块

- SessionDep: 每个请求一个数据库会话，请求结束后自动关闭
- CurrentUser: 从 Authorization: Bearer <token> 解析调用者并加载用户

令牌由平台认证服务签发，这里只做校验。
"""
from collections.abc import Generator
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlmodel import Session

from fundify.api.schemas import TokenPayload
from fundify.core import security
from fundify.core.db import engine
from fundify.models import User

reusable_oauth2 = HTTPBearer()


def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]
TokenDep = Annotated[HTTPAuthorizationCredentials, Depends(reusable_oauth2)]


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def get_current_user(session: SessionDep, token: TokenDep) -> User:
    """
    获取当前调用者

    Raises:
        HTTPException: 401，令牌无效或用户不存在
    """
    try:
        token_data = TokenPayload(**security.decode_access_token(token.credentials))
    except (InvalidTokenError, ValidationError):
        raise _unauthorized()
    if not token_data.sub:
        raise _unauthorized()
    try:
        user_id = int(token_data.sub)
    except ValueError:
        raise _unauthorized()
    user = session.get(User, user_id)
    if not user:
        raise _unauthorized("User not found")
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]
