# backend/sensei/core/security.py
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from jose import jwt

from sensei.core.config import settings


def create_access_token(
    subject: Union[str, Any],
    role: Optional[str] = None,
    username: Optional[str] = None,
) -> str:
    """
    Access token for API callers. The login flows live outside this service;
    this is used by tooling and tests to mint compatible tokens.
    """
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {"exp": expire, "sub": str(subject), "type": "access"}
    if role:
        to_encode["role"] = role
    if username:
        to_encode["username"] = username
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
