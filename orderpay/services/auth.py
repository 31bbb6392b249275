"""
调用方认证模块：JWT 令牌验证、FastAPI 依赖项。

令牌由外部登录服务签发，这里只验证；create_token 供运维脚本和测试使用。
"""

import os
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, Request
from jose import JWTError, jwt

JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 24

ROLE_ADMIN = "ADMIN"
ROLE_CUSTOMER = "CUSTOMER"


def _secret() -> str:
    return os.environ.get("JWT_SECRET", "change-me-to-a-random-secret-key")


def create_token(user_id: int, role: str = ROLE_CUSTOMER) -> str:
    """生成 JWT 令牌，有效期 24 小时。"""
    expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    payload = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(payload, _secret(), algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    解码并验证 JWT 令牌。

    Returns:
        {"user_id": int, "role": str}

    Raises:
        ValueError: 令牌无效、已过期或缺少用户信息。
    """
    try:
        payload = jwt.decode(token, _secret(), algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise ValueError(f"令牌无效: {e}")

    sub = payload.get("sub")
    if not sub:
        raise ValueError("令牌缺少用户信息")
    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        raise ValueError("令牌用户信息无效")
    return {"user_id": user_id, "role": payload.get("role", ROLE_CUSTOMER)}


def _extract_token(request: Request) -> str | None:
    # 优先 Authorization header，其次 cookie
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get("token")


def get_current_user(request: Request) -> dict:
    """
    FastAPI 依赖项：提取并验证调用方 JWT。

    Raises:
        HTTPException(401): 令牌缺失或无效。
    """
    token = _extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="未提供认证令牌")
    try:
        return verify_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="认证令牌无效或已过期")


def get_current_admin(request: Request) -> dict:
    """FastAPI 依赖项：在 get_current_user 基础上要求 ADMIN 角色，否则 403。"""
    actor = get_current_user(request)
    if actor["role"] != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="需要管理员权限")
    return actor
