"""
认证服务
保护本服务自身接口（报表工具、分析员）：JWT 无状态认证，
账号存储在 MongoDB；数据库不可用时可退回到配置中的管理员账号
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from hunting_service.config import settings
from hunting_service.db import get_mongo_db
from hunting_service.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)

_USERS = "users"
_HASH_SCHEME = "pbkdf2_sha256"


class TokenPayload(BaseModel):
    sub: str
    exp: int
    is_admin: bool = False


class Principal(BaseModel):
    """已认证的调用方"""
    username: str
    is_admin: bool = False


def hash_password(password: str, salt: Optional[str] = None) -> str:
    """返回 pbkdf2_sha256$<iterations>$<salt>$<hex>"""
    salt = salt or secrets.token_hex(16)
    iterations = settings.PASSWORD_HASH_ITERATIONS
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations)
    return f"{_HASH_SCHEME}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, iterations, salt, expected = stored.split("$")
        iterations = int(iterations)
    except ValueError:
        return False
    if scheme != _HASH_SCHEME:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations)
    return hmac.compare_digest(digest.hex(), expected)


class AuthService:
    """调用方认证与账号管理"""

    # ── Token ─────────────────────────────────────────────

    @staticmethod
    def create_access_token(principal: Principal) -> str:
        expire = datetime.now(tz=timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )
        payload = {"sub": principal.username, "exp": expire, "is_admin": principal.is_admin}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Optional[TokenPayload]:
        try:
            payload = jwt.decode(
                token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
            )
            return TokenPayload(
                sub=payload["sub"],
                exp=int(payload["exp"]),
                is_admin=bool(payload.get("is_admin", False)),
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Token 已过期")
        except (jwt.InvalidTokenError, KeyError) as exc:
            logger.debug(f"Token 无效: {exc}")
        return None

    # ── 账号 ──────────────────────────────────────────────

    @staticmethod
    def _fallback(username: str, password: str) -> Optional[Principal]:
        if not settings.ADMIN_FALLBACK_ENABLED or username != settings.ADMIN_USERNAME:
            return None
        if hmac.compare_digest(password.encode(), settings.ADMIN_PASSWORD.encode()):
            return Principal(username=username, is_admin=True)
        return None

    async def authenticate(self, username: str, password: str) -> Optional[Principal]:
        """MongoDB 账号优先；库中无此账号或数据库不可用时尝试配置的管理员账号"""
        db = get_mongo_db()
        if db is not None:
            try:
                user = await db[_USERS].find_one({"username": username})
            except Exception as exc:
                logger.warning(f"账号查询失败，尝试配置的管理员账号: {exc}")
                user = None
            if user is not None:
                if verify_password(password, user.get("password_hash", "")):
                    return Principal(username=username, is_admin=user.get("is_admin", False))
                return None
        return self._fallback(username, password)

    async def create_user(self, username: str, password: str, is_admin: bool = False) -> bool:
        """创建账号；用户名已存在返回 False，数据库不可用抛出 StorageUnavailableError"""
        db = get_mongo_db()
        if db is None:
            raise StorageUnavailableError("MongoDB 不可用，无法创建账号")
        try:
            await db[_USERS].insert_one({
                "username": username,
                "password_hash": hash_password(password),
                "is_admin": is_admin,
                "created_at": datetime.now(tz=timezone.utc),
            })
        except DuplicateKeyError:
            return False
        logger.info(f"账号已创建: {username} (admin={is_admin})")
        return True


# ── 模块级别单例 ──────────────────────────────────────────
_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service
