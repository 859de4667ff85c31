"""
Hunting 数据服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


class HuntingServiceSettings(BaseSettings):
    """Hunting 数据服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── 身份提供方（OAuth2 客户端凭据） ────────────────────
    TENANT_ID: str = Field(default="")
    CLIENT_ID: str = Field(default="")
    CLIENT_SECRET: str = Field(default="")
    AUTHORITY_HOST: str = Field(default="https://login.microsoftonline.com")
    RESOURCE: str = Field(default="https://api.securitycenter.microsoft.com")
    GRANT_TYPE: str = Field(default="client_credentials")

    @property
    def TOKEN_URL(self) -> str:
        return f"{self.AUTHORITY_HOST.rstrip('/')}/{self.TENANT_ID}/oauth2/token"

    @property
    def CREDENTIALS_CONFIGURED(self) -> bool:
        return bool(self.TENANT_ID and self.CLIENT_ID and self.CLIENT_SECRET)

    # ── 高级狩猎 API ───────────────────────────────────────
    HUNTING_API_URL: str = Field(
        default="https://api.securitycenter.microsoft.com/api/advancedqueries/run"
    )
    HTTP_TIMEOUT: float = Field(default=60.0)
    TOKEN_REFRESH_MARGIN: int = Field(default=300)  # 到期前多少秒提前刷新

    # ── MongoDB 配置（支持服务发现） ───────────────────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="hunting")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=20)
    MONGO_MIN_CONNECTIONS: int = Field(default=2)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（支持服务发现） ─────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── JWT / 服务自身认证配置 ──────────────────────────────
    JWT_SECRET: str = Field(default="change-me-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=60)
    ADMIN_USERNAME: str = Field(default="admin")
    ADMIN_PASSWORD: str = Field(default="admin123")
    ADMIN_FALLBACK_ENABLED: bool = Field(default=True)  # 数据库中无此账号时允许使用上面的管理员账号
    PASSWORD_HASH_ITERATIONS: int = Field(default=200_000)

    # ── 缓存配置 ──────────────────────────────────────────
    CACHE_TTL: int = Field(default=3600)          # 通用缓存 TTL（秒）
    QUERY_CACHE_TTL: int = Field(default=900)     # 狩猎查询结果 TTL
    CACHE_DIR: str = Field(default="./cache")     # 文件缓存目录

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> HuntingServiceSettings:
    """获取全局配置（单例）"""
    return HuntingServiceSettings()


settings = get_settings()
