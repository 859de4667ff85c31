"""
Layer 2 – 缓存层
优先级：Redis（内存） → MongoDB（持久化） → 文件（本地）
读取逐级回退；写入只落到第一个可用的后端
"""

import hashlib
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from hunting_service.config import settings
from hunting_service.db import get_redis, get_mongo_db

logger = logging.getLogger(__name__)

_CACHE_DIR = settings.CACHE_DIR
_COLLECTION = "data_cache"
_MISS = object()


def _make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    raw = ":".join([namespace] + list(parts))
    if len(raw) > 200:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


def query_fingerprint(query: str) -> str:
    """查询语句指纹：统一换行、去除行尾空白后取 sha256"""
    lines = query.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    normalized = "\n".join(line.rstrip() for line in lines).strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _file_path(key: str) -> str:
    safe = key.replace(":", "_").replace("/", "_")
    return os.path.join(_CACHE_DIR, f"{safe}.json")


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


class CacheLayer:
    """多级缓存层，自动根据可用连接选择后端"""

    # ── Redis ─────────────────────────────────────────────

    async def _redis_get(self, key: str) -> Any:
        redis = get_redis()
        if redis is None:
            return _MISS
        try:
            raw = await redis.get(key)
        except Exception as exc:
            logger.debug(f"Redis 读取失败: {exc}")
            return _MISS
        return json.loads(raw) if raw else _MISS

    async def _redis_set(self, key: str, payload: str, ttl: int) -> bool:
        redis = get_redis()
        if redis is None:
            return False
        try:
            await redis.setex(key, ttl, payload)
            return True
        except Exception as exc:
            logger.debug(f"Redis 写入失败: {exc}")
            return False

    # ── MongoDB ───────────────────────────────────────────

    async def _mongo_get(self, key: str) -> Any:
        db = get_mongo_db()
        if db is None:
            return _MISS
        try:
            doc = await db[_COLLECTION].find_one({"key": key})
            if not doc:
                return _MISS
            expires_at = doc.get("expires_at")
            # MongoDB 返回的 datetime 不带时区
            if expires_at is not None and expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at is not None and expires_at < _now():
                await db[_COLLECTION].delete_one({"key": key})
                return _MISS
            return doc.get("value")
        except Exception as exc:
            logger.debug(f"MongoDB 读取失败: {exc}")
            return _MISS

    async def _mongo_set(self, key: str, value: Any, expires_at: datetime) -> bool:
        db = get_mongo_db()
        if db is None:
            return False
        try:
            await db[_COLLECTION].update_one(
                {"key": key},
                {"$set": {"key": key, "value": value, "expires_at": expires_at}},
                upsert=True,
            )
            return True
        except Exception as exc:
            logger.debug(f"MongoDB 写入失败: {exc}")
            return False

    # ── 文件 ──────────────────────────────────────────────

    def _file_get(self, key: str) -> Any:
        path = _file_path(key)
        if not os.path.exists(path):
            return _MISS
        try:
            with open(path, "r", encoding="utf-8") as fh:
                doc = json.load(fh)
            if not isinstance(doc, dict) or not isinstance(doc.get("expires_at"), (int, float)):
                logger.debug(f"文件缓存格式无效，已丢弃: {path}")
                os.remove(path)
                return _MISS
            if doc["expires_at"] < _now().timestamp():
                os.remove(path)
                return _MISS
            return doc.get("value")
        except (OSError, ValueError) as exc:
            logger.debug(f"文件缓存读取失败: {exc}")
            return _MISS

    def _file_set(self, key: str, value: Any, expires_at: datetime) -> bool:
        try:
            os.makedirs(_CACHE_DIR, exist_ok=True)
            with open(_file_path(key), "w", encoding="utf-8") as fh:
                json.dump({"value": value, "expires_at": expires_at.timestamp()}, fh, ensure_ascii=False)
            return True
        except OSError as exc:
            logger.debug(f"文件缓存写入失败: {exc}")
            return False

    # ── 对外接口 ──────────────────────────────────────────

    async def get(self, namespace: str, *parts: str) -> Optional[Any]:
        key = _make_key(namespace, *parts)
        value = await self._redis_get(key)
        if value is not _MISS:
            logger.debug(f"缓存命中（Redis）: {key}")
            return value

        value = await self._mongo_get(key)
        if value is not _MISS:
            logger.debug(f"缓存命中（MongoDB）: {key}")
            return value

        value = self._file_get(key)
        if value is not _MISS:
            logger.debug(f"缓存命中（文件）: {key}")
            return value
        return None

    async def set(
        self,
        value: Any,
        namespace: str,
        *parts: str,
        ttl: Optional[int] = None,
    ) -> None:
        if ttl is None:
            ttl = settings.CACHE_TTL
        key = _make_key(namespace, *parts)
        serialized = json.dumps(value, ensure_ascii=False, default=str)
        # 统一经过一次 JSON 往返，三个后端存入的值一致
        plain = json.loads(serialized)
        expires_at = _now() + timedelta(seconds=ttl)

        if await self._redis_set(key, serialized, ttl):
            logger.debug(f"缓存写入（Redis）: {key}")
        elif await self._mongo_set(key, plain, expires_at):
            logger.debug(f"缓存写入（MongoDB）: {key}")
        elif self._file_set(key, plain, expires_at):
            logger.debug(f"缓存写入（文件）: {key}")

    async def delete(self, namespace: str, *parts: str) -> None:
        key = _make_key(namespace, *parts)
        redis = get_redis()
        if redis is not None:
            try:
                await redis.delete(key)
            except Exception as exc:
                logger.debug(f"Redis 删除失败: {exc}")
        db = get_mongo_db()
        if db is not None:
            try:
                await db[_COLLECTION].delete_one({"key": key})
            except Exception as exc:
                logger.debug(f"MongoDB 删除失败: {exc}")
        path = _file_path(key)
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError as exc:
                logger.debug(f"文件缓存删除失败: {exc}")

    async def stats(self) -> dict:
        """返回各缓存后端统计信息"""
        result: dict = {"redis": {"status": "disabled"}, "mongodb": {"status": "disabled"}}

        redis = get_redis()
        if redis is not None:
            try:
                result["redis"] = {"keys": await redis.dbsize(), "status": "healthy"}
            except Exception as exc:
                result["redis"] = {"status": "error", "error": str(exc)}

        db = get_mongo_db()
        if db is not None:
            try:
                count = await db[_COLLECTION].count_documents({})
                result["mongodb"] = {"documents": count, "status": "healthy"}
            except Exception as exc:
                result["mongodb"] = {"status": "error", "error": str(exc)}

        try:
            files = os.listdir(_CACHE_DIR) if os.path.isdir(_CACHE_DIR) else []
            result["file"] = {
                "files": sum(1 for f in files if f.endswith(".json")),
                "dir": _CACHE_DIR,
                "status": "healthy",
            }
        except OSError as exc:
            result["file"] = {"status": "error", "error": str(exc)}

        return result


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[CacheLayer] = None


def get_cache_layer() -> CacheLayer:
    global _cache
    if _cache is None:
        _cache = CacheLayer()
    return _cache
