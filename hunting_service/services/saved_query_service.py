"""
常用查询服务
按名称保存狩猎查询，报表工具可通过名称直接拉取结果
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from hunting_service.db import get_mongo_db
from hunting_service.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)

_COLLECTION = "saved_queries"
_PROJECTION = {"_id": 0}


def _collection():
    db = get_mongo_db()
    if db is None:
        raise StorageUnavailableError("MongoDB 不可用，常用查询功能暂停")
    return db[_COLLECTION]


class SavedQueryService:
    """常用查询的增删查"""

    async def list_queries(self) -> List[Dict[str, Any]]:
        cursor = _collection().find({}, _PROJECTION).sort("name", 1)
        return await cursor.to_list(length=None)

    async def get_query(self, name: str) -> Optional[Dict[str, Any]]:
        return await _collection().find_one({"name": name}, _PROJECTION)

    async def save_query(
        self,
        name: str,
        query: str,
        description: str = "",
        created_by: Optional[str] = None,
    ) -> bool:
        """保存查询，名称已存在时返回 False"""
        coll = _collection()
        if await coll.find_one({"name": name}):
            return False
        try:
            await coll.insert_one({
                "name": name,
                "query": query,
                "description": description,
                "created_by": created_by,
                "created_at": datetime.now(tz=timezone.utc),
            })
        except DuplicateKeyError:
            # 并发保存同名查询，由唯一索引兜底
            return False
        logger.info(f"常用查询已保存: {name}")
        return True

    async def delete_query(self, name: str) -> bool:
        result = await _collection().delete_one({"name": name})
        if result.deleted_count:
            logger.info(f"常用查询已删除: {name}")
        return result.deleted_count > 0


# ── 模块级别单例 ──────────────────────────────────────────
_saved_query_service: Optional[SavedQueryService] = None


def get_saved_query_service() -> SavedQueryService:
    global _saved_query_service
    if _saved_query_service is None:
        _saved_query_service = SavedQueryService()
    return _saved_query_service
