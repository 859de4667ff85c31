"""
Layer 3 – 数据处理层
将狩猎结果按 Schema 规范化为二维表，供报表工具直接消费（JSON 记录 / CSV）。
"""

import json
import logging
from typing import Any, Dict, List, Optional

import pandas as pd

from hunting_service.layers.acquisition import HuntingResult, SchemaColumn

logger = logging.getLogger(__name__)

_DATETIME_TYPES = {"datetime", "date"}


def _dump_nested(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return value


class ProcessingLayer:
    """数据处理层：列对齐 + 类型规范化 + 导出"""

    def to_frame(self, result: HuntingResult) -> pd.DataFrame:
        """
        结果集转为 DataFrame

        列顺序以 Schema 为准，Schema 中未声明的列追加在末尾；
        值保持 object 类型，不做数值推断。
        """
        names = result.column_names
        if not result.results:
            return pd.DataFrame(columns=names, dtype=object)

        df = pd.DataFrame(result.results, dtype=object)
        for name in names:
            if name not in df.columns:
                df[name] = None
        ordered = names + [c for c in df.columns if c not in names]
        return df[ordered]

    def normalize(self, df: pd.DataFrame, columns: List[SchemaColumn]) -> pd.DataFrame:
        """DateTime 列统一为 UTC ISO-8601；嵌套对象转 JSON 字符串；缺失值转 None"""
        if df.empty:
            return df
        df = df.copy()

        for col in columns:
            if col.type.lower() not in _DATETIME_TYPES or col.name not in df.columns:
                continue
            parsed = pd.to_datetime(df[col.name], errors="coerce", utc=True, format="ISO8601")
            formatted = parsed.dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
            # 无法解析的原值保留
            df[col.name] = formatted.where(parsed.notna(), df[col.name])

        for name in df.columns:
            df[name] = df[name].map(_dump_nested)

        df = df.astype(object)
        return df.where(pd.notna(df), None)

    def select_columns(self, df: pd.DataFrame, columns: Optional[List[str]]) -> pd.DataFrame:
        """按列名筛选，未知列名抛出 ValueError"""
        if not columns:
            return df
        unknown = [c for c in columns if c not in df.columns]
        if unknown:
            raise ValueError(f"结果中不存在的列: {unknown}")
        return df[columns]

    def limit(self, df: pd.DataFrame, n: Optional[int]) -> pd.DataFrame:
        if n is None:
            return df
        return df.head(n).reset_index(drop=True)

    def to_records(self, df: pd.DataFrame) -> List[Dict[str, Any]]:
        """DataFrame 转换为字典列表"""
        if df.empty:
            return []
        return df.to_dict(orient="records")

    def to_csv(self, df: pd.DataFrame) -> str:
        return df.to_csv(index=False)


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
