"""
Hunting 数据服务
独立的威胁狩猎数据微服务，为报表工具提供 HTTP 接口

架构分层：
  数据获取层 (Acquisition)  → OAuth2 客户端凭据换取令牌 + 调用高级狩猎 API
  缓存层     (Cache)        → Redis / MongoDB / 文件三级缓存
  处理层     (Processing)   → 按 Schema 规范化结果、列筛选、CSV 导出
"""

__version__ = "1.0.0"
