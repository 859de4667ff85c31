"""
数据流分层架构
  Layer 1 – Acquisition  : 令牌获取（token）+ 狩猎查询（acquisition）
  Layer 2 – Cache        : 多级缓存（Redis → MongoDB → 文件）
  Layer 3 – Processing   : 按 Schema 规范化、列筛选、CSV 导出
"""
