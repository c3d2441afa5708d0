"""
数据流分层架构
  Layer 1 – Acquisition  : 上游数据源适配器（失败时返回空结果）
  Layer 2 – Cache        : 进程内 TTL 缓存 + 同键并发合并（single-flight）
  Layer 3 – Processing   : 数据点清洗、排序与新鲜度策略
  Layer 4 – Aggregation  : 链指标按日期汇总、质押按子网汇总
"""
