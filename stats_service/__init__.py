"""
Avalanche 网络统计聚合服务
将多个缓慢、偶发失败的上游数据源合并为一个快速、容错的只读 HTTP 接口

架构分层：
  数据获取层 (Acquisition)  → 各上游数据源适配器（指标 API / ICM 索引 / Data API / 版本源）
  缓存层     (Cache)        → 进程内 TTL 缓存，同键并发请求合并为一次上游调用
  处理层     (Processing)   → 数据点清洗、排序、新鲜度策略
  聚合层     (Aggregation)  → 按日期汇总链指标、按子网汇总质押
"""

__version__ = "1.0.0"
