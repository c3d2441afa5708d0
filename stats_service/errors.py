"""
统计服务异常体系

  StatsServiceError
  ├── UpstreamTimeout      单个数据源超时（500）
  ├── UpstreamError        单个数据源返回非成功状态或载荷格式错误
  ├── AggregateTimeout     协调器整体截止时间已过（504）
  ├── ValidationError      查询参数缺失或非法
  └── ConfigurationError   配置缺失或不一致（仅对相关接口致命）
      └── DuplicateSubnetError
"""

from typing import Optional


class StatsServiceError(Exception):
    """所有业务异常的基类"""

    status_code = 500

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.source = source


class UpstreamTimeout(StatsServiceError):
    # 单个数据源超时按上游失败处理；504 只留给整体截止时间
    status_code = 500


class UpstreamError(StatsServiceError):
    status_code = 500


class AggregateTimeout(StatsServiceError):
    status_code = 504


class ValidationError(StatsServiceError):
    status_code = 400


class ConfigurationError(StatsServiceError):
    status_code = 500


class DuplicateSubnetError(ConfigurationError):
    """同一 subnetId 被重复登记到质押累加器"""

    def __init__(self, subnet_id: str):
        super().__init__(f"子网 {subnet_id} 重复登记", source="stake_aggregator")
        self.subnet_id = subnet_id
