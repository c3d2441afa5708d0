"""
Layer 3 – 数据处理层
对上游原始数据点进行清洗、排序、去重，并实现"取次新点"的新鲜度策略。
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, TypeVar

import pandas as pd

from stats_service.models.metrics import (
    ICMMetric,
    ICMPoint,
    MetricPoint,
    TimeSeriesMetric,
)

logger = logging.getLogger(__name__)

P = TypeVar("P")

# 当前周期（今天 / 本周 / 本月）仍在累积，默认跳过最新一个点
DEFAULT_MIN_POINTS = 2

_ICM_COLUMNS = {
    "messageCount": "message_count",
    "incomingCount": "incoming_count",
    "outgoingCount": "outgoing_count",
}


# ── 新鲜度策略 ────────────────────────────────────────────

def complete_index(count: int, min_points: int = DEFAULT_MIN_POINTS) -> Optional[int]:
    """
    在按时间降序排列、长度为 count 的序列中，返回最近一个"完整周期"点的下标

    - count == 0            → None
    - count < min_points    → 0（退回到最新可用点）
    - 其余                  → min_points - 1
    """
    if count <= 0:
        return None
    if min_points < 1:
        raise ValueError("min_points 必须 >= 1")
    return min_points - 1 if count >= min_points else 0


def select_complete_point(
    points: Sequence[P], min_points: int = DEFAULT_MIN_POINTS
) -> Optional[P]:
    """选取最近一个完整周期的数据点（默认为次新点）"""
    idx = complete_index(len(points), min_points)
    return None if idx is None else points[idx]


def drop_incomplete(points: Sequence[P], min_points: int = DEFAULT_MIN_POINTS) -> List[P]:
    """去掉仍在累积中的最新点，返回从完整点开始的序列"""
    idx = complete_index(len(points), min_points)
    return [] if idx is None else list(points[idx:])


class ProcessingLayer:
    """数据处理层：清洗 + 排序 + 构建时间序列"""

    def _normalize_frame(
        self, records: List[Dict[str, Any]], value_cols: List[str]
    ) -> pd.DataFrame:
        """
        将原始数据点标准化为按时间戳降序排列的 DataFrame

        标准列：timestamp, date, 以及 value_cols 中的数值列
        """
        if not records:
            return pd.DataFrame()

        df = pd.DataFrame(records)
        if "timestamp" not in df.columns:
            logger.debug("数据点缺少 timestamp 字段，已丢弃")
            return pd.DataFrame()

        df["timestamp"] = pd.to_numeric(df["timestamp"], errors="coerce")
        df = df.dropna(subset=["timestamp"])
        if df.empty:
            return df

        # 数值列缺失或非法时置 0
        for col in value_cols:
            if col not in df.columns:
                df[col] = 0.0
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0)

        # 日期统一为 UTC YYYY-MM-DD，上游未提供时由时间戳推导
        derived = pd.to_datetime(df["timestamp"], unit="s", utc=True).dt.strftime("%Y-%m-%d")
        if "date" in df.columns:
            given = df["date"].fillna("").astype(str).str[:10]
            df["date"] = given.where(given != "", derived)
        else:
            df["date"] = derived

        df = df.drop_duplicates(subset=["timestamp"], keep="last")
        return df.sort_values("timestamp", ascending=False).reset_index(drop=True)

    def normalize_points(
        self, records: List[Dict[str, Any]], value_key: str = "value"
    ) -> List[MetricPoint]:
        df = self._normalize_frame(records, [value_key])
        if df.empty:
            return []
        return [
            MetricPoint(timestamp=int(row["timestamp"]), date=row["date"], value=float(row[value_key]))
            for row in df.to_dict(orient="records")
        ]

    def normalize_icm_points(self, records: List[Dict[str, Any]]) -> List[ICMPoint]:
        df = self._normalize_frame(records, list(_ICM_COLUMNS))
        if df.empty:
            return []
        return [
            ICMPoint(
                timestamp=int(row["timestamp"]),
                date=row["date"],
                **{field: float(row[col]) for col, field in _ICM_COLUMNS.items()},
            )
            for row in df.to_dict(orient="records")
        ]

    def build_time_series(self, points: List[MetricPoint]) -> TimeSeriesMetric:
        """由降序数据点构建时间序列，附带与前一周期的变化量"""
        if not points:
            return TimeSeriesMetric()
        current = points[0].value
        previous = points[1].value if len(points) > 1 else current
        change = current - previous
        pct = (change / previous * 100) if previous else 0.0
        return TimeSeriesMetric(
            data=points,
            current_value=current,
            change_24h=change,
            change_percentage_24h=round(pct, 4),
        )

    def build_icm_metric(self, points: List[ICMPoint]) -> ICMMetric:
        if not points:
            return ICMMetric()
        return ICMMetric(data=points, current_value=points[0].message_count)

    def series_from_totals(self, totals: pd.DataFrame) -> TimeSeriesMetric:
        """由 date / timestamp / value 三列的汇总表构建时间序列"""
        if totals.empty:
            return TimeSeriesMetric()
        totals = totals.sort_values("timestamp", ascending=False)
        points = [
            MetricPoint(timestamp=int(row["timestamp"]), date=row["date"], value=float(row["value"]))
            for row in totals.to_dict(orient="records")
        ]
        return self.build_time_series(points)


# ── 模块级别单例 ──────────────────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
