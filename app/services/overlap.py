"""区间与时间工具

所有区间均为左闭右开 [start, end)，首尾相接不算重叠。
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """统一转成带时区的 UTC 时间，naive 时间按 UTC 处理

    SQLite 读出来的时间不带时区，PostgreSQL 带，比较前先归一。
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return as_utc(a_start) < as_utc(b_end) and as_utc(b_start) < as_utc(a_end)


def overlap_clause(column_start, column_end, start: datetime, end: datetime):
    """SQL 版本的重叠条件：row.start < end AND row.end > start"""
    return (column_start < end) & (column_end > start)
