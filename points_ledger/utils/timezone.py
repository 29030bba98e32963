"""
统一时区处理模块

- 数据库存储 UTC 时间（不带时区信息的 naive datetime）
- 查询条件中带时区的时间先转换为 naive UTC 再比较
"""
from datetime import datetime, timezone
from typing import Optional


def utc_now_naive() -> datetime:
    """
    获取当前 UTC 时间（naive，不带时区信息）

    这是数据库存储的标准格式

    Returns:
        不带时区信息的 naive datetime 对象
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """
    将任意时间转换为 UTC 时间

    Args:
        dt: 任意时区的 datetime 对象

    Returns:
        UTC 时间（naive，不带时区信息）
    """
    if dt.tzinfo is None:
        # 已经是 naive，假设是 UTC
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_optional(dt: Optional[datetime]) -> Optional[datetime]:
    return to_utc(dt) if dt is not None else None
