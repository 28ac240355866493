"""时间工具."""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """当前 UTC 时间（naive，与数据库存储一致）."""
    return datetime.now(UTC).replace(tzinfo=None)


def day_key(moment: datetime) -> str:
    """UTC 日历日键，格式 YYYY-MM-DD."""
    return moment.strftime("%Y-%m-%d")
