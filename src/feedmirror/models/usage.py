"""UsageRecord API 配额使用记录."""

from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from feedmirror.utils.clock import utc_now


class UsageRecord(SQLModel, table=True):
    """每个 (服务, UTC 日) 一行，保留作历史审计."""

    __tablename__ = "api_usage"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("service", "day", name="uq_api_usage_day"),)

    id: int | None = Field(default=None, primary_key=True)
    service: str = Field(index=True)
    day: str = Field(description="UTC 日期 YYYY-MM-DD")

    # 远端响应头报告的值（None 表示从未观测到）
    zone1_usage: int | None = Field(default=None)
    zone1_limit: int | None = Field(default=None)
    zone2_usage: int | None = Field(default=None)
    zone2_limit: int | None = Field(default=None)
    reset_after: int | None = Field(default=None, description="距重置的秒数")
    reset_at: datetime | None = Field(default=None, description="重置截止时间")

    # 本地调用计数
    zone1_calls: int = Field(default=0)
    zone2_calls: int = Field(default=0)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
