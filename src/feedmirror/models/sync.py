"""SyncRun 同步任务模型."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from feedmirror.utils.clock import utc_now


class SyncRunStatus:
    """同步任务状态."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    ACTIVE = (PENDING, RUNNING)
    TERMINAL = (COMPLETED, FAILED)


# 进行中的任务占用同一个槽位值，唯一约束保证存储中最多一个进行中任务
ACTIVE_SLOT = 1


class SyncRun(SQLModel, table=True):
    """一次同步任务."""

    __tablename__ = "sync_runs"  # type: ignore[assignment]

    id: str = Field(primary_key=True, description="任务 ID (uuid4)")
    status: str = Field(default=SyncRunStatus.PENDING, index=True)
    progress: int | None = Field(default=None, description="进度百分比，None 表示启动中")
    message: str | None = Field(default=None, description="面向用户的提示")
    error: str | None = Field(default=None, description="原始错误信息")
    error_kind: str | None = Field(default=None, description="错误分类")
    retryable: bool = Field(default=False)
    active_slot: int | None = Field(
        default=None, unique=True, description="进行中为 ACTIVE_SLOT，结束后清空"
    )

    new_articles: int = Field(default=0)
    updated_articles: int = Field(default=0)
    deleted_articles: int = Field(default=0)
    new_tags: int = Field(default=0)
    failed_feeds: int = Field(default=0)
    skipped_items: int = Field(default=0)
    feeds_total: int = Field(default=0)
    items_total: int = Field(default=0)
    items_processed: int = Field(default=0)

    sidebar: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = Field(default=None)
