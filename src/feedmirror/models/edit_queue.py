"""EditQueueEntry 本地编辑队列模型."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from feedmirror.utils.clock import utc_now


class EditAction:
    """本地编辑动作."""

    READ = "read"
    UNREAD = "unread"
    STAR = "star"
    UNSTAR = "unstar"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"

    ALL = (READ, UNREAD, STAR, UNSTAR, ADD_TAG, REMOVE_TAG)
    OPPOSITES = {
        READ: UNREAD,
        UNREAD: READ,
        STAR: UNSTAR,
        UNSTAR: STAR,
        ADD_TAG: REMOVE_TAG,
        REMOVE_TAG: ADD_TAG,
    }


class EditStatus:
    """队列条目状态."""

    PENDING = "pending"
    FAILED = "failed"  # 超过重试次数，作为常驻错误展示


class EditQueueEntry(SQLModel, table=True):
    """待回推到远端的本地编辑."""

    __tablename__ = "edit_queue"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    article_id: str = Field(index=True, description="远端文章 ID")
    action: str = Field(description="动作: read|unread|star|unstar|add_tag|remove_tag")
    tag: str | None = Field(default=None, description="标签动作的标签名")
    status: str = Field(default=EditStatus.PENDING, index=True)
    attempts: int = Field(default=0)
    last_error: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    last_attempt_at: datetime | None = Field(default=None)
    next_attempt_at: datetime | None = Field(default=None)
