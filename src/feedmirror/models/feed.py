"""Feed 订阅源模型."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from feedmirror.utils.clock import utc_now


class Feed(SQLModel, table=True):
    """订阅源."""

    __tablename__ = "feeds"  # type: ignore[assignment]

    id: str = Field(primary_key=True, description="远端 feed ID (streamId)")
    title: str = Field(description="Feed 标题")
    url: str = Field(default="", description="Feed URL")
    site_url: str | None = Field(default=None, description="网站 URL")
    icon_url: str | None = Field(default=None, description="图标 URL")
    category: str | None = Field(default=None, description="所在文件夹")
    unread_count: int = Field(default=0, description="远端报告的未读数")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
