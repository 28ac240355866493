"""Article 文章模型."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from feedmirror.utils.clock import utc_now


class Article(SQLModel, table=True):
    """远端文章的本地镜像."""

    __tablename__ = "articles"  # type: ignore[assignment]

    id: str = Field(primary_key=True, description="远端稳定 ID（唯一键）")
    feed_id: str = Field(index=True, description="关联 Feed（远端 streamId）")
    title: str = Field(description="标题（已解码 HTML 实体）")
    author: str | None = Field(default=None, description="作者")
    url: str | None = Field(default=None, description="原文链接")
    content: str | None = Field(default=None, description="远端原始 HTML 内容")
    content_hash: str | None = Field(default=None, description="原始内容摘要")
    content_text: str | None = Field(default=None, description="纯文本内容")
    full_content: str | None = Field(default=None, description="本地抓取的全文")
    ai_summary: str | None = Field(default=None, description="本地生成的 AI 摘要")
    published_at: datetime | None = Field(default=None, description="发布时间")
    is_read: bool = Field(default=False, index=True, description="是否已读")
    is_starred: bool = Field(default=False, description="是否收藏")
    last_local_update: datetime | None = Field(
        default=None, description="最近一次本地用户操作时间"
    )
    last_sync_update: datetime | None = Field(
        default=None, description="最近一次同步写入时间"
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
