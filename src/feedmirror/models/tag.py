"""标签模型 - 文章与标签多对多."""

from sqlmodel import Field, SQLModel


class Tag(SQLModel, table=True):
    """用户标签（不含文件夹）."""

    __tablename__ = "tags"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, description="标签名")
    slug: str = Field(index=True, description="URL 友好名")
    unread_count: int = Field(default=0, description="含该标签的未读文章数")


class ArticleTag(SQLModel, table=True):
    """文章-标签关联."""

    __tablename__ = "article_tags"  # type: ignore[assignment]

    article_id: str = Field(foreign_key="articles.id", primary_key=True)
    tag_id: int = Field(foreign_key="tags.id", primary_key=True)
