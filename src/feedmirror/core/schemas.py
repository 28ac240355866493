"""远端 API 响应结构（Google Reader 兼容协议）."""

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

STATE_READ = "user/-/state/com.google/read"
STATE_STARRED = "user/-/state/com.google/starred"

_STATE_RE = re.compile(r"^user/[^/]*/state/com\.google/(?P<state>[^/]+)$")
_LABEL_RE = re.compile(r"^user/[^/]*/label/(?P<label>.+)$")


def label_name(stream_id: str) -> str | None:
    """从 user/<id>/label/<name> 中提取标签名."""
    match = _LABEL_RE.match(stream_id)
    return match.group("label") if match else None


def state_name(stream_id: str) -> str | None:
    """从 user/<id>/state/com.google/<state> 中提取状态名."""
    match = _STATE_RE.match(stream_id)
    return match.group("state") if match else None


def label_stream_id(name: str) -> str:
    """标签名 -> 远端标签 ID."""
    return f"user/-/label/{name}"


class RemoteModel(BaseModel):
    """远端模型基类，忽略未知字段."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Category(RemoteModel):
    """订阅所属文件夹."""

    id: str
    label: str


class Subscription(RemoteModel):
    """订阅源."""

    id: str
    title: str
    url: str = ""
    html_url: str | None = Field(default=None, alias="htmlUrl")
    icon_url: str | None = Field(default=None, alias="iconUrl")
    categories: list[Category] = Field(default_factory=list)


class SubscriptionList(RemoteModel):
    """subscription/list 响应."""

    subscriptions: list[Subscription] = Field(default_factory=list)

    def folder_labels(self) -> set[str]:
        """订阅分类中出现的所有文件夹名."""
        return {cat.label for sub in self.subscriptions for cat in sub.categories}


class TagEntry(RemoteModel):
    """tag/list 中的条目."""

    id: str
    type: str | None = None


class TagList(RemoteModel):
    """tag/list 响应."""

    tags: list[TagEntry] = Field(default_factory=list)

    def labels(self) -> set[str]:
        """所有用户标签名（包含文件夹）."""
        names = (label_name(tag.id) for tag in self.tags)
        return {name for name in names if name}

    def folder_labels(self) -> set[str]:
        """类型为文件夹的标签名."""
        names = (label_name(tag.id) for tag in self.tags if tag.type == "folder")
        return {name for name in names if name}


class UnreadCount(RemoteModel):
    """unread-count 条目."""

    id: str
    count: int = 0


class UnreadCountList(RemoteModel):
    """unread-count 响应."""

    unreadcounts: list[UnreadCount] = Field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {item.id: item.count for item in self.unreadcounts}


class Link(RemoteModel):
    href: str


class ItemContent(RemoteModel):
    content: str = ""


class Origin(RemoteModel):
    stream_id: str = Field(alias="streamId")
    title: str | None = None


class StreamItem(RemoteModel):
    """stream/contents 中的单篇文章."""

    id: str = Field(min_length=1)
    title: str | None = None
    author: str | None = None
    published: int | None = None
    canonical: list[Link] = Field(default_factory=list)
    alternate: list[Link] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    content: ItemContent | None = None
    summary: ItemContent | None = None
    origin: Origin

    @property
    def feed_id(self) -> str:
        return self.origin.stream_id

    @property
    def body(self) -> str:
        """正文 HTML，优先 content，其次 summary."""
        if self.content and self.content.content:
            return self.content.content
        if self.summary:
            return self.summary.content
        return ""

    @property
    def link(self) -> str | None:
        for links in (self.canonical, self.alternate):
            if links:
                return links[0].href
        return None

    @property
    def states(self) -> set[str]:
        names = (state_name(cat) for cat in self.categories)
        return {name for name in names if name}

    @property
    def is_read(self) -> bool:
        return "read" in self.states

    @property
    def is_starred(self) -> bool:
        return "starred" in self.states

    @property
    def labels(self) -> set[str]:
        names = (label_name(cat) for cat in self.categories)
        return {name for name in names if name}


class StreamContents(RemoteModel):
    """stream/contents 响应；items 保持原始结构，逐条校验."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    continuation: str | None = None
