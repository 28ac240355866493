"""远端文章与本地记录的合并（对账）与字段回填."""

import logging
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from feedmirror.core.errors import MalformedItemError
from feedmirror.core.schemas import StreamItem
from feedmirror.models.article import Article
from feedmirror.models.tag import ArticleTag, Tag
from feedmirror.utils.clock import utc_now
from feedmirror.utils.html_parser import (
    content_hash,
    decode_html_entities,
    html_to_text,
    slugify,
)

logger = logging.getLogger(__name__)


class ReconcileOutcome:
    """对账结果."""

    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class ReconcileResult:
    """单篇文章的对账结果."""

    article_id: str
    outcome: str
    new_tags: int = 0


def parse_item(raw: dict[str, Any] | StreamItem) -> StreamItem:
    """校验单篇远端文章."""
    if isinstance(raw, StreamItem):
        return raw
    try:
        return StreamItem.model_validate(raw)
    except ValidationError as e:
        item_id = raw.get("id") if isinstance(raw, dict) else None
        msg = f"文章数据不合法 (id={item_id}): {e.error_count()} 个字段错误"
        raise MalformedItemError(msg) from e


def split_labels(
    labels: Collection[str], folder_labels: Collection[str]
) -> tuple[set[str], set[str]]:
    """把标签集合拆成 (文件夹, 标签)."""
    folders = {label for label in labels if label in folder_labels}
    tags = {label for label in labels if label not in folder_labels}
    return folders, tags


class ArticleReconciler:
    """
    文章对账器.

    以远端稳定 ID 为唯一键 upsert：
    - 远端字段（标题、原始内容、标签、已读/收藏）总是覆盖本地值；
    - 本地富化字段（全文、AI 摘要、纯文本）只在远端原始内容变化时失效；
    - 远端缺失的字段不会清空本地已有值（回填语义）。
    """

    def __init__(
        self,
        session: AsyncSession,
        folder_labels: Collection[str],
        protected_ids: Collection[str] = (),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.folder_labels = set(folder_labels)
        # 仍有待回推本地编辑的文章，保留本地已读/收藏/标签状态
        self.protected_ids = set(protected_ids)
        self._clock = clock
        self._tags: dict[str, Tag] = {}

    async def reconcile(self, raw: dict[str, Any] | StreamItem) -> ReconcileResult:
        """合并一篇远端文章，返回 inserted / updated / unchanged."""
        item = parse_item(raw)
        now = self._clock()

        article = await self.session.get(Article, item.id)
        protected = item.id in self.protected_ids
        if article is None:
            article = self._build(item, now)
            self.session.add(article)
            # 立即 flush，同一会话内再次出现的相同 ID 会命中 identity map
            await self.session.flush()
            outcome = ReconcileOutcome.INSERTED
        else:
            protected = self._has_local_changes(article)
            before = self._fingerprint(article)
            self._merge(article, item, now, protected)
            changed = self._fingerprint(article) != before
            outcome = ReconcileOutcome.UPDATED if changed else ReconcileOutcome.UNCHANGED

        new_tags = 0
        if not protected:
            tags_changed, new_tags = await self._sync_tags(article.id, item.labels)
            if tags_changed and outcome == ReconcileOutcome.UNCHANGED:
                outcome = ReconcileOutcome.UPDATED

        if outcome == ReconcileOutcome.UPDATED:
            article.updated_at = now

        return ReconcileResult(article_id=article.id, outcome=outcome, new_tags=new_tags)

    def _build(self, item: StreamItem, now: datetime) -> Article:
        body = item.body
        return Article(
            id=item.id,
            feed_id=item.feed_id,
            title=decode_html_entities(item.title) or "无标题",
            author=_clean(item.author),
            url=item.link,
            content=body,
            content_hash=content_hash(body),
            content_text=html_to_text(body),
            published_at=_published(item.published),
            is_read=item.is_read,
            is_starred=item.is_starred,
            last_sync_update=now,
            created_at=now,
            updated_at=now,
        )

    def _has_local_changes(self, article: Article) -> bool:
        """文章是否有尚未被远端确认的本地编辑."""
        if article.id in self.protected_ids:
            return True
        local, synced = article.last_local_update, article.last_sync_update
        return local is not None and (synced is None or local > synced)

    def _merge(
        self, article: Article, item: StreamItem, now: datetime, protected: bool
    ) -> None:
        article.feed_id = item.feed_id

        title = decode_html_entities(item.title)
        if title:
            article.title = title
        author = _clean(item.author)
        if author:
            article.author = author
        if item.link:
            article.url = item.link
        published = _published(item.published)
        if published:
            article.published_at = published

        body = item.body
        if body:
            new_hash = content_hash(body)
            old_hash = article.content_hash or content_hash(article.content)
            if new_hash != old_hash:
                logger.debug(f"文章 {article.id} 远端内容已变化，本地富化字段失效")
                article.content = body
                article.content_text = html_to_text(body)
                article.full_content = None
                article.ai_summary = None
            article.content_hash = new_hash

        if not article.content_text and article.content:
            article.content_text = html_to_text(article.content)

        if protected:
            if (article.is_read, article.is_starred) != (item.is_read, item.is_starred):
                logger.warning(
                    f"文章 {article.id} 本地与远端状态冲突，保留本地状态 "
                    f"(本地 read={article.is_read} starred={article.is_starred}，"
                    f"远端 read={item.is_read} starred={item.is_starred})"
                )
        else:
            article.is_read = item.is_read
            article.is_starred = item.is_starred

        article.last_sync_update = now

    async def _sync_tags(self, article_id: str, labels: set[str]) -> tuple[bool, int]:
        """用远端标签集合覆盖文章的标签关联（文件夹不产生关联）."""
        _, tag_labels = split_labels(labels, self.folder_labels)

        stmt = select(ArticleTag).where(ArticleTag.article_id == article_id)
        result = await self.session.execute(stmt)
        current = {assoc.tag_id: assoc for assoc in result.scalars().all()}

        new_tags = 0
        target: set[int] = set()
        for label in sorted(tag_labels):
            tag, created = await self._get_or_create_tag(label)
            new_tags += int(created)
            if tag.id is None:
                msg = f"标签 {label} 未分配 ID"
                raise RuntimeError(msg)
            target.add(tag.id)

        changed = False
        for tag_id, assoc in current.items():
            if tag_id not in target:
                await self.session.delete(assoc)
                changed = True
        for tag_id in target - current.keys():
            self.session.add(ArticleTag(article_id=article_id, tag_id=tag_id))
            changed = True

        if changed:
            await self.session.flush()
        return changed, new_tags

    async def _get_or_create_tag(self, name: str) -> tuple[Tag, bool]:
        name = decode_html_entities(name) or name
        cached = self._tags.get(name)
        if cached is not None:
            return cached, False

        result = await self.session.execute(select(Tag).where(Tag.name == name))
        tag = result.scalar_one_or_none()
        created = False
        if tag is None:
            tag = Tag(name=name, slug=slugify(name))
            self.session.add(tag)
            await self.session.flush()
            created = True
            logger.info(f"新建标签: {name}")

        self._tags[name] = tag
        return tag, created

    @staticmethod
    def _fingerprint(article: Article) -> tuple[Any, ...]:
        return (
            article.feed_id,
            article.title,
            article.author,
            article.url,
            article.content_hash,
            article.content_text,
            article.published_at,
            article.is_read,
            article.is_starred,
        )


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return decode_html_entities(value) if value else None


def _published(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, UTC).replace(tzinfo=None)
