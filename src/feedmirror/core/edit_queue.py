"""本地编辑回推队列 - 把已读/收藏/标签变更批量回推到远端."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from feedmirror.config import Settings
from feedmirror.core.errors import AuthRejectedError, QuotaExceededError, SyncError
from feedmirror.core.inoreader import InoreaderClient
from feedmirror.core.schemas import STATE_READ, STATE_STARRED, label_stream_id
from feedmirror.models.article import Article
from feedmirror.models.database import store_session
from feedmirror.models.edit_queue import EditAction, EditQueueEntry, EditStatus
from feedmirror.models.tag import ArticleTag, Tag
from feedmirror.utils.clock import utc_now
from feedmirror.utils.html_parser import slugify

logger = logging.getLogger(__name__)

# 动作 -> (edit-tag 参数, 远端状态)
_STATE_EDITS = {
    EditAction.READ: ("a", STATE_READ),
    EditAction.UNREAD: ("r", STATE_READ),
    EditAction.STAR: ("a", STATE_STARRED),
    EditAction.UNSTAR: ("r", STATE_STARRED),
}


@dataclass
class FlushResult:
    """一次回推的结果."""

    propagated: int = 0
    remaining: int = 0
    failed: int = 0
    deferred: bool = False  # 未达到批量阈值，本次未发送
    skipped: bool = False  # 已有回推在进行
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "propagated": self.propagated,
            "remaining": self.remaining,
            "failed": self.failed,
            "deferred": self.deferred,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
        }


class EditQueue:
    """
    本地编辑队列.

    条目持久化在 edit_queue 表，回推成功后删除；失败时保留并按指数退避重试，
    超过最大重试次数后标记为 failed（常驻错误），只有显式放弃才会删除。
    远端 edit-tag 是幂等的，至少一次投递即可。
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: InoreaderClient,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.client = client
        self._settings = settings
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def is_flushing(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # 入队
    # ------------------------------------------------------------------

    async def enqueue(
        self, article_id: str, action: str, tag: str | None = None
    ) -> EditQueueEntry:
        """加入一条本地编辑."""
        async with store_session(self._session_factory) as session:
            entry = await self._enqueue_in(session, article_id, action, tag)
            await session.commit()
            return entry

    async def record_local_edit(
        self, article_id: str, action: str, tag: str | None = None
    ) -> Article | None:
        """更新本地文章状态并入队，同一事务内完成；文章不存在返回 None."""
        async with store_session(self._session_factory) as session:
            article = await session.get(Article, article_id)
            if article is None:
                return None

            now = self._clock()
            if action == EditAction.READ:
                article.is_read = True
            elif action == EditAction.UNREAD:
                article.is_read = False
            elif action == EditAction.STAR:
                article.is_starred = True
            elif action == EditAction.UNSTAR:
                article.is_starred = False
            elif tag is not None:
                await self._apply_local_tag(session, article_id, action, tag)

            article.last_local_update = now
            article.updated_at = now

            await self._enqueue_in(session, article_id, action, tag)
            await session.commit()
            return article

    async def _enqueue_in(
        self,
        session: AsyncSession,
        article_id: str,
        action: str,
        tag: str | None,
    ) -> EditQueueEntry:
        if action not in EditAction.ALL:
            msg = f"未知的编辑动作: {action}"
            raise ValueError(msg)
        is_tag_action = action in (EditAction.ADD_TAG, EditAction.REMOVE_TAG)
        if is_tag_action and not tag:
            msg = f"{action} 需要指定标签"
            raise ValueError(msg)
        if not is_tag_action:
            tag = None

        opposite = EditAction.OPPOSITES[action]
        stmt = select(EditQueueEntry).where(
            EditQueueEntry.article_id == article_id,
            EditQueueEntry.action.in_([action, opposite]),  # type: ignore[attr-defined]
        )
        if tag is not None:
            stmt = stmt.where(EditQueueEntry.tag == tag)
        result = await session.execute(stmt)

        for existing in result.scalars().all():
            if existing.action == action and existing.status == EditStatus.PENDING:
                logger.debug(f"编辑已在队列中: {article_id} {action}")
                return existing
            # 新的意图覆盖相反的旧条目（以及同动作的常驻错误）
            await session.delete(existing)

        entry = EditQueueEntry(
            article_id=article_id,
            action=action,
            tag=tag,
            created_at=self._clock(),
        )
        session.add(entry)
        await session.flush()
        logger.info(f"本地编辑入队: {article_id} {action}{f' {tag}' if tag else ''}")
        return entry

    async def _apply_local_tag(
        self, session: AsyncSession, article_id: str, action: str, name: str
    ) -> None:
        result = await session.execute(select(Tag).where(Tag.name == name))
        tag = result.scalar_one_or_none()

        if action == EditAction.ADD_TAG:
            if tag is None:
                tag = Tag(name=name, slug=slugify(name))
                session.add(tag)
                await session.flush()
            if tag.id is None:
                msg = f"标签 {name} 未分配 ID"
                raise RuntimeError(msg)
            if await session.get(ArticleTag, (article_id, tag.id)) is None:
                session.add(ArticleTag(article_id=article_id, tag_id=tag.id))
        elif tag is not None:
            assoc = await session.get(ArticleTag, (article_id, tag.id))
            if assoc is not None:
                await session.delete(assoc)

    # ------------------------------------------------------------------
    # 回推
    # ------------------------------------------------------------------

    async def flush(self, force: bool = False) -> FlushResult:
        """回推到期的条目；有时间上限，超时中断后未完成的条目留待下次."""
        if self._lock.locked():
            logger.info("已有回推在进行，跳过本次")
            return FlushResult(skipped=True, remaining=await self.count(EditStatus.PENDING))

        async with self._lock:
            try:
                return await asyncio.wait_for(
                    self._flush(force),
                    timeout=self._settings.edit_flush_timeout_seconds,
                )
            except TimeoutError:
                logger.warning("回推超时，剩余条目留待下次")
                return FlushResult(
                    timed_out=True,
                    remaining=await self.count(EditStatus.PENDING),
                    failed=await self.count(EditStatus.FAILED),
                )

    async def _flush(self, force: bool) -> FlushResult:
        now = self._clock()
        async with store_session(self._session_factory) as session:
            stmt = (
                select(EditQueueEntry)
                .where(EditQueueEntry.status == EditStatus.PENDING)
                .order_by(EditQueueEntry.created_at, EditQueueEntry.id)
            )
            result = await session.execute(stmt)
            entries = [
                e
                for e in result.scalars().all()
                if e.next_attempt_at is None or e.next_attempt_at <= now
            ]

        if not entries:
            return FlushResult(
                remaining=await self.count(EditStatus.PENDING),
                failed=await self.count(EditStatus.FAILED),
            )

        if not force and not self._should_flush(entries, now):
            age = (now - entries[0].created_at).total_seconds() / 60
            logger.info(
                f"待回推 {len(entries)} 条，未达到最小批量 "
                f"{self._settings.edit_min_changes}，最早一条 {age:.0f} 分钟前"
            )
            return FlushResult(
                deferred=True,
                remaining=await self.count(EditStatus.PENDING),
                failed=await self.count(EditStatus.FAILED),
            )

        logger.info(f"开始回推 {len(entries)} 条本地编辑")
        groups: dict[tuple[str, str | None], list[EditQueueEntry]] = {}
        for entry in entries:
            groups.setdefault((entry.action, entry.tag), []).append(entry)

        propagated = 0
        batch_size = max(1, self._settings.edit_batch_size)
        stop = False
        for (action, tag), group in groups.items():
            add, remove = self._edit_params(action, tag)
            for i in range(0, len(group), batch_size):
                batch = group[i : i + batch_size]
                item_ids = list(dict.fromkeys(e.article_id for e in batch))
                try:
                    await self.client.edit_tag(item_ids, add=add, remove=remove)
                except QuotaExceededError as e:
                    # 配额问题与条目本身无关，不计入重试次数
                    await self._record_failure(batch, e, count_attempt=False)
                    stop = True
                    break
                except AuthRejectedError as e:
                    await self._record_failure(batch, e)
                    stop = True
                    break
                except SyncError as e:
                    await self._record_failure(batch, e)
                    continue

                await self._delete(batch)
                propagated += len(batch)
                logger.info(f"已回推 {len(batch)} 条 {action}")
            if stop:
                break

        flush_result = FlushResult(
            propagated=propagated,
            remaining=await self.count(EditStatus.PENDING),
            failed=await self.count(EditStatus.FAILED),
        )
        logger.info(
            f"回推完成: 成功={flush_result.propagated}, "
            f"剩余={flush_result.remaining}, 常驻错误={flush_result.failed}"
        )
        return flush_result

    def _should_flush(self, entries: list[EditQueueEntry], now: datetime) -> bool:
        if any(entry.attempts > 0 for entry in entries):
            return True
        if len(entries) >= self._settings.edit_min_changes:
            return True
        oldest_age = (now - entries[0].created_at).total_seconds()
        return oldest_age > self._settings.edit_max_age_seconds

    @staticmethod
    def _edit_params(action: str, tag: str | None) -> tuple[str | None, str | None]:
        """动作 -> (add, remove) 参数."""
        if action in _STATE_EDITS:
            param, state = _STATE_EDITS[action]
        else:
            param = "a" if action == EditAction.ADD_TAG else "r"
            state = label_stream_id(tag or "")
        return (state, None) if param == "a" else (None, state)

    async def _delete(self, batch: list[EditQueueEntry]) -> None:
        ids = [entry.id for entry in batch]
        async with store_session(self._session_factory) as session:
            await session.execute(
                delete(EditQueueEntry).where(EditQueueEntry.id.in_(ids))  # type: ignore[union-attr]
            )
            await session.commit()

    async def _record_failure(
        self,
        batch: list[EditQueueEntry],
        error: Exception,
        count_attempt: bool = True,
    ) -> None:
        now = self._clock()
        max_retries = self._settings.edit_max_retries
        logger.error(f"回推 {len(batch)} 条失败: {error}")

        async with store_session(self._session_factory) as session:
            for stale in batch:
                entry = await session.get(EditQueueEntry, stale.id)
                if entry is None:
                    continue
                entry.last_error = str(error)[:500]
                entry.last_attempt_at = now
                if not count_attempt:
                    continue

                entry.attempts += 1
                if entry.attempts >= max_retries:
                    entry.status = EditStatus.FAILED
                    entry.next_attempt_at = None
                    logger.error(
                        f"编辑 {entry.article_id} {entry.action} 已重试 "
                        f"{entry.attempts} 次，标记为常驻错误"
                    )
                else:
                    backoff = self._settings.edit_retry_backoff_seconds * 2 ** (
                        entry.attempts - 1
                    )
                    entry.next_attempt_at = now + timedelta(seconds=backoff)
                    logger.info(
                        f"编辑 {entry.article_id} {entry.action} 将在 {backoff / 60:.0f} "
                        f"分钟后重试 ({entry.attempts}/{max_retries})"
                    )
            await session.commit()

    # ------------------------------------------------------------------
    # 查询与维护
    # ------------------------------------------------------------------

    async def count(self, status: str) -> int:
        async with store_session(self._session_factory) as session:
            stmt = (
                select(func.count())
                .select_from(EditQueueEntry)
                .where(EditQueueEntry.status == status)
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def pending_article_ids(self) -> set[str]:
        """仍有未回推编辑（含常驻错误）的文章 ID."""
        async with store_session(self._session_factory) as session:
            result = await session.execute(select(EditQueueEntry.article_id).distinct())
            return set(result.scalars().all())

    async def stats(self) -> dict[str, Any]:
        """队列统计."""
        async with store_session(self._session_factory) as session:
            stmt = select(func.min(EditQueueEntry.created_at)).where(
                EditQueueEntry.status == EditStatus.PENDING
            )
            oldest = (await session.execute(stmt)).scalar_one_or_none()
        return {
            "pending": await self.count(EditStatus.PENDING),
            "failed": await self.count(EditStatus.FAILED),
            "oldest_pending_at": oldest.isoformat() if oldest else None,
            "flushing": self.is_flushing,
        }

    async def list_failed(self, limit: int = 50) -> list[EditQueueEntry]:
        """常驻错误列表."""
        async with store_session(self._session_factory) as session:
            stmt = (
                select(EditQueueEntry)
                .where(EditQueueEntry.status == EditStatus.FAILED)
                .order_by(EditQueueEntry.created_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def retry_failed(self) -> int:
        """把常驻错误重置为 pending."""
        async with store_session(self._session_factory) as session:
            result = await session.execute(
                select(EditQueueEntry).where(EditQueueEntry.status == EditStatus.FAILED)
            )
            entries = result.scalars().all()
            for entry in entries:
                entry.status = EditStatus.PENDING
                entry.attempts = 0
                entry.next_attempt_at = None
            await session.commit()
        logger.info(f"重置了 {len(entries)} 条常驻错误为 pending")
        return len(entries)

    async def abandon_failed(self) -> int:
        """显式放弃所有常驻错误."""
        async with store_session(self._session_factory) as session:
            result = await session.execute(
                delete(EditQueueEntry).where(EditQueueEntry.status == EditStatus.FAILED)
            )
            await session.commit()
        count = result.rowcount or 0
        logger.warning(f"已放弃 {count} 条回推失败的编辑")
        return count
