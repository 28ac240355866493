"""同步编排 - 单飞、可恢复、带进度上报的拉取流程."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from feedmirror.config import Settings
from feedmirror.core.edit_queue import EditQueue
from feedmirror.core.errors import (
    FEED_LEVEL_ERRORS,
    MalformedItemError,
    StoreUnavailableError,
    SyncAlreadyRunningError,
    SyncError,
    SyncTimeoutError,
)
from feedmirror.core.inoreader import InoreaderClient
from feedmirror.core.reconcile import ArticleReconciler, ReconcileOutcome
from feedmirror.core.schemas import SubscriptionList
from feedmirror.models.article import Article
from feedmirror.models.database import store_session
from feedmirror.models.feed import Feed
from feedmirror.models.metadata import (
    LAST_INCREMENTAL_TIMESTAMP,
    LAST_SYNC_TIME,
    SyncMetadata,
)
from feedmirror.models.sync import ACTIVE_SLOT, SyncRun, SyncRunStatus
from feedmirror.models.tag import ArticleTag, Tag
from feedmirror.utils.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """一次同步的工作状态（只由执行该任务的协程修改）."""

    run_id: str
    started_at: datetime
    new_articles: int = 0
    updated_articles: int = 0
    new_tags: int = 0
    failed_feeds: int = 0
    skipped_items: int = 0
    feeds_total: int = 0
    feeds_done: int = 0
    items_total: int = 0
    items_processed: int = 0
    enumerated: bool = False

    @property
    def progress(self) -> int | None:
        """items-processed / items-total；总数未知前为 None（启动中）."""
        if not self.enumerated:
            return None
        if self.items_total > 0:
            fraction = self.items_processed / self.items_total
        elif self.feeds_total > 0:
            fraction = self.feeds_done / self.feeds_total
        else:
            fraction = 1.0
        # 100 只在完成时设置
        return min(99, int(fraction * 100))

    def counters(self) -> dict[str, int]:
        return {
            "new_articles": self.new_articles,
            "updated_articles": self.updated_articles,
            "new_tags": self.new_tags,
            "failed_feeds": self.failed_feeds,
            "skipped_items": self.skipped_items,
            "feeds_total": self.feeds_total,
            "items_total": self.items_total,
            "items_processed": self.items_processed,
        }


class SyncOrchestrator:
    """
    同步编排器.

    同一时刻只允许一个 pending/running 任务；任务在独立协程中执行，
    每次状态变化都写入 sync_runs 表，轮询方只读取持久化的记录。
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: InoreaderClient,
        edit_queue: EditQueue,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.client = client
        self.edit_queue = edit_queue
        self._settings = settings
        self._clock = clock
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._task_run_id: str | None = None
        self._active_run_id: str | None = None

    @property
    def active_run_id(self) -> str | None:
        return self._active_run_id

    # ------------------------------------------------------------------
    # 触发与查询
    # ------------------------------------------------------------------

    async def start(self) -> SyncRun:
        """创建并在后台启动一次同步；已有任务时抛出 SyncAlreadyRunningError."""
        async with self._lock:
            if self._task is not None and not self._task.done() and self._active_run_id:
                raise SyncAlreadyRunningError(self._active_run_id)

            async with store_session(self._session_factory) as session:
                stmt = select(SyncRun).where(
                    SyncRun.status.in_(SyncRunStatus.ACTIVE)  # type: ignore[attr-defined]
                )
                now = self._clock()
                for active in (await session.execute(stmt)).scalars().all():
                    if not self._is_abandoned(active, now):
                        raise SyncAlreadyRunningError(active.id)
                    logger.warning(f"同步任务 {active.id} 已无执行者，标记为中断")
                    _mark_interrupted(active, now, "任务已无执行者")
                await session.flush()

                await self._purge_expired(session)

                run = SyncRun(
                    id=str(uuid4()),
                    status=SyncRunStatus.PENDING,
                    progress=None,
                    message="同步任务已创建，正在启动...",
                    started_at=now,
                    updated_at=now,
                    active_slot=ACTIVE_SLOT,
                )
                session.add(run)
                try:
                    await session.commit()
                except IntegrityError as e:
                    # 另一个进程抢先创建了任务
                    await session.rollback()
                    other = (await session.execute(stmt)).scalars().first()
                    raise SyncAlreadyRunningError(other.id if other else "unknown") from e

            self._active_run_id = run.id
            self._task_run_id = run.id
            self._task = asyncio.create_task(self._run(run.id, now), name=f"sync-{run.id}")
            logger.info(f"同步任务已创建: {run.id}")
            return run

    async def wait(self) -> None:
        """等待当前任务结束."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def run_once(self) -> SyncRun:
        """启动并等待一次同步，返回最终记录."""
        run = await self.start()
        await self.wait()
        final = await self.get_run(run.id)
        if final is None:
            msg = f"同步任务 {run.id} 的记录已丢失"
            raise StoreUnavailableError(msg)
        return final

    async def shutdown(self) -> None:
        """取消进行中的任务."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def get_run(self, run_id: str) -> SyncRun | None:
        async with store_session(self._session_factory) as session:
            return await session.get(SyncRun, run_id)

    async def list_runs(self, limit: int = 5) -> list[SyncRun]:
        async with store_session(self._session_factory) as session:
            stmt = (
                select(SyncRun)
                .order_by(SyncRun.started_at.desc())  # type: ignore[attr-defined]
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def last_successful_sync(self) -> datetime | None:
        """最近一次成功同步的完成时间."""
        async with store_session(self._session_factory) as session:
            stmt = select(func.max(SyncRun.completed_at)).where(
                SyncRun.status == SyncRunStatus.COMPLETED
            )
            latest = (await session.execute(stmt)).scalar_one_or_none()
            if latest is not None:
                return latest
            # 任务记录可能已过保留期，退回元数据
            meta = await session.get(SyncMetadata, LAST_SYNC_TIME)
            return datetime.fromisoformat(meta.value) if meta else None

    async def recover_interrupted(self) -> int:
        """把上一个进程遗留的 pending/running 任务标记为 failed."""
        now = self._clock()
        async with store_session(self._session_factory) as session:
            stmt = select(SyncRun).where(
                SyncRun.status.in_(SyncRunStatus.ACTIVE)  # type: ignore[attr-defined]
            )
            runs = (await session.execute(stmt)).scalars().all()
            for run in runs:
                _mark_interrupted(run, now, "进程重启时任务仍未结束")
            await session.commit()

        if runs:
            logger.info(f"已将 {len(runs)} 个中断的同步任务标记为 failed")
        return len(runs)

    def _is_abandoned(self, run: SyncRun, now: datetime) -> bool:
        """进行中的记录是否已没有协程在执行."""
        if run.id == self._task_run_id:
            return self._task is None or self._task.done()
        # 其他进程的任务：超过总时长上限仍未更新即视为已退出
        idle = (now - run.updated_at).total_seconds()
        return idle > self._settings.sync_timeout_seconds

    # ------------------------------------------------------------------
    # 执行
    # ------------------------------------------------------------------

    async def _run(self, run_id: str, started_at: datetime) -> None:
        ctx = RunContext(run_id=run_id, started_at=started_at)
        timeout = self._settings.sync_timeout_seconds
        try:
            await asyncio.wait_for(self._execute(ctx), timeout=timeout)
        except TimeoutError:
            await self._fail(ctx, SyncTimeoutError(f"同步超过 {timeout:.0f} 秒上限"))
        except SyncError as e:
            await self._fail(ctx, e)
        except asyncio.CancelledError:
            await self._fail(ctx, SyncError("同步任务被取消"))
            raise
        except Exception as e:
            logger.exception(f"同步任务 {run_id} 异常")
            await self._fail(ctx, e)
        finally:
            self._active_run_id = None

    async def _execute(self, ctx: RunContext) -> None:
        settings = self._settings

        # 先回推本地编辑，避免拉取结果覆盖尚未送达远端的本地意图
        await self._update(ctx, status=SyncRunStatus.RUNNING, message="正在回推本地编辑...")
        await self.edit_queue.flush(force=True)

        await self._update(ctx, message="正在获取订阅列表...")
        subscriptions = await self.client.get_subscriptions()
        folder_labels = subscriptions.folder_labels()

        await self._update(ctx, message="正在获取标签列表...")
        try:
            tag_list = await self.client.get_tags()
            # 没有订阅的文件夹只出现在 tag/list 中
            folder_labels |= tag_list.folder_labels()
            logger.info(f"标签 {len(tag_list.labels() - folder_labels)} 个（不含文件夹）")
        except FEED_LEVEL_ERRORS as e:
            logger.warning(f"获取标签列表失败，只按订阅分类识别文件夹: {e}")
        logger.info(
            f"找到 {len(subscriptions.subscriptions)} 个订阅、{len(folder_labels)} 个文件夹"
        )

        await self._update(ctx, message="正在获取未读数...")
        try:
            unread_counts = (await self.client.get_unread_counts()).as_dict()
        except FEED_LEVEL_ERRORS as e:
            logger.warning(f"获取未读数失败，继续同步: {e}")
            unread_counts = {}

        await self._upsert_feeds(subscriptions, unread_counts)

        feeds = sorted(subscriptions.subscriptions, key=lambda sub: sub.id)
        ctx.feeds_total = len(feeds)
        ctx.items_total = sum(
            min(unread_counts.get(sub.id, 0), settings.sync_max_items_per_feed)
            for sub in feeds
        )
        ctx.enumerated = True

        since = await self._incremental_since(ctx.started_at)
        if since:
            since_at = datetime.fromtimestamp(since, UTC).isoformat()
            logger.info(f"增量同步：只拉取 {since_at} 之后的文章")
        else:
            logger.info("全量同步")

        for index, sub in enumerate(feeds, 1):
            await self._update(
                ctx, message=f"[{index}/{ctx.feeds_total}] 正在同步 {sub.title}..."
            )
            try:
                await self._sync_feed(ctx, sub.id, folder_labels, since)
            except FEED_LEVEL_ERRORS as e:
                ctx.failed_feeds += 1
                logger.warning(f"Feed {sub.id} 同步失败: {e}")
            except SQLAlchemyError as e:
                ctx.failed_feeds += 1
                logger.exception(f"Feed {sub.id} 写入失败: {e}")
            ctx.feeds_done += 1
            await self._update(ctx)

        await self._update(ctx, message="正在刷新统计...")
        sidebar = await self._refresh_sidebar()
        await self._save_metadata(ctx.started_at)
        await self._complete(ctx, sidebar)

    async def _sync_feed(
        self,
        ctx: RunContext,
        feed_id: str,
        folder_labels: set[str],
        since: int | None,
    ) -> None:
        """分页拉取一个 Feed 并逐条对账，每页一个事务."""
        settings = self._settings
        continuation: str | None = None
        fetched = 0

        while fetched < settings.sync_max_items_per_feed:
            count = min(settings.sync_page_size, settings.sync_max_items_per_feed - fetched)
            page = await self.client.get_stream_page(
                feed_id,
                count=count,
                continuation=continuation,
                newer_than=since,
                exclude_read=settings.sync_unread_only,
            )

            # 每页重新读取：运行期间用户的新编辑同样不能被远端状态覆盖
            protected_ids = await self.edit_queue.pending_article_ids()
            inserted = updated = new_tags = skipped = 0
            async with store_session(self._session_factory) as session:
                reconciler = ArticleReconciler(
                    session, folder_labels, protected_ids, clock=self._clock
                )
                for raw in page.items:
                    try:
                        result = await reconciler.reconcile(raw)
                    except MalformedItemError as e:
                        skipped += 1
                        logger.warning(f"跳过不合法的文章: {e}")
                        continue
                    if result.outcome == ReconcileOutcome.INSERTED:
                        inserted += 1
                    elif result.outcome == ReconcileOutcome.UPDATED:
                        updated += 1
                    new_tags += result.new_tags
                await session.commit()

            # 提交成功后才计入
            ctx.new_articles += inserted
            ctx.updated_articles += updated
            ctx.new_tags += new_tags
            ctx.skipped_items += skipped
            ctx.items_processed += len(page.items)
            fetched += len(page.items)
            if ctx.items_processed > ctx.items_total:
                ctx.items_total = ctx.items_processed
            await self._update(ctx)

            continuation = page.continuation
            if not continuation or not page.items:
                break
            # 页与页之间让出事件循环
            await asyncio.sleep(settings.sync_page_yield_seconds)

        logger.info(f"Feed {feed_id} 同步完成，共 {fetched} 篇")

    async def _upsert_feeds(
        self, subscriptions: SubscriptionList, unread_counts: dict[str, int]
    ) -> None:
        now = self._clock()
        async with store_session(self._session_factory) as session:
            for sub in subscriptions.subscriptions:
                category = sub.categories[0].label if sub.categories else None
                feed = await session.get(Feed, sub.id)
                if feed is None:
                    feed = Feed(id=sub.id, title=sub.title, created_at=now)
                    session.add(feed)
                feed.title = sub.title
                feed.url = sub.url
                feed.site_url = sub.html_url
                feed.icon_url = sub.icon_url
                feed.category = category
                feed.unread_count = unread_counts.get(sub.id, feed.unread_count)
                feed.updated_at = now
            await session.commit()

    async def _incremental_since(self, started_at: datetime) -> int | None:
        """增量同步起点；从未同步过或距上次超过 N 天时返回 None（全量）."""
        async with store_session(self._session_factory) as session:
            meta = await session.get(SyncMetadata, LAST_INCREMENTAL_TIMESTAMP)
        if meta is None:
            return None
        last = int(meta.value)
        now_ts = _epoch(started_at)
        if now_ts - last > self._settings.sync_full_refresh_days * 86400:
            return None
        return last

    async def _refresh_sidebar(self) -> dict[str, Any]:
        """计算侧边栏投影：各 Feed 未读数、各标签未读数，并回写标签计数."""
        async with store_session(self._session_factory) as session:
            feed_ids = (await session.execute(select(Feed.id).order_by(Feed.id))).scalars().all()
            unread_by_feed = dict.fromkeys(feed_ids, 0)
            stmt = (
                select(Article.feed_id, func.count())
                .where(Article.is_read == False)  # noqa: E712
                .group_by(Article.feed_id)
            )
            for feed_id, count in (await session.execute(stmt)).all():
                unread_by_feed[feed_id] = count

            tag_stmt = (
                select(Tag.id, func.count(Article.id))
                .join(ArticleTag, ArticleTag.tag_id == Tag.id)
                .join(Article, Article.id == ArticleTag.article_id)
                .where(Article.is_read == False)  # noqa: E712
                .group_by(Tag.id)
            )
            tag_unread = dict((await session.execute(tag_stmt)).all())

            tags = (await session.execute(select(Tag).order_by(Tag.name))).scalars().all()
            sidebar_tags = []
            for tag in tags:
                tag.unread_count = tag_unread.get(tag.id, 0)
                if tag.unread_count:
                    sidebar_tags.append(
                        {"id": tag.id, "name": tag.name, "count": tag.unread_count}
                    )
            await session.commit()

        return {
            "feed_counts": [[feed_id, count] for feed_id, count in sorted(unread_by_feed.items())],
            "tags": sidebar_tags,
        }

    async def _save_metadata(self, started_at: datetime) -> None:
        now = self._clock()
        values = {
            LAST_SYNC_TIME: now.isoformat(),
            LAST_INCREMENTAL_TIMESTAMP: str(_epoch(started_at)),
        }
        async with store_session(self._session_factory) as session:
            for key, value in values.items():
                meta = await session.get(SyncMetadata, key)
                if meta is None:
                    session.add(SyncMetadata(key=key, value=value, updated_at=now))
                else:
                    meta.value = value
                    meta.updated_at = now
            await session.commit()

    async def _purge_expired(self, session: AsyncSession) -> None:
        cutoff = self._clock() - timedelta(hours=self._settings.sync_run_retention_hours)
        await session.execute(
            delete(SyncRun).where(
                SyncRun.status.in_(SyncRunStatus.TERMINAL),  # type: ignore[attr-defined]
                SyncRun.started_at < cutoff,
            )
        )

    # ------------------------------------------------------------------
    # 状态持久化
    # ------------------------------------------------------------------

    async def _update(self, ctx: RunContext, **fields: Any) -> None:
        """写入任务状态；终态不可变，进度单调不减."""
        async with store_session(self._session_factory) as session:
            run = await session.get(SyncRun, ctx.run_id)
            if run is None or run.status in SyncRunStatus.TERMINAL:
                logger.warning(f"同步任务 {ctx.run_id} 已结束，忽略状态更新")
                return

            progress = fields.pop("progress", ctx.progress)
            if progress is not None and (run.progress is None or progress > run.progress):
                run.progress = progress

            for key, value in {**ctx.counters(), **fields}.items():
                setattr(run, key, value)
            if run.status in SyncRunStatus.TERMINAL:
                run.active_slot = None
            run.updated_at = self._clock()
            await session.commit()

    async def _complete(self, ctx: RunContext, sidebar: dict[str, Any]) -> None:
        now = self._clock()
        message = (
            f"同步完成：{ctx.feeds_total} 个 Feed，新增 {ctx.new_articles} 篇，"
            f"更新 {ctx.updated_articles} 篇"
        )
        if ctx.failed_feeds:
            message += f"，{ctx.failed_feeds} 个 Feed 失败"
        await self._update(
            ctx,
            status=SyncRunStatus.COMPLETED,
            progress=100,
            message=message,
            sidebar=sidebar,
            completed_at=now,
        )
        logger.info(f"同步任务 {ctx.run_id} 完成: {ctx.counters()}")

    async def _fail(self, ctx: RunContext, error: BaseException) -> None:
        kind = getattr(error, "kind", "unknown")
        message = getattr(error, "user_message", "同步失败")
        reset_after = getattr(error, "reset_after", None)
        if reset_after is not None:
            message += f"（约 {reset_after} 秒后重置）"

        logger.error(f"同步任务 {ctx.run_id} 失败 [{kind}]: {error}")
        try:
            await self._update(
                ctx,
                status=SyncRunStatus.FAILED,
                message=message,
                error=str(error) or repr(error),
                error_kind=kind,
                retryable=bool(getattr(error, "retryable", False)),
                completed_at=self._clock(),
            )
        except Exception:
            # 存储不可用时由启动恢复流程把任务标记为 failed
            logger.exception(f"无法记录同步任务 {ctx.run_id} 的失败状态")


def _mark_interrupted(run: SyncRun, now: datetime, reason: str) -> None:
    run.status = SyncRunStatus.FAILED
    run.active_slot = None
    run.error = reason
    run.error_kind = "interrupted"
    run.retryable = True
    run.message = "同步被中断，请重新同步"
    run.completed_at = now
    run.updated_at = now


def _epoch(moment: datetime) -> int:
    return int(moment.replace(tzinfo=UTC).timestamp())
