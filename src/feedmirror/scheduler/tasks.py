"""定时任务定义."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from feedmirror.config import Settings
from feedmirror.core.errors import SyncAlreadyRunningError, SyncError
from feedmirror.core.services import SyncServices

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def sync_task(services: SyncServices) -> None:
    """同步任务：启动一次同步，不等待结束."""
    try:
        run = await services.orchestrator.start()
    except SyncAlreadyRunningError as e:
        logger.info(f"已有同步任务在运行，跳过本次调度: {e.run_id}")
        return
    except SyncError as e:
        logger.error(f"无法启动同步任务: {e}")
        return
    logger.info(f"定时同步已启动: {run.id}")


async def flush_task(services: SyncServices) -> None:
    """回推任务：按批量阈值回推本地编辑."""
    try:
        result = await services.edit_queue.flush()
    except SyncError as e:
        logger.error(f"回推任务失败: {e}")
        return
    if result.propagated:
        logger.info(f"定时回推完成: {result.to_dict()}")


def create_scheduler(settings: Settings, services: SyncServices) -> AsyncIOScheduler:
    """创建并启动定时任务调度器."""
    global _scheduler

    _scheduler = AsyncIOScheduler()

    _scheduler.add_job(
        sync_task,
        "interval",
        minutes=settings.sync_interval_minutes,
        args=[services],
        id="sync_task",
        name="Inoreader 同步",
        replace_existing=True,
    )

    _scheduler.add_job(
        flush_task,
        "interval",
        minutes=settings.edit_flush_interval_minutes,
        args=[services],
        id="flush_task",
        name="本地编辑回推",
        replace_existing=True,
    )

    # 启动时立即执行一次同步
    _scheduler.add_job(
        sync_task,
        "date",  # 一次性任务
        args=[services],
        id="sync_task_initial",
        name="初始同步",
    )

    _scheduler.start()
    logger.info(
        f"定时任务调度器已启动，同步间隔: {settings.sync_interval_minutes} 分钟，"
        f"回推间隔: {settings.edit_flush_interval_minutes} 分钟"
    )

    return _scheduler


async def shutdown_scheduler() -> None:
    """关闭定时任务调度器."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        logger.info("定时任务调度器已关闭")
        _scheduler = None
