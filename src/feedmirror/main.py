"""FeedMirror 主应用入口."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feedmirror.api import articles, edits, sync
from feedmirror.config import get_settings
from feedmirror.core.services import build_services, set_services
from feedmirror.models.database import close_db, init_db
from feedmirror.scheduler import create_scheduler, shutdown_scheduler
from feedmirror.utils.log_setup import configure_logging, shutdown_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期管理."""
    app_settings = get_settings()
    configure_logging(app_settings.log_level, app_settings.log_queue_size)

    # 启动时初始化
    logger.info("正在初始化数据库...")
    session_factory = await init_db(app_settings.database_url)

    services = build_services(session_factory, app_settings)
    set_services(services)

    # 上一个进程遗留的任务
    logger.info("正在检查中断的同步任务...")
    await services.orchestrator.recover_interrupted()

    logger.info("正在启动定时任务...")
    create_scheduler(app_settings, services)

    logger.info("FeedMirror 启动完成！")
    yield

    # 关闭时清理
    logger.info("正在关闭...")
    await shutdown_scheduler()
    await services.close()
    set_services(None)
    await close_db()
    logger.info("FeedMirror 已关闭")
    shutdown_logging()


app = FastAPI(
    title="FeedMirror",
    description="Inoreader 本地镜像 - 配额感知的同步与编辑回推",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(sync.router)
app.include_router(articles.router)
app.include_router(edits.router)


@app.get("/")
async def root() -> dict:
    """根路径."""
    return {
        "name": "FeedMirror",
        "version": "0.1.0",
        "description": "Inoreader 本地镜像",
    }


@app.get("/health")
async def health() -> dict:
    """健康检查."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "feedmirror.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
