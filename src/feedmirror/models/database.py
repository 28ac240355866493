"""数据库初始化和会话管理."""

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from feedmirror.core.errors import StoreUnavailableError

# 注册所有表
from feedmirror.models import article, edit_queue, feed, metadata, sync, tag, usage  # noqa: F401

logger = logging.getLogger(__name__)

# 全局引擎和会话工厂
_engine: Any = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def create_session_factory(
    database_url: str,
) -> tuple[Any, async_sessionmaker[AsyncSession]]:
    """创建引擎和会话工厂，并建表."""
    engine = create_async_engine(database_url, echo=False)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    return engine, session_factory


async def init_db(database_url: str) -> async_sessionmaker[AsyncSession]:
    """初始化数据库，创建所有表."""
    global _engine, _session_factory

    _engine, _session_factory = await create_session_factory(database_url)
    logger.info(f"数据库已初始化: {database_url}")
    return _session_factory


async def close_db() -> None:
    """释放数据库连接."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库会话（用于依赖注入）."""
    if _session_factory is None:
        msg = "数据库未初始化，请先调用 init_db()"
        raise RuntimeError(msg)

    async with _session_factory() as session:
        yield session


@asynccontextmanager
async def store_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """打开会话；连接类错误转换为 StoreUnavailableError."""
    try:
        async with session_factory() as session:
            yield session
    except OperationalError as e:
        raise StoreUnavailableError(f"数据库不可用: {e}") from e
