"""同步引擎组件装配."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedmirror.config import Settings
from feedmirror.core.credentials import TokenCredentials
from feedmirror.core.edit_queue import EditQueue
from feedmirror.core.headers import HeaderReconciler
from feedmirror.core.inoreader import InoreaderClient, InoreaderConfig
from feedmirror.core.quota import QuotaTracker
from feedmirror.core.sync import SyncOrchestrator
from feedmirror.utils.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass
class SyncServices:
    """一个进程内共享的同步组件."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    quota: QuotaTracker
    header_reconciler: HeaderReconciler
    client: InoreaderClient
    edit_queue: EditQueue
    orchestrator: SyncOrchestrator

    async def close(self) -> None:
        await self.orchestrator.shutdown()
        await self.client.close()


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> SyncServices:
    """按配置装配所有组件；transport/clock/sleep 供测试注入."""
    quota = QuotaTracker(session_factory, settings, clock=clock, sleep=sleep)
    header_reconciler = HeaderReconciler(quota)
    client = InoreaderClient(
        InoreaderConfig.from_settings(settings),
        TokenCredentials(settings, transport=transport),
        quota,
        header_reconciler,
        sleep=sleep,
    )
    edit_queue = EditQueue(session_factory, client, settings, clock=clock)
    orchestrator = SyncOrchestrator(
        session_factory, client, edit_queue, settings, clock=clock
    )
    return SyncServices(
        settings=settings,
        session_factory=session_factory,
        quota=quota,
        header_reconciler=header_reconciler,
        client=client,
        edit_queue=edit_queue,
        orchestrator=orchestrator,
    )


_services: SyncServices | None = None


def set_services(services: SyncServices | None) -> None:
    """设置全局组件（应用启动时调用）."""
    global _services
    _services = services


def get_services() -> SyncServices:
    """获取全局组件（用于依赖注入）."""
    if _services is None:
        msg = "同步组件未初始化"
        raise RuntimeError(msg)
    return _services
