"""测试配置和 fixtures."""

from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedmirror.config import Settings
from feedmirror.core.services import SyncServices, build_services
from feedmirror.models.database import create_session_factory
from tests.fakes import BASE_URL, FakeClock, FakeInoreader, FakeSleep


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def settings(tmp_path: Any) -> Settings:
    """测试配置：临时文件数据库，关闭所有延迟."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        inoreader_base_url=BASE_URL,
        inoreader_access_token="test-token",
        inoreader_app_id="app-id",
        inoreader_app_key="app-key",
        remote_max_retries=1,
        remote_backoff_seconds=0,
        quota_caution_delay_seconds=0,
        quota_slowdown_delay_seconds=0,
        sync_page_size=2,
        sync_timeout_seconds=10,
    )


@pytest_asyncio.fixture
async def session_factory(
    settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """临时文件 SQLite 会话工厂（多个会话共享同一数据库）."""
    engine, factory = await create_session_factory(settings.database_url)
    yield factory
    await engine.dispose()


@pytest.fixture
def remote() -> FakeInoreader:
    return FakeInoreader()


@pytest_asyncio.fixture
async def services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    remote: FakeInoreader,
    clock: FakeClock,
    fake_sleep: FakeSleep,
) -> AsyncGenerator[SyncServices, None]:
    """装配好的同步组件，远端为 FakeInoreader."""
    built = build_services(
        session_factory,
        settings,
        transport=remote.transport,
        clock=clock,
        sleep=fake_sleep,
    )
    yield built
    await built.close()
