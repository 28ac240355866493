"""测试 HTTP API."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedmirror.core.errors import StoreUnavailableError
from feedmirror.core.quota import Zone
from feedmirror.core.services import SyncServices, get_services
from feedmirror.main import app
from feedmirror.models.article import Article
from feedmirror.models.database import get_session
from feedmirror.models.edit_queue import EditAction, EditQueueEntry, EditStatus
from tests.fakes import FakeInoreader

FEED = "feed/http://a.example/rss"


@pytest_asyncio.fixture
async def client(
    services: SyncServices,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    """绑定测试组件与测试数据库的 HTTP 客户端."""

    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_session] = override_get_session
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def article(session_factory: async_sessionmaker[AsyncSession]) -> str:
    async with session_factory() as session:
        session.add(Article(id="item-1", feed_id=FEED, title="Hello"))
        await session.commit()
    return "item-1"


@pytest.fixture
def populated(remote: FakeInoreader) -> FakeInoreader:
    remote.add_feed(FEED, "A")
    remote.add_item(FEED, "item-1")
    return remote


class TestHealth:
    """测试健康检查."""

    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestSyncEndpoints:
    """测试同步端点."""

    async def test_trigger_returns_pending_run(
        self, client: AsyncClient, services: SyncServices, populated: FakeInoreader
    ) -> None:
        """触发后立即返回，不等待同步完成."""
        response = await client.post("/api/sync")
        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "pending"
        assert data["progress"] is None

        await services.orchestrator.wait()
        response = await client.get(f"/api/sync/runs/{data['id']}")
        assert response.status_code == 200
        run = response.json()
        assert run["status"] == "completed"
        assert run["progress"] == 100
        assert run["new_articles"] == 1
        assert run["sidebar"]["feed_counts"] == [[FEED, 1]]

    async def test_trigger_while_running_conflicts(
        self, client: AsyncClient, services: SyncServices, populated: FakeInoreader
    ) -> None:
        first = (await client.post("/api/sync")).json()
        response = await client.post("/api/sync")
        assert response.status_code == 409
        assert response.json()["detail"]["run_id"] == first["id"]
        await services.orchestrator.wait()

    async def test_trigger_with_exhausted_quota(
        self, client: AsyncClient, services: SyncServices
    ) -> None:
        await services.quota.reconcile(Zone.READ, used=10000, limit=10000, reset_after=900)
        response = await client.post("/api/sync")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "900"
        assert response.json()["detail"]["reset_after_seconds"] == 900

    async def test_store_unavailable(
        self,
        client: AsyncClient,
        services: SyncServices,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken() -> None:
            raise StoreUnavailableError("disk I/O error")

        monkeypatch.setattr(services.orchestrator, "start", broken)
        response = await client.post("/api/sync")
        assert response.status_code == 503

    async def test_unknown_run(self, client: AsyncClient) -> None:
        response = await client.get("/api/sync/runs/missing")
        assert response.status_code == 404

    async def test_runs_and_last_success(
        self, client: AsyncClient, services: SyncServices, populated: FakeInoreader
    ) -> None:
        response = await client.get("/api/sync/last-success")
        assert response.json() == {"completed_at": None}

        run = await services.orchestrator.run_once()

        response = await client.get("/api/sync/runs")
        data = response.json()
        assert data["active_run_id"] is None
        assert [item["id"] for item in data["items"]] == [run.id]

        response = await client.get("/api/sync/last-success")
        assert response.json()["completed_at"] is not None

    async def test_usage(self, client: AsyncClient, services: SyncServices) -> None:
        await services.quota.reconcile(Zone.READ, used=8500, limit=10000)
        response = await client.get("/api/sync/usage")
        assert response.status_code == 200
        data = response.json()
        assert data["zone1"]["used"] == 8500
        assert data["zone1"]["percentage"] == 85.0
        assert data["zone2"]["limit"] == 2000
        assert "recommended_delay_seconds" in data

        response = await client.get("/api/sync/usage/history", params={"days": 7})
        items = response.json()["items"]
        assert len(items) == 1
        assert items[0]["zone1_usage"] == 8500


class TestArticleEndpoints:
    """测试文章本地操作端点."""

    async def test_mark_read(self, client: AsyncClient, article: str) -> None:
        response = await client.post(f"/api/articles/{article}/read")
        assert response.status_code == 200
        data = response.json()
        assert data["is_read"] is True
        assert data["queued"] is True

    async def test_star_and_unstar(self, client: AsyncClient, article: str) -> None:
        assert (await client.post(f"/api/articles/{article}/star")).json()["is_starred"] is True
        assert (await client.post(f"/api/articles/{article}/unstar")).json()["is_starred"] is False

    async def test_unknown_article(self, client: AsyncClient) -> None:
        response = await client.post("/api/articles/missing/read")
        assert response.status_code == 404

    async def test_tags(
        self, client: AsyncClient, services: SyncServices, article: str
    ) -> None:
        response = await client.post(f"/api/articles/{article}/tags", json={"tag": "later"})
        assert response.status_code == 200
        assert response.json()["tag"] == "later"

        response = await client.delete(f"/api/articles/{article}/tags/later")
        assert response.status_code == 200
        assert (await services.edit_queue.stats())["pending"] == 1

    async def test_remote_style_id_with_slashes(
        self,
        client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """远端文章 ID 中带斜杠."""
        article_id = "tag:google.com,2005:reader/item/000000000000002a"
        async with session_factory() as session:
            session.add(Article(id=article_id, feed_id=FEED, title="Slashes"))
            await session.commit()

        response = await client.post(f"/api/articles/{article_id}/star")
        assert response.status_code == 200
        assert response.json()["id"] == article_id

        response = await client.get("/api/articles/detail", params={"article_id": article_id})
        data = response.json()
        assert data["is_starred"] is True
        assert data["pending_edits"] == [{"action": "star", "tag": None, "status": "pending"}]

    async def test_detail(self, client: AsyncClient, article: str) -> None:
        await client.post(f"/api/articles/{article}/tags", json={"tag": "later"})
        response = await client.get("/api/articles/detail", params={"article_id": article})
        assert response.status_code == 200
        data = response.json()
        assert data["title"] == "Hello"
        assert data["tags"] == ["later"]
        assert data["last_local_update"] is not None

        response = await client.get("/api/articles/detail", params={"article_id": "nope"})
        assert response.status_code == 404

    async def test_empty_tag_rejected(self, client: AsyncClient, article: str) -> None:
        response = await client.post(f"/api/articles/{article}/tags", json={"tag": ""})
        assert response.status_code == 422


class TestEditEndpoints:
    """测试回推队列端点."""

    async def test_flush_and_stats(
        self, client: AsyncClient, remote: FakeInoreader, article: str
    ) -> None:
        await client.post(f"/api/articles/{article}/read")
        stats = (await client.get("/api/edits/stats")).json()
        assert stats["pending"] == 1

        response = await client.post("/api/edits/flush")
        assert response.status_code == 200
        assert response.json()["propagated"] == 1
        assert remote.edits == [{"i": [article], "a": ["user/-/state/com.google/read"]}]

    async def test_failed_retry_and_abandon(
        self,
        client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        async with session_factory() as session:
            session.add(
                EditQueueEntry(
                    article_id="item-9",
                    action=EditAction.READ,
                    status=EditStatus.FAILED,
                    attempts=3,
                    last_error="HTTP 400",
                )
            )
            await session.commit()

        items = (await client.get("/api/edits/failed")).json()["items"]
        assert [(i["article_id"], i["last_error"]) for i in items] == [("item-9", "HTTP 400")]

        assert (await client.post("/api/edits/retry")).json() == {"reset_count": 1}
        assert (await client.delete("/api/edits/failed")).json() == {"abandoned_count": 0}
