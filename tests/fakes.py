"""测试用的远端替身、时钟与数据构造."""

import asyncio
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import parse_qs

import httpx

BASE_URL = "https://inoreader.test/reader/api/0"
USER = "user/1005"


class FakeClock:
    """可手动推进的时钟."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeSleep:
    """记录等待时长并推进时钟，不真正等待."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds=seconds)


def make_item(
    item_id: str,
    feed_id: str,
    title: str = "Title",
    content: str = "<p>Hello</p>",
    published: int | None = 1768478400,
    read: bool = False,
    starred: bool = False,
    labels: tuple[str, ...] = (),
) -> dict[str, Any]:
    """构造一篇远端文章."""
    categories = [f"{USER}/state/com.google/reading-list"]
    if read:
        categories.append(f"{USER}/state/com.google/read")
    if starred:
        categories.append(f"{USER}/state/com.google/starred")
    categories.extend(f"{USER}/label/{label}" for label in labels)
    item: dict[str, Any] = {
        "id": item_id,
        "title": title,
        "author": "Alice",
        "canonical": [{"href": f"https://example.com/{item_id.rsplit('/', 1)[-1]}"}],
        "summary": {"direction": "ltr", "content": content},
        "categories": categories,
        "origin": {"streamId": feed_id, "title": "Feed", "htmlUrl": "https://example.com"},
    }
    if published is not None:
        item["published"] = published
    return item


class FakeInoreader:
    """基于 httpx.MockTransport 的远端 API 替身."""

    def __init__(self) -> None:
        self.subscriptions: list[dict[str, Any]] = []
        self.tags: list[dict[str, Any]] = [{"id": f"{USER}/state/com.google/starred"}]
        self.streams: dict[str, list[dict[str, Any]]] = {}
        self.rate_headers: dict[str, str] = {}
        # 路径片段 -> 固定返回的状态码
        self.failures: dict[str, int] = {}
        self.requests: list[httpx.Request] = []
        self.edits: list[dict[str, list[str]]] = []
        self.delay = 0.0

    def add_feed(self, feed_id: str, title: str, folder: str | None = None) -> None:
        categories = [{"id": f"{USER}/label/{folder}", "label": folder}] if folder else []
        self.subscriptions.append(
            {
                "id": feed_id,
                "title": title,
                "url": f"https://example.com/{title}.xml",
                "htmlUrl": "https://example.com",
                "iconUrl": "https://example.com/favicon.ico",
                "categories": categories,
            }
        )
        if folder:
            self.tags.append({"id": f"{USER}/label/{folder}", "type": "folder"})
        self.streams.setdefault(feed_id, [])

    def add_item(self, feed_id: str, item_id: str, **kwargs: Any) -> dict[str, Any]:
        item = make_item(item_id, feed_id, **kwargs)
        items = self.streams.setdefault(feed_id, [])
        items[:] = [existing for existing in items if existing["id"] != item_id]
        items.append(item)
        return item

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def requests_to(self, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if fragment in r.url.path]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        path = request.url.path
        for fragment, status in self.failures.items():
            if fragment in path:
                return httpx.Response(status, text="error", headers=self.rate_headers)

        if path.endswith("/subscription/list"):
            return self._json({"subscriptions": self.subscriptions})
        if path.endswith("/tag/list"):
            return self._json({"tags": self.tags})
        if path.endswith("/unread-count"):
            counts = [
                {
                    "id": feed_id,
                    "count": sum(1 for item in items if not _is_read(item)),
                }
                for feed_id, items in self.streams.items()
            ]
            return self._json({"max": 1000, "unreadcounts": counts})
        if "/stream/contents/" in path:
            return self._stream(request, path.split("/stream/contents/", 1)[1])
        if path.endswith("/edit-tag"):
            form = parse_qs(request.content.decode())
            self.edits.append(form)
            self._apply_edit(form)
            return httpx.Response(200, text="OK", headers=self.rate_headers)
        return httpx.Response(404, text="not found")

    def _apply_edit(self, form: dict[str, list[str]]) -> None:
        """edit-tag 在远端是幂等的：添加已有状态或移除不存在的状态都不报错."""
        add = [value.replace("user/-/", f"{USER}/", 1) for value in form.get("a", [])]
        remove = [value.replace("user/-/", f"{USER}/", 1) for value in form.get("r", [])]
        ids = set(form.get("i", []))
        for items in self.streams.values():
            for item in items:
                if item.get("id") not in ids:
                    continue
                categories = [cat for cat in item["categories"] if cat not in remove]
                categories.extend(cat for cat in add if cat not in categories)
                item["categories"] = categories

    def item(self, item_id: str) -> dict[str, Any]:
        for items in self.streams.values():
            for item in items:
                if item.get("id") == item_id:
                    return item
        raise KeyError(item_id)

    def _stream(self, request: httpx.Request, stream_id: str) -> httpx.Response:
        params = request.url.params
        items = list(self.streams.get(stream_id, []))
        if "xt" in params:
            items = [item for item in items if not _is_read(item)]
        start = int(params.get("c", "0"))
        count = int(params.get("n", "20"))
        page = items[start : start + count]
        body: dict[str, Any] = {"id": stream_id, "items": page}
        if start + count < len(items):
            body["continuation"] = str(start + count)
        return self._json(body)

    def _json(self, body: dict[str, Any]) -> httpx.Response:
        return httpx.Response(200, json=body, headers=self.rate_headers)


def _is_read(item: dict[str, Any]) -> bool:
    return any(cat.endswith("/state/com.google/read") for cat in item.get("categories", []))
