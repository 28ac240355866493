"""Inoreader (Google Reader 兼容) API 客户端."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from feedmirror.config import Settings
from feedmirror.core.credentials import CredentialProvider
from feedmirror.core.errors import (
    AuthRejectedError,
    MalformedPayloadError,
    QuotaExceededError,
    RemoteRequestError,
    TransientUpstreamError,
)
from feedmirror.core.headers import HeaderReconciler, parse_rate_limit_headers
from feedmirror.core.quota import QuotaTracker, Zone
from feedmirror.core.schemas import (
    StreamContents,
    SubscriptionList,
    TagList,
    UnreadCountList,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class InoreaderConfig:
    """远端连接配置."""

    base_url: str
    max_retries: int = 3
    backoff_seconds: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "InoreaderConfig":
        return cls(
            base_url=settings.inoreader_base_url.rstrip("/"),
            max_retries=settings.remote_max_retries,
            backoff_seconds=settings.remote_backoff_seconds,
        )


class InoreaderClient:
    """
    远端 API 客户端.

    每次请求都经过配额闸门，并在收到响应（包括错误响应）后写回配额响应头。
    """

    def __init__(
        self,
        config: InoreaderConfig,
        credentials: CredentialProvider,
        quota: QuotaTracker,
        header_reconciler: HeaderReconciler,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self.quota = quota
        self.header_reconciler = header_reconciler
        self._sleep = sleep

    async def close(self) -> None:
        """关闭客户端."""
        await self.credentials.close()

    async def get_subscriptions(self) -> SubscriptionList:
        """获取订阅列表."""
        response = await self._request(
            "GET", "/subscription/list", Zone.READ, params={"output": "json"}
        )
        return self._parse(response, SubscriptionList)

    async def get_tags(self) -> TagList:
        """获取标签列表（包含文件夹）."""
        response = await self._request(
            "GET", "/tag/list", Zone.READ, params={"output": "json"}
        )
        return self._parse(response, TagList)

    async def get_unread_counts(self) -> UnreadCountList:
        """获取各 Feed 未读数."""
        response = await self._request(
            "GET", "/unread-count", Zone.READ, params={"output": "json"}
        )
        return self._parse(response, UnreadCountList)

    async def get_stream_page(
        self,
        stream_id: str,
        count: int = 100,
        continuation: str | None = None,
        newer_than: int | None = None,
        exclude_read: bool = True,
    ) -> StreamContents:
        """获取某个 stream 的一页文章."""
        params: dict[str, Any] = {"output": "json", "n": count}
        if continuation:
            params["c"] = continuation
        if newer_than:
            params["ot"] = newer_than
        if exclude_read:
            params["xt"] = "user/-/state/com.google/read"

        path = f"/stream/contents/{quote(stream_id, safe='')}"
        response = await self._request("GET", path, Zone.READ, params=params)
        return self._parse(response, StreamContents)

    async def edit_tag(
        self,
        item_ids: list[str],
        add: str | None = None,
        remove: str | None = None,
    ) -> None:
        """批量给文章添加/移除状态或标签."""
        if not item_ids:
            return
        data: dict[str, Any] = {"i": item_ids}
        if add:
            data["a"] = add
        if remove:
            data["r"] = remove
        await self._request("POST", "/edit-tag", Zone.WRITE, data=data)

    async def _request(
        self,
        method: str,
        path: str,
        zone: int,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """发起请求：配额闸门 -> 请求 -> 写回响应头 -> 状态码分类；暂时性错误退避重试."""
        url = f"{self.config.base_url}{path}"
        last_error = ""

        for attempt in range(self.config.max_retries + 1):
            if attempt:
                delay = self.config.backoff_seconds * 2 ** (attempt - 1)
                logger.info(
                    f"{method} {path} 第 {attempt} 次重试，等待 {delay:.1f} 秒 ({last_error})"
                )
                await self._sleep(delay)

            await self.quota.acquire(zone)
            await self.quota.record_local_call(zone)

            try:
                response = await self.credentials.request(
                    method,
                    url,
                    params=params,
                    data=data,
                    on_retry=lambda rejected: self._before_auth_retry(zone, rejected),
                )
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"{method} {path} 请求失败: {last_error}")
                continue

            await self.header_reconciler.on_response(response.headers)

            status = response.status_code
            if status == 429:
                reset_after = parse_rate_limit_headers(response.headers).reset_after
                raise QuotaExceededError(zone, reset_after, detail="远端返回 429")
            if status in (401, 403):
                msg = f"{method} {path} 被拒绝: HTTP {status}"
                raise AuthRejectedError(msg)
            if status >= 500:
                last_error = f"HTTP {status}"
                logger.warning(f"{method} {path} 远端错误: {last_error}")
                continue
            if status >= 400:
                raise RemoteRequestError(status, response.text[:200])

            return response

        msg = f"{method} {path} 重试 {self.config.max_retries} 次后仍失败: {last_error}"
        raise TransientUpstreamError(msg)

    async def _before_auth_retry(self, zone: int, rejected: httpx.Response) -> None:
        """被拒绝的响应同样携带配额头，刷新令牌后的重试也算一次调用."""
        await self.header_reconciler.on_response(rejected.headers)
        await self.quota.record_local_call(zone)

    def _parse(self, response: httpx.Response, model: type[ModelT]) -> ModelT:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            msg = f"{model.__name__} 解析失败: {e}"
            raise MalformedPayloadError(msg) from e
