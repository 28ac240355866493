"""凭据提供者 - 只负责“发起带认证的请求”，令牌生命周期由外部管理."""

import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol

import httpx

from feedmirror.config import Settings
from feedmirror.core.errors import AuthRejectedError

logger = logging.getLogger(__name__)

# 凭据刷新后重试前调用，参数是被拒绝的响应
RetryHook = Callable[[httpx.Response], Awaitable[None]]


class CredentialProvider(Protocol):
    """带认证请求能力."""

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        on_retry: RetryHook | None = None,
    ) -> httpx.Response: ...

    async def close(self) -> None: ...


class TokenCredentials:
    """
    Bearer 令牌凭据.

    令牌来自配置或已解密的 JSON 凭据文件（{"access_token": "..."}）。
    收到 401 时重新读取凭据文件并重试一次，文件由外部授权流程刷新。
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._app_id = settings.inoreader_app_id
        self._app_key = settings.inoreader_app_key
        self._token_file = (
            Path(settings.inoreader_token_file) if settings.inoreader_token_file else None
        )
        self._token: str | None = settings.inoreader_access_token or None
        self._client = httpx.AsyncClient(
            timeout=settings.remote_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        """关闭客户端."""
        await self._client.aclose()

    def _read_token_file(self) -> str | None:
        if self._token_file is None or not self._token_file.exists():
            return None
        try:
            payload = json.loads(self._token_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"读取凭据文件失败: {self._token_file} - {e}")
            return None
        token = payload.get("access_token")
        return token if isinstance(token, str) and token else None

    def _get_headers(self) -> dict[str, str]:
        if not self._token:
            self._token = self._read_token_file()
        if not self._token:
            msg = "未配置 access token"
            raise AuthRejectedError(msg)

        headers = {"Authorization": f"Bearer {self._token}"}
        if self._app_id:
            headers["AppId"] = self._app_id
        if self._app_key:
            headers["AppKey"] = self._app_key
        return headers

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        on_retry: RetryHook | None = None,
    ) -> httpx.Response:
        """发起请求；401 时刷新令牌后重试一次."""
        response = await self._client.request(
            method, url, params=params, data=data, headers=self._get_headers()
        )

        if response.status_code == 401 and self._token_file is not None:
            refreshed = self._read_token_file()
            if refreshed and refreshed != self._token:
                logger.info("收到 401，已从凭据文件重新加载令牌，重试请求")
                self._token = refreshed
                if on_retry is not None:
                    await on_retry(response)
                response = await self._client.request(
                    method, url, params=params, data=data, headers=self._get_headers()
                )

        return response
