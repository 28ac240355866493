"""同步引擎错误分类."""


class SyncError(Exception):
    """同步引擎错误基类."""

    kind = "sync_error"
    retryable = False
    # 面向用户的提示，与原始错误信息区分
    user_message = "同步失败"


class QuotaExceededError(SyncError):
    """远端配额已用尽，等待重置后可重试."""

    kind = "quota_exceeded"
    retryable = True
    user_message = "API 配额已用尽，请等待配额重置后再同步"

    def __init__(self, zone: int, reset_after: int | None = None, detail: str = "") -> None:
        self.zone = zone
        self.reset_after = reset_after
        msg = detail or f"zone {zone} 配额已用尽"
        if reset_after is not None:
            msg += f"，{reset_after} 秒后重置"
        super().__init__(msg)


class TransientUpstreamError(SyncError):
    """远端暂时不可用（超时、5xx），已按退避重试仍失败."""

    kind = "transient_upstream"
    retryable = True
    user_message = "远端服务暂时不可用"


class RemoteRequestError(SyncError):
    """远端拒绝请求（非 401/403/429 的 4xx）."""

    kind = "remote_request"
    user_message = "远端拒绝了请求"

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {detail}" if detail else f"HTTP {status_code}")


class MalformedPayloadError(SyncError):
    """远端响应结构不符合预期."""

    kind = "malformed_payload"
    user_message = "远端返回了无法解析的数据"


class AuthRejectedError(SyncError):
    """远端拒绝凭据，需要在带外刷新授权."""

    kind = "auth_rejected"
    user_message = "远端授权已失效，请重新授权"


class StoreUnavailableError(SyncError):
    """本地存储不可用."""

    kind = "store_unavailable"
    retryable = True
    user_message = "本地数据库不可用"


class MalformedItemError(SyncError):
    """单篇文章数据不合法，跳过."""

    kind = "malformed_item"


class SyncTimeoutError(SyncError):
    """同步超过总时长上限."""

    kind = "timeout"
    retryable = True
    user_message = "同步超时，已中止"


class SyncAlreadyRunningError(SyncError):
    """已有同步任务在进行中."""

    kind = "already_running"
    user_message = "已有同步任务在进行中"

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"同步任务 {run_id} 正在进行中")


# 这些错误只影响当前 Feed，不会中止整次同步
FEED_LEVEL_ERRORS = (TransientUpstreamError, RemoteRequestError, MalformedPayloadError)
