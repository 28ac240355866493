"""响应头配额回写 - 远端计数是权威值."""

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from feedmirror.core.quota import QuotaTracker, Zone

logger = logging.getLogger(__name__)

ZONE1_USAGE = "X-Reader-Zone1-Usage"
ZONE1_LIMIT = "X-Reader-Zone1-Limit"
ZONE2_USAGE = "X-Reader-Zone2-Usage"
ZONE2_LIMIT = "X-Reader-Zone2-Limit"
RESET_AFTER = "X-Reader-Limits-Reset-After"


@dataclass
class RateLimitHeaders:
    """从响应头解析出的配额值；None 表示该字段未出现."""

    zone1_usage: int | None = None
    zone1_limit: int | None = None
    zone2_usage: int | None = None
    zone2_limit: int | None = None
    reset_after: int | None = None

    @property
    def empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.zone1_usage,
                self.zone1_limit,
                self.zone2_usage,
                self.zone2_limit,
                self.reset_after,
            )
        )


def parse_count(value: str | None) -> int | None:
    """解析带千分位逗号的整数，如 "1,234"."""
    if value is None:
        return None
    cleaned = value.replace(",", "").strip()
    if not cleaned:
        return None
    return int(cleaned)


def parse_seconds(value: str | None) -> int | None:
    """解析可能带小数的秒数，截断小数部分，如 "3600.75" -> 3600."""
    if value is None:
        return None
    cleaned = value.replace(",", "").strip()
    if not cleaned:
        return None
    return int(float(cleaned))


def parse_rate_limit_headers(headers: Mapping[str, str]) -> RateLimitHeaders:
    """解析配额响应头；单个字段解析失败只丢弃该字段."""
    parsed = RateLimitHeaders()
    fields = (
        ("zone1_usage", ZONE1_USAGE, parse_count),
        ("zone1_limit", ZONE1_LIMIT, parse_count),
        ("zone2_usage", ZONE2_USAGE, parse_count),
        ("zone2_limit", ZONE2_LIMIT, parse_count),
        ("reset_after", RESET_AFTER, parse_seconds),
    )
    for attr, header, parser in fields:
        raw = headers.get(header)
        try:
            setattr(parsed, attr, parser(raw))
        except ValueError:
            logger.warning(f"无法解析响应头 {header}={raw!r}，忽略")
    return parsed


class HeaderReconciler:
    """每次远端响应后，把响应头中的配额值写回 QuotaTracker."""

    def __init__(self, quota: QuotaTracker) -> None:
        self.quota = quota

    async def on_response(self, headers: Mapping[str, str]) -> None:
        """尽力而为的旁路：任何异常只记录日志，不向调用方抛出."""
        try:
            parsed = parse_rate_limit_headers(headers)
            if parsed.empty:
                return

            logger.debug(f"收到配额响应头: {parsed}")

            reset_after = parsed.reset_after
            zone1_present = parsed.zone1_usage is not None or parsed.zone1_limit is not None
            zone2_present = parsed.zone2_usage is not None or parsed.zone2_limit is not None

            if zone1_present or reset_after is not None:
                await self.quota.reconcile(
                    Zone.READ,
                    used=parsed.zone1_usage,
                    limit=parsed.zone1_limit,
                    reset_after=reset_after,
                )
                reset_after = None

            if zone2_present or reset_after is not None:
                await self.quota.reconcile(
                    Zone.WRITE,
                    used=parsed.zone2_usage,
                    limit=parsed.zone2_limit,
                    reset_after=reset_after,
                )
        except Exception:
            logger.exception("写回配额响应头失败，忽略")
