"""API 配额跟踪 - 两个独立限额区，按 UTC 日或重置截止时间归零."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from feedmirror.config import Settings
from feedmirror.core.errors import QuotaExceededError
from feedmirror.models.database import store_session
from feedmirror.models.usage import UsageRecord
from feedmirror.utils.clock import day_key, utc_now

logger = logging.getLogger(__name__)


class Zone(IntEnum):
    """远端限额区."""

    READ = 1  # zone 1: 读取类请求
    WRITE = 2  # zone 2: 写入类请求（edit-tag）


@dataclass
class ZoneUsage:
    """单个限额区的当前使用情况."""

    zone: int
    used: int
    limit: int
    header_used: int | None
    local_calls: int

    @property
    def ratio(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.used / self.limit

    @property
    def percentage(self) -> float:
        return round(self.ratio * 100, 1)


@dataclass
class QuotaSnapshot:
    """配额快照（只读）."""

    day: str
    zones: dict[int, ZoneUsage]
    reset_after_seconds: int
    last_updated: datetime | None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "day": self.day,
            "reset_after_seconds": self.reset_after_seconds,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }
        for zone, usage in self.zones.items():
            data[f"zone{zone}"] = {
                "used": usage.used,
                "limit": usage.limit,
                "percentage": usage.percentage,
                "header_used": usage.header_used,
                "local_calls": usage.local_calls,
            }
        return data


class QuotaTracker:
    """
    配额跟踪器.

    状态持久化在 api_usage 表中，每次判断都从数据库读取当天记录，
    多个进程实例共享同一份状态。进程内写入由锁串行化。
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        # (day, zone) -> 最近一次发出的告警级别，仅用于日志去重
        self._signalled: dict[tuple[str, int], str | None] = {}

    # ------------------------------------------------------------------
    # 公共接口
    # ------------------------------------------------------------------

    async def can_proceed(self, zone: int) -> bool:
        """当前是否允许调用该限额区."""
        usage = await self.zone_usage(zone)
        return usage.ratio < 1.0

    async def zone_usage(self, zone: int) -> ZoneUsage:
        """读取限额区当前使用情况."""
        async with self._lock, self._session() as session:
            record = await self._load_today(session)
            await session.commit()
            return self._usage(record, zone)

    async def record_local_call(self, zone: int) -> None:
        """记录一次本地发起的调用."""
        async with self._lock, self._session() as session:
            record = await self._load_today(session)
            if zone == Zone.READ:
                record.zone1_calls += 1
            else:
                record.zone2_calls += 1
            record.updated_at = self._clock()
            await session.commit()

    async def reconcile(
        self,
        zone: int,
        used: int | None = None,
        limit: int | None = None,
        reset_after: int | None = None,
    ) -> ZoneUsage:
        """用远端报告的值校正本地记录；缺失的字段保持原值."""
        async with self._lock, self._session() as session:
            record = await self._load_today(session)
            now = self._clock()

            if used is not None:
                self._check_discrepancy(record, zone, used)
                if zone == Zone.READ:
                    record.zone1_usage = used
                else:
                    record.zone2_usage = used
            if limit is not None:
                if zone == Zone.READ:
                    record.zone1_limit = limit
                else:
                    record.zone2_limit = limit
            if reset_after is not None:
                record.reset_after = reset_after
                record.reset_at = now + timedelta(seconds=reset_after)

            record.updated_at = now
            await session.commit()

            usage = self._usage(record, zone)
            self._signal(record.day, usage)
            return usage

    async def recommended_delay(self, zone: int | None = None) -> float:
        """建议在下一次调用前等待的秒数."""
        zones = [zone] if zone is not None else [Zone.READ, Zone.WRITE]
        async with self._lock, self._session() as session:
            record = await self._load_today(session)
            await session.commit()
            delays = [
                self._delay_for(self._usage(record, z), record) for z in zones
            ]
        return max(delays)

    async def acquire(self, zone: int) -> None:
        """
        调用前的配额闸门.

        额度耗尽时：若距重置时间不超过 quota_max_wait_seconds 则等待后重新检查，
        否则抛出 QuotaExceededError。处于告警区时按建议延迟放慢节奏。
        """
        for _ in range(2):
            async with self._lock, self._session() as session:
                record = await self._load_today(session)
                await session.commit()
                usage = self._usage(record, zone)
                wait = self._seconds_until_reset(record)

            if usage.ratio < 1.0:
                break

            if wait > self._settings.quota_max_wait_seconds:
                raise QuotaExceededError(zone, int(wait))

            logger.warning(f"zone {zone} 配额已用尽，等待 {wait:.0f} 秒后重试")
            await self._sleep(wait)
        else:
            raise QuotaExceededError(zone, int(wait))

        delay = self._delay_for(usage, record)
        if delay > 0:
            logger.debug(f"zone {zone} 使用率 {usage.percentage}%，延迟 {delay:.1f} 秒")
            await self._sleep(delay)

    async def snapshot(self) -> QuotaSnapshot:
        """当前配额快照，供状态接口使用."""
        async with self._lock, self._session() as session:
            record = await self._load_today(session)
            await session.commit()
            return QuotaSnapshot(
                day=record.day,
                zones={z: self._usage(record, z) for z in (Zone.READ, Zone.WRITE)},
                reset_after_seconds=int(self._seconds_until_reset(record)),
                last_updated=record.updated_at,
            )

    async def usage_history(self, days: int = 30) -> list[UsageRecord]:
        """最近 N 天的使用记录."""
        cutoff = day_key(self._clock() - timedelta(days=days))
        async with self._session() as session:
            stmt = (
                select(UsageRecord)
                .where(UsageRecord.service == self._settings.quota_service)
                .where(UsageRecord.day >= cutoff)
                .order_by(UsageRecord.day.desc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # 内部实现
    # ------------------------------------------------------------------

    def _session(self) -> AbstractAsyncContextManager[AsyncSession]:
        return store_session(self._session_factory)

    async def _load_today(self, session: AsyncSession) -> UsageRecord:
        """读取（或懒创建）当天记录；重置截止时间已过则清零."""
        now = self._clock()
        today = day_key(now)

        stmt = select(UsageRecord).where(
            UsageRecord.service == self._settings.quota_service,
            UsageRecord.day == today,
        )
        result = await session.execute(stmt)
        record = result.scalar_one_or_none()

        if record is None:
            record = UsageRecord(service=self._settings.quota_service, day=today)
            session.add(record)
            await session.flush()
            logger.info(f"创建 {today} 的配额记录")
        elif record.reset_at is not None and record.reset_at <= now:
            logger.info(f"配额重置时间已到 ({record.reset_at.isoformat()})，清零使用量")
            if record.zone1_usage is not None:
                record.zone1_usage = 0
            if record.zone2_usage is not None:
                record.zone2_usage = 0
            record.zone1_calls = 0
            record.zone2_calls = 0
            record.reset_at = None
            record.reset_after = None
            record.updated_at = now
            self._signalled.pop((today, Zone.READ), None)
            self._signalled.pop((today, Zone.WRITE), None)

        return record

    def _usage(self, record: UsageRecord, zone: int) -> ZoneUsage:
        if zone == Zone.READ:
            header, calls = record.zone1_usage, record.zone1_calls
            limit = record.zone1_limit or self._settings.quota_zone1_default_limit
        else:
            header, calls = record.zone2_usage, record.zone2_calls
            limit = record.zone2_limit or self._settings.quota_zone2_default_limit

        if self._settings.quota_usage_policy == "max":
            used = max(header or 0, calls)
        else:
            # 响应头是权威值；从未观测到时才退回本地计数
            used = header if header is not None else calls

        return ZoneUsage(
            zone=zone, used=used, limit=limit, header_used=header, local_calls=calls
        )

    def _seconds_until_reset(self, record: UsageRecord) -> float:
        now = self._clock()
        if record.reset_at is not None:
            return max(0.0, (record.reset_at - now).total_seconds())
        midnight = datetime(now.year, now.month, now.day) + timedelta(days=1)
        return (midnight - now).total_seconds()

    def _delay_for(self, usage: ZoneUsage, record: UsageRecord) -> float:
        ratio = usage.ratio
        if ratio >= 1.0:
            return self._seconds_until_reset(record)
        if ratio >= self._settings.quota_slowdown_ratio:
            return self._settings.quota_slowdown_delay_seconds
        if ratio >= self._settings.quota_caution_ratio:
            return self._settings.quota_caution_delay_seconds
        return 0.0

    def _check_discrepancy(self, record: UsageRecord, zone: int, header_used: int) -> None:
        calls = record.zone1_calls if zone == Zone.READ else record.zone2_calls
        if calls <= 0:
            return
        diff = abs(header_used - calls)
        ratio = diff / header_used if header_used > 0 else 1.0
        if ratio > self._settings.quota_discrepancy_ratio:
            logger.warning(
                f"zone {zone} 响应头用量与本地计数差异过大: "
                f"header={header_used}, local={calls} ({ratio:.0%})"
            )

    def _signal(self, day: str, usage: ZoneUsage) -> None:
        ratio = usage.ratio
        if ratio >= 1.0:
            level = "exhausted"
        elif ratio >= self._settings.quota_slowdown_ratio:
            level = "slowdown"
        elif ratio >= self._settings.quota_caution_ratio:
            level = "caution"
        else:
            level = None

        key = (day, usage.zone)
        if self._signalled.get(key) == level:
            return
        self._signalled[key] = level

        text = f"zone {usage.zone} 使用率 {usage.percentage}% ({usage.used}/{usage.limit})"
        if level == "exhausted":
            logger.error(f"配额已用尽: {text}")
        elif level == "slowdown":
            logger.warning(f"配额即将用尽，放慢请求: {text}")
        elif level == "caution":
            logger.info(f"配额使用提醒: {text}")

