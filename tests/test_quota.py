"""测试配额跟踪."""

import logging

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedmirror.config import Settings
from feedmirror.core.errors import QuotaExceededError
from feedmirror.core.quota import QuotaTracker, Zone, ZoneUsage
from tests.fakes import FakeClock, FakeSleep


@pytest.fixture
def tracker(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: FakeClock,
    fake_sleep: FakeSleep,
) -> QuotaTracker:
    return QuotaTracker(session_factory, settings, clock=clock, sleep=fake_sleep)


class TestZoneUsage:
    """测试 ZoneUsage 数据类."""

    def test_ratio_and_percentage(self) -> None:
        usage = ZoneUsage(zone=1, used=850, limit=1000, header_used=850, local_calls=3)
        assert usage.ratio == pytest.approx(0.85)
        assert usage.percentage == 85.0

    def test_zero_limit_is_not_exhausted(self) -> None:
        """限额为 0 时不视为耗尽."""
        usage = ZoneUsage(zone=1, used=5, limit=0, header_used=None, local_calls=5)
        assert usage.ratio == 0.0


class TestQuotaRecord:
    """测试当天记录的懒创建与归零."""

    async def test_fresh_day_allows_calls(self, tracker: QuotaTracker) -> None:
        """新的一天没有任何记录时允许调用，使用默认限额."""
        assert await tracker.can_proceed(Zone.READ) is True
        usage = await tracker.zone_usage(Zone.READ)
        assert usage.used == 0
        assert usage.limit == 10000
        assert (await tracker.zone_usage(Zone.WRITE)).limit == 2000

    async def test_local_calls_count_until_header_seen(self, tracker: QuotaTracker) -> None:
        """未收到响应头前使用本地计数."""
        for _ in range(3):
            await tracker.record_local_call(Zone.READ)
        usage = await tracker.zone_usage(Zone.READ)
        assert usage.used == 3
        assert usage.local_calls == 3
        assert usage.header_used is None

    async def test_header_value_is_authoritative(self, tracker: QuotaTracker) -> None:
        """收到响应头后以远端值为准."""
        await tracker.record_local_call(Zone.READ)
        await tracker.reconcile(Zone.READ, used=500, limit=5000)
        usage = await tracker.zone_usage(Zone.READ)
        assert usage.used == 500
        assert usage.limit == 5000
        assert usage.local_calls == 1

    async def test_missing_fields_keep_previous_values(self, tracker: QuotaTracker) -> None:
        """只更新响应头中出现的字段."""
        await tracker.reconcile(Zone.READ, used=100, limit=5000)
        await tracker.reconcile(Zone.READ, used=120)
        usage = await tracker.zone_usage(Zone.READ)
        assert usage.used == 120
        assert usage.limit == 5000

    async def test_day_rollover_starts_fresh(
        self, tracker: QuotaTracker, clock: FakeClock
    ) -> None:
        """跨 UTC 日后从零开始，旧记录保留为历史."""
        await tracker.reconcile(Zone.READ, used=10000, limit=10000)
        assert await tracker.can_proceed(Zone.READ) is False

        clock.advance(days=1)
        assert await tracker.can_proceed(Zone.READ) is True
        assert (await tracker.zone_usage(Zone.READ)).used == 0

        history = await tracker.usage_history(days=7)
        assert [record.day for record in history] == ["2026-01-16", "2026-01-15"]

    async def test_reset_deadline_zeroes_usage(
        self, tracker: QuotaTracker, clock: FakeClock
    ) -> None:
        """远端报告的重置时间到达后当天用量归零."""
        await tracker.reconcile(Zone.READ, used=10000, limit=10000, reset_after=60)
        assert await tracker.can_proceed(Zone.READ) is False

        clock.advance(seconds=61)
        assert await tracker.can_proceed(Zone.READ) is True
        assert (await tracker.zone_usage(Zone.READ)).limit == 10000

    async def test_state_is_shared_through_store(
        self,
        tracker: QuotaTracker,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: FakeClock,
    ) -> None:
        """另一个实例读取到同一份持久化状态."""
        await tracker.reconcile(Zone.WRITE, used=2000, limit=2000)
        other = QuotaTracker(session_factory, settings, clock=clock)
        assert await other.can_proceed(Zone.WRITE) is False
        assert await other.can_proceed(Zone.READ) is True


class TestQuotaGate:
    """测试调用前的配额闸门."""

    async def test_zones_are_independent(self, tracker: QuotaTracker) -> None:
        """zone 2 耗尽不影响 zone 1."""
        await tracker.reconcile(Zone.WRITE, used=2000, limit=2000)
        await tracker.acquire(Zone.READ)
        with pytest.raises(QuotaExceededError) as exc_info:
            await tracker.acquire(Zone.WRITE)
        assert exc_info.value.zone == Zone.WRITE
        assert exc_info.value.retryable is True

    async def test_exhausted_raises_with_reset_hint(self, tracker: QuotaTracker) -> None:
        """耗尽且不允许等待时立即抛出，并携带重置秒数."""
        await tracker.reconcile(Zone.READ, used=10000, limit=10000, reset_after=3600)
        with pytest.raises(QuotaExceededError) as exc_info:
            await tracker.acquire(Zone.READ)
        assert exc_info.value.reset_after == 3600

    async def test_waits_for_near_reset(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        """距重置不超过最大等待时间时等待后继续."""
        patient = QuotaTracker(
            session_factory,
            settings.model_copy(update={"quota_max_wait_seconds": 120}),
            clock=clock,
            sleep=fake_sleep,
        )
        await patient.reconcile(Zone.READ, used=10000, limit=10000, reset_after=60)
        await patient.acquire(Zone.READ)
        assert fake_sleep.calls == [60.0]

    async def test_recommended_delay_bands(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: FakeClock,
    ) -> None:
        """80% 以上减速，95% 以上大幅减速，耗尽时等到重置."""
        tracker = QuotaTracker(
            session_factory,
            settings.model_copy(
                update={"quota_caution_delay_seconds": 1, "quota_slowdown_delay_seconds": 10}
            ),
            clock=clock,
        )
        await tracker.reconcile(Zone.READ, used=100, limit=1000)
        assert await tracker.recommended_delay(Zone.READ) == 0
        await tracker.reconcile(Zone.READ, used=850)
        assert await tracker.recommended_delay(Zone.READ) == 1
        await tracker.reconcile(Zone.READ, used=960)
        assert await tracker.recommended_delay(Zone.READ) == 10
        await tracker.reconcile(Zone.READ, used=1000, reset_after=300)
        assert await tracker.recommended_delay(Zone.READ) == 300

    async def test_caution_band_slows_acquire(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: FakeClock,
        fake_sleep: FakeSleep,
    ) -> None:
        tracker = QuotaTracker(
            session_factory,
            settings.model_copy(update={"quota_caution_delay_seconds": 1}),
            clock=clock,
            sleep=fake_sleep,
        )
        await tracker.reconcile(Zone.READ, used=8500, limit=10000)
        await tracker.acquire(Zone.READ)
        assert fake_sleep.calls == [1]

    async def test_max_policy_uses_larger_value(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: FakeClock,
    ) -> None:
        """max 策略取响应头与本地计数中较大的一个."""
        tracker = QuotaTracker(
            session_factory,
            settings.model_copy(update={"quota_usage_policy": "max"}),
            clock=clock,
        )
        await tracker.reconcile(Zone.READ, used=2, limit=10)
        for _ in range(5):
            await tracker.record_local_call(Zone.READ)
        assert (await tracker.zone_usage(Zone.READ)).used == 5


class TestQuotaSignals:
    """测试配额告警日志."""

    async def test_threshold_logs(
        self, tracker: QuotaTracker, caplog: pytest.LogCaptureFixture
    ) -> None:
        caplog.set_level(logging.INFO, logger="feedmirror.core.quota")
        await tracker.reconcile(Zone.READ, used=8100, limit=10000)
        await tracker.reconcile(Zone.READ, used=9600)
        await tracker.reconcile(Zone.READ, used=10000)

        levels = [r.levelno for r in caplog.records if "zone 1 使用率" in r.getMessage()]
        assert levels == [logging.INFO, logging.WARNING, logging.ERROR]

    async def test_signal_is_not_repeated(
        self, tracker: QuotaTracker, caplog: pytest.LogCaptureFixture
    ) -> None:
        """同一级别只记录一次."""
        caplog.set_level(logging.INFO, logger="feedmirror.core.quota")
        await tracker.reconcile(Zone.READ, used=9900, limit=10000)
        await tracker.reconcile(Zone.READ, used=9950)
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1

    async def test_discrepancy_warning(
        self, tracker: QuotaTracker, caplog: pytest.LogCaptureFixture
    ) -> None:
        """响应头与本地计数差异超过 20% 时告警."""
        caplog.set_level(logging.WARNING, logger="feedmirror.core.quota")
        for _ in range(10):
            await tracker.record_local_call(Zone.READ)
        await tracker.reconcile(Zone.READ, used=50, limit=10000)
        assert any("差异过大" in r.getMessage() for r in caplog.records)


class TestQuotaSnapshot:
    """测试配额快照."""

    async def test_snapshot_to_dict(self, tracker: QuotaTracker) -> None:
        await tracker.reconcile(Zone.READ, used=250, limit=1000, reset_after=3600)
        data = (await tracker.snapshot()).to_dict()
        assert data["day"] == "2026-01-15"
        assert data["reset_after_seconds"] == 3600
        assert data["zone1"]["used"] == 250
        assert data["zone1"]["percentage"] == 25.0
        assert data["zone2"]["limit"] == 2000

    async def test_reset_defaults_to_next_utc_midnight(self, tracker: QuotaTracker) -> None:
        """没有远端重置时间时以下一个 UTC 零点为准."""
        snapshot = await tracker.snapshot()
        assert snapshot.reset_after_seconds == 12 * 3600


class TestQuotaScenario:
    """测试告警区到耗尽的完整过程."""

    async def test_caution_then_exhausted_until_lower_report(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: FakeClock,
    ) -> None:
        tracker = QuotaTracker(
            session_factory,
            settings.model_copy(
                update={"quota_caution_delay_seconds": 1, "quota_slowdown_delay_seconds": 10}
            ),
            clock=clock,
        )
        await tracker.reconcile(Zone.READ, used=9500, limit=10000)
        assert await tracker.can_proceed(Zone.READ) is True
        assert await tracker.recommended_delay() > 0

        await tracker.reconcile(Zone.READ, used=10050, limit=10000)
        assert await tracker.can_proceed(Zone.READ) is False
        clock.advance(hours=1)
        assert await tracker.can_proceed(Zone.READ) is False

        # 远端报告更低的用量后恢复
        await tracker.reconcile(Zone.READ, used=100)
        assert await tracker.can_proceed(Zone.READ) is True
