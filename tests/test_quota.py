"""Tests for the quota manager: reservations, thresholds, periods."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from llmgate.core.config import Settings
from llmgate.gateway.quota import (
    QuotaDenial,
    QuotaLevel,
    QuotaManager,
    QuotaPeriod,
    QuotaPolicy,
    QuotaSubject,
    QuotaType,
    Reservation,
    ReservationState,
)
from llmgate.notifications.base import InMemoryNotificationSink


@pytest.fixture
def sink() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


def _manager(policies, sink, date_clock) -> QuotaManager:
    return QuotaManager(policies, sink=sink, clock=date_clock)


ALICE = QuotaSubject(caller_id="alice", group_id="team-a", site_id="site-1")


# ==========================================================================
# Test: Reserve / confirm / release
# ==========================================================================


class TestReservations:
    @pytest.mark.asyncio
    async def test_cost_quota_denies_and_notifies_once(self, sink, date_clock):
        manager = _manager([QuotaPolicy(QuotaLevel.CALLER, QuotaType.COST, 10.0)], sink, date_clock)

        first = await manager.check_and_reserve(ALICE, QuotaType.COST, 9.50)
        assert isinstance(first, Reservation)
        await manager.confirm(first, 9.50)

        denied = await manager.check_and_reserve(ALICE, QuotaType.COST, 1.00)
        assert isinstance(denied, QuotaDenial)
        assert denied.scope == "caller:alice"
        assert denied.used == 9.50
        assert denied.limit == 10.0
        assert denied.reset_at == datetime(2025, 4, 1, tzinfo=timezone.utc)

        again = await manager.check_and_reserve(ALICE, QuotaType.COST, 1.00)
        assert isinstance(again, QuotaDenial)

        assert len(sink.of_kind("exceeded")) == 1
        row = manager.history("caller:alice", QuotaType.COST)[0]
        assert row.used == 9.50
        assert row.reserved == 0

    @pytest.mark.asyncio
    async def test_denial_error_is_machine_readable(self, sink, date_clock):
        manager = _manager([QuotaPolicy(QuotaLevel.CALLER, QuotaType.REQUESTS, 1)], sink, date_clock)
        await manager.confirm(await manager.check_and_reserve(ALICE, QuotaType.REQUESTS, 1))

        err = (await manager.check_and_reserve(ALICE, QuotaType.REQUESTS, 1)).to_error()
        assert err.to_dict()["quota_type"] == "requests"
        assert err.to_dict()["reset_at"] == "2025-03-13T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_reservations_count_against_room(self, sink, date_clock):
        manager = _manager([QuotaPolicy(QuotaLevel.CALLER, QuotaType.TOKENS, 100)], sink, date_clock)

        held = await manager.check_and_reserve(ALICE, QuotaType.TOKENS, 80)
        assert isinstance(await manager.check_and_reserve(ALICE, QuotaType.TOKENS, 30), QuotaDenial)

        await manager.release(held)
        assert isinstance(await manager.check_and_reserve(ALICE, QuotaType.TOKENS, 30), Reservation)

    @pytest.mark.asyncio
    async def test_confirm_and_release_are_idempotent(self, sink, date_clock):
        manager = _manager([QuotaPolicy(QuotaLevel.CALLER, QuotaType.TOKENS, 1000)], sink, date_clock)
        res = await manager.check_and_reserve(ALICE, QuotaType.TOKENS, 100)

        await manager.confirm(res, 40)
        await manager.confirm(res, 40)
        await manager.release(res)

        row = manager.history("caller:alice")[0]
        assert row.used == 40
        assert row.reserved == 0
        assert res.state == ReservationState.CONFIRMED

    @pytest.mark.asyncio
    async def test_all_or_nothing_across_levels(self, sink, date_clock):
        manager = _manager(
            [
                QuotaPolicy(QuotaLevel.CALLER, QuotaType.COST, 100.0),
                QuotaPolicy(QuotaLevel.GROUP, QuotaType.COST, 100.0),
                QuotaPolicy(QuotaLevel.GLOBAL, QuotaType.COST, 5.0),
            ],
            sink,
            date_clock,
        )

        denied = await manager.check_and_reserve(ALICE, QuotaType.COST, 6.0)

        assert isinstance(denied, QuotaDenial)
        assert denied.scope == "global"
        for scope in ("caller:alice", "group:team-a"):
            assert manager.history(scope)[0].reserved == 0

    @pytest.mark.asyncio
    async def test_reserve_all_releases_on_denial(self, sink, date_clock):
        manager = _manager(
            [
                QuotaPolicy(QuotaLevel.CALLER, QuotaType.REQUESTS, 10),
                QuotaPolicy(QuotaLevel.CALLER, QuotaType.TOKENS, 50),
            ],
            sink,
            date_clock,
        )

        result = await manager.reserve_all(ALICE, {QuotaType.REQUESTS: 1, QuotaType.TOKENS: 500})

        assert isinstance(result, QuotaDenial)
        assert manager.history("caller:alice", QuotaType.REQUESTS)[0].reserved == 0

    @pytest.mark.asyncio
    async def test_specific_scope_policy_wins(self, sink, date_clock):
        manager = _manager(
            [
                QuotaPolicy(QuotaLevel.CALLER, QuotaType.REQUESTS, 1),
                QuotaPolicy(QuotaLevel.CALLER, QuotaType.REQUESTS, 100, scope_id="alice"),
            ],
            sink,
            date_clock,
        )
        for _ in range(3):
            res = await manager.check_and_reserve(ALICE, QuotaType.REQUESTS, 1)
            assert isinstance(res, Reservation)
            await manager.confirm(res)

    @pytest.mark.asyncio
    async def test_zero_limit_means_unlimited(self, sink, date_clock):
        manager = _manager([QuotaPolicy(QuotaLevel.CALLER, QuotaType.COST, 0)], sink, date_clock)
        assert not manager.has_policies
        assert isinstance(await manager.check_and_reserve(ALICE, QuotaType.COST, 1e6), Reservation)


# ==========================================================================
# Test: Thresholds & exceeded flag
# ==========================================================================


class TestThresholds:
    @pytest.mark.asyncio
    async def test_each_threshold_fires_once(self, sink, date_clock):
        manager = _manager([QuotaPolicy(QuotaLevel.CALLER, QuotaType.TOKENS, 100)], sink, date_clock)

        for amount in (40, 15, 30, 5):
            await manager.confirm(await manager.check_and_reserve(ALICE, QuotaType.TOKENS, amount))

        assert [e.threshold for e in sink.of_kind("threshold")] == [50, 80, 90]

    @pytest.mark.asyncio
    async def test_reaching_limit_sets_exceeded_until_rollover(self, sink, date_clock):
        manager = _manager([QuotaPolicy(QuotaLevel.CALLER, QuotaType.REQUESTS, 2)], sink, date_clock)
        for _ in range(2):
            await manager.confirm(await manager.check_and_reserve(ALICE, QuotaType.REQUESTS, 1))

        assert [e.threshold for e in sink.of_kind("threshold")] == [50, 80, 90, 100]
        assert isinstance(await manager.check_and_reserve(ALICE, QuotaType.REQUESTS, 0), QuotaDenial)

        date_clock.advance(days=1)
        assert isinstance(await manager.check_and_reserve(ALICE, QuotaType.REQUESTS, 1), Reservation)

    @pytest.mark.asyncio
    async def test_actual_overrun_marks_exceeded(self, sink, date_clock):
        manager = _manager([QuotaPolicy(QuotaLevel.CALLER, QuotaType.TOKENS, 100)], sink, date_clock)
        res = await manager.check_and_reserve(ALICE, QuotaType.TOKENS, 10)
        await manager.confirm(res, 150)

        row = manager.history("caller:alice")[0]
        assert row.exceeded
        assert row.used == 150

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_break_confirm(self, date_clock):
        class BrokenSink:
            async def notify(self, event):
                raise RuntimeError("telegram down")

        manager = QuotaManager(
            [QuotaPolicy(QuotaLevel.CALLER, QuotaType.TOKENS, 10)], sink=BrokenSink(), clock=date_clock
        )
        await manager.confirm(await manager.check_and_reserve(ALICE, QuotaType.TOKENS, 10))
        assert manager.history("caller:alice")[0].used == 10


# ==========================================================================
# Test: Periods & history
# ==========================================================================


class TestPeriods:
    @pytest.mark.parametrize(
        "period,start,end",
        [
            (QuotaPeriod.HOUR, datetime(2025, 3, 12, 10), datetime(2025, 3, 12, 11)),
            (QuotaPeriod.DAY, datetime(2025, 3, 12), datetime(2025, 3, 13)),
            (QuotaPeriod.WEEK, datetime(2025, 3, 10), datetime(2025, 3, 17)),
            (QuotaPeriod.MONTH, datetime(2025, 3, 1), datetime(2025, 4, 1)),
        ],
    )
    def test_windows(self, period, start, end):
        now = datetime(2025, 3, 12, 10, 30, tzinfo=timezone.utc)
        assert period.window(now) == (start.replace(tzinfo=timezone.utc), end.replace(tzinfo=timezone.utc))

    def test_december_rolls_into_next_year(self):
        start, end = QuotaPeriod.MONTH.window(datetime(2025, 12, 31, 23, tzinfo=timezone.utc))
        assert end == datetime(2026, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_history_keeps_old_periods(self, sink, date_clock):
        manager = _manager([QuotaPolicy(QuotaLevel.CALLER, QuotaType.REQUESTS, 10)], sink, date_clock)
        await manager.confirm(await manager.check_and_reserve(ALICE, QuotaType.REQUESTS, 1))
        date_clock.advance(days=1)
        await manager.confirm(await manager.check_and_reserve(ALICE, QuotaType.REQUESTS, 1))

        rows = manager.history("caller:alice", QuotaType.REQUESTS)
        assert [r.used for r in rows] == [1, 1]
        assert rows[0].period_end == rows[1].period_start

    def test_status_snapshot(self, sink, date_clock):
        manager = _manager([QuotaPolicy(QuotaLevel.SITE, QuotaType.COST, 50.0)], sink, date_clock)
        status = manager.status(ALICE)
        assert len(status) == 1
        assert status[0]["scope"] == "site:site-1"
        assert status[0]["available"] == 50.0

    def test_from_settings(self, date_clock):
        cfg = Settings(
            quota_limits={"caller:cost": 10.0, "global:requests": 1000},
            quota_periods={"cost": "week"},
        )
        manager = QuotaManager.from_settings(cfg, clock=date_clock)

        assert manager.configured_types() == {QuotaType.COST, QuotaType.REQUESTS}
        status = manager.status(QuotaSubject(caller_id="x"))
        periods = {row["quota_type"]: row["period"] for row in status}
        assert periods == {"cost": "week", "requests": "day"}
