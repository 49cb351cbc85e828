"""Tests for RulePollingLoop — incremental polling, cursor and lifecycle."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from rulesync.core.errors import StoreError, TransientInfraError, ValidationError
from rulesync.core.settings import RulesyncSettings
from rulesync.scheduling.polling import PollingConfig, RulePollingLoop
from rulesync.scheduling.sync import ReconcileStats, SyncStats

IDLE = PollingConfig(initial_delay_seconds=3600, poll_interval_seconds=3600, shutdown_timeout_seconds=1)


@pytest.fixture
def loop(sync_service, rule_store, t0) -> RulePollingLoop:
    return RulePollingLoop(sync_service, rule_store, IDLE, clock=lambda: t0)


def _mock_sync(**kwargs) -> MagicMock:
    sync = MagicMock()
    sync.sync_rule = AsyncMock(**kwargs)
    sync.sync_all_rules = AsyncMock(return_value=SyncStats())
    sync.reconcile_schedules = AsyncMock(return_value=ReconcileStats(created=1))
    sync.delete_schedule = AsyncMock(return_value=True)
    sync.close = AsyncMock()
    return sync


class TestConfig:
    def test_from_settings(self):
        settings = RulesyncSettings(
            poll_interval_seconds=12,
            batch_size=7,
            enterprise_id="ent-9",
            initial_delay_seconds=0,
            cursor_lookback_hours=2,
            max_rule_retries=5,
        )
        config = PollingConfig.from_settings(settings)
        assert config.poll_interval_seconds == 12
        assert config.batch_size == 7
        assert config.enterprise_id == "ent-9"
        assert config.cursor_lookback == timedelta(hours=2)
        assert config.max_rule_retries == 5


class TestCursor:
    async def test_cold_cursor_from_last_rule_update(self, loop, make_rule, t0):
        make_rule(1, minutes=5)
        make_rule(2, minutes=10)
        result = await loop.poll_once()
        assert result.fetched == 0
        assert loop.cursor == t0 + timedelta(minutes=10)

    async def test_cold_cursor_falls_back_to_lookback(self, loop, t0):
        await loop.poll_once()
        assert loop.cursor == t0 - timedelta(hours=24)

    async def test_cursor_reaches_newest_even_when_syncs_fail(self, loop, make_rule, schedule_service, t0):
        await loop.poll_once()
        make_rule(1, minutes=1)
        make_rule(2, minutes=2, cron=None)
        make_rule(3, minutes=3)

        result = await loop.poll_once()
        assert (result.fetched, result.synced, result.failed) == (3, 2, 1)
        assert loop.cursor == t0 + timedelta(minutes=3)
        assert result.cursor == loop.cursor
        assert schedule_service.schedule_ids() == ["rule-1-ent-1", "rule-3-ent-1"]

    async def test_cursor_advances_when_every_sync_fails(self, rule_store, make_rule, t0):
        loop = RulePollingLoop(
            _mock_sync(side_effect=TransientInfraError("down")), rule_store, IDLE, clock=lambda: t0
        )
        await loop.poll_once()
        for minutes, rule_id in ((1, 1), (2, 2), (3, 3)):
            make_rule(rule_id, minutes=minutes)

        result = await loop.poll_once()
        assert result.failed == 3
        assert loop.cursor == t0 + timedelta(minutes=3)

    async def test_batch_size_limits_fetch(self, sync_service, rule_store, make_rule, t0):
        loop = RulePollingLoop(
            sync_service, rule_store, PollingConfig(batch_size=2), clock=lambda: t0
        )
        await loop.poll_once()
        for i in range(1, 4):
            make_rule(i, minutes=i)

        assert (await loop.poll_once()).fetched == 2
        assert loop.cursor == t0 + timedelta(minutes=2)
        assert (await loop.poll_once()).fetched == 1
        assert loop.cursor == t0 + timedelta(minutes=3)

    async def test_batch_syncs_overlap_and_cursor_waits_for_all(self, rule_store, make_rule, t0):
        started = []
        both_started = asyncio.Event()
        seen_cursors = []

        async def rendezvous(rule):
            started.append(rule.id)
            seen_cursors.append(loop.cursor)
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1)

        loop = RulePollingLoop(_mock_sync(side_effect=rendezvous), rule_store, IDLE, clock=lambda: t0)
        await loop.poll_once()
        before = loop.cursor
        make_rule(1, minutes=1)
        make_rule(2, minutes=2)

        result = await loop.poll_once()
        assert (result.synced, result.failed) == (2, 0)
        assert seen_cursors == [before, before]
        assert loop.cursor == t0 + timedelta(minutes=2)


class TestFailureTracking:
    async def _loop_with(self, rule_store, make_rule, t0, sync, retries=3):
        loop = RulePollingLoop(
            sync, rule_store, PollingConfig(max_rule_retries=retries), clock=lambda: t0
        )
        await loop.poll_once()
        make_rule(1, minutes=1)
        return loop

    async def test_failed_rule_retried_until_exhausted(self, rule_store, make_rule, t0):
        sync = _mock_sync(side_effect=TransientInfraError("down"))
        loop = await self._loop_with(rule_store, make_rule, t0, sync, retries=2)

        await loop.poll_once()
        assert loop.pending_retries == [1]
        result = await loop.poll_once()
        assert (result.fetched, result.retried) == (0, 1)
        assert loop.pending_retries == [1]
        await loop.poll_once()
        assert loop.pending_retries == []
        await loop.poll_once()
        assert sync.sync_rule.await_count == 3

    async def test_retry_success_clears_tracking(self, rule_store, make_rule, t0):
        sync = _mock_sync(side_effect=[TransientInfraError("down"), None])
        loop = await self._loop_with(rule_store, make_rule, t0, sync)

        await loop.poll_once()
        result = await loop.poll_once()
        assert (result.retried, result.synced) == (1, 1)
        assert loop.pending_retries == []
        assert loop.health().pending_retries == 0

    async def test_validation_failures_not_tracked(self, rule_store, make_rule, t0):
        sync = _mock_sync(side_effect=ValidationError("bad cron"))
        loop = await self._loop_with(rule_store, make_rule, t0, sync)
        await loop.poll_once()
        assert loop.pending_retries == []

    async def test_zero_retries_drops_immediately(self, rule_store, make_rule, t0):
        sync = _mock_sync(side_effect=TransientInfraError("down"))
        loop = await self._loop_with(rule_store, make_rule, t0, sync, retries=0)
        await loop.poll_once()
        assert loop.pending_retries == []

    async def test_refetched_rule_not_synced_twice(self, rule_store, make_rule, t0):
        sync = _mock_sync(side_effect=[TransientInfraError("down"), None])
        loop = await self._loop_with(rule_store, make_rule, t0, sync)
        await loop.poll_once()
        make_rule(1, minutes=5, cron="15 * * * *")

        result = await loop.poll_once()
        assert (result.fetched, result.retried) == (1, 0)
        assert sync.sync_rule.await_count == 2


    async def test_deleted_rule_schedule_removed_not_recreated(
        self, sync_service, rule_store, make_rule, schedule_service, t0
    ):
        loop = RulePollingLoop(sync_service, rule_store, PollingConfig(), clock=lambda: t0)
        await loop.poll_once()
        make_rule(1, minutes=1)
        await sync_service.sync_rule(await rule_store.get_rule(1))
        sync_service.sync_rule = AsyncMock(side_effect=TransientInfraError("down"))

        await loop.poll_once()
        assert loop.pending_retries == [1]
        rule_store.delete_rule(1)

        result = await loop.poll_once()
        assert result.retried == 0
        assert loop.pending_retries == []
        assert schedule_service.schedule_ids() == []
        assert sync_service.sync_rule.await_count == 1

    async def test_rule_no_longer_cron_is_dropped(self, rule_store, make_rule, t0):
        sync = _mock_sync(side_effect=TransientInfraError("down"))
        loop = await self._loop_with(rule_store, make_rule, t0, sync)
        await loop.poll_once()
        make_rule(1, minutes=1, trigger_type="EVENT")

        await loop.poll_once()
        assert loop.pending_retries == []
        sync.delete_schedule.assert_awaited_once()
        assert sync.sync_rule.await_count == 1

    async def test_retry_uses_current_row(self, rule_store, make_rule, t0):
        sync = _mock_sync(side_effect=[TransientInfraError("down"), None])
        loop = await self._loop_with(rule_store, make_rule, t0, sync)
        await loop.poll_once()
        make_rule(1, minutes=1, name="renamed")

        await loop.poll_once()
        assert sync.sync_rule.await_args.args[0].name == "renamed"


class TestCycleErrors:
    async def test_store_failure_is_logged_not_raised(self, t0):
        store = MagicMock()
        store.get_last_rule_update_time = AsyncMock(return_value=t0)
        store.get_rules_updated_after = AsyncMock(side_effect=StoreError("db locked"))
        loop = RulePollingLoop(_mock_sync(), store, IDLE, clock=lambda: t0)

        assert await loop.poll_once() is None
        health = loop.health()
        assert health.last_error == "db locked"
        assert health.cycles == 1

    async def test_overlapping_poll_is_skipped(self, t0):
        release = asyncio.Event()

        async def slow_fetch(*args):
            await release.wait()
            return []

        store = MagicMock()
        store.get_last_rule_update_time = AsyncMock(return_value=t0)
        store.get_rules_updated_after = slow_fetch
        loop = RulePollingLoop(_mock_sync(), store, IDLE, clock=lambda: t0)

        first = asyncio.create_task(loop.poll_once())
        await asyncio.sleep(0.01)
        assert await loop.poll_once() is None
        release.set()
        assert (await first).fetched == 0


class TestLifecycle:
    async def test_start_runs_initial_sync_and_sets_cursor(self, loop, make_rule, schedule_service, t0):
        make_rule(1)
        await loop.start()
        try:
            assert loop.is_running is True
            assert loop.cursor == t0
            assert schedule_service.schedule_ids() == ["rule-1-ent-1"]
        finally:
            await loop.stop()

    async def test_double_start_and_stop(self, rule_store, t0):
        sync = _mock_sync()
        loop = RulePollingLoop(sync, rule_store, IDLE, clock=lambda: t0)
        await loop.start()
        await loop.start()
        assert sync.sync_all_rules.await_count == 1

        await loop.stop()
        await loop.stop()
        assert loop.is_running is False
        sync.close.assert_awaited_once()

    async def test_stop_when_never_started(self, loop):
        await loop.stop()
        assert loop.is_running is False

    async def test_initial_sync_failure_leaves_cursor_unset(self, rule_store, t0):
        sync = _mock_sync()
        sync.sync_all_rules.side_effect = TransientInfraError("down")
        loop = RulePollingLoop(sync, rule_store, IDLE, clock=lambda: t0)
        await loop.start()
        try:
            assert loop.is_running is True
            assert loop.cursor is None
            assert loop.health().last_error == "down"
        finally:
            await loop.stop()

    async def test_background_cycles_run(self, sync_service, rule_store, t0):
        config = PollingConfig(initial_delay_seconds=0, poll_interval_seconds=0.01)
        loop = RulePollingLoop(sync_service, rule_store, config, clock=lambda: t0)
        await loop.start()
        try:
            for _ in range(200):
                if loop.health().cycles >= 2:
                    break
                await asyncio.sleep(0.01)
            assert loop.health().cycles >= 2
        finally:
            await loop.stop()


class TestReconciliation:
    async def test_skipped_when_not_running(self, rule_store, t0):
        sync = _mock_sync()
        loop = RulePollingLoop(sync, rule_store, IDLE, clock=lambda: t0)
        assert await loop.force_reconciliation() is None
        sync.reconcile_schedules.assert_not_called()

    async def test_runs_when_running(self, rule_store, t0):
        sync = _mock_sync()
        loop = RulePollingLoop(
            sync,
            rule_store,
            PollingConfig(enterprise_id="ent-1", initial_delay_seconds=3600),
            clock=lambda: t0,
        )
        await loop.start()
        try:
            stats = await loop.force_reconciliation()
            assert stats.created == 1
            sync.reconcile_schedules.assert_awaited_once_with("ent-1")
        finally:
            await loop.stop()

    async def test_failure_returns_none(self, rule_store, t0):
        sync = _mock_sync()
        sync.reconcile_schedules.side_effect = TransientInfraError("down")
        loop = RulePollingLoop(sync, rule_store, IDLE, clock=lambda: t0)
        await loop.start()
        try:
            assert await loop.force_reconciliation() is None
            assert loop.health().last_error == "down"
        finally:
            await loop.stop()


class TestHealth:
    async def test_to_dict(self, loop, t0):
        await loop.poll_once()
        d = loop.health().to_dict()
        assert d["running"] is False
        assert d["cycles"] == 1
        assert d["cursor"] == (t0 - timedelta(hours=24)).isoformat()
        assert d["last_cycle_at"] == t0.isoformat()
