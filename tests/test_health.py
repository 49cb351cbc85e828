"""Tests for the rulesync health report."""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

from rulesync.core.models import utcnow
from rulesync.health import build_health_report
from rulesync.scheduling.polling import PollingConfig, PollingLoopHealth, RulePollingLoop
from rulesync.workflows.activities import ActivityExecutor
from rulesync.workflows.execution import ExecutionWorkflow, WorkflowStatus


def _loop(**health) -> SimpleNamespace:
    """Anything exposing ``health()`` and ``config`` can be reported on."""
    snapshot = PollingLoopHealth(**{"running": True, **health})
    return SimpleNamespace(health=lambda: snapshot, config=PollingConfig(poll_interval_seconds=10))


class TestPollingChecks:
    def test_stopped_loop_is_unhealthy(self, sync_service, rule_store):
        report = build_health_report(RulePollingLoop(sync_service, rule_store))
        assert report.healthy is False
        assert report.checks["polling_running"] is False
        assert report.checks["cursor_initialized"] is False
        assert "Polling loop is not running" in report.errors

    def test_healthy_loop(self):
        now = utcnow()
        report = build_health_report(_loop(cursor=now, last_cycle_at=now))
        assert report.healthy is True
        assert report.checks == {
            "polling_running": True,
            "cursor_initialized": True,
            "last_cycle_ok": True,
        }
        assert report.warnings == []
        assert report.execution is None

    def test_failed_cycle_and_retries_warn(self):
        report = build_health_report(_loop(last_error="db locked", pending_retries=2))
        assert report.healthy is True
        assert report.checks["last_cycle_ok"] is False
        assert "Last polling cycle failed: db locked" in report.warnings
        assert "2 rule(s) pending re-sync" in report.warnings

    def test_stale_cycle_uses_three_intervals_by_default(self):
        report = build_health_report(_loop(last_cycle_at=utcnow() - timedelta(seconds=45)))
        assert any(w.startswith("Last polling cycle was") for w in report.warnings)
        assert report.polling["last_cycle_age_seconds"] >= 45

    def test_stale_threshold_override(self):
        report = build_health_report(
            _loop(last_cycle_at=utcnow() - timedelta(seconds=45)), stale_cycle_seconds=600
        )
        assert report.warnings == []


class TestExecutionChecks:
    def test_paused_workflow_warns(self):
        workflow = ExecutionWorkflow(ActivityExecutor())
        workflow.state.status = WorkflowStatus.PAUSED
        workflow.state.last_error = "poll exploded"

        report = build_health_report(_loop(), workflow)
        assert report.checks["execution_running"] is False
        assert "Execution workflow is paused" in report.warnings
        assert "Last execution cycle failed: poll exploded" in report.warnings
        assert report.execution["status"] == "PAUSED"

    def test_to_dict(self):
        d = build_health_report(_loop(), ExecutionWorkflow(ActivityExecutor())).to_dict()
        assert d["healthy"] is True
        assert d["checks"]["execution_running"] is True
        assert d["polling"]["running"] is True
        assert d["execution"]["cycles"] == 0
        assert "generated_at" in d
