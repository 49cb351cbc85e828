"""Health report for the polling loop and the execution workflow.

The report is what an external reporter (CLI ``status``, a liveness probe)
consumes; nothing here mutates the components it inspects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rulesync.core.models import utcnow
from rulesync.scheduling.polling import RulePollingLoop
from rulesync.workflows.execution import ExecutionWorkflow


@dataclass
class RulesyncHealthReport:
    """Complete rulesync health report."""

    healthy: bool
    checks: dict[str, bool] = field(default_factory=dict)
    polling: dict[str, Any] = field(default_factory=dict)
    execution: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checks": self.checks,
            "polling": self.polling,
            "execution": self.execution,
            "warnings": self.warnings,
            "errors": self.errors,
            "generated_at": self.generated_at.isoformat(),
        }


def build_health_report(
    loop: RulePollingLoop,
    workflow: ExecutionWorkflow | None = None,
    stale_cycle_seconds: float | None = None,
) -> RulesyncHealthReport:
    """Inspect the polling loop (and optionally the execution workflow).

    Args:
        loop: Polling loop to inspect
        workflow: Execution workflow to include, if one is hosted
        stale_cycle_seconds: Warn when the last cycle is older than this
            (defaults to three poll intervals)
    """
    report = RulesyncHealthReport(healthy=True)
    health = loop.health()
    report.polling = health.to_dict()

    # === Polling loop ===
    report.checks["polling_running"] = health.running
    if not health.running:
        report.healthy = False
        report.errors.append("Polling loop is not running")

    report.checks["cursor_initialized"] = health.cursor is not None

    if health.last_error:
        report.checks["last_cycle_ok"] = False
        report.warnings.append(f"Last polling cycle failed: {health.last_error}")
    else:
        report.checks["last_cycle_ok"] = True

    if health.pending_retries:
        report.warnings.append(f"{health.pending_retries} rule(s) pending re-sync")

    threshold = stale_cycle_seconds or loop.config.poll_interval_seconds * 3
    if health.running and health.last_cycle_at is not None:
        age = (report.generated_at - health.last_cycle_at).total_seconds()
        report.polling["last_cycle_age_seconds"] = age
        if age > threshold:
            report.warnings.append(
                f"Last polling cycle was {age:.1f}s ago (threshold: {threshold:.0f}s)"
            )

    # === Execution workflow ===
    if workflow is not None:
        state = workflow.state
        report.execution = state.to_dict()
        report.checks["execution_running"] = not state.is_paused
        if state.is_paused:
            report.warnings.append("Execution workflow is paused")
        if state.last_error:
            report.warnings.append(f"Last execution cycle failed: {state.last_error}")

    return report
