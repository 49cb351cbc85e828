"""Workflows and the activities they run."""

from rulesync.workflows.activities import (
    ActivityExecutor,
    LoggingDispatcher,
    NotificationDispatcher,
    build_activity_executor,
)
from rulesync.workflows.execution import (
    ExecutionConfig,
    ExecutionLoopState,
    ExecutionWorkflow,
    WorkflowStatus,
)
from rulesync.workflows.rule_fire import RuleFireWorkflow, make_schedule_action

__all__ = [
    "ActivityExecutor",
    "ExecutionConfig",
    "ExecutionLoopState",
    "ExecutionWorkflow",
    "LoggingDispatcher",
    "NotificationDispatcher",
    "RuleFireWorkflow",
    "WorkflowStatus",
    "build_activity_executor",
    "make_schedule_action",
]
