"""Signal-driven notification polling workflow.

The workflow is a two-state machine (RUNNING, PAUSED) fed by a command
mailbox. Signals only enqueue commands; the loop applies them at its two
suspension points:

::

    ┌─────────┐  pause   ┌────────┐
    │ RUNNING │ ───────► │ PAUSED │  blocks on mailbox.get()
    │         │ ◄─────── │        │
    └─────────┘  resume  └────────┘
         │
         ▼
    cycle: poll → PENDING→PROCESSING→SENT|FAILED per item
           [poll failed] [poll scheduled]
         │
         ▼
    interval wait: applies queued commands until the interval ends,
                   leaves early on pause

Commands already queued are applied before each cycle, so a pause sent
before ``run`` prevents the first cycle. Invalid config updates and
unparseable timestamps are logged and dropped.

All I/O goes through the ``ActivityExecutor``. The loop only ends when its
task is cancelled; both waits are cancellation points.

Example:
    >>> workflow = ExecutionWorkflow(executor, ExecutionConfig(poll_interval_seconds=10))
    >>> task = asyncio.create_task(workflow.run())
    >>> workflow.pause()
    >>> workflow.update_config({"batch_size": 25})
    >>> workflow.resume()
    >>> task.cancel()
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from rulesync.core.logging import get_logger
from rulesync.core.models import (
    Notification,
    NotificationStatus,
    PollingState,
    parse_timestamp,
)
from rulesync.workflows.activities import (
    DISPATCH_NOTIFICATION,
    POLL_FAILED_NOTIFICATIONS,
    POLL_NOTIFICATIONS,
    POLL_SCHEDULED_NOTIFICATIONS,
    RESET_POLLING_TIMESTAMP,
    UPDATE_NOTIFICATION_STATUS,
    ActivityExecutor,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExecutionConfig:
    poll_interval_seconds: float = 30.0
    batch_size: int = 100
    enterprise_id: str | None = None
    include_processed: bool = False
    process_failed: bool = False
    process_scheduled: bool = False


class WorkflowStatus(str, Enum):
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"


@dataclass
class ExecutionLoopState:
    config: ExecutionConfig
    status: WorkflowStatus = WorkflowStatus.RUNNING
    last_poll_timestamp: datetime | None = None
    cycles: int = 0
    processed: int = 0
    failed: int = 0
    last_error: str | None = None

    @property
    def is_paused(self) -> bool:
        return self.status is WorkflowStatus.PAUSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "config": dataclasses.asdict(self.config),
            "last_poll_timestamp": (
                self.last_poll_timestamp.isoformat() if self.last_poll_timestamp else None
            ),
            "cycles": self.cycles,
            "processed": self.processed,
            "failed": self.failed,
            "last_error": self.last_error,
        }


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class ResetTimestamp:
    value: datetime | str | None = None


@dataclass(frozen=True)
class UpdateConfig:
    changes: dict[str, Any] = field(default_factory=dict)


Command = Pause | Resume | ResetTimestamp | UpdateConfig

_CONFIG_FIELDS = frozenset(f.name for f in dataclasses.fields(ExecutionConfig))
_FLAG_FIELDS = ("include_processed", "process_failed", "process_scheduled")


def validate_config_changes(changes: Mapping[str, Any]) -> list[str]:
    """Problems with the known keys of a config update; empty when valid."""
    problems = []
    if "poll_interval_seconds" in changes:
        value = changes["poll_interval_seconds"]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            problems.append(f"poll_interval_seconds must be a positive number, got {value!r}")
    if "batch_size" in changes:
        value = changes["batch_size"]
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            problems.append(f"batch_size must be an integer >= 1, got {value!r}")
    if "enterprise_id" in changes:
        value = changes["enterprise_id"]
        if value is not None and not isinstance(value, str):
            problems.append(f"enterprise_id must be a string or None, got {value!r}")
    for name in _FLAG_FIELDS:
        if name in changes and not isinstance(changes[name], bool):
            problems.append(f"{name} must be a boolean, got {changes[name]!r}")
    return problems


class ExecutionWorkflow:
    """Long-running notification polling loop controlled by signals."""

    def __init__(
        self,
        executor: ActivityExecutor,
        config: ExecutionConfig | None = None,
    ) -> None:
        self.executor = executor
        self.state = ExecutionLoopState(config=config or ExecutionConfig())
        self._mailbox: asyncio.Queue[Command] = asyncio.Queue()

    # === Signals ===

    def pause(self) -> None:
        self._mailbox.put_nowait(Pause())

    def resume(self) -> None:
        self._mailbox.put_nowait(Resume())

    def reset_timestamp(self, value: datetime | str | None = None) -> None:
        self._mailbox.put_nowait(ResetTimestamp(value))

    def update_config(self, changes: Mapping[str, Any]) -> None:
        self._mailbox.put_nowait(UpdateConfig(dict(changes)))

    # === Query ===

    def get_polling_state(self) -> PollingState:
        return PollingState(last_poll_timestamp=self.state.last_poll_timestamp)

    @property
    def pending_commands(self) -> int:
        return self._mailbox.qsize()

    # === Command handling ===

    async def _apply(self, command: Command) -> None:
        if isinstance(command, Pause):
            self.state.status = WorkflowStatus.PAUSED
            logger.info("execution_paused")
        elif isinstance(command, Resume):
            self.state.status = WorkflowStatus.RUNNING
            logger.info("execution_resumed")
        elif isinstance(command, ResetTimestamp):
            try:
                value = parse_timestamp(command.value)
            except (TypeError, ValueError) as e:
                logger.warning("reset_timestamp_rejected", value=str(command.value), error=str(e))
                return
            try:
                await self.executor.execute(RESET_POLLING_TIMESTAMP, value)
            except Exception as e:
                logger.error("reset_timestamp_failed", error=str(e))
            self.state.last_poll_timestamp = value
        elif isinstance(command, UpdateConfig):
            unknown = sorted(set(command.changes) - _CONFIG_FIELDS)
            if unknown:
                logger.warning("config_keys_ignored", keys=unknown)
            known = {k: v for k, v in command.changes.items() if k in _CONFIG_FIELDS}
            problems = validate_config_changes(known)
            if problems:
                logger.warning("config_update_rejected", problems=problems)
                return
            self.state.config = dataclasses.replace(self.state.config, **known)
            logger.info("execution_config_updated", **known)

    async def _apply_logged(self, command: Command) -> None:
        try:
            await self._apply(command)
        except Exception as e:
            logger.exception("command_failed", command=type(command).__name__, error=str(e))

    async def _drain(self) -> None:
        """Apply every queued command without waiting."""
        while not self._mailbox.empty():
            await self._apply_logged(self._mailbox.get_nowait())

    async def _wait_interval(self) -> None:
        """Apply commands until the interval elapses or a pause arrives."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.state.config.poll_interval_seconds
        while not self.state.is_paused:
            while not self._mailbox.empty() and not self.state.is_paused:
                await self._apply_logged(self._mailbox.get_nowait())
            if self.state.is_paused:
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                await asyncio.sleep(0)
                return
            try:
                command = await asyncio.wait_for(self._mailbox.get(), timeout=remaining)
            except TimeoutError:
                return
            await self._apply_logged(command)

    # === Cycle ===

    async def _process(self, notification: Notification, queue: str) -> None:
        try:
            await self.executor.execute(
                UPDATE_NOTIFICATION_STATUS, notification.id, NotificationStatus.PROCESSING.value
            )
            await self.executor.execute(DISPATCH_NOTIFICATION, notification)
            await self.executor.execute(
                UPDATE_NOTIFICATION_STATUS, notification.id, NotificationStatus.SENT.value
            )
            self.state.processed += 1
        except Exception as e:
            self.state.failed += 1
            logger.error(
                "notification_processing_failed",
                notification_id=notification.id,
                queue=queue,
                error=str(e),
            )
            try:
                await self.executor.execute(
                    UPDATE_NOTIFICATION_STATUS,
                    notification.id,
                    NotificationStatus.FAILED.value,
                    {"error": str(e)},
                )
            except Exception as status_error:
                logger.error(
                    "notification_status_update_failed",
                    notification_id=notification.id,
                    error=str(status_error),
                )

    async def _run_cycle(self) -> None:
        config = self.state.config
        self.state.cycles += 1
        try:
            primary = await self.executor.execute(
                POLL_NOTIFICATIONS,
                config.batch_size,
                config.include_processed,
                config.enterprise_id,
            )
            if primary.cursor is not None:
                self.state.last_poll_timestamp = primary.cursor
            for notification in primary.items:
                await self._process(notification, "primary")

            if config.process_failed:
                failed = await self.executor.execute(
                    POLL_FAILED_NOTIFICATIONS, config.batch_size, config.enterprise_id
                )
                for notification in failed.items:
                    await self._process(notification, "failed")

            if config.process_scheduled:
                scheduled = await self.executor.execute(
                    POLL_SCHEDULED_NOTIFICATIONS, config.batch_size, config.enterprise_id
                )
                for notification in scheduled.items:
                    await self._process(notification, "scheduled")

            self.state.last_error = None
            logger.debug("execution_cycle_completed", cycle=self.state.cycles, polled=len(primary.items))
        except Exception as e:
            self.state.last_error = str(e)
            logger.error("execution_cycle_failed", cycle=self.state.cycles, error=str(e))

    async def run(self) -> None:
        """Loop until cancelled."""
        logger.info("execution_workflow_started", **dataclasses.asdict(self.state.config))
        try:
            while True:
                await self._drain()
                if self.state.is_paused:
                    await self._apply_logged(await self._mailbox.get())
                    continue
                await self._run_cycle()
                await self._wait_interval()
        finally:
            logger.info("execution_workflow_stopped", cycles=self.state.cycles)
