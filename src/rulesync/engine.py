"""Rule engine: the process-level owner of the sync components.

One ``RuleEngine`` holds exactly one ``ScheduleSyncService``, one
``RulePollingLoop`` and one ``NamespaceProvisioner``, all built from
``RulesyncSettings`` by ``create_rule_engine``. The process entry point
constructs it and passes it where needed; there is no module-level instance.

Example:
    >>> settings = RulesyncSettings(initial_delay_seconds=0)
    >>> engine = await create_rule_engine(settings, conn=connect(":memory:"))
    >>> async with engine:
    ...     print(engine.status().healthy)
"""

from __future__ import annotations

import asyncio
from typing import Any

from rulesync.core.errors import ConfigError
from rulesync.core.logging import get_logger
from rulesync.core.settings import RulesyncSettings
from rulesync.health import RulesyncHealthReport, build_health_report
from rulesync.scheduling.memory import InMemoryNamespaceService, InMemoryScheduleService
from rulesync.scheduling.namespace import NamespaceProvisioner
from rulesync.scheduling.polling import PollingConfig, RulePollingLoop
from rulesync.scheduling.protocol import NamespaceService, ScheduleService
from rulesync.scheduling.sync import ReconcileStats, ScheduleSyncService
from rulesync.stores.base import connect
from rulesync.stores.notifications import SqlNotificationStore
from rulesync.stores.rules import SqlRuleStore
from rulesync.workflows.activities import (
    ActivityExecutor,
    NotificationDispatcher,
    build_activity_executor,
)
from rulesync.workflows.execution import ExecutionConfig, ExecutionWorkflow
from rulesync.workflows.rule_fire import make_schedule_action

logger = get_logger(__name__)


class RuleEngine:
    """Owns and sequences the sync components of one process."""

    def __init__(
        self,
        *,
        namespace: str,
        sync_service: ScheduleSyncService,
        polling_loop: RulePollingLoop,
        provisioner: NamespaceProvisioner,
        executor: ActivityExecutor,
        workflow: ExecutionWorkflow | None = None,
        owned_conn: Any = None,
        schedule_tick_seconds: float = 1.0,
    ) -> None:
        self.namespace = namespace
        self.sync_service = sync_service
        self.polling_loop = polling_loop
        self.provisioner = provisioner
        self.executor = executor
        self.workflow = workflow
        self._owned_conn = owned_conn
        self._schedule_tick_seconds = schedule_tick_seconds
        self._workflow_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Provision the namespace, then start the polling loop."""
        if self._started:
            logger.warning("rule_engine_already_running")
            return

        await self.provisioner.ensure(self.namespace)

        schedule_service = self.sync_service.schedule_service
        if isinstance(schedule_service, InMemoryScheduleService):
            schedule_service.start(self._schedule_tick_seconds)

        await self.polling_loop.start()

        if self.workflow is not None:
            self._workflow_task = asyncio.create_task(
                self.workflow.run(), name="rulesync-execution-workflow"
            )

        self._started = True
        logger.info("rule_engine_started", namespace=self.namespace)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False

        if self._workflow_task is not None:
            self._workflow_task.cancel()
            try:
                await self._workflow_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("execution_workflow_failed", error=str(e))
            self._workflow_task = None

        await self.polling_loop.stop()
        await self.close()
        logger.info("rule_engine_stopped")

    async def close(self) -> None:
        """Release the schedule service and any connection the engine opened."""
        await self.sync_service.close()
        if self._owned_conn is not None:
            self._owned_conn.close()
            self._owned_conn = None

    async def reload(self) -> ReconcileStats | None:
        """Force a full reconciliation."""
        return await self.polling_loop.force_reconciliation()

    def status(self) -> RulesyncHealthReport:
        return build_health_report(self.polling_loop, self.workflow)

    async def __aenter__(self) -> RuleEngine:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()


async def build_services(
    settings: RulesyncSettings, executor: ActivityExecutor
) -> tuple[ScheduleService, NamespaceService]:
    """Schedule and namespace services for the configured backend."""
    if settings.schedule_backend == "temporal":
        try:
            from rulesync.scheduling.temporal_backend import (
                TemporalNamespaceService,
                TemporalScheduleService,
            )
        except ImportError as e:
            raise ConfigError("schedule_backend=temporal requires the temporal extra") from e

        schedule_service = await TemporalScheduleService.connect(
            settings.temporal_address, settings.temporal_namespace
        )
        return schedule_service, TemporalNamespaceService(schedule_service.client)

    return (
        InMemoryScheduleService(on_action=make_schedule_action(executor)),
        InMemoryNamespaceService(),
    )


async def create_rule_engine(
    settings: RulesyncSettings,
    conn: Any = None,
    *,
    schedule_service: ScheduleService | None = None,
    namespace_service: NamespaceService | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> RuleEngine:
    """Wire a ``RuleEngine`` from settings.

    Args:
        settings: Validated settings
        conn: DB-API connection; when omitted one is opened on
            ``settings.database_path`` and closed by ``RuleEngine.stop``
        schedule_service: Override the backend chosen by settings
        namespace_service: Override the namespace service
        dispatcher: Delivery hand-off for the execution workflow
    """
    owned_conn = None
    if conn is None:
        conn = owned_conn = connect(settings.database_path)

    rule_store = SqlRuleStore(conn)
    notification_store = SqlNotificationStore(conn)
    executor = build_activity_executor(rule_store, notification_store, dispatcher)

    if schedule_service is None or namespace_service is None:
        try:
            default_schedules, default_namespaces = await build_services(settings, executor)
        except Exception:
            if owned_conn is not None:
                owned_conn.close()
            raise
        if schedule_service is None:
            schedule_service = default_schedules
        if namespace_service is None:
            namespace_service = default_namespaces

    sync_service = ScheduleSyncService(
        schedule_service,
        rule_store,
        task_queue=settings.task_queue,
    )
    polling_loop = RulePollingLoop(
        sync_service,
        rule_store,
        PollingConfig.from_settings(settings),
    )

    workflow = None
    if settings.execution_enabled:
        workflow = ExecutionWorkflow(
            executor,
            ExecutionConfig(
                poll_interval_seconds=settings.execution_poll_interval_seconds,
                batch_size=settings.batch_size,
                enterprise_id=settings.enterprise_id,
                process_failed=settings.execution_process_failed,
                process_scheduled=settings.execution_process_scheduled,
            ),
        )

    logger.debug(
        "rule_engine_created",
        backend=schedule_service.name,
        namespace=settings.temporal_namespace,
        execution_enabled=workflow is not None,
    )
    return RuleEngine(
        namespace=settings.temporal_namespace,
        sync_service=sync_service,
        polling_loop=polling_loop,
        provisioner=NamespaceProvisioner(namespace_service),
        executor=executor,
        workflow=workflow,
        owned_conn=owned_conn,
    )
