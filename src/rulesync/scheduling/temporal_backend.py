"""Temporal-backed schedule and namespace services.

Requires the ``temporal`` extra (``pip install rulesync[temporal]``). The
module is imported lazily by ``rulesync.scheduling`` so the in-memory
backend works without temporalio installed.

Every Temporal call runs inside ``_translate_errors``: ``RPCError`` status
codes become ``ServiceError`` subclasses and ``ScheduleAlreadyRunningError``
becomes ``ConflictError``. Nothing above this module sees a raw status code.

Descriptions read back from Temporal carry the schedule state, spec and
action target; action arguments stay encoded and are not decoded here.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from google.protobuf.duration_pb2 import Duration
from temporalio.api.workflowservice.v1 import (
    DescribeNamespaceRequest,
    RegisterNamespaceRequest,
)
from temporalio.client import (
    Client,
    Schedule,
    ScheduleActionStartWorkflow,
    ScheduleAlreadyRunningError,
    ScheduleBackfill,
    ScheduleOverlapPolicy,
    ScheduleUpdate,
    ScheduleUpdateInput,
)
from temporalio.client import ScheduleDescription as TemporalScheduleDescription
from temporalio.client import ScheduleSpec as TemporalScheduleSpec
from temporalio.client import ScheduleState as TemporalScheduleState
from temporalio.service import RPCError

from rulesync.core.errors import ConflictError, error_from_status
from rulesync.core.logging import get_logger
from rulesync.core.models import (
    ScheduleDefinition,
    ScheduleSpec,
    ScheduleState,
    StartWorkflowAction,
)
from rulesync.scheduling.protocol import (
    NamespaceInfo,
    NamespaceRegistration,
    ScheduleDescription,
    ScheduleListEntry,
    ScheduleMutator,
)

logger = get_logger(__name__)


@contextmanager
def _translate_errors(operation: str, **context: Any) -> Iterator[None]:
    try:
        yield
    except ScheduleAlreadyRunningError as e:
        raise ConflictError(f"{operation}: schedule already exists", cause=e).with_context(
            **context
        ) from e
    except RPCError as e:
        code = int(e.status) if e.status is not None else None
        raise error_from_status(code, f"{operation}: {e.message}", cause=e, **context) from e


def to_temporal_schedule(definition: ScheduleDefinition) -> Schedule:
    action = definition.action
    return Schedule(
        action=ScheduleActionStartWorkflow(
            action.workflow_type,
            args=list(action.args),
            id=f"{definition.schedule_id}-workflow",
            task_queue=action.task_queue,
        ),
        spec=TemporalScheduleSpec(
            cron_expressions=list(definition.spec.cron_expressions),
            time_zone_name=definition.spec.timezone,
        ),
        state=TemporalScheduleState(
            paused=definition.state.paused,
            note=definition.state.note,
        ),
    )


def from_temporal_schedule(
    schedule_id: str, schedule: Schedule, memo: dict[str, Any] | None = None
) -> ScheduleDefinition:
    action = schedule.action
    workflow_type = getattr(action, "workflow", "")
    return ScheduleDefinition(
        schedule_id=schedule_id,
        spec=ScheduleSpec(
            cron_expressions=list(schedule.spec.cron_expressions),
            timezone=schedule.spec.time_zone_name or "UTC",
        ),
        action=StartWorkflowAction(
            workflow_type=workflow_type if isinstance(workflow_type, str) else str(workflow_type),
            task_queue=getattr(action, "task_queue", ""),
        ),
        memo=dict(memo or {}),
        state=ScheduleState(
            paused=schedule.state.paused,
            note=schedule.state.note or "",
        ),
    )


class TemporalScheduleHandle:
    def __init__(self, client: Client, schedule_id: str) -> None:
        self._handle = client.get_schedule_handle(schedule_id)
        self.schedule_id = schedule_id

    async def update(self, mutator: ScheduleMutator) -> None:
        schedule_id = self.schedule_id

        def _updater(update_input: ScheduleUpdateInput) -> ScheduleUpdate:
            current = from_temporal_schedule(schedule_id, update_input.description.schedule)
            return ScheduleUpdate(schedule=to_temporal_schedule(mutator(current)))

        with _translate_errors("update schedule", schedule_id=schedule_id):
            await self._handle.update(_updater)

    async def describe(self) -> ScheduleDescription:
        with _translate_errors("describe schedule", schedule_id=self.schedule_id):
            description: TemporalScheduleDescription = await self._handle.describe()
            memo = await description.memo()
        info = description.info
        return ScheduleDescription(
            schedule_id=self.schedule_id,
            definition=from_temporal_schedule(self.schedule_id, description.schedule, dict(memo)),
            next_action_times=list(info.next_action_times),
            recent_action_times=[result.scheduled_at for result in info.recent_actions],
            num_actions=info.num_actions,
        )

    async def delete(self) -> None:
        with _translate_errors("delete schedule", schedule_id=self.schedule_id):
            await self._handle.delete()

    async def pause(self, note: str | None = None) -> None:
        with _translate_errors("pause schedule", schedule_id=self.schedule_id):
            await self._handle.pause(note=note)

    async def unpause(self, note: str | None = None) -> None:
        with _translate_errors("unpause schedule", schedule_id=self.schedule_id):
            await self._handle.unpause(note=note)

    async def trigger(self) -> None:
        with _translate_errors("trigger schedule", schedule_id=self.schedule_id):
            await self._handle.trigger()

    async def backfill(self, start: datetime, end: datetime) -> None:
        with _translate_errors("backfill schedule", schedule_id=self.schedule_id):
            await self._handle.backfill(
                ScheduleBackfill(
                    start_at=start,
                    end_at=end,
                    overlap=ScheduleOverlapPolicy.ALLOW_ALL,
                )
            )


class TemporalScheduleService:
    """``ScheduleService`` over Temporal schedules."""

    name = "temporal"

    def __init__(self, client: Client) -> None:
        self.client = client

    @classmethod
    async def connect(cls, address: str, namespace: str = "default") -> TemporalScheduleService:
        client = await Client.connect(address, namespace=namespace)
        logger.info("temporal_connected", address=address, namespace=namespace)
        return cls(client)

    async def create(self, definition: ScheduleDefinition) -> TemporalScheduleHandle:
        with _translate_errors("create schedule", schedule_id=definition.schedule_id):
            await self.client.create_schedule(
                definition.schedule_id,
                to_temporal_schedule(definition),
                memo=dict(definition.memo),
            )
        return TemporalScheduleHandle(self.client, definition.schedule_id)

    def get_handle(self, schedule_id: str) -> TemporalScheduleHandle:
        return TemporalScheduleHandle(self.client, schedule_id)

    async def list(self) -> AsyncIterator[ScheduleListEntry]:
        with _translate_errors("list schedules"):
            async for entry in await self.client.list_schedules():
                yield ScheduleListEntry(schedule_id=entry.id, memo=dict(await entry.memo()))

    async def close(self) -> None:
        # temporalio clients expose no close(); connections end with the process
        logger.debug("temporal_schedule_service_closed")


class TemporalNamespaceService:
    """``NamespaceService`` over the Temporal workflow service API."""

    def __init__(self, client: Client) -> None:
        self.client = client

    async def describe(self, name: str) -> NamespaceInfo:
        with _translate_errors("describe namespace", namespace=name):
            response = await self.client.workflow_service.describe_namespace(
                DescribeNamespaceRequest(namespace=name)
            )
        retention = response.config.workflow_execution_retention_ttl
        return NamespaceInfo(
            name=response.namespace_info.name,
            retention_seconds=retention.seconds if retention else None,
            description=response.namespace_info.description,
        )

    async def register(self, registration: NamespaceRegistration) -> None:
        with _translate_errors("register namespace", namespace=registration.name):
            await self.client.workflow_service.register_namespace(
                RegisterNamespaceRequest(
                    namespace=registration.name,
                    description=registration.description,
                    workflow_execution_retention_period=Duration(
                        seconds=registration.retention_seconds
                    ),
                    is_global_namespace=registration.is_global,
                )
            )
