"""In-process schedule and namespace services.

``InMemoryScheduleService`` keeps schedule definitions in a dict and
evaluates their cron expressions with croniter. When started it ticks on an
asyncio task and hands every due fire to ``on_action`` (in the engine, a
local ``RuleFireWorkflow`` run). ``trigger`` and ``backfill`` use the same
callback. It raises the same ``NotFoundError``/``ConflictError`` types the
Temporal adapter produces, so the sync logic runs unchanged against it.

Example:
    >>> service = InMemoryScheduleService(on_action=run_rule_fire)
    >>> handle = await service.create(definition)
    >>> await handle.trigger()
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from rulesync.core.errors import ConflictError, NotFoundError, ValidationError
from rulesync.core.logging import get_logger
from rulesync.core.models import ScheduleDefinition, utcnow
from rulesync.scheduling.cron import (
    fire_times_between,
    is_valid_cron,
    is_valid_timezone,
    next_fire_times,
)
from rulesync.scheduling.protocol import (
    NamespaceInfo,
    NamespaceRegistration,
    ScheduleDescription,
    ScheduleListEntry,
    ScheduleMutator,
)

logger = get_logger(__name__)

ActionCallback = Callable[[ScheduleDefinition, datetime], Awaitable[Any]]


@dataclass
class _ScheduleRecord:
    definition: ScheduleDefinition
    evaluated_until: datetime
    action_times: list[datetime] = field(default_factory=list)


def _validate(definition: ScheduleDefinition) -> None:
    for expression in definition.spec.cron_expressions:
        if not is_valid_cron(expression):
            raise ValidationError(
                f"Invalid cron expression for schedule {definition.schedule_id}: {expression!r}",
                field="cron_expressions",
                value=expression,
            ).with_context(schedule_id=definition.schedule_id)
    if not is_valid_timezone(definition.spec.timezone):
        raise ValidationError(
            f"Unknown timezone for schedule {definition.schedule_id}: {definition.spec.timezone!r}",
            field="timezone",
            value=definition.spec.timezone,
        ).with_context(schedule_id=definition.schedule_id)


class InMemoryScheduleHandle:
    """Handle onto one schedule of an ``InMemoryScheduleService``."""

    def __init__(self, service: InMemoryScheduleService, schedule_id: str) -> None:
        self._service = service
        self.schedule_id = schedule_id

    def _record(self) -> _ScheduleRecord:
        record = self._service._schedules.get(self.schedule_id)
        if record is None:
            raise NotFoundError(
                f"Schedule not found: {self.schedule_id}"
            ).with_context(schedule_id=self.schedule_id)
        return record

    async def update(self, mutator: ScheduleMutator) -> None:
        record = self._record()
        updated = mutator(copy.deepcopy(record.definition))
        _validate(updated)
        updated.schedule_id = self.schedule_id
        record.definition = updated
        self._service.update_count += 1

    async def describe(self) -> ScheduleDescription:
        record = self._record()
        definition = copy.deepcopy(record.definition)
        upcoming: list[datetime] = []
        if not definition.state.paused:
            for expression in definition.spec.cron_expressions:
                upcoming.extend(
                    next_fire_times(expression, definition.spec.timezone, utcnow(), count=3)
                )
        return ScheduleDescription(
            schedule_id=self.schedule_id,
            definition=definition,
            next_action_times=sorted(upcoming)[:3],
            recent_action_times=record.action_times[-10:],
            num_actions=len(record.action_times),
        )

    async def delete(self) -> None:
        self._record()
        del self._service._schedules[self.schedule_id]

    async def pause(self, note: str | None = None) -> None:
        state = self._record().definition.state
        state.paused = True
        if note is not None:
            state.note = note

    async def unpause(self, note: str | None = None) -> None:
        state = self._record().definition.state
        state.paused = False
        if note is not None:
            state.note = note

    async def trigger(self) -> None:
        await self._service._fire(self._record(), utcnow())

    async def backfill(self, start: datetime, end: datetime) -> None:
        record = self._record()
        spec = record.definition.spec
        for expression in spec.cron_expressions:
            for fire_time in fire_times_between(expression, spec.timezone, start, end):
                await self._service._fire(record, fire_time)


class InMemoryScheduleService:
    """Dict-backed ``ScheduleService`` with an optional asyncio ticker."""

    name = "memory"

    def __init__(
        self,
        on_action: ActionCallback | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.on_action = on_action
        self._clock = clock
        self._schedules: dict[str, _ScheduleRecord] = {}
        self._ticker: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self.update_count = 0
        self.closed = False

    async def create(self, definition: ScheduleDefinition) -> InMemoryScheduleHandle:
        if definition.schedule_id in self._schedules:
            raise ConflictError(
                f"Schedule already exists: {definition.schedule_id}"
            ).with_context(schedule_id=definition.schedule_id)
        _validate(definition)
        self._schedules[definition.schedule_id] = _ScheduleRecord(
            definition=copy.deepcopy(definition),
            evaluated_until=self._clock(),
        )
        logger.debug("schedule_created", schedule_id=definition.schedule_id)
        return InMemoryScheduleHandle(self, definition.schedule_id)

    def get_handle(self, schedule_id: str) -> InMemoryScheduleHandle:
        return InMemoryScheduleHandle(self, schedule_id)

    async def list(self) -> AsyncIterator[ScheduleListEntry]:
        for schedule_id, record in list(self._schedules.items()):
            yield ScheduleListEntry(schedule_id=schedule_id, memo=dict(record.definition.memo))

    def get_definition(self, schedule_id: str) -> ScheduleDefinition | None:
        record = self._schedules.get(schedule_id)
        return copy.deepcopy(record.definition) if record else None

    def schedule_ids(self) -> list[str]:
        return sorted(self._schedules)

    # === Firing ===

    async def _fire(self, record: _ScheduleRecord, fire_time: datetime) -> None:
        record.action_times.append(fire_time)
        if self.on_action is None:
            logger.debug("schedule_fired_without_action", schedule_id=record.definition.schedule_id)
            return
        try:
            await self.on_action(copy.deepcopy(record.definition), fire_time)
        except Exception as e:
            logger.exception(
                "schedule_action_failed",
                schedule_id=record.definition.schedule_id,
                error=str(e),
            )

    async def tick(self, now: datetime | None = None) -> int:
        """Fire every unpaused schedule due since the previous tick."""
        now = now or self._clock()
        fired = 0
        for record in list(self._schedules.values()):
            since, record.evaluated_until = record.evaluated_until, now
            if record.definition.state.paused:
                continue
            spec = record.definition.spec
            for expression in spec.cron_expressions:
                for fire_time in fire_times_between(expression, spec.timezone, since, now):
                    await self._fire(record, fire_time)
                    fired += 1
        return fired

    def start(self, interval_seconds: float = 1.0) -> None:
        if self._ticker is not None and not self._ticker.done():
            logger.warning("memory_schedule_ticker_already_started")
            return
        self._stop_event.clear()
        self._ticker = asyncio.create_task(self._run(interval_seconds))
        logger.info("memory_schedule_ticker_started", interval_seconds=interval_seconds)

    async def _run(self, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except TimeoutError:
                continue

    async def close(self) -> None:
        self._stop_event.set()
        if self._ticker is not None:
            await self._ticker
            self._ticker = None
        self.closed = True
        logger.debug("memory_schedule_service_closed")


class InMemoryNamespaceService:
    """Dict-backed ``NamespaceService``."""

    def __init__(self, existing: list[str] | None = None) -> None:
        self.namespaces: dict[str, NamespaceInfo] = {
            name: NamespaceInfo(name=name) for name in (existing or [])
        }

    async def describe(self, name: str) -> NamespaceInfo:
        try:
            return self.namespaces[name]
        except KeyError:
            raise NotFoundError(f"Namespace not found: {name}").with_context(namespace=name) from None

    async def register(self, registration: NamespaceRegistration) -> None:
        if registration.name in self.namespaces:
            raise ConflictError(
                f"Namespace already exists: {registration.name}"
            ).with_context(namespace=registration.name)
        self.namespaces[registration.name] = NamespaceInfo(
            name=registration.name,
            retention_seconds=registration.retention_seconds,
            description=registration.description,
        )
