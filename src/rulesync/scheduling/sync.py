"""Rule-to-schedule synchronization.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULE SYNC SERVICE                                                        │
│                                                                               │
│   RuleStore ──rules──► ScheduleSyncService ──definitions──► ScheduleService  │
│                                                                               │
│   sync_rule(rule)         update-or-create one schedule                      │
│   delete_schedule(rule)   delete, already-absent is fine                     │
│   sync_all_rules()        sync every published CRON rule, count failures     │
│   reconcile_schedules()   full diff: delete orphans, update, create missing  │
│                                                                               │
│  Schedule ids are derived from the rule: ``rule-{id}-{enterprise|null}``.    │
│  A schedule exists for every published rule; deactivation pauses it.         │
│  Unpublishing pauses it too, until reconciliation deletes it.                 │
└──────────────────────────────────────────────────────────────────────────────┘

Example:
    >>> sync = ScheduleSyncService(schedule_service, rule_store, task_queue="notifications")
    >>> await sync.sync_rule(rule)
    >>> stats = await sync.reconcile_schedules()
    >>> stats.to_dict()
    {'created': 1, 'updated': 4, 'deleted': 0, 'errors': 0}
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass

from rulesync.core.errors import NotFoundError, ValidationError
from rulesync.core.logging import get_logger
from rulesync.core.models import (
    RULE_SCHEDULED_WORKFLOW,
    CronTrigger,
    Rule,
    RuleScheduledInput,
    ScheduleDefinition,
    ScheduleSpec,
    ScheduleState,
    StartWorkflowAction,
    TriggerType,
)
from rulesync.scheduling.cron import is_valid_cron, is_valid_timezone
from rulesync.scheduling.protocol import ScheduleHandle, ScheduleService
from rulesync.stores.protocol import RuleStore

logger = get_logger(__name__)

SCHEDULE_ID_PREFIX = "rule-"


def schedule_id_for(rule: Rule) -> str:
    """Deterministic schedule id for a rule."""
    return f"{SCHEDULE_ID_PREFIX}{rule.id}-{rule.enterprise_id or 'null'}"


def parse_schedule_id(schedule_id: str) -> tuple[int, str | None] | None:
    """Inverse of ``schedule_id_for``; None for ids this service does not own.

    The enterprise part may itself contain dashes.
    """
    if not schedule_id.startswith(SCHEDULE_ID_PREFIX):
        return None
    parts = schedule_id.split("-", 2)
    if len(parts) < 3 or not parts[1].isdigit():
        return None
    enterprise_id = parts[2]
    return int(parts[1]), (None if enterprise_id == "null" else enterprise_id)


def parse_trigger(rule: Rule) -> CronTrigger:
    """Validate a rule's trigger configuration.

    Raises:
        ValidationError: naming the rule id
    """
    if rule.trigger_type != TriggerType.CRON.value:
        raise ValidationError(
            f"Rule {rule.id} has trigger type {rule.trigger_type!r}; only CRON rules are scheduled",
            field="trigger_type",
            value=rule.trigger_type,
        ).with_context(rule_id=rule.id, enterprise_id=rule.enterprise_id)

    config = rule.trigger_config
    if not isinstance(config, Mapping):
        raise ValidationError(
            f"Invalid trigger config for rule {rule.id}",
            field="trigger_config",
            value=config,
        ).with_context(rule_id=rule.id, enterprise_id=rule.enterprise_id)

    cron = config.get("cron")
    if not isinstance(cron, str) or not is_valid_cron(cron):
        raise ValidationError(
            f"Invalid cron expression for rule {rule.id}: {cron!r}",
            field="trigger_config.cron",
            value=cron,
        ).with_context(rule_id=rule.id, enterprise_id=rule.enterprise_id)

    timezone = config.get("timezone") or "UTC"
    if not is_valid_timezone(timezone):
        raise ValidationError(
            f"Unknown timezone for rule {rule.id}: {timezone!r}",
            field="trigger_config.timezone",
            value=timezone,
        ).with_context(rule_id=rule.id, enterprise_id=rule.enterprise_id)

    return CronTrigger(cron=cron, timezone=timezone, enabled=config.get("enabled", True) is not False)


@dataclass
class SyncStats:
    synced: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)


@dataclass
class ReconcileStats:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)


class ScheduleSyncService:
    """Keeps the schedule service in step with the rule store."""

    def __init__(
        self,
        schedule_service: ScheduleService,
        rule_store: RuleStore,
        task_queue: str = "notifications",
    ) -> None:
        self.schedule_service = schedule_service
        self.rule_store = rule_store
        self.task_queue = task_queue
        self._closed = False

    # === Building ===

    def build_schedule(self, rule: Rule) -> ScheduleDefinition:
        """Schedule definition for a rule; raises ValidationError if malformed."""
        trigger = parse_trigger(rule)
        workflow_input = RuleScheduledInput(
            rule_id=rule.id,
            enterprise_id=rule.enterprise_id,
            business_id=rule.business_id,
            workflow_id=rule.workflow_id,
            rule_payload=rule.rule_payload,
        )
        return ScheduleDefinition(
            schedule_id=schedule_id_for(rule),
            spec=ScheduleSpec(cron_expressions=[trigger.cron], timezone=trigger.timezone),
            action=StartWorkflowAction(
                workflow_type=RULE_SCHEDULED_WORKFLOW,
                task_queue=self.task_queue,
                args=[workflow_input.to_payload()],
            ),
            memo={
                "ruleId": rule.id,
                "enterpriseId": rule.enterprise_id,
                "ruleName": rule.name,
            },
            state=ScheduleState(
                paused=rule.deactivated or not rule.is_published or not trigger.enabled,
                note=f"Notification rule: {rule.name}",
            ),
        )

    # === Single-rule operations ===

    async def create_schedule(self, rule: Rule) -> ScheduleHandle:
        definition = self.build_schedule(rule)
        handle = await self.schedule_service.create(definition)
        logger.info(
            "schedule_created",
            rule_id=rule.id,
            schedule_id=definition.schedule_id,
            cron=definition.spec.cron_expressions[0],
            timezone=definition.spec.timezone,
        )
        return handle

    async def _update_or_create(self, rule: Rule) -> tuple[ScheduleHandle, bool]:
        definition = self.build_schedule(rule)

        def _mutate(current: ScheduleDefinition) -> ScheduleDefinition:
            return dataclasses.replace(
                current,
                spec=definition.spec,
                action=definition.action,
                memo={**current.memo, **definition.memo},
                state=definition.state,
            )

        handle = self.schedule_service.get_handle(definition.schedule_id)
        try:
            await handle.update(_mutate)
        except NotFoundError:
            logger.info("schedule_missing_creating", rule_id=rule.id, schedule_id=definition.schedule_id)
            return await self.schedule_service.create(definition), True

        logger.info(
            "schedule_updated",
            rule_id=rule.id,
            schedule_id=definition.schedule_id,
            paused=definition.state.paused,
        )
        return handle, False

    async def sync_rule(self, rule: Rule) -> ScheduleHandle:
        """Update the rule's schedule, creating it when absent."""
        handle, _ = await self._update_or_create(rule)
        return handle

    async def delete_schedule(self, rule_or_id: Rule | str) -> bool:
        """Delete a schedule; returns False when it was already absent."""
        schedule_id = rule_or_id if isinstance(rule_or_id, str) else schedule_id_for(rule_or_id)
        try:
            await self.schedule_service.get_handle(schedule_id).delete()
        except NotFoundError:
            logger.warning("schedule_already_absent", schedule_id=schedule_id)
            return False
        logger.info("schedule_deleted", schedule_id=schedule_id)
        return True

    # === Bulk operations ===

    async def sync_all_rules(self, enterprise_id: str | None = None) -> SyncStats:
        """Sync every published CRON rule; individual failures are counted."""
        rules = await self.rule_store.list_published_rules(enterprise_id)
        logger.info("sync_all_started", rules=len(rules), enterprise_id=enterprise_id)

        stats = SyncStats()
        for rule in rules:
            try:
                await self.sync_rule(rule)
                stats.synced += 1
            except Exception as e:
                stats.failed += 1
                logger.error("rule_sync_failed", rule_id=rule.id, error=str(e))

        logger.info("sync_all_completed", **stats.to_dict())
        return stats

    async def _list_owned_schedules(self, enterprise_id: str | None) -> list[str]:
        owned = []
        async for entry in self.schedule_service.list():
            parsed = parse_schedule_id(entry.schedule_id)
            if parsed is None:
                continue
            if enterprise_id is not None and parsed[1] != enterprise_id:
                continue
            owned.append(entry.schedule_id)
        return owned

    async def reconcile_schedules(self, enterprise_id: str | None = None) -> ReconcileStats:
        """Full pass: delete orphans, update existing, create missing."""
        existing = set(await self._list_owned_schedules(enterprise_id))
        rules = await self.rule_store.list_published_rules(enterprise_id)
        expected = {schedule_id_for(rule): rule for rule in rules}

        stats = ReconcileStats()
        for schedule_id in sorted(existing - expected.keys()):
            try:
                if await self.delete_schedule(schedule_id):
                    stats.deleted += 1
            except Exception as e:
                stats.errors += 1
                logger.error("orphan_delete_failed", schedule_id=schedule_id, error=str(e))

        for schedule_id, rule in expected.items():
            try:
                if schedule_id in existing:
                    _, created = await self._update_or_create(rule)
                else:
                    await self.create_schedule(rule)
                    created = True
                if created:
                    stats.created += 1
                else:
                    stats.updated += 1
            except Exception as e:
                stats.errors += 1
                logger.error("rule_reconcile_failed", rule_id=rule.id, error=str(e))

        logger.info("reconciliation_completed", enterprise_id=enterprise_id, **stats.to_dict())
        return stats

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.schedule_service.close()
        logger.debug("schedule_sync_closed")
