"""Single-shot workflow started each time a rule's schedule fires."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

from rulesync.core.errors import ValidationError, WorkflowError
from rulesync.core.logging import LogContext, get_logger
from rulesync.core.models import (
    RULE_SCHEDULED_WORKFLOW,
    NotificationDraft,
    Rule,
    RuleScheduledInput,
    ScheduleDefinition,
)
from rulesync.workflows.activities import CREATE_NOTIFICATION, FETCH_RULE, ActivityExecutor

logger = get_logger(__name__)


def recipients_from_payload(payload: Mapping[str, Any] | None) -> list[Any]:
    if not isinstance(payload, Mapping):
        return []
    recipients = payload.get("recipients")
    if isinstance(recipients, list):
        return list(recipients)
    recipient = payload.get("recipient")
    return [recipient] if recipient else []


def build_notification_draft(rule: Rule, workflow_input: RuleScheduledInput) -> NotificationDraft:
    payload = rule.rule_payload if rule.rule_payload is not None else workflow_input.rule_payload
    recipients = recipients_from_payload(payload)
    if not recipients:
        raise ValidationError(
            f"No recipients specified in rule payload for rule {rule.id}",
            field="rule_payload.recipients",
        ).with_context(rule_id=rule.id, enterprise_id=rule.enterprise_id)
    return NotificationDraft(
        name=f"Scheduled: {rule.name}",
        description=f"Notification triggered by scheduled rule: {rule.name}",
        payload=dict(payload or {}),
        recipients=recipients,
        workflow_id=rule.workflow_id if rule.workflow_id is not None else workflow_input.workflow_id,
        rule_id=rule.id,
        enterprise_id=rule.enterprise_id,
        business_id=workflow_input.business_id or rule.business_id,
    )


class RuleFireWorkflow:
    """Turns one schedule fire into one persisted notification.

    Example:
        >>> await RuleFireWorkflow(executor).run(RuleScheduledInput(rule_id=7, enterprise_id="ent-1"))
    """

    def __init__(self, executor: ActivityExecutor) -> None:
        self.executor = executor

    async def run(self, workflow_input: RuleScheduledInput | Mapping[str, Any]) -> None:
        if not isinstance(workflow_input, RuleScheduledInput):
            workflow_input = RuleScheduledInput.from_payload(workflow_input)
        rule_id = workflow_input.rule_id

        async with LogContext(workflow=RULE_SCHEDULED_WORKFLOW, rule_id=rule_id):
            try:
                rule: Rule = await self.executor.execute(
                    FETCH_RULE, rule_id, workflow_input.enterprise_id
                )
            except Exception as e:
                raise WorkflowError(f"Failed to fetch rule {rule_id}: {e}", cause=e).with_context(
                    rule_id=rule_id, enterprise_id=workflow_input.enterprise_id
                ) from e

            if rule.deactivated or not rule.is_published:
                logger.warning(
                    "rule_inactive_skipped",
                    deactivated=rule.deactivated,
                    publish_status=rule.publish_status,
                )
                return

            draft = build_notification_draft(rule, workflow_input)
            notification_id = await self.executor.execute(CREATE_NOTIFICATION, draft)
            logger.info(
                "scheduled_notification_created",
                notification_id=notification_id,
                recipients=len(draft.recipients),
            )


def make_schedule_action(
    executor: ActivityExecutor,
) -> Callable[[ScheduleDefinition, datetime], Awaitable[None]]:
    """Callback for ``InMemoryScheduleService`` that runs ``RuleFireWorkflow`` locally."""

    async def _run_action(definition: ScheduleDefinition, fire_time: datetime) -> None:
        if definition.action.workflow_type != RULE_SCHEDULED_WORKFLOW:
            logger.warning(
                "schedule_action_unsupported",
                schedule_id=definition.schedule_id,
                workflow_type=definition.action.workflow_type,
            )
            return
        logger.info(
            "schedule_fired",
            schedule_id=definition.schedule_id,
            fire_time=fire_time.isoformat(),
        )
        for payload in definition.action.args:
            await RuleFireWorkflow(executor).run(payload)

    return _run_action
