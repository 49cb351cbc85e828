"""Tests for RuleFireWorkflow and the in-memory schedule action."""

from __future__ import annotations

import pytest

from rulesync.core.errors import ValidationError, WorkflowError
from rulesync.core.models import Rule, RuleScheduledInput
from rulesync.scheduling.memory import InMemoryScheduleService
from rulesync.scheduling.sync import ScheduleSyncService
from rulesync.workflows.rule_fire import (
    RuleFireWorkflow,
    build_notification_draft,
    make_schedule_action,
    recipients_from_payload,
)


async def _notifications(notification_store):
    return (await notification_store.poll_notifications(100, include_processed=True)).items


class TestRecipients:
    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            ({"recipients": ["a", "b"]}, ["a", "b"]),
            ({"recipient": "a"}, ["a"]),
            ({"recipients": "a"}, []),
            ({}, []),
            (None, []),
        ],
    )
    def test_recipients_from_payload(self, payload, expected):
        assert recipients_from_payload(payload) == expected

    def test_draft_falls_back_to_input_payload(self):
        rule = Rule(id=1, name="digest", enterprise_id="ent-1", workflow_id=None)
        draft = build_notification_draft(
            rule,
            RuleScheduledInput(
                rule_id=1,
                enterprise_id="ent-1",
                workflow_id=3,
                business_id="biz",
                rule_payload={"recipient": "x"},
            ),
        )
        assert draft.recipients == ["x"]
        assert draft.workflow_id == 3
        assert draft.business_id == "biz"
        assert draft.name == "Scheduled: digest"


class TestRuleFireWorkflow:
    async def test_creates_notification(self, executor, make_rule, notification_store):
        make_rule(7, name="daily digest", workflow_id=2, rule_payload={"recipients": ["a@x", "b@x"]})
        await RuleFireWorkflow(executor).run({"ruleId": 7, "enterpriseId": "ent-1"})

        [notification] = await _notifications(notification_store)
        assert notification.name == "Scheduled: daily digest"
        assert notification.description == "Notification triggered by scheduled rule: daily digest"
        assert notification.recipients == ["a@x", "b@x"]
        assert notification.workflow_id == 2
        assert notification.rule_id == 7
        assert notification.status == "PENDING"
        assert executor.history == ["fetch_rule", "create_notification"]

    async def test_missing_rule_fails_to_fetch(self, executor):
        with pytest.raises(WorkflowError, match="Failed to fetch rule 404"):
            await RuleFireWorkflow(executor).run(RuleScheduledInput(rule_id=404, enterprise_id="ent-1"))

    @pytest.mark.parametrize("fields", [{"deactivated": True}, {"publish_status": "DRAFT"}])
    async def test_inactive_rule_skipped(self, executor, make_rule, notification_store, fields):
        make_rule(7, **fields)
        await RuleFireWorkflow(executor).run(RuleScheduledInput(rule_id=7, enterprise_id="ent-1"))
        assert await _notifications(notification_store) == []
        assert executor.history == ["fetch_rule"]

    async def test_no_recipients_rejected(self, executor, make_rule):
        make_rule(7, rule_payload={"subject": "hi"})
        with pytest.raises(ValidationError, match="No recipients"):
            await RuleFireWorkflow(executor).run(RuleScheduledInput(rule_id=7, enterprise_id="ent-1"))


class TestScheduleAction:
    async def test_trigger_runs_workflow(self, executor, make_rule, rule_store, notification_store):
        make_rule(3)
        service = InMemoryScheduleService(on_action=make_schedule_action(executor))
        sync = ScheduleSyncService(service, rule_store)
        handle = await sync.sync_rule(await rule_store.get_rule(3))

        await handle.trigger()
        [notification] = await _notifications(notification_store)
        assert notification.rule_id == 3

    async def test_unknown_workflow_type_ignored(
        self, executor, notification_store, make_rule, rule_store, t0
    ):
        make_rule(3)
        sync = ScheduleSyncService(InMemoryScheduleService(), rule_store)
        definition = sync.build_schedule(await rule_store.get_rule(3))
        definition.action.workflow_type = "somethingElse"

        await make_schedule_action(executor)(definition, t0)
        assert await _notifications(notification_store) == []
