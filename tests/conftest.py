"""
Shared pytest fixtures for rulesync tests.

This module provides:
- An in-memory SQLite connection with the rule/notification schema
- SQL stores and in-memory schedule/namespace services over it
- A ``make_rule`` factory that persists rules with controlled timestamps
- An activity executor whose retry sleeps are recorded, not awaited
"""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from rulesync.core.models import Rule
from rulesync.scheduling.memory import InMemoryNamespaceService, InMemoryScheduleService
from rulesync.scheduling.sync import ScheduleSyncService
from rulesync.stores.base import connect
from rulesync.stores.notifications import SqlNotificationStore
from rulesync.stores.rules import SqlRuleStore
from rulesync.workflows.activities import ActivityExecutor, build_activity_executor

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def conn() -> Generator[Any, None, None]:
    connection = connect(":memory:")
    yield connection
    connection.close()


@pytest.fixture
def rule_store(conn) -> SqlRuleStore:
    return SqlRuleStore(conn)


@pytest.fixture
def notification_store(conn) -> SqlNotificationStore:
    return SqlNotificationStore(conn)


@pytest.fixture
def schedule_service() -> InMemoryScheduleService:
    return InMemoryScheduleService()


@pytest.fixture
def namespace_service() -> InMemoryNamespaceService:
    return InMemoryNamespaceService()


@pytest.fixture
def sync_service(schedule_service, rule_store) -> ScheduleSyncService:
    return ScheduleSyncService(schedule_service, rule_store, task_queue="notifications")


@pytest.fixture
def make_rule(rule_store) -> Callable[..., Rule]:
    """Persist a rule; ``minutes`` offsets ``updated_at`` from ``T0``."""

    def _make(
        rule_id: int,
        *,
        enterprise_id: str | None = "ent-1",
        cron: str | None = "0 9 * * *",
        minutes: int = 0,
        **fields: Any,
    ) -> Rule:
        fields.setdefault("trigger_config", {"cron": cron} if cron is not None else None)
        fields.setdefault("rule_payload", {"recipients": ["ops@example.com"]})
        rule = Rule(
            id=rule_id,
            name=fields.pop("name", f"rule {rule_id}"),
            enterprise_id=enterprise_id,
            updated_at=T0 + timedelta(minutes=minutes),
            **fields,
        )
        return rule_store.save_rule(rule)

    return _make


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps) -> Callable[[float], Any]:
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def executor(rule_store, notification_store, fake_sleep) -> ActivityExecutor:
    return build_activity_executor(rule_store, notification_store, sleep=fake_sleep)


@pytest.fixture
def t0() -> datetime:
    return T0
