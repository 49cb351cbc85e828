"""Activities and the executor that runs them with retries.

Workflows never touch a store directly. Every side effect is a named
activity resolved from an injectable ``ActivityExecutor`` and run under a
``RetryPolicy``; this keeps the workflow bodies free of I/O.

ARCHITECTURE
────────────
::

    ActivityExecutor
      ├── .register(name, func, policy=None)  ─ store activity
      ├── .execute(name, *args)               ─ run with retry
      ├── .has(name) / .list_activities()
      └── .history                            ─ executed names, in order

    build_activity_executor(rule_store, notification_store, dispatcher)
      fetch_rule                    ACTIVITY_RETRY_POLICY
      create_notification           NOTIFICATION_RETRY_POLICY
      poll_notifications            ACTIVITY_RETRY_POLICY
      poll_failed_notifications       "
      poll_scheduled_notifications    "
      update_notification_status      "
      dispatch_notification           "
      reset_polling_timestamp         "
      get_polling_state               "

Tags:
    activities, retry, executor, side-effects
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from rulesync.core.errors import NotFoundError, categorize_error, is_retryable
from rulesync.core.logging import get_logger
from rulesync.core.models import (
    Notification,
    NotificationDraft,
    PollingState,
    PollResult,
    Rule,
    parse_timestamp,
)
from rulesync.core.retry import (
    ACTIVITY_RETRY_POLICY,
    NOTIFICATION_RETRY_POLICY,
    RetryContext,
    RetryPolicy,
    Sleeper,
)
from rulesync.stores.protocol import NotificationStore, RuleStore

logger = get_logger(__name__)

FETCH_RULE = "fetch_rule"
CREATE_NOTIFICATION = "create_notification"
POLL_NOTIFICATIONS = "poll_notifications"
POLL_FAILED_NOTIFICATIONS = "poll_failed_notifications"
POLL_SCHEDULED_NOTIFICATIONS = "poll_scheduled_notifications"
UPDATE_NOTIFICATION_STATUS = "update_notification_status"
DISPATCH_NOTIFICATION = "dispatch_notification"
RESET_POLLING_TIMESTAMP = "reset_polling_timestamp"
GET_POLLING_STATE = "get_polling_state"

ActivityFunc = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class ActivityDefinition:
    name: str
    func: ActivityFunc
    policy: RetryPolicy
    description: str | None = None


class ActivityExecutor:
    """Injectable activity registry that runs activities with retries.

    Example:
        >>> executor = ActivityExecutor()
        >>> executor.register("fetch_rule", rule_activities.fetch_rule)
        >>> rule = await executor.execute("fetch_rule", 42, "ent-1")
    """

    def __init__(
        self,
        default_policy: RetryPolicy = ACTIVITY_RETRY_POLICY,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.default_policy = default_policy
        self._sleep = sleep
        self._activities: dict[str, ActivityDefinition] = {}
        self.history: list[str] = []

    def register(
        self,
        name: str,
        func: ActivityFunc,
        policy: RetryPolicy | None = None,
        description: str | None = None,
    ) -> None:
        self._activities[name] = ActivityDefinition(
            name=name,
            func=func,
            policy=policy or self.default_policy,
            description=description,
        )

    def has(self, name: str) -> bool:
        return name in self._activities

    def get(self, name: str) -> ActivityDefinition:
        if name not in self._activities:
            raise ValueError(
                f"No activity registered for {name}. Available: {self.list_activities() or 'none'}"
            )
        return self._activities[name]

    def list_activities(self) -> list[str]:
        return sorted(self._activities)

    async def execute(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Run an activity under its retry policy.

        Raises:
            The activity's last error once the policy refuses another attempt.
        """
        definition = self.get(name)
        self.history.append(name)

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "activity_retry",
                activity=name,
                attempt=attempt,
                delay_seconds=delay,
                error=str(error),
            )

        ctx = RetryContext(definition.policy, on_retry=_on_retry, sleep=self._sleep)
        try:
            return await ctx.run_async(definition.func, *args, **kwargs)
        except Exception as e:
            logger.error(
                "activity_failed",
                activity=name,
                attempts=ctx.attempt,
                elapsed_seconds=round(ctx.elapsed_seconds, 3),
                category=categorize_error(e).value,
                retryable=is_retryable(e),
                error=str(e),
            )
            raise


# ---------------------------------------------------------------------------
# Activity implementations
# ---------------------------------------------------------------------------


class NotificationDispatcher(Protocol):
    """Hands a notification to the delivery framework."""

    async def dispatch(self, notification: Notification) -> None:
        ...


class LoggingDispatcher:
    """Dispatcher that records the hand-off in the log only."""

    async def dispatch(self, notification: Notification) -> None:
        logger.info(
            "notification_dispatched",
            notification_id=notification.id,
            rule_id=notification.rule_id,
            recipients=len(notification.recipients),
        )


class RuleActivities:
    def __init__(self, rule_store: RuleStore, notification_store: NotificationStore) -> None:
        self.rule_store = rule_store
        self.notification_store = notification_store

    async def fetch_rule(self, rule_id: int, enterprise_id: str | None) -> Rule:
        rule = await self.rule_store.get_rule(rule_id, enterprise_id)
        if rule is None:
            raise NotFoundError(f"Rule not found: {rule_id}").with_context(
                rule_id=rule_id, enterprise_id=enterprise_id
            )
        return rule

    async def create_notification(self, draft: NotificationDraft) -> int:
        return await self.notification_store.create_notification(draft)


class NotificationActivities:
    def __init__(
        self,
        notification_store: NotificationStore,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        self.store = notification_store
        self.dispatcher = dispatcher or LoggingDispatcher()

    async def poll_notifications(
        self,
        batch_size: int,
        include_processed: bool = False,
        enterprise_id: str | None = None,
    ) -> PollResult:
        return await self.store.poll_notifications(batch_size, include_processed, enterprise_id)

    async def poll_failed_notifications(
        self, batch_size: int, enterprise_id: str | None = None
    ) -> PollResult:
        return await self.store.poll_failed_notifications(batch_size, enterprise_id)

    async def poll_scheduled_notifications(
        self, batch_size: int, enterprise_id: str | None = None
    ) -> PollResult:
        return await self.store.poll_scheduled_notifications(batch_size, enterprise_id)

    async def update_notification_status(
        self,
        notification_id: int,
        status: str,
        error_details: dict[str, Any] | None = None,
    ) -> None:
        await self.store.update_status(notification_id, status, error_details)

    async def dispatch_notification(self, notification: Notification) -> None:
        await self.dispatcher.dispatch(notification)

    async def reset_polling_timestamp(self, value: datetime | str | None = None) -> None:
        await self.store.reset_poll_timestamp(parse_timestamp(value))

    async def get_polling_state(self) -> PollingState:
        return self.store.get_polling_state()


def build_activity_executor(
    rule_store: RuleStore,
    notification_store: NotificationStore,
    dispatcher: NotificationDispatcher | None = None,
    sleep: Sleeper = asyncio.sleep,
) -> ActivityExecutor:
    """Executor with every rule and notification activity registered."""
    executor = ActivityExecutor(sleep=sleep)
    rules = RuleActivities(rule_store, notification_store)
    notifications = NotificationActivities(notification_store, dispatcher)

    executor.register(FETCH_RULE, rules.fetch_rule, description="Load a rule by id")
    executor.register(
        CREATE_NOTIFICATION,
        rules.create_notification,
        policy=NOTIFICATION_RETRY_POLICY,
        description="Persist a notification for a fired rule",
    )
    executor.register(POLL_NOTIFICATIONS, notifications.poll_notifications)
    executor.register(POLL_FAILED_NOTIFICATIONS, notifications.poll_failed_notifications)
    executor.register(POLL_SCHEDULED_NOTIFICATIONS, notifications.poll_scheduled_notifications)
    executor.register(UPDATE_NOTIFICATION_STATUS, notifications.update_notification_status)
    executor.register(DISPATCH_NOTIFICATION, notifications.dispatch_notification)
    executor.register(RESET_POLLING_TIMESTAMP, notifications.reset_polling_timestamp)
    executor.register(GET_POLLING_STATE, notifications.get_polling_state)
    return executor
