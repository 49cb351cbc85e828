"""Store protocols consumed by the sync layer and the workflows.

Any object with these async methods can stand in for the SQL stores,
which is how tests substitute fakes for the rule source.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from rulesync.core.models import NotificationDraft, PollingState, PollResult, Rule


@runtime_checkable
class RuleStore(Protocol):
    """Read access to notification rules."""

    async def get_rules_updated_after(
        self,
        since: datetime,
        limit: int,
        enterprise_id: str | None = None,
    ) -> list[Rule]:
        """Rules with ``updated_at > since``, oldest first, at most ``limit``."""
        ...

    async def get_last_rule_update_time(
        self, enterprise_id: str | None = None
    ) -> datetime | None:
        """Newest ``updated_at`` in the store, or None when it holds no rules."""
        ...

    async def list_published_rules(self, enterprise_id: str | None = None) -> list[Rule]:
        """Published CRON rules, deactivated ones included."""
        ...

    async def get_rule(self, rule_id: int, enterprise_id: str | None = None) -> Rule | None:
        ...

    def close(self) -> None:
        ...


@runtime_checkable
class NotificationStore(Protocol):
    """Persistence for notifications created by fired rules."""

    async def create_notification(self, draft: NotificationDraft) -> int:
        ...

    async def poll_notifications(
        self,
        batch_size: int,
        include_processed: bool = False,
        enterprise_id: str | None = None,
    ) -> PollResult:
        ...

    async def poll_failed_notifications(
        self, batch_size: int, enterprise_id: str | None = None
    ) -> PollResult:
        ...

    async def poll_scheduled_notifications(
        self, batch_size: int, enterprise_id: str | None = None
    ) -> PollResult:
        ...

    async def update_status(
        self,
        notification_id: int,
        status: str,
        error_details: dict[str, Any] | None = None,
    ) -> None:
        ...

    async def reset_poll_timestamp(self, value: datetime | None = None) -> None:
        ...

    def get_polling_state(self) -> PollingState:
        ...

    def close(self) -> None:
        ...
