"""SQL-backed notification store with an outbox-style poll cursor.

Each store instance keeps one cursor (``last_poll_timestamp``). The primary
poll returns rows with ``updated_at`` past the cursor and advances the cursor
to the newest row it returned; an uninitialized cursor looks back
``lookback`` (24h by default). Failed and scheduled polls are cursorless.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

from rulesync.core.logging import get_logger
from rulesync.core.models import (
    Notification,
    NotificationDraft,
    NotificationStatus,
    PollingState,
    PollResult,
    utcnow,
)
from rulesync.stores.base import SqlStore, format_timestamp

logger = get_logger(__name__)


class SqlNotificationStore(SqlStore):
    """Notification store over the ``notifications`` table."""

    def __init__(self, conn: Any, lookback: timedelta = timedelta(hours=24)) -> None:
        super().__init__(conn)
        self.lookback = lookback
        self._last_poll_timestamp: datetime | None = None

    async def create_notification(self, draft: NotificationDraft) -> int:
        now = format_timestamp(utcnow())
        cursor = self._execute(
            """
            INSERT INTO notifications (
                name, description, payload, recipients, workflow_id, rule_id,
                enterprise_id, business_id, status, scheduled_for,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                draft.name,
                draft.description,
                json.dumps(draft.payload or {}),
                json.dumps(draft.recipients or []),
                draft.workflow_id,
                draft.rule_id,
                draft.enterprise_id,
                draft.business_id,
                draft.status,
                format_timestamp(draft.scheduled_for) if draft.scheduled_for else None,
                now,
                now,
            ),
        )
        notification_id = int(cursor.lastrowid)
        logger.info("notification_created", notification_id=notification_id, rule_id=draft.rule_id)
        return notification_id

    async def poll_notifications(
        self,
        batch_size: int,
        include_processed: bool = False,
        enterprise_id: str | None = None,
    ) -> PollResult:
        now = utcnow()
        since = self._last_poll_timestamp or (now - self.lookback)
        where = ["updated_at > ?", "(scheduled_for IS NULL OR scheduled_for <= ?)"]
        params: list[Any] = [format_timestamp(since), format_timestamp(now)]
        if not include_processed:
            where.append("status IN (?, ?)")
            params.extend([NotificationStatus.PENDING.value, NotificationStatus.FAILED.value])
        if enterprise_id:
            where.append("enterprise_id = ?")
            params.append(enterprise_id)
        params.append(batch_size)

        rows = self._query(
            f"SELECT * FROM notifications WHERE {' AND '.join(where)} "
            "ORDER BY updated_at ASC, id ASC LIMIT ?",
            params,
        )
        items = [Notification.from_row(row) for row in rows]
        if items:
            self._last_poll_timestamp = items[-1].updated_at
            logger.info(
                "notifications_polled",
                count=len(items),
                last_timestamp=self._last_poll_timestamp.isoformat(),
            )
        return PollResult(items=items, cursor=self._last_poll_timestamp)

    async def poll_failed_notifications(
        self, batch_size: int, enterprise_id: str | None = None
    ) -> PollResult:
        params: list[Any] = [NotificationStatus.FAILED.value]
        where = "status = ?"
        if enterprise_id:
            where += " AND enterprise_id = ?"
            params.append(enterprise_id)
        params.append(batch_size)
        rows = self._query(
            f"SELECT * FROM notifications WHERE {where} ORDER BY updated_at ASC LIMIT ?",
            params,
        )
        logger.debug("failed_notifications_polled", count=len(rows))
        return PollResult(items=[Notification.from_row(row) for row in rows])

    async def poll_scheduled_notifications(
        self, batch_size: int, enterprise_id: str | None = None
    ) -> PollResult:
        params: list[Any] = [NotificationStatus.PENDING.value, format_timestamp(utcnow())]
        where = "status = ? AND scheduled_for IS NOT NULL AND scheduled_for <= ?"
        if enterprise_id:
            where += " AND enterprise_id = ?"
            params.append(enterprise_id)
        params.append(batch_size)
        rows = self._query(
            f"SELECT * FROM notifications WHERE {where} ORDER BY scheduled_for ASC LIMIT ?",
            params,
        )
        logger.debug("scheduled_notifications_polled", count=len(rows))
        return PollResult(items=[Notification.from_row(row) for row in rows])

    async def update_status(
        self,
        notification_id: int,
        status: str,
        error_details: dict[str, Any] | None = None,
    ) -> None:
        now = format_timestamp(utcnow())
        sets = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status, now]
        if status == NotificationStatus.SENT.value:
            sets.append("processed_at = ?")
            params.append(now)
        if status == NotificationStatus.FAILED.value and error_details:
            sets.append("error_details = ?")
            params.append(json.dumps(error_details))
        params.append(notification_id)
        self._execute(f"UPDATE notifications SET {', '.join(sets)} WHERE id = ?", params)
        logger.info("notification_status_updated", notification_id=notification_id, status=status)

    async def get_notification(self, notification_id: int) -> Notification | None:
        rows = self._query("SELECT * FROM notifications WHERE id = ?", (notification_id,))
        return Notification.from_row(rows[0]) if rows else None

    async def reset_poll_timestamp(self, value: datetime | None = None) -> None:
        self._last_poll_timestamp = value
        logger.info(
            "poll_timestamp_reset",
            timestamp=value.isoformat() if value else None,
        )

    def get_polling_state(self) -> PollingState:
        return PollingState(last_poll_timestamp=self._last_poll_timestamp)
