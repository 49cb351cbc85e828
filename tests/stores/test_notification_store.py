"""Tests for SqlNotificationStore polling and status updates."""

from __future__ import annotations

from datetime import timedelta

from rulesync.core.models import NotificationDraft, NotificationStatus, utcnow


def _draft(**overrides) -> NotificationDraft:
    values = dict(
        name="Scheduled: daily",
        payload={"recipients": ["ops@example.com"]},
        recipients=["ops@example.com"],
        workflow_id=1,
        rule_id=1,
        enterprise_id="ent-1",
    )
    values.update(overrides)
    return NotificationDraft(**values)


class TestCreate:
    async def test_create_returns_id_and_persists(self, notification_store):
        notification_id = await notification_store.create_notification(_draft(business_id="biz-1"))
        stored = await notification_store.get_notification(notification_id)
        assert stored.status == NotificationStatus.PENDING.value
        assert stored.recipients == ["ops@example.com"]
        assert stored.business_id == "biz-1"
        assert stored.updated_at is not None


class TestPollNotifications:
    async def test_cursor_advances(self, notification_store):
        first = await notification_store.create_notification(_draft())
        second = await notification_store.create_notification(_draft())

        result = await notification_store.poll_notifications(10)
        assert [n.id for n in result.items] == [first, second]
        assert result.cursor == result.items[-1].updated_at
        assert notification_store.get_polling_state().is_initialized is True

        again = await notification_store.poll_notifications(10)
        assert again.items == []
        assert again.cursor == result.cursor

    async def test_batch_size(self, notification_store):
        for _ in range(3):
            await notification_store.create_notification(_draft())
        result = await notification_store.poll_notifications(2)
        assert len(result.items) == 2
        rest = await notification_store.poll_notifications(2)
        assert len(rest.items) == 1

    async def test_processed_excluded_unless_requested(self, notification_store):
        sent = await notification_store.create_notification(_draft())
        await notification_store.update_status(sent, NotificationStatus.SENT.value)

        assert (await notification_store.poll_notifications(10)).items == []

        await notification_store.reset_poll_timestamp()
        result = await notification_store.poll_notifications(10, include_processed=True)
        assert [n.id for n in result.items] == [sent]

    async def test_future_scheduled_excluded(self, notification_store):
        await notification_store.create_notification(
            _draft(scheduled_for=utcnow() + timedelta(hours=1))
        )
        assert (await notification_store.poll_notifications(10)).items == []

    async def test_enterprise_filter(self, notification_store):
        await notification_store.create_notification(_draft(enterprise_id="ent-1"))
        other = await notification_store.create_notification(_draft(enterprise_id="ent-2"))
        result = await notification_store.poll_notifications(10, enterprise_id="ent-2")
        assert [n.id for n in result.items] == [other]

    async def test_lookback_bounds_cold_poll(self, conn):
        from rulesync.stores.notifications import SqlNotificationStore

        store = SqlNotificationStore(conn, lookback=timedelta(hours=1))
        old = await store.create_notification(_draft())
        conn.execute(
            "UPDATE notifications SET updated_at = ? WHERE id = ?",
            ("2000-01-01T00:00:00.000000+00:00", old),
        )
        conn.commit()
        assert (await store.poll_notifications(10)).items == []


class TestSecondaryPolls:
    async def test_failed_poll_is_cursorless(self, notification_store):
        failed = await notification_store.create_notification(_draft())
        await notification_store.update_status(
            failed, NotificationStatus.FAILED.value, {"error": "smtp down"}
        )
        for _ in range(2):
            result = await notification_store.poll_failed_notifications(10)
            assert [n.id for n in result.items] == [failed]
        stored = await notification_store.get_notification(failed)
        assert stored.error_details == {"error": "smtp down"}

    async def test_scheduled_poll_returns_due_pending(self, notification_store):
        due = await notification_store.create_notification(
            _draft(scheduled_for=utcnow() - timedelta(minutes=1))
        )
        await notification_store.create_notification(
            _draft(scheduled_for=utcnow() + timedelta(hours=1))
        )
        await notification_store.create_notification(_draft())
        result = await notification_store.poll_scheduled_notifications(10)
        assert [n.id for n in result.items] == [due]


class TestStatus:
    async def test_sent_sets_processed_at(self, notification_store):
        notification_id = await notification_store.create_notification(_draft())
        await notification_store.update_status(notification_id, NotificationStatus.SENT.value)
        stored = await notification_store.get_notification(notification_id)
        assert stored.status == "SENT"
        assert stored.processed_at is not None

    async def test_reset_poll_timestamp(self, notification_store, t0):
        await notification_store.reset_poll_timestamp(t0)
        assert notification_store.get_polling_state().last_poll_timestamp == t0
        await notification_store.reset_poll_timestamp()
        assert notification_store.get_polling_state().is_initialized is False
