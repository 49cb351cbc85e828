"""SQL-backed rule store.

Incremental reads filter on ``trigger_type`` only, so a rule moving from
PUBLISH to DRAFT still reaches the polling loop, which pauses its schedule.
Full listings return published CRON rules. Deactivated rules are returned
everywhere: deactivation pauses a schedule, it does not remove it.

Example:
    >>> store = SqlRuleStore(connect(":memory:"))
    >>> store.save_rule(Rule(id=1, name="daily", enterprise_id="ent-1",
    ...                      trigger_config={"cron": "0 9 * * *"}))
    >>> await store.get_rules_updated_after(datetime(2024, 1, 1, tzinfo=UTC), 10)
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from rulesync.core.logging import get_logger
from rulesync.core.models import PublishStatus, Rule, TriggerType, parse_timestamp, utcnow
from rulesync.stores.base import SqlStore, format_timestamp

logger = get_logger(__name__)

_CRON = "trigger_type = ?"
_ELIGIBLE = "trigger_type = ? AND publish_status = ?"
_ELIGIBLE_PARAMS = (TriggerType.CRON.value, PublishStatus.PUBLISH.value)


class SqlRuleStore(SqlStore):
    """Rule store over the ``notification_rules`` table."""

    def _scoped(self, where: str, params: list[Any], enterprise_id: str | None) -> str:
        if enterprise_id:
            params.append(enterprise_id)
            return f"{where} AND enterprise_id = ?"
        return where

    async def get_rules_updated_after(
        self,
        since: datetime,
        limit: int,
        enterprise_id: str | None = None,
    ) -> list[Rule]:
        params: list[Any] = [TriggerType.CRON.value, format_timestamp(since)]
        where = self._scoped(f"{_CRON} AND updated_at > ?", params, enterprise_id)
        params.append(limit)
        rows = self._query(
            f"SELECT * FROM notification_rules WHERE {where} "
            "ORDER BY updated_at ASC, id ASC LIMIT ?",
            params,
        )
        return [Rule.from_row(row) for row in rows]

    async def get_last_rule_update_time(
        self, enterprise_id: str | None = None
    ) -> datetime | None:
        params: list[Any] = [TriggerType.CRON.value]
        where = self._scoped(_CRON, params, enterprise_id)
        rows = self._query(
            f"SELECT MAX(updated_at) AS last_update FROM notification_rules WHERE {where}",
            params,
        )
        return parse_timestamp(rows[0]["last_update"]) if rows else None

    async def list_published_rules(self, enterprise_id: str | None = None) -> list[Rule]:
        params: list[Any] = [*_ELIGIBLE_PARAMS]
        where = self._scoped(_ELIGIBLE, params, enterprise_id)
        rows = self._query(
            f"SELECT * FROM notification_rules WHERE {where} ORDER BY id",
            params,
        )
        return [Rule.from_row(row) for row in rows]

    async def get_rule(self, rule_id: int, enterprise_id: str | None = None) -> Rule | None:
        params: list[Any] = [rule_id]
        where = self._scoped("id = ?", params, enterprise_id)
        rows = self._query(f"SELECT * FROM notification_rules WHERE {where}", params)
        return Rule.from_row(rows[0]) if rows else None

    # === Writes (seeding, admin tooling) ===

    def save_rule(self, rule: Rule) -> Rule:
        """Insert or replace a rule; stamps ``updated_at`` when unset."""
        now = utcnow()
        if rule.updated_at is None:
            rule.updated_at = now
        self._execute(
            """
            INSERT INTO notification_rules (
                id, name, description, enterprise_id, business_id, workflow_id,
                trigger_type, trigger_config, rule_payload, publish_status,
                deactivated, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                enterprise_id = excluded.enterprise_id,
                business_id = excluded.business_id,
                workflow_id = excluded.workflow_id,
                trigger_type = excluded.trigger_type,
                trigger_config = excluded.trigger_config,
                rule_payload = excluded.rule_payload,
                publish_status = excluded.publish_status,
                deactivated = excluded.deactivated,
                updated_at = excluded.updated_at
            """,
            (
                rule.id,
                rule.name,
                rule.description,
                rule.enterprise_id,
                rule.business_id,
                rule.workflow_id,
                rule.trigger_type,
                json.dumps(rule.trigger_config) if rule.trigger_config is not None else None,
                json.dumps(rule.rule_payload) if rule.rule_payload is not None else None,
                rule.publish_status,
                1 if rule.deactivated else 0,
                format_timestamp(now),
                format_timestamp(rule.updated_at),
            ),
        )
        logger.debug("rule_saved", rule_id=rule.id, enterprise_id=rule.enterprise_id)
        return rule

    def delete_rule(self, rule_id: int) -> bool:
        cursor = self._execute("DELETE FROM notification_rules WHERE id = ?", (rule_id,))
        return cursor.rowcount > 0
