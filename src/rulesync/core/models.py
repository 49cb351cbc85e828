"""Domain models for rules, schedules and notifications.

Rows coming from the stores are converted with ``from_row`` so JSON columns
and ISO timestamps are decoded in one place. ``Rule.trigger_config`` stays a
raw mapping: a malformed trigger must still load so the sync layer can reject
it by rule id.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class TriggerType(str, Enum):
    CRON = "CRON"
    EVENT = "EVENT"


class PublishStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISH = "PUBLISH"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Decode a store timestamp into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _decode_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value) if value else None
    return value


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass
class Rule:
    """Notification rule row."""

    id: int
    name: str
    enterprise_id: str | None
    workflow_id: int | None = None
    trigger_type: str = TriggerType.CRON.value
    trigger_config: Mapping[str, Any] | None = None
    rule_payload: dict[str, Any] | None = None
    publish_status: str = PublishStatus.PUBLISH.value
    deactivated: bool = False
    business_id: str | None = None
    description: str | None = None
    updated_at: datetime | None = None

    @property
    def is_published(self) -> bool:
        return self.publish_status == PublishStatus.PUBLISH.value

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Rule:
        return cls(
            id=int(row["id"]),
            name=row["name"],
            enterprise_id=row.get("enterprise_id"),
            workflow_id=row.get("workflow_id"),
            trigger_type=row.get("trigger_type") or TriggerType.CRON.value,
            trigger_config=_decode_json(row.get("trigger_config")),
            rule_payload=_decode_json(row.get("rule_payload")),
            publish_status=row.get("publish_status") or PublishStatus.PUBLISH.value,
            deactivated=bool(row.get("deactivated")),
            business_id=row.get("business_id"),
            description=row.get("description"),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


@dataclass(frozen=True)
class CronTrigger:
    """Validated ``trigger_config`` of a CRON rule."""

    cron: str
    timezone: str = "UTC"
    enabled: bool = True


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


RULE_SCHEDULED_WORKFLOW = "ruleScheduledWorkflow"


@dataclass
class ScheduleSpec:
    cron_expressions: list[str]
    timezone: str = "UTC"


@dataclass
class StartWorkflowAction:
    workflow_type: str
    task_queue: str
    args: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ScheduleState:
    paused: bool = False
    note: str = ""


@dataclass
class ScheduleDefinition:
    """Everything the schedule service stores for one rule."""

    schedule_id: str
    spec: ScheduleSpec
    action: StartWorkflowAction
    memo: dict[str, Any] = field(default_factory=dict)
    state: ScheduleState = field(default_factory=ScheduleState)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RuleScheduledInput:
    """Argument carried by a schedule's start-workflow action."""

    rule_id: int
    enterprise_id: str | None
    business_id: str | None = None
    workflow_id: int | None = None
    rule_payload: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        """Wire form stored in ``StartWorkflowAction.args``."""
        return {
            "ruleId": self.rule_id,
            "enterpriseId": self.enterprise_id,
            "businessId": self.business_id,
            "workflowId": self.workflow_id,
            "rulePayload": self.rule_payload,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> RuleScheduledInput:
        return cls(
            rule_id=int(payload["ruleId"]),
            enterprise_id=payload.get("enterpriseId"),
            business_id=payload.get("businessId"),
            workflow_id=payload.get("workflowId"),
            rule_payload=payload.get("rulePayload"),
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@dataclass
class NotificationDraft:
    """A notification about to be inserted."""

    name: str
    payload: dict[str, Any]
    recipients: list[Any]
    workflow_id: int | None
    rule_id: int | None
    enterprise_id: str | None
    business_id: str | None = None
    description: str | None = None
    status: str = NotificationStatus.PENDING.value
    scheduled_for: datetime | None = None


@dataclass
class Notification:
    """Notification row as seen by the polling activities."""

    id: int
    name: str
    status: str
    payload: dict[str, Any] = field(default_factory=dict)
    recipients: list[Any] = field(default_factory=list)
    workflow_id: int | None = None
    rule_id: int | None = None
    enterprise_id: str | None = None
    business_id: str | None = None
    description: str | None = None
    scheduled_for: datetime | None = None
    error_details: dict[str, Any] | None = None
    processed_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Notification:
        return cls(
            id=int(row["id"]),
            name=row["name"],
            status=row["status"],
            payload=_decode_json(row.get("payload")) or {},
            recipients=_decode_json(row.get("recipients")) or [],
            workflow_id=row.get("workflow_id"),
            rule_id=row.get("rule_id"),
            enterprise_id=row.get("enterprise_id"),
            business_id=row.get("business_id"),
            description=row.get("description"),
            scheduled_for=parse_timestamp(row.get("scheduled_for")),
            error_details=_decode_json(row.get("error_details")),
            processed_at=parse_timestamp(row.get("processed_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )


@dataclass
class PollResult:
    """Items returned by one poll plus the store cursor after the poll."""

    items: list[Notification]
    cursor: datetime | None = None


@dataclass(frozen=True)
class PollingState:
    last_poll_timestamp: datetime | None = None

    @property
    def is_initialized(self) -> bool:
        return self.last_poll_timestamp is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_poll_timestamp": (
                self.last_poll_timestamp.isoformat() if self.last_poll_timestamp else None
            ),
            "is_initialized": self.is_initialized,
        }
