"""Rule and notification persistence."""

from rulesync.stores.base import apply_schema, connect, format_timestamp
from rulesync.stores.notifications import SqlNotificationStore
from rulesync.stores.protocol import NotificationStore, RuleStore
from rulesync.stores.rules import SqlRuleStore

__all__ = [
    "NotificationStore",
    "RuleStore",
    "SqlNotificationStore",
    "SqlRuleStore",
    "apply_schema",
    "connect",
    "format_timestamp",
]
