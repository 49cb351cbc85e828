"""Schedule synchronization for notification rules.

Quick start::

    from rulesync.scheduling import (
        InMemoryScheduleService,
        RulePollingLoop,
        ScheduleSyncService,
    )

    sync = ScheduleSyncService(InMemoryScheduleService(), rule_store)
    loop = RulePollingLoop(sync, rule_store)
    await loop.start()

The Temporal backend (``TemporalScheduleService``,
``TemporalNamespaceService``) needs the ``temporal`` extra and is imported on
first access.
"""

from .memory import InMemoryNamespaceService, InMemoryScheduleService
from .namespace import NamespaceProvisioner, registration_for
from .polling import CycleResult, PollingConfig, PollingLoopHealth, RulePollingLoop
from .protocol import (
    NamespaceInfo,
    NamespaceRegistration,
    NamespaceService,
    ScheduleDescription,
    ScheduleHandle,
    ScheduleListEntry,
    ScheduleService,
)
from .sync import (
    ReconcileStats,
    ScheduleSyncService,
    SyncStats,
    parse_schedule_id,
    schedule_id_for,
)


def __getattr__(name: str):  # noqa: N807
    """Lazy import the Temporal backend so the extra stays optional."""
    if name == "TemporalScheduleService":
        from .temporal_backend import TemporalScheduleService

        return TemporalScheduleService
    if name == "TemporalNamespaceService":
        from .temporal_backend import TemporalNamespaceService

        return TemporalNamespaceService
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    # Protocol
    "ScheduleService",
    "ScheduleHandle",
    "ScheduleDescription",
    "ScheduleListEntry",
    "NamespaceService",
    "NamespaceRegistration",
    "NamespaceInfo",
    # Backends
    "InMemoryScheduleService",
    "InMemoryNamespaceService",
    "TemporalScheduleService",
    "TemporalNamespaceService",
    # Sync
    "ScheduleSyncService",
    "SyncStats",
    "ReconcileStats",
    "schedule_id_for",
    "parse_schedule_id",
    # Polling
    "RulePollingLoop",
    "PollingConfig",
    "PollingLoopHealth",
    "CycleResult",
    # Namespaces
    "NamespaceProvisioner",
    "registration_for",
]
