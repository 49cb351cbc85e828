"""Schedule and namespace service protocols.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULE SERVICE PROTOCOL                                                    │
│                                                                               │
│  The sync layer talks to the durable scheduler only through these shapes.    │
│  Backends translate their transport failures into ``ServiceError``           │
│  subclasses (NotFoundError, ConflictError, ...) before returning.            │
│                                                                               │
│   ScheduleSyncService ──create/get_handle/list──► ScheduleService            │
│                                                   ├── InMemoryScheduleService│
│                                                   └── TemporalScheduleService│
│                                                                               │
│   ScheduleHandle: update(mutator) describe() delete() pause() unpause()      │
│                   trigger() backfill(start, end)                              │
│                                                                               │
│   NamespaceProvisioner ──describe/register──► NamespaceService               │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from rulesync.core.models import ScheduleDefinition

# Receives the stored definition, returns the definition to store
ScheduleMutator = Callable[[ScheduleDefinition], ScheduleDefinition]


@dataclass
class ScheduleDescription:
    """Snapshot of a schedule as reported by the service."""

    schedule_id: str
    definition: ScheduleDefinition
    next_action_times: list[datetime] = field(default_factory=list)
    recent_action_times: list[datetime] = field(default_factory=list)
    num_actions: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "definition": self.definition.to_dict(),
            "next_action_times": [t.isoformat() for t in self.next_action_times],
            "recent_action_times": [t.isoformat() for t in self.recent_action_times],
            "num_actions": self.num_actions,
        }


@dataclass
class ScheduleListEntry:
    schedule_id: str
    memo: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ScheduleHandle(Protocol):
    """Operations on one schedule, addressed by id."""

    schedule_id: str

    async def update(self, mutator: ScheduleMutator) -> None:
        """Replace the stored definition with ``mutator(current)``.

        Raises:
            NotFoundError: no schedule with this id exists
        """
        ...

    async def describe(self) -> ScheduleDescription:
        ...

    async def delete(self) -> None:
        ...

    async def pause(self, note: str | None = None) -> None:
        ...

    async def unpause(self, note: str | None = None) -> None:
        ...

    async def trigger(self) -> None:
        """Run the schedule's action once, now."""
        ...

    async def backfill(self, start: datetime, end: datetime) -> None:
        """Run the action for every fire time in ``(start, end]``."""
        ...


@runtime_checkable
class ScheduleService(Protocol):
    """Durable schedule service.

    Implementations:
        - InMemoryScheduleService: in-process, croniter-driven (default)
        - TemporalScheduleService: Temporal schedules (requires [temporal] extra)
    """

    name: str

    async def create(self, definition: ScheduleDefinition) -> ScheduleHandle:
        """Create a schedule.

        Raises:
            ConflictError: a schedule with the same id already exists
        """
        ...

    def get_handle(self, schedule_id: str) -> ScheduleHandle:
        """Handle for an id; existence is checked by the handle's operations."""
        ...

    def list(self) -> AsyncIterator[ScheduleListEntry]:
        ...

    async def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Namespaces
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NamespaceRegistration:
    """Request to create a namespace."""

    name: str
    retention_seconds: int
    description: str
    is_global: bool = False


@dataclass(frozen=True)
class NamespaceInfo:
    name: str
    retention_seconds: int | None = None
    description: str = ""


@runtime_checkable
class NamespaceService(Protocol):
    async def describe(self, name: str) -> NamespaceInfo:
        """Raises NotFoundError for an unknown namespace."""
        ...

    async def register(self, registration: NamespaceRegistration) -> None:
        """Raises ConflictError when the namespace already exists."""
        ...
