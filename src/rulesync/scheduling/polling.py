"""Incremental rule polling loop.

┌──────────────────────────────────────────────────────────────────────────────┐
│  RULE POLLING LOOP                                                            │
│                                                                               │
│   start()                                                                     │
│     ├── sync_all_rules()        best effort; success sets cursor = now        │
│     └── task: [initial delay] → cycle → wait interval → cycle → ...           │
│                                                                               │
│   cycle (poll_once)                                                           │
│     1. cursor unset → last rule update time, else now - lookback              │
│     2. rules with updated_at > cursor (batch_size, oldest first)              │
│     3. sync batch + tracked failures concurrently (gather)                    │
│     4. cursor = max(cursor, max updated_at of batch)                          │
│                                                                               │
│   stop()   set stop event → bounded wait for in-flight cycle → close sync    │
└──────────────────────────────────────────────────────────────────────────────┘

The cursor advances past a batch even when some of its rules fail. Failed
rules are tracked by id and re-synced on the following cycles, up to
``max_rule_retries`` times; after that they are left to reconciliation.
Each retry re-reads the rule, so a rule deleted in the meantime has its
schedule removed instead of recreated.
Validation failures are not tracked: the rule only becomes syncable again
once it is edited, which moves it past the cursor anyway.

Cycles run sequentially on one task and never overlap. A direct
``poll_once()`` call made while a cycle is in progress is skipped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from rulesync.core.errors import ValidationError
from rulesync.core.logging import LogContext, get_logger
from rulesync.core.models import Rule, TriggerType, utcnow
from rulesync.scheduling.sync import ReconcileStats, ScheduleSyncService
from rulesync.stores.protocol import RuleStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class PollingConfig:
    poll_interval_seconds: float = 30.0
    batch_size: int = 100
    enterprise_id: str | None = None
    initial_delay_seconds: float = 5.0
    cursor_lookback: timedelta = timedelta(hours=24)
    max_rule_retries: int = 3
    shutdown_timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: Any) -> PollingConfig:
        return cls(
            poll_interval_seconds=settings.poll_interval_seconds,
            batch_size=settings.batch_size,
            enterprise_id=settings.enterprise_id,
            initial_delay_seconds=settings.initial_delay_seconds,
            cursor_lookback=timedelta(hours=settings.cursor_lookback_hours),
            max_rule_retries=settings.max_rule_retries,
            shutdown_timeout_seconds=settings.shutdown_timeout_seconds,
        )


@dataclass
class CycleResult:
    """Outcome of one polling cycle."""

    fetched: int = 0
    synced: int = 0
    failed: int = 0
    retried: int = 0
    cursor: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetched": self.fetched,
            "synced": self.synced,
            "failed": self.failed,
            "retried": self.retried,
            "cursor": self.cursor.isoformat() if self.cursor else None,
        }


@dataclass
class PollingLoopHealth:
    running: bool
    cursor: datetime | None = None
    cycles: int = 0
    last_cycle_at: datetime | None = None
    rules_synced: int = 0
    rules_failed: int = 0
    pending_retries: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "cursor": self.cursor.isoformat() if self.cursor else None,
            "cycles": self.cycles,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "rules_synced": self.rules_synced,
            "rules_failed": self.rules_failed,
            "pending_retries": self.pending_retries,
            "last_error": self.last_error,
        }


@dataclass
class _TrackedFailure:
    rule: Rule
    retries: int = 0
    errors: list[str] = field(default_factory=list)


class RulePollingLoop:
    """Polls the rule store for changes and syncs them to schedules.

    Example:
        >>> loop = RulePollingLoop(sync_service, rule_store, PollingConfig(initial_delay_seconds=0))
        >>> await loop.start()
        >>> ...
        >>> await loop.stop()
    """

    def __init__(
        self,
        sync_service: ScheduleSyncService,
        rule_store: RuleStore,
        config: PollingConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sync_service = sync_service
        self.rule_store = rule_store
        self.config = config or PollingConfig()
        self._clock = clock

        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._in_cycle = False

        self._cursor: datetime | None = None
        self._failures: dict[int, _TrackedFailure] = {}

        self._cycles = 0
        self._last_cycle_at: datetime | None = None
        self._rules_synced = 0
        self._rules_failed = 0
        self._last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cursor(self) -> datetime | None:
        return self._cursor

    @property
    def pending_retries(self) -> list[int]:
        return sorted(self._failures)

    # === Lifecycle ===

    async def start(self) -> None:
        """Run the initial full sync and arm the recurring cycle."""
        if self._running:
            logger.warning("polling_loop_already_running")
            return

        logger.info(
            "polling_loop_starting",
            interval_seconds=self.config.poll_interval_seconds,
            batch_size=self.config.batch_size,
            enterprise_id=self.config.enterprise_id,
        )
        self._running = True
        self._stop_event.clear()

        try:
            stats = await self.sync_service.sync_all_rules(self.config.enterprise_id)
            self._cursor = self._clock()
            logger.info("initial_sync_completed", cursor=self._cursor.isoformat(), **stats.to_dict())
        except Exception as e:
            self._last_error = str(e)
            logger.error(
                "initial_sync_failed",
                error=str(e),
                enterprise_id=self.config.enterprise_id,
            )

        self._task = asyncio.create_task(self._run(), name="rulesync-polling-loop")

    async def stop(self) -> None:
        """Stop after the in-flight cycle (bounded wait) and close the sync service."""
        if not self._running:
            return

        logger.info("polling_loop_stopping")
        self._running = False
        self._stop_event.set()

        if self._task is not None:
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._task),
                    timeout=self.config.shutdown_timeout_seconds,
                )
            except TimeoutError:
                logger.warning(
                    "polling_loop_stop_timed_out",
                    timeout_seconds=self.config.shutdown_timeout_seconds,
                )
            self._task = None

        await self.sync_service.close()
        logger.info("polling_loop_stopped", cycles=self._cycles)

    async def _wait(self, seconds: float) -> bool:
        """Sleep unless stopped first; True when the stop event fired."""
        if seconds <= 0:
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    async def _run(self) -> None:
        if await self._wait(self.config.initial_delay_seconds):
            return
        while not self._stop_event.is_set():
            await self.poll_once()
            if await self._wait(self.config.poll_interval_seconds):
                return

    # === Cycle ===

    async def _derive_cursor(self) -> datetime:
        last_update = await self.rule_store.get_last_rule_update_time(self.config.enterprise_id)
        cursor = last_update or (self._clock() - self.config.cursor_lookback)
        logger.info(
            "cursor_derived",
            cursor=cursor.isoformat(),
            from_store=last_update is not None,
        )
        return cursor

    async def _sync_one(self, rule: Rule) -> BaseException | None:
        try:
            await self.sync_service.sync_rule(rule)
        except Exception as e:
            logger.error("rule_sync_failed", rule_id=rule.id, error=str(e))
            return e
        logger.info("rule_synced", rule_id=rule.id, rule_name=rule.name)
        return None

    async def _reload_tracked(self, rule: Rule) -> Rule | None:
        """Current row of a tracked rule, or None once it no longer needs a schedule.

        A tracked rule that was deleted or stopped being a CRON rule is dropped
        and its schedule removed.
        """
        current = await self.rule_store.get_rule(rule.id, rule.enterprise_id)
        if current is not None and current.trigger_type == TriggerType.CRON.value:
            return current

        del self._failures[rule.id]
        logger.info("tracked_rule_gone", rule_id=rule.id, deleted=current is None)
        try:
            await self.sync_service.delete_schedule(rule)
        except Exception as e:
            logger.error("tracked_rule_schedule_delete_failed", rule_id=rule.id, error=str(e))
        return None

    def _record_outcome(self, rule: Rule, error: BaseException | None) -> None:
        tracked = self._failures.get(rule.id)
        if error is None:
            if tracked is not None:
                logger.info("rule_retry_succeeded", rule_id=rule.id, retries=tracked.retries)
                del self._failures[rule.id]
            return

        if isinstance(error, ValidationError):
            self._failures.pop(rule.id, None)
            return

        if tracked is None:
            tracked = _TrackedFailure(rule=rule)
            self._failures[rule.id] = tracked
        else:
            tracked.rule = rule
            tracked.retries += 1
        tracked.errors.append(str(error))

        if tracked.retries >= self.config.max_rule_retries:
            del self._failures[rule.id]
            logger.error(
                "rule_retries_exhausted",
                rule_id=rule.id,
                retries=tracked.retries,
                last_error=str(error),
            )

    async def poll_once(self) -> CycleResult | None:
        """Run one cycle. Errors are logged, never raised.

        Returns:
            The cycle result, or None if the cycle failed or another cycle
            was already in progress.
        """
        if self._in_cycle:
            logger.warning("polling_cycle_skipped", reason="cycle_in_progress")
            return None

        self._in_cycle = True
        self._cycles += 1
        try:
            with LogContext(cycle=self._cycles):
                return await self._cycle()
        except Exception as e:
            self._last_error = str(e)
            logger.error("polling_cycle_failed", error=str(e))
            return None
        finally:
            self._last_cycle_at = self._clock()
            self._in_cycle = False

    async def _cycle(self) -> CycleResult:
        if self._cursor is None:
            self._cursor = await self._derive_cursor()

        rules = await self.rule_store.get_rules_updated_after(
            self._cursor,
            self.config.batch_size,
            self.config.enterprise_id,
        )

        batch_ids = {rule.id for rule in rules}
        retries = []
        for rule_id, tracked in list(self._failures.items()):
            if rule_id in batch_ids:
                continue
            current = await self._reload_tracked(tracked.rule)
            if current is not None:
                retries.append(current)
        to_sync = [*rules, *retries]

        result = CycleResult(fetched=len(rules), retried=len(retries), cursor=self._cursor)
        if not to_sync:
            self._last_error = None
            return result

        logger.info(
            "updated_rules_found",
            count=len(rules),
            retries=len(retries),
            cursor=self._cursor.isoformat(),
        )

        outcomes = await asyncio.gather(*(self._sync_one(rule) for rule in to_sync))
        for rule, error in zip(to_sync, outcomes, strict=True):
            self._record_outcome(rule, error)
            if error is None:
                result.synced += 1
            else:
                result.failed += 1

        newest = [rule.updated_at for rule in rules if rule.updated_at is not None]
        if newest:
            self._cursor = max(self._cursor, *newest)

        self._rules_synced += result.synced
        self._rules_failed += result.failed
        self._last_error = None
        result.cursor = self._cursor
        logger.info("polling_cycle_completed", **result.to_dict())
        return result

    # === On-demand ===

    async def force_reconciliation(self) -> ReconcileStats | None:
        """Reconcile every schedule now. Errors are logged, never raised."""
        if not self._running:
            logger.warning("reconciliation_skipped", reason="polling_loop_not_running")
            return None

        logger.info("reconciliation_forced", enterprise_id=self.config.enterprise_id)
        try:
            return await self.sync_service.reconcile_schedules(self.config.enterprise_id)
        except Exception as e:
            self._last_error = str(e)
            logger.error(
                "reconciliation_failed",
                error=str(e),
                enterprise_id=self.config.enterprise_id,
            )
            return None

    def health(self) -> PollingLoopHealth:
        return PollingLoopHealth(
            running=self._running,
            cursor=self._cursor,
            cycles=self._cycles,
            last_cycle_at=self._last_cycle_at,
            rules_synced=self._rules_synced,
            rules_failed=self._rules_failed,
            pending_retries=len(self._failures),
            last_error=self._last_error,
        )
