"""Retry policies with exponential backoff for activity execution.

Every externally visible call made on behalf of a workflow runs through a
``RetryPolicy``. Delays follow

    delay(n) = min(initial_interval * backoff_coefficient ** n, maximum_interval)

and attempts stop at ``maximum_attempts`` (first call included).

Errors deriving from ``RulesyncError`` decide for themselves through their
``retryable`` flag; any other exception is retried unless its type is listed
in ``non_retryable_error_types``.

Example:
    >>> policy = RetryPolicy(initial_interval=5.0, maximum_interval=60.0)
    >>> [policy.next_delay(n) for n in range(4)]
    [5.0, 10.0, 20.0, 40.0]
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from rulesync.core.errors import RulesyncError
from rulesync.core.models import utcnow

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff policy.

    Attributes:
        initial_interval: Delay before the first retry, in seconds
        backoff_coefficient: Multiplier applied per retry
        maximum_interval: Delay cap in seconds
        maximum_attempts: Total attempts including the first (0 = unlimited)
        non_retryable_error_types: Exception types that fail immediately
    """

    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 60.0
    maximum_attempts: int = 3
    non_retryable_error_types: tuple[type[BaseException], ...] = ()

    def next_delay(self, retry: int) -> float:
        """Delay before retry number ``retry`` (zero-based)."""
        return min(
            self.initial_interval * (self.backoff_coefficient ** retry),
            self.maximum_interval,
        )

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        """Whether another attempt is allowed after ``attempt`` attempts failed."""
        if self.maximum_attempts and attempt >= self.maximum_attempts:
            return False
        if isinstance(error, RulesyncError):
            return error.retryable
        return not isinstance(error, self.non_retryable_error_types)


# Policy for workflow activities (polling, status updates, rule fetches)
ACTIVITY_RETRY_POLICY = RetryPolicy(
    initial_interval=5.0,
    backoff_coefficient=2.0,
    maximum_interval=60.0,
    maximum_attempts=3,
)

# Policy for the notification-creation step of a fired rule
NOTIFICATION_RETRY_POLICY = RetryPolicy(
    initial_interval=1.0,
    backoff_coefficient=2.0,
    maximum_interval=30.0,
    maximum_attempts=3,
)


@dataclass
class RetryContext:
    """Tracks retry state across attempts of one call.

    Example:
        >>> ctx = RetryContext(ACTIVITY_RETRY_POLICY)
        >>> result = await ctx.run_async(fetch_rule, 42, "ent-1")
    """

    policy: RetryPolicy
    on_retry: Callable[[int, BaseException, float], None] | None = None
    sleep: Sleeper = asyncio.sleep
    attempt: int = field(default=0, init=False)
    last_error: BaseException | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utcnow, init=False)
    errors: list[tuple[int, BaseException, datetime]] = field(default_factory=list, init=False)

    @property
    def elapsed_seconds(self) -> float:
        """Total elapsed time since first attempt."""
        return (utcnow() - self.started_at).total_seconds()

    async def run_async(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute an async function with retry logic.

        Raises:
            The last exception once the policy refuses another attempt.
        """
        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e, utcnow()))

                if not self.policy.should_retry(self.attempt, e):
                    raise

                delay = self.policy.next_delay(self.attempt - 1)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                await self.sleep(delay)
