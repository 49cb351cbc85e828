"""Environment-driven settings for rulesync.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    The process entry point builds one ``RulesyncSettings`` and passes the
    values it needs into each component; nothing reads the environment on
    its own.

    - **Pydantic validation:** Type-checked at startup
    - **Environment-driven:** ``RULESYNC_*`` variables and ``.env`` files
    - **Sensible defaults:** In-memory schedule backend and a local SQLite
      store work out of the box for development

Examples:
    >>> settings = RulesyncSettings(poll_interval_seconds=5, batch_size=50)
    >>> settings.schedule_backend
    'memory'

Tags:
    settings, configuration, pydantic, environment
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RulesyncSettings(BaseSettings):
    """Settings for the rule engine, polling loop and schedule backend.

    Fields
    ──────
    schedule_backend       : ``memory`` (in-process) or ``temporal``
    temporal_address       : host:port of the Temporal frontend
    temporal_namespace     : namespace provisioned on startup
    task_queue             : task queue for ``ruleScheduledWorkflow`` actions
    database_path          : SQLite file holding rules and notifications
    poll_interval_seconds  : delay between polling cycles
    batch_size             : max rules fetched per cycle
    initial_delay_seconds  : delay before the first cycle (0 in tests)
    enterprise_id          : optional enterprise filter for the loop
    cursor_lookback_hours  : cold-start cursor when the store has no rules
    max_rule_retries       : re-sync attempts for a failed rule before it
                             is left to reconciliation
    shutdown_timeout_seconds: bounded wait for an in-flight cycle on stop
    execution_*            : hosting of the notification execution workflow
    """

    model_config = SettingsConfigDict(
        env_prefix="RULESYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Schedule service ─────────────────────────────────────────
    schedule_backend: Literal["memory", "temporal"] = "memory"
    temporal_address: str = "localhost:7233"
    temporal_namespace: str = "default"
    task_queue: str = "notifications"

    # ── Storage ──────────────────────────────────────────────────
    database_path: Path = Field(
        default_factory=lambda: Path.home() / ".rulesync" / "rulesync.db",
        description="SQLite database holding rules and notifications",
    )

    # ── Polling ──────────────────────────────────────────────────
    poll_interval_seconds: float = 30.0
    batch_size: int = 100
    initial_delay_seconds: float = 5.0
    enterprise_id: str | None = None
    cursor_lookback_hours: float = 24.0
    max_rule_retries: int = 3
    shutdown_timeout_seconds: float = 10.0

    # ── Notification execution workflow ──────────────────────────
    execution_enabled: bool = False
    execution_poll_interval_seconds: float = 30.0
    execution_process_failed: bool = False
    execution_process_scheduled: bool = True

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    @field_validator(
        "poll_interval_seconds",
        "cursor_lookback_hours",
        "shutdown_timeout_seconds",
        "execution_poll_interval_seconds",
    )
    @classmethod
    def _positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("batch_size")
    @classmethod
    def _positive_batch(cls, value: int) -> int:
        if value < 1:
            raise ValueError("batch_size must be at least 1")
        return value

    @field_validator("initial_delay_seconds", "max_rule_retries")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value
