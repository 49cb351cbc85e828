"""Tests for rulesync.core.settings."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from rulesync.core.settings import RulesyncSettings


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    """Keep the developer's environment and .env out of these tests."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("RULESYNC_"):
            monkeypatch.delenv(key)


class TestDefaults:
    def test_defaults(self):
        settings = RulesyncSettings()
        assert settings.schedule_backend == "memory"
        assert settings.temporal_namespace == "default"
        assert settings.task_queue == "notifications"
        assert settings.poll_interval_seconds == 30.0
        assert settings.batch_size == 100
        assert settings.cursor_lookback_hours == 24.0
        assert settings.max_rule_retries == 3
        assert settings.execution_enabled is False
        assert settings.database_path.name == "rulesync.db"


class TestEnvironment:
    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("RULESYNC_SCHEDULE_BACKEND", "temporal")
        monkeypatch.setenv("RULESYNC_TEMPORAL_NAMESPACE", "test-ns-ci")
        monkeypatch.setenv("RULESYNC_BATCH_SIZE", "25")
        monkeypatch.setenv("RULESYNC_DATABASE_PATH", "/tmp/rules.db")
        settings = RulesyncSettings()
        assert settings.schedule_backend == "temporal"
        assert settings.temporal_namespace == "test-ns-ci"
        assert settings.batch_size == 25
        assert settings.database_path == Path("/tmp/rules.db")

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("RULESYNC_POLL_INTERVAL_SECONDS=7.5\n")
        assert RulesyncSettings().poll_interval_seconds == 7.5


class TestValidation:
    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            RulesyncSettings(schedule_backend="cron")

    @pytest.mark.parametrize(
        "field",
        ["poll_interval_seconds", "cursor_lookback_hours", "shutdown_timeout_seconds",
         "execution_poll_interval_seconds"],
    )
    def test_positive_intervals(self, field):
        with pytest.raises(ValidationError):
            RulesyncSettings(**{field: 0})

    def test_batch_size_at_least_one(self):
        with pytest.raises(ValidationError):
            RulesyncSettings(batch_size=0)

    def test_non_negative(self):
        assert RulesyncSettings(initial_delay_seconds=0, max_rule_retries=0).max_rule_retries == 0
        with pytest.raises(ValidationError):
            RulesyncSettings(max_rule_retries=-1)
