"""Tests for RuleEngine wiring and lifecycle."""

from __future__ import annotations

import asyncio
import sqlite3
import sys

import pytest

from rulesync.core.errors import ConfigError
from rulesync.core.settings import RulesyncSettings
from rulesync.engine import build_services, create_rule_engine
from rulesync.scheduling.memory import InMemoryNamespaceService, InMemoryScheduleService
from rulesync.workflows.activities import ActivityExecutor


@pytest.fixture
def settings(tmp_path, monkeypatch) -> RulesyncSettings:
    monkeypatch.chdir(tmp_path)
    return RulesyncSettings(
        temporal_namespace="rules-ns",
        database_path=tmp_path / "rulesync.db",
        initial_delay_seconds=3600,
        poll_interval_seconds=3600,
        execution_poll_interval_seconds=3600,
    )


@pytest.fixture
async def engine(settings, conn, schedule_service, namespace_service):
    engine = await create_rule_engine(
        settings, conn, schedule_service=schedule_service, namespace_service=namespace_service
    )
    yield engine
    await engine.stop()


class TestLifecycle:
    async def test_start_provisions_and_syncs(self, engine, make_rule, schedule_service, namespace_service):
        make_rule(1)
        await engine.start()

        assert engine.is_running is True
        assert "rules-ns" in namespace_service.namespaces
        assert schedule_service.schedule_ids() == ["rule-1-ent-1"]
        assert engine.status().healthy is True

        await engine.stop()
        assert engine.is_running is False
        assert schedule_service.closed is True
        assert engine.status().healthy is False

    async def test_double_start(self, engine, namespace_service):
        await engine.start()
        namespace_service.namespaces.clear()
        await engine.start()
        assert namespace_service.namespaces == {}

    async def test_stop_without_start(self, engine):
        await engine.stop()
        assert engine.is_running is False

    async def test_reload_reconciles(self, engine, make_rule, schedule_service):
        await engine.start()
        make_rule(2)

        stats = await engine.reload()
        assert stats.created == 1
        assert schedule_service.schedule_ids() == ["rule-2-ent-1"]

    async def test_reload_when_stopped(self, engine):
        assert await engine.reload() is None

    async def test_context_manager(self, engine):
        async with engine as running:
            assert running.is_running is True
        assert engine.is_running is False

    async def test_stop_after_workflow_failure(self, settings, conn, namespace_service):
        settings = settings.model_copy(update={"execution_enabled": True})
        engine = await create_rule_engine(settings, conn, namespace_service=namespace_service)

        async def broken_run():
            raise RuntimeError("workflow crashed")

        engine.workflow.run = broken_run
        await engine.start()
        await asyncio.sleep(0)
        await engine.stop()
        assert engine.is_running is False
        assert engine.polling_loop.is_running is False


class TestWiring:
    async def test_execution_disabled_by_default(self, engine):
        assert engine.workflow is None
        assert engine.status().execution is None

    async def test_execution_workflow_hosted(self, settings, conn, namespace_service):
        settings = settings.model_copy(update={"execution_enabled": True, "batch_size": 7})
        engine = await create_rule_engine(settings, conn, namespace_service=namespace_service)
        assert engine.workflow.state.config.batch_size == 7
        assert engine.workflow.state.config.process_scheduled is True

        await engine.start()
        try:
            assert engine.status().checks["execution_running"] is True
        finally:
            await engine.stop()

    async def test_owned_connection_closed_on_stop(self, settings):
        engine = await create_rule_engine(settings)
        assert settings.database_path.exists()
        conn = engine._owned_conn

        await engine.start()
        await engine.stop()
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")

    async def test_memory_backend_services(self, settings):
        schedules, namespaces = await build_services(settings, ActivityExecutor())
        assert isinstance(schedules, InMemoryScheduleService)
        assert schedules.on_action is not None
        assert isinstance(namespaces, InMemoryNamespaceService)

    async def test_temporal_backend_without_extra(self, settings, monkeypatch):
        monkeypatch.setitem(sys.modules, "rulesync.scheduling.temporal_backend", None)
        settings = settings.model_copy(update={"schedule_backend": "temporal"})
        with pytest.raises(ConfigError, match="temporal extra"):
            await build_services(settings, ActivityExecutor())

    async def test_polling_config_from_settings(self, engine):
        config = engine.polling_loop.config
        assert config.poll_interval_seconds == 3600
        assert engine.sync_service.task_queue == "notifications"
        assert engine.namespace == "rules-ns"
