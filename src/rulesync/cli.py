"""
CLI: ``rulesync`` — operator commands for rule schedule synchronization.

Each command builds ``RulesyncSettings`` from the environment, applies the
command-line overrides, wires a ``RuleEngine`` and runs one coroutine on it.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer
from pydantic import ValidationError as SettingsValidationError
from rich.console import Console

from rulesync import __version__
from rulesync.core.errors import RulesyncError
from rulesync.core.logging import configure_logging
from rulesync.core.settings import RulesyncSettings
from rulesync.engine import RuleEngine, create_rule_engine

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="rulesync",
    help="rulesync — keep notification rule schedules in step with the rule store.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"rulesync {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """rulesync CLI — sync, reconcile and run the polling loop."""


# ── Helpers ──────────────────────────────────────────────────────────────


def load_settings(
    database: str | None = None,
    enterprise_id: str | None = None,
    **overrides: Any,
) -> RulesyncSettings:
    """Settings from the environment plus non-None command-line overrides."""
    values = {k: v for k, v in overrides.items() if v is not None}
    if database is not None:
        values["database_path"] = Path(database)
    if enterprise_id is not None:
        values["enterprise_id"] = enterprise_id
    try:
        settings = RulesyncSettings(**values)
    except SettingsValidationError as exc:
        err_console.print("[bold red]Invalid configuration[/bold red]")
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"])
            err_console.print(f"  [cyan]{field}[/cyan]: {error['msg']}")
        raise typer.Exit(code=1) from exc
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    return settings


def run_with_engine(
    settings: RulesyncSettings,
    action: Callable[[RuleEngine], Awaitable[T]],
) -> T:
    """Build an engine, run ``action`` on it and release it; errors exit 1."""

    async def _main() -> T:
        engine = await create_rule_engine(settings)
        try:
            return await action(engine)
        finally:
            await engine.stop()
            await engine.close()

    try:
        return asyncio.run(_main())
    except RulesyncError as exc:
        err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
        raise typer.Exit(code=1) from exc


def output_dict(data: dict[str, Any], *, as_json: bool = False, title: str = "") -> None:
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("sync")
def sync(
    enterprise: str | None = typer.Option(None, "--enterprise", "-e", help="Enterprise filter"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Create or update the schedule of every published cron rule."""
    settings = load_settings(database, enterprise)

    async def _sync(engine: RuleEngine) -> dict[str, int]:
        stats = await engine.sync_service.sync_all_rules(settings.enterprise_id)
        return stats.to_dict()

    output_dict(run_with_engine(settings, _sync), as_json=json_out, title="Sync")


@app.command("reconcile")
def reconcile(
    enterprise: str | None = typer.Option(None, "--enterprise", "-e", help="Enterprise filter"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Create missing schedules, refresh existing ones, delete orphans."""
    settings = load_settings(database, enterprise)

    async def _reconcile(engine: RuleEngine) -> dict[str, int]:
        stats = await engine.sync_service.reconcile_schedules(settings.enterprise_id)
        return stats.to_dict()

    output_dict(run_with_engine(settings, _reconcile), as_json=json_out, title="Reconcile")


@app.command("ensure-namespace")
def ensure_namespace(
    name: str = typer.Argument(..., help="Namespace to provision"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Register a namespace unless it already exists."""
    settings = load_settings(database)

    async def _ensure(engine: RuleEngine) -> bool:
        return await engine.provisioner.ensure(name)

    created = run_with_engine(settings, _ensure)
    output_dict({"namespace": name, "created": created}, as_json=json_out, title="Namespace")


@app.command("run")
def run(
    enterprise: str | None = typer.Option(None, "--enterprise", "-e", help="Enterprise filter"),
    database: str | None = typer.Option(None, "--database", "-d"),
    poll_interval: float | None = typer.Option(None, "--poll-interval", help="Seconds between cycles"),
    execution: bool | None = typer.Option(
        None, "--execution/--no-execution", help="Also host the notification execution workflow"
    ),
) -> None:
    """Start the engine and poll for rule changes until interrupted.

    Example::

        rulesync run --poll-interval 10
        RULESYNC_SCHEDULE_BACKEND=temporal rulesync run
    """
    settings = load_settings(
        database,
        enterprise,
        poll_interval_seconds=poll_interval,
        execution_enabled=execution,
    )
    console.print(
        f"[bold green]Starting rulesync[/bold green] "
        f"(backend={settings.schedule_backend}, poll={settings.poll_interval_seconds}s, "
        f"namespace={settings.temporal_namespace})"
    )

    async def _forever(engine: RuleEngine) -> None:
        await engine.start()
        await asyncio.Event().wait()

    try:
        run_with_engine(settings, _forever)
    except KeyboardInterrupt:
        console.print("\n[yellow]rulesync stopped by user[/yellow]")


@app.command("status")
def status(
    enterprise: str | None = typer.Option(None, "--enterprise", "-e", help="Enterprise filter"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Run one polling cycle and print the health report."""
    settings = load_settings(database, enterprise)

    async def _status(engine: RuleEngine) -> dict[str, Any]:
        await engine.start()
        await engine.polling_loop.poll_once()
        return engine.status().to_dict()

    report = run_with_engine(settings, _status)
    output_dict(report, as_json=json_out, title="Health")
    if not report["healthy"]:
        raise typer.Exit(code=1)
