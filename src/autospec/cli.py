from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from autospec import __version__
from autospec.backends import ClaudeCodeBackend, StageDelegate
from autospec.config import (
    DEFAULT_CONFIG_PATH,
    IMPLEMENT_METHODS,
    AutospecConfig,
    RunOptions,
    load_config,
)
from autospec.errors import EXIT_INVALID_ARGUMENTS, AutospecError
from autospec.features import SpecResolver
from autospec.history import HistoryWriter
from autospec.logs import setup_logging
from autospec.notify import NotificationHandler, format_duration
from autospec.orchestrator import RunPlan, RunSummary, WorkflowOrchestrator, format_summary
from autospec.stages import TASKS_FILE, StageConfig
from autospec.tasks import TaskStatus, update_task_status

logger = logging.getLogger(__name__)


class WorkflowExit(click.ClickException):
    """A ClickException that carries the workflow's exit code."""

    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: AutospecConfig

    @property
    def state_dir(self) -> Path:
        return Path(self.config.workflow.state_dir).expanduser()

    @property
    def specs_dir(self) -> Path:
        specs_dir = Path(self.config.workflow.specs_dir).expanduser()
        if not specs_dir.is_absolute():
            specs_dir = self.repo_root / specs_dir
        return specs_dir


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    return Runtime(repo_root=repo_root, config_path=config_path, config=load_config(config_path))


def _log_stage_event(event: dict[str, Any]) -> None:
    logger.debug("stage event %s", event.get("event"), extra={"extra_fields": event})


def _build_delegate(config: AutospecConfig, repo_root: Path) -> StageDelegate:
    return ClaudeCodeBackend(
        binary=config.agent.binary,
        args=config.agent.args,
        working_directory=repo_root,
        timeout_seconds=max(5.0, float(config.agent.timeout_seconds)),
        event_hook=_log_stage_event,
    )


def _confirm_missing_artifacts(warning: str) -> bool:
    click.echo(warning, err=True)
    try:
        return click.confirm("Continue anyway?", default=False)
    except click.Abort:
        return False


async def _run_cancellable(orchestrator: WorkflowOrchestrator, plan: RunPlan) -> RunSummary:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        handler_installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        handler_installed = False
    try:
        return await orchestrator.run(plan, cancel_event)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


def _fail(exc: AutospecError) -> WorkflowExit:
    return WorkflowExit(str(exc), exc.exit_code)


@click.group()
@click.version_option(__version__, prog_name="autospec")
def cli() -> None:
    """autospec: run spec-driven feature stages through an AI coding CLI."""


@cli.command("run")
@click.argument("description", nargs=-1)
@click.option("-a", "--all", "all_core", is_flag=True, help="Run all four core stages.")
@click.option("-s", "--specify", is_flag=True)
@click.option("-p", "--plan", is_flag=True)
@click.option("-t", "--tasks", is_flag=True)
@click.option("-i", "--implement", is_flag=True)
@click.option("-n", "--constitution", is_flag=True)
@click.option("-r", "--clarify", is_flag=True)
@click.option("-l", "--checklist", is_flag=True)
@click.option("-z", "--analyze", is_flag=True)
@click.option("--spec", "feature_override", default=None, help="Spec directory, number or name.")
@click.option("-y", "--yes", "assume_yes", is_flag=True, help="Skip confirmation prompts.")
@click.option("--max-retries", type=int, default=None)
@click.option("--resume", is_flag=True, help="Skip tasks already marked Completed.")
@click.option("--dry-run", is_flag=True, help="Preview the run without executing anything.")
@click.option(
    "--implement-method", default=None, help="One of: " + ", ".join(IMPLEMENT_METHODS)
)
@click.option("--debug", is_flag=True, default=False)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Append JSON log lines, including stage events, to this file.",
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
def run_command(
    description: tuple[str, ...],
    all_core: bool,
    specify: bool,
    plan: bool,
    tasks: bool,
    implement: bool,
    constitution: bool,
    clarify: bool,
    checklist: bool,
    analyze: bool,
    feature_override: str | None,
    assume_yes: bool,
    max_retries: int | None,
    resume: bool,
    dry_run: bool,
    implement_method: str | None,
    debug: bool,
    log_file: Path | None,
    config_value: str,
) -> None:
    setup_logging(logging.DEBUG if debug else logging.WARNING, log_file)
    stage_config = StageConfig.select(
        all_core=all_core,
        specify=specify,
        plan=plan,
        tasks=tasks,
        implement=implement,
        constitution=constitution,
        clarify=clarify,
        checklist=checklist,
        analyze=analyze,
    )
    try:
        stage_config.require_selection()
        runtime = _load_runtime(config_value)
        options = RunOptions.build(
            runtime.config,
            runtime.repo_root,
            max_retries=max_retries,
            implement_method=implement_method,
            resume=resume,
            dry_run=dry_run,
            assume_yes=assume_yes,
            feature_override=feature_override,
            feature_description=" ".join(description).strip(),
            full_workflow=all_core,
        )
        orchestrator = WorkflowOrchestrator(
            options,
            _build_delegate(runtime.config, runtime.repo_root),
            history=HistoryWriter(options.state_dir, options.max_history_entries),
            notifier=NotificationHandler(runtime.config.notifications),
            progress=click.echo,
            event_hook=_log_stage_event,
        )
        run_plan = orchestrator.plan_run(stage_config)
        if run_plan.feature is not None:
            click.echo(run_plan.feature.describe())
        if options.dry_run:
            click.echo(orchestrator.dry_run(run_plan), nl=False)
            return
        orchestrator.check_preflight(run_plan, _confirm_missing_artifacts)
        summary = asyncio.run(_run_cancellable(orchestrator, run_plan))
    except AutospecError as exc:
        raise _fail(exc) from exc

    click.echo(format_summary(summary), nl=False)


@cli.command("history")
@click.option("--limit", type=click.IntRange(min=0), default=20, show_default=True)
@click.option("--clear", "clear_history", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
def history_command(limit: int, clear_history: bool, config_value: str) -> None:
    try:
        runtime = _load_runtime(config_value)
        writer = HistoryWriter(runtime.state_dir, runtime.config.history.max_entries)
        if clear_history:
            writer.clear()
            click.echo("History cleared.")
            return
        records = writer.load()
    except AutospecError as exc:
        raise _fail(exc) from exc

    if not records:
        click.echo("No history entries.")
        return
    shown = records[-limit:] if limit else records
    for record in shown:
        click.echo(
            f"{record.started_at}  {record.command:<8} {record.status:<9} "
            f"exit={record.exit_code:<3} {format_duration(record.duration_seconds):>8}  "
            f"{record.feature or '-'}"
        )


@cli.command("update-task")
@click.argument("task_id")
@click.argument("status")
@click.option("--spec", "feature_override", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_PATH, show_default=True)
def update_task_command(
    task_id: str, status: str, feature_override: str | None, config_value: str
) -> None:
    try:
        new_status = TaskStatus.parse(status)
    except ValueError as exc:
        choices = ", ".join(item.value for item in TaskStatus)
        raise WorkflowExit(f"{exc}. Choose one of: {choices}", EXIT_INVALID_ARGUMENTS) from exc

    try:
        runtime = _load_runtime(config_value)
        resolver = SpecResolver(runtime.specs_dir, repo_root=runtime.repo_root)
        feature = resolver.resolve(feature_override)
        update = update_task_status(feature.directory / TASKS_FILE, task_id, new_status)
    except AutospecError as exc:
        raise _fail(exc) from exc

    if update.changed:
        click.echo(f"Updated {task_id}: {update.previous_status} -> {update.new_status}")
    else:
        click.echo(f"Task {task_id} is already {update.new_status}")
