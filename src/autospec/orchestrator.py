from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from autospec.backends.base import StageDelegate
from autospec.config import RunOptions
from autospec.errors import (
    AutospecError,
    CancellationError,
    ConfigurationError,
    FatalExecutionError,
    FeatureNotFoundError,
    PreflightError,
    StageFailedError,
)
from autospec.executor import ExecutionOptions, StageExecutor
from autospec.features import FeatureMetadata, SpecResolver
from autospec.lifecycle import HistorySink, LifecycleRunner, NotificationSink
from autospec.preflight import PreflightResult, validate
from autospec.stages import TASKS_FILE, Stage, StageConfig, StageSelection
from autospec.tasks import TasksFileError, TaskStats, format_task_summary, load_tasks, task_stats

logger = logging.getLogger(__name__)

RUN_COMMAND = "run"

DRY_RUN_ARTIFACTS: dict[Stage, str] = {
    Stage.CONSTITUTION: "{feature}/constitution.yaml",
    Stage.SPECIFY: "specs/<new-spec>/spec.yaml",
    Stage.CLARIFY: "{feature}/spec.yaml (updated)",
    Stage.PLAN: "{feature}/plan.yaml",
    Stage.TASKS: "{feature}/tasks.yaml",
    Stage.CHECKLIST: "{feature}/checklists/*.yaml",
    Stage.ANALYZE: "(analysis output, no file changes)",
    Stage.IMPLEMENT: "(implementation changes to codebase)",
}

# Stages that drop the free-form description when the full core workflow runs.
_FULL_WORKFLOW_SILENT = frozenset({Stage.PLAN, Stage.TASKS, Stage.IMPLEMENT})


class RunState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING = "running"
    FAILED = "failed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


@dataclass(slots=True)
class RunPlan:
    selection: StageSelection
    config: StageConfig
    feature: FeatureMetadata | None
    preflight: PreflightResult

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self.selection.stages


@dataclass(slots=True)
class StageReport:
    stage: Stage
    attempts: int
    duration_seconds: float
    skipped: bool = False


@dataclass(slots=True)
class RunSummary:
    stages: tuple[Stage, ...]
    feature: FeatureMetadata | None
    reports: list[StageReport] = field(default_factory=list)
    task_stats: TaskStats | None = None

    @property
    def completed_stages(self) -> list[Stage]:
        return [report.stage for report in self.reports]

    @property
    def completed_count(self) -> int:
        return len(self.reports)


class WorkflowOrchestrator:
    """Plans and runs a selection of stages for one feature."""

    def __init__(
        self,
        options: RunOptions,
        delegate: StageDelegate,
        *,
        resolver: SpecResolver | None = None,
        history: HistorySink | None = None,
        notifier: NotificationSink | None = None,
        progress: Callable[[str], None] | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.options = options
        self.resolver = resolver or SpecResolver(options.specs_dir, repo_root=options.repo_root)
        self.executor = StageExecutor(delegate, event_hook=event_hook, sleep=sleep)
        self.lifecycle = LifecycleRunner(notifier=notifier, history=history)
        self.progress = progress or logger.info
        self.state = RunState.IDLE
        self.current_stage: Stage | None = None
        self.feature: FeatureMetadata | None = None

    @property
    def execution_options(self) -> ExecutionOptions:
        return ExecutionOptions(
            max_retries=self.options.max_retries,
            retry_backoff_seconds=self.options.retry_backoff_seconds,
            resume=self.options.resume,
            implement_method=self.options.implement_method,
        )

    def _resolve_initial_feature(self, selection: StageSelection) -> FeatureMetadata | None:
        if self.options.feature_override:
            return self.resolver.resolve_explicit(self.options.feature_override)
        if Stage.SPECIFY in selection:
            return None
        return self.resolver.detect_current()

    def plan_run(self, config: StageConfig) -> RunPlan:
        self.state = RunState.VALIDATING
        try:
            selection = StageSelection.from_config(config)
            if self.options.resume and Stage.IMPLEMENT not in selection:
                raise ConfigurationError("--resume only applies when the implement stage runs.")
            if Stage.SPECIFY in selection and not self.options.feature_description:
                raise ConfigurationError(
                    "Feature description required when using the specify stage (-s)."
                )
            if Stage.SPECIFY in selection and self.options.feature_override:
                raise ConfigurationError("--spec cannot be combined with the specify stage.")
            feature = self._resolve_initial_feature(selection)
        except AutospecError:
            self.state = RunState.FAILED
            raise
        self.feature = feature
        preflight = validate(config, feature.directory if feature else None)
        return RunPlan(selection=selection, config=config, feature=feature, preflight=preflight)

    def check_preflight(self, plan: RunPlan, confirm: Callable[[str], bool]) -> None:
        """Warn about missing artifacts and ask before continuing."""
        result = plan.preflight
        if result.passed:
            return
        if not result.confirmable:
            self.state = RunState.FAILED
            raise PreflightError(result.warning, missing=result.missing)
        if self.options.assume_yes:
            logger.warning("Continuing despite missing artifacts: %s", ", ".join(result.missing))
            return
        if not confirm(result.warning):
            self.state = RunState.FAILED
            raise PreflightError(
                "Aborted: missing prerequisite artifacts " + ", ".join(result.missing),
                missing=result.missing,
            )

    def dry_run(self, plan: RunPlan) -> str:
        feature_label = f"specs/{plan.feature.slug}" if plan.feature else "specs/*"
        lines = [
            "Dry Run Preview",
            "===============",
            "",
            f"Stages to execute: {len(plan.stages)}",
            "",
            "Execution order:",
        ]
        lines.extend(f"  {index}. {stage.value}" for index, stage in enumerate(plan.stages, 1))
        lines.append("")
        if plan.feature is not None:
            lines.append(f"Target spec: {feature_label}/")
        elif self.options.feature_description:
            lines.append(f"Feature description: {self.options.feature_description}")
        lines.append("")
        lines.append("Artifacts that would be created/modified:")
        for stage in plan.stages:
            lines.append("  - " + DRY_RUN_ARTIFACTS[stage].format(feature=feature_label))
        if not plan.preflight.passed:
            lines.append("")
            lines.append(plan.preflight.warning.rstrip())
        lines.append("")
        lines.append("No changes made. Remove --dry-run to execute.")
        return "\n".join(lines) + "\n"

    def _prompt_for(self, stage: Stage) -> str:
        if self.options.full_workflow and stage in _FULL_WORKFLOW_SILENT:
            return ""
        return self.options.feature_description

    def _resolve_created_feature(self) -> FeatureMetadata:
        try:
            return self.resolver.detect_current()
        except FeatureNotFoundError as exc:
            raise StageFailedError(
                Stage.SPECIFY,
                FatalExecutionError(f"specify finished but no feature directory was found: {exc}"),
            ) from exc

    def _feature_name(self) -> str:
        return self.feature.slug if self.feature else ""

    async def _execute_stages(
        self, plan: RunPlan, cancel_event: asyncio.Event | None
    ) -> RunSummary:
        summary = RunSummary(stages=plan.stages, feature=self.feature)
        options = self.execution_options
        total = len(plan.stages)
        self.state = RunState.RUNNING
        for index, stage in enumerate(plan.stages, 1):
            if cancel_event is not None and cancel_event.is_set():
                self.state = RunState.CANCELLED
                raise CancellationError(f"Cancelled before {stage.value} (stage {index}/{total})")
            self.current_stage = stage
            self.progress(f"[Stage {index}/{total}] {stage.value}...")
            try:
                outcome = await self.executor.execute(
                    stage, self.feature, self._prompt_for(stage), options, cancel_event
                )
            except CancellationError:
                self.state = RunState.CANCELLED
                raise
            except AutospecError as exc:
                self.state = RunState.FAILED
                raise StageFailedError(stage, exc) from exc
            except Exception:
                self.state = RunState.FAILED
                raise
            if outcome.skipped:
                self.progress(f"  {stage.value}: all tasks already completed, nothing to resume")
            summary.reports.append(
                StageReport(
                    stage=stage,
                    attempts=outcome.attempts,
                    duration_seconds=outcome.duration_seconds,
                    skipped=outcome.skipped,
                )
            )
            if stage is Stage.SPECIFY:
                try:
                    self.feature = self._resolve_created_feature()
                except StageFailedError:
                    self.state = RunState.FAILED
                    raise
                summary.feature = self.feature
                logger.info("Specify created %s", self.feature.directory)

        self.current_stage = None
        self.state = RunState.COMPLETED
        if Stage.IMPLEMENT in plan.selection and self.feature is not None:
            try:
                summary.task_stats = task_stats(load_tasks(self.feature.directory / TASKS_FILE))
            except TasksFileError as exc:
                logger.debug("No task summary available: %s", exc)
        return summary

    async def run(self, plan: RunPlan, cancel_event: asyncio.Event | None = None) -> RunSummary:
        return await self.lifecycle.run(
            RUN_COMMAND,
            self._feature_name,
            lambda: self._execute_stages(plan, cancel_event),
            cancel_event,
        )


def format_summary(summary: RunSummary) -> str:
    lines: list[str] = [""]
    if summary.task_stats is not None and summary.task_stats.total > 0:
        lines.append("Task Summary:")
        lines.append(format_task_summary(summary.task_stats).rstrip("\n"))
        lines.append("")
    names = " -> ".join(stage.value for stage in summary.completed_stages)
    lines.append(f"Completed {summary.completed_count} workflow stage(s): {names}")
    if summary.feature is not None:
        lines.append(f"Spec: specs/{summary.feature.slug}/")
    return "\n".join(lines) + "\n"
