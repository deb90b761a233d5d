from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from autospec.backends.base import DelegateError, DelegateResult, StageDelegate
from autospec.errors import CancellationError, FatalExecutionError, RetryableExecutionError
from autospec.features import FeatureMetadata
from autospec.stages import TASKS_FILE, Stage
from autospec.tasks import ResumePoint, load_tasks, resume_point

logger = logging.getLogger(__name__)

StageEventHook = Callable[[dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class ExecutionOptions:
    max_retries: int = 3
    retry_backoff_seconds: float = 0.0
    resume: bool = False
    implement_method: str = "single-session"


@dataclass(slots=True)
class ExecutionOutcome:
    stage: Stage
    attempts: int
    duration_seconds: float
    skipped: bool = False
    content: str = ""
    resume: ResumePoint | None = None


def feature_context(
    stage: Stage,
    feature: FeatureMetadata | None,
    options: ExecutionOptions,
    resume: ResumePoint | None = None,
) -> dict[str, Any]:
    context: dict[str, Any] = {"stage": stage.value}
    if feature is not None:
        context["feature"] = {
            "name": feature.name,
            "number": feature.number,
            "directory": str(feature.directory),
        }
    if stage is Stage.IMPLEMENT:
        context["implement"] = {
            "method": options.implement_method,
            "run_all_phases": options.implement_method == "phases",
            "task_mode": options.implement_method == "tasks",
        }
    if resume is not None:
        context["resume"] = {
            "skip_task_ids": list(resume.skipped_ids),
            "start_task_id": resume.start_id,
            "tasks": [
                {"id": task.id, "title": task.title, "status": task.status.value}
                for task in resume.remaining
            ],
        }
    return context


class StageExecutor:
    """Runs one stage through the delegate with bounded retries."""

    def __init__(
        self,
        delegate: StageDelegate,
        *,
        event_hook: StageEventHook | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.delegate = delegate
        self.event_hook = event_hook
        self._sleep = sleep

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None, stage: Stage) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CancellationError(f"Cancelled before {stage.value} could start")

    @staticmethod
    def _classify(exc: Exception) -> RetryableExecutionError | FatalExecutionError:
        if isinstance(exc, DelegateError) and not exc.retriable:
            return FatalExecutionError(str(exc))
        return RetryableExecutionError(str(exc))

    def _load_resume_point(self, feature: FeatureMetadata | None) -> ResumePoint:
        if feature is None:
            raise FatalExecutionError("Resume requires an existing feature with tasks.yaml")
        # Always re-read: the file may have changed since the last stage or run.
        tasks = load_tasks(feature.directory / TASKS_FILE)
        point = resume_point(tasks)
        logger.info(
            "Resuming implement: %d completed task(s) skipped, starting at %s",
            len(point.skipped_ids),
            point.start_id or "(none)",
        )
        return point

    async def execute(
        self,
        stage: Stage,
        feature: FeatureMetadata | None,
        prompt_hint: str,
        options: ExecutionOptions,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionOutcome:
        started = time.monotonic()
        resume: ResumePoint | None = None
        if stage is Stage.IMPLEMENT and options.resume:
            resume = self._load_resume_point(feature)
            if resume.is_complete:
                self._emit({"event": "stage_skipped", "stage": stage.value, "reason": "complete"})
                return ExecutionOutcome(
                    stage=stage,
                    attempts=0,
                    duration_seconds=time.monotonic() - started,
                    skipped=True,
                    resume=resume,
                )

        context = feature_context(stage, feature, options, resume)
        errors: list[str] = []
        total_attempts = options.max_retries + 1
        for attempt in range(total_attempts):
            self._check_cancelled(cancel_event, stage)
            if attempt > 0:
                delay = options.retry_backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "stage_retry",
                        "stage": stage.value,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                logger.warning(
                    "Retrying %s (attempt %d/%d)", stage.value, attempt + 1, total_attempts
                )
                if delay > 0:
                    await self._sleep(delay)
                    self._check_cancelled(cancel_event, stage)
            try:
                result: DelegateResult = await self.delegate.invoke(
                    stage.value, context, prompt_hint
                )
            except Exception as exc:
                failure = self._classify(exc)
                errors.append(f"{stage.value}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "stage_attempt_failed",
                        "stage": stage.value,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": isinstance(failure, RetryableExecutionError),
                    }
                )
                if isinstance(failure, FatalExecutionError):
                    failure.attempts = attempt + 1
                    raise failure from exc
                continue

            duration = time.monotonic() - started
            self._emit(
                {
                    "event": "stage_complete",
                    "stage": stage.value,
                    "attempts": attempt + 1,
                    "duration_seconds": duration,
                }
            )
            return ExecutionOutcome(
                stage=stage,
                attempts=attempt + 1,
                duration_seconds=duration,
                content=result.content,
                resume=resume,
            )

        summary = "; ".join(errors[-6:])
        raise FatalExecutionError(
            f"{stage.value} exhausted retries after {total_attempts} total attempts "
            f"({options.max_retries} retries). {summary}",
            attempts=total_attempts,
            exhausted=True,
        )
