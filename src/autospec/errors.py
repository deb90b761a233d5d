from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autospec.stages import Stage

EXIT_SUCCESS = 0
EXIT_EXECUTION_FAILED = 1
EXIT_RETRY_EXHAUSTED = 2
EXIT_INVALID_ARGUMENTS = 3
EXIT_CANCELLED = 130


class AutospecError(RuntimeError):
    """Base class for workflow errors."""

    exit_code: int = EXIT_EXECUTION_FAILED


class ConfigurationError(AutospecError):
    """Raised for an empty stage selection or conflicting options."""

    exit_code = EXIT_INVALID_ARGUMENTS


class FeatureNotFoundError(ConfigurationError):
    """Raised when no feature directory can be resolved."""


class PreflightError(AutospecError):
    """Raised when required artifacts are missing and the run may not proceed."""

    exit_code = EXIT_INVALID_ARGUMENTS

    def __init__(self, message: str, *, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class RetryableExecutionError(AutospecError):
    """A transient delegate failure that may be retried."""


class FatalExecutionError(AutospecError):
    """A delegate failure that must not be retried."""

    def __init__(self, message: str, *, attempts: int = 1, exhausted: bool = False) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.exhausted = exhausted

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        return EXIT_RETRY_EXHAUSTED if self.exhausted else EXIT_EXECUTION_FAILED


class CancellationError(AutospecError):
    """Raised when cancellation is observed at a stage or retry boundary."""

    exit_code = EXIT_CANCELLED


class StageFailedError(AutospecError):
    """Wraps a stage-level error with the stage it came from."""

    def __init__(self, stage: Stage, cause: AutospecError) -> None:
        super().__init__(f"{stage.value} stage failed: {cause}")
        self.stage = stage
        self.cause = cause

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        return self.cause.exit_code
