from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


class DelegateError(RuntimeError):
    """Raised when the external generative tool fails a stage."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class DelegateTimeoutError(DelegateError):
    """Raised when a delegate call exceeds the configured timeout."""


class DelegateProcessError(DelegateError):
    """Raised when the delegate process cannot be started or read."""


@dataclass(slots=True)
class DelegateResult:
    stage: str
    content: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class StageDelegate(ABC):
    name: str = "delegate"

    @abstractmethod
    async def invoke(
        self,
        stage_name: str,
        feature_context: dict[str, Any],
        prompt_hint: str = "",
    ) -> DelegateResult:
        """Run one stage and return once its artifacts have been written."""
