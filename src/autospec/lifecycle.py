"""Wraps a top-level command with timing, notification and history.

Whatever the body does internally, every call to ``LifecycleRunner.run``
produces exactly one notification and one history record.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Protocol, TypeVar

from autospec.errors import (
    EXIT_CANCELLED,
    EXIT_EXECUTION_FAILED,
    EXIT_SUCCESS,
    AutospecError,
    CancellationError,
)
from autospec.history import STATUS_CANCELLED, STATUS_COMPLETED, STATUS_FAILED

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NotificationSink(Protocol):
    def on_command_complete(
        self,
        command: str,
        success: bool,
        duration_seconds: float,
        *,
        status: str | None = None,
    ) -> None: ...


class HistorySink(Protocol):
    def log_command(
        self,
        command: str,
        feature: str,
        started_at: str,
        duration_seconds: float,
        success: bool,
        *,
        status: str | None = None,
        exit_code: int | None = None,
    ) -> object: ...


def status_for(exc: BaseException | None) -> tuple[str, int]:
    if exc is None:
        return STATUS_COMPLETED, EXIT_SUCCESS
    if isinstance(exc, (CancellationError, asyncio.CancelledError, KeyboardInterrupt)):
        return STATUS_CANCELLED, EXIT_CANCELLED
    if isinstance(exc, AutospecError):
        return STATUS_FAILED, exc.exit_code
    return STATUS_FAILED, EXIT_EXECUTION_FAILED


class LifecycleRunner:
    def __init__(
        self,
        notifier: NotificationSink | None = None,
        history: HistorySink | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.notifier = notifier
        self.history = history
        self._clock = clock

    async def run(
        self,
        command: str,
        feature_name: str | Callable[[], str],
        body: Callable[[], Awaitable[T]],
        cancel_event: asyncio.Event | None = None,
    ) -> T:
        started_at = datetime.now(UTC).replace(microsecond=0).isoformat()
        start = self._clock()
        error: BaseException | None = None
        try:
            if cancel_event is not None and cancel_event.is_set():
                raise CancellationError(f"{command} cancelled before it started")
            return await body()
        except BaseException as exc:
            error = exc
            raise
        finally:
            duration = self._clock() - start
            status, exit_code = status_for(error)
            name = feature_name() if callable(feature_name) else feature_name
            logger.info("%s %s in %.1fs", command, status, duration)
            self._notify(command, status, duration)
            self._record(command, name, started_at, duration, status, exit_code)

    def _notify(self, command: str, status: str, duration: float) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.on_command_complete(
                command, status == STATUS_COMPLETED, duration, status=status
            )
        except Exception as exc:
            logger.warning("Failed to send notification: %s", exc)

    def _record(
        self,
        command: str,
        feature: str,
        started_at: str,
        duration: float,
        status: str,
        exit_code: int,
    ) -> None:
        if self.history is None:
            return
        try:
            self.history.log_command(
                command,
                feature,
                started_at,
                duration,
                status == STATUS_COMPLETED,
                status=status,
                exit_code=exit_code,
            )
        except Exception as exc:
            logger.warning("Failed to write history: %s", exc)
