from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
import sys
from dataclasses import dataclass
from typing import Protocol

from autospec.config import NotificationsConfig

logger = logging.getLogger(__name__)

CI_ENV_VARS = (
    "CI",
    "CONTINUOUS_INTEGRATION",
    "GITHUB_ACTIONS",
    "GITLAB_CI",
    "CIRCLECI",
    "TRAVIS",
    "JENKINS_URL",
    "BUILDKITE",
    "TF_BUILD",
    "CODEBUILD_BUILD_ID",
)


@dataclass(frozen=True, slots=True)
class Notification:
    title: str
    message: str
    failure: bool = False


class Sender(Protocol):
    def send_visual(self, notification: Notification, timeout: float) -> None: ...

    def send_sound(self, timeout: float) -> None: ...


class DesktopSender:
    """Best-effort desktop notification through the platform's own tools."""

    def __init__(self) -> None:
        self.system = platform.system()

    def send_visual(self, notification: Notification, timeout: float) -> None:
        if self.system == "Darwin" and shutil.which("osascript"):
            script = (
                f"display notification {_applescript_str(notification.message)} "
                f"with title {_applescript_str(notification.title)}"
            )
            command = ["osascript", "-e", script]
        elif shutil.which("notify-send") and (
            os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY")
        ):
            urgency = "critical" if notification.failure else "normal"
            command = ["notify-send", "-u", urgency, notification.title, notification.message]
        else:
            return
        subprocess.run(command, check=False, capture_output=True, timeout=timeout)

    def send_sound(self, timeout: float) -> None:
        _ = timeout
        sys.stderr.write("\a")
        sys.stderr.flush()


def _applescript_str(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def is_ci() -> bool:
    return any(os.environ.get(name) for name in CI_ENV_VARS)


def is_interactive() -> bool:
    for stream in (sys.stdout, sys.stderr, sys.stdin):
        try:
            if stream is not None and stream.isatty():
                return True
        except (AttributeError, ValueError):
            continue
    return False


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, remainder = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m{remainder:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"


class NotificationHandler:
    def __init__(
        self,
        config: NotificationsConfig,
        sender: Sender | None = None,
        *,
        interactive: bool | None = None,
    ) -> None:
        self.config = config
        self.sender = sender or DesktopSender()
        self._interactive = interactive

    def enabled(self) -> bool:
        if not self.config.enabled or is_ci():
            return False
        if self._interactive is not None:
            return self._interactive
        return is_interactive()

    def _dispatch(self, notification: Notification) -> None:
        timeout = self.config.timeout_seconds
        if self.config.type in ("visual", "both"):
            self.sender.send_visual(notification, timeout)
        if self.config.type in ("sound", "both"):
            self.sender.send_sound(timeout)

    def on_command_complete(
        self,
        command: str,
        success: bool,
        duration_seconds: float,
        *,
        status: str | None = None,
    ) -> None:
        if not self.enabled():
            return
        if success and not self.config.on_command_complete:
            return
        if not success and not (self.config.on_error or self.config.on_command_complete):
            return
        outcome = status or ("completed" if success else "failed")
        if outcome == "completed":
            outcome = "completed successfully"
        notification = Notification(
            title="autospec",
            message=f"Command '{command}' {outcome} ({format_duration(duration_seconds)})",
            failure=not success,
        )
        logger.debug("Sending notification: %s", notification.message)
        self._dispatch(notification)
