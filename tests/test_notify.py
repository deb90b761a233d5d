import pytest

from autospec.config import NotificationsConfig
from autospec.notify import (
    CI_ENV_VARS,
    Notification,
    NotificationHandler,
    format_duration,
    is_ci,
)


class FakeSender:
    def __init__(self) -> None:
        self.visual: list[Notification] = []
        self.sounds = 0

    def send_visual(self, notification: Notification, timeout: float) -> None:
        _ = timeout
        self.visual.append(notification)

    def send_sound(self, timeout: float) -> None:
        _ = timeout
        self.sounds += 1


@pytest.fixture(autouse=True)
def _no_ci(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in CI_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_disabled_by_default() -> None:
    sender = FakeSender()
    handler = NotificationHandler(NotificationsConfig(), sender, interactive=True)

    handler.on_command_complete("run", True, 1.0)

    assert sender.visual == []
    assert sender.sounds == 0


def test_sends_visual_and_sound_when_enabled() -> None:
    sender = FakeSender()
    handler = NotificationHandler(NotificationsConfig(enabled=True), sender, interactive=True)

    handler.on_command_complete("run", True, 75.0)

    assert sender.sounds == 1
    assert sender.visual[0].message == "Command 'run' completed successfully (1m15s)"
    assert sender.visual[0].failure is False


def test_failure_and_cancellation_messages() -> None:
    sender = FakeSender()
    config = NotificationsConfig(enabled=True, type="visual", on_command_complete=False)
    handler = NotificationHandler(config, sender, interactive=True)

    handler.on_command_complete("run", True, 1.0)
    handler.on_command_complete("run", False, 2.0)
    handler.on_command_complete("run", False, 3.0, status="cancelled")

    assert [item.message for item in sender.visual] == [
        "Command 'run' failed (2.0s)",
        "Command 'run' cancelled (3.0s)",
    ]
    assert sender.sounds == 0


def test_ci_environment_suppresses_notifications(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GITHUB_ACTIONS", "true")
    sender = FakeSender()
    handler = NotificationHandler(NotificationsConfig(enabled=True), sender, interactive=True)

    assert is_ci()
    handler.on_command_complete("run", True, 1.0)

    assert sender.visual == []


def test_non_interactive_session_suppresses_notifications() -> None:
    sender = FakeSender()
    handler = NotificationHandler(NotificationsConfig(enabled=True), sender, interactive=False)

    handler.on_command_complete("run", False, 1.0)

    assert sender.visual == []


def test_format_duration() -> None:
    assert format_duration(4.0) == "4.0s"
    assert format_duration(61) == "1m01s"
    assert format_duration(3725) == "1h02m"
