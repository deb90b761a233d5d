import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

from autospec.backends.base import DelegateError, DelegateProcessError, DelegateTimeoutError
from autospec.backends.claude import ClaudeCodeBackend
from autospec.errors import EXIT_RETRY_EXHAUSTED, FatalExecutionError
from autospec.executor import ExecutionOptions, StageExecutor
from autospec.stages import Stage


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self._payload = payload

    async def read(self) -> bytes:
        return self._payload


class FakeProcess:
    pid = 4242

    def __init__(self, lines: list[bytes], return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self._return_code = return_code
        self.returncode: int | None = None

    async def wait(self) -> int:
        self.returncode = self._return_code
        return self._return_code

    def kill(self) -> None:
        self.returncode = -9


class HangingProcess:
    """A child that never writes output until it is killed."""

    pid = 4343

    def __init__(self) -> None:
        self.stdout = self
        self.stderr = FakeStderr()
        self.returncode: int | None = None
        self.killed = False
        self._exited = asyncio.Event()

    def __aiter__(self) -> "HangingProcess":
        return self

    async def __anext__(self) -> bytes:
        await self._exited.wait()
        raise StopAsyncIteration

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("plan", {"stage": "plan"}, "add login")

    assert command[0:2] == ["claude", "-p"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[-1].startswith('/autospec.plan "add login"')
    assert "Context JSON:" in command[-1]


def test_claude_slash_command_without_hint() -> None:
    assert ClaudeCodeBackend.build_slash_command("tasks") == "/autospec.tasks"
    assert ClaudeCodeBackend.build_slash_command("specify", "x") == '/autospec.specify "x"'


def test_claude_invoke_collects_stream_content(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["cwd"] = kwargs.get("cwd")
        return FakeProcess(
            [
                b'{"type":"assistant","content":[{"type":"text","text":"hello "}]}\n',
                b"plain line\n",
                b'{"type":"result","result":"done"}\n',
            ]
        )

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = ClaudeCodeBackend(working_directory=Path("/repo"), event_hook=events.append)

    result = asyncio.run(backend.invoke("specify", {"stage": "specify"}, "new feature"))

    assert result.stage == "specify"
    assert result.content == "hello plain linedone"
    assert captured["cwd"] == "/repo"
    assert captured["args"][0] == "claude"
    event_names = [event["event"] for event in events]
    assert event_names == ["claude_cli_start", "claude_cli_exit"]


def test_claude_nonzero_exit_is_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess([], return_code=2, stderr=b"rate limited")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = ClaudeCodeBackend()

    with pytest.raises(DelegateError) as exc_info:
        asyncio.run(backend.invoke("plan", {}))

    assert exc_info.value.retriable is True
    assert exc_info.value.exit_code == 2
    assert "rate limited" in str(exc_info.value)


def test_claude_missing_binary_is_fatal(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        raise FileNotFoundError("claude")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = ClaudeCodeBackend(binary="missing-claude")

    with pytest.raises(DelegateProcessError) as exc_info:
        asyncio.run(backend.invoke("plan", {}))

    assert exc_info.value.retriable is False


def test_claude_timeout_kills_the_child(monkeypatch: pytest.MonkeyPatch) -> None:
    processes: list[HangingProcess] = []
    events: list[dict[str, Any]] = []

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> HangingProcess:
        _ = args, kwargs
        processes.append(HangingProcess())
        return processes[-1]

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = ClaudeCodeBackend(timeout_seconds=0.05, event_hook=events.append)

    with pytest.raises(DelegateTimeoutError) as exc_info:
        asyncio.run(backend.invoke("plan", {}))

    assert exc_info.value.retriable is True
    assert processes[0].killed is True
    assert processes[0].returncode == -9
    assert {"event": "claude_cli_killed", "pid": 4343} in events


def test_claude_timeout_retry_waits_for_previous_child(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_create_subprocess_exec = asyncio.create_subprocess_exec
    processes: list[asyncio.subprocess.Process] = []
    running_at_spawn: list[int] = []

    async def spawn_sleeper(*args: Any, **kwargs: Any) -> asyncio.subprocess.Process:
        _ = args
        running_at_spawn.append(sum(1 for item in processes if item.returncode is None))
        process = await real_create_subprocess_exec(
            sys.executable,
            "-c",
            "import time; print('started', flush=True); time.sleep(30)",
            **kwargs,
        )
        processes.append(process)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", spawn_sleeper)
    backend = ClaudeCodeBackend(working_directory=tmp_path, timeout_seconds=0.5)
    executor = StageExecutor(backend)

    with pytest.raises(FatalExecutionError) as exc_info:
        asyncio.run(executor.execute(Stage.PLAN, None, "", ExecutionOptions(max_retries=1)))

    assert exc_info.value.exit_code == EXIT_RETRY_EXHAUSTED
    assert len(processes) == 2
    assert running_at_spawn == [0, 0]
    assert all(process.returncode is not None for process in processes)


def test_claude_error_result_fails_the_stage(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess(
            [
                b'{"type":"assistant","content":[{"type":"text","text":"working"}]}\n',
                b'{"type":"result","subtype":"error_max_turns","is_error":true}\n',
            ]
        )

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = ClaudeCodeBackend()

    with pytest.raises(DelegateError) as exc_info:
        asyncio.run(backend.invoke("implement", {}))

    assert exc_info.value.retriable is True
    assert exc_info.value.exit_code == 0
    assert "error_max_turns" in str(exc_info.value)
