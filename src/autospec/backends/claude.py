from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from autospec.backends.base import (
    DelegateError,
    DelegateProcessError,
    DelegateResult,
    DelegateTimeoutError,
    StageDelegate,
)

logger = logging.getLogger(__name__)

DEFAULT_ARGS = ("-p", "--verbose", "--output-format", "stream-json")


class ClaudeCodeBackend(StageDelegate):
    """Runs a stage as an ``/autospec.<stage>`` slash command through the claude CLI."""

    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        args: Sequence[str] = DEFAULT_ARGS,
        working_directory: Path | None = None,
        timeout_seconds: float = 300.0,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.args = list(args)
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @staticmethod
    def build_slash_command(stage_name: str, prompt_hint: str = "") -> str:
        command = f"/autospec.{stage_name}"
        if prompt_hint:
            return f'{command} "{prompt_hint}"'
        return command

    @staticmethod
    def build_prompt(stage_name: str, feature_context: dict[str, Any], prompt_hint: str) -> str:
        prompt = ClaudeCodeBackend.build_slash_command(stage_name, prompt_hint)
        if feature_context:
            prompt = (
                f"{prompt}\n\nContext JSON:\n"
                f"{json.dumps(feature_context, ensure_ascii=False, indent=2)}"
            )
        return prompt

    def build_command(
        self, stage_name: str, feature_context: dict[str, Any], prompt_hint: str = ""
    ) -> list[str]:
        prompt = self.build_prompt(stage_name, feature_context, prompt_hint)
        return [self.binary, *self.args, prompt]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        result = event.get("result")
        if isinstance(result, str):
            return result
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _read_events(
        self, stream: asyncio.StreamReader
    ) -> tuple[list[str], dict[str, Any] | None]:
        chunks: list[str] = []
        error_event: dict[str, Any] | None = None
        parse_buffer = ""
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                chunks.append(line)
                continue

            if isinstance(event, dict):
                if event.get("type") == "result" and event.get("is_error"):
                    error_event = event
                    self._emit({"event": "claude_result_error", "subtype": event.get("subtype")})
                content = self._extract_content(event)
                if content:
                    chunks.append(content)

        if parse_buffer:
            chunks.append(parse_buffer)
        return chunks, error_event

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        self._emit({"event": "claude_cli_killed", "pid": process.pid})

    async def _run_process(self, command: list[str]) -> list[str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise DelegateProcessError(
                f"Claude binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        try:
            if process.stdout is None:
                raise DelegateProcessError(
                    "Claude backend did not expose stdout.", backend=self.name, retriable=False
                )
            chunks, error_event = await self._read_events(process.stdout)
            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
        except BaseException:
            # A timed-out or failed attempt must not leave the CLI writing artifacts.
            await self._stop(process)
            raise

        self._emit({"event": "claude_cli_exit", "exit_code": return_code})
        if return_code != 0:
            raise DelegateError(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
        if error_event is not None:
            detail = self._extract_content(error_event) or error_event.get("subtype") or "unknown"
            raise DelegateError(
                f"Claude reported an error result: {detail}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
        return chunks

    async def invoke(
        self,
        stage_name: str,
        feature_context: dict[str, Any],
        prompt_hint: str = "",
    ) -> DelegateResult:
        command = self.build_command(stage_name, feature_context, prompt_hint)
        logger.debug("Executing %s", self.build_slash_command(stage_name, prompt_hint))
        self._emit({"event": "claude_cli_start", "stage": stage_name, "command": command[:2]})
        try:
            chunks = await asyncio.wait_for(
                self._run_process(command), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            raise DelegateTimeoutError(
                f"Claude backend timed out after {self.timeout_seconds:.1f}s",
                backend=self.name,
                retriable=True,
            ) from exc
        return DelegateResult(
            stage=stage_name,
            content="".join(chunks).strip(),
            metadata={"backend": self.name},
        )
