from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from autospec.errors import ConfigurationError

ImplementMethod = Literal["phases", "tasks", "single-session"]
NotificationType = Literal["sound", "visual", "both"]

IMPLEMENT_METHODS: tuple[str, ...] = ("phases", "tasks", "single-session")
DEFAULT_CONFIG_PATH = ".autospec/config.toml"
YES_ENV_VAR = "AUTOSPEC_YES"


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    args: list[str] = field(
        default_factory=lambda: ["-p", "--verbose", "--output-format", "stream-json"]
    )
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class WorkflowConfig:
    specs_dir: str = "specs"
    state_dir: str = "~/.autospec/state"
    max_retries: int = 3
    retry_backoff_seconds: float = 0.0
    implement_method: ImplementMethod = "single-session"
    skip_confirmations: bool = False


@dataclass(slots=True)
class HistoryConfig:
    max_entries: int = 500


@dataclass(slots=True)
class NotificationsConfig:
    enabled: bool = False
    type: NotificationType = "both"
    on_command_complete: bool = True
    on_error: bool = True
    timeout_seconds: float = 5.0


@dataclass(slots=True)
class AutospecConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    @classmethod
    def default(cls) -> AutospecConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AutospecConfig:
        try:
            return cls(
                agent=AgentConfig(**data.get("agent", {})),
                workflow=WorkflowConfig(**data.get("workflow", {})),
                history=HistoryConfig(**data.get("history", {})),
                notifications=NotificationsConfig(**data.get("notifications", {})),
            )
        except TypeError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    def to_dict(self) -> dict:
        return {
            "agent": {
                "binary": self.agent.binary,
                "args": list(self.agent.args),
                "timeout_seconds": self.agent.timeout_seconds,
            },
            "workflow": {
                "specs_dir": self.workflow.specs_dir,
                "state_dir": self.workflow.state_dir,
                "max_retries": self.workflow.max_retries,
                "retry_backoff_seconds": self.workflow.retry_backoff_seconds,
                "implement_method": self.workflow.implement_method,
                "skip_confirmations": self.workflow.skip_confirmations,
            },
            "history": {
                "max_entries": self.history.max_entries,
            },
            "notifications": {
                "enabled": self.notifications.enabled,
                "type": self.notifications.type,
                "on_command_complete": self.notifications.on_command_complete,
                "on_error": self.notifications.on_error,
                "timeout_seconds": self.notifications.timeout_seconds,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AutospecConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["agent", "workflow", "history", "notifications"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AutospecConfig:
    if not path.exists():
        return AutospecConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Failed to parse {path}: {exc}") from exc
    return AutospecConfig.from_dict(data)


def save_config(path: Path, config: AutospecConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")


@dataclass(frozen=True, slots=True)
class RunOptions:
    """Everything one ``run`` invocation needs, fixed before execution starts."""

    repo_root: Path
    specs_dir: Path
    state_dir: Path
    max_retries: int = 3
    retry_backoff_seconds: float = 0.0
    implement_method: ImplementMethod = "single-session"
    resume: bool = False
    dry_run: bool = False
    assume_yes: bool = False
    feature_override: str | None = None
    feature_description: str = ""
    full_workflow: bool = False
    max_history_entries: int = 500

    @classmethod
    def build(
        cls,
        config: AutospecConfig,
        repo_root: Path,
        *,
        max_retries: int | None = None,
        implement_method: str | None = None,
        resume: bool = False,
        dry_run: bool = False,
        assume_yes: bool = False,
        feature_override: str | None = None,
        feature_description: str = "",
        full_workflow: bool = False,
    ) -> RunOptions:
        method = implement_method or config.workflow.implement_method
        if method not in IMPLEMENT_METHODS:
            raise ConfigurationError(
                f"Unknown implement method '{method}'. Choose one of: "
                + ", ".join(IMPLEMENT_METHODS)
            )
        retries = config.workflow.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ConfigurationError("--max-retries must be zero or positive.")
        specs_dir = Path(config.workflow.specs_dir).expanduser()
        if not specs_dir.is_absolute():
            specs_dir = repo_root / specs_dir
        yes = assume_yes or bool(os.environ.get(YES_ENV_VAR)) or config.workflow.skip_confirmations
        return cls(
            repo_root=repo_root,
            specs_dir=specs_dir,
            state_dir=Path(config.workflow.state_dir).expanduser(),
            max_retries=retries,
            retry_backoff_seconds=max(0.0, float(config.workflow.retry_backoff_seconds)),
            implement_method=method,  # type: ignore[arg-type]
            resume=resume,
            dry_run=dry_run,
            assume_yes=yes,
            feature_override=feature_override,
            feature_description=feature_description,
            full_workflow=full_workflow,
            max_history_entries=max(0, int(config.history.max_entries)),
        )
