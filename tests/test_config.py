import tomllib
from pathlib import Path

import pytest

from autospec import __version__
from autospec.config import (
    YES_ENV_VAR,
    AutospecConfig,
    RunOptions,
    dumps_toml,
    load_config,
    save_config,
)
from autospec.errors import ConfigurationError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / ".autospec" / "config.toml"
    config = AutospecConfig.default()
    config.agent.binary = "claude-beta"
    config.agent.args = ["-p", "--output-format", "stream-json"]
    config.workflow.specs_dir = "docs/specs"
    config.workflow.max_retries = 5
    config.workflow.retry_backoff_seconds = 1.5
    config.workflow.implement_method = "phases"
    config.workflow.skip_confirmations = True
    config.history.max_entries = 50
    config.notifications.enabled = True
    config.notifications.type = "sound"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.agent.binary == "claude-beta"
    assert loaded.agent.args == ["-p", "--output-format", "stream-json"]
    assert loaded.workflow.specs_dir == "docs/specs"
    assert loaded.workflow.max_retries == 5
    assert loaded.workflow.retry_backoff_seconds == 1.5
    assert loaded.workflow.implement_method == "phases"
    assert loaded.workflow.skip_confirmations is True
    assert loaded.history.max_entries == 50
    assert loaded.notifications.enabled is True
    assert loaded.notifications.type == "sound"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(AutospecConfig.default())

    for section in ("[agent]", "[workflow]", "[history]", "[notifications]"):
        assert section in rendered
    assert "max_retries = 3" in rendered
    assert "max_entries = 500" in rendered
    assert 'implement_method = "single-session"' in rendered


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "nope.toml") == AutospecConfig.default()


def test_invalid_config_raises_configuration_error(tmp_path: Path) -> None:
    broken = tmp_path / "broken.toml"
    broken.write_text("[workflow\n", encoding="utf-8")
    unknown = tmp_path / "unknown.toml"
    unknown.write_text("[workflow]\nparallel = true\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(broken)
    with pytest.raises(ConfigurationError):
        load_config(unknown)


def test_run_options_prefer_flags_over_config(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv(YES_ENV_VAR, raising=False)
    config = AutospecConfig.default()
    config.workflow.max_retries = 4

    options = RunOptions.build(config, tmp_path, max_retries=0, implement_method="tasks")

    assert options.max_retries == 0
    assert options.implement_method == "tasks"
    assert options.specs_dir == tmp_path / "specs"
    assert options.assume_yes is False
    assert RunOptions.build(config, tmp_path).max_retries == 4


def test_run_options_yes_from_env_or_config(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = AutospecConfig.default()
    monkeypatch.setenv(YES_ENV_VAR, "1")
    assert RunOptions.build(config, tmp_path).assume_yes is True

    monkeypatch.delenv(YES_ENV_VAR)
    config.workflow.skip_confirmations = True
    assert RunOptions.build(config, tmp_path).assume_yes is True


def test_run_options_reject_bad_values(tmp_path: Path) -> None:
    config = AutospecConfig.default()

    with pytest.raises(ConfigurationError):
        RunOptions.build(config, tmp_path, implement_method="parallel")
    with pytest.raises(ConfigurationError):
        RunOptions.build(config, tmp_path, max_retries=-1)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
