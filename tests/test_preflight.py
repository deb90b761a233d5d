from pathlib import Path

from autospec.preflight import existing_artifacts, remediation_text, validate
from autospec.stages import Stage, StageConfig


def _feature_dir(tmp_path: Path, *artifacts: str) -> Path:
    directory = tmp_path / "specs" / "001-login"
    directory.mkdir(parents=True)
    for artifact in artifacts:
        (directory / artifact).write_text("x: 1\n", encoding="utf-8")
    return directory


def test_missing_plan_is_reported_for_tasks(tmp_path: Path) -> None:
    directory = _feature_dir(tmp_path, "spec.yaml")

    result = validate(StageConfig(tasks=True), directory)

    assert not result.passed
    assert result.missing == ["plan.yaml"]
    assert result.missing_by_stage == {Stage.TASKS: ["plan.yaml"]}
    assert result.confirmable is True
    assert "autospec run -p" in result.warning


def test_selected_stages_satisfy_later_requirements(tmp_path: Path) -> None:
    directory = _feature_dir(tmp_path, "spec.yaml", "plan.yaml")

    result = validate(StageConfig(tasks=True, implement=True), directory)

    assert result.passed
    assert result.warning == ""


def test_specify_and_plan_need_nothing_on_disk(tmp_path: Path) -> None:
    result = validate(StageConfig(specify=True, plan=True), tmp_path / "missing")

    assert result.passed


def test_unselected_stage_output_does_not_count(tmp_path: Path) -> None:
    directory = _feature_dir(tmp_path)

    result = validate(StageConfig(implement=True), directory)

    assert result.missing == ["tasks.yaml"]


def test_missing_directory_without_specify_is_not_confirmable(tmp_path: Path) -> None:
    result = validate(StageConfig(plan=True), tmp_path / "specs" / "404-nothing")

    assert result.missing == ["spec.yaml"]
    assert result.confirmable is False


def test_analyze_lists_every_missing_artifact_once(tmp_path: Path) -> None:
    directory = _feature_dir(tmp_path)

    result = validate(StageConfig(plan=True, analyze=True), directory)

    assert result.missing == ["spec.yaml", "tasks.yaml"]
    assert result.missing_by_stage[Stage.ANALYZE] == ["spec.yaml", "tasks.yaml"]


def test_existing_artifacts_reads_disk_each_time(tmp_path: Path) -> None:
    directory = _feature_dir(tmp_path, "spec.yaml")
    assert existing_artifacts(directory) == {"spec.yaml"}

    (directory / "plan.yaml").write_text("x: 1\n", encoding="utf-8")
    (directory / "checklists").mkdir()

    assert existing_artifacts(directory) == {"spec.yaml", "plan.yaml", "checklists"}
    assert existing_artifacts(None) == set()


def test_remediation_text_names_the_producing_stage() -> None:
    assert remediation_text("tasks.yaml") == "Run stage tasks first: autospec run -t"
    assert "specify" in remediation_text("spec.yaml")
