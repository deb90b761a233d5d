"""Artifact preflight checks run before any stage executes.

The validator only reports which artifacts are missing for the selected
stages; whether that aborts the run or asks for confirmation is decided by
the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from autospec.stages import (
    ARTIFACT_DEPENDENCIES,
    CANONICAL_ORDER,
    CHECKLIST_DIR,
    PLAN_FILE,
    SPEC_FILE,
    TASKS_FILE,
    Stage,
    StageConfig,
)

# Artifact -> the stage whose run creates it.
REMEDIATION_STAGE: dict[str, Stage] = {
    SPEC_FILE: Stage.SPECIFY,
    PLAN_FILE: Stage.PLAN,
    TASKS_FILE: Stage.TASKS,
    CHECKLIST_DIR: Stage.CHECKLIST,
}

REMEDIATION_FLAGS: dict[Stage, str] = {
    Stage.SPECIFY: 'autospec run -s "feature description"',
    Stage.PLAN: "autospec run -p",
    Stage.TASKS: "autospec run -t",
    Stage.CHECKLIST: "autospec run -l",
}


@dataclass(slots=True)
class PreflightResult:
    missing: list[str] = field(default_factory=list)
    missing_by_stage: dict[Stage, list[str]] = field(default_factory=dict)
    warning: str = ""
    confirmable: bool = True

    @property
    def passed(self) -> bool:
        return not self.missing


def existing_artifacts(feature_dir: Path | None) -> set[str]:
    """Artifacts already present on disk; re-read on every call."""
    if feature_dir is None or not feature_dir.is_dir():
        return set()
    present: set[str] = set()
    for dependency in ARTIFACT_DEPENDENCIES.values():
        for artifact in dependency.requires | dependency.produces:
            if (feature_dir / artifact).exists():
                present.add(artifact)
    return present


def validate(selection: StageConfig, feature_dir: Path | None) -> PreflightResult:
    present = existing_artifacts(feature_dir)
    result = PreflightResult()

    for stage in CANONICAL_ORDER:
        dependency = ARTIFACT_DEPENDENCIES[stage]
        if not selection.is_selected(stage):
            # Unselected output only counts when it is already on disk.
            continue
        absent = sorted(dependency.requires - present)
        if absent:
            result.missing_by_stage[stage] = absent
            for artifact in absent:
                if artifact not in result.missing:
                    result.missing.append(artifact)
        present |= dependency.produces

    if result.missing:
        directory_exists = feature_dir is not None and feature_dir.is_dir()
        result.confirmable = directory_exists or selection.is_selected(Stage.SPECIFY)
        result.warning = format_warning(result)
    return result


def remediation_text(artifact: str) -> str:
    stage = REMEDIATION_STAGE.get(artifact)
    if stage is None:
        return f"(no stage produces {artifact})"
    return f"Run stage {stage.value} first: {REMEDIATION_FLAGS[stage]}"


def format_warning(result: PreflightResult) -> str:
    lines = ["Missing required prerequisite artifacts:"]
    lines.extend(f"  - {artifact}" for artifact in result.missing)
    lines.append("")
    lines.append("The following stages require these artifacts:")
    for stage, artifacts in result.missing_by_stage.items():
        for artifact in artifacts:
            lines.append(f"  - {stage.value} requires {artifact}")
    lines.append("")
    lines.append("Run earlier stages first to generate the required artifacts:")
    lines.extend(f"  {remediation_text(artifact)}" for artifact in result.missing)
    return "\n".join(lines) + "\n"
