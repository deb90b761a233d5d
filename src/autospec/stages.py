from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field, fields
from enum import Enum

from autospec.errors import ConfigurationError

SPEC_FILE = "spec.yaml"
PLAN_FILE = "plan.yaml"
TASKS_FILE = "tasks.yaml"
CONSTITUTION_FILE = "constitution.yaml"
CHECKLIST_DIR = "checklists"


class Stage(str, Enum):
    CONSTITUTION = "constitution"
    SPECIFY = "specify"
    CLARIFY = "clarify"
    PLAN = "plan"
    TASKS = "tasks"
    CHECKLIST = "checklist"
    ANALYZE = "analyze"
    IMPLEMENT = "implement"

    def __str__(self) -> str:
        return self.value


# Fixed rank; selection filters this tuple and never reorders it.
CANONICAL_ORDER: tuple[Stage, ...] = (
    Stage.CONSTITUTION,
    Stage.SPECIFY,
    Stage.CLARIFY,
    Stage.PLAN,
    Stage.TASKS,
    Stage.CHECKLIST,
    Stage.ANALYZE,
    Stage.IMPLEMENT,
)

CORE_STAGES = frozenset({Stage.SPECIFY, Stage.PLAN, Stage.TASKS, Stage.IMPLEMENT})
OPTIONAL_STAGES = frozenset(CANONICAL_ORDER) - CORE_STAGES


@dataclass(frozen=True, slots=True)
class ArtifactDependency:
    stage: Stage
    requires: frozenset[str] = frozenset()
    produces: frozenset[str] = frozenset()


ARTIFACT_DEPENDENCIES: dict[Stage, ArtifactDependency] = {
    Stage.CONSTITUTION: ArtifactDependency(
        Stage.CONSTITUTION, produces=frozenset({CONSTITUTION_FILE})
    ),
    # Specify creates the feature directory itself.
    Stage.SPECIFY: ArtifactDependency(Stage.SPECIFY, produces=frozenset({SPEC_FILE})),
    Stage.CLARIFY: ArtifactDependency(
        Stage.CLARIFY, requires=frozenset({SPEC_FILE}), produces=frozenset({SPEC_FILE})
    ),
    Stage.PLAN: ArtifactDependency(
        Stage.PLAN, requires=frozenset({SPEC_FILE}), produces=frozenset({PLAN_FILE})
    ),
    Stage.TASKS: ArtifactDependency(
        Stage.TASKS, requires=frozenset({PLAN_FILE}), produces=frozenset({TASKS_FILE})
    ),
    Stage.CHECKLIST: ArtifactDependency(
        Stage.CHECKLIST, requires=frozenset({SPEC_FILE}), produces=frozenset({CHECKLIST_DIR})
    ),
    Stage.ANALYZE: ArtifactDependency(
        Stage.ANALYZE, requires=frozenset({SPEC_FILE, PLAN_FILE, TASKS_FILE})
    ),
    Stage.IMPLEMENT: ArtifactDependency(Stage.IMPLEMENT, requires=frozenset({TASKS_FILE})),
}


def required_artifacts(stage: Stage) -> list[str]:
    return sorted(ARTIFACT_DEPENDENCIES[stage].requires)


def produced_artifacts(stage: Stage) -> list[str]:
    return sorted(ARTIFACT_DEPENDENCIES[stage].produces)


@dataclass(slots=True)
class StageConfig:
    """Per-run stage selection.

    Field order carries no meaning; execution order always comes from
    ``CANONICAL_ORDER``.
    """

    specify: bool = False
    plan: bool = False
    tasks: bool = False
    implement: bool = False
    constitution: bool = False
    clarify: bool = False
    checklist: bool = False
    analyze: bool = False

    @classmethod
    def select(
        cls,
        *,
        all_core: bool = False,
        specify: bool = False,
        plan: bool = False,
        tasks: bool = False,
        implement: bool = False,
        constitution: bool = False,
        clarify: bool = False,
        checklist: bool = False,
        analyze: bool = False,
    ) -> StageConfig:
        config = cls(
            specify=specify,
            plan=plan,
            tasks=tasks,
            implement=implement,
            constitution=constitution,
            clarify=clarify,
            checklist=checklist,
            analyze=analyze,
        )
        if all_core:
            config.set_all_core()
        return config

    @classmethod
    def from_stages(cls, stages: list[Stage] | set[Stage]) -> StageConfig:
        config = cls()
        for stage in stages:
            setattr(config, stage.value, True)
        return config

    def set_all_core(self) -> None:
        for stage in CORE_STAGES:
            setattr(self, stage.value, True)

    def is_selected(self, stage: Stage) -> bool:
        return bool(getattr(self, stage.value))

    def has_any_selected(self) -> bool:
        return any(getattr(self, item.name) for item in fields(self))

    def count(self) -> int:
        return sum(1 for item in fields(self) if getattr(self, item.name))

    def canonical_order(self) -> Iterator[Stage]:
        return (stage for stage in CANONICAL_ORDER if self.is_selected(stage))

    def selected_stages(self) -> list[Stage]:
        return list(self.canonical_order())

    def require_selection(self) -> None:
        if not self.has_any_selected():
            raise ConfigurationError(
                "No stages selected. Use -s/-p/-t/-i flags or -a for all core stages."
            )


@dataclass(frozen=True, slots=True)
class StageSelection:
    """Immutable snapshot of a validated selection, used once a run is planned."""

    stages: tuple[Stage, ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, config: StageConfig) -> StageSelection:
        config.require_selection()
        return cls(stages=tuple(config.canonical_order()))

    def __contains__(self, stage: object) -> bool:
        return stage in self.stages

    def __iter__(self) -> Iterator[Stage]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)
