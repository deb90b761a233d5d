"""Read and update per-task status in a feature's ``tasks.yaml``.

The file is handled as a composed YAML node tree rather than plain Python
data so a single status can be rewritten without reordering the rest of the
document.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml
from yaml.nodes import MappingNode, Node, ScalarNode, SequenceNode

from autospec.errors import AutospecError


class TasksFileError(AutospecError):
    """Raised when tasks.yaml is missing or cannot be parsed."""


class TaskStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    BLOCKED = "Blocked"

    @classmethod
    def parse(cls, raw: str) -> TaskStatus:
        normalized = raw.replace(" ", "").replace("_", "").replace("-", "").lower()
        for status in cls:
            if status.value.lower() == normalized:
                return status
        raise ValueError(f"Unknown task status: {raw!r}")


class NodeKind(str, Enum):
    MAPPING = "mapping"
    SEQUENCE = "sequence"
    SCALAR = "scalar"


def node_kind(node: Node) -> NodeKind:
    if isinstance(node, MappingNode):
        return NodeKind.MAPPING
    if isinstance(node, SequenceNode):
        return NodeKind.SEQUENCE
    return NodeKind.SCALAR


def mapping_get(node: MappingNode, key: str) -> Node | None:
    for key_node, value_node in node.value:
        if isinstance(key_node, ScalarNode) and key_node.value == key:
            return value_node
    return None


def scalar_value(node: MappingNode, key: str) -> str | None:
    value = mapping_get(node, key)
    if isinstance(value, ScalarNode):
        return value.value
    return None


def walk_mappings(
    node: Node, ancestors: tuple[MappingNode, ...] = ()
) -> Iterator[tuple[MappingNode, tuple[MappingNode, ...]]]:
    """Depth-first visit of every mapping node, in document order."""
    kind = node_kind(node)
    if kind is NodeKind.MAPPING:
        assert isinstance(node, MappingNode)
        yield node, ancestors
        for _, child in node.value:
            yield from walk_mappings(child, (*ancestors, node))
    elif kind is NodeKind.SEQUENCE:
        for child in node.value:
            yield from walk_mappings(child, ancestors)


def find_mapping(node: Node, predicate: Callable[[MappingNode], bool]) -> MappingNode | None:
    for mapping, _ in walk_mappings(node):
        if predicate(mapping):
            return mapping
    return None


def _is_task(mapping: MappingNode) -> bool:
    return scalar_value(mapping, "id") is not None and scalar_value(mapping, "status") is not None


@dataclass(frozen=True, slots=True)
class TaskRecord:
    id: str
    status: TaskStatus
    title: str = ""
    phase: int | None = None


@dataclass(frozen=True, slots=True)
class ResumePoint:
    skipped_ids: tuple[str, ...]
    remaining: tuple[TaskRecord, ...]
    start_id: str | None

    @property
    def is_complete(self) -> bool:
        return not self.remaining


@dataclass(slots=True)
class TaskUpdate:
    task_id: str
    previous_status: str
    new_status: str

    @property
    def changed(self) -> bool:
        return self.previous_status != self.new_status


@dataclass(slots=True)
class TaskStats:
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    blocked: int = 0
    phases: dict[int, tuple[int, int]] = field(default_factory=dict)

    @property
    def completion_percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return self.completed / self.total * 100.0


def _read_text(path: Path) -> str:
    if not path.exists():
        raise TasksFileError(f"tasks.yaml not found: {path}. Run the tasks stage first.")
    return path.read_text(encoding="utf-8")


def _compose(text: str, path: Path) -> Node:
    try:
        root = yaml.compose(text)
    except yaml.YAMLError as exc:
        raise TasksFileError(f"Failed to parse {path}: {exc}") from exc
    if root is None:
        raise TasksFileError(f"{path} is empty")
    return root


def load_tree(path: Path) -> Node:
    return _compose(_read_text(path), path)


def _phase_number(ancestors: tuple[MappingNode, ...]) -> int | None:
    for mapping in reversed(ancestors):
        raw = scalar_value(mapping, "number")
        if raw is not None and raw.isdigit():
            return int(raw)
    return None


def load_tasks(path: Path) -> list[TaskRecord]:
    root = load_tree(path)
    records: list[TaskRecord] = []
    for mapping, ancestors in walk_mappings(root):
        if not _is_task(mapping):
            continue
        raw_status = scalar_value(mapping, "status") or ""
        try:
            status = TaskStatus.parse(raw_status)
        except ValueError as exc:
            raise TasksFileError(str(exc)) from exc
        records.append(
            TaskRecord(
                id=scalar_value(mapping, "id") or "",
                status=status,
                title=scalar_value(mapping, "title") or "",
                phase=_phase_number(ancestors),
            )
        )
    return records


def resume_point(tasks: list[TaskRecord]) -> ResumePoint:
    skipped = tuple(task.id for task in tasks if task.status is TaskStatus.COMPLETED)
    remaining = tuple(task for task in tasks if task.status is not TaskStatus.COMPLETED)
    start_id = next(
        (
            task.id
            for task in remaining
            if task.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
        ),
        None,
    )
    return ResumePoint(skipped_ids=skipped, remaining=remaining, start_id=start_id)


def update_task_status(path: Path, task_id: str, new_status: TaskStatus) -> TaskUpdate:
    text = _read_text(path)
    mapping = find_mapping(
        _compose(text, path),
        lambda node: _is_task(node) and scalar_value(node, "id") == task_id,
    )
    if mapping is None:
        raise TasksFileError(f"Task not found: {task_id}")
    status_node = mapping_get(mapping, "status")
    assert isinstance(status_node, ScalarNode)
    update = TaskUpdate(
        task_id=task_id, previous_status=status_node.value, new_status=new_status.value
    )
    if not update.changed:
        return update
    # Marks index the composed text, so only the scalar itself is replaced.
    start, end = status_node.start_mark.index, status_node.end_mark.index
    path.write_text(text[:start] + new_status.value + text[end:], encoding="utf-8")
    return update


def task_stats(tasks: list[TaskRecord]) -> TaskStats:
    stats = TaskStats(total=len(tasks))
    for task in tasks:
        if task.status is TaskStatus.COMPLETED:
            stats.completed += 1
        elif task.status is TaskStatus.IN_PROGRESS:
            stats.in_progress += 1
        elif task.status is TaskStatus.BLOCKED:
            stats.blocked += 1
        else:
            stats.pending += 1
        if task.phase is not None:
            done, total = stats.phases.get(task.phase, (0, 0))
            completed = 1 if task.status is TaskStatus.COMPLETED else 0
            stats.phases[task.phase] = (done + completed, total + 1)
    return stats


def format_task_summary(stats: TaskStats) -> str:
    lines = [
        f"  Total: {stats.total}",
        f"  Completed: {stats.completed} ({stats.completion_percentage:.0f}%)",
        f"  In progress: {stats.in_progress}",
        f"  Pending: {stats.pending}",
        f"  Blocked: {stats.blocked}",
    ]
    if stats.phases:
        complete = sum(1 for done, total in stats.phases.values() if done == total)
        lines.append(f"  Phases complete: {complete}/{len(stats.phases)}")
    return "\n".join(lines) + "\n"
