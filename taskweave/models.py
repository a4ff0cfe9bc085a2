"""Data models for Taskweave.

This module contains the identifier model (task and subtask references)
and the immutable task records loaded from and written back to the task
document. Only ``id``, ``dependencies`` and ``subtasks`` are interpreted;
every other field of a task is carried through untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import (
    INVALID_TASK_ID,
    INVALID_TASKS_FILE,
    TaskValidationError,
)


TASK_STATUSES = (
    "pending",
    "in-progress",
    "done",
    "completed",
    "review",
    "deferred",
    "blocked",
    "cancelled",
)
DONE_STATUSES = frozenset({"done", "completed"})
PRIORITIES = ("high", "medium", "low")
DEFAULT_PRIORITY = "medium"
EXECUTORS = ("agent", "human")
DEFAULT_EXECUTOR = "agent"


# ----------------------------------------------------------------------
# Identifier model
# ----------------------------------------------------------------------

@dataclass(slots=True, frozen=True, order=True)
class TaskRef:
    """Reference to a top-level task by id."""

    task_id: int

    def encode(self) -> int:
        return self.task_id

    def __str__(self) -> str:
        return str(self.task_id)


@dataclass(slots=True, frozen=True, order=True)
class SubtaskRef:
    """Reference to subtask ``subtask_id`` of task ``parent_id``."""

    parent_id: int
    subtask_id: int

    @property
    def key(self) -> tuple[int, int]:
        return (self.parent_id, self.subtask_id)

    def encode(self) -> Union[float, str]:
        """Encode as a JSON number when it reads back unchanged, else as "P.S"."""
        text = str(self)
        number = float(text)
        if repr(number) == text:
            return number
        return text

    def __str__(self) -> str:
        return f"{self.parent_id}.{self.subtask_id}"


Reference = Union[TaskRef, SubtaskRef]


def _positive(value: int, raw: Any, label: str) -> int:
    if value <= 0:
        raise TaskValidationError(
            f"Invalid {label} '{raw}': ids must be positive integers",
            code=INVALID_TASK_ID,
        )
    return value


def _is_number(text: str) -> bool:
    # str.isdigit() also accepts superscripts and other non-ASCII digits.
    return text.isascii() and text.isdecimal()


def parse_task_id(raw: Any, label: str = "task id") -> int:
    """Parse a whole-task id given as an int or a numeric string."""
    if isinstance(raw, bool) or raw is None:
        raise TaskValidationError(f"Invalid {label} '{raw}'", code=INVALID_TASK_ID)
    if isinstance(raw, int):
        return _positive(raw, raw, label)
    if isinstance(raw, float) and raw.is_integer():
        return _positive(int(raw), raw, label)
    if isinstance(raw, str) and _is_number(raw.strip()):
        return _positive(int(raw.strip()), raw, label)
    raise TaskValidationError(f"Invalid {label} '{raw}'", code=INVALID_TASK_ID)


def parse_reference(raw: Any) -> Reference:
    """Parse a dependency reference from its document encoding.

    Accepts ``5``, ``"5"``, ``5.2`` and ``"5.2"``.
    """
    if isinstance(raw, (TaskRef, SubtaskRef)):
        return raw
    if isinstance(raw, bool) or raw is None:
        raise TaskValidationError(f"Invalid dependency reference '{raw}'", code=INVALID_TASK_ID)
    if isinstance(raw, int):
        return TaskRef(_positive(raw, raw, "dependency reference"))
    if isinstance(raw, float):
        if raw.is_integer():
            return TaskRef(_positive(int(raw), raw, "dependency reference"))
        text = repr(raw)
    elif isinstance(raw, str):
        text = raw.strip()
    else:
        raise TaskValidationError(f"Invalid dependency reference '{raw}'", code=INVALID_TASK_ID)

    parts = text.split(".")
    if not all(_is_number(part) for part in parts) or len(parts) > 2:
        raise TaskValidationError(f"Invalid dependency reference '{raw}'", code=INVALID_TASK_ID)
    if len(parts) == 1:
        return TaskRef(_positive(int(parts[0]), raw, "dependency reference"))
    return SubtaskRef(
        _positive(int(parts[0]), raw, "dependency reference"),
        _positive(int(parts[1]), raw, "dependency reference"),
    )


def parse_references(raw: Any, owner: str = "task") -> List[Reference]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise TaskValidationError(
            f"Dependencies of {owner} must be a list, got {type(raw).__name__}",
            code=INVALID_TASKS_FILE,
        )
    return [parse_reference(item) for item in raw]


def encode_references(references: Iterable[Reference]) -> List[Union[int, float, str]]:
    return [reference.encode() for reference in references]


# ----------------------------------------------------------------------
# Task records
# ----------------------------------------------------------------------

def _payload_issues(fields: Dict[str, Any], label: str) -> List[str]:
    issues = []
    title = fields.get("title")
    if not isinstance(title, str) or not title.strip():
        issues.append(f"{label} title is required")
    priority = fields.get("priority")
    if priority is not None and priority not in PRIORITIES:
        issues.append(f"{label} priority '{priority}' must be one of {', '.join(PRIORITIES)}")
    executor = fields.get("executor")
    if executor is not None and executor not in EXECUTORS:
        issues.append(f"{label} executor '{executor}' must be one of {', '.join(EXECUTORS)}")
    return issues


@dataclass(slots=True, frozen=True)
class Subtask:
    """A unit of work owned by exactly one parent task."""

    id: int
    dependencies: List[Reference] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.fields.get("title", "")

    @property
    def status(self) -> str:
        return self.fields.get("status") or "pending"

    def with_fields(self, **updates: Any) -> "Subtask":
        return replace(self, fields={**self.fields, **updates})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation, preserving unknown fields."""
        data = dict(self.fields)
        data["id"] = self.id
        if "dependencies" in data or self.dependencies:
            data["dependencies"] = encode_references(self.dependencies)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], parent_id: Optional[int] = None) -> "Subtask":
        """Create from dictionary representation."""
        if not isinstance(data, dict):
            raise TaskValidationError(
                f"Subtasks of task {parent_id} must be JSON objects", code=INVALID_TASKS_FILE
            )
        subtask_id = parse_task_id(data.get("id"), "subtask id")
        owner = f"subtask {parent_id}.{subtask_id}" if parent_id else f"subtask {subtask_id}"
        return cls(
            id=subtask_id,
            dependencies=parse_references(data.get("dependencies"), owner),
            fields=dict(data),
        )

    def validate(self) -> List[str]:
        """Validate the subtask and return any issues."""
        return _payload_issues(self.fields, f"Subtask {self.id}")


@dataclass(slots=True, frozen=True)
class Task:
    """A top-level task with its ordered subtasks."""

    id: int
    dependencies: List[Reference] = field(default_factory=list)
    subtasks: List[Subtask] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.fields.get("title", "")

    @property
    def description(self) -> str:
        return self.fields.get("description", "")

    @property
    def status(self) -> str:
        return self.fields.get("status") or "pending"

    @property
    def priority(self) -> str:
        return self.fields.get("priority") or DEFAULT_PRIORITY

    @property
    def is_done(self) -> bool:
        return self.status in DONE_STATUSES

    def with_fields(self, **updates: Any) -> "Task":
        return replace(self, fields={**self.fields, **updates})

    def find_subtask(self, subtask_id: int) -> Optional[Subtask]:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def next_subtask_id(self) -> int:
        return max((subtask.id for subtask in self.subtasks), default=0) + 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation, preserving unknown fields."""
        data = dict(self.fields)
        data["id"] = self.id
        if "dependencies" in data or self.dependencies:
            data["dependencies"] = encode_references(self.dependencies)
        if "subtasks" in data or self.subtasks:
            data["subtasks"] = [subtask.to_dict() for subtask in self.subtasks]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create from dictionary representation."""
        if not isinstance(data, dict):
            raise TaskValidationError("Task entries must be JSON objects", code=INVALID_TASKS_FILE)
        task_id = parse_task_id(data.get("id"))
        raw_subtasks = data.get("subtasks") or []
        if not isinstance(raw_subtasks, list):
            raise TaskValidationError(
                f"Subtasks of task {task_id} must be a list", code=INVALID_TASKS_FILE
            )
        return cls(
            id=task_id,
            dependencies=parse_references(data.get("dependencies"), f"task {task_id}"),
            subtasks=[Subtask.from_dict(item, parent_id=task_id) for item in raw_subtasks],
            fields=dict(data),
        )

    def validate(self) -> List[str]:
        """Validate the task and return any issues."""
        issues = _payload_issues(self.fields, f"Task {self.id}")
        seen = set()
        for subtask in self.subtasks:
            if subtask.id in seen:
                issues.append(f"Task {self.id} has duplicate subtask id {subtask.id}")
            seen.add(subtask.id)
            issues.extend(subtask.validate())
        return issues


@dataclass(slots=True, frozen=True)
class TaskDocument:
    """The whole task file: a ``tasks`` array plus opaque top-level fields."""

    tasks: List[Task] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)

    def find_task(self, task_id: int) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def max_task_id(self) -> int:
        return max((task.id for task in self.tasks), default=0)

    def with_tasks(self, tasks: List[Task]) -> "TaskDocument":
        return replace(self, tasks=list(tasks))

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.fields)
        data["tasks"] = [task.to_dict() for task in self.tasks]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "TaskDocument":
        if isinstance(data, list):
            return cls(tasks=[Task.from_dict(item) for item in data])
        if not isinstance(data, dict):
            raise TaskValidationError(
                "Task document must be a JSON object with a 'tasks' array",
                code=INVALID_TASKS_FILE,
            )
        raw_tasks = data.get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise TaskValidationError("'tasks' must be an array", code=INVALID_TASKS_FILE)
        return cls(tasks=[Task.from_dict(item) for item in raw_tasks], fields=dict(data))
