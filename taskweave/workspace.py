"""Workspace management for Taskweave.

This module owns the task document of one project and task group. Every
mutating operation loads the document, computes the complete new task
list with the ID engine, and persists it once at the end.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .ai import (
    UPDATE_TASK_SYSTEM_PROMPT,
    OpenAITaskGenerator,
    TaskGenerator,
    aggregate_telemetry,
    build_update_prompt,
    parse_task_json,
    preserve_completed_subtasks,
    validate_updated_task,
)
from .config import Settings, load_settings
from .errors import (
    DEPENDENCY_CYCLE,
    FILE_NOT_FOUND_ERROR,
    INPUT_VALIDATION_ERROR,
    MISSING_ARGUMENT,
    SUBTASK_NOT_FOUND,
    TASK_COMPLETED,
    TASK_NOT_FOUND,
    TaskNotFoundError,
    TaskValidationError,
)
from .ids import (
    IdChangeResult,
    apply_mapping,
    compact_task_ids,
    creates_cycle,
    dependency_graph,
    find_cycles,
    identity_mapping,
    node_key,
    offset_mapping,
    prune_dangling,
    regenerate_sequential_ids,
    resolve_dependencies,
    shift_task_ids,
)
from .models import (
    DEFAULT_EXECUTOR,
    DEFAULT_PRIORITY,
    DONE_STATUSES,
    EXECUTORS,
    PRIORITIES,
    TASK_STATUSES,
    Reference,
    Subtask,
    SubtaskRef,
    Task,
    TaskDocument,
    TaskRef,
    parse_reference,
    parse_references,
    parse_task_id,
)
from .store import JsonDocumentStore
from .taskweave_logging import (
    LogSettings,
    OperationLog,
    log_error_with_context,
    log_operation,
    log_performance,
)


logger = logging.getLogger("taskweave.workspace")

TASK_GROUP_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
UPDATABLE_FIELDS = (
    "title",
    "description",
    "details",
    "testStrategy",
    "priority",
    "dependencies",
    "assignees",
    "executor",
    "verifications",
    "metadata",
)
PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}

Target = Tuple[Task, Optional[Subtask]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _split_ids(raw: Union[str, int, Sequence[Any], None]) -> List[Any]:
    """Accept ``"1,2,3"``, a single id, or a list of ids."""
    if raw is None:
        return []
    if isinstance(raw, str):
        return [part.strip() for part in raw.split(",") if part.strip()]
    if isinstance(raw, (list, tuple, set)):
        return list(raw)
    return [raw]


def _replace_task(tasks: Sequence[Task], updated: Task) -> List[Task]:
    return [updated if task.id == updated.id else task for task in tasks]


def _replace_subtask(task: Task, updated: Subtask) -> Task:
    return replace(
        task,
        subtasks=[updated if subtask.id == updated.id else subtask for subtask in task.subtasks],
    )


class Workspace:
    """Manage the task document of a project."""

    def __init__(
        self,
        root: Path | str,
        *,
        settings: Optional[Settings] = None,
        task_group: Optional[str] = None,
        store: Optional[JsonDocumentStore] = None,
        generator: Optional[TaskGenerator] = None,
    ):
        """Initialize workspace with given root directory."""
        try:
            self.root = Path(root).expanduser().resolve()
            if not self.root.is_dir():
                raise TaskValidationError(
                    f"Project root '{root}' does not exist.", code=FILE_NOT_FOUND_ERROR
                )
            self.settings = settings or load_settings(self.root)
            self.task_group = task_group or self.settings.task_group
            if not TASK_GROUP_PATTERN.match(self.task_group):
                raise TaskValidationError(
                    f"Invalid task group '{self.task_group}'", code=INPUT_VALIDATION_ERROR
                )

            self.base_dir = self.root / self.settings.storage_dir
            self.group_dir = self.base_dir / self.task_group
            self.tasks_path = self.group_dir / "tasks" / "tasks.json"
            self.legacy_tasks_path = self.root / "tasks" / "tasks.json"
            self.store = store or JsonDocumentStore()
            self.generator = generator

            logger.debug(f"Workspace opened at {self.root} (task group '{self.task_group}')")

        except Exception as e:
            logger.error(f"Failed to initialize workspace: {e}")
            log_error_with_context(e, {"operation": "workspace_init", "root": str(root)})
            raise

    # ------------------------------------------------------------------
    # Document access
    # ------------------------------------------------------------------

    def new_log(self) -> OperationLog:
        """Operation log bound to this workspace's configured level."""
        return OperationLog(LogSettings(self.settings.log_level))

    def initialize(self) -> Dict[str, Any]:
        """Create the storage directory and an empty task file if missing."""
        created = False
        with log_operation("initialize", tasks_path=str(self.tasks_path)):
            if self.store.load(self.tasks_path) is None:
                self.store.store(self.tasks_path, TaskDocument(fields={"tasks": []}))
                created = True
        return {"tasks_path": str(self.tasks_path), "task_group": self.task_group, "created": created}

    def load_document(self, *, required: bool = False) -> TaskDocument:
        """Load the task document, falling back to the legacy location."""
        document = self.store.load(self.tasks_path)
        if document is None and self.legacy_tasks_path != self.tasks_path:
            document = self.store.load(self.legacy_tasks_path)
            if document is not None:
                logger.info(f"Using legacy tasks file at {self.legacy_tasks_path}")
        if document is None:
            if required:
                raise TaskValidationError(
                    f"Tasks file not found at {self.tasks_path}", code=FILE_NOT_FOUND_ERROR
                )
            return TaskDocument()
        return document

    def save_document(self, document: TaskDocument) -> Path:
        try:
            self.store.store(self.tasks_path, document)
        except Exception as e:
            log_error_with_context(e, {"operation": "save_document", "path": str(self.tasks_path)})
            raise
        return self.tasks_path

    def _locate(self, document: TaskDocument, reference: Reference) -> Target:
        if isinstance(reference, TaskRef):
            task = document.find_task(reference.task_id)
            if task is None:
                raise TaskNotFoundError(f"Task with ID {reference.task_id} not found", code=TASK_NOT_FOUND)
            return task, None
        parent = document.find_task(reference.parent_id)
        if parent is None:
            raise TaskNotFoundError(
                f"Parent task with ID {reference.parent_id} not found", code=TASK_NOT_FOUND
            )
        subtask = parent.find_subtask(reference.subtask_id)
        if subtask is None:
            raise TaskNotFoundError(f"Subtask {reference} not found", code=SUBTASK_NOT_FOUND)
        return parent, subtask

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_tasks(self, status: Optional[str] = None, *, with_subtasks: bool = True) -> Dict[str, Any]:
        """List tasks, optionally filtered by a comma separated status list."""
        document = self.load_document()
        wanted = {item.lower() for item in _split_ids(status)}

        tasks = [task for task in document.tasks if not wanted or task.status.lower() in wanted]
        rendered = []
        for task in tasks:
            data = task.to_dict()
            if not with_subtasks:
                data.pop("subtasks", None)
            rendered.append(data)

        by_status: Dict[str, int] = {}
        for task in document.tasks:
            by_status[task.status] = by_status.get(task.status, 0) + 1
        done = sum(1 for task in document.tasks if task.is_done)
        total = len(document.tasks)
        return {
            "tasks": rendered,
            "filter": status,
            "stats": {
                "total": total,
                "by_status": by_status,
                "completion_percentage": round(done * 100 / total, 1) if total else 0.0,
            },
            "tasks_path": str(self.tasks_path),
        }

    def get_task(self, task_id: Union[str, int, float]) -> Dict[str, Any]:
        """Return a task or, for ``"P.S"``, a subtask with its parent id."""
        reference = parse_reference(task_id)
        task, subtask = self._locate(self.load_document(required=True), reference)
        if subtask is None:
            return {"task": task.to_dict(), "is_subtask": False}
        return {
            "task": subtask.to_dict(),
            "is_subtask": True,
            "parent": {"id": task.id, "title": task.title, "status": task.status},
        }

    # ------------------------------------------------------------------
    # Task insertion and removal
    # ------------------------------------------------------------------

    @log_performance("add_task")
    def add_task(
        self,
        title: str,
        description: str = "",
        *,
        details: str = "",
        test_strategy: str = "",
        priority: Optional[str] = None,
        dependencies: Optional[Iterable[Any]] = None,
        position: Optional[int] = None,
        assignees: Union[str, Sequence[str], None] = None,
        executor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Add a task at the end, or at ``position`` shifting later tasks up.

        Dependencies use the numbering from before the insertion. ``assignees``
        may be a comma separated string or a list of names.
        """
        if not title or not title.strip():
            raise TaskValidationError("Task title cannot be empty", code=MISSING_ARGUMENT)
        if priority is not None and priority not in PRIORITIES:
            raise TaskValidationError(
                f"Invalid priority '{priority}'. Expected one of: {', '.join(PRIORITIES)}"
            )
        if executor is not None and executor not in EXECUTORS:
            raise TaskValidationError(
                f"Invalid executor '{executor}'. Expected one of: {', '.join(EXECUTORS)}"
            )
        log = self.new_log()
        references = parse_references(list(dependencies or []), "new task")

        with log_operation("add_task", position=position, tasks_path=str(self.tasks_path)):
            document = self.load_document()
            tasks = document.tasks
            references = resolve_dependencies(
                references, identity_mapping(tasks), owner="new task", log=log
            )

            shifted = 0
            if position is None:
                new_id = document.max_task_id() + 1
            else:
                new_id = parse_task_id(position, "insertion position")
                shift = shift_task_ids(tasks, new_id, log)
                tasks = shift.tasks
                references = [shift.mapping.resolve(ref) for ref in references]
                shifted = shift.changed_count

            new_task = Task(
                id=new_id,
                dependencies=references,
                subtasks=[],
                fields={
                    "id": new_id,
                    "title": title.strip(),
                    "description": description,
                    "details": details,
                    "testStrategy": test_strategy,
                    "status": "pending",
                    "dependencies": [],
                    "priority": priority or DEFAULT_PRIORITY,
                    "assignees": [str(name).strip() for name in _split_ids(assignees) if str(name).strip()],
                    "executor": executor or DEFAULT_EXECUTOR,
                    "subtasks": [],
                },
            )
            tasks = sorted([*tasks, new_task], key=lambda task: task.id)
            self.save_document(document.with_tasks(tasks))

        logger.info(f"Added task {new_id} ({shifted} task(s) shifted)")
        return {
            "task": new_task.to_dict(),
            "task_id": new_id,
            "tasks_shifted": shifted,
            "warnings": log.warnings,
            "tasks_path": str(self.tasks_path),
        }

    @log_performance("remove_tasks")
    def remove_tasks(self, task_ids: Union[str, Sequence[Any]]) -> Dict[str, Any]:
        """Remove whole tasks and compact the ids of the remaining ones."""
        ids = [parse_task_id(raw) for raw in _split_ids(task_ids)]
        if not ids:
            raise TaskValidationError("At least one task id is required", code=MISSING_ARGUMENT)
        log = self.new_log()

        with log_operation("remove_tasks", task_ids=ids):
            document = self.load_document(required=True)
            missing = [task_id for task_id in ids if document.find_task(task_id) is None]
            if missing:
                raise TaskNotFoundError(
                    f"Task(s) not found: {', '.join(str(task_id) for task_id in missing)}",
                    code=TASK_NOT_FOUND,
                )
            removed = [task for task in document.tasks if task.id in ids]
            surviving = [task for task in document.tasks if task.id not in ids]
            result = compact_task_ids(surviving, ids, log)
            self.save_document(document.with_tasks(result.tasks))

        return {
            "removed": [task.to_dict() for task in removed],
            "removed_ids": sorted(set(ids)),
            **result.summary(),
            "warnings": log.warnings,
            "tasks_path": str(self.tasks_path),
        }

    @log_performance("renumber")
    def renumber(self, sort_first: bool = True) -> Dict[str, Any]:
        """Renumber every task to 1..N and every subtask list to 1..M."""
        log = self.new_log()
        with log_operation("renumber", sort_first=sort_first):
            document = self.load_document(required=True)
            result = regenerate_sequential_ids(document.tasks, sort_first=sort_first, log=log)
            self.save_document(document.with_tasks(result.tasks))
        return {
            "task_count": len(result.tasks),
            **result.summary(),
            "warnings": log.warnings,
            "tasks_path": str(self.tasks_path),
        }

    @log_performance("import_tasks")
    def import_tasks(
        self, tasks_data: Sequence[Dict[str, Any]], *, append: bool = False, force: bool = False
    ) -> Dict[str, Any]:
        """Import pre-analysed tasks, replacing or appending to the document.

        Incoming tasks are renumbered 1..N among themselves; when appending
        they are then moved above the current highest id.
        """
        if not tasks_data:
            raise TaskValidationError("No tasks to import", code=MISSING_ARGUMENT)
        log = self.new_log()
        incoming: List[Task] = []
        issues: List[str] = []
        for raw in tasks_data:
            if not isinstance(raw, dict):
                raise TaskValidationError("Imported tasks must be JSON objects")
            data = {
                "status": "pending",
                "priority": DEFAULT_PRIORITY,
                "executor": DEFAULT_EXECUTOR,
                "dependencies": [],
                "subtasks": [],
                **raw,
            }
            task = Task.from_dict(data)
            issues.extend(task.validate())
            incoming.append(task)
        if issues:
            raise TaskValidationError(
                "Imported tasks are invalid: " + "; ".join(issues), details={"issues": issues}
            )

        with log_operation("import_tasks", count=len(incoming), append=append, force=force):
            document = self.load_document()
            if document.tasks and not append and not force:
                raise TaskValidationError(
                    f"Tasks file already contains {len(document.tasks)} task(s). "
                    "Use force to overwrite or append to add to it."
                )
            normalized = regenerate_sequential_ids(incoming, sort_first=True, log=log)
            imported = normalized.tasks
            if append and document.tasks:
                moved = apply_mapping(imported, offset_mapping(imported, document.max_task_id()), log)
                imported = moved.tasks
                tasks = [*document.tasks, *imported]
            else:
                tasks = imported
            self.save_document(document.with_tasks(tasks))

        return {
            "imported": len(imported),
            "task_ids": [task.id for task in imported],
            "appended": bool(append and len(tasks) > len(imported)),
            "total_tasks": len(tasks),
            "warnings": log.warnings,
            "tasks_path": str(self.tasks_path),
        }

    # ------------------------------------------------------------------
    # Subtasks
    # ------------------------------------------------------------------

    @log_performance("add_subtask")
    def add_subtask(
        self,
        parent_id: Union[str, int],
        title: str,
        description: str = "",
        *,
        details: str = "",
        dependencies: Optional[Iterable[Any]] = None,
        status: str = "pending",
    ) -> Dict[str, Any]:
        """Append a subtask to ``parent_id`` with the next free subtask id."""
        if not title or not title.strip():
            raise TaskValidationError("Subtask title cannot be empty", code=MISSING_ARGUMENT)
        parent_ref = TaskRef(parse_task_id(parent_id, "parent task id"))
        log = self.new_log()

        with log_operation("add_subtask", parent_id=parent_ref.task_id):
            document = self.load_document(required=True)
            parent, _ = self._locate(document, parent_ref)
            subtask_id = parent.next_subtask_id()
            owner = f"subtask {parent.id}.{subtask_id}"
            references = resolve_dependencies(
                parse_references(list(dependencies or []), owner),
                identity_mapping(document.tasks),
                owner=owner,
                log=log,
            )
            subtask = Subtask(
                id=subtask_id,
                dependencies=references,
                fields={
                    "id": subtask_id,
                    "title": title.strip(),
                    "description": description,
                    "details": details,
                    "status": status,
                    "dependencies": [],
                },
            )
            updated = replace(parent, subtasks=[*parent.subtasks, subtask])
            self.save_document(document.with_tasks(_replace_task(document.tasks, updated)))

        return {
            "subtask": subtask.to_dict(),
            "subtask_id": str(SubtaskRef(parent.id, subtask_id)),
            "parent_id": parent.id,
            "warnings": log.warnings,
        }

    @log_performance("remove_subtask")
    def remove_subtask(self, subtask_id: str, *, convert_to_task: bool = False) -> Dict[str, Any]:
        """Remove subtask ``"P.S"``; references to it are dropped.

        With ``convert_to_task`` the subtask becomes a new top-level task.
        """
        reference = parse_reference(subtask_id)
        if not isinstance(reference, SubtaskRef):
            raise TaskValidationError(
                f"Invalid subtask id '{subtask_id}'; expected the form 'parentId.subtaskId'"
            )
        log = self.new_log()

        with log_operation("remove_subtask", subtask_id=str(reference), convert=convert_to_task):
            document = self.load_document(required=True)
            parent, subtask = self._locate(document, reference)
            updated_parent = replace(
                parent, subtasks=[item for item in parent.subtasks if item.id != subtask.id]
            )
            tasks = _replace_task(document.tasks, updated_parent)

            converted: Optional[Task] = None
            if convert_to_task:
                new_id = document.max_task_id() + 1
                converted = Task(
                    id=new_id,
                    dependencies=list(subtask.dependencies),
                    subtasks=[],
                    fields={
                        "priority": DEFAULT_PRIORITY,
                        **subtask.fields,
                        "id": new_id,
                        "subtasks": [],
                    },
                )
                tasks.append(converted)

            result = prune_dangling(tasks, log)
            self.save_document(document.with_tasks(result.tasks))

        return {
            "removed": subtask.to_dict(),
            "converted_task": result_task(result, converted.id).to_dict() if converted else None,
            "dependencies_dropped": result.dropped_count,
            "warnings": log.warnings,
        }

    @log_performance("clear_subtasks")
    def clear_subtasks(
        self, task_ids: Union[str, Sequence[Any], None] = None, *, all_tasks: bool = False
    ) -> Dict[str, Any]:
        """Remove all subtasks from the given tasks (or from every task)."""
        log = self.new_log()
        with log_operation("clear_subtasks", task_ids=str(task_ids), all_tasks=all_tasks):
            document = self.load_document(required=True)
            if all_tasks:
                if not document.tasks:
                    raise TaskValidationError("No tasks found in the tasks file", code=INPUT_VALIDATION_ERROR)
                targets = [task.id for task in document.tasks]
            else:
                raw_ids = _split_ids(task_ids)
                if not raw_ids:
                    raise TaskValidationError(
                        "Either task ids or all_tasks must be provided", code=MISSING_ARGUMENT
                    )
                targets = [parse_task_id(raw) for raw in raw_ids]

            results: List[Dict[str, Any]] = []
            errors: List[Dict[str, Any]] = []
            tasks = list(document.tasks)
            for task_id in targets:
                task = next((item for item in tasks if item.id == task_id), None)
                if task is None:
                    errors.append({"task_id": task_id, "error": f"Task {task_id} not found"})
                    continue
                results.append(
                    {"task_id": task_id, "title": task.title, "subtasks_cleared": len(task.subtasks)}
                )
                if task.subtasks:
                    tasks = _replace_task(tasks, replace(task, subtasks=[]))

            if not results:
                raise TaskNotFoundError(
                    "None of the requested tasks exist", code=TASK_NOT_FOUND, details={"errors": errors}
                )
            cleared = sum(item["subtasks_cleared"] for item in results)
            if cleared:
                pruned = prune_dangling(tasks, log)
                self.save_document(document.with_tasks(pruned.tasks))

        return {
            "cleared_count": cleared,
            "results": results,
            "errors": errors,
            "warnings": log.warnings,
        }

    # ------------------------------------------------------------------
    # Field updates
    # ------------------------------------------------------------------

    @log_performance("update_task")
    def update_task(self, task_id: Union[str, int, float], attributes: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``attributes`` into a task or subtask.

        Completed tasks and subtasks are not updated.
        """
        if not attributes:
            raise TaskValidationError("No attributes to update", code=MISSING_ARGUMENT)
        unknown = sorted(set(attributes) - set(UPDATABLE_FIELDS))
        if unknown:
            raise TaskValidationError(
                f"Cannot update field(s): {', '.join(unknown)}. "
                f"Updatable fields: {', '.join(UPDATABLE_FIELDS)}"
            )
        reference = parse_reference(task_id)
        log = self.new_log()

        with log_operation("update_task", task_id=str(reference), fields=sorted(attributes)):
            document = self.load_document(required=True)
            task, subtask = self._locate(document, reference)
            target = subtask or task
            if target.status in DONE_STATUSES:
                raise TaskValidationError(
                    f"{'Subtask' if subtask else 'Task'} {reference} is already marked as "
                    f"{target.status} and cannot be updated",
                    code=TASK_COMPLETED,
                )

            changes = {key: value for key, value in attributes.items() if key != "dependencies"}
            if isinstance(changes.get("metadata"), dict) and isinstance(target.fields.get("metadata"), dict):
                changes["metadata"] = {**target.fields["metadata"], **changes["metadata"]}
            updated = target.with_fields(**changes)

            if "dependencies" in attributes:
                owner = f"subtask {reference}" if subtask else f"task {task.id}"
                references = resolve_dependencies(
                    parse_references(attributes["dependencies"], owner),
                    identity_mapping(document.tasks),
                    owner=owner,
                    log=log,
                )
                self._check_new_dependencies(document.tasks, reference, references)
                updated = replace(updated, dependencies=references)

            issues = updated.validate()
            if issues:
                raise TaskValidationError("; ".join(issues), details={"issues": issues})

            if subtask is None:
                new_task = updated
            else:
                new_task = _replace_subtask(task, updated)
            self.save_document(document.with_tasks(_replace_task(document.tasks, new_task)))

        return {
            "task": updated.to_dict(),
            "updated_fields": sorted(attributes),
            "is_subtask": subtask is not None,
            "warnings": log.warnings,
        }

    def _check_new_dependencies(
        self, tasks: Sequence[Task], reference: Reference, references: Sequence[Reference]
    ) -> None:
        if reference in references:
            raise TaskValidationError(f"{reference} cannot depend on itself")
        graph = dependency_graph(tasks)
        source = str(reference)
        graph[source] = []
        for dependency in references:
            if creates_cycle(graph, source, str(dependency)):
                raise TaskValidationError(
                    f"Dependency {source} -> {dependency} would create a circular dependency",
                    code=DEPENDENCY_CYCLE,
                )
            graph[source].append(str(dependency))

    @log_performance("set_status")
    def set_status(self, task_ids: Union[str, Sequence[Any]], status: str) -> Dict[str, Any]:
        """Set the status of tasks and subtasks; done tasks close their subtasks too."""
        if status not in TASK_STATUSES:
            raise TaskValidationError(
                f"Invalid status '{status}'. Expected one of: {', '.join(TASK_STATUSES)}"
            )
        references = [parse_reference(raw) for raw in _split_ids(task_ids)]
        if not references:
            raise TaskValidationError("At least one task id is required", code=MISSING_ARGUMENT)

        updated_ids: List[str] = []
        with log_operation("set_status", task_ids=[str(ref) for ref in references], status=status):
            document = self.load_document(required=True)
            tasks = list(document.tasks)
            for reference in references:
                task, subtask = self._locate(document.with_tasks(tasks), reference)
                if subtask is not None:
                    tasks = _replace_task(tasks, _replace_subtask(task, subtask.with_fields(status=status)))
                else:
                    updated = task.with_fields(status=status)
                    if status in DONE_STATUSES:
                        updated = replace(
                            updated,
                            subtasks=[item.with_fields(status=status) for item in updated.subtasks],
                        )
                    tasks = _replace_task(tasks, updated)
                updated_ids.append(str(reference))
            self.save_document(document.with_tasks(tasks))

        return {"updated": updated_ids, "status": status}

    @log_performance("add_result")
    def add_result(self, task_id: Union[str, int, float], action: str, result: str) -> Dict[str, Any]:
        """Append a timestamped result entry to a task or subtask."""
        if not action or not action.strip():
            raise TaskValidationError("Action is required", code=MISSING_ARGUMENT)
        if result is None or not str(result).strip():
            raise TaskValidationError("Result is required", code=MISSING_ARGUMENT)
        reference = parse_reference(task_id)

        with log_operation("add_result", task_id=str(reference), action=action):
            document = self.load_document(required=True)
            task, subtask = self._locate(document, reference)
            target = subtask or task
            existing = target.fields.get("results")
            if isinstance(existing, list):
                results = list(existing)
            elif existing:
                results = [{"action": "note", "updateTime": None, "result": existing}]
            else:
                results = []
            entry = {"action": action.strip(), "updateTime": _now(), "result": str(result)}
            results.append(entry)
            updated = target.with_fields(results=results)
            new_task = updated if subtask is None else _replace_subtask(task, updated)
            self.save_document(document.with_tasks(_replace_task(document.tasks, new_task)))

        return {"task_id": str(reference), "result": entry, "result_count": len(results)}

    # ------------------------------------------------------------------
    # Dependency management
    # ------------------------------------------------------------------

    @log_performance("add_dependency")
    def add_dependency(self, task_id: Union[str, int, float], depends_on: Union[str, int, float]) -> Dict[str, Any]:
        """Make ``task_id`` depend on ``depends_on`` unless that closes a cycle."""
        reference = parse_reference(task_id)
        dependency = parse_reference(depends_on)

        with log_operation("add_dependency", task_id=str(reference), depends_on=str(dependency)):
            document = self.load_document(required=True)
            task, subtask = self._locate(document, reference)
            self._locate(document, dependency)
            target = subtask or task
            if dependency in target.dependencies:
                return {
                    "task_id": str(reference),
                    "depends_on": str(dependency),
                    "added": False,
                    "message": f"{reference} already depends on {dependency}",
                }
            if reference == dependency:
                raise TaskValidationError(f"{reference} cannot depend on itself")
            if creates_cycle(dependency_graph(document.tasks), str(reference), str(dependency)):
                raise TaskValidationError(
                    f"Dependency {reference} -> {dependency} would create a circular dependency",
                    code=DEPENDENCY_CYCLE,
                )
            updated = replace(target, dependencies=[*target.dependencies, dependency])
            new_task = updated if subtask is None else _replace_subtask(task, updated)
            self.save_document(document.with_tasks(_replace_task(document.tasks, new_task)))

        return {
            "task_id": str(reference),
            "depends_on": str(dependency),
            "added": True,
            "dependencies": [str(ref) for ref in updated.dependencies],
        }

    @log_performance("remove_dependency")
    def remove_dependency(self, task_id: Union[str, int, float], depends_on: Union[str, int, float]) -> Dict[str, Any]:
        reference = parse_reference(task_id)
        dependency = parse_reference(depends_on)

        with log_operation("remove_dependency", task_id=str(reference), depends_on=str(dependency)):
            document = self.load_document(required=True)
            task, subtask = self._locate(document, reference)
            target = subtask or task
            if dependency not in target.dependencies:
                return {
                    "task_id": str(reference),
                    "depends_on": str(dependency),
                    "removed": False,
                    "message": f"{reference} does not depend on {dependency}",
                }
            updated = replace(target, dependencies=[ref for ref in target.dependencies if ref != dependency])
            new_task = updated if subtask is None else _replace_subtask(task, updated)
            self.save_document(document.with_tasks(_replace_task(document.tasks, new_task)))

        return {
            "task_id": str(reference),
            "depends_on": str(dependency),
            "removed": True,
            "dependencies": [str(ref) for ref in updated.dependencies],
        }

    def validate_dependencies(self) -> Dict[str, Any]:
        """Report self, missing, duplicate and circular references without writing."""
        document = self.load_document(required=True)
        graph = dependency_graph(document.tasks)
        issues: List[Dict[str, str]] = []

        for node, edges in graph.items():
            seen: Set[str] = set()
            for edge in edges:
                if edge == node:
                    issues.append({"type": "self", "node": node, "reference": edge})
                elif edge not in graph:
                    issues.append({"type": "missing", "node": node, "reference": edge})
                elif edge in seen:
                    issues.append({"type": "duplicate", "node": node, "reference": edge})
                seen.add(edge)
        # Self references are reported above, not as cycles.
        without_self = {node: [edge for edge in edges if edge != node] for node, edges in graph.items()}
        for node in without_self:
            if node in find_cycles(node, without_self):
                issues.append({"type": "cycle", "node": node, "reference": node})

        return {
            "valid": not issues,
            "issues": issues,
            "tasks_checked": len(document.tasks),
            "subtasks_checked": sum(len(task.subtasks) for task in document.tasks),
        }

    @log_performance("fix_dependencies")
    def fix_dependencies(self) -> Dict[str, Any]:
        """Remove self, duplicate, missing and cycle-closing references."""
        log = self.new_log()
        counts = {"self": 0, "duplicate": 0, "missing": 0, "cycle": 0}

        with log_operation("fix_dependencies"):
            document = self.load_document(required=True)
            cleaned: List[Task] = []
            for task in document.tasks:
                subtasks = [
                    replace(
                        subtask,
                        dependencies=self._dedupe(
                            subtask.dependencies, SubtaskRef(task.id, subtask.id), log, counts
                        ),
                    )
                    for subtask in task.subtasks
                ]
                cleaned.append(
                    replace(
                        task,
                        dependencies=self._dedupe(task.dependencies, TaskRef(task.id), log, counts),
                        subtasks=subtasks,
                    )
                )

            pruned = prune_dangling(cleaned, log)
            counts["missing"] = pruned.dropped_count
            tasks = self._break_cycles(pruned.tasks, log, counts)

            total = sum(counts.values())
            if total:
                self.save_document(document.with_tasks(tasks))

        return {"fixed": total, "by_type": counts, "warnings": log.warnings}

    @staticmethod
    def _dedupe(
        references: Sequence[Reference], own: Reference, log: OperationLog, counts: Dict[str, int]
    ) -> List[Reference]:
        kept: List[Reference] = []
        for reference in references:
            if reference == own:
                counts["self"] += 1
                log.warn(f"Removed self-dependency of {own}")
            elif reference in kept:
                counts["duplicate"] += 1
                log.warn(f"Removed duplicate dependency {reference} of {own}")
            else:
                kept.append(reference)
        return kept

    @staticmethod
    def _break_cycles(tasks: List[Task], log: OperationLog, counts: Dict[str, int]) -> List[Task]:
        graph = dependency_graph(tasks)
        removed: Set[Tuple[str, str]] = set()
        for node in list(graph):
            for edge in list(graph[node]):
                if node in find_cycles(node, {**graph, node: [edge]}):
                    graph[node].remove(edge)
                    removed.add((node, edge))
                    counts["cycle"] += 1
                    log.warn(f"Removed dependency {node} -> {edge} to break a circular dependency")
        if not removed:
            return tasks

        def keep(owner: str, references: Sequence[Reference]) -> List[Reference]:
            return [ref for ref in references if (owner, str(ref)) not in removed]

        return [
            replace(
                task,
                dependencies=keep(node_key(task.id), task.dependencies),
                subtasks=[
                    replace(subtask, dependencies=keep(node_key(task.id, subtask.id), subtask.dependencies))
                    for subtask in task.subtasks
                ],
            )
            for task in tasks
        ]

    # ------------------------------------------------------------------
    # Planning helpers
    # ------------------------------------------------------------------

    def next_task(self) -> Dict[str, Any]:
        """Pick the next task to work on.

        Subtasks of in-progress tasks come first; otherwise the pending or
        in-progress task with satisfied dependencies, highest priority,
        fewest dependencies and lowest id.
        """
        document = self.load_document(required=True)
        done: Set[str] = set()
        for task in document.tasks:
            if task.is_done:
                done.add(node_key(task.id))
            for subtask in task.subtasks:
                if subtask.status in DONE_STATUSES:
                    done.add(node_key(task.id, subtask.id))

        def ready(references: Sequence[Reference]) -> bool:
            return all(str(ref) in done for ref in references)

        candidates = []
        for task in document.tasks:
            if task.status != "in-progress":
                continue
            for subtask in task.subtasks:
                if subtask.status in ("pending", "in-progress") and ready(subtask.dependencies):
                    priority = subtask.fields.get("priority") or task.priority
                    rank = (PRIORITY_RANK.get(priority, 1), len(subtask.dependencies), task.id, subtask.id)
                    candidates.append((rank, task, subtask))
        if candidates:
            _, task, subtask = min(candidates, key=lambda item: item[0])
            return {
                "next_task": subtask.to_dict(),
                "task_id": str(SubtaskRef(task.id, subtask.id)),
                "is_subtask": True,
                "parent": {"id": task.id, "title": task.title},
            }

        eligible = [
            task
            for task in document.tasks
            if task.status in ("pending", "in-progress") and ready(task.dependencies)
        ]
        if not eligible:
            return {"next_task": None, "task_id": None, "is_subtask": False}
        task = min(eligible, key=lambda item: (PRIORITY_RANK.get(item.priority, 1), len(item.dependencies), item.id))
        return {"next_task": task.to_dict(), "task_id": str(task.id), "is_subtask": False}

    # ------------------------------------------------------------------
    # AI-assisted updates
    # ------------------------------------------------------------------

    @log_performance("update_task_with_ai")
    def update_task_with_ai(
        self,
        task_id: Union[str, int],
        prompt: str,
        *,
        research: bool = False,
        generator: Optional[TaskGenerator] = None,
    ) -> Dict[str, Any]:
        """Rewrite a task from a free-text prompt using the AI collaborator.

        Nothing is written when the generator fails or its reply does not
        pass validation.
        """
        if not prompt or not prompt.strip():
            raise TaskValidationError("A prompt describing the update is required", code=MISSING_ARGUMENT)
        reference = TaskRef(parse_task_id(task_id))
        generator = generator or self.generator or OpenAITaskGenerator(self.settings)
        log = self.new_log()

        with log_operation("update_task_with_ai", task_id=reference.task_id, research=research):
            document = self.load_document(required=True)
            task, _ = self._locate(document, reference)
            if task.is_done:
                raise TaskValidationError(
                    f"Task {task.id} is already marked as {task.status} and cannot be updated",
                    code=TASK_COMPLETED,
                )

            original = task.to_dict()
            generation = generator.generate_text(
                system_prompt=UPDATE_TASK_SYSTEM_PROMPT,
                prompt=build_update_prompt(original, prompt),
                role="research" if research else "main",
            )
            data = validate_updated_task(parse_task_json(generation.text), task.id)
            data = preserve_completed_subtasks(original, data)
            updated = Task.from_dict({**original, **data})

            result = prune_dangling(_replace_task(document.tasks, updated), log)
            self.save_document(document.with_tasks(result.tasks))

        return {
            "task": result_task(result, task.id).to_dict(),
            "telemetry": aggregate_telemetry([generation.telemetry], "update-task"),
            "warnings": log.warnings,
        }


def result_task(result: IdChangeResult, task_id: int) -> Task:
    for task in result.tasks:
        if task.id == task_id:
            return task
    raise TaskNotFoundError(f"Task with ID {task_id} not found", code=TASK_NOT_FOUND)
