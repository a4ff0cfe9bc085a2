"""Task manager facade for Taskweave.

``TaskManager`` wraps a ``Workspace`` and turns every operation into the
``{"success": ..., "data"/"error": ...}`` envelope shared by the CLI and
the MCP server, adding a human readable message and a suggested next step.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Union

from .ai import TaskGenerator
from .config import ConfigError, Settings
from .errors import (
    INPUT_VALIDATION_ERROR,
    INTERNAL_ERROR,
    TaskValidationError,
    TaskweaveError,
    error_response,
    success_response,
)
from .taskweave_logging import log_error_with_context
from .workspace import Workspace


logger = logging.getLogger("taskweave.workflow")


class TaskManager:
    """Runs workspace operations and wraps their results for callers."""

    def __init__(
        self,
        root: Path | str,
        *,
        task_group: Optional[str] = None,
        settings: Optional[Settings] = None,
        generator: Optional[TaskGenerator] = None,
    ):
        """Initialize the manager with the workspace at ``root``."""
        self.workspace = Workspace(root, settings=settings, task_group=task_group, generator=generator)

    def _respond(
        self,
        operation: str,
        action: Callable[[], Dict[str, Any]],
        message: Callable[[Dict[str, Any]], str],
        next_step: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            data = action()
        except TaskValidationError as e:
            logger.warning(f"{operation} rejected: {e}")
            return {"success": False, "error": e.error.to_dict()}
        except TaskweaveError as e:
            log_error_with_context(e, {"operation": operation, "root": str(self.workspace.root)})
            return {"success": False, "error": e.error.to_dict()}
        except ConfigError as e:
            logger.error(f"{operation} failed due to configuration: {e}")
            return error_response(INPUT_VALIDATION_ERROR, str(e))
        except Exception as e:
            log_error_with_context(e, {"operation": operation, "root": str(self.workspace.root)})
            return error_response(INTERNAL_ERROR, f"{operation} failed: {e}")

        data = dict(data)
        data["message"] = message(data)
        if next_step:
            data["next_suggested_step"] = next_step
        for warning in data.get("warnings") or []:
            logger.debug(f"{operation}: {warning}")
        return success_response(data)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def initialize(self) -> Dict[str, Any]:
        return self._respond(
            "initialize",
            self.workspace.initialize,
            lambda data: f"Tasks file {'created' if data['created'] else 'already exists'} at {data['tasks_path']}",
            next_step="add_task",
        )

    def list_tasks(self, status: Optional[str] = None, with_subtasks: bool = True) -> Dict[str, Any]:
        return self._respond(
            "list_tasks",
            lambda: self.workspace.list_tasks(status, with_subtasks=with_subtasks),
            lambda data: f"Found {len(data['tasks'])} task(s)",
        )

    def get_task(self, task_id: Union[str, int]) -> Dict[str, Any]:
        return self._respond(
            "get_task",
            lambda: self.workspace.get_task(task_id),
            lambda data: f"Retrieved {'subtask' if data['is_subtask'] else 'task'} {task_id}",
        )

    def next_task(self) -> Dict[str, Any]:
        return self._respond(
            "next_task",
            self.workspace.next_task,
            lambda data: (
                f"Next task: {data['task_id']} - {data['next_task'].get('title', '')}"
                if data["next_task"]
                else "No eligible task found. All tasks are done or blocked by dependencies."
            ),
            next_step="set_task_status",
        )

    # ------------------------------------------------------------------
    # Task insertion and removal
    # ------------------------------------------------------------------

    def add_task(
        self,
        title: str,
        description: str = "",
        *,
        details: str = "",
        test_strategy: str = "",
        priority: Optional[str] = None,
        dependencies: Optional[Sequence[Any]] = None,
        position: Optional[int] = None,
        assignees: Union[str, Sequence[str], None] = None,
        executor: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self._respond(
            "add_task",
            lambda: self.workspace.add_task(
                title,
                description,
                details=details,
                test_strategy=test_strategy,
                priority=priority,
                dependencies=dependencies,
                position=position,
                assignees=assignees,
                executor=executor,
            ),
            lambda data: (
                f"Added task {data['task_id']}"
                + (f"; shifted {data['tasks_shifted']} task(s) up" if data["tasks_shifted"] else "")
            ),
            next_step="add_subtask",
        )

    def remove_task(self, task_ids: Union[str, Sequence[Any]]) -> Dict[str, Any]:
        return self._respond(
            "remove_task",
            lambda: self.workspace.remove_tasks(task_ids),
            lambda data: (
                f"Removed task(s) {', '.join(str(task_id) for task_id in data['removed_ids'])}; "
                f"{data['tasks_changed']} task id(s) compacted, "
                f"{data['dependencies_dropped']} dependency reference(s) dropped"
            ),
        )

    def renumber(self, sort_first: bool = True) -> Dict[str, Any]:
        return self._respond(
            "renumber",
            lambda: self.workspace.renumber(sort_first=sort_first),
            lambda data: (
                f"Renumbered {data['task_count']} task(s): {data['tasks_changed']} id(s) changed, "
                f"{data['dependencies_dropped']} dependency reference(s) dropped"
            ),
            next_step="validate_dependencies",
        )

    def import_tasks(
        self, tasks: Sequence[Dict[str, Any]], *, append: bool = False, force: bool = False
    ) -> Dict[str, Any]:
        return self._respond(
            "import_tasks",
            lambda: self.workspace.import_tasks(tasks, append=append, force=force),
            lambda data: f"Imported {data['imported']} task(s); {data['total_tasks']} task(s) in total",
            next_step="next_task",
        )

    # ------------------------------------------------------------------
    # Subtasks
    # ------------------------------------------------------------------

    def add_subtask(
        self,
        parent_id: Union[str, int],
        title: str,
        description: str = "",
        *,
        details: str = "",
        dependencies: Optional[Sequence[Any]] = None,
        status: str = "pending",
    ) -> Dict[str, Any]:
        return self._respond(
            "add_subtask",
            lambda: self.workspace.add_subtask(
                parent_id, title, description, details=details, dependencies=dependencies, status=status
            ),
            lambda data: f"Added subtask {data['subtask_id']}",
        )

    def remove_subtask(self, subtask_id: str, convert_to_task: bool = False) -> Dict[str, Any]:
        return self._respond(
            "remove_subtask",
            lambda: self.workspace.remove_subtask(subtask_id, convert_to_task=convert_to_task),
            lambda data: (
                f"Converted subtask {subtask_id} to task {data['converted_task']['id']}"
                if data["converted_task"]
                else f"Removed subtask {subtask_id}"
            ),
        )

    def clear_subtasks(
        self, task_ids: Union[str, Sequence[Any], None] = None, all_tasks: bool = False
    ) -> Dict[str, Any]:
        return self._respond(
            "clear_subtasks",
            lambda: self.workspace.clear_subtasks(task_ids, all_tasks=all_tasks),
            lambda data: (
                f"Cleared {data['cleared_count']} subtask(s) from {len(data['results'])} task(s)"
                + (f"; {len(data['errors'])} task id(s) not found" if data["errors"] else "")
            ),
        )

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def set_status(self, task_ids: Union[str, Sequence[Any]], status: str) -> Dict[str, Any]:
        return self._respond(
            "set_status",
            lambda: self.workspace.set_status(task_ids, status),
            lambda data: f"Set status of {', '.join(data['updated'])} to '{status}'",
            next_step="next_task",
        )

    def update_task(self, task_id: Union[str, int], attributes: Dict[str, Any]) -> Dict[str, Any]:
        return self._respond(
            "update_task",
            lambda: self.workspace.update_task(task_id, attributes),
            lambda data: f"Updated {', '.join(data['updated_fields'])} of {task_id}",
        )

    def update_task_with_ai(
        self, task_id: Union[str, int], prompt: str, research: bool = False
    ) -> Dict[str, Any]:
        return self._respond(
            "update_task_with_ai",
            lambda: self.workspace.update_task_with_ai(task_id, prompt, research=research),
            lambda data: f"Updated task {task_id} from prompt",
        )

    def add_result(self, task_id: Union[str, int], action: str, result: str) -> Dict[str, Any]:
        return self._respond(
            "add_result",
            lambda: self.workspace.add_result(task_id, action, result),
            lambda data: f"Recorded result for {data['task_id']} ({data['result_count']} in total)",
        )

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: Union[str, int], depends_on: Union[str, int]) -> Dict[str, Any]:
        return self._respond(
            "add_dependency",
            lambda: self.workspace.add_dependency(task_id, depends_on),
            lambda data: data.get("message") or f"{data['task_id']} now depends on {data['depends_on']}",
        )

    def remove_dependency(self, task_id: Union[str, int], depends_on: Union[str, int]) -> Dict[str, Any]:
        return self._respond(
            "remove_dependency",
            lambda: self.workspace.remove_dependency(task_id, depends_on),
            lambda data: data.get("message") or f"{data['task_id']} no longer depends on {data['depends_on']}",
        )

    def validate_dependencies(self) -> Dict[str, Any]:
        return self._respond(
            "validate_dependencies",
            self.workspace.validate_dependencies,
            lambda data: (
                "All dependencies are valid"
                if data["valid"]
                else f"Found {len(data['issues'])} dependency issue(s)"
            ),
            next_step="fix_dependencies",
        )

    def fix_dependencies(self) -> Dict[str, Any]:
        return self._respond(
            "fix_dependencies",
            self.workspace.fix_dependencies,
            lambda data: f"Fixed {data['fixed']} dependency issue(s)" if data["fixed"] else "No dependency issues found",
        )
