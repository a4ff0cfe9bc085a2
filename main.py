"""MCP server exposing Taskweave task management tools."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from mcp.server.fastmcp import FastMCP

from taskweave.config import load_settings, resolve_project_root
from taskweave.taskweave_logging import setup_logging
from taskweave.workflow import TaskManager

mcp = FastMCP("taskweave")


def _manager(root: Optional[str], task_group: Optional[str] = None) -> TaskManager:
    resolved = resolve_project_root(root)
    return TaskManager(resolved, task_group=task_group, settings=load_settings(resolved))


TaskId = Union[int, str]


@mcp.tool()
def initialize_project(root: Optional[str] = None, task_group: Optional[str] = None) -> Dict[str, Any]:
    """Create the tasks file for a project (and task group) if it does not exist yet.
    Call this once before adding tasks to a new project."""
    return _manager(root or ".", task_group).initialize()


@mcp.tool()
def get_tasks(
    status: Optional[str] = None,
    with_subtasks: bool = True,
    root: Optional[str] = None,
    task_group: Optional[str] = None,
) -> Dict[str, Any]:
    """List tasks, optionally filtered by a comma separated status list (e.g. "pending,in-progress")."""
    return _manager(root, task_group).list_tasks(status, with_subtasks=with_subtasks)


@mcp.tool()
def get_task(id: TaskId, root: Optional[str] = None, task_group: Optional[str] = None) -> Dict[str, Any]:
    """Get one task by id ("5") or one subtask by "parentId.subtaskId" ("5.2")."""
    return _manager(root, task_group).get_task(id)


@mcp.tool()
def next_task(root: Optional[str] = None, task_group: Optional[str] = None) -> Dict[str, Any]:
    """Find the next task to work on: dependencies satisfied, highest priority first."""
    return _manager(root, task_group).next_task()


@mcp.tool()
def add_task(
    title: str,
    description: str = "",
    details: str = "",
    test_strategy: str = "",
    priority: Optional[str] = None,
    dependencies: Optional[List[TaskId]] = None,
    position: Optional[int] = None,
    assignees: Optional[str] = None,
    executor: Optional[str] = None,
    root: Optional[str] = None,
    task_group: Optional[str] = None,
) -> Dict[str, Any]:
    """Add a task. With `position`, the new task takes that id and every task at or above
    it moves up by one; dependency references follow the move. Dependencies use the ids
    from before the insertion. `assignees` is a comma separated list of names and
    `executor` is "agent" or "human"."""
    return _manager(root, task_group).add_task(
        title,
        description,
        details=details,
        test_strategy=test_strategy,
        priority=priority,
        dependencies=dependencies,
        position=position,
        assignees=assignees,
        executor=executor,
    )


@mcp.tool()
def remove_task(id: str, root: Optional[str] = None, task_group: Optional[str] = None) -> Dict[str, Any]:
    """Remove one or more whole tasks (comma separated ids). Remaining ids are compacted
    to close the gap and references to removed tasks are dropped with a warning."""
    return _manager(root, task_group).remove_task(id)


@mcp.tool()
def renumber_tasks(
    sort_first: bool = True, root: Optional[str] = None, task_group: Optional[str] = None
) -> Dict[str, Any]:
    """Renumber tasks to 1..N and subtasks to 1..M per parent, rewriting all dependencies.
    Dangling references are dropped and reported."""
    return _manager(root, task_group).renumber(sort_first=sort_first)


@mcp.tool()
def parse_prd(
    tasks: List[Dict[str, Any]],
    append: bool = False,
    force: bool = False,
    root: Optional[str] = None,
    task_group: Optional[str] = None,
) -> Dict[str, Any]:
    """Store pre-analysed tasks derived from a requirements document.
    Tasks are numbered 1..N in id order; with `append` they are placed after the existing tasks.
    Overwriting a non-empty task list requires `force`."""
    return _manager(root, task_group).import_tasks(tasks, append=append, force=force)


@mcp.tool()
def add_subtask(
    id: TaskId,
    title: str,
    description: str = "",
    details: str = "",
    dependencies: Optional[List[TaskId]] = None,
    status: str = "pending",
    root: Optional[str] = None,
    task_group: Optional[str] = None,
) -> Dict[str, Any]:
    """Add a subtask to the parent task `id`; it gets the next free subtask id."""
    return _manager(root, task_group).add_subtask(
        id, title, description, details=details, dependencies=dependencies, status=status
    )


@mcp.tool()
def remove_subtask(
    id: str, convert: bool = False, root: Optional[str] = None, task_group: Optional[str] = None
) -> Dict[str, Any]:
    """Remove subtask "parentId.subtaskId". With `convert` it becomes a standalone task."""
    return _manager(root, task_group).remove_subtask(id, convert_to_task=convert)


@mcp.tool()
def clear_subtasks(
    id: Optional[str] = None,
    all: bool = False,
    root: Optional[str] = None,
    task_group: Optional[str] = None,
) -> Dict[str, Any]:
    """Remove all subtasks from the given tasks (comma separated ids) or from every task with `all`."""
    return _manager(root, task_group).clear_subtasks(id, all_tasks=all)


@mcp.tool()
def set_task_status(
    id: str, status: str, root: Optional[str] = None, task_group: Optional[str] = None
) -> Dict[str, Any]:
    """Set the status of tasks or subtasks (comma separated ids). Marking a task done
    also marks its subtasks done."""
    return _manager(root, task_group).set_status(id, status)


def _direct_attributes(**values: Any) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


@mcp.tool()
def update_task(
    id: TaskId,
    prompt: Optional[str] = None,
    research: bool = False,
    title: Optional[str] = None,
    description: Optional[str] = None,
    details: Optional[str] = None,
    test_strategy: Optional[str] = None,
    priority: Optional[str] = None,
    dependencies: Optional[List[TaskId]] = None,
    assignees: Optional[List[str]] = None,
    executor: Optional[str] = None,
    verifications: Optional[List[Dict[str, Any]]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    root: Optional[str] = None,
    task_group: Optional[str] = None,
) -> Dict[str, Any]:
    """Update a task. Direct fields are merged as given; with `prompt` the task is rewritten
    by the AI collaborator instead. Completed tasks are not updated."""
    manager = _manager(root, task_group)
    if prompt:
        return manager.update_task_with_ai(id, prompt, research=research)
    return manager.update_task(
        id,
        _direct_attributes(
            title=title,
            description=description,
            details=details,
            testStrategy=test_strategy,
            priority=priority,
            dependencies=dependencies,
            assignees=assignees,
            executor=executor,
            verifications=verifications,
            metadata=metadata,
        ),
    )


@mcp.tool()
def update_subtask(
    id: str,
    title: Optional[str] = None,
    description: Optional[str] = None,
    details: Optional[str] = None,
    dependencies: Optional[List[TaskId]] = None,
    assignees: Optional[List[str]] = None,
    executor: Optional[str] = None,
    verifications: Optional[List[Dict[str, Any]]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    root: Optional[str] = None,
    task_group: Optional[str] = None,
) -> Dict[str, Any]:
    """Update fields of subtask "parentId.subtaskId". Use set_task_status for status changes."""
    return _manager(root, task_group).update_task(
        id,
        _direct_attributes(
            title=title,
            description=description,
            details=details,
            dependencies=dependencies,
            assignees=assignees,
            executor=executor,
            verifications=verifications,
            metadata=metadata,
        ),
    )


@mcp.tool()
def add_result(
    id: TaskId, action: str, result: str, root: Optional[str] = None, task_group: Optional[str] = None
) -> Dict[str, Any]:
    """Append a timestamped result entry (action + outcome) to a task or subtask."""
    return _manager(root, task_group).add_result(id, action, result)


@mcp.tool()
def add_dependency(
    id: TaskId, depends_on: TaskId, root: Optional[str] = None, task_group: Optional[str] = None
) -> Dict[str, Any]:
    """Make task/subtask `id` depend on `depends_on`. Circular dependencies are rejected."""
    return _manager(root, task_group).add_dependency(id, depends_on)


@mcp.tool()
def remove_dependency(
    id: TaskId, depends_on: TaskId, root: Optional[str] = None, task_group: Optional[str] = None
) -> Dict[str, Any]:
    """Remove the dependency of `id` on `depends_on`."""
    return _manager(root, task_group).remove_dependency(id, depends_on)


@mcp.tool()
def validate_dependencies(root: Optional[str] = None, task_group: Optional[str] = None) -> Dict[str, Any]:
    """Report self, missing, duplicate and circular dependencies without changing anything."""
    return _manager(root, task_group).validate_dependencies()


@mcp.tool()
def fix_dependencies(root: Optional[str] = None, task_group: Optional[str] = None) -> Dict[str, Any]:
    """Remove self, missing, duplicate and cycle-closing dependencies and save the result."""
    return _manager(root, task_group).fix_dependencies()


if __name__ == "__main__":
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_file)
    mcp.run(transport="stdio")
