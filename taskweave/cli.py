"""Command-line interface for Taskweave."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import ConfigError, load_settings, resolve_project_root
from .errors import TaskweaveError
from .taskweave_logging import setup_logging
from .workflow import TaskManager


def _print_task_table(tasks: List[Dict[str, Any]]) -> None:
    if not tasks:
        print("No tasks found.")
        return
    print(f"{'ID':<8} {'Status':<12} {'Priority':<9} {'Dependencies':<16} Title")
    for task in tasks:
        deps = ", ".join(str(dep) for dep in task.get("dependencies") or []) or "-"
        print(f"{task['id']!s:<8} {task.get('status', 'pending'):<12} {task.get('priority', '-'):<9} {deps:<16} {task.get('title', '')}")
        for subtask in task.get("subtasks") or []:
            sub_id = f"{task['id']}.{subtask['id']}"
            sub_deps = ", ".join(str(dep) for dep in subtask.get("dependencies") or []) or "-"
            print(f"  {sub_id:<6} {subtask.get('status', 'pending'):<12} {'':<9} {sub_deps:<16} {subtask.get('title', '')}")


def _render(command: str, response: Dict[str, Any]) -> None:
    if not response["success"]:
        error = response["error"]
        print(f"Error [{error['code']}]: {error['message']}", file=sys.stderr)
        return
    data = response["data"]
    if command == "list":
        _print_task_table(data["tasks"])
        stats = data["stats"]
        print(f"\n{stats['total']} task(s), {stats['completion_percentage']}% complete")
    elif command in ("show", "next"):
        payload = data.get("task") or data.get("next_task")
        if payload:
            print(json.dumps(payload, indent=2))
    elif command == "validate-dependencies":
        for issue in data["issues"]:
            print(f"  {issue['type']:<10} {issue['node']} -> {issue['reference']}")
    print(data["message"])
    for warning in data.get("warnings") or []:
        print(f"Warning: {warning}", file=sys.stderr)


def _attributes(args: argparse.Namespace) -> Dict[str, Any]:
    attributes: Dict[str, Any] = {}
    for name, key in (
        ("title", "title"),
        ("description", "description"),
        ("details", "details"),
        ("test_strategy", "testStrategy"),
        ("priority", "priority"),
        ("executor", "executor"),
    ):
        value = getattr(args, name, None)
        if value is not None:
            attributes[key] = value
    if args.dependencies is not None:
        attributes["dependencies"] = _id_list(args.dependencies)
    return attributes


def _id_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def _load_import(path: str) -> List[Dict[str, Any]]:
    with open(path, encoding="utf-8") as handle:
        data = json.load(handle)
    if isinstance(data, dict):
        data = data.get("tasks", [])
    return data


COMMANDS: Dict[str, Callable[[TaskManager, argparse.Namespace], Dict[str, Any]]] = {
    "init": lambda m, a: m.initialize(),
    "list": lambda m, a: m.list_tasks(a.status, with_subtasks=a.with_subtasks),
    "show": lambda m, a: m.get_task(a.id),
    "next": lambda m, a: m.next_task(),
    "add": lambda m, a: m.add_task(
        a.title,
        a.description or "",
        details=a.details or "",
        test_strategy=a.test_strategy or "",
        priority=a.priority,
        dependencies=_id_list(a.dependencies),
        position=a.position,
        assignees=a.assignees,
        executor=a.executor,
    ),
    "remove": lambda m, a: m.remove_task(a.ids),
    "renumber": lambda m, a: m.renumber(sort_first=not a.keep_order),
    "import": lambda m, a: m.import_tasks(_load_import(a.file), append=a.append, force=a.force),
    "add-subtask": lambda m, a: m.add_subtask(
        a.parent,
        a.title,
        a.description or "",
        details=a.details or "",
        dependencies=_id_list(a.dependencies),
    ),
    "remove-subtask": lambda m, a: m.remove_subtask(a.id, convert_to_task=a.convert),
    "clear-subtasks": lambda m, a: m.clear_subtasks(a.ids, all_tasks=a.all),
    "set-status": lambda m, a: m.set_status(a.ids, a.status),
    "update": lambda m, a: (
        m.update_task_with_ai(a.id, a.prompt, research=a.research)
        if a.prompt
        else m.update_task(a.id, _attributes(a))
    ),
    "add-result": lambda m, a: m.add_result(a.id, a.action, a.result),
    "add-dependency": lambda m, a: m.add_dependency(a.id, a.depends_on),
    "remove-dependency": lambda m, a: m.remove_dependency(a.id, a.depends_on),
    "validate-dependencies": lambda m, a: m.validate_dependencies(),
    "fix-dependencies": lambda m, a: m.fix_dependencies(),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskweave", description="Taskweave task tracking")
    parser.add_argument("--root", help="Project root (defaults to TASKWEAVE_PROJECT_ROOT or the nearest .taskweave)")
    parser.add_argument("--group", help="Task group to operate on")
    parser.add_argument("--log-level", choices=["debug", "info", "warn", "error"], help="Logging threshold")
    parser.add_argument("--json", action="store_true", help="Print the raw result envelope as JSON")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the task file for the current group")

    list_parser = sub.add_parser("list", help="List tasks")
    list_parser.add_argument("--status", help="Comma separated statuses to show")
    list_parser.add_argument("--with-subtasks", action="store_true", help="Include subtasks")

    show = sub.add_parser("show", help="Show a task or subtask")
    show.add_argument("id", help="Task id (5) or subtask id (5.2)")

    sub.add_parser("next", help="Show the next task to work on")

    add = sub.add_parser("add", help="Add a task")
    add.add_argument("--title", required=True)
    add.add_argument("--description")
    add.add_argument("--details")
    add.add_argument("--test-strategy")
    add.add_argument("--priority", choices=["high", "medium", "low"])
    add.add_argument("--dependencies", help="Comma separated ids")
    add.add_argument("--position", type=int, help="Insert at this id, shifting later tasks up")
    add.add_argument("--assignees", help="Comma separated names")
    add.add_argument("--executor", choices=["agent", "human"])

    remove = sub.add_parser("remove", help="Remove tasks and compact ids")
    remove.add_argument("ids", help="Comma separated task ids")

    renumber = sub.add_parser("renumber", help="Renumber tasks to 1..N")
    renumber.add_argument("--keep-order", action="store_true", help="Number in file order instead of id order")

    import_parser = sub.add_parser("import", help="Import tasks from a JSON file")
    import_parser.add_argument("file", help="JSON file with a tasks array")
    import_parser.add_argument("--append", action="store_true")
    import_parser.add_argument("--force", action="store_true")

    add_subtask = sub.add_parser("add-subtask", help="Add a subtask")
    add_subtask.add_argument("--parent", required=True)
    add_subtask.add_argument("--title", required=True)
    add_subtask.add_argument("--description")
    add_subtask.add_argument("--details")
    add_subtask.add_argument("--dependencies", help="Comma separated ids")

    remove_subtask = sub.add_parser("remove-subtask", help="Remove a subtask")
    remove_subtask.add_argument("id", help="Subtask id, e.g. 5.2")
    remove_subtask.add_argument("--convert", action="store_true", help="Turn it into a standalone task")

    clear = sub.add_parser("clear-subtasks", help="Remove all subtasks from tasks")
    clear.add_argument("--ids", help="Comma separated task ids")
    clear.add_argument("--all", action="store_true", help="Clear subtasks from every task")

    status = sub.add_parser("set-status", help="Set task or subtask status")
    status.add_argument("ids", help="Comma separated ids")
    status.add_argument("status")

    update = sub.add_parser("update", help="Update a task or subtask")
    update.add_argument("id")
    update.add_argument("--title")
    update.add_argument("--description")
    update.add_argument("--details")
    update.add_argument("--test-strategy")
    update.add_argument("--priority", choices=["high", "medium", "low"])
    update.add_argument("--executor", choices=["agent", "human"])
    update.add_argument("--dependencies", help="Comma separated ids; replaces the current list")
    update.add_argument("--prompt", help="Rewrite the task with the AI collaborator")
    update.add_argument("--research", action="store_true", help="Use the research model")

    add_result = sub.add_parser("add-result", help="Record a result for a task or subtask")
    add_result.add_argument("id")
    add_result.add_argument("--action", required=True)
    add_result.add_argument("--result", required=True)

    for name, help_text in (("add-dependency", "Add a dependency"), ("remove-dependency", "Remove a dependency")):
        dependency = sub.add_parser(name, help=help_text)
        dependency.add_argument("id")
        dependency.add_argument("depends_on")

    sub.add_parser("validate-dependencies", help="Report invalid dependencies")
    sub.add_parser("fix-dependencies", help="Remove invalid dependencies")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        root = resolve_project_root(args.root or ("." if args.command == "init" else None))
        settings = load_settings(root).with_overrides(log_level=args.log_level)
        # Console output stays quiet unless a level is asked for explicitly.
        setup_logging(args.log_level or "warn", settings.log_file)
        manager = TaskManager(root, task_group=args.group, settings=settings)
        response = COMMANDS[args.command](manager, args)
    except (ConfigError, TaskweaveError, OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(response, indent=2))
    else:
        _render(args.command, response)
    return 0 if response["success"] else 1


if __name__ == "__main__":
    sys.exit(main())
