"""Task ID lifecycle engine.

Assigns, shifts, compacts and regenerates task and subtask ids, and
rewrites every dependency reference so it keeps pointing at the same
task or subtask afterwards. All functions are pure: they return new
``Task`` records and never mutate the lists they are given.

References that cannot be resolved after a rewrite are dropped, and each
dropped reference produces exactly one warning naming it.
"""

from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field, replace
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import (
    DUPLICATE_TASK_ID,
    INVALID_TASK_ID,
    MISSING_ARGUMENT,
    IdMappingError,
    TaskValidationError,
)
from .models import Reference, Subtask, SubtaskRef, Task, TaskRef, parse_task_id
from .taskweave_logging import OperationLog


SubtaskKey = Tuple[int, int]


@dataclass(slots=True, frozen=True)
class IdMapping:
    """Old id to new id, for tasks and for ``(parent, subtask)`` keys."""

    tasks: Dict[int, int] = field(default_factory=dict)
    subtasks: Dict[SubtaskKey, SubtaskKey] = field(default_factory=dict)

    def resolve(self, reference: Reference) -> Optional[Reference]:
        if isinstance(reference, TaskRef):
            new_id = self.tasks.get(reference.task_id)
            return None if new_id is None else TaskRef(new_id)
        new_key = self.subtasks.get(reference.key)
        return None if new_key is None else SubtaskRef(*new_key)

    @property
    def changed(self) -> Dict[int, int]:
        return {old: new for old, new in self.tasks.items() if old != new}


@dataclass(slots=True, frozen=True)
class DroppedReference:
    """A dependency removed because it no longer resolved."""

    owner: str
    reference: Reference
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"owner": self.owner, "reference": str(self.reference), "message": self.message}


@dataclass(slots=True, frozen=True)
class IdChangeResult:
    """Output of a shift, renumber or compaction pass."""

    tasks: List[Task]
    mapping: IdMapping
    dropped: List[DroppedReference] = field(default_factory=list)

    @property
    def changed_count(self) -> int:
        return len(self.mapping.changed)

    @property
    def dropped_count(self) -> int:
        return len(self.dropped)

    def summary(self) -> Dict[str, object]:
        return {
            "changed_ids": {str(old): new for old, new in self.mapping.changed.items()},
            "tasks_changed": self.changed_count,
            "dependencies_dropped": self.dropped_count,
            "dropped": [item.to_dict() for item in self.dropped],
        }


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

def _owner(task_id: int, subtask_id: Optional[int] = None) -> str:
    if subtask_id is None:
        return f"task {task_id}"
    return f"subtask {task_id}.{subtask_id}"


def _ensure_unique(tasks: Sequence[Task]) -> None:
    seen: Set[int] = set()
    for task in tasks:
        if task.id in seen:
            raise TaskValidationError(
                f"Duplicate task id {task.id} in task set", code=DUPLICATE_TASK_ID
            )
        seen.add(task.id)
        subtask_ids: Set[int] = set()
        for subtask in task.subtasks:
            if subtask.id in subtask_ids:
                raise TaskValidationError(
                    f"Duplicate subtask id {task.id}.{subtask.id}", code=DUPLICATE_TASK_ID
                )
            subtask_ids.add(subtask.id)


def _dangling_message(reference: Reference, owner: str, removed: bool) -> str:
    kind = "removed" if removed else "non-existent"
    if isinstance(reference, SubtaskRef):
        if removed:
            return f"Subtask dependency reference to subtask {reference} of removed task {reference.parent_id} found and removed ({owner})"
        return f"Subtask dependency reference to non-existent subtask {reference} found and removed ({owner})"
    return f"Dependency reference to {kind} task {reference} found and removed ({owner})"


def identity_mapping(tasks: Sequence[Task]) -> IdMapping:
    """Mapping that keeps every existing task and subtask where it is."""
    return IdMapping(
        tasks={task.id: task.id for task in tasks},
        subtasks={
            (task.id, subtask.id): (task.id, subtask.id)
            for task in tasks
            for subtask in task.subtasks
        },
    )


# ----------------------------------------------------------------------
# Dependency reference resolver
# ----------------------------------------------------------------------

def resolve_dependencies(
    dependencies: Sequence[Reference],
    mapping: IdMapping,
    *,
    owner: str = "task",
    log: Optional[OperationLog] = None,
    dropped: Optional[List[DroppedReference]] = None,
    removed_ids: Iterable[int] = (),
) -> List[Reference]:
    """Rewrite one dependency list through ``mapping``.

    References missing from the mapping are dropped with a warning. Order
    of the surviving references is kept.
    """
    if not dependencies:
        return []
    log = log or OperationLog()
    removed = set(removed_ids)

    resolved: List[Reference] = []
    for reference in dependencies:
        new_reference = mapping.resolve(reference)
        if new_reference is not None:
            resolved.append(new_reference)
            continue
        target = reference.task_id if isinstance(reference, TaskRef) else reference.parent_id
        message = _dangling_message(reference, owner, target in removed)
        log.warn(message)
        if dropped is not None:
            dropped.append(DroppedReference(owner=owner, reference=reference, message=message))
    return resolved


def _rewrite_all(
    tasks: Sequence[Task],
    mapping: IdMapping,
    log: OperationLog,
    dropped: List[DroppedReference],
    removed_ids: Iterable[int] = (),
) -> List[Task]:
    removed = tuple(removed_ids)
    rewritten: List[Task] = []
    for task in tasks:
        subtasks = [
            replace(
                subtask,
                dependencies=resolve_dependencies(
                    subtask.dependencies,
                    mapping,
                    owner=_owner(task.id, subtask.id),
                    log=log,
                    dropped=dropped,
                    removed_ids=removed,
                ),
            )
            for subtask in task.subtasks
        ]
        rewritten.append(
            replace(
                task,
                dependencies=resolve_dependencies(
                    task.dependencies,
                    mapping,
                    owner=_owner(task.id),
                    log=log,
                    dropped=dropped,
                    removed_ids=removed,
                ),
                subtasks=subtasks,
            )
        )
    return rewritten


def apply_mapping(
    tasks: Sequence[Task], mapping: IdMapping, log: Optional[OperationLog] = None
) -> IdChangeResult:
    """Move every task and subtask to the id given by ``mapping``.

    The mapping must cover every task and subtask and keep subtasks under
    their own parent.
    """
    log = log or OperationLog()
    _ensure_unique(tasks)

    moved: List[Task] = []
    for task in tasks:
        new_id = mapping.tasks.get(task.id)
        if new_id is None:
            raise IdMappingError(f"No new id for task {task.id}", details={"task_id": task.id})
        subtasks: List[Subtask] = []
        for subtask in task.subtasks:
            new_key = mapping.subtasks.get((task.id, subtask.id))
            if new_key is None or new_key[0] != new_id:
                raise IdMappingError(
                    f"No new id for subtask {task.id}.{subtask.id} under task {new_id}",
                    details={"task_id": task.id, "subtask_id": subtask.id},
                )
            subtasks.append(replace(subtask, id=new_key[1]))
        moved.append(replace(task, id=new_id, subtasks=subtasks))

    if len({task.id for task in moved}) != len(moved):
        raise IdMappingError("Mapping assigns the same id to more than one task")

    dropped: List[DroppedReference] = []
    moved = _rewrite_all(moved, mapping, log, dropped)
    return IdChangeResult(tasks=moved, mapping=mapping, dropped=dropped)


def offset_mapping(tasks: Sequence[Task], offset: int) -> IdMapping:
    """Mapping that adds ``offset`` to every task id."""
    return IdMapping(
        tasks={task.id: task.id + offset for task in tasks},
        subtasks={
            (task.id, subtask.id): (task.id + offset, subtask.id)
            for task in tasks
            for subtask in task.subtasks
        },
    )


def prune_dangling(tasks: Sequence[Task], log: Optional[OperationLog] = None) -> IdChangeResult:
    """Drop every reference that does not resolve within ``tasks``."""
    log = log or OperationLog()
    _ensure_unique(tasks)
    mapping = identity_mapping(tasks)
    dropped: List[DroppedReference] = []
    pruned = _rewrite_all(tasks, mapping, log, dropped)
    return IdChangeResult(tasks=pruned, mapping=mapping, dropped=dropped)


# ----------------------------------------------------------------------
# Insertion shifter
# ----------------------------------------------------------------------

def shift_task_ids(
    tasks: Sequence[Task], position: int, log: Optional[OperationLog] = None
) -> IdChangeResult:
    """Make room for a new task at ``position``.

    Tasks with id >= position move up by one. References follow the move;
    subtask ids stay as they are. Nothing is dropped.
    """
    log = log or OperationLog()
    position = parse_task_id(position, "insertion position")
    _ensure_unique(tasks)

    def shift(reference: Reference) -> Reference:
        if isinstance(reference, TaskRef):
            if reference.task_id >= position:
                return TaskRef(reference.task_id + 1)
            return reference
        if reference.parent_id >= position:
            return SubtaskRef(reference.parent_id + 1, reference.subtask_id)
        return reference

    task_map: Dict[int, int] = {}
    subtask_map: Dict[SubtaskKey, SubtaskKey] = {}
    shifted: List[Task] = []
    for task in tasks:
        new_id = task.id + 1 if task.id >= position else task.id
        task_map[task.id] = new_id
        subtasks: List[Subtask] = []
        for subtask in task.subtasks:
            subtask_map[(task.id, subtask.id)] = (new_id, subtask.id)
            subtasks.append(
                replace(subtask, dependencies=[shift(ref) for ref in subtask.dependencies])
            )
        shifted.append(
            replace(
                task,
                id=new_id,
                dependencies=[shift(ref) for ref in task.dependencies],
                subtasks=subtasks,
            )
        )

    result = IdChangeResult(tasks=shifted, mapping=IdMapping(task_map, subtask_map))
    if result.changed_count:
        log.info(f"Shifted {result.changed_count} task(s) at or above position {position}")
    return result


# ----------------------------------------------------------------------
# Sequential renumberer
# ----------------------------------------------------------------------

def regenerate_sequential_ids(
    tasks: Sequence[Task], sort_first: bool = True, log: Optional[OperationLog] = None
) -> IdChangeResult:
    """Renumber tasks to 1..N and each task's subtasks to 1..M.

    With ``sort_first`` tasks and subtasks are ordered by their current id
    before numbering, otherwise the existing order is kept. Dangling
    references left by earlier manual edits are dropped.
    """
    log = log or OperationLog()
    if not tasks:
        return IdChangeResult(tasks=[], mapping=IdMapping())
    _ensure_unique(tasks)

    ordered = sorted(tasks, key=lambda task: task.id) if sort_first else list(tasks)
    task_map: Dict[int, int] = {}
    subtask_map: Dict[SubtaskKey, SubtaskKey] = {}
    renumbered: List[Task] = []
    for index, task in enumerate(ordered, start=1):
        task_map[task.id] = index
        subtasks = sorted(task.subtasks, key=lambda sub: sub.id) if sort_first else list(task.subtasks)
        new_subtasks: List[Subtask] = []
        for sub_index, subtask in enumerate(subtasks, start=1):
            subtask_map[(task.id, subtask.id)] = (index, sub_index)
            new_subtasks.append(replace(subtask, id=sub_index))
        renumbered.append(replace(task, id=index, subtasks=new_subtasks))

    mapping = IdMapping(task_map, subtask_map)
    dropped: List[DroppedReference] = []
    renumbered = _rewrite_all(renumbered, mapping, log, dropped)

    result = IdChangeResult(tasks=renumbered, mapping=mapping, dropped=dropped)
    log.info(
        f"Renumbered {len(renumbered)} task(s): {result.changed_count} id(s) changed, "
        f"{result.dropped_count} dependency reference(s) dropped"
    )
    return result


# ----------------------------------------------------------------------
# Removal compactor
# ----------------------------------------------------------------------

def compact_task_ids(
    tasks: Sequence[Task],
    removed_ids: Optional[Iterable[int]],
    log: Optional[OperationLog] = None,
) -> IdChangeResult:
    """Close the gaps left by removed tasks.

    Each surviving id moves down by the number of removed ids below it,
    so ids that were already missing still consume a number. References
    to removed tasks (and their subtasks) are dropped.
    """
    log = log or OperationLog()
    if removed_ids is None:
        raise TaskValidationError("A list of removed task ids is required", code=MISSING_ARGUMENT)
    if isinstance(removed_ids, (str, bytes)):
        raise TaskValidationError(
            f"Removed task ids must be a list, got '{removed_ids}'", code=INVALID_TASK_ID
        )
    removed = sorted({parse_task_id(task_id, "removed task id") for task_id in removed_ids})
    removed_set = set(removed)
    _ensure_unique(tasks)

    task_map: Dict[int, int] = {}
    subtask_map: Dict[SubtaskKey, SubtaskKey] = {}
    compacted: List[Task] = []
    for task in tasks:
        if task.id in removed_set:
            raise IdMappingError(
                f"Task ID {task.id} was supposed to be removed but is still in tasks array",
                details={"task_id": task.id, "removed_ids": removed},
            )
        new_id = task.id - bisect_left(removed, task.id)
        task_map[task.id] = new_id
        for subtask in task.subtasks:
            subtask_map[(task.id, subtask.id)] = (new_id, subtask.id)
        compacted.append(replace(task, id=new_id))

    mapping = IdMapping(task_map, subtask_map)
    dropped: List[DroppedReference] = []
    # References still carry old ids; owners are named by their new ids.
    compacted = _rewrite_all(compacted, mapping, log, dropped, removed_set)

    result = IdChangeResult(tasks=compacted, mapping=mapping, dropped=dropped)
    log.info(
        f"Compacted task ids after removing {len(removed)} task(s): "
        f"{result.changed_count} id(s) changed, {result.dropped_count} dependency reference(s) dropped"
    )
    return result


# ----------------------------------------------------------------------
# Cycle detection
# ----------------------------------------------------------------------

def find_cycles(
    start: Hashable,
    dependency_map: Mapping[Hashable, Sequence[Hashable]],
    visited: Optional[Set[Hashable]] = None,
    recursion_stack: Optional[Set[Hashable]] = None,
    path: Optional[List[Hashable]] = None,
) -> List[Hashable]:
    """Return the targets of back-edges reachable from ``start``.

    A target appears once per back-edge that lands on it. The graph is
    not modified. The walk keeps its own stack of ``(node, edges)``
    frames, so long dependency chains do not hit the recursion limit.
    """
    visited = set() if visited is None else visited
    recursion_stack = set() if recursion_stack is None else recursion_stack
    path = [] if path is None else path

    cycle_edges: List[Hashable] = []
    visited.add(start)
    recursion_stack.add(start)
    path.append(start)
    frames = [(start, iter(dependency_map.get(start, ())))]

    while frames:
        node, edges = frames[-1]
        for dependency in edges:
            if dependency not in visited:
                visited.add(dependency)
                recursion_stack.add(dependency)
                path.append(dependency)
                frames.append((dependency, iter(dependency_map.get(dependency, ()))))
                break
            if dependency in recursion_stack:
                cycle_edges.append(dependency)
        else:
            frames.pop()
            recursion_stack.discard(node)
            path.pop()

    return cycle_edges


def node_key(task_id: int, subtask_id: Optional[int] = None) -> str:
    """Graph node name for a task ("5") or subtask ("5.2")."""
    if subtask_id is None:
        return str(task_id)
    return f"{task_id}.{subtask_id}"


def dependency_graph(tasks: Sequence[Task]) -> Dict[str, List[str]]:
    """Adjacency lists over every task and subtask, keyed by ``node_key``."""
    graph: Dict[str, List[str]] = {}
    for task in tasks:
        graph[node_key(task.id)] = [str(ref) for ref in task.dependencies]
        for subtask in task.subtasks:
            graph[node_key(task.id, subtask.id)] = [str(ref) for ref in subtask.dependencies]
    return graph


def creates_cycle(graph: Mapping[str, Sequence[str]], source: str, target: str) -> bool:
    """Whether adding the edge ``source -> target`` closes a cycle through ``source``."""
    if source == target:
        return True
    candidate = {node: list(edges) for node, edges in graph.items()}
    candidate.setdefault(source, []).append(target)
    return source in find_cycles(source, candidate)
