"""Unit tests for the Taskweave ID engine.

This module tests dependency resolution, insertion shifting, sequential
renumbering, removal compaction and cycle detection.
"""

import pytest
from unittest.mock import MagicMock

from taskweave.errors import DUPLICATE_TASK_ID, INVALID_TASK_ID, MISSING_ARGUMENT, IdMappingError, TaskValidationError
from taskweave.ids import (
    IdMapping,
    apply_mapping,
    compact_task_ids,
    creates_cycle,
    dependency_graph,
    find_cycles,
    identity_mapping,
    offset_mapping,
    prune_dangling,
    regenerate_sequential_ids,
    resolve_dependencies,
    shift_task_ids,
)
from taskweave.models import SubtaskRef, Task, TaskRef
from taskweave.taskweave_logging import LogSettings, OperationLog


def make_task(task_id, dependencies=(), subtasks=(), **fields):
    data = {"id": task_id, "title": fields.pop("title", f"Task {task_id}"), "dependencies": list(dependencies)}
    data.update(fields)
    if subtasks:
        data["subtasks"] = [
            {"id": sub_id, "title": f"Subtask {task_id}.{sub_id}", "dependencies": list(sub_deps)}
            for sub_id, sub_deps in subtasks
        ]
    return Task.from_dict(data)


def ids(tasks):
    return [task.id for task in tasks]


def deps(task):
    return [ref.encode() for ref in task.dependencies]


class TestResolveDependencies:
    """Test cases for the dependency reference resolver."""

    def test_empty_list_skips_lookups(self):
        """Test an empty list returns an empty list without touching the mapping."""
        mapping = MagicMock(spec=IdMapping)
        log = OperationLog()

        assert resolve_dependencies([], mapping, log=log) == []
        mapping.resolve.assert_not_called()
        assert log.warnings == []

    def test_maps_task_and_subtask_references_in_order(self):
        """Test task and subtask references are rewritten keeping their order."""
        mapping = IdMapping(tasks={5: 2, 10: 3}, subtasks={(10, 4): (3, 1)})

        result = resolve_dependencies([TaskRef(10), SubtaskRef(10, 4), TaskRef(5)], mapping)

        assert result == [TaskRef(3), SubtaskRef(3, 1), TaskRef(2)]

    def test_drops_missing_references_with_one_warning_each(self):
        """Test unresolved references are dropped and each one is reported."""
        mapping = IdMapping(tasks={1: 1}, subtasks={})
        log = OperationLog()
        dropped = []

        result = resolve_dependencies(
            [TaskRef(7), TaskRef(1), SubtaskRef(4, 2)], mapping, owner="task 3", log=log, dropped=dropped
        )

        assert result == [TaskRef(1)]
        assert len(log.warnings) == 2
        assert "non-existent task 7" in log.warnings[0]
        assert "non-existent subtask 4.2" in log.warnings[1]
        assert [item.reference for item in dropped] == [TaskRef(7), SubtaskRef(4, 2)]
        assert all(item.owner == "task 3" for item in dropped)

    def test_removed_tasks_are_named_as_removed(self):
        """Test references to removed tasks use the removed wording."""
        log = OperationLog()

        resolve_dependencies([TaskRef(2)], IdMapping(), log=log, removed_ids=[2])

        assert log.warnings == ["Dependency reference to removed task 2 found and removed (task)"]

    def test_warnings_recorded_below_threshold(self):
        """Test dropped references are recorded even when the log threshold hides warnings."""
        log = OperationLog(LogSettings(level="error"))

        resolve_dependencies([TaskRef(9)], IdMapping(), log=log)

        assert len(log.warnings) == 1


class TestShiftTaskIds:
    """Test cases for the insertion shifter."""

    def test_shift_chain_at_position_two(self):
        """Test inserting at 2 moves tasks 2 and 3 up and rewrites their references."""
        tasks = [make_task(1), make_task(2, [1]), make_task(3, [1, 2])]

        result = shift_task_ids(tasks, 2)

        assert ids(result.tasks) == [1, 3, 4]
        assert deps(result.tasks[1]) == [1]
        assert deps(result.tasks[2]) == [1, 3]
        assert result.changed_count == 2
        assert result.dropped == []

    def test_position_beyond_end_shifts_nothing(self):
        """Test an insertion point past the maximum id leaves every task alone."""
        tasks = [make_task(1), make_task(2, [1]), make_task(3, [2])]

        result = shift_task_ids(tasks, 10)

        assert ids(result.tasks) == [1, 2, 3]
        assert [deps(task) for task in result.tasks] == [[], [1], [2]]
        assert result.changed_count == 0

    def test_subtask_references_shift_parent_only(self):
        """Test decimal references move with their parent and keep the subtask part."""
        tasks = [
            make_task(1, subtasks=[(1, []), (2, [1.1])]),
            make_task(2, subtasks=[(1, [])]),
            make_task(3, [2.1, 1.2]),
        ]

        result = shift_task_ids(tasks, 2)

        assert deps(result.tasks[2]) == [3.1, 1.2]
        assert [sub.id for sub in result.tasks[1].subtasks] == [1]
        assert [sub.dependencies for sub in result.tasks[0].subtasks] == [[], [SubtaskRef(1, 1)]]

    def test_shift_never_drops_references(self):
        """Test references to tasks outside the set are shifted rather than dropped."""
        tasks = [make_task(1, [99])]
        log = OperationLog()

        result = shift_task_ids(tasks, 1, log)

        assert deps(result.tasks[0]) == [100]
        assert log.warnings == []

    def test_inputs_are_not_mutated(self):
        """Test the original tasks keep their ids and dependencies."""
        tasks = [make_task(1), make_task(2, [1])]

        shift_task_ids(tasks, 1)

        assert ids(tasks) == [1, 2]
        assert deps(tasks[1]) == [1]

    @pytest.mark.parametrize("position", [0, -3, "abc", None])
    def test_invalid_position(self, position):
        """Test a non-positive or non-integer position is a validation error."""
        with pytest.raises(TaskValidationError):
            shift_task_ids([make_task(1)], position)

    def test_duplicate_ids_rejected(self):
        """Test duplicate task ids are rejected before anything is shifted."""
        with pytest.raises(TaskValidationError) as excinfo:
            shift_task_ids([make_task(1), make_task(1)], 1)
        assert excinfo.value.code == DUPLICATE_TASK_ID


class TestRegenerateSequentialIds:
    """Test cases for the sequential renumberer."""

    def test_sorts_and_renumbers(self):
        """Test tasks are sorted by id and numbered from one."""
        tasks = [make_task(5, title="Task5"), make_task(2, title="Task2"), make_task(8, title="Task8")]

        result = regenerate_sequential_ids(tasks)

        assert [(task.id, task.title) for task in result.tasks] == [(1, "Task2"), (2, "Task5"), (3, "Task8")]

    def test_gapped_chain_scenario(self):
        """Test the 1, 5, 10, 100 chain becomes 1..4 with rewritten dependencies."""
        tasks = [make_task(1), make_task(5, [1]), make_task(10, [5]), make_task(100, [10, 1])]

        result = regenerate_sequential_ids(tasks)

        assert ids(result.tasks) == [1, 2, 3, 4]
        assert [deps(task) for task in result.tasks] == [[], [1], [2], [3, 1]]

    def test_dependencies_follow_sorting(self):
        """Test dependencies are remapped after sorting unordered input."""
        tasks = [make_task(10, [5]), make_task(5), make_task(15, [10, 5])]

        result = regenerate_sequential_ids(tasks)

        assert [(task.id, deps(task)) for task in result.tasks] == [(1, []), (2, [1]), (3, [2, 1])]

    def test_subtasks_renumbered_per_parent(self):
        """Test subtask ids become 1..M and decimal references follow them."""
        tasks = [
            make_task(1),
            make_task(10, subtasks=[(8, [10.5]), (5, [])]),
            make_task(20, [10.5, 10.8]),
        ]

        result = regenerate_sequential_ids(tasks)

        parent = result.tasks[1]
        assert parent.id == 2
        assert [sub.id for sub in parent.subtasks] == [1, 2]
        assert parent.subtasks[1].dependencies == [SubtaskRef(2, 1)]
        assert deps(result.tasks[2]) == [2.1, 2.2]

    def test_cross_parent_subtask_reference(self):
        """Test a subtask may depend on a subtask of a different parent."""
        tasks = [
            make_task(3, subtasks=[(4, [])]),
            make_task(7, subtasks=[(2, ["3.4"])]),
        ]

        result = regenerate_sequential_ids(tasks)

        assert result.tasks[1].subtasks[0].dependencies == [SubtaskRef(1, 1)]

    def test_invalid_references_dropped(self):
        """Test references to tasks or subtasks that do not exist are dropped with warnings."""
        tasks = [make_task(1, [999]), make_task(2, [1, 888], subtasks=[(1, [1.7])])]
        log = OperationLog()

        result = regenerate_sequential_ids(tasks, log=log)

        assert [deps(task) for task in result.tasks] == [[], [1]]
        assert result.tasks[1].subtasks[0].dependencies == []
        assert result.dropped_count == 3
        assert len(log.warnings) == 3
        assert any("999" in warning for warning in log.warnings)
        assert any("1.7" in warning for warning in log.warnings)

    def test_keep_order(self):
        """Test array order is used when sorting is disabled."""
        tasks = [make_task(5, title="Five"), make_task(2, title="Two", dependencies=[5])]

        result = regenerate_sequential_ids(tasks, sort_first=False)

        assert [(task.id, task.title) for task in result.tasks] == [(1, "Five"), (2, "Two")]
        assert deps(result.tasks[1]) == [1]

    def test_idempotent(self):
        """Test renumbering canonical output changes nothing."""
        tasks = [make_task(4, [9], subtasks=[(3, [])]), make_task(9, [4.3])]

        once = regenerate_sequential_ids(tasks)
        log = OperationLog()
        twice = regenerate_sequential_ids(once.tasks, log=log)

        assert [task.to_dict() for task in twice.tasks] == [task.to_dict() for task in once.tasks]
        assert twice.changed_count == 0
        assert log.warnings == []

    def test_empty_input(self):
        """Test an empty task set renumbers to an empty task set."""
        result = regenerate_sequential_ids([])

        assert result.tasks == []
        assert result.mapping.tasks == {}

    def test_opaque_fields_preserved(self):
        """Test fields the engine does not interpret survive untouched."""
        task = make_task(
            7,
            details="Use the new parser",
            metadata={"fields": [{"key": "owner"}], "mcp": ["github"]},
            verifications=[{"description": "lint", "passed": False}],
        )

        result = regenerate_sequential_ids([task])
        data = result.tasks[0].to_dict()

        assert data["id"] == 1
        assert data["details"] == "Use the new parser"
        assert data["metadata"] == {"fields": [{"key": "owner"}], "mcp": ["github"]}
        assert data["verifications"] == [{"description": "lint", "passed": False}]
        assert list(data)[:3] == ["id", "title", "dependencies"]


class TestCompactTaskIds:
    """Test cases for the removal compactor."""

    def test_compaction_after_removing_two(self):
        """Test removing 2 from 1..4 renumbers 1, 3, 4 to 1, 2, 3."""
        surviving = [make_task(1), make_task(3, [2, 1]), make_task(4, [3])]
        log = OperationLog()

        result = compact_task_ids(surviving, [2], log)

        assert ids(result.tasks) == [1, 2, 3]
        assert deps(result.tasks[1]) == [1]
        assert deps(result.tasks[2]) == [2]
        assert result.dropped_count == 1
        assert log.warnings == ["Dependency reference to removed task 2 found and removed (task 2)"]

    def test_gap_ids_consume_numbers(self):
        """Test ids that were already missing still take part in the numbering."""
        surviving = [make_task(1), make_task(4, [1])]

        result = compact_task_ids(surviving, [2])

        assert ids(result.tasks) == [1, 3]
        assert result.mapping.tasks == {1: 1, 4: 3}

    def test_sparse_removed_ids(self):
        """Test several removed ids shift later tasks by the number removed below them."""
        surviving = [make_task(2), make_task(5, [2]), make_task(9, [5, 7])]

        result = compact_task_ids(surviving, [1, 7, 3])

        assert ids(result.tasks) == [1, 3, 6]
        assert [deps(task) for task in result.tasks] == [[], [1], [3]]

    def test_subtask_references(self):
        """Test subtask references follow their parent or are dropped with it."""
        surviving = [
            make_task(1, subtasks=[(1, [])]),
            make_task(3, [2.1, 1.1], subtasks=[(2, [3.1])]),
        ]

        result = compact_task_ids(surviving, [2])

        assert deps(result.tasks[1]) == [1.1]
        assert result.tasks[1].subtasks[0].dependencies == []
        assert result.dropped_count == 2

    def test_task_still_present_is_internal_error(self):
        """Test a surviving task listed as removed raises an invariant violation."""
        with pytest.raises(IdMappingError, match="Task ID 2 was supposed to be removed"):
            compact_task_ids([make_task(1), make_task(2)], [2])

    def test_missing_removed_list(self):
        """Test a missing removed-id list is a validation error."""
        with pytest.raises(TaskValidationError) as excinfo:
            compact_task_ids([make_task(1)], None)
        assert excinfo.value.code == MISSING_ARGUMENT

    def test_removed_ids_as_string(self):
        """Test a string is not read as a list of one-digit ids."""
        with pytest.raises(TaskValidationError) as excinfo:
            compact_task_ids([make_task(3)], "12")
        assert excinfo.value.code == INVALID_TASK_ID

    def test_malformed_removed_id(self):
        """Test malformed removed ids are rejected."""
        with pytest.raises(TaskValidationError):
            compact_task_ids([make_task(1)], ["two"])


class TestApplyMapping:
    """Test cases for explicit mappings."""

    def test_offset_mapping(self):
        """Test an offset mapping moves every task and its references."""
        tasks = [make_task(1, subtasks=[(1, [])]), make_task(2, [1, 1.1])]

        result = apply_mapping(tasks, offset_mapping(tasks, 10))

        assert ids(result.tasks) == [11, 12]
        assert deps(result.tasks[1]) == [11, 11.1]

    def test_incomplete_mapping(self):
        """Test a task without a mapping entry raises."""
        with pytest.raises(IdMappingError):
            apply_mapping([make_task(1), make_task(2)], IdMapping(tasks={1: 1}))

    def test_colliding_mapping(self):
        """Test two tasks mapped to the same id raise."""
        with pytest.raises(IdMappingError):
            apply_mapping([make_task(1), make_task(2)], IdMapping(tasks={1: 5, 2: 5}))

    def test_prune_dangling(self):
        """Test pruning keeps ids and drops unresolved references."""
        tasks = [make_task(1, [3], subtasks=[(1, [1.2])]), make_task(2, [1.1])]

        result = prune_dangling(tasks)

        assert ids(result.tasks) == [1, 2]
        assert deps(result.tasks[0]) == []
        assert deps(result.tasks[1]) == [1.1]
        assert result.dropped_count == 2
        assert identity_mapping(tasks).tasks == {1: 1, 2: 2}


class TestFindCycles:
    """Test cases for cycle detection."""

    def test_two_node_cycle(self):
        """Test A -> B -> A reports A."""
        assert "A" in find_cycles("A", {"A": ["B"], "B": ["A"]})

    def test_cycle_further_down(self):
        """Test A -> B -> C -> D -> B reports B."""
        dependency_map = {"A": ["B"], "B": ["C"], "C": ["D"], "D": ["B"]}

        assert find_cycles("A", dependency_map) == ["B"]

    def test_acyclic_graph(self):
        """Test an acyclic graph reports nothing."""
        assert find_cycles("A", {"A": ["B", "C"], "B": ["C"], "C": []}) == []

    def test_repeated_targets(self):
        """Test each back-edge is reported even when targets repeat."""
        dependency_map = {"A": ["B", "C"], "B": ["A"], "C": ["A"]}

        assert find_cycles("A", dependency_map) == ["A", "A"]

    def test_graph_not_modified(self):
        """Test detection does not change the dependency map."""
        dependency_map = {"A": ["B"], "B": ["A"]}

        find_cycles("A", dependency_map)

        assert dependency_map == {"A": ["B"], "B": ["A"]}

    def test_creates_cycle(self):
        """Test new edges are checked against the task graph."""
        tasks = [make_task(1), make_task(2, [1], subtasks=[(1, [1])]), make_task(3, [2])]
        graph = dependency_graph(tasks)

        assert graph["2.1"] == ["1"]
        assert creates_cycle(graph, "1", "3")
        assert creates_cycle(graph, "1", "2.1")
        assert not creates_cycle(graph, "3", "1")
        assert creates_cycle(graph, "2", "2")

    def test_long_chain(self):
        """Test a chain deeper than the interpreter recursion limit is walked."""
        length = 3000
        dependency_map = {str(node): [str(node - 1)] for node in range(2, length + 1)}
        dependency_map["1"] = []

        assert find_cycles(str(length), dependency_map) == []

        dependency_map["1"] = [str(length)]
        assert find_cycles(str(length), dependency_map) == [str(length)]

    def test_long_chain_creates_cycle(self):
        """Test closing a long chain of tasks is detected as a cycle."""
        tasks = [make_task(1)] + [make_task(task_id, [task_id - 1]) for task_id in range(2, 2001)]
        graph = dependency_graph(tasks)

        assert creates_cycle(graph, "1", "2000")
        assert not creates_cycle(graph, "2000", "1")
