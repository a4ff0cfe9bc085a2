"""
Integration tests for the MCP server tools.

These tests call the tool functions registered in main.py against a real
project directory and check the task file they leave behind.
"""

import json
import sys
from pathlib import Path

import pytest

# Add the project root to the path so we can import the main module
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

import main


class TestMcpTools:
    """Integration tests for the task lifecycle through the MCP tools."""

    @pytest.fixture
    def project(self, tmp_path, monkeypatch):
        """Create an initialized project directory."""
        for name in ("TASKWEAVE_PROJECT_ROOT", "TASKWEAVE_TASK_GROUP", "TASKWEAVE_STORAGE_DIR"):
            monkeypatch.delenv(name, raising=False)
        response = main.initialize_project(root=str(tmp_path))
        assert response["success"] is True
        return tmp_path

    def read_tasks(self, project, group="default"):
        path = project / ".taskweave" / group / "tasks" / "tasks.json"
        return json.loads(path.read_text())["tasks"]

    def test_prd_to_cleanup_flow(self, project):
        """Test importing a plan, inserting, removing and renumbering."""
        root = str(project)
        imported = main.parse_prd(
            tasks=[
                {"id": 1, "title": "Set up repo"},
                {"id": 2, "title": "Data model", "dependencies": [1]},
                {"id": 3, "title": "API", "dependencies": [2]},
            ],
            root=root,
        )
        assert imported["data"]["task_ids"] == [1, 2, 3]

        inserted = main.add_task(title="Design review", dependencies=[1], position=2, root=root)
        assert inserted["data"]["task_id"] == 2
        assert [task["dependencies"] for task in self.read_tasks(project)] == [[], [1], [1], [3]]

        subtask = main.add_subtask(id=4, title="Endpoints", dependencies=["3"], root=root)
        assert subtask["data"]["subtask_id"] == "4.1"

        removed = main.remove_task(id="3", root=root)
        assert removed["success"] is True
        tasks = self.read_tasks(project)
        assert [(task["id"], task["title"]) for task in tasks] == [(1, "Set up repo"), (2, "Design review"), (3, "API")]
        assert tasks[2]["dependencies"] == []
        assert tasks[2]["subtasks"][0]["dependencies"] == []
        assert len(removed["data"]["warnings"]) == 2

        renumbered = main.renumber_tasks(root=root)
        assert renumbered["data"]["tasks_changed"] == 0

        validation = main.validate_dependencies(root=root)
        assert validation["data"]["valid"] is True

    def test_add_task_for_human(self, project):
        """Test a task can be created for named human assignees."""
        root = str(project)

        added = main.add_task(title="Sign off", assignees="ana, sam", executor="human", root=root)

        assert added["success"] is True
        task = self.read_tasks(project)[0]
        assert task["assignees"] == ["ana", "sam"]
        assert task["executor"] == "human"

    def test_status_and_next_task(self, project):
        """Test next task selection follows status changes."""
        root = str(project)
        main.add_task(title="First", root=root)
        main.add_task(title="Second", dependencies=[1], root=root)

        assert main.next_task(root=root)["data"]["task_id"] == "1"
        main.set_task_status(id="1", status="done", root=root)
        assert main.next_task(root=root)["data"]["task_id"] == "2"

        listed = main.get_tasks(status="done", root=root)
        assert [task["title"] for task in listed["data"]["tasks"]] == ["First"]

    def test_updates(self, project):
        """Test direct task and subtask updates and results."""
        root = str(project)
        main.add_task(title="Parser", root=root)
        main.add_subtask(id=1, title="Lexer", root=root)

        updated = main.update_task(id=1, details="Hand written", priority="high", root=root)
        assert updated["data"]["updated_fields"] == ["details", "priority"]

        sub_updated = main.update_subtask(id="1.1", details="Use regex", root=root)
        assert sub_updated["data"]["is_subtask"] is True

        main.add_result(id="1.1", action="implemented", result="lexer done", root=root)
        task = main.get_task(id="1.1", root=root)["data"]["task"]
        assert task["details"] == "Use regex"
        assert task["results"][0]["action"] == "implemented"

    def test_dependency_tools(self, project):
        """Test adding, rejecting, fixing and removing dependencies."""
        root = str(project)
        for title in ("A", "B", "C"):
            main.add_task(title=title, root=root)

        assert main.add_dependency(id=2, depends_on=1, root=root)["success"] is True
        assert main.add_dependency(id=3, depends_on=2, root=root)["success"] is True
        cycle = main.add_dependency(id=1, depends_on=3, root=root)
        assert cycle["error"]["code"] == "DEPENDENCY_CYCLE"

        assert main.fix_dependencies(root=root)["data"]["fixed"] == 0
        assert main.remove_dependency(id=3, depends_on=2, root=root)["data"]["removed"] is True

    def test_subtask_tools(self, project):
        """Test removing, converting and clearing subtasks."""
        root = str(project)
        main.add_task(title="Parent", root=root)
        main.add_subtask(id=1, title="One", root=root)
        main.add_subtask(id=1, title="Two", root=root)
        main.add_subtask(id=1, title="Three", root=root)

        converted = main.remove_subtask(id="1.2", convert=True, root=root)
        assert converted["data"]["converted_task"]["id"] == 2
        assert main.remove_subtask(id="1.1", root=root)["success"] is True

        cleared = main.clear_subtasks(id="1", root=root)
        assert cleared["data"]["cleared_count"] == 1
        assert self.read_tasks(project)[0]["subtasks"] == []

    def test_task_groups_are_separate(self, project):
        """Test task groups keep independent task files."""
        root = str(project)
        main.initialize_project(root=root, task_group="release")
        main.add_task(title="Default task", root=root)
        main.add_task(title="Release task", root=root, task_group="release")

        assert [task["title"] for task in self.read_tasks(project)] == ["Default task"]
        assert [task["title"] for task in self.read_tasks(project, "release")] == ["Release task"]

    def test_errors_are_envelopes(self, project):
        """Test tool failures come back as error envelopes."""
        root = str(project)

        assert main.get_task(id="12", root=root)["error"]["code"] == "TASK_NOT_FOUND"
        assert main.add_task(title="", root=root)["error"]["code"] == "MISSING_ARGUMENT"
        assert main.add_task(title="X", executor="robot", root=root)["error"]["code"] == "INPUT_VALIDATION_ERROR"
        assert main.remove_subtask(id="abc", root=root)["error"]["code"] == "INVALID_TASK_ID"
