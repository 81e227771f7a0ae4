"""
Tests for the todos command line interface.

Commands run through click's CliRunner against a temp database passed with
``--db``.
"""

import json

import pytest
from click.testing import CliRunner

from agent_todos.cli import cli
from agent_todos.database import TaskDatabase


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, db_path):
    def _invoke(*args, **kwargs):
        return runner.invoke(cli, ["--db", db_path, *args], **kwargs)
    return _invoke


def add_task(invoke, title, *args):
    result = invoke("--json", "add", title, *args)
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


class TestTaskCommands:

    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "Shared task list" in result.output

    def test_add_and_list(self, invoke):
        result = invoke("add", "Write tests", "-p", "high", "-t", "qa")
        assert result.exit_code == 0
        assert "Created:" in result.output
        assert "Write tests" in result.output

        listed = invoke("list")
        assert listed.exit_code == 0
        assert "[pending] (high) Write tests" in listed.output

    def test_list_empty(self, invoke):
        result = invoke("list")
        assert result.exit_code == 0
        assert "No tasks." in result.output

    def test_json_output(self, invoke):
        task = add_task(invoke, "Json task")
        assert task["version"] == 1

        result = invoke("--json", "list", "-s", "pending")
        data = json.loads(result.output)
        assert [t["id"] for t in data] == [task["id"]]

    def test_show_by_prefix(self, invoke):
        task = add_task(invoke, "Show me", "-d", "details here")
        result = invoke("show", task["id"][:8])
        assert result.exit_code == 0
        assert "details here" in result.output
        assert "version:  1" in result.output

    def test_show_missing(self, invoke):
        result = invoke("show", "missing")
        assert result.exit_code == 1
        assert "Task not found: missing" in result.output

    def test_update_uses_current_version_by_default(self, invoke):
        task = add_task(invoke, "Old title")
        result = invoke("--json", "update", task["id"], "--title", "New title")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["title"] == "New title"
        assert data["version"] == 2

    def test_update_stale_version(self, invoke):
        task = add_task(invoke, "Racy")
        invoke("update", task["id"], "--title", "first")

        result = invoke("update", task["id"], "--version", "1", "--title", "second")
        assert result.exit_code == 1
        assert "Version conflict" in result.output

    def test_update_nothing(self, invoke):
        task = add_task(invoke, "Idle")
        result = invoke("update", task["id"])
        assert result.exit_code == 2
        assert "Nothing to update." in result.output

    def test_start_and_done(self, invoke):
        task = add_task(invoke, "Claim me")

        started = invoke("--json", "start", task["id"], "--agent", "claude")
        assert json.loads(started.output)["status"] == "in_progress"

        blocked = invoke("start", task["id"], "--agent", "codex")
        assert blocked.exit_code == 1
        assert "locked by claude" in blocked.output

        done = invoke("--json", "done", task["id"], "--agent", "claude")
        data = json.loads(done.output)
        assert data["status"] == "completed"
        assert data["locked_by"] is None

    def test_agent_from_environment(self, invoke):
        task = add_task(invoke, "Env agent")
        result = invoke("--json", "start", task["id"], env={"TODOS_AGENT_ID": "gemini"})
        assert json.loads(result.output)["locked_by"] == "gemini"

    def test_lock_contention(self, invoke):
        task = add_task(invoke, "Lock me")
        assert invoke("lock", task["id"], "--agent", "claude").exit_code == 0

        result = invoke("lock", task["id"], "--agent", "codex")
        assert result.exit_code == 1
        assert "claude" in result.output

        assert invoke("unlock", task["id"], "--agent", "claude").exit_code == 0
        assert invoke("lock", task["id"], "--agent", "codex").exit_code == 0

    def test_delete_requires_confirmation(self, invoke, db_path):
        task = add_task(invoke, "Doomed")

        aborted = invoke("delete", task["id"], input="n\n")
        assert aborted.exit_code == 1

        deleted = invoke("delete", task["id"], "-y")
        assert deleted.exit_code == 0
        with TaskDatabase(db_path) as db:
            assert db.get_task(task["id"]) is None

    def test_dependencies(self, invoke):
        a = add_task(invoke, "A")
        b = add_task(invoke, "B")

        assert invoke("depend", b["id"], a["id"]).exit_code == 0
        cycle = invoke("depend", a["id"], b["id"])
        assert cycle.exit_code == 1
        assert "would create a cycle" in cycle.output

        assert "Removed." in invoke("undepend", b["id"], a["id"]).output
        assert "No such dependency." in invoke("undepend", b["id"], a["id"]).output

    def test_comment_and_search(self, invoke):
        task = add_task(invoke, "Findable", "-t", "needle")
        assert invoke("comment", task["id"], "on it", "--agent", "codex").exit_code == 0

        shown = invoke("show", task["id"])
        assert "codex: on it" in shown.output

        found = invoke("search", "needle")
        assert "Findable" in found.output
        assert "No matches." in invoke("search", "haystack").output


class TestProjectCommands:

    def test_project_add_and_task_short_ids(self, invoke, tmp_path):
        result = invoke("--json", "project", "add", "Billing Service", "--path", str(tmp_path))
        assert result.exit_code == 0, result.output
        project = json.loads(result.output)
        assert project["task_prefix"] == "BIS"

        task = add_task(invoke, "Invoice", "--project", project["id"][:8])
        assert task["short_id"] == "BIS-00001"

        listed = invoke("project", "list")
        assert "Billing Service" in listed.output

        shown = invoke("project", "show", project["id"][:8])
        assert shown.exit_code == 0
        assert "BIS (next 2)" in shown.output

    def test_project_show_missing(self, invoke):
        result = invoke("project", "show", "nope")
        assert result.exit_code == 1
        assert "Project not found: nope" in result.output

    def test_duplicate_project_path(self, invoke, tmp_path):
        invoke("project", "add", "One", "--path", str(tmp_path))
        result = invoke("project", "add", "Two", "--path", str(tmp_path))
        assert result.exit_code == 1
        assert "already exists" in result.output


class TestSyncCommand:

    def test_sync_to_agent_directory(self, invoke, isolated_environment):
        add_task(invoke, "Mirror me")
        list_dir = isolated_environment / ".todos" / "agents" / "codex" / "shared"
        list_dir.mkdir(parents=True)

        result = invoke("sync", "-a", "codex", "--task-list", "shared")

        assert result.exit_code == 0, result.output
        assert "Pushed 1, pulled 0." in result.output
        assert (list_dir / "1.json").exists()

    def test_sync_errors_exit_non_zero(self, invoke):
        result = invoke("sync", "-a", "codex")
        assert result.exit_code == 1
        assert "sync codex: missing task list id" in result.output
