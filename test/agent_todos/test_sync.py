"""
Tests for mirror directories and the push/pull sync engine.

Every test runs with HOME pointed at a temp directory (see conftest), so
Claude task lists land under ``<tmp>/home/.claude/tasks`` and generic agent
lists under ``<tmp>/home/.todos/agents``.
"""

import json
import os

import pytest

from agent_todos.config import TodosConfig
from agent_todos.mirrors import (
    AgentMirror,
    ClaudeMirror,
    TODOS_ID_KEY,
    TODOS_UPDATED_AT_KEY,
    get_mirror,
    is_claude_agent,
)
from agent_todos.models import ProjectCreate, SyncConflict, TaskCreate, TaskUpdate
from agent_todos.sync import SyncEngine, default_sync_agents, sync_with_agent, sync_with_agents
from agent_todos.sync_utils import (
    HIGHWATERMARK_FILE,
    SYNC_CONFLICTS_KEY,
    allocate_external_id,
    append_sync_conflict,
    read_json_file,
    timestamp_to_ns,
    write_json_file,
)

LIST_ID = "team-list"


def edit_record(path, **changes):
    """Rewrite a mirror record the way an agent would and move its mtime forward."""
    data = read_json_file(path)
    data.update(changes)
    stamp_ns = timestamp_to_ns(data["metadata"][TODOS_UPDATED_AT_KEY])
    write_json_file(path, data)
    later = stamp_ns + 5_000_000_000
    os.utime(path, ns=(later, later))


@pytest.fixture
def codex():
    return AgentMirror("codex")


@pytest.fixture
def engine(db, codex):
    return SyncEngine(db, codex)


@pytest.fixture
def list_dir(codex):
    return codex.task_list_dir(LIST_ID)


class TestSyncUtils:

    def test_allocate_starts_at_one(self, tmp_path):
        assert allocate_external_id(tmp_path) == "1"
        assert allocate_external_id(tmp_path) == "2"
        assert (tmp_path / HIGHWATERMARK_FILE).read_text().strip() == "3"

    def test_allocate_skips_existing_files(self, tmp_path):
        for n in (1, 2, 7):
            write_json_file(tmp_path / f"{n}.json", {"id": str(n)})
        assert allocate_external_id(tmp_path) == "8"

    def test_ids_not_reused_after_delete(self, tmp_path):
        first = allocate_external_id(tmp_path)
        write_json_file(tmp_path / f"{first}.json", {"id": first})
        (tmp_path / f"{first}.json").unlink()
        assert allocate_external_id(tmp_path) != first

    def test_conflict_log_is_bounded_newest_first(self):
        metadata = {"keep": True}
        for i in range(7):
            conflict = SyncConflict(agent="codex", direction="push", prefer="remote",
                                    detected_at=f"2026-01-01T00:00:0{i}.000000+00:00")
            metadata = append_sync_conflict(metadata, conflict)

        log = metadata[SYNC_CONFLICTS_KEY]
        assert len(log) == 5
        assert log[0]["detected_at"].startswith("2026-01-01T00:00:06")
        assert log[-1]["detected_at"].startswith("2026-01-01T00:00:02")
        assert metadata["keep"] is True

    def test_write_json_file_format(self, tmp_path):
        path = tmp_path / "1.json"
        write_json_file(path, {"id": "1", "title": "x"})
        text = path.read_text()
        assert text.endswith("\n")
        assert json.loads(text) == {"id": "1", "title": "x"}


class TestMirrorAdapters:

    def test_claude_directory(self, isolated_environment):
        mirror = get_mirror("Claude")
        assert isinstance(mirror, ClaudeMirror)
        assert mirror.task_list_dir("abc") == isolated_environment / ".claude" / "tasks" / "abc"
        assert mirror.mapping_key == "claude_task_id"

    def test_claude_aliases(self):
        assert is_claude_agent("claude-code")
        assert not is_claude_agent("codex")

    def test_agent_directory_resolution_order(self, tmp_path, monkeypatch, isolated_environment):
        mirror = AgentMirror("gemini", TodosConfig(agent_tasks_dir=str(tmp_path / "from-config")))
        assert mirror.base_dir() == tmp_path / "from-config"

        monkeypatch.setenv("TODOS_GEMINI_TASKS_DIR", str(tmp_path / "from-env"))
        assert mirror.task_list_dir("x") == tmp_path / "from-env" / "gemini" / "x"

        monkeypatch.delenv("TODOS_GEMINI_TASKS_DIR")
        default = AgentMirror("gemini", TodosConfig())
        assert default.base_dir() == isolated_environment / ".todos" / "agents"

        monkeypatch.setenv("TODOS_AGENT_TASKS_DIR", str(tmp_path / "shared"))
        assert default.base_dir() == tmp_path / "shared"

    def test_claude_status_mapping(self, db):
        mirror = ClaudeMirror()
        task = db.create_task(TaskCreate(title="broken", status="failed", priority="high",
                                         assigned_to="claude"))
        record = mirror.to_record(task, "3")
        assert record.status == "completed"
        assert record.subject == "broken"
        assert record.owner == "claude"
        assert record.metadata["priority"] == "high"
        assert record.metadata[TODOS_ID_KEY] == task.id

        fields = mirror.to_task_fields(record)
        assert fields["title"] == "broken"
        assert fields["priority"] == "high"

    def test_claude_record_keeps_foreign_fields(self, db, tmp_path):
        mirror = ClaudeMirror()
        path = tmp_path / "1.json"
        write_json_file(path, {
            "id": "1", "subject": "old", "activeForm": "Doing it", "blockedBy": ["2"],
            "customField": {"a": 1}, "metadata": {"note": "kept"},
        })
        existing = mirror.read_record(path)
        task = db.create_task(TaskCreate(title="new"))

        mirror.write_record(tmp_path, mirror.to_record(task, "1", existing))
        data = read_json_file(path)
        assert data["subject"] == "new"
        assert data["activeForm"] == "Doing it"
        assert data["blockedBy"] == ["2"]
        assert data["customField"] == {"a": 1}
        assert data["metadata"]["note"] == "kept"

    def test_unreadable_record_raises_value_error(self, tmp_path, codex):
        path = tmp_path / "9.json"
        path.write_text("not json")
        with pytest.raises(ValueError):
            codex.read_record(path)


class TestPush:

    def test_push_new_task_to_empty_directory(self, db, engine, list_dir):
        task = db.create_task(TaskCreate(title="X"))

        result = engine.push(LIST_ID)

        assert result.pushed == 1
        assert result.errors == []
        files = sorted(p.name for p in list_dir.glob("*.json"))
        assert files == ["1.json"]
        assert db.get_task(task.id).metadata["codex_task_id"] == "1"
        record = read_json_file(list_dir / "1.json")
        assert record["title"] == "X"
        assert record["metadata"][TODOS_ID_KEY] == task.id

    def test_repeat_push_writes_nothing(self, db, engine, list_dir):
        db.create_task(TaskCreate(title="X"))
        engine.push(LIST_ID)

        result = engine.push(LIST_ID)

        assert result.pushed == 0
        assert len(list(list_dir.glob("*.json"))) == 1

    def test_push_local_edit(self, db, engine, list_dir):
        task = db.create_task(TaskCreate(title="X"))
        engine.push(LIST_ID)
        task = db.get_task(task.id)
        db.update_task(task.id, TaskUpdate(version=task.version, title="X2"))

        result = engine.push(LIST_ID)

        assert result.pushed == 1
        assert read_json_file(list_dir / "1.json")["title"] == "X2"

    def test_mtime_pinned_to_sync_stamp(self, db, engine, list_dir):
        db.create_task(TaskCreate(title="X"))
        engine.push(LIST_ID)
        path = list_dir / "1.json"
        stamp = read_json_file(path)["metadata"][TODOS_UPDATED_AT_KEY]
        assert path.stat().st_mtime_ns == timestamp_to_ns(stamp)

    def test_push_scoped_to_project(self, db, engine, list_dir):
        project = db.create_project(ProjectCreate(name="Scoped", path="/scoped"))
        db.create_task(TaskCreate(title="in", project_id=project.id))
        db.create_task(TaskCreate(title="out"))

        result = engine.push(LIST_ID, project_id=project.id)

        assert result.pushed == 1
        assert read_json_file(list_dir / "1.json")["title"] == "in"

    def test_bounded_conflict_log_on_repeated_push(self, db, engine, list_dir):
        task = db.create_task(TaskCreate(title="X"))
        engine.push(LIST_ID)
        task = db.get_task(task.id)
        db.update_task(task.id, TaskUpdate(version=task.version, title="local"))
        edit_record(list_dir / "1.json", title="remote")

        for _ in range(7):
            engine.push(LIST_ID, prefer="remote")

        log = db.get_task(task.id).metadata[SYNC_CONFLICTS_KEY]
        assert len(log) == 5
        assert all(entry["direction"] == "push" for entry in log)
        assert read_json_file(list_dir / "1.json")["title"] == "remote"


class TestPull:

    def test_pull_missing_directory(self, engine, list_dir):
        result = engine.pull(LIST_ID)
        assert result.pulled == 0
        assert result.errors == [f"pull: task list directory not found: {list_dir}"]

    def test_pull_creates_tasks_for_new_records(self, db, engine, list_dir):
        write_json_file(list_dir / "4.json", {
            "id": "4", "title": "From codex", "status": "in_progress",
            "priority": "high", "tags": ["ops"],
        })

        result = engine.pull(LIST_ID)

        assert result.pulled == 1
        [task] = db.list_tasks()
        assert task.title == "From codex"
        assert task.status == "in_progress"
        assert task.priority == "high"
        assert task.tags == ["ops"]
        assert task.task_list_id == LIST_ID
        assert task.metadata["codex_task_id"] == "4"
        assert read_json_file(list_dir / "4.json")["metadata"][TODOS_ID_KEY] == task.id

    def test_pull_skips_internal_and_bad_records(self, db, engine, list_dir):
        write_json_file(list_dir / "1.json", {"id": "1", "title": "hidden",
                                               "metadata": {"_internal": True}})
        (list_dir / "2.json").write_text("{broken")

        result = engine.pull(LIST_ID)

        assert result.pulled == 0
        assert db.list_tasks() == []
        assert len(result.errors) == 1
        assert result.errors[0].startswith("pull 2:")

    def test_pull_applies_mirror_edit(self, db, engine, list_dir):
        task = db.create_task(TaskCreate(title="X"))
        engine.push(LIST_ID)
        edit_record(list_dir / "1.json", title="edited by codex", status="completed")

        result = engine.pull(LIST_ID)

        assert result.pulled == 1
        pulled = db.get_task(task.id)
        assert pulled.title == "edited by codex"
        assert pulled.status == "completed"
        assert pulled.completed_at is not None
        assert engine.pull(LIST_ID).pulled == 0

    def test_unchanged_mirror_is_not_pulled(self, db, engine):
        db.create_task(TaskCreate(title="X"))
        engine.push(LIST_ID)
        assert engine.pull(LIST_ID).pulled == 0


class TestFullSync:

    def _conflicted(self, db, engine, list_dir):
        task = db.create_task(TaskCreate(title="X"))
        engine.push(LIST_ID)
        task = db.get_task(task.id)
        db.update_task(task.id, TaskUpdate(version=task.version, title="local"))
        edit_record(list_dir / "1.json", title="remote")
        return task.id

    def test_second_sync_is_a_noop(self, db, engine):
        db.create_task(TaskCreate(title="A"))
        db.create_task(TaskCreate(title="B"))
        engine.sync(LIST_ID)

        result = engine.sync(LIST_ID)

        assert (result.pushed, result.pulled) == (0, 0)
        assert result.errors == []
        assert result.conflicts == []

    def test_conflict_prefer_remote(self, db, engine, list_dir):
        task_id = self._conflicted(db, engine, list_dir)

        result = engine.sync(LIST_ID, prefer="remote")

        assert result.conflicts == [f"pull {task_id}"]
        task = db.get_task(task_id)
        assert task.title == "remote"
        assert len(task.metadata[SYNC_CONFLICTS_KEY]) == 1
        assert read_json_file(list_dir / "1.json")["title"] == "remote"

    def test_conflict_prefer_local(self, db, engine, list_dir):
        task_id = self._conflicted(db, engine, list_dir)

        result = engine.sync(LIST_ID, prefer="local")

        assert result.pulled == 0
        assert result.pushed == 1
        task = db.get_task(task_id)
        assert task.title == "local"
        log = task.metadata[SYNC_CONFLICTS_KEY]
        assert len(log) == 1
        assert log[0]["prefer"] == "local"
        assert read_json_file(list_dir / "1.json")["title"] == "local"

        again = engine.sync(LIST_ID, prefer="local")
        assert (again.pushed, again.pulled) == (0, 0)

    def test_conflict_log_not_pushed_to_mirror(self, db, engine, list_dir):
        self._conflicted(db, engine, list_dir)
        engine.sync(LIST_ID, prefer="local")
        metadata = read_json_file(list_dir / "1.json")["metadata"]
        assert SYNC_CONFLICTS_KEY not in metadata

    def test_sync_with_agent_claude(self, db, isolated_environment):
        db.create_task(TaskCreate(title="for claude"))
        list_dir = isolated_environment / ".claude" / "tasks" / "cl"
        list_dir.mkdir(parents=True)

        result = sync_with_agent(db, "claude", "cl")

        assert result.pushed == 1
        assert result.errors == []
        assert read_json_file(list_dir / "1.json")["subject"] == "for claude"


class TestMultiAgentSync:

    def test_missing_list_id_and_errors_prefixed(self, db):
        db.create_task(TaskCreate(title="X"))

        result = sync_with_agents(
            db, ["codex", "gemini", "codex"],
            lambda agent: "shared" if agent == "codex" else None,
        )

        assert result.pushed == 1
        assert "sync gemini: missing task list id" in result.errors
        assert any(e.startswith("codex: pull: task list directory not found") for e in result.errors)

    def test_two_agents_both_receive_tasks(self, db, isolated_environment):
        db.create_task(TaskCreate(title="X"))
        for agent in ("codex", "gemini"):
            (isolated_environment / ".todos" / "agents" / agent / "shared").mkdir(parents=True)

        result = sync_with_agents(db, ["codex", "gemini"], lambda agent: "shared")

        assert result.pushed == 2
        assert result.errors == []
        [task] = db.list_tasks()
        assert task.metadata["codex_task_id"] == "1"
        assert task.metadata["gemini_task_id"] == "1"

    def test_default_sync_agents(self, monkeypatch):
        assert default_sync_agents(TodosConfig()) == ["claude", "codex", "gemini"]
        assert default_sync_agents(TodosConfig(sync_agents="codex")) == ["codex"]
        monkeypatch.setenv("TODOS_SYNC_AGENTS", "Gemini, claude")
        assert default_sync_agents(TodosConfig(sync_agents="codex")) == ["gemini", "claude"]


class TestRecordMatching:
    """Records are matched to the task that owns them, across lists and projects."""

    def test_push_does_not_take_over_another_tasks_record(self, db, codex, engine):
        project = db.create_project(ProjectCreate(name="Scoped", path="/scoped"))
        x = db.create_task(TaskCreate(title="X", project_id=project.id))
        y = db.create_task(TaskCreate(title="Y"))
        engine.push("A", project_id=project.id)
        assert db.get_task(x.id).metadata["codex_task_id"] == "1"

        b_dir = codex.task_list_dir("B")
        codex.write_record(b_dir, codex.to_record(db.get_task(y.id), "1"))
        x = db.get_task(x.id)
        db.update_task(x.id, TaskUpdate(version=x.version, title="X2"))

        result = engine.push("B", project_id=project.id)

        assert result.pushed == 1
        assert result.errors == []
        kept = read_json_file(b_dir / "1.json")
        assert kept["title"] == "Y"
        assert kept["metadata"][TODOS_ID_KEY] == y.id
        added = read_json_file(b_dir / "2.json")
        assert added["title"] == "X2"
        assert added["metadata"][TODOS_ID_KEY] == x.id

    def test_pull_applies_record_to_its_owner(self, db, codex, engine):
        project = db.create_project(ProjectCreate(name="Scoped", path="/scoped"))
        x = db.create_task(TaskCreate(title="X", project_id=project.id))
        y = db.create_task(TaskCreate(title="Y"))
        engine.push("A", project_id=project.id)

        b_dir = codex.task_list_dir("B")
        codex.write_record(b_dir, codex.to_record(db.get_task(y.id), "1"))
        edit_record(b_dir / "1.json", title="Y from B")

        result = engine.pull("B")

        assert result.pulled == 1
        assert db.get_task(y.id).title == "Y from B"
        assert db.get_task(x.id).title == "X"

    def test_project_scoped_pull_finds_mapped_task_elsewhere(self, db, engine, list_dir):
        project = db.create_project(ProjectCreate(name="Scoped", path="/scoped"))
        task = db.create_task(TaskCreate(title="T"))
        engine.push(LIST_ID)

        path = list_dir / "1.json"
        data = read_json_file(path)
        del data["metadata"][TODOS_ID_KEY]
        write_json_file(path, data)
        edit_record(path, title="T edited")

        result = engine.pull(LIST_ID, project_id=project.id)

        assert result.errors == []
        assert [t.title for t in db.list_tasks()] == ["T edited"]
        assert db.get_task(task.id).title == "T edited"
