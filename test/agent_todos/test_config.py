"""
Tests for config file loading and database path resolution.
"""

import json

import pytest

from agent_todos.config import (
    TodosConfig,
    default_config_path,
    get_agent_task_list_id,
    get_agent_tasks_dir,
    load_config,
    reset_config_cache,
    resolve_db_path,
)


def write_config(home, name, text):
    path = home / ".todos" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


class TestLoadConfig:

    def test_missing_file_gives_defaults(self):
        config = load_config()
        assert config.sync_agents is None
        assert config.agents == {}

    def test_json_config(self, isolated_environment):
        write_config(isolated_environment, "config.json", json.dumps({
            "sync_agents": ["Claude", "codex"],
            "task_list_id": "global",
            "agents": {"Codex": {"task_list_id": "codex-list", "tasks_dir": "/srv/codex"}},
            "unrelated": 1,
        }))

        config = load_config()

        assert config.sync_agents == ["claude", "codex"]
        assert get_agent_task_list_id("codex", config) == "codex-list"
        assert get_agent_task_list_id("gemini", config) == "global"
        assert get_agent_tasks_dir("codex", config) == "/srv/codex"
        assert get_agent_tasks_dir("gemini", config) is None

    def test_yaml_config(self, isolated_environment):
        write_config(isolated_environment, "config.yaml",
                     "sync_agents: codex, gemini\nagent_tasks_dir: /srv/agents\n")

        assert default_config_path().name == "config.yaml"
        config = load_config()
        assert config.sync_agents == ["codex", "gemini"]
        assert get_agent_tasks_dir("gemini", config) == "/srv/agents"

    def test_explicit_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.json"
        path.write_text('{"task_list_id": "from-env"}')
        monkeypatch.setenv("TODOS_CONFIG_PATH", str(path))

        assert load_config().task_list_id == "from-env"

    def test_config_is_cached_until_reset(self, isolated_environment):
        path = write_config(isolated_environment, "config.json", '{"task_list_id": "one"}')
        assert load_config().task_list_id == "one"

        path.write_text('{"task_list_id": "two"}')
        assert load_config().task_list_id == "one"

        reset_config_cache()
        assert load_config().task_list_id == "two"

    @pytest.mark.parametrize("text", ["[1, 2]", "{not: [valid", '{"agents": "nope"}'])
    def test_invalid_config_raises(self, isolated_environment, text):
        write_config(isolated_environment, "config.json", text)
        with pytest.raises(ValueError, match="Invalid config file"):
            load_config()

    def test_empty_sync_agents_is_none(self):
        assert TodosConfig(sync_agents=" , ").sync_agents is None


class TestResolveDbPath:

    def test_environment_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TODOS_DB_PATH", str(tmp_path / "explicit.db"))
        assert resolve_db_path(tmp_path) == tmp_path / "explicit.db"

    def test_nearest_local_database(self, tmp_path):
        db_file = tmp_path / ".todos" / "todos.db"
        db_file.parent.mkdir()
        db_file.touch()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)

        assert resolve_db_path(nested) == db_file

    def test_project_scope_uses_git_root(self, tmp_path, monkeypatch):
        (tmp_path / "repo" / ".git").mkdir(parents=True)
        nested = tmp_path / "repo" / "src"
        nested.mkdir()
        monkeypatch.setenv("TODOS_DB_SCOPE", "project")

        assert resolve_db_path(nested) == tmp_path / "repo" / ".todos" / "todos.db"

    def test_falls_back_to_home(self, tmp_path, isolated_environment):
        work = tmp_path / "work"
        work.mkdir()
        assert resolve_db_path(work) == isolated_environment / ".todos" / "todos.db"
