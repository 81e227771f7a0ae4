"""
Shared fixtures for the agent todos test suite.

Provides isolated database files, a fake home directory for mirror
directories and config, and helpers for back-dating timestamps.
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from agent_todos.config import reset_config_cache
from agent_todos.database import TaskDatabase

_TODOS_ENV_VARS = (
    "TODOS_DB_PATH",
    "TODOS_DB_SCOPE",
    "TODOS_CONFIG_PATH",
    "TODOS_SYNC_AGENTS",
    "TODOS_AGENT_TASKS_DIR",
    "TODOS_AGENT_ID",
    "TODOS_CODEX_TASKS_DIR",
    "TODOS_GEMINI_TASKS_DIR",
)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Point HOME at a temp dir and clear TODOS_* variables for every test."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for name in _TODOS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_config_cache()
    yield home
    reset_config_cache()


@pytest.fixture
def db_path():
    tmp_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db", prefix="test_todos_")
    tmp_file.close()
    yield tmp_file.name
    for suffix in ("", "-wal", "-shm"):
        Path(tmp_file.name + suffix).unlink(missing_ok=True)


@pytest.fixture
def db(db_path):
    database = TaskDatabase(db_path)
    yield database
    database.close()


def iso_ago(**delta) -> str:
    return (datetime.now(timezone.utc) - timedelta(**delta)).isoformat(timespec="microseconds")


def backdate_lock(database: TaskDatabase, task_id: str, **delta) -> None:
    """Move a lease's acquisition time into the past."""
    database._connection.execute(
        "UPDATE tasks SET locked_at = ? WHERE id = ?", (iso_ago(**delta), task_id)
    )
