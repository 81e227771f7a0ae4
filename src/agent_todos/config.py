"""
Configuration loading and database path resolution.

The config file lives at ``~/.todos/config.json`` (``config.yaml`` is also
accepted) unless ``TODOS_CONFIG_PATH`` points elsewhere. JSON is a subset of
YAML, so both are parsed with ``yaml.safe_load``.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_SYNC_AGENTS = ["claude", "codex", "gemini"]

_config_cache: Dict[str, "TodosConfig"] = {}


def normalize_agent(agent: str) -> str:
    return agent.strip().lower()


def todos_home() -> Path:
    return Path.home() / ".todos"


class AgentConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    task_list_id: Optional[str] = None
    tasks_dir: Optional[str] = None


class TodosConfig(BaseModel):
    """Parsed config file. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    sync_agents: Optional[List[str]] = None
    task_list_id: Optional[str] = None
    agent_tasks_dir: Optional[str] = None
    agents: Dict[str, AgentConfig] = Field(default_factory=dict)

    @field_validator("sync_agents", mode="before")
    @classmethod
    def split_sync_agents(cls, v):
        """Accept a comma separated string as well as a list."""
        if isinstance(v, str):
            v = v.split(",")
        if v is None:
            return v
        agents = [normalize_agent(a) for a in v if isinstance(a, str) and a.strip()]
        return agents or None

    @field_validator("agents", mode="before")
    @classmethod
    def normalize_agent_keys(cls, v):
        if isinstance(v, dict):
            return {normalize_agent(k): cfg or {} for k, cfg in v.items()}
        return v

    def agent(self, name: str) -> AgentConfig:
        return self.agents.get(normalize_agent(name)) or AgentConfig()


def default_config_path() -> Path:
    env_path = os.environ.get("TODOS_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    json_path = todos_home() / "config.json"
    if json_path.exists():
        return json_path
    yaml_path = todos_home() / "config.yaml"
    return yaml_path if yaml_path.exists() else json_path


def load_config(path: Optional[Union[str, Path]] = None) -> TodosConfig:
    """
    Load (and cache) the config file.

    A missing file yields defaults.

    Raises:
        ValueError: the file exists but is not valid YAML/JSON or has bad values
    """
    config_path = Path(path).expanduser() if path else default_config_path()
    key = str(config_path)
    if key in _config_cache:
        return _config_cache[key]

    if not config_path.exists():
        config = TodosConfig()
    else:
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            if not isinstance(raw, dict):
                raise ValueError("top level must be a mapping")
            config = TodosConfig.model_validate(raw)
        except (yaml.YAMLError, ValidationError, ValueError) as e:
            raise ValueError(f"Invalid config file {config_path}: {e}") from e
        logger.debug(f"Loaded config from {config_path}")

    _config_cache[key] = config
    return config


def reset_config_cache() -> None:
    _config_cache.clear()


def get_sync_agents_from_config(config: Optional[TodosConfig] = None) -> Optional[List[str]]:
    config = config or load_config()
    return list(config.sync_agents) if config.sync_agents else None


def get_agent_task_list_id(agent: str, config: Optional[TodosConfig] = None) -> Optional[str]:
    """Task list for an agent: its own entry first, then the global default."""
    config = config or load_config()
    return config.agent(agent).task_list_id or config.task_list_id


def get_agent_tasks_dir(agent: str, config: Optional[TodosConfig] = None) -> Optional[str]:
    config = config or load_config()
    return config.agent(agent).tasks_dir or config.agent_tasks_dir


def find_git_root(start: Path) -> Optional[Path]:
    for candidate in [start, *start.parents]:
        if (candidate / ".git").exists():
            return candidate
    return None


def resolve_db_path(cwd: Optional[Union[str, Path]] = None) -> Path:
    """
    Pick the database file.

    Order: ``TODOS_DB_PATH``; the nearest ``.todos/todos.db`` in ``cwd`` or a
    parent; ``<git root>/.todos/todos.db`` when ``TODOS_DB_SCOPE=project``;
    otherwise ``~/.todos/todos.db``.
    """
    env_path = os.environ.get("TODOS_DB_PATH")
    if env_path:
        return Path(env_path).expanduser()

    start = Path(cwd or os.getcwd()).resolve()
    for directory in [start, *start.parents]:
        candidate = directory / ".todos" / "todos.db"
        if candidate.exists():
            return candidate

    if os.environ.get("TODOS_DB_SCOPE", "").lower() == "project":
        root = find_git_root(start)
        if root is not None:
            return root / ".todos" / "todos.db"

    return todos_home() / "todos.db"
