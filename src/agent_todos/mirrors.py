"""
Mirror adapters for per-agent task list directories.

Each adapter knows where an agent keeps its task files and how one of its
records maps onto a local task. Reading, writing and id allocation are
shared; the sync engine never touches record schemas directly.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import TodosConfig, get_agent_tasks_dir, normalize_agent, todos_home
from .models import Task, TaskPriority, TaskStatus
from .sync_utils import (
    SYNC_CONFLICTS_KEY,
    allocate_external_id,
    list_json_files,
    pin_mtime,
    read_json_file,
    write_json_file,
)

logger = logging.getLogger(__name__)

TODOS_ID_KEY = "todos_id"
TODOS_UPDATED_AT_KEY = "todos_updated_at"
TODOS_VERSION_KEY = "todos_version"
INTERNAL_KEY = "_internal"

CLAUDE_AGENT_NAMES = ("claude", "claude-code", "claude_code")

_STATUS_VALUES = {s.value for s in TaskStatus}
_PRIORITY_VALUES = {p.value for p in TaskPriority}


class MirrorRecord(BaseModel):
    """Base record schema. Fields the adapter does not own are kept as extras."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v) if isinstance(v, int) else v

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v):
        return v if isinstance(v, dict) else {}

    @property
    def todos_id(self) -> Optional[str]:
        return self.metadata.get(TODOS_ID_KEY)

    @property
    def synced_at(self) -> Optional[str]:
        return self.metadata.get(TODOS_UPDATED_AT_KEY)

    @property
    def is_internal(self) -> bool:
        return bool(self.metadata.get(INTERNAL_KEY))


class ClaudeTaskRecord(MirrorRecord):
    subject: str = ""
    description: str = ""
    active_form: str = Field("", alias="activeForm")
    status: str = "pending"
    owner: str = ""
    blocks: List[str] = Field(default_factory=list)
    blocked_by: List[str] = Field(default_factory=list, alias="blockedBy")


class AgentTaskRecord(MirrorRecord):
    title: str = ""
    description: str = ""
    status: str = TaskStatus.PENDING.value
    priority: str = TaskPriority.MEDIUM.value
    assigned_to: str = ""
    tags: List[str] = Field(default_factory=list)


def _bookkeeping(task: Task) -> Dict[str, Any]:
    return {
        TODOS_ID_KEY: task.id,
        TODOS_UPDATED_AT_KEY: task.updated_at,
        TODOS_VERSION_KEY: task.version,
    }


def _extras(existing: Optional[MirrorRecord]) -> Dict[str, Any]:
    return dict(existing.model_extra or {}) if existing is not None else {}


class MirrorAdapter(ABC):
    """
    One agent's view of the task store.

    Subclasses define the directory layout, the record schema and the
    conversion in both directions. Records are stored one per file as
    ``<external id>.json``.
    """

    record_model: Type[MirrorRecord] = MirrorRecord

    def __init__(self, agent: str, config: Optional[TodosConfig] = None):
        self.agent = normalize_agent(agent)
        self.config = config

    @property
    def mapping_key(self) -> str:
        """Local metadata key holding this agent's external id."""
        return f"{self.agent.replace('-', '_')}_task_id"

    @abstractmethod
    def task_list_dir(self, task_list_id: str) -> Path:
        pass

    @abstractmethod
    def to_record(self, task: Task, external_id: str,
                  existing: Optional[MirrorRecord] = None) -> MirrorRecord:
        """Mirror representation of ``task``, keeping fields of ``existing`` it does not own."""

    @abstractmethod
    def to_task_fields(self, record: MirrorRecord) -> Dict[str, Any]:
        """Local field values carried by a record (title, status, owner, ...)."""

    def record_path(self, directory: Path, external_id: str) -> Path:
        return directory / f"{external_id}.json"

    def list_record_files(self, directory: Path) -> List[Path]:
        return list_json_files(directory)

    def read_record(self, path: Path) -> MirrorRecord:
        """
        Raises:
            ValueError: the file is missing, not JSON or does not fit the schema
        """
        data = read_json_file(path)
        if data is None:
            raise ValueError(f"unreadable record {path.name}")
        data.setdefault("id", path.stem)
        return self.record_model.model_validate(data)

    def write_record(self, directory: Path, record: MirrorRecord) -> Path:
        """Write a record and pin its mtime to the sync stamp it carries."""
        path = self.record_path(directory, record.id)
        write_json_file(path, record.model_dump(by_alias=True))
        if record.synced_at:
            pin_mtime(path, record.synced_at)
        return path

    def allocate_id(self, directory: Path) -> str:
        return allocate_external_id(directory)


class ClaudeMirror(MirrorAdapter):
    """Claude Code task lists under ``~/.claude/tasks/<task_list_id>``."""

    record_model = ClaudeTaskRecord

    def __init__(self, config: Optional[TodosConfig] = None):
        super().__init__("claude", config)

    def task_list_dir(self, task_list_id: str) -> Path:
        return Path.home() / ".claude" / "tasks" / task_list_id

    def to_record(self, task: Task, external_id: str,
                  existing: Optional[MirrorRecord] = None) -> ClaudeTaskRecord:
        # failed and cancelled have no Claude equivalent
        status = task.status
        if status not in ("pending", "in_progress", "completed"):
            status = "completed"

        metadata = dict(existing.metadata) if existing is not None else {}
        metadata["priority"] = task.priority
        metadata.update(_bookkeeping(task))

        record = ClaudeTaskRecord(
            **_extras(existing),
            id=external_id,
            subject=task.title,
            description=task.description or "",
            activeForm=getattr(existing, "active_form", ""),
            status=status,
            owner=task.assigned_to or task.agent_id or "",
            blocks=list(getattr(existing, "blocks", [])),
            blockedBy=list(getattr(existing, "blocked_by", [])),
            metadata=metadata,
        )
        return record

    def to_task_fields(self, record: ClaudeTaskRecord) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "title": record.subject,
            "description": record.description or None,
            "assigned_to": record.owner or None,
        }
        if record.status in _STATUS_VALUES:
            fields["status"] = record.status
        priority = record.metadata.get("priority")
        if priority in _PRIORITY_VALUES:
            fields["priority"] = priority
        return fields


class AgentMirror(MirrorAdapter):
    """Generic agent task lists under ``<base>/<agent>/<task_list_id>``."""

    record_model = AgentTaskRecord

    def base_dir(self) -> Path:
        env_dir = os.environ.get(f"TODOS_{self.agent.upper().replace('-', '_')}_TASKS_DIR")
        if env_dir:
            return Path(env_dir).expanduser()
        configured = get_agent_tasks_dir(self.agent, self.config)
        if configured:
            return Path(configured).expanduser()
        shared = os.environ.get("TODOS_AGENT_TASKS_DIR")
        if shared:
            return Path(shared).expanduser()
        return todos_home() / "agents"

    def task_list_dir(self, task_list_id: str) -> Path:
        return self.base_dir() / self.agent / task_list_id

    def to_record(self, task: Task, external_id: str,
                  existing: Optional[MirrorRecord] = None) -> AgentTaskRecord:
        metadata = dict(existing.metadata) if existing is not None else {}
        metadata.update({k: v for k, v in task.metadata.items() if k != SYNC_CONFLICTS_KEY})
        metadata.update(_bookkeeping(task))

        return AgentTaskRecord(
            **_extras(existing),
            id=external_id,
            title=task.title,
            description=task.description or "",
            status=task.status,
            priority=task.priority,
            assigned_to=task.assigned_to or task.agent_id or "",
            tags=list(task.tags),
            metadata=metadata,
        )

    def to_task_fields(self, record: AgentTaskRecord) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "title": record.title,
            "description": record.description or None,
            "assigned_to": record.assigned_to or None,
            "tags": [t for t in record.tags if isinstance(t, str) and t.strip()],
        }
        if record.status in _STATUS_VALUES:
            fields["status"] = record.status
        if record.priority in _PRIORITY_VALUES:
            fields["priority"] = record.priority
        return fields


def is_claude_agent(agent: str) -> bool:
    return normalize_agent(agent) in CLAUDE_AGENT_NAMES


def get_mirror(agent: str, config: Optional[TodosConfig] = None) -> MirrorAdapter:
    if is_claude_agent(agent):
        return ClaudeMirror(config)
    return AgentMirror(agent, config)
