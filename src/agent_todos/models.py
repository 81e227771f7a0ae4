"""
Pydantic models for the task store boundary.

Rows read from SQLite are converted into these models in one place
(``TaskDatabase._row_to_task`` and friends) so JSON-encoded columns never
leak out as strings. Input models validate statuses, priorities and tags
before anything reaches the database.
"""

from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class SyncDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"
    BOTH = "both"


class SyncPrefer(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class _Model(BaseModel):
    model_config = ConfigDict(use_enum_values=True)


def _validate_tag_list(v: Optional[List[str]]) -> Optional[List[str]]:
    if v is None:
        return v
    cleaned: List[str] = []
    for tag in v:
        if not isinstance(tag, str) or not tag.strip():
            raise ValueError("All tags must be non-empty strings")
        if tag.strip() not in cleaned:
            cleaned.append(tag.strip())
    return cleaned


# Tasks


class Task(_Model):
    """A task row with decoded tags and metadata."""

    id: str
    short_id: Optional[str] = None
    project_id: Optional[str] = None
    parent_id: Optional[str] = None
    plan_id: Optional[str] = None
    task_list_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    agent_id: Optional[str] = None
    assigned_to: Optional[str] = None
    session_id: Optional[str] = None
    working_dir: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None


class TaskCreate(_Model):
    """Input for TaskDatabase.create_task."""

    title: str = Field(min_length=1)
    description: Optional[str] = None
    project_id: Optional[str] = None
    parent_id: Optional[str] = None
    plan_id: Optional[str] = None
    task_list_id: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    agent_id: Optional[str] = None
    assigned_to: Optional[str] = None
    session_id: Optional[str] = None
    working_dir: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v):
        """Validate tags are non-empty strings, dropping duplicates."""
        return _validate_tag_list(v)


class TaskUpdate(_Model):
    """
    Patch for TaskDatabase.update_task.

    ``version`` is the version the caller last observed. Fields that are
    not passed at all are left untouched; fields passed explicitly as None
    are cleared. Use ``changes()`` to get only what the caller provided.
    """

    version: int = Field(ge=1)
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[str] = None
    project_id: Optional[str] = None
    plan_id: Optional[str] = None
    task_list_id: Optional[str] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v):
        """Validate tags are non-empty strings, dropping duplicates."""
        return _validate_tag_list(v)

    # Columns that cannot hold NULL; an explicit None for these is ignored.
    _NOT_NULL: ClassVar[Tuple[str, ...]] = ("title", "status", "priority", "tags", "metadata")

    def changes(self) -> Dict[str, Any]:
        provided = {}
        for name in self.model_fields_set:
            if name == "version":
                continue
            value = getattr(self, name)
            if value is None and name in self._NOT_NULL:
                continue
            provided[name] = value
        return provided


class TaskFilter(_Model):
    project_id: Optional[str] = None
    parent_id: Optional[str] = None
    plan_id: Optional[str] = None
    task_list_id: Optional[str] = None
    status: Optional[Union[TaskStatus, List[TaskStatus]]] = None
    priority: Optional[Union[TaskPriority, List[TaskPriority]]] = None
    assigned_to: Optional[str] = None
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    tags: Optional[List[str]] = None
    limit: Optional[int] = Field(100, ge=1)
    offset: int = Field(0, ge=0)


class TaskDependency(_Model):
    task_id: str
    depends_on: str


class TaskComment(_Model):
    id: str
    task_id: str
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    content: str
    created_at: str


class CommentCreate(_Model):
    task_id: str
    content: str = Field(min_length=1)
    agent_id: Optional[str] = None
    session_id: Optional[str] = None


class TaskWithRelations(Task):
    subtasks: List[Task] = Field(default_factory=list)
    dependencies: List[Task] = Field(default_factory=list)
    blocked_by: List[Task] = Field(default_factory=list)
    comments: List[TaskComment] = Field(default_factory=list)
    parent: Optional[Task] = None


class LockResult(_Model):
    """Outcome of lock_task; contention is a result, not an exception."""

    success: bool
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    error: Optional[str] = None


# Projects and plans


class Project(_Model):
    id: str
    name: str
    path: str
    description: Optional[str] = None
    task_list_id: Optional[str] = None
    task_prefix: Optional[str] = None
    task_counter: int = 0
    created_at: str
    updated_at: str


class ProjectCreate(_Model):
    name: str = Field(min_length=1)
    path: str = Field(min_length=1)
    description: Optional[str] = None
    task_list_id: Optional[str] = None
    task_prefix: Optional[str] = Field(None, min_length=1, max_length=8)


class ProjectUpdate(_Model):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    task_list_id: Optional[str] = None


class Plan(_Model):
    id: str
    project_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    status: PlanStatus = PlanStatus.ACTIVE
    created_at: str
    updated_at: str


class PlanCreate(_Model):
    name: str = Field(min_length=1)
    project_id: Optional[str] = None
    description: Optional[str] = None
    status: PlanStatus = PlanStatus.ACTIVE


class PlanUpdate(_Model):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    status: Optional[PlanStatus] = None


# Sync


class SyncConflict(_Model):
    """One entry of a task's bounded conflict log."""

    agent: str
    direction: SyncDirection
    prefer: SyncPrefer
    local_updated_at: Optional[str] = None
    remote_updated_at: Optional[str] = None
    detected_at: str


class SyncResult(_Model):
    pushed: int = 0
    pulled: int = 0
    errors: List[str] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)

    def __add__(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(
            pushed=self.pushed + other.pushed,
            pulled=self.pulled + other.pulled,
            errors=self.errors + other.errors,
            conflicts=self.conflicts + other.conflicts,
        )
