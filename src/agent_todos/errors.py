"""
Error taxonomy for the task store.

All errors are raised synchronously by TaskDatabase and never retried
internally. Consumers (MCP tools, CLI) surface them verbatim through
``to_dict()``.
"""

from typing import Any, Dict, Optional


class TodosError(Exception):
    """Base class for every domain error raised by the store."""

    error_type = "todos_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error_type": self.error_type, "message": str(self)}


class NotFoundError(TodosError):
    """A referenced entity does not exist."""

    error_type = "not_found"
    entity = "Entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} not found: {entity_id}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["entity"] = self.entity.lower()
        data["entity_id"] = self.entity_id
        return data


class TaskNotFoundError(NotFoundError):
    entity = "Task"

    @property
    def task_id(self) -> str:
        return self.entity_id


class ProjectNotFoundError(NotFoundError):
    entity = "Project"

    @property
    def project_id(self) -> str:
        return self.entity_id


class PlanNotFoundError(NotFoundError):
    entity = "Plan"

    @property
    def plan_id(self) -> str:
        return self.entity_id


class VersionConflictError(TodosError):
    """The caller's expected version no longer matches the stored row."""

    error_type = "version_conflict"

    def __init__(self, task_id: str, expected_version: int, actual_version: int):
        self.task_id = task_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict for task {task_id}: "
            f"expected {expected_version}, got {actual_version}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            task_id=self.task_id,
            expected_version=self.expected_version,
            actual_version=self.actual_version,
        )
        return data


class LockError(TodosError):
    """A live lease held by another agent blocks the operation."""

    error_type = "lock_error"

    def __init__(self, task_id: str, locked_by: Optional[str]):
        self.task_id = task_id
        self.locked_by = locked_by
        if locked_by:
            message = f"Task {task_id} is locked by {locked_by}"
        else:
            message = f"Task {task_id} lock changed concurrently"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(task_id=self.task_id, locked_by=self.locked_by)
        return data


class DependencyCycleError(TodosError):
    """Inserting the edge task_id -> depends_on would close a cycle."""

    error_type = "dependency_cycle"

    def __init__(self, task_id: str, depends_on: str):
        self.task_id = task_id
        self.depends_on = depends_on
        super().__init__(
            f"Adding dependency {task_id} -> {depends_on} would create a cycle"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(task_id=self.task_id, depends_on=self.depends_on)
        return data
