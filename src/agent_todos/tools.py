"""
MCP Tools Implementation for Agent Todos

Provides Model Context Protocol (MCP) tools for AI agents to work with the
shared task store. Each tool wraps one store or sync operation and returns a
JSON string, so transport code never sees Python objects or exceptions.

Key Features:
- BaseTool abstract class with database access and JSON response formatting
- Domain errors returned with their structured fields (error_type,
  expected_version, actual_version, locked_by, ...)
- Task ids accept unique prefixes
- create_tool_instance factory over AVAILABLE_TOOLS
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .config import TodosConfig, get_agent_task_list_id, load_config
from .database import TaskDatabase
from .errors import ProjectNotFoundError, TaskNotFoundError, TodosError
from .models import (
    CommentCreate,
    ProjectCreate,
    TaskCreate,
    TaskFilter,
    TaskUpdate,
)
from .sync import default_sync_agents, sync_with_agents

logger = logging.getLogger(__name__)


class BaseTool(ABC):
    """
    Abstract base class for MCP tools.

    Provides database access, id resolution and JSON response formatting.
    All tool operations are async so they can be registered directly on a
    FastMCP server.
    """

    def __init__(self, database: TaskDatabase, config: Optional[TodosConfig] = None):
        """
        Initialize tool with its dependencies.

        Args:
            database: TaskDatabase instance for data operations
            config: Loaded config; read lazily from disk when omitted
        """
        self.db = database
        self._config = config

    @property
    def config(self) -> TodosConfig:
        if self._config is None:
            self._config = load_config()
        return self._config

    @abstractmethod
    async def apply(self, **kwargs) -> str:
        """
        Apply the tool operation with provided parameters.

        Returns:
            JSON string with operation results or error information
        """
        pass

    def _format_success_response(self, message: str, **kwargs) -> str:
        """
        Format successful operation response as JSON.

        Args:
            message: Success message for the operation
            **kwargs: Additional data fields to include in response

        Returns:
            JSON string with success response
        """
        response = {
            "success": True,
            "message": message,
            **kwargs
        }
        return json.dumps(response, default=str)

    def _format_error_response(self, message: str, **kwargs) -> str:
        """
        Format error response as JSON.

        Args:
            message: Error message explaining the failure
            **kwargs: Additional error context (e.g., locked_by, actual_version)

        Returns:
            JSON string with error response
        """
        response = {
            "success": False,
            "message": message,
            **kwargs
        }
        return json.dumps(response, default=str)

    def _handle_error(self, action: str, error: Exception) -> str:
        """Convert an exception raised while running a tool into an error response."""
        if isinstance(error, TodosError):
            logger.info(f"Failed to {action}: {error}")
            details = error.to_dict()
            details.pop("message", None)
            return self._format_error_response(str(error), **details)
        if isinstance(error, ValidationError):
            logger.info(f"Invalid input to {action}: {error}")
            return self._format_error_response(
                f"Invalid input: {error.errors()[0].get('msg', str(error))}",
                error_type="validation_error",
                error_details=str(error),
            )
        logger.error(f"Failed to {action}: {error}")
        return self._format_error_response(
            f"Failed to {action}",
            error_type="internal_error",
            error_details=str(error),
        )

    def _resolve_task_id(self, task_id: str) -> str:
        """Full id for a task id or unique prefix; the input unchanged when nothing matches."""
        return self.db.resolve_partial_id("tasks", task_id) or task_id

    def _parse_boolean(self, value: Optional[Union[str, bool]], default: bool = True) -> bool:
        """
        Parse string boolean value to actual boolean.

        Accepts both string and boolean inputs ("true"/"false", "1"/"0",
        "yes"/"no").
        """
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ('true', '1', 'yes', 'on')
        return bool(value)


class CreateTaskTool(BaseTool):
    """Create a task; a project-scoped task gets a short id like ``API-00001``."""

    async def apply(
        self,
        title: str,
        description: Optional[str] = None,
        project_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        task_list_id: Optional[str] = None,
        status: str = "pending",
        priority: str = "medium",
        agent_id: Optional[str] = None,
        assigned_to: Optional[str] = None,
        session_id: Optional[str] = None,
        working_dir: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        try:
            if project_id:
                project_id = self.db.resolve_partial_id("projects", project_id) or project_id
            if parent_id:
                parent_id = self._resolve_task_id(parent_id)
            task = self.db.create_task(TaskCreate(
                title=title,
                description=description,
                project_id=project_id,
                parent_id=parent_id,
                plan_id=plan_id,
                task_list_id=task_list_id,
                status=status,
                priority=priority,
                agent_id=agent_id,
                assigned_to=assigned_to,
                session_id=session_id,
                working_dir=working_dir,
                tags=tags or [],
                metadata=metadata or {},
            ))
            logger.info(f"Created task {task.id} '{task.title}'")
            return self._format_success_response(
                f"Task '{task.title}' created", task=task.model_dump()
            )
        except Exception as e:
            return self._handle_error("create task", e)


class GetTaskTool(BaseTool):
    """Fetch one task, by default with subtasks, dependencies and comments."""

    async def apply(self, task_id: str, include_relations: Optional[Union[str, bool]] = True) -> str:
        try:
            resolved = self._resolve_task_id(task_id)
            if self._parse_boolean(include_relations):
                task = self.db.get_task_with_relations(resolved)
            else:
                task = self.db.get_task(resolved)
            if task is None:
                raise TaskNotFoundError(task_id)
            return self._format_success_response("Task retrieved", task=task.model_dump())
        except Exception as e:
            return self._handle_error("get task", e)


class ListTasksTool(BaseTool):
    """
    List tasks with optional filters.

    ``status`` and ``priority`` accept one value or a list. Results are
    ordered by priority, then newest first.
    """

    async def apply(
        self,
        project_id: Optional[str] = None,
        status: Optional[Union[str, List[str]]] = None,
        priority: Optional[Union[str, List[str]]] = None,
        assigned_to: Optional[str] = None,
        task_list_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> str:
        try:
            tasks = self.db.list_tasks(TaskFilter(
                project_id=project_id,
                status=status,
                priority=priority,
                assigned_to=assigned_to,
                task_list_id=task_list_id,
                tags=tags,
                limit=limit,
                offset=offset,
            ))
            return self._format_success_response(
                f"Found {len(tasks)} task(s)",
                tasks=[t.model_dump() for t in tasks],
                count=len(tasks),
            )
        except Exception as e:
            return self._handle_error("list tasks", e)


class SearchTasksTool(BaseTool):
    async def apply(self, query: str, project_id: Optional[str] = None) -> str:
        try:
            tasks = self.db.search_tasks(query, project_id=project_id)
            return self._format_success_response(
                f"Found {len(tasks)} task(s) matching '{query}'",
                tasks=[t.model_dump() for t in tasks],
                count=len(tasks),
            )
        except Exception as e:
            return self._handle_error("search tasks", e)


class UpdateTaskTool(BaseTool):
    """
    Versioned task update.

    Only parameters that are not None are changed. To clear a nullable field
    (description, assigned_to, project_id, plan_id, task_list_id) name it in
    ``clear_fields``. A stale ``version`` fails with a version_conflict error
    carrying ``expected_version`` and ``actual_version``.
    """

    CLEARABLE = ("description", "assigned_to", "project_id", "plan_id", "task_list_id")

    async def apply(
        self,
        task_id: str,
        version: int,
        title: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        assigned_to: Optional[str] = None,
        project_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        task_list_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        clear_fields: Optional[List[str]] = None,
    ) -> str:
        try:
            provided = {
                name: value for name, value in (
                    ("title", title), ("description", description), ("status", status),
                    ("priority", priority), ("assigned_to", assigned_to),
                    ("project_id", project_id), ("plan_id", plan_id),
                    ("task_list_id", task_list_id), ("tags", tags), ("metadata", metadata),
                ) if value is not None
            }
            for name in clear_fields or []:
                if name not in self.CLEARABLE:
                    return self._format_error_response(
                        f"Field '{name}' cannot be cleared",
                        error_type="validation_error",
                        clearable_fields=list(self.CLEARABLE),
                    )
                provided[name] = None

            task = self.db.update_task(
                self._resolve_task_id(task_id), TaskUpdate(version=version, **provided)
            )
            return self._format_success_response(
                f"Task updated to version {task.version}", task=task.model_dump()
            )
        except Exception as e:
            return self._handle_error("update task", e)


class DeleteTaskTool(BaseTool):
    async def apply(self, task_id: str) -> str:
        try:
            resolved = self._resolve_task_id(task_id)
            if not self.db.delete_task(resolved):
                raise TaskNotFoundError(task_id)
            logger.info(f"Deleted task {resolved}")
            return self._format_success_response("Task deleted", task_id=resolved)
        except Exception as e:
            return self._handle_error("delete task", e)


class StartTaskTool(BaseTool):
    """Claim a task: lock it, set in_progress and assign it in one atomic write."""

    async def apply(self, task_id: str, agent_id: str) -> str:
        try:
            task = self.db.start_task(self._resolve_task_id(task_id), agent_id)
            return self._format_success_response(
                f"Task started by {agent_id}", task=task.model_dump()
            )
        except Exception as e:
            return self._handle_error("start task", e)


class CompleteTaskTool(BaseTool):
    """
    Mark a task completed and release its lock.

    Without ``agent_id`` the lock owner is not checked.
    """

    async def apply(self, task_id: str, agent_id: Optional[str] = None) -> str:
        try:
            task = self.db.complete_task(self._resolve_task_id(task_id), agent_id)
            return self._format_success_response("Task completed", task=task.model_dump())
        except Exception as e:
            return self._handle_error("complete task", e)


class LockTaskTool(BaseTool):
    """Acquire a 30 minute lease; contention is reported with the current holder."""

    async def apply(self, task_id: str, agent_id: str) -> str:
        try:
            resolved = self._resolve_task_id(task_id)
            result = self.db.lock_task(resolved, agent_id)
            if not result.success:
                return self._format_error_response(
                    result.error or "Task is locked",
                    error_type="lock_error",
                    task_id=resolved,
                    locked_by=result.locked_by,
                    locked_at=result.locked_at,
                )
            return self._format_success_response(
                f"Task locked by {agent_id}",
                task_id=resolved,
                locked_by=result.locked_by,
                locked_at=result.locked_at,
            )
        except Exception as e:
            return self._handle_error("lock task", e)


class UnlockTaskTool(BaseTool):
    async def apply(self, task_id: str, agent_id: Optional[str] = None) -> str:
        try:
            resolved = self._resolve_task_id(task_id)
            self.db.unlock_task(resolved, agent_id)
            return self._format_success_response("Task unlocked", task_id=resolved)
        except Exception as e:
            return self._handle_error("unlock task", e)


class AddDependencyTool(BaseTool):
    """Make ``task_id`` depend on ``depends_on``; edges that would close a cycle are rejected."""

    async def apply(self, task_id: str, depends_on: str) -> str:
        try:
            edge = self.db.add_dependency(
                self._resolve_task_id(task_id), self._resolve_task_id(depends_on)
            )
            return self._format_success_response("Dependency added", dependency=edge.model_dump())
        except Exception as e:
            return self._handle_error("add dependency", e)


class RemoveDependencyTool(BaseTool):
    async def apply(self, task_id: str, depends_on: str) -> str:
        try:
            removed = self.db.remove_dependency(
                self._resolve_task_id(task_id), self._resolve_task_id(depends_on)
            )
            message = "Dependency removed" if removed else "Dependency did not exist"
            return self._format_success_response(message, removed=removed)
        except Exception as e:
            return self._handle_error("remove dependency", e)


class AddCommentTool(BaseTool):
    async def apply(
        self,
        task_id: str,
        content: str,
        agent_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> str:
        try:
            comment = self.db.add_comment(CommentCreate(
                task_id=self._resolve_task_id(task_id),
                content=content,
                agent_id=agent_id,
                session_id=session_id,
            ))
            return self._format_success_response("Comment added", comment=comment.model_dump())
        except Exception as e:
            return self._handle_error("add comment", e)


class CreateProjectTool(BaseTool):
    """Register a project; its task prefix is derived from the name unless given."""

    async def apply(
        self,
        name: str,
        path: str,
        description: Optional[str] = None,
        task_list_id: Optional[str] = None,
        task_prefix: Optional[str] = None,
    ) -> str:
        try:
            existing = self.db.get_project_by_path(path)
            if existing:
                return self._format_error_response(
                    f"A project already exists at {path}",
                    error_type="duplicate_project",
                    project=existing.model_dump(),
                )
            project = self.db.create_project(ProjectCreate(
                name=name,
                path=path,
                description=description,
                task_list_id=task_list_id,
                task_prefix=task_prefix,
            ))
            return self._format_success_response(
                f"Project '{project.name}' created", project=project.model_dump()
            )
        except Exception as e:
            return self._handle_error("create project", e)


class GetProjectTool(BaseTool):
    """Fetch one project by id or unique id prefix."""

    async def apply(self, project_id: str) -> str:
        try:
            resolved = self.db.resolve_partial_id("projects", project_id) or project_id
            project = self.db.get_project(resolved)
            if project is None:
                raise ProjectNotFoundError(project_id)
            return self._format_success_response("Project retrieved", project=project.model_dump())
        except Exception as e:
            return self._handle_error("get project", e)


class ListProjectsTool(BaseTool):
    async def apply(self) -> str:
        try:
            projects = self.db.list_projects()
            return self._format_success_response(
                f"Found {len(projects)} project(s)",
                projects=[p.model_dump() for p in projects],
                count=len(projects),
            )
        except Exception as e:
            return self._handle_error("list projects", e)


class SyncTasksTool(BaseTool):
    """
    Sync the store with agent task list directories.

    Agents default to TODOS_SYNC_AGENTS, then the config file, then
    claude/codex/gemini. Each agent's task list comes from ``task_list_id``,
    its config entry, or the project's task list.
    """

    async def apply(
        self,
        agents: Optional[List[str]] = None,
        task_list_id: Optional[str] = None,
        project_id: Optional[str] = None,
        direction: str = "both",
        prefer: str = "remote",
    ) -> str:
        try:
            project = None
            if project_id:
                project_id = self.db.resolve_partial_id("projects", project_id) or project_id
                project = self.db.get_project(project_id)

            def task_list_id_for(agent: str) -> Optional[str]:
                return (
                    task_list_id
                    or get_agent_task_list_id(agent, self.config)
                    or (project.task_list_id if project else None)
                )

            result = sync_with_agents(
                self.db,
                agents or default_sync_agents(self.config),
                task_list_id_for,
                project_id=project_id,
                direction=direction,
                prefer=prefer,
                config=self.config,
            )
            return json.dumps({
                "success": not result.errors,
                "message": f"Pushed {result.pushed}, pulled {result.pulled}",
                **result.model_dump(),
            })
        except Exception as e:
            return self._handle_error("sync tasks", e)


AVAILABLE_TOOLS = {
    "create_task": CreateTaskTool,
    "get_task": GetTaskTool,
    "list_tasks": ListTasksTool,
    "search_tasks": SearchTasksTool,
    "update_task": UpdateTaskTool,
    "delete_task": DeleteTaskTool,
    "start_task": StartTaskTool,
    "complete_task": CompleteTaskTool,
    "lock_task": LockTaskTool,
    "unlock_task": UnlockTaskTool,
    "add_dependency": AddDependencyTool,
    "remove_dependency": RemoveDependencyTool,
    "add_comment": AddCommentTool,
    "create_project": CreateProjectTool,
    "get_project": GetProjectTool,
    "list_projects": ListProjectsTool,
    "sync_tasks": SyncTasksTool,
}


def create_tool_instance(tool_name: str, database: TaskDatabase,
                         config: Optional[TodosConfig] = None) -> BaseTool:
    """
    Factory function to create tool instances with dependencies.

    Args:
        tool_name: Name of the tool to create
        database: TaskDatabase instance for data operations
        config: Loaded config, shared by tools that need it

    Returns:
        Configured tool instance ready for use

    Raises:
        KeyError: If tool_name is not found in AVAILABLE_TOOLS
    """
    if tool_name not in AVAILABLE_TOOLS:
        raise KeyError(f"Unknown tool '{tool_name}'. Available tools: {list(AVAILABLE_TOOLS.keys())}")

    tool_class = AVAILABLE_TOOLS[tool_name]
    return tool_class(database, config)
