"""
FastMCP Server Implementation for Agent Todos

Wraps the tool classes in a FastMCP server so agents can reach the shared
task store over stdio, SSE or streamable HTTP.

Key Features:
- FastMCP server factory with dependency injection
- One registered MCP tool per entry in AVAILABLE_TOOLS
- Transport mode configuration (stdio, SSE, HTTP)
- Server lifecycle management with an async context manager
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastmcp import FastMCP

from .config import TodosConfig
from .database import TaskDatabase
from .tools import AVAILABLE_TOOLS, create_tool_instance

logger = logging.getLogger(__name__)

SUPPORTED_TRANSPORTS = ("stdio", "sse", "http")


class TodosMCPServer:
    """
    FastMCP server wrapper with lifecycle management and tool registration.

    Tools are created once per server with the shared database handle and
    captured by the registered closures.
    """

    def __init__(
        self,
        database: TaskDatabase,
        config: Optional[TodosConfig] = None,
        server_name: str = "Agent Todos",
        server_version: str = "0.1.0",
    ):
        """
        Initialize MCP server with its dependencies.

        Args:
            database: TaskDatabase instance for data operations
            config: Loaded config passed to tools that need it
            server_name: Name identifier for the MCP server
            server_version: Version string for server identification
        """
        self.database = database
        self.config = config
        self.server_name = server_name
        self.server_version = server_version
        self.mcp_server: Optional[FastMCP] = None

        self._server_instructions = (
            f"{server_name} is a task store shared by several AI agents. "
            "Use start_task to claim work (it locks, assigns and sets in_progress atomically), "
            "complete_task when done, and pass the version you last read to update_task; "
            "a version_conflict error means someone else changed the task first. "
            "sync_tasks mirrors tasks to and from per-agent task list directories."
        )

    def _create_server(self) -> FastMCP:
        """
        Create the FastMCP instance and register every tool.

        Returns:
            Configured FastMCP server instance
        """
        mcp = FastMCP(
            name=self.server_name,
            version=self.server_version,
            instructions=self._server_instructions,
        )

        create_task_tool = create_tool_instance("create_task", self.database, self.config)

        @mcp.tool
        async def create_task(
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
            """
            Create a task. Tasks in a project get a short id like API-00001.

            Args:
                title: Task title
                status: pending, in_progress, completed, failed or cancelled
                priority: low, medium, high or critical
                parent_id: Parent task id (or unique prefix) for subtasks
            """
            return await create_task_tool.apply(
                title=title, description=description, project_id=project_id,
                parent_id=parent_id, plan_id=plan_id, task_list_id=task_list_id,
                status=status, priority=priority, agent_id=agent_id,
                assigned_to=assigned_to, session_id=session_id, working_dir=working_dir,
                tags=tags, metadata=metadata,
            )

        get_task_tool = create_tool_instance("get_task", self.database, self.config)

        @mcp.tool
        async def get_task(task_id: str, include_relations: bool = True) -> str:
            """Get a task by id or unique id prefix, with subtasks, dependencies and comments."""
            return await get_task_tool.apply(task_id=task_id, include_relations=include_relations)

        list_tasks_tool = create_tool_instance("list_tasks", self.database, self.config)

        @mcp.tool
        async def list_tasks(
            project_id: Optional[str] = None,
            status: Optional[Union[str, List[str]]] = None,
            priority: Optional[Union[str, List[str]]] = None,
            assigned_to: Optional[str] = None,
            task_list_id: Optional[str] = None,
            tags: Optional[List[str]] = None,
            limit: Optional[int] = 100,
            offset: int = 0,
        ) -> str:
            """List tasks ordered by priority then newest first. Expired locks are cleared first."""
            return await list_tasks_tool.apply(
                project_id=project_id, status=status, priority=priority,
                assigned_to=assigned_to, task_list_id=task_list_id, tags=tags,
                limit=limit, offset=offset,
            )

        search_tasks_tool = create_tool_instance("search_tasks", self.database, self.config)

        @mcp.tool
        async def search_tasks(query: str, project_id: Optional[str] = None) -> str:
            """Search task titles, descriptions and tags."""
            return await search_tasks_tool.apply(query=query, project_id=project_id)

        update_task_tool = create_tool_instance("update_task", self.database, self.config)

        @mcp.tool
        async def update_task(
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
            """
            Update a task. Pass the version you last read; on version_conflict re-read and retry.

            Args:
                clear_fields: Nullable fields to clear (description, assigned_to,
                    project_id, plan_id, task_list_id)
            """
            return await update_task_tool.apply(
                task_id=task_id, version=version, title=title, description=description,
                status=status, priority=priority, assigned_to=assigned_to,
                project_id=project_id, plan_id=plan_id, task_list_id=task_list_id,
                tags=tags, metadata=metadata, clear_fields=clear_fields,
            )

        delete_task_tool = create_tool_instance("delete_task", self.database, self.config)

        @mcp.tool
        async def delete_task(task_id: str) -> str:
            """Delete a task together with its subtasks, comments and dependency edges."""
            return await delete_task_tool.apply(task_id=task_id)

        start_task_tool = create_tool_instance("start_task", self.database, self.config)

        @mcp.tool
        async def start_task(task_id: str, agent_id: str) -> str:
            """Claim a task: lock it, assign it to agent_id and set in_progress atomically."""
            return await start_task_tool.apply(task_id=task_id, agent_id=agent_id)

        complete_task_tool = create_tool_instance("complete_task", self.database, self.config)

        @mcp.tool
        async def complete_task(task_id: str, agent_id: Optional[str] = None) -> str:
            """Mark a task completed and release its lock."""
            return await complete_task_tool.apply(task_id=task_id, agent_id=agent_id)

        lock_task_tool = create_tool_instance("lock_task", self.database, self.config)

        @mcp.tool
        async def lock_task(task_id: str, agent_id: str) -> str:
            """Acquire a 30 minute lock on a task without changing its status."""
            return await lock_task_tool.apply(task_id=task_id, agent_id=agent_id)

        unlock_task_tool = create_tool_instance("unlock_task", self.database, self.config)

        @mcp.tool
        async def unlock_task(task_id: str, agent_id: Optional[str] = None) -> str:
            """Release a lock. With agent_id only the holder may release it."""
            return await unlock_task_tool.apply(task_id=task_id, agent_id=agent_id)

        add_dependency_tool = create_tool_instance("add_dependency", self.database, self.config)

        @mcp.tool
        async def add_dependency(task_id: str, depends_on: str) -> str:
            """Record that task_id depends on depends_on. Cycles are rejected."""
            return await add_dependency_tool.apply(task_id=task_id, depends_on=depends_on)

        remove_dependency_tool = create_tool_instance("remove_dependency", self.database, self.config)

        @mcp.tool
        async def remove_dependency(task_id: str, depends_on: str) -> str:
            """Remove a dependency edge."""
            return await remove_dependency_tool.apply(task_id=task_id, depends_on=depends_on)

        add_comment_tool = create_tool_instance("add_comment", self.database, self.config)

        @mcp.tool
        async def add_comment(
            task_id: str,
            content: str,
            agent_id: Optional[str] = None,
            session_id: Optional[str] = None,
        ) -> str:
            """Add a comment to a task."""
            return await add_comment_tool.apply(
                task_id=task_id, content=content, agent_id=agent_id, session_id=session_id
            )

        create_project_tool = create_tool_instance("create_project", self.database, self.config)

        @mcp.tool
        async def create_project(
            name: str,
            path: str,
            description: Optional[str] = None,
            task_list_id: Optional[str] = None,
            task_prefix: Optional[str] = None,
        ) -> str:
            """Register a project. The task prefix is derived from the name unless given."""
            return await create_project_tool.apply(
                name=name, path=path, description=description,
                task_list_id=task_list_id, task_prefix=task_prefix,
            )

        get_project_tool = create_tool_instance("get_project", self.database, self.config)

        @mcp.tool
        async def get_project(project_id: str) -> str:
            """Get a project by id or unique id prefix, including its task prefix and counter."""
            return await get_project_tool.apply(project_id=project_id)

        list_projects_tool = create_tool_instance("list_projects", self.database, self.config)

        @mcp.tool
        async def list_projects() -> str:
            """List registered projects."""
            return await list_projects_tool.apply()

        sync_tasks_tool = create_tool_instance("sync_tasks", self.database, self.config)

        @mcp.tool
        async def sync_tasks(
            agents: Optional[List[str]] = None,
            task_list_id: Optional[str] = None,
            project_id: Optional[str] = None,
            direction: str = "both",
            prefer: str = "remote",
        ) -> str:
            """
            Sync tasks with agent task list directories.

            Args:
                direction: push, pull or both (pull runs first)
                prefer: local or remote, the side that wins a conflict
            """
            return await sync_tasks_tool.apply(
                agents=agents, task_list_id=task_list_id, project_id=project_id,
                direction=direction, prefer=prefer,
            )

        logger.debug(f"Registered {len(AVAILABLE_TOOLS)} MCP tools on '{self.server_name}'")
        return mcp

    def _transport_kwargs(self, transport: str, host: str, port: int, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        transport = transport.lower()
        if transport not in SUPPORTED_TRANSPORTS:
            raise ValueError(
                f"Unsupported transport mode: {transport}. Supported: {', '.join(SUPPORTED_TRANSPORTS)}"
            )
        if transport == "stdio":
            return {}
        # Explicit endpoint paths avoid client/inspector mismatch
        kwargs.setdefault("path", "/sse" if transport == "sse" else "/mcp")
        return {"host": host, "port": port, **kwargs}

    async def start_server(
        self,
        transport: str = "stdio",
        host: str = "127.0.0.1",
        port: int = 8000,
        **kwargs
    ) -> None:
        """
        Start the FastMCP server inside a running event loop.

        Args:
            transport: Transport mode ('stdio', 'sse', 'http')
            host: Host address for SSE/HTTP transports
            port: Port number for SSE/HTTP transports
            **kwargs: Additional transport-specific configuration
        """
        transport_kwargs = self._transport_kwargs(transport, host, port, kwargs)
        if not self.mcp_server:
            self.mcp_server = self._create_server()

        logger.info(f"Starting FastMCP server with {transport} transport")
        try:
            await self.mcp_server.run_async(transport=transport.lower(), **transport_kwargs)
        except Exception as e:
            logger.error(f"Failed to start FastMCP server with {transport} transport: {e}")
            raise RuntimeError(f"MCP server startup failed: {e}") from e

    def start_server_sync(self, transport: str = "stdio", host: str = "127.0.0.1",
                          port: int = 8000, **kwargs) -> None:
        """Start the server and let FastMCP own the event loop."""
        transport_kwargs = self._transport_kwargs(transport, host, port, kwargs)
        if not self.mcp_server:
            self.mcp_server = self._create_server()

        logger.info(f"Starting FastMCP server with {transport} transport")
        self.mcp_server.run(transport=transport.lower(), **transport_kwargs)

    @asynccontextmanager
    async def lifecycle_manager(self):
        """
        Async context manager around the server's lifetime.

        Creates the FastMCP instance on entry and closes the database on exit.
        """
        try:
            if not self.mcp_server:
                self.mcp_server = self._create_server()
            logger.info(f"FastMCP server lifecycle started for '{self.server_name}'")
            yield self.mcp_server
        finally:
            self.database.close()
            logger.info(f"FastMCP server lifecycle ended for '{self.server_name}'")

    def get_server_info(self) -> Dict[str, Any]:
        return {
            "name": self.server_name,
            "version": self.server_version,
            "instructions": self._server_instructions,
            "registered_tools": list(AVAILABLE_TOOLS),
            "server_created": self.mcp_server is not None,
            "database": self.database.db_path,
        }


def create_mcp_server(
    database: TaskDatabase,
    config: Optional[TodosConfig] = None,
    server_name: str = "Agent Todos",
    server_version: str = "0.1.0",
) -> TodosMCPServer:
    """
    Factory function to create a configured TodosMCPServer.

    Args:
        database: TaskDatabase instance for data operations
        config: Loaded config passed to tools that need it
        server_name: Name identifier for the MCP server
        server_version: Version string for server identification

    Returns:
        TodosMCPServer ready for startup
    """
    return TodosMCPServer(
        database=database,
        config=config,
        server_name=server_name,
        server_version=server_version,
    )
