"""Command line interface for the shared task store.

Every command opens the database resolved by ``--db``/``TODOS_DB_PATH`` or
the usual lookup (nearest ``.todos/todos.db``, then ``~/.todos/todos.db``).
``--json`` switches output to machine-readable JSON.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

import click
from pydantic import ValidationError

from .config import get_agent_task_list_id, load_config, resolve_db_path
from .database import TaskDatabase
from .errors import ProjectNotFoundError, TaskNotFoundError, TodosError
from .models import (
    CommentCreate,
    ProjectCreate,
    Task,
    TaskCreate,
    TaskFilter,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
)
from .sync import default_sync_agents, sync_with_agents

logger = logging.getLogger(__name__)

STATUSES = [s.value for s in TaskStatus]
PRIORITIES = [p.value for p in TaskPriority]


class TodosGroup(click.Group):
    """Group that turns domain errors into clean CLI errors."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except TodosError as e:
            raise click.ClickException(str(e)) from e
        except ValidationError as e:
            raise click.ClickException(f"Invalid input: {e.errors()[0].get('msg', e)}") from e


def _db(ctx: click.Context) -> TaskDatabase:
    obj = ctx.find_root().obj
    if obj.get("db") is None:
        path = obj["db_path"] or resolve_db_path()
        logger.debug(f"Opening task database at {path}")
        obj["db"] = TaskDatabase(path)
        ctx.find_root().call_on_close(obj["db"].close)
    return obj["db"]


def _json_mode(ctx: click.Context) -> bool:
    return ctx.find_root().obj["json"]


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _resolve(db: TaskDatabase, table: str, partial: str) -> str:
    return db.resolve_partial_id(table, partial) or partial


def _task_line(task: Task) -> str:
    ident = task.short_id or task.id[:8]
    line = f"{ident:<12} [{task.status}] ({task.priority}) {task.title}"
    if task.assigned_to:
        line += f"  @{task.assigned_to}"
    if task.locked_by:
        line += f"  locked:{task.locked_by}"
    return line


def _show_task(ctx: click.Context, task: Task, message: Optional[str] = None) -> None:
    if _json_mode(ctx):
        _echo_json(task.model_dump())
        return
    if message:
        click.echo(message)
    click.echo(_task_line(task))


@click.group(cls=TodosGroup)
@click.option("--db", "db_path", type=click.Path(dir_okay=False), default=None,
              help="Path to the task database (default: resolved from TODOS_DB_PATH / cwd).")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def cli(ctx, db_path, verbose, as_json):
    """Shared task list for AI agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj.update(db_path=db_path, json=as_json, db=None)


@cli.command("add")
@click.argument("title")
@click.option("-d", "--description", default=None)
@click.option("-p", "--priority", type=click.Choice(PRIORITIES), default="medium", show_default=True)
@click.option("--project", "project_id", default=None, help="Project id or prefix.")
@click.option("--parent", "parent_id", default=None, help="Parent task id or prefix.")
@click.option("-t", "--tag", "tags", multiple=True)
@click.option("--assign", "assigned_to", default=None)
@click.option("--agent", "agent_id", default=None, envvar="TODOS_AGENT_ID")
@click.pass_context
def add(ctx, title, description, priority, project_id, parent_id, tags, assigned_to, agent_id):
    """Create a task."""
    db = _db(ctx)
    task = db.create_task(TaskCreate(
        title=title,
        description=description,
        priority=priority,
        project_id=_resolve(db, "projects", project_id) if project_id else None,
        parent_id=_resolve(db, "tasks", parent_id) if parent_id else None,
        tags=list(tags),
        assigned_to=assigned_to,
        agent_id=agent_id,
        working_dir=os.getcwd(),
    ))
    _show_task(ctx, task, "Created:")


@cli.command("list")
@click.option("-s", "--status", "statuses", type=click.Choice(STATUSES), multiple=True)
@click.option("-p", "--priority", "priorities", type=click.Choice(PRIORITIES), multiple=True)
@click.option("--project", "project_id", default=None)
@click.option("--assigned", "assigned_to", default=None)
@click.option("-t", "--tag", "tags", multiple=True)
@click.option("-n", "--limit", type=click.IntRange(min=1), default=100, show_default=True)
@click.option("--all", "show_all", is_flag=True, help="No limit.")
@click.pass_context
def list_(ctx, statuses, priorities, project_id, assigned_to, tags, limit, show_all):
    """List tasks, most urgent first."""
    db = _db(ctx)
    tasks = db.list_tasks(TaskFilter(
        status=list(statuses) or None,
        priority=list(priorities) or None,
        project_id=_resolve(db, "projects", project_id) if project_id else None,
        assigned_to=assigned_to,
        tags=list(tags) or None,
        limit=None if show_all else limit,
    ))
    if _json_mode(ctx):
        _echo_json([t.model_dump() for t in tasks])
        return
    if not tasks:
        click.echo("No tasks.")
    for task in tasks:
        click.echo(_task_line(task))


@cli.command("show")
@click.argument("task_id")
@click.pass_context
def show(ctx, task_id):
    """Show a task with its relations."""
    db = _db(ctx)
    task = db.get_task_with_relations(db.require_task(task_id).id)
    if _json_mode(ctx):
        _echo_json(task.model_dump())
        return

    click.echo(_task_line(task))
    click.echo(f"  id:       {task.id}")
    click.echo(f"  version:  {task.version}")
    if task.description:
        click.echo(f"  {task.description}")
    if task.tags:
        click.echo(f"  tags:     {', '.join(task.tags)}")
    if task.parent:
        click.echo(f"  parent:   {_task_line(task.parent)}")
    for label, related in (("subtask", task.subtasks), ("depends on", task.dependencies),
                           ("blocks", task.blocked_by)):
        for other in related:
            click.echo(f"  {label}: {_task_line(other)}")
    for comment in task.comments:
        click.echo(f"  [{comment.created_at}] {comment.agent_id or '-'}: {comment.content}")


@cli.command("update")
@click.argument("task_id")
@click.option("--version", "expected_version", type=int, default=None,
              help="Version you last saw (default: current version).")
@click.option("--title", default=None)
@click.option("-d", "--description", default=None)
@click.option("-s", "--status", type=click.Choice(STATUSES), default=None)
@click.option("-p", "--priority", type=click.Choice(PRIORITIES), default=None)
@click.option("--assign", "assigned_to", default=None)
@click.option("--unassign", is_flag=True, help="Clear the assignee.")
@click.option("-t", "--tag", "tags", multiple=True, help="Replace tags.")
@click.pass_context
def update(ctx, task_id, expected_version, title, description, status, priority,
           assigned_to, unassign, tags):
    """Update task fields with a version check."""
    db = _db(ctx)
    task = db.require_task(task_id)
    fields = {
        name: value for name, value in (
            ("title", title), ("description", description), ("status", status),
            ("priority", priority), ("assigned_to", assigned_to),
        ) if value is not None
    }
    if unassign:
        fields["assigned_to"] = None
    if tags:
        fields["tags"] = list(tags)
    if not fields:
        raise click.UsageError("Nothing to update.")

    version = expected_version if expected_version is not None else task.version
    updated = db.update_task(task.id, TaskUpdate(version=version, **fields))
    _show_task(ctx, updated, f"Updated to version {updated.version}:")


@cli.command("start")
@click.argument("task_id")
@click.option("--agent", "agent_id", required=True, envvar="TODOS_AGENT_ID")
@click.pass_context
def start(ctx, task_id, agent_id):
    """Claim a task: lock, assign and set in_progress."""
    db = _db(ctx)
    task = db.start_task(db.require_task(task_id).id, agent_id)
    _show_task(ctx, task, "Started:")


@cli.command("done")
@click.argument("task_id")
@click.option("--agent", "agent_id", default=None, envvar="TODOS_AGENT_ID")
@click.pass_context
def done(ctx, task_id, agent_id):
    """Mark a task completed and release its lock."""
    db = _db(ctx)
    task = db.complete_task(db.require_task(task_id).id, agent_id)
    _show_task(ctx, task, "Completed:")


@cli.command("lock")
@click.argument("task_id")
@click.option("--agent", "agent_id", required=True, envvar="TODOS_AGENT_ID")
@click.pass_context
def lock(ctx, task_id, agent_id):
    """Acquire a 30 minute lock on a task."""
    db = _db(ctx)
    result = db.lock_task(db.require_task(task_id).id, agent_id)
    if _json_mode(ctx):
        _echo_json(result.model_dump())
    if not result.success:
        raise click.ClickException(result.error or "Task is locked")
    if not _json_mode(ctx):
        click.echo(f"Locked by {result.locked_by} at {result.locked_at}")


@cli.command("unlock")
@click.argument("task_id")
@click.option("--agent", "agent_id", default=None, envvar="TODOS_AGENT_ID",
              help="Only release if held by this agent.")
@click.pass_context
def unlock(ctx, task_id, agent_id):
    """Release a task lock."""
    db = _db(ctx)
    task = db.require_task(task_id)
    db.unlock_task(task.id, agent_id)
    if _json_mode(ctx):
        _echo_json({"success": True, "task_id": task.id})
    else:
        click.echo("Unlocked.")


@cli.command("delete")
@click.argument("task_id")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
def delete(ctx, task_id, yes):
    """Delete a task and its subtasks."""
    db = _db(ctx)
    task = db.require_task(task_id)
    if not yes:
        click.confirm(f"Delete '{task.title}' and its subtasks?", abort=True)
    if not db.delete_task(task.id):
        raise TaskNotFoundError(task_id)
    if _json_mode(ctx):
        _echo_json({"success": True, "task_id": task.id})
    else:
        click.echo("Deleted.")


@cli.command("depend")
@click.argument("task_id")
@click.argument("depends_on")
@click.pass_context
def depend(ctx, task_id, depends_on):
    """Make TASK_ID depend on DEPENDS_ON."""
    db = _db(ctx)
    edge = db.add_dependency(db.require_task(task_id).id, db.require_task(depends_on).id)
    if _json_mode(ctx):
        _echo_json(edge.model_dump())
    else:
        click.echo(f"{edge.task_id[:8]} now depends on {edge.depends_on[:8]}")


@cli.command("undepend")
@click.argument("task_id")
@click.argument("depends_on")
@click.pass_context
def undepend(ctx, task_id, depends_on):
    """Remove a dependency."""
    db = _db(ctx)
    removed = db.remove_dependency(_resolve(db, "tasks", task_id), _resolve(db, "tasks", depends_on))
    if _json_mode(ctx):
        _echo_json({"removed": removed})
    else:
        click.echo("Removed." if removed else "No such dependency.")


@cli.command("comment")
@click.argument("task_id")
@click.argument("content")
@click.option("--agent", "agent_id", default=None, envvar="TODOS_AGENT_ID")
@click.pass_context
def comment(ctx, task_id, content, agent_id):
    """Add a comment to a task."""
    db = _db(ctx)
    created = db.add_comment(CommentCreate(
        task_id=db.require_task(task_id).id, content=content, agent_id=agent_id
    ))
    if _json_mode(ctx):
        _echo_json(created.model_dump())
    else:
        click.echo(f"Comment {created.id[:8]} added.")


@cli.command("search")
@click.argument("query")
@click.option("--project", "project_id", default=None)
@click.pass_context
def search(ctx, query, project_id):
    """Search titles, descriptions and tags."""
    db = _db(ctx)
    tasks = db.search_tasks(
        query, project_id=_resolve(db, "projects", project_id) if project_id else None
    )
    if _json_mode(ctx):
        _echo_json([t.model_dump() for t in tasks])
        return
    if not tasks:
        click.echo("No matches.")
    for task in tasks:
        click.echo(_task_line(task))


@cli.group("project")
def project():
    """Manage projects."""


@project.command("add")
@click.argument("name")
@click.option("--path", default=None, help="Project directory (default: cwd).")
@click.option("--prefix", "task_prefix", default=None, help="Short id prefix (default: from name).")
@click.option("-d", "--description", default=None)
@click.option("--task-list", "task_list_id", default=None)
@click.pass_context
def project_add(ctx, name, path, task_prefix, description, task_list_id):
    """Register a project."""
    db = _db(ctx)
    project_path = str(Path(path or os.getcwd()).resolve())
    if db.get_project_by_path(project_path):
        raise click.ClickException(f"A project already exists at {project_path}")
    created = db.create_project(ProjectCreate(
        name=name, path=project_path, description=description,
        task_prefix=task_prefix, task_list_id=task_list_id,
    ))
    if _json_mode(ctx):
        _echo_json(created.model_dump())
    else:
        click.echo(f"Created project {created.name} ({created.task_prefix}) {created.id}")


@project.command("list")
@click.pass_context
def project_list(ctx):
    """List projects."""
    projects = _db(ctx).list_projects()
    if _json_mode(ctx):
        _echo_json([p.model_dump() for p in projects])
        return
    if not projects:
        click.echo("No projects.")
    for p in projects:
        click.echo(f"{p.id[:8]}  {p.task_prefix or '-':<6} {p.name}  {p.path}")


@project.command("show")
@click.argument("project_id")
@click.pass_context
def project_show(ctx, project_id):
    """Show a project."""
    db = _db(ctx)
    found = db.get_project(_resolve(db, "projects", project_id))
    if found is None:
        raise ProjectNotFoundError(project_id)
    if _json_mode(ctx):
        _echo_json(found.model_dump())
        return
    click.echo(f"{found.name}  ({found.id})")
    click.echo(f"  path:      {found.path}")
    click.echo(f"  prefix:    {found.task_prefix or '-'} (next {found.task_counter + 1})")
    click.echo(f"  task list: {found.task_list_id or '-'}")
    if found.description:
        click.echo(f"  {found.description}")


@cli.command("sync")
@click.option("-a", "--agent", "agents", multiple=True,
              help="Agent to sync (repeatable; default: TODOS_SYNC_AGENTS or config).")
@click.option("--task-list", "task_list_id", default=None)
@click.option("--project", "project_id", default=None)
@click.option("--direction", type=click.Choice(["push", "pull", "both"]), default="both",
              show_default=True)
@click.option("--prefer", type=click.Choice(["local", "remote"]), default="remote",
              show_default=True)
@click.pass_context
def sync(ctx, agents, task_list_id, project_id, direction, prefer):
    """Sync tasks with agent task list directories."""
    db = _db(ctx)
    config = load_config()
    project_obj = None
    if project_id:
        project_obj = db.get_project(_resolve(db, "projects", project_id))

    def task_list_id_for(agent: str) -> Optional[str]:
        return (
            task_list_id
            or get_agent_task_list_id(agent, config)
            or (project_obj.task_list_id if project_obj else None)
        )

    result = sync_with_agents(
        db,
        list(agents) or default_sync_agents(config),
        task_list_id_for,
        project_id=project_obj.id if project_obj else None,
        direction=direction,
        prefer=prefer,
        config=config,
    )

    if _json_mode(ctx):
        _echo_json(result.model_dump())
    else:
        click.echo(f"Pushed {result.pushed}, pulled {result.pulled}.")
        for conflict in result.conflicts:
            click.echo(f"conflict: {conflict}")
    for error in result.errors:
        click.echo(f"error: {error}", err=True)
    if result.errors:
        ctx.exit(1)


@cli.command("mcp")
@click.option("--transport", type=click.Choice(["stdio", "sse", "http"]), default="stdio",
              show_default=True)
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
@click.pass_context
def mcp(ctx, transport, host, port):
    """Run the MCP tool server."""
    from .mcp_server import create_mcp_server

    server = create_mcp_server(_db(ctx), load_config())
    server.start_server_sync(transport=transport, host=host, port=port)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
