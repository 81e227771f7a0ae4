"""
Task Database Layer with Optimistic Versioning and Lease Locking

Provides the SQLite-backed entity store shared by every agent: tasks,
projects, plans, comments and dependency edges. Every mutation is a single
conditional write so concurrent agents never interleave a check with an act.

- Optimistic versioning: UPDATE ... WHERE id = ? AND version = ?
- Lease locks: UPDATE ... WHERE locked_by IS NULL OR locked_by = ? OR expired
- Lazy lease expiry: list/search sweep expired leases before reading
- Cycle-free dependency edges checked and inserted in one write transaction
"""

import json
import logging
import re
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .errors import (
    DependencyCycleError,
    LockError,
    NotFoundError,
    PlanNotFoundError,
    ProjectNotFoundError,
    TaskNotFoundError,
    VersionConflictError,
)
from .graph import would_create_cycle
from .models import (
    CommentCreate,
    LockResult,
    Plan,
    PlanCreate,
    PlanUpdate,
    Project,
    ProjectCreate,
    ProjectUpdate,
    Task,
    TaskComment,
    TaskCreate,
    TaskDependency,
    TaskFilter,
    TaskStatus,
    TaskUpdate,
    TaskWithRelations,
)

logger = logging.getLogger(__name__)

LOCK_EXPIRY_MINUTES = 30

_PRIORITY_ORDER = """
    CASE priority WHEN 'critical' THEN 0 WHEN 'high' THEN 1
                  WHEN 'medium' THEN 2 WHEN 'low' THEN 3 END
"""

MIGRATIONS = [
    # 1: initial schema
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        path TEXT UNIQUE NOT NULL,
        description TEXT,
        task_list_id TEXT,
        task_prefix TEXT,
        task_counter INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS plans (
        id TEXT PRIMARY KEY,
        project_id TEXT REFERENCES projects(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'completed', 'archived')),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        short_id TEXT,
        project_id TEXT REFERENCES projects(id) ON DELETE SET NULL,
        parent_id TEXT REFERENCES tasks(id) ON DELETE CASCADE,
        plan_id TEXT REFERENCES plans(id) ON DELETE SET NULL,
        task_list_id TEXT,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'in_progress', 'completed', 'failed', 'cancelled')),
        priority TEXT NOT NULL DEFAULT 'medium'
            CHECK (priority IN ('low', 'medium', 'high', 'critical')),
        agent_id TEXT,
        assigned_to TEXT,
        session_id TEXT,
        working_dir TEXT,
        tags TEXT NOT NULL DEFAULT '[]',
        metadata TEXT NOT NULL DEFAULT '{}',
        version INTEGER NOT NULL DEFAULT 1,
        locked_by TEXT,
        locked_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT,
        CONSTRAINT json_tags CHECK (json_valid(tags) AND json_type(tags) = 'array'),
        CONSTRAINT json_metadata CHECK (json_valid(metadata) AND json_type(metadata) = 'object')
    );

    CREATE TABLE IF NOT EXISTS task_dependencies (
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        depends_on TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        PRIMARY KEY (task_id, depends_on),
        CHECK (task_id != depends_on)
    );

    CREATE TABLE IF NOT EXISTS task_comments (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        agent_id TEXT,
        session_id TEXT,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);
    CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_id);
    CREATE INDEX IF NOT EXISTS idx_tasks_plan ON tasks(plan_id);
    CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
    CREATE INDEX IF NOT EXISTS idx_tasks_assigned ON tasks(assigned_to);
    CREATE INDEX IF NOT EXISTS idx_tasks_lock_expiration
        ON tasks(locked_at) WHERE locked_at IS NOT NULL;
    CREATE INDEX IF NOT EXISTS idx_dependencies_depends_on ON task_dependencies(depends_on);
    CREATE INDEX IF NOT EXISTS idx_comments_task ON task_comments(task_id);
    CREATE INDEX IF NOT EXISTS idx_plans_project ON plans(project_id);
    CREATE INDEX IF NOT EXISTS idx_projects_prefix ON projects(task_prefix);
    """,
    # 2: tag join table for exact tag filtering, backfilled from the JSON column
    """
    CREATE TABLE IF NOT EXISTS task_tags (
        task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        tag TEXT NOT NULL,
        PRIMARY KEY (task_id, tag)
    );
    CREATE INDEX IF NOT EXISTS idx_task_tags_tag ON task_tags(tag);

    INSERT OR IGNORE INTO task_tags (task_id, tag)
        SELECT tasks.id, json_each.value FROM tasks, json_each(tasks.tags)
        WHERE json_each.value != '';
    """,
]


def now_iso() -> str:
    """Current UTC time as a fixed-width ISO string (always microseconds)."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp written by the store or a mirror; None if unusable."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def lock_expiry_cutoff(minutes: int = LOCK_EXPIRY_MINUTES, now: Optional[datetime] = None) -> str:
    """Leases acquired before this timestamp are expired."""
    now = now or datetime.now(timezone.utc)
    return (now - timedelta(minutes=minutes)).isoformat(timespec="microseconds")


def is_lock_expired(locked_at: Optional[str], minutes: int = LOCK_EXPIRY_MINUTES) -> bool:
    acquired = parse_timestamp(locked_at)
    if acquired is None:
        return True
    return datetime.now(timezone.utc) - acquired > timedelta(minutes=minutes)


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def derive_prefix(name: str) -> str:
    """
    Derive a short uppercase task prefix from a project name.

    Three or more words give their initials, two words give two letters of
    the first plus one of the second, a single word gives its first three
    letters. Names with no usable characters fall back to ``PRJ``.
    """
    words = re.sub(r"[^a-zA-Z0-9\s]", "", name).split()
    if not words:
        return "PRJ"
    if len(words) >= 3:
        prefix = "".join(w[0] for w in words[:3])
    elif len(words) == 2:
        prefix = words[0][:2] + words[1][0]
    else:
        prefix = words[0][:3]
    return prefix.upper()


def _parse_json(text: Optional[str], default):
    try:
        value = json.loads(text) if text else default
    except (ValueError, TypeError):
        return default
    return value if isinstance(value, type(default)) else default


class TaskDatabase:
    """
    SQLite entity store for multi-agent task coordination.

    Features:
    - WAL mode for concurrent readers alongside one writer
    - Optimistic version checks folded into each UPDATE statement
    - Lease locks with lazy 30-minute expiry, no background sweeper
    - Explicit handle: open as many stores as needed, no global state
    """

    _PARTIAL_ID_TABLES = ("tasks", "projects", "plans", "task_comments")
    _TASK_UPDATE_COLUMNS = (
        "title", "description", "status", "priority", "assigned_to",
        "project_id", "plan_id", "task_list_id", "tags", "metadata",
    )

    def __init__(self, db_path: Union[str, Path], lock_expiry_minutes: int = LOCK_EXPIRY_MINUTES):
        """
        Open (and migrate) the database.

        Args:
            db_path: Path to the SQLite file, or ":memory:"
            lock_expiry_minutes: Lease age after which any agent may take over
        """
        self.db_path = str(db_path)
        self.lock_expiry_minutes = lock_expiry_minutes
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._last_timestamp = ""

        if not self._is_memory():
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    def _is_memory(self) -> bool:
        return self.db_path == ":memory:" or self.db_path.startswith("file::memory:")

    def _initialize_database(self) -> None:
        """Open the connection, configure pragmas and run pending migrations."""
        try:
            # Autocommit; transactions are opened explicitly where needed
            self._connection = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            if not self._is_memory():
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")

            self._run_migrations()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}") from e

    def _run_migrations(self) -> None:
        cursor = self._connection.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS _migrations (
                id INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        row = cursor.execute("SELECT MAX(id) FROM _migrations").fetchone()
        current_level = row[0] or 0

        for level in range(current_level, len(MIGRATIONS)):
            self._connection.executescript(MIGRATIONS[level])
            cursor.execute(
                "INSERT OR IGNORE INTO _migrations (id, applied_at) VALUES (?, ?)",
                (level + 1, now_iso()),
            )
            logger.debug(f"Applied migration {level + 1} to {self.db_path}")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Write transaction taking the database write lock up front."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
                cursor.execute("COMMIT")
            except BaseException:
                cursor.execute("ROLLBACK")
                raise

    def _get_current_time_str(self) -> str:
        """Current UTC time, strictly increasing for this handle."""
        with self._connection_lock:
            timestamp = now_iso()
            if timestamp <= self._last_timestamp:
                last = datetime.fromisoformat(self._last_timestamp)
                timestamp = (last + timedelta(microseconds=1)).isoformat(timespec="microseconds")
            self._last_timestamp = timestamp
            return timestamp

    def close(self) -> None:
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Row conversion

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        data = dict(row)
        data["tags"] = _parse_json(data.get("tags"), [])
        data["metadata"] = _parse_json(data.get("metadata"), {})
        return Task(**data)

    @staticmethod
    def _row_to_comment(row: sqlite3.Row) -> TaskComment:
        return TaskComment(**dict(row))

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> Project:
        return Project(**dict(row))

    @staticmethod
    def _row_to_plan(row: sqlite3.Row) -> Plan:
        return Plan(**dict(row))

    def _require(self, cursor: sqlite3.Cursor, table: str, entity_id: str,
                 error_cls: type) -> None:
        row = cursor.execute(f"SELECT 1 FROM {table} WHERE id = ?", (entity_id,)).fetchone()
        if row is None:
            raise error_cls(entity_id)

    def _check_task_references(self, cursor: sqlite3.Cursor, fields: Dict[str, Any]) -> None:
        if fields.get("project_id"):
            self._require(cursor, "projects", fields["project_id"], ProjectNotFoundError)
        if fields.get("parent_id"):
            self._require(cursor, "tasks", fields["parent_id"], TaskNotFoundError)
        if fields.get("plan_id"):
            self._require(cursor, "plans", fields["plan_id"], PlanNotFoundError)

    @staticmethod
    def _replace_task_tags(cursor: sqlite3.Cursor, task_id: str, tags: List[str]) -> None:
        cursor.execute("DELETE FROM task_tags WHERE task_id = ?", (task_id,))
        cursor.executemany(
            "INSERT OR IGNORE INTO task_tags (task_id, tag) VALUES (?, ?)",
            [(task_id, tag) for tag in tags if tag],
        )

    # Tasks

    def create_task(self, task: TaskCreate) -> Task:
        """
        Create a task at version 1.

        A short id (``PREFIX-00001``) is minted in the same transaction when
        the task belongs to a project.

        Raises:
            ProjectNotFoundError, TaskNotFoundError, PlanNotFoundError:
                a referenced project, parent or plan is missing
        """
        task_id = str(uuid.uuid4())
        timestamp = self._get_current_time_str()
        fields = task.model_dump()

        with self._transaction() as cursor:
            self._check_task_references(cursor, fields)
            short_id = None
            if task.project_id:
                short_id = self._mint_short_id(cursor, task.project_id, timestamp)

            cursor.execute(
                """
                INSERT INTO tasks (
                    id, short_id, project_id, parent_id, plan_id, task_list_id,
                    title, description, status, priority, agent_id, assigned_to,
                    session_id, working_dir, tags, metadata, version,
                    created_at, updated_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
                """,
                (
                    task_id, short_id, task.project_id, task.parent_id, task.plan_id,
                    task.task_list_id, task.title, task.description, task.status,
                    task.priority, task.agent_id, task.assigned_to, task.session_id,
                    task.working_dir, json.dumps(task.tags), json.dumps(task.metadata),
                    timestamp, timestamp,
                    timestamp if task.status == TaskStatus.COMPLETED.value else None,
                ),
            )
            self._replace_task_tags(cursor, task_id, task.tags)

        return self.get_task(task_id)

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._connection_lock:
            row = self._connection.execute(
                "SELECT * FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return self._row_to_task(row) if row else None

    def get_task_with_relations(self, task_id: str) -> Optional[TaskWithRelations]:
        """Task plus subtasks, both dependency directions, comments and parent."""
        task = self.get_task(task_id)
        if task is None:
            return None

        with self._connection_lock:
            conn = self._connection
            subtasks = conn.execute(
                "SELECT * FROM tasks WHERE parent_id = ? ORDER BY created_at", (task_id,)
            ).fetchall()
            dependencies = conn.execute(
                """
                SELECT t.* FROM tasks t
                JOIN task_dependencies td ON td.depends_on = t.id
                WHERE td.task_id = ? ORDER BY t.created_at
                """,
                (task_id,),
            ).fetchall()
            blocked_by = conn.execute(
                """
                SELECT t.* FROM tasks t
                JOIN task_dependencies td ON td.task_id = t.id
                WHERE td.depends_on = ? ORDER BY t.created_at
                """,
                (task_id,),
            ).fetchall()

        return TaskWithRelations(
            **task.model_dump(),
            subtasks=[self._row_to_task(r) for r in subtasks],
            dependencies=[self._row_to_task(r) for r in dependencies],
            blocked_by=[self._row_to_task(r) for r in blocked_by],
            comments=self.list_comments(task_id),
            parent=self.get_task(task.parent_id) if task.parent_id else None,
        )

    def list_tasks(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        """
        List tasks ordered by priority (critical first), newest first.

        Expired leases are cleared before the read so stale locks never show
        up as held.
        """
        f = task_filter or TaskFilter()
        self.clear_expired_locks()

        conditions: List[str] = []
        params: List[Any] = []

        for column in ("project_id", "plan_id", "task_list_id", "assigned_to",
                       "agent_id", "session_id"):
            value = getattr(f, column)
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)

        if "parent_id" in f.model_fields_set:
            if f.parent_id is None:
                conditions.append("parent_id IS NULL")
            else:
                conditions.append("parent_id = ?")
                params.append(f.parent_id)

        for column in ("status", "priority"):
            value = getattr(f, column)
            if not value:
                continue
            values = value if isinstance(value, list) else [value]
            conditions.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(values)

        if f.tags:
            placeholders = ", ".join("?" for _ in f.tags)
            conditions.append(
                f"id IN (SELECT task_id FROM task_tags WHERE tag IN ({placeholders}))"
            )
            params.extend(f.tags)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        # LIMIT -1 means unbounded in SQLite
        params.extend([f.limit if f.limit is not None else -1, f.offset])

        with self._connection_lock:
            rows = self._connection.execute(
                f"""
                SELECT * FROM tasks {where}
                ORDER BY {_PRIORITY_ORDER}, created_at DESC
                LIMIT ? OFFSET ?
                """,
                params,
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def search_tasks(self, query: str, project_id: Optional[str] = None) -> List[Task]:
        """Substring search over title, description and tags."""
        self.clear_expired_locks()
        pattern = f"%{query}%"
        sql = """
            SELECT * FROM tasks
            WHERE (title LIKE ? OR description LIKE ?
                   OR EXISTS (SELECT 1 FROM task_tags
                              WHERE task_tags.task_id = tasks.id AND tag LIKE ?))
        """
        params: List[Any] = [pattern, pattern, pattern]
        if project_id:
            sql += " AND project_id = ?"
            params.append(project_id)
        sql += f" ORDER BY {_PRIORITY_ORDER}, created_at DESC"

        with self._connection_lock:
            rows = self._connection.execute(sql, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        """
        Apply a versioned patch in one conditional write.

        The UPDATE only matches when the stored version equals
        ``update.version``; it sets ``version = version + 1`` and the
        provided fields together. Moving to ``completed`` stamps
        ``completed_at`` in the same statement.

        Raises:
            TaskNotFoundError: the task does not exist
            VersionConflictError: the stored version differs from update.version
        """
        changes = update.changes()
        timestamp = self._get_current_time_str()

        sets = ["version = version + 1", "updated_at = ?"]
        params: List[Any] = [timestamp]
        for column in self._TASK_UPDATE_COLUMNS:
            if column not in changes:
                continue
            value = changes[column]
            if column in ("tags", "metadata"):
                value = json.dumps(value)
            sets.append(f"{column} = ?")
            params.append(value)
        if changes.get("status") == TaskStatus.COMPLETED.value:
            sets.append("completed_at = ?")
            params.append(timestamp)

        with self._transaction() as cursor:
            self._check_task_references(cursor, changes)

            if changes.get("project_id"):
                current = cursor.execute(
                    "SELECT short_id, version FROM tasks WHERE id = ?", (task_id,)
                ).fetchone()
                if current and current["short_id"] is None and current["version"] == update.version:
                    short_id = self._mint_short_id(cursor, changes["project_id"], timestamp)
                    if short_id:
                        sets.append("short_id = ?")
                        params.append(short_id)

            cursor.execute(
                f"UPDATE tasks SET {', '.join(sets)} WHERE id = ? AND version = ?",
                params + [task_id, update.version],
            )
            if cursor.rowcount == 0:
                row = cursor.execute(
                    "SELECT version FROM tasks WHERE id = ?", (task_id,)
                ).fetchone()
                if row is None:
                    raise TaskNotFoundError(task_id)
                raise VersionConflictError(task_id, update.version, row["version"])

            if "tags" in changes:
                self._replace_task_tags(cursor, task_id, changes["tags"])

        return self.get_task(task_id)

    def delete_task(self, task_id: str) -> bool:
        """Delete a task; subtasks, comments, tags and edges cascade."""
        with self._connection_lock:
            cursor = self._connection.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            return cursor.rowcount > 0

    # Leases

    def _cutoff(self) -> str:
        return lock_expiry_cutoff(self.lock_expiry_minutes)

    def _lock_expired(self, locked_at: Optional[str]) -> bool:
        return is_lock_expired(locked_at, self.lock_expiry_minutes)

    def clear_expired_locks(self) -> int:
        """
        Clear every lease older than the expiry window.

        Each cleared row is a mutation, so its version and updated_at
        advance like any other write.

        Returns:
            Number of leases cleared
        """
        timestamp = self._get_current_time_str()
        with self._connection_lock:
            cursor = self._connection.execute(
                """
                UPDATE tasks
                SET locked_by = NULL, locked_at = NULL,
                    version = version + 1, updated_at = ?
                WHERE locked_at IS NOT NULL AND locked_at < ?
                """,
                (timestamp, self._cutoff()),
            )
            cleared = cursor.rowcount
        if cleared:
            logger.info(f"Cleared {cleared} expired task lock(s)")
        return cleared

    def lock_task(self, task_id: str, agent_id: str) -> LockResult:
        """
        Acquire a lease on a task.

        Succeeds when the task is unlocked, already held by ``agent_id`` or
        held by anyone whose lease expired. Re-locking a live lease held by
        the same agent does not refresh its acquisition time.

        Returns:
            LockResult; contention yields success=False naming the holder

        Raises:
            TaskNotFoundError: the task does not exist
        """
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        if task.locked_by == agent_id and not self._lock_expired(task.locked_at):
            return LockResult(success=True, locked_by=agent_id, locked_at=task.locked_at)

        timestamp = self._get_current_time_str()
        with self._connection_lock:
            cursor = self._connection.execute(
                """
                UPDATE tasks
                SET locked_by = ?, locked_at = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND (locked_by IS NULL OR locked_by = ? OR locked_at < ?)
                """,
                (agent_id, timestamp, timestamp, task_id, agent_id, self._cutoff()),
            )
            acquired = cursor.rowcount > 0

        if acquired:
            logger.debug(f"Task {task_id} locked by {agent_id}")
            return LockResult(success=True, locked_by=agent_id, locked_at=timestamp)

        current = self.get_task(task_id)
        if current is None:
            raise TaskNotFoundError(task_id)
        return LockResult(
            success=False,
            locked_by=current.locked_by,
            locked_at=current.locked_at,
            error=f"Task is locked by {current.locked_by}",
        )

    def start_task(self, task_id: str, agent_id: str) -> Task:
        """
        Claim a task: acquire the lease, set in_progress and assign it.

        All three happen in one conditional UPDATE so of two racing agents
        exactly one wins.

        Raises:
            TaskNotFoundError: the task does not exist
            LockError: a live lease is held by another agent
        """
        timestamp = self._get_current_time_str()
        cutoff = self._cutoff()
        with self._connection_lock:
            cursor = self._connection.execute(
                """
                UPDATE tasks
                SET status = 'in_progress', assigned_to = ?, locked_by = ?,
                    locked_at = CASE WHEN locked_by = ? AND locked_at >= ?
                                     THEN locked_at ELSE ? END,
                    version = version + 1, updated_at = ?
                WHERE id = ? AND (locked_by IS NULL OR locked_by = ? OR locked_at < ?)
                """,
                (agent_id, agent_id, agent_id, cutoff, timestamp, timestamp,
                 task_id, agent_id, cutoff),
            )
            started = cursor.rowcount > 0

        current = self.get_task(task_id)
        if current is None:
            raise TaskNotFoundError(task_id)
        if not started:
            raise LockError(task_id, current.locked_by)
        logger.debug(f"Task {task_id} started by {agent_id}")
        return current

    def unlock_task(self, task_id: str, agent_id: Optional[str] = None) -> bool:
        """
        Release a lease.

        With ``agent_id`` only the current holder may release; without it
        the release is forced. Both lease fields are cleared and the version
        advances even when the task was not locked.

        Raises:
            TaskNotFoundError: the task does not exist
            LockError: another agent holds the lease
        """
        timestamp = self._get_current_time_str()
        with self._connection_lock:
            if agent_id:
                cursor = self._connection.execute(
                    """
                    UPDATE tasks
                    SET locked_by = NULL, locked_at = NULL,
                        version = version + 1, updated_at = ?
                    WHERE id = ? AND (locked_by IS NULL OR locked_by = ?)
                    """,
                    (timestamp, task_id, agent_id),
                )
            else:
                cursor = self._connection.execute(
                    """
                    UPDATE tasks
                    SET locked_by = NULL, locked_at = NULL,
                        version = version + 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (timestamp, task_id),
                )
            released = cursor.rowcount > 0

        if not released:
            current = self.get_task(task_id)
            if current is None:
                raise TaskNotFoundError(task_id)
            raise LockError(task_id, current.locked_by)
        return True

    def complete_task(self, task_id: str, agent_id: Optional[str] = None) -> Task:
        """
        Mark a task completed and release any lease.

        When ``agent_id`` is given a live lease held by someone else blocks
        completion. When it is omitted the ownership check is skipped
        entirely and the lease is cleared regardless of holder.

        Raises:
            TaskNotFoundError: the task does not exist
            LockError: agent_id given and another agent holds a live lease
        """
        timestamp = self._get_current_time_str()
        sql = """
            UPDATE tasks
            SET status = 'completed', locked_by = NULL, locked_at = NULL,
                completed_at = ?, version = version + 1, updated_at = ?
            WHERE id = ?
        """
        params: List[Any] = [timestamp, timestamp, task_id]
        if agent_id:
            sql += " AND (locked_by IS NULL OR locked_by = ? OR locked_at < ?)"
            params.extend([agent_id, self._cutoff()])

        with self._connection_lock:
            completed = self._connection.execute(sql, params).rowcount > 0

        current = self.get_task(task_id)
        if current is None:
            raise TaskNotFoundError(task_id)
        if not completed:
            raise LockError(task_id, current.locked_by)
        return current

    # Dependencies

    def add_dependency(self, task_id: str, depends_on: str) -> TaskDependency:
        """
        Record that ``task_id`` depends on ``depends_on``.

        The cycle check and the insert share one write transaction, so two
        concurrent inserts cannot jointly close a loop. Re-adding an existing
        edge is a no-op.

        Raises:
            TaskNotFoundError: either endpoint is missing
            DependencyCycleError: the edge would close a cycle (incl. self-edges)
        """
        with self._transaction() as cursor:
            self._require(cursor, "tasks", task_id, TaskNotFoundError)
            self._require(cursor, "tasks", depends_on, TaskNotFoundError)

            def neighbours(node: str) -> List[str]:
                rows = cursor.execute(
                    "SELECT depends_on FROM task_dependencies WHERE task_id = ?", (node,)
                ).fetchall()
                return [r[0] for r in rows]

            if would_create_cycle(task_id, depends_on, neighbours):
                raise DependencyCycleError(task_id, depends_on)

            cursor.execute(
                "INSERT OR IGNORE INTO task_dependencies (task_id, depends_on) VALUES (?, ?)",
                (task_id, depends_on),
            )
        return TaskDependency(task_id=task_id, depends_on=depends_on)

    def remove_dependency(self, task_id: str, depends_on: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.execute(
                "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on = ?",
                (task_id, depends_on),
            )
            return cursor.rowcount > 0

    def get_task_dependencies(self, task_id: str) -> List[TaskDependency]:
        """Edges for what ``task_id`` depends on."""
        with self._connection_lock:
            rows = self._connection.execute(
                "SELECT task_id, depends_on FROM task_dependencies WHERE task_id = ?",
                (task_id,),
            ).fetchall()
        return [TaskDependency(**dict(r)) for r in rows]

    def get_task_dependents(self, task_id: str) -> List[TaskDependency]:
        """Edges for what depends on ``task_id``."""
        with self._connection_lock:
            rows = self._connection.execute(
                "SELECT task_id, depends_on FROM task_dependencies WHERE depends_on = ?",
                (task_id,),
            ).fetchall()
        return [TaskDependency(**dict(r)) for r in rows]

    # Comments

    def add_comment(self, comment: CommentCreate) -> TaskComment:
        comment_id = str(uuid.uuid4())
        timestamp = self._get_current_time_str()
        with self._transaction() as cursor:
            self._require(cursor, "tasks", comment.task_id, TaskNotFoundError)
            cursor.execute(
                """
                INSERT INTO task_comments (id, task_id, agent_id, session_id, content, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (comment_id, comment.task_id, comment.agent_id, comment.session_id,
                 comment.content, timestamp),
            )
        return self.get_comment(comment_id)

    def get_comment(self, comment_id: str) -> Optional[TaskComment]:
        with self._connection_lock:
            row = self._connection.execute(
                "SELECT * FROM task_comments WHERE id = ?", (comment_id,)
            ).fetchone()
        return self._row_to_comment(row) if row else None

    def list_comments(self, task_id: str) -> List[TaskComment]:
        with self._connection_lock:
            rows = self._connection.execute(
                "SELECT * FROM task_comments WHERE task_id = ? ORDER BY created_at",
                (task_id,),
            ).fetchall()
        return [self._row_to_comment(r) for r in rows]

    def delete_comment(self, comment_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.execute(
                "DELETE FROM task_comments WHERE id = ?", (comment_id,)
            )
            return cursor.rowcount > 0

    # Projects

    @staticmethod
    def _unique_prefix(cursor: sqlite3.Cursor, base: str) -> str:
        candidate = base
        suffix = 1
        while cursor.execute(
            "SELECT 1 FROM projects WHERE task_prefix = ?", (candidate,)
        ).fetchone():
            suffix += 1
            candidate = f"{base}{suffix}"
        return candidate

    def create_project(self, project: ProjectCreate) -> Project:
        """
        Create a project with a derived, collision-free task prefix.

        Raises:
            sqlite3.IntegrityError: another project already uses the path
        """
        project_id = str(uuid.uuid4())
        timestamp = self._get_current_time_str()
        task_list_id = project.task_list_id or f"todos-{slugify(project.name)}"

        with self._transaction() as cursor:
            prefix = project.task_prefix or self._unique_prefix(cursor, derive_prefix(project.name))
            cursor.execute(
                """
                INSERT INTO projects (id, name, path, description, task_list_id,
                                      task_prefix, task_counter, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (project_id, project.name, project.path, project.description,
                 task_list_id, prefix, timestamp, timestamp),
            )
        logger.info(f"Created project '{project.name}' with prefix {prefix}")
        return self.get_project(project_id)

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._connection_lock:
            row = self._connection.execute(
                "SELECT * FROM projects WHERE id = ?", (project_id,)
            ).fetchone()
        return self._row_to_project(row) if row else None

    def get_project_by_path(self, path: str) -> Optional[Project]:
        with self._connection_lock:
            row = self._connection.execute(
                "SELECT * FROM projects WHERE path = ?", (path,)
            ).fetchone()
        return self._row_to_project(row) if row else None

    def list_projects(self) -> List[Project]:
        with self._connection_lock:
            rows = self._connection.execute("SELECT * FROM projects ORDER BY name").fetchall()
        return [self._row_to_project(r) for r in rows]

    def update_project(self, project_id: str, update: ProjectUpdate) -> Project:
        """Change name, description or task list; prefix and path are fixed."""
        sets = ["updated_at = ?"]
        params: List[Any] = [self._get_current_time_str()]
        for column in update.model_fields_set:
            value = getattr(update, column)
            if column == "name" and value is None:
                continue
            sets.append(f"{column} = ?")
            params.append(value)
        params.append(project_id)

        with self._connection_lock:
            cursor = self._connection.execute(
                f"UPDATE projects SET {', '.join(sets)} WHERE id = ?", params
            )
            if cursor.rowcount == 0:
                raise ProjectNotFoundError(project_id)
        return self.get_project(project_id)

    def delete_project(self, project_id: str) -> bool:
        """Delete a project; its tasks are kept and disassociated."""
        with self._connection_lock:
            cursor = self._connection.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            return cursor.rowcount > 0

    def _mint_short_id(self, cursor: sqlite3.Cursor, project_id: str,
                       timestamp: str) -> Optional[str]:
        cursor.execute(
            """
            UPDATE projects SET task_counter = task_counter + 1, updated_at = ?
            WHERE id = ? AND task_prefix IS NOT NULL
            """,
            (timestamp, project_id),
        )
        if cursor.rowcount == 0:
            return None
        row = cursor.execute(
            "SELECT task_prefix, task_counter FROM projects WHERE id = ?", (project_id,)
        ).fetchone()
        return f"{row['task_prefix']}-{row['task_counter']:05d}"

    def next_task_short_id(self, project_id: str) -> Optional[str]:
        """Increment the project's counter and return ``PREFIX-00042``."""
        timestamp = self._get_current_time_str()
        with self._transaction() as cursor:
            return self._mint_short_id(cursor, project_id, timestamp)

    # Plans

    def create_plan(self, plan: PlanCreate) -> Plan:
        plan_id = str(uuid.uuid4())
        timestamp = self._get_current_time_str()
        with self._transaction() as cursor:
            if plan.project_id:
                self._require(cursor, "projects", plan.project_id, ProjectNotFoundError)
            cursor.execute(
                """
                INSERT INTO plans (id, project_id, name, description, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (plan_id, plan.project_id, plan.name, plan.description, plan.status,
                 timestamp, timestamp),
            )
        return self.get_plan(plan_id)

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._connection_lock:
            row = self._connection.execute("SELECT * FROM plans WHERE id = ?", (plan_id,)).fetchone()
        return self._row_to_plan(row) if row else None

    def list_plans(self, project_id: Optional[str] = None) -> List[Plan]:
        with self._connection_lock:
            if project_id:
                rows = self._connection.execute(
                    "SELECT * FROM plans WHERE project_id = ? ORDER BY created_at DESC",
                    (project_id,),
                ).fetchall()
            else:
                rows = self._connection.execute(
                    "SELECT * FROM plans ORDER BY created_at DESC"
                ).fetchall()
        return [self._row_to_plan(r) for r in rows]

    def update_plan(self, plan_id: str, update: PlanUpdate) -> Plan:
        sets = ["updated_at = ?"]
        params: List[Any] = [self._get_current_time_str()]
        for column in update.model_fields_set:
            value = getattr(update, column)
            if column in ("name", "status") and value is None:
                continue
            sets.append(f"{column} = ?")
            params.append(value)
        params.append(plan_id)

        with self._connection_lock:
            cursor = self._connection.execute(
                f"UPDATE plans SET {', '.join(sets)} WHERE id = ?", params
            )
            if cursor.rowcount == 0:
                raise PlanNotFoundError(plan_id)
        return self.get_plan(plan_id)

    def delete_plan(self, plan_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.execute("DELETE FROM plans WHERE id = ?", (plan_id,))
            return cursor.rowcount > 0

    # Partial ids

    def resolve_partial_id(self, table: str, partial_id: str) -> Optional[str]:
        """
        Resolve a full id or a unique id prefix.

        Returns:
            The full id, or None when nothing or more than one row matches
        """
        if table not in self._PARTIAL_ID_TABLES:
            raise ValueError(f"Unsupported table for id lookup: {table}")
        if not partial_id:
            return None

        with self._connection_lock:
            row = self._connection.execute(
                f"SELECT id FROM {table} WHERE id = ?", (partial_id,)
            ).fetchone()
            if row:
                return row["id"]
            rows = self._connection.execute(
                f"SELECT id FROM {table} WHERE substr(id, 1, ?) = ? LIMIT 2",
                (len(partial_id), partial_id),
            ).fetchall()
        return rows[0]["id"] if len(rows) == 1 else None

    def require_task(self, task_id: str) -> Task:
        """Like get_task, but resolves id prefixes and raises when missing."""
        resolved = self.resolve_partial_id("tasks", task_id) or task_id
        task = self.get_task(resolved)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task
