"""
Bidirectional sync between the task store and agent mirror directories.

There is no shared transaction between the store and a mirror. Each record
carries the local ``updated_at`` it was last synced at (``todos_updated_at``)
and its file mtime is pinned to that stamp after every write, so:

- local changed  <=> task.updated_at > stamp
- mirror changed <=> file mtime > stamp
- conflict       <=> both changed

Repeating a sync with no edits on either side writes nothing.
"""

import logging
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from .config import (
    DEFAULT_SYNC_AGENTS,
    TodosConfig,
    get_sync_agents_from_config,
    load_config,
    normalize_agent,
)
from .database import TaskDatabase, now_iso
from .errors import TodosError
from .mirrors import MirrorAdapter, MirrorRecord, get_mirror
from .models import (
    SyncConflict,
    SyncDirection,
    SyncPrefer,
    SyncResult,
    Task,
    TaskCreate,
    TaskFilter,
    TaskUpdate,
)
from .sync_utils import append_sync_conflict, ensure_dir, file_mtime_ns, is_after, timestamp_to_ns

logger = logging.getLogger(__name__)

# Per-record failures that are reported and skipped
RECORD_ERRORS = (TodosError, OSError, ValueError, sqlite3.Error)


def _mtime_iso(path: Path) -> Optional[str]:
    ns = file_mtime_ns(path)
    if ns is None:
        return None
    return datetime.fromtimestamp(ns / 1e9, tz=timezone.utc).isoformat(timespec="microseconds")


def mirror_changed(path: Path, stamp: Optional[str]) -> bool:
    """True if the record file was modified after it was last synced."""
    stamp_ns = timestamp_to_ns(stamp) if stamp else None
    if stamp_ns is None:
        return True
    mtime = file_mtime_ns(path)
    return mtime is not None and mtime > stamp_ns


def local_changed(task: Task, stamp: Optional[str]) -> bool:
    if not stamp:
        return True
    return is_after(task.updated_at, stamp)


class SyncEngine:
    """
    Runs push and pull passes for one store and one mirror adapter.

    Passes never raise for a single bad record: the failure is appended to
    ``SyncResult.errors`` as ``"<direction> <id>: <message>"`` and the pass
    moves on.
    """

    def __init__(self, db: TaskDatabase, mirror: MirrorAdapter):
        self.db = db
        self.mirror = mirror
        # Tasks whose conflict was already logged by the preceding pull
        self._logged_conflicts: Set[str] = set()

    def _scope(self, project_id: Optional[str]) -> List[Task]:
        return self.db.list_tasks(TaskFilter(project_id=project_id, limit=None))

    def _index_records(self, directory: Path) -> Tuple[Dict[str, Tuple[Path, MirrorRecord]],
                                                       Dict[str, Tuple[Path, MirrorRecord]]]:
        by_todos_id: Dict[str, Tuple[Path, MirrorRecord]] = {}
        by_external_id: Dict[str, Tuple[Path, MirrorRecord]] = {}
        for path in self.mirror.list_record_files(directory):
            try:
                record = self.mirror.read_record(path)
            except ValueError as e:
                logger.warning(f"Skipping mirror record {path}: {e}")
                continue
            by_external_id[record.id] = (path, record)
            if record.todos_id:
                by_todos_id[record.todos_id] = (path, record)
        return by_todos_id, by_external_id

    def _with_conflict(self, task: Task, metadata: Dict, direction: SyncDirection,
                       prefer: SyncPrefer, path: Path, result: SyncResult) -> Dict:
        """Metadata with a new conflict entry at the front of the bounded log."""
        conflict = SyncConflict(
            agent=self.mirror.agent,
            direction=direction,
            prefer=prefer,
            local_updated_at=task.updated_at,
            remote_updated_at=_mtime_iso(path),
            detected_at=now_iso(),
        )
        logger.info(
            f"Sync conflict on task {task.id} ({self.mirror.agent}, {direction.value}, "
            f"prefer {prefer.value})"
        )
        result.conflicts.append(f"{direction.value} {task.id}")
        return append_sync_conflict(metadata, conflict)

    def _write(self, directory: Path, task: Task, external_id: str,
               existing: Optional[MirrorRecord] = None) -> None:
        record = self.mirror.to_record(task, external_id, existing)
        self.mirror.write_record(directory, record)

    # Push

    def push(self, task_list_id: str, project_id: Optional[str] = None,
             prefer: Union[SyncPrefer, str] = SyncPrefer.REMOTE) -> SyncResult:
        """Write local tasks in scope to the mirror."""
        prefer = SyncPrefer(prefer)
        directory = ensure_dir(self.mirror.task_list_dir(task_list_id))
        by_todos_id, by_external_id = self._index_records(directory)
        result = SyncResult()

        for task in self._scope(project_id):
            try:
                if self._push_task(task, directory, by_todos_id, by_external_id, prefer, result):
                    result.pushed += 1
            except RECORD_ERRORS as e:
                logger.warning(f"push {task.id} to {self.mirror.agent} failed: {e}")
                result.errors.append(f"push {task.id}: {e}")

        self._logged_conflicts.clear()
        logger.info(
            f"Pushed {result.pushed} task(s) to {self.mirror.agent}/{task_list_id} "
            f"({len(result.errors)} error(s))"
        )
        return result

    def _push_task(self, task: Task, directory: Path,
                   by_todos_id: Dict[str, Tuple[Path, MirrorRecord]],
                   by_external_id: Dict[str, Tuple[Path, MirrorRecord]],
                   prefer: SyncPrefer, result: SyncResult) -> bool:
        external_id = task.metadata.get(self.mirror.mapping_key)
        entry = by_todos_id.get(task.id)
        if entry is None and external_id is not None:
            entry = by_external_id.get(str(external_id))
            # Same id in this directory may belong to another task
            if entry is not None and entry[1].todos_id not in (None, task.id):
                entry = None

        if entry is None:
            return self._push_new(task, directory)

        path, record = entry
        stamp = record.synced_at
        if not local_changed(task, stamp):
            return False

        if stamp and mirror_changed(path, stamp):
            if task.id not in self._logged_conflicts:
                metadata = self._with_conflict(task, task.metadata, SyncDirection.PUSH, prefer,
                                               path, result)
                task = self.db.update_task(
                    task.id, TaskUpdate(version=task.version, metadata=metadata)
                )
            if prefer == SyncPrefer.REMOTE:
                return False

        self._write(directory, task, record.id, record)
        return True

    def _push_new(self, task: Task, directory: Path) -> bool:
        external_id = self.mirror.allocate_id(directory)
        metadata = dict(task.metadata)
        metadata[self.mirror.mapping_key] = external_id
        updated = self.db.update_task(task.id, TaskUpdate(version=task.version, metadata=metadata))
        self._write(directory, updated, external_id)
        return True

    # Pull

    def pull(self, task_list_id: str, project_id: Optional[str] = None,
             prefer: Union[SyncPrefer, str] = SyncPrefer.REMOTE) -> SyncResult:
        """Apply mirror records to local tasks, creating tasks for unknown records."""
        prefer = SyncPrefer(prefer)
        self._logged_conflicts.clear()
        directory = self.mirror.task_list_dir(task_list_id)
        if not directory.is_dir():
            return SyncResult(errors=[f"pull: task list directory not found: {directory}"])

        # All tasks, not just the project's, so a record is never imported twice
        by_external_id = {}
        for task in self._scope(None):
            mapped = task.metadata.get(self.mirror.mapping_key)
            if mapped is not None:
                by_external_id[str(mapped)] = task

        result = SyncResult()
        for path in self.mirror.list_record_files(directory):
            try:
                record = self.mirror.read_record(path)
                if record.is_internal:
                    continue
                if self._pull_record(path, record, directory, by_external_id,
                                     task_list_id, project_id, prefer, result):
                    result.pulled += 1
            except RECORD_ERRORS as e:
                logger.warning(f"pull {path.stem} from {self.mirror.agent} failed: {e}")
                result.errors.append(f"pull {path.stem}: {e}")

        logger.info(
            f"Pulled {result.pulled} record(s) from {self.mirror.agent}/{task_list_id} "
            f"({len(result.errors)} error(s))"
        )
        return result

    def _pull_record(self, path: Path, record: MirrorRecord, directory: Path,
                     by_external_id: Dict[str, Task], task_list_id: str,
                     project_id: Optional[str], prefer: SyncPrefer,
                     result: SyncResult) -> bool:
        if record.todos_id:
            task = self.db.get_task(record.todos_id)
        else:
            task = by_external_id.get(record.id)

        if task is None:
            return self._pull_new(record, directory, task_list_id, project_id)

        stamp = record.synced_at
        if not mirror_changed(path, stamp):
            return False

        fields = self.mirror.to_task_fields(record)
        metadata = dict(task.metadata)
        metadata[self.mirror.mapping_key] = record.id

        if stamp and local_changed(task, stamp):
            metadata = self._with_conflict(task, metadata, SyncDirection.PULL, prefer,
                                           path, result)
            self._logged_conflicts.add(task.id)
            if prefer == SyncPrefer.LOCAL:
                self.db.update_task(task.id, TaskUpdate(version=task.version, metadata=metadata))
                return False

        updated = self.db.update_task(
            task.id, TaskUpdate(version=task.version, metadata=metadata, **fields)
        )
        self._write(directory, updated, record.id, record)
        return True

    def _pull_new(self, record: MirrorRecord, directory: Path, task_list_id: str,
                  project_id: Optional[str]) -> bool:
        fields = self.mirror.to_task_fields(record)
        created = self.db.create_task(TaskCreate(
            project_id=project_id,
            task_list_id=task_list_id,
            metadata={self.mirror.mapping_key: record.id},
            **fields,
        ))
        self._write(directory, created, record.id, record)
        return True

    def sync(self, task_list_id: str, project_id: Optional[str] = None,
             direction: Union[SyncDirection, str] = SyncDirection.BOTH,
             prefer: Union[SyncPrefer, str] = SyncPrefer.REMOTE) -> SyncResult:
        """Pull then push (or just one of them)."""
        direction = SyncDirection(direction)
        result = SyncResult()
        if direction in (SyncDirection.PULL, SyncDirection.BOTH):
            result = result + self.pull(task_list_id, project_id, prefer)
        if direction in (SyncDirection.PUSH, SyncDirection.BOTH):
            result = result + self.push(task_list_id, project_id, prefer)
        return result


def sync_with_agent(db: TaskDatabase, agent: str, task_list_id: str,
                    project_id: Optional[str] = None,
                    direction: Union[SyncDirection, str] = SyncDirection.BOTH,
                    prefer: Union[SyncPrefer, str] = SyncPrefer.REMOTE,
                    config: Optional[TodosConfig] = None) -> SyncResult:
    engine = SyncEngine(db, get_mirror(agent, config))
    return engine.sync(task_list_id, project_id, direction, prefer)


def sync_with_agents(db: TaskDatabase, agents: Iterable[str],
                     task_list_id_for: Callable[[str], Optional[str]],
                     project_id: Optional[str] = None,
                     direction: Union[SyncDirection, str] = SyncDirection.BOTH,
                     prefer: Union[SyncPrefer, str] = SyncPrefer.REMOTE,
                     config: Optional[TodosConfig] = None) -> SyncResult:
    """
    Sync several agents: every pull runs before any push.

    Pulling everything first means a push never overwrites a remote edit
    that another agent's pull has not seen yet. Errors are prefixed with the
    agent name.
    """
    direction = SyncDirection(direction)
    result = SyncResult()
    engines: List[Tuple[str, str, SyncEngine]] = []

    for agent in dict.fromkeys(normalize_agent(a) for a in agents if a.strip()):
        list_id = task_list_id_for(agent)
        if not list_id:
            result.errors.append(f"sync {agent}: missing task list id")
            continue
        engines.append((agent, list_id, SyncEngine(db, get_mirror(agent, config))))

    def merge(agent: str, partial: SyncResult) -> None:
        nonlocal result
        partial.errors = [f"{agent}: {e}" for e in partial.errors]
        result = result + partial

    if direction in (SyncDirection.PULL, SyncDirection.BOTH):
        for agent, list_id, engine in engines:
            merge(agent, engine.pull(list_id, project_id, prefer))
    if direction in (SyncDirection.PUSH, SyncDirection.BOTH):
        for agent, list_id, engine in engines:
            merge(agent, engine.push(list_id, project_id, prefer))

    return result


def default_sync_agents(config: Optional[TodosConfig] = None) -> List[str]:
    env_agents = os.environ.get("TODOS_SYNC_AGENTS")
    if env_agents:
        agents = [normalize_agent(a) for a in env_agents.split(",") if a.strip()]
        if agents:
            return agents
    configured = get_sync_agents_from_config(config or load_config())
    if configured:
        return configured
    return list(DEFAULT_SYNC_AGENTS)
