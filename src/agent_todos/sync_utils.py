"""
File helpers shared by the mirror adapters and the sync engine.

Mirror directories hold one pretty-printed JSON file per record plus a
``.highwatermark`` file with the next external id to hand out.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .database import parse_timestamp
from .models import SyncConflict

logger = logging.getLogger(__name__)

HIGHWATERMARK_FILE = ".highwatermark"
MAX_SYNC_CONFLICTS = 5
SYNC_CONFLICTS_KEY = "sync_conflicts"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def list_json_files(directory: Path) -> List[Path]:
    """Record files in a mirror directory, sorted by name."""
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob("*.json") if p.is_file())


def read_json_file(path: Path) -> Optional[Dict[str, Any]]:
    """Read one JSON object; None if the file is missing, unreadable or not an object."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Unreadable mirror record {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def write_json_file(path: Path, data: Dict[str, Any]) -> None:
    """Write pretty JSON with a trailing newline, replacing the file atomically."""
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_highwatermark(directory: Path) -> int:
    try:
        value = int((directory / HIGHWATERMARK_FILE).read_text().strip())
    except (OSError, ValueError):
        return 1
    return max(value, 1)


def write_highwatermark(directory: Path, value: int) -> None:
    ensure_dir(directory)
    (directory / HIGHWATERMARK_FILE).write_text(f"{value}\n")


def allocate_external_id(directory: Path) -> str:
    """
    Hand out the next numeric external id for a mirror directory.

    The id is never one already used by a record file, even when the high
    water mark file is missing or behind. The new mark is persisted before
    returning so an interrupted pass never reuses the id.
    """
    candidate = read_highwatermark(directory)
    for path in list_json_files(directory):
        if path.stem.isdigit():
            candidate = max(candidate, int(path.stem) + 1)
    write_highwatermark(directory, candidate + 1)
    return str(candidate)


def timestamp_to_ns(value: str) -> Optional[int]:
    """Exact nanoseconds since the epoch for an ISO timestamp (microsecond precision)."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    delta = parsed - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1000


def file_mtime_ns(path: Path) -> Optional[int]:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def pin_mtime(path: Path, stamp: str) -> None:
    """Set a record's mtime to its sync stamp so only later external edits move past it."""
    ns = timestamp_to_ns(stamp)
    if ns is not None:
        os.utime(path, ns=(ns, ns))


def is_after(left: Optional[str], right: Optional[str]) -> bool:
    """True when timestamp ``left`` is strictly later than ``right``."""
    a, b = parse_timestamp(left), parse_timestamp(right)
    if a is None or b is None:
        return False
    return a > b


def append_sync_conflict(metadata: Dict[str, Any], conflict: SyncConflict,
                         limit: int = MAX_SYNC_CONFLICTS) -> Dict[str, Any]:
    """Return a copy of ``metadata`` with ``conflict`` first in its bounded conflict log."""
    existing = metadata.get(SYNC_CONFLICTS_KEY)
    entries = list(existing) if isinstance(existing, list) else []
    entries.insert(0, conflict.model_dump())
    updated = dict(metadata)
    updated[SYNC_CONFLICTS_KEY] = entries[:limit]
    return updated
