"""
Cycle detection for the task dependency graph.

Pure functions over an adjacency relation so they can be exercised without a
live database. ``TaskDatabase.add_dependency`` passes a neighbour lookup
backed by the ``task_dependencies`` table.
"""

from collections import deque
from typing import Callable, Iterable, Set


Neighbours = Callable[[str], Iterable[str]]


def would_create_cycle(task_id: str, depends_on: str, neighbours: Neighbours) -> bool:
    """
    Return True if adding the edge ``task_id -> depends_on`` closes a cycle.

    Breadth-first search from ``depends_on`` following depends-on edges. If
    ``task_id`` is reachable the new edge would complete a loop. A self-edge
    is reported as a cycle because the start node is the target.

    Args:
        task_id: Task that would gain the dependency
        depends_on: Task it would depend on
        neighbours: Returns the ids a given task depends on

    Returns:
        True when the edge must be rejected
    """
    visited: Set[str] = set()
    queue = deque([depends_on])

    while queue:
        current = queue.popleft()
        if current == task_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        for nxt in neighbours(current):
            if nxt not in visited:
                queue.append(nxt)

    return False

