"""Dependency DAG: cycle detection, readiness, execution order, skip propagation.

Adjacency maps use ``task_id -> set of task ids it depends on``. The implicit
generator tree contributes an edge ``parent -> child`` so that a child taking a
dependency on any of its ancestors closes a cycle.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING

from media_orchestrator.errors import CycleError
from media_orchestrator.orchestrator.models import TaskStatus, TaskView

if TYPE_CHECKING:
    from media_orchestrator.orchestrator.repository import TaskStore

logger = logging.getLogger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


def find_cycle(adjacency: Mapping[str, Iterable[str]], start: str) -> tuple[str, ...] | None:
    """Return one cycle reachable from ``start`` as a closed path, or ``None``.

    Iterative three-colour DFS: a grey node met again closes a cycle.
    """

    colour: dict[str, int] = {}
    parents: dict[str, str] = {}
    colour[start] = _GREY
    stack: list[tuple[str, list[str]]] = [(start, sorted(adjacency.get(start, ())))]
    while stack:
        node, pending = stack[-1]
        if not pending:
            colour[node] = _BLACK
            stack.pop()
            continue
        neighbour = pending.pop()
        state = colour.get(neighbour, _WHITE)
        if state == _GREY:
            path = [neighbour, node]
            cursor = node
            while cursor != neighbour:
                cursor = parents[cursor]
                path.append(cursor)
            path.reverse()
            return tuple(path)
        if state == _WHITE:
            colour[neighbour] = _GREY
            parents[neighbour] = node
            stack.append((neighbour, sorted(adjacency.get(neighbour, ()))))
    return None


def find_cycle_path(
    adjacency: Mapping[str, Iterable[str]],
    task_id: str,
    depends_on_id: str,
) -> tuple[str, ...] | None:
    """Cycle that adding ``task_id -> depends_on_id`` would close, if any."""

    if task_id == depends_on_id:
        return (task_id, task_id)
    proposed: dict[str, set[str]] = {node: set(edges) for node, edges in adjacency.items()}
    proposed.setdefault(task_id, set()).add(depends_on_id)
    return find_cycle(proposed, task_id)


def topological_order(
    nodes: Sequence[str],
    adjacency: Mapping[str, Iterable[str]],
) -> list[str]:
    """Kahn's algorithm; dependencies first, ties broken by position in ``nodes``.

    Edges pointing outside ``nodes`` are ignored.
    """

    rank = {node: index for index, node in enumerate(nodes)}
    indegree = dict.fromkeys(nodes, 0)
    dependents: dict[str, list[str]] = {node: [] for node in nodes}
    for node in nodes:
        for dependency in set(adjacency.get(node, ())):
            if dependency not in rank:
                continue
            indegree[node] += 1
            dependents[dependency].append(node)

    heap = [(rank[node], node) for node in nodes if indegree[node] == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for dependent in dependents[node]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(heap, (rank[dependent], dependent))

    if len(order) != len(nodes):
        remaining = [node for node in nodes if indegree[node] > 0]
        path = None
        for node in remaining:
            path = find_cycle(adjacency, node)
            if path is not None:
                break
        raise CycleError(
            f"Dependency graph contains a cycle through {len(remaining)} task(s).",
            path=path or tuple(remaining),
        )
    return order


def satisfied_statuses(*, skipped_dependency_satisfies: bool) -> frozenset[TaskStatus]:
    """Dependency statuses that unblock a dependent."""

    if skipped_dependency_satisfies:
        return frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})
    return frozenset({TaskStatus.COMPLETED})


def blocking_statuses(*, skipped_dependency_satisfies: bool) -> frozenset[TaskStatus]:
    """Dependency statuses that doom a pending dependent to be skipped."""

    if skipped_dependency_satisfies:
        return frozenset({TaskStatus.FAILED})
    return frozenset({TaskStatus.FAILED, TaskStatus.SKIPPED})


class DependencyGraph:
    """Graph operations over the persistent task store."""

    def __init__(self, store: TaskStore, *, skipped_dependency_satisfies: bool = False) -> None:
        self.store = store
        self.skipped_dependency_satisfies = skipped_dependency_satisfies

    @property
    def satisfied(self) -> frozenset[TaskStatus]:
        return satisfied_statuses(skipped_dependency_satisfies=self.skipped_dependency_satisfies)

    @property
    def blocking(self) -> frozenset[TaskStatus]:
        return blocking_statuses(skipped_dependency_satisfies=self.skipped_dependency_satisfies)

    def add_dependency(self, task_id: str, depends_on_id: str) -> bool:
        """Record that ``task_id`` runs only after ``depends_on_id``.

        Raises ``CycleError`` when the edge would close a cycle, leaving the
        graph unchanged. Returns ``False`` when the edge already existed.
        """

        created = self.store.add_dependency(task_id=task_id, depends_on_id=depends_on_id)
        if not created:
            return False
        logger.debug("Dependency added: %s -> %s", task_id, depends_on_id)
        dependency = self.store.get_task(depends_on_id)
        if dependency.status in self.blocking:
            self.propagate_skip(depends_on_id)
        return True

    def remove_dependency(self, task_id: str, depends_on_id: str) -> bool:
        removed = self.store.remove_dependency(task_id=task_id, depends_on_id=depends_on_id)
        if removed:
            logger.debug("Dependency removed: %s -> %s", task_id, depends_on_id)
        return removed

    def get_ready_tasks(self, limit: int | None = None) -> list[TaskView]:
        """Pending non-template tasks whose dependencies are all satisfied, oldest first."""

        return self.store.list_ready_tasks(satisfied=self.satisfied, limit=limit)

    def is_ready(self, task_id: str) -> bool:
        task = self.store.get_task(task_id)
        if task.status != TaskStatus.PENDING or task.is_template:
            return False
        statuses = self.store.dependency_statuses(task_id)
        return all(status in self.satisfied for status in statuses.values())

    def mark_completed(self, task_id: str, result: object = None) -> bool:
        return self.store.complete_task(task_id=task_id, result=result)

    def mark_failed(self, task_id: str, error_message: str, error_type: str | None = None) -> list[str]:
        """Fail a running task permanently and skip everything downstream of it."""

        if not self.store.fail_task(
            task_id=task_id,
            error_type=error_type,
            error_message=error_message,
        ):
            return []
        return self.propagate_skip(task_id)

    def propagate_skip(self, task_id: str) -> list[str]:
        """Skip pending transitive dependents of a failed or skipped task."""

        skipped = self.store.skip_dependents(
            task_id=task_id,
            transitive=not self.skipped_dependency_satisfies,
        )
        if skipped:
            logger.info(
                "Skipped %d dependent task(s) of %s: %s",
                len(skipped),
                task_id,
                ", ".join(skipped),
            )
        return skipped

    def sweep_blocked(self) -> list[str]:
        """Skip pending tasks blocked by a failed dependency the propagation missed."""

        swept: list[str] = []
        while True:
            blocked = self.store.list_blocked_pending(blocking=self.blocking)
            if not blocked:
                return swept
            progressed = False
            for task_id, dependency_id in blocked:
                if self.store.skip_task(
                    task_id=task_id,
                    reason="dependency_blocked",
                    details={"dependency_id": dependency_id},
                ):
                    swept.append(task_id)
                    progressed = True
            if not progressed:
                return swept

    def get_execution_order(self) -> list[str]:
        """Topological order of all non-template tasks (explicit edges only)."""

        nodes, adjacency = self.store.dependency_snapshot()
        return topological_order(nodes, adjacency)
