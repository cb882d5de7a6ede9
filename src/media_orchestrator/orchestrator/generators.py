"""Generator expansion: a completed task fans out into child tasks."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

from media_orchestrator.orchestrator.models import ChildSummary, ChildTaskSpec, TaskView
from media_orchestrator.orchestrator.repository import TaskStore

logger = logging.getLogger(__name__)


@runtime_checkable
class TaskGenerator(Protocol):
    """Produces child task specs for a generator task.

    ``expand`` must be deterministic for the same external state so that a
    retried expansion proposes the same children.
    """

    def expand(self, task: TaskView) -> Iterable[ChildTaskSpec | Mapping[str, Any]]: ...


def normalize_children(raw: Iterable[ChildTaskSpec | Mapping[str, Any]]) -> list[ChildTaskSpec]:
    """Accept ``ChildTaskSpec`` objects or ``{type, args, description}`` mappings."""

    children: list[ChildTaskSpec] = []
    for item in raw:
        if isinstance(item, ChildTaskSpec):
            children.append(item)
            continue
        task_type = item.get("task_type") or item.get("type")
        if not isinstance(task_type, str) or not task_type:
            raise ValueError(f"Child task spec is missing a type: {item!r}")
        args = item.get("args") or {}
        if not isinstance(args, dict):
            raise ValueError(f"Child task args must be an object, got {type(args).__name__}")
        children.append(
            ChildTaskSpec(
                task_type=task_type,
                args=args,
                description=str(item.get("description") or ""),
            ),
        )
    return children


def complete_with_children(
    store: TaskStore,
    task: TaskView,
    children: list[ChildTaskSpec],
    *,
    chain: bool = False,
) -> list[str] | None:
    """Complete ``task`` and insert its children atomically.

    Returns child ids (existing ones when the parent already had children), or
    ``None`` when the running claim was lost.
    """

    child_ids = store.complete_generator_task(
        task_id=task.task_id,
        children=children,
        chain=chain,
        result={"children": len(children)},
    )
    if child_ids is None:
        return None
    logger.info(
        "Generator %s (%s) expanded into %d child task(s)%s",
        task.task_id,
        task.task_type,
        len(child_ids),
        " chained" if chain else "",
    )
    return child_ids


def get_child_summary(store: TaskStore, parent_id: str) -> ChildSummary:
    return store.child_summary(parent_id=parent_id)
