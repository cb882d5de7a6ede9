from __future__ import annotations

import random

import allure
import pytest

from media_orchestrator.errors import CycleError, NotFoundError, TaskStateError
from media_orchestrator.orchestrator.graph import (
    DependencyGraph,
    find_cycle,
    find_cycle_path,
    topological_order,
)
from media_orchestrator.orchestrator.models import TaskCreate, TaskStatus
from media_orchestrator.orchestrator.repository import TaskStore

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Dependency Graph"),
]


def _submit(store: TaskStore, task_id: str, depends_on: list[str] | None = None) -> str:
    return store.create_task(
        TaskCreate(task_type="echo", task_id=task_id, depends_on=depends_on or []),
    ).task_id


def _complete(store: TaskStore, task_id: str) -> None:
    assert store.claim_task(task_id=task_id, worker_id="w1") is not None
    assert store.complete_task(task_id=task_id, result=None)


def _fail(store: TaskStore, task_id: str) -> None:
    assert store.claim_task(task_id=task_id, worker_id="w1") is not None
    assert store.fail_task(task_id=task_id, error_type="boom", error_message="boom")


def test_find_cycle_returns_closed_path() -> None:
    adjacency = {"a": {"b"}, "b": {"c"}, "c": {"a"}}

    assert find_cycle(adjacency, "a") == ("a", "b", "c", "a")
    assert find_cycle({"a": {"b"}, "b": set()}, "a") is None


def test_find_cycle_path_treats_self_edge_as_cycle() -> None:
    assert find_cycle_path({}, "a", "a") == ("a", "a")
    assert find_cycle_path({"b": {"a"}}, "a", "b") == ("a", "b", "a")
    assert find_cycle_path({"b": {"a"}}, "c", "b") is None


def test_topological_order_puts_dependencies_first_and_keeps_input_order() -> None:
    nodes = ["d", "c", "b", "a"]
    adjacency = {"c": {"a"}, "b": {"a"}, "d": set()}

    order = topological_order(nodes, adjacency)

    assert order == ["d", "a", "c", "b"]


def test_topological_order_raises_on_cycle() -> None:
    with pytest.raises(CycleError) as raised:
        topological_order(["a", "b"], {"a": {"b"}, "b": {"a"}})

    assert raised.value.path[0] == raised.value.path[-1]


def test_add_dependency_rejects_cycle_and_leaves_graph_unchanged(store: TaskStore) -> None:
    graph = DependencyGraph(store)
    _submit(store, "a")
    _submit(store, "b", depends_on=["a"])
    _submit(store, "c", depends_on=["b"])

    with pytest.raises(CycleError, match="would create a cycle") as raised:
        graph.add_dependency("a", "c")

    assert raised.value.path[0] == "a"
    assert raised.value.path[-1] == "a"
    assert store.dependency_statuses("a") == {}
    assert graph.get_execution_order() == ["a", "b", "c"]


def test_add_dependency_rejects_self_dependency(store: TaskStore) -> None:
    graph = DependencyGraph(store)
    _submit(store, "a")

    with pytest.raises(CycleError):
        graph.add_dependency("a", "a")


def test_add_dependency_is_idempotent_and_validates_tasks(store: TaskStore) -> None:
    graph = DependencyGraph(store)
    _submit(store, "a")
    _submit(store, "b")

    assert graph.add_dependency("b", "a") is True
    assert graph.add_dependency("b", "a") is False
    with pytest.raises(NotFoundError):
        graph.add_dependency("b", "missing")

    _complete(store, "a")
    with pytest.raises(TaskStateError, match="pending"):
        graph.add_dependency("a", "b")


def test_child_cannot_depend_on_its_parent(store: TaskStore) -> None:
    graph = DependencyGraph(store)
    _submit(store, "parent")
    store.create_task(TaskCreate(task_type="echo", task_id="child", parent_id="parent"))

    with pytest.raises(CycleError):
        graph.add_dependency("child", "parent")


def test_ready_tasks_follow_dependency_completion(store: TaskStore) -> None:
    graph = DependencyGraph(store)
    _submit(store, "a")
    _submit(store, "b", depends_on=["a"])
    _submit(store, "c", depends_on=["a", "b"])

    assert [task.task_id for task in graph.get_ready_tasks()] == ["a"]
    _complete(store, "a")
    assert [task.task_id for task in graph.get_ready_tasks()] == ["b"]
    assert graph.is_ready("c") is False
    _complete(store, "b")
    assert graph.is_ready("c") is True


def test_ready_set_matches_definition_on_random_dags(store: TaskStore) -> None:
    rng = random.Random(20261019)  # noqa: S311
    graph = DependencyGraph(store)
    node_ids = [f"t{index:02d}" for index in range(25)]
    deps: dict[str, list[str]] = {}
    for index, task_id in enumerate(node_ids):
        earlier = node_ids[:index]
        deps[task_id] = rng.sample(earlier, k=min(len(earlier), rng.randint(0, 3)))
        _submit(store, task_id, depends_on=deps[task_id])

    completed: set[str] = set()
    while True:
        ready = {task.task_id for task in graph.get_ready_tasks()}
        expected = {
            task_id
            for task_id in node_ids
            if task_id not in completed and all(dep in completed for dep in deps[task_id])
        }
        assert ready == expected
        if not ready:
            break
        chosen = rng.choice(sorted(ready))
        _complete(store, chosen)
        completed.add(chosen)

    assert completed == set(node_ids)
    order = graph.get_execution_order()
    position = {task_id: index for index, task_id in enumerate(order)}
    for task_id, task_deps in deps.items():
        assert all(position[dep] < position[task_id] for dep in task_deps)


def test_failure_skips_transitive_dependents(store: TaskStore) -> None:
    graph = DependencyGraph(store)
    _submit(store, "a")
    _submit(store, "b", depends_on=["a"])
    _submit(store, "c", depends_on=["b"])
    _submit(store, "unrelated")
    assert store.claim_task(task_id="a", worker_id="w1") is not None

    skipped = graph.mark_failed("a", "disk full", error_type="io_error")

    assert skipped == ["b", "c"]
    assert store.get_task("a").status == TaskStatus.FAILED
    assert store.get_task("b").status == TaskStatus.SKIPPED
    assert store.get_task("c").status == TaskStatus.SKIPPED
    assert store.get_task("unrelated").status == TaskStatus.PENDING


def test_skipped_dependency_can_satisfy_when_configured(store: TaskStore) -> None:
    graph = DependencyGraph(store, skipped_dependency_satisfies=True)
    _submit(store, "a")
    _submit(store, "b", depends_on=["a"])
    _submit(store, "c", depends_on=["b"])
    _fail(store, "a")

    assert graph.propagate_skip("a") == ["b"]
    assert store.get_task("c").status == TaskStatus.PENDING
    assert [task.task_id for task in graph.get_ready_tasks()] == ["c"]


def test_adding_edge_to_failed_task_skips_dependent(store: TaskStore) -> None:
    graph = DependencyGraph(store)
    _submit(store, "a")
    _submit(store, "b")
    _fail(store, "a")

    assert graph.add_dependency("b", "a") is True
    assert store.get_task("b").status == TaskStatus.SKIPPED


def test_sweep_blocked_skips_tasks_missed_by_propagation(store: TaskStore) -> None:
    graph = DependencyGraph(store)
    _submit(store, "a")
    _submit(store, "b", depends_on=["a"])
    _submit(store, "c", depends_on=["b"])
    _fail(store, "a")

    assert graph.sweep_blocked() == ["b", "c"]
    assert graph.sweep_blocked() == []
