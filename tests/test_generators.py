from __future__ import annotations

from pathlib import Path

import allure
import pytest

from media_orchestrator.config import OrchestratorSettings, RetrySettings
from media_orchestrator.errors import ExecutorError
from media_orchestrator.executors import DirectoryListingGenerator, register_builtin_executors
from media_orchestrator.orchestrator.dispatcher import ExecutorDispatcher, ExecutorRegistry
from media_orchestrator.orchestrator.generators import get_child_summary, normalize_children
from media_orchestrator.orchestrator.graph import DependencyGraph
from media_orchestrator.orchestrator.models import (
    ChildTaskSpec,
    DispatchOutcome,
    TaskCreate,
    TaskStatus,
)
from media_orchestrator.orchestrator.repository import TaskStore
from media_orchestrator.orchestrator.retry import RetryManager

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Generator Tasks"),
]


def _media_dir(tmp_path: Path) -> Path:
    root = tmp_path / "shows"
    root.mkdir()
    for name in ("s02", "s01", "s03"):
        (root / name).mkdir()
    (root / "notes.txt").write_text("cast list", encoding="utf-8")
    return root


def _dispatcher(store: TaskStore, *, chain: bool = False) -> ExecutorDispatcher:
    registry = register_builtin_executors(ExecutorRegistry(), chain_directory_children=chain)
    return ExecutorDispatcher(
        store=store,
        registry=registry,
        retry_manager=RetryManager(store, RetrySettings(base_delay_ms=0, max_delay_ms=0)),
        graph=DependencyGraph(store),
        worker_id="test-worker",
        settings=OrchestratorSettings(heartbeat_interval_seconds=0.02),
    )


def test_directory_listing_proposes_sorted_children(tmp_path: Path, store: TaskStore) -> None:
    root = _media_dir(tmp_path)
    task = store.create_task(
        TaskCreate(task_type="directory_listing", args={"path": str(root), "kind": "dirs"}),
    )

    children = DirectoryListingGenerator().expand(task)

    assert [child.args["name"] for child in children] == ["s01", "s02", "s03"]
    assert {child.task_type for child in children} == {"echo"}


def test_directory_listing_rejects_missing_path(tmp_path: Path, store: TaskStore) -> None:
    missing = store.create_task(
        TaskCreate(task_type="directory_listing", args={"path": str(tmp_path / "nope")}),
    )

    with pytest.raises(ExecutorError) as raised:
        DirectoryListingGenerator().expand(missing)
    assert raised.value.error_type == "not_found"


def test_generator_completion_inserts_children_atomically(tmp_path: Path, store: TaskStore) -> None:
    root = _media_dir(tmp_path)
    parent = store.create_task(
        TaskCreate(task_type="directory_listing", args={"path": str(root), "kind": "all"}),
    )

    result = _dispatcher(store).dispatch(parent)

    assert result.outcome == DispatchOutcome.COMPLETED
    assert len(result.children) == 4
    stored = store.get_task(parent.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.result == {"children": 4}
    names = [store.get_task(child_id).args["name"] for child_id in result.children]
    assert names == ["notes.txt", "s01", "s02", "s03"]
    assert all(store.get_task(child_id).parent_id == parent.task_id for child_id in result.children)
    ready_ids = {task.task_id for task in store.list_ready_tasks()}
    assert ready_ids == set(result.children)


def test_chained_children_run_one_after_another(tmp_path: Path, store: TaskStore) -> None:
    root = _media_dir(tmp_path)
    parent = store.create_task(
        TaskCreate(task_type="directory_listing", args={"path": str(root), "kind": "dirs"}),
    )

    result = _dispatcher(store, chain=True).dispatch(parent)

    first, second, third = result.children
    assert store.dependency_statuses(first) == {}
    assert store.dependency_statuses(second) == {first: TaskStatus.PENDING}
    assert store.dependency_statuses(third) == {second: TaskStatus.PENDING}
    assert [task.task_id for task in store.list_ready_tasks()] == [first]


def test_existing_children_are_reused_instead_of_duplicated(store: TaskStore) -> None:
    parent = store.create_task(TaskCreate(task_type="directory_listing"))
    claimed = store.claim_task(task_id=parent.task_id, worker_id="w1")
    assert claimed is not None
    earlier = store.create_task(
        TaskCreate(task_type="echo", args={"name": "s01"}, parent_id=parent.task_id),
    )

    child_ids = store.complete_generator_task(
        task_id=parent.task_id,
        children=[ChildTaskSpec(task_type="echo"), ChildTaskSpec(task_type="echo")],
    )

    assert child_ids == [earlier.task_id]
    assert store.child_summary(parent_id=parent.task_id).total == 1
    assert store.complete_generator_task(task_id=parent.task_id, children=[]) is None


def test_generator_failure_creates_no_children(tmp_path: Path, store: TaskStore) -> None:
    parent = store.create_task(
        TaskCreate(task_type="directory_listing", args={"path": str(tmp_path / "gone")}),
    )

    result = _dispatcher(store).dispatch(parent)

    assert result.outcome == DispatchOutcome.FAILED
    assert result.error_type == "not_found"
    assert store.get_task(parent.task_id).status == TaskStatus.FAILED
    assert store.list_tasks(parent_id=parent.task_id) == []


def test_child_summary_rolls_up_statuses(tmp_path: Path, store: TaskStore) -> None:
    root = _media_dir(tmp_path)
    parent = store.create_task(
        TaskCreate(task_type="directory_listing", args={"path": str(root), "kind": "dirs"}),
    )
    dispatcher = _dispatcher(store)
    children = dispatcher.dispatch(parent).children

    summary = get_child_summary(store, parent.task_id)
    assert summary.total == 3
    assert summary.by_status == {"pending": 3}
    assert summary.all_terminal is False

    for child_id in children:
        dispatcher.dispatch(store.get_task(child_id))

    summary = get_child_summary(store, parent.task_id)
    assert summary.by_status == {"completed": 3}
    assert summary.all_terminal is True


def test_normalize_children_accepts_mappings() -> None:
    children = normalize_children(
        [
            ChildTaskSpec(task_type="transcode", args={"preset": "720p"}),
            {"type": "thumbnail", "args": {"at": 12}},
            {"task_type": "echo", "description": "announce"},
        ],
    )

    assert [child.task_type for child in children] == ["transcode", "thumbnail", "echo"]
    assert children[1].args == {"at": 12}
    assert children[2].description == "announce"

    with pytest.raises(ValueError, match="missing a type"):
        normalize_children([{"args": {}}])
    with pytest.raises(ValueError, match="must be an object"):
        normalize_children([{"type": "echo", "args": ["not", "a", "dict"]}])
