from __future__ import annotations

import threading
import time
from typing import Any

import allure
import pytest

from media_orchestrator.config import OrchestratorSettings, RetrySettings
from media_orchestrator.errors import PersistenceError, UnknownTaskTypeError
from media_orchestrator.executors import register_builtin_executors
from media_orchestrator.executors.builtin import SleepExecutor
from media_orchestrator.orchestrator.dispatcher import ExecutorDispatcher, ExecutorRegistry
from media_orchestrator.orchestrator.graph import DependencyGraph
from media_orchestrator.orchestrator.models import (
    DispatchOutcome,
    RetryPolicy,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from media_orchestrator.orchestrator.repository import TaskStore
from media_orchestrator.orchestrator.retry import RetryManager

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Executor Dispatch"),
]


def _dispatcher(
    store: TaskStore,
    registry: ExecutorRegistry,
    *,
    timeout_grace_seconds: float = 5.0,
) -> ExecutorDispatcher:
    return ExecutorDispatcher(
        store=store,
        registry=registry,
        retry_manager=RetryManager(store, RetrySettings(base_delay_ms=0, max_delay_ms=0)),
        graph=DependencyGraph(store),
        worker_id="test-worker",
        settings=OrchestratorSettings(
            heartbeat_interval_seconds=0.02,
            timeout_grace_seconds=timeout_grace_seconds,
        ),
    )


def _submit(store: TaskStore, task_type: str, **args: Any) -> TaskView:
    return store.create_task(TaskCreate(task_type=task_type, args=args))


class _ObjectResultExecutor:
    def execute(self, task: TaskView) -> object:
        return object()


class _ForceSkipSelfExecutor:
    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def execute(self, task: TaskView) -> dict[str, str]:
        self.store.request_cancel(task_id=task.task_id, force_skip=True)
        return {"late": "result"}


class _StubbornExecutor:
    """Ignores cancel; tracks how many executions of one task overlap."""

    def __init__(self, *, hold_seconds: float) -> None:
        self.hold_seconds = hold_seconds
        self.release = threading.Event()
        self.canceled: list[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(self, task: TaskView) -> dict[str, int]:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.release.wait(self.hold_seconds)
        finally:
            with self._lock:
                self.active -= 1
        return {"attempt": task.attempt}

    def cancel(self, task_id: str) -> None:
        self.canceled.append(task_id)


class _CancelableExecutor(_StubbornExecutor):
    def cancel(self, task_id: str) -> None:
        super().cancel(task_id)
        self.release.set()


class _SlowStartSleepExecutor:
    """Starts listening for cancels only after a setup delay."""

    def __init__(self) -> None:
        self.inner = SleepExecutor()

    def execute(self, task: TaskView) -> dict[str, Any]:
        time.sleep(0.2)
        return self.inner.execute(task)

    def cancel(self, task_id: str) -> None:
        self.inner.cancel(task_id)


def test_successful_execution_completes_task_and_records_attempt(store: TaskStore) -> None:
    dispatcher = _dispatcher(store, register_builtin_executors(ExecutorRegistry()))
    task = _submit(store, "echo", clip="intro.mp4")

    result = dispatcher.dispatch(task)

    assert result.outcome == DispatchOutcome.COMPLETED
    assert result.attempt == 1
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.result == {"clip": "intro.mp4"}
    attempts = store.list_attempts(task_id=task.task_id)
    assert len(attempts) == 1
    assert attempts[0].success is True


def test_unknown_task_type_fails_without_retry(store: TaskStore) -> None:
    dispatcher = _dispatcher(store, register_builtin_executors(ExecutorRegistry()))
    task = _submit(store, "does_not_exist")

    result = dispatcher.dispatch(task)

    assert result.outcome == DispatchOutcome.FAILED
    assert result.error_type == "UnknownTaskTypeError"
    assert store.get_task(task.task_id).status == TaskStatus.FAILED


def test_retryable_failure_moves_task_to_retrying(store: TaskStore) -> None:
    dispatcher = _dispatcher(store, register_builtin_executors(ExecutorRegistry()))
    task = _submit(store, "fail", message="temporary outage")

    result = dispatcher.dispatch(task)

    assert result.outcome == DispatchOutcome.RETRYING
    assert result.retry_delay_ms == 0
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.RETRYING
    assert stored.error_type == "RuntimeError"
    assert stored.error_message == "temporary outage"
    assert stored.next_retry_at is not None
    assert stored.worker_id is None


def test_timeout_is_reported_as_timeout_error(store: TaskStore) -> None:
    registry = ExecutorRegistry()
    registry.register_executor("sleep", SleepExecutor(), timeout_seconds=0.1)
    dispatcher = _dispatcher(store, registry)
    dispatcher.retry_manager.set_policy(RetryPolicy(task_type="sleep", max_retries=0))
    task = _submit(store, "sleep", seconds=5)

    started = time.monotonic()
    result = dispatcher.dispatch(task)

    assert time.monotonic() - started < 3
    assert result.outcome == DispatchOutcome.FAILED
    assert result.error_type == "timeout"
    assert store.get_task(task.task_id).status == TaskStatus.FAILED


def test_non_json_result_fails_as_invalid_result(store: TaskStore) -> None:
    registry = ExecutorRegistry()
    registry.register_executor("weird", _ObjectResultExecutor())
    dispatcher = _dispatcher(store, registry)
    task = _submit(store, "weird")

    result = dispatcher.dispatch(task)

    assert result.outcome == DispatchOutcome.FAILED
    assert result.error_type == "invalid_result"


def test_outcome_is_discarded_when_claim_was_lost(store: TaskStore) -> None:
    registry = ExecutorRegistry()
    registry.register_executor("self_cancel", _ForceSkipSelfExecutor(store))
    dispatcher = _dispatcher(store, registry)
    task = _submit(store, "self_cancel")

    result = dispatcher.dispatch(task)

    assert result.outcome == DispatchOutcome.LOST_CLAIM
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.SKIPPED
    assert stored.result is None


def test_cancel_request_is_forwarded_to_running_executor(store: TaskStore) -> None:
    dispatcher = _dispatcher(store, register_builtin_executors(ExecutorRegistry()))
    task = _submit(store, "sleep", seconds=10)
    outcome: dict[str, Any] = {}

    worker = threading.Thread(target=lambda: outcome.update(result=dispatcher.dispatch(task)))
    worker.start()
    deadline = time.monotonic() + 5
    while store.get_task(task.task_id).status != TaskStatus.RUNNING:
        assert time.monotonic() < deadline
        time.sleep(0.01)
    store.request_cancel(task_id=task.task_id)
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert outcome["result"].outcome == DispatchOutcome.CANCELED
    stored = store.get_task(task.task_id)
    assert stored.cancel_requested is True
    assert stored.result is None


def test_dispatch_of_already_claimed_task_reports_lost_claim(store: TaskStore) -> None:
    dispatcher = _dispatcher(store, register_builtin_executors(ExecutorRegistry()))
    task = _submit(store, "echo")
    assert store.claim_task(task_id=task.task_id, worker_id="other") is not None

    result = dispatcher.dispatch(task)

    assert result.outcome == DispatchOutcome.LOST_CLAIM
    assert store.get_task(task.task_id).worker_id == "other"


def test_registry_rejects_duplicates_bad_handlers_and_late_registration() -> None:
    registry = ExecutorRegistry()
    registry.register_executor("echo", SleepExecutor())

    with pytest.raises(ValueError, match="already registered"):
        registry.register_executor("echo", SleepExecutor())
    with pytest.raises(ValueError, match="Timeout"):
        registry.register_executor("slow", SleepExecutor(), timeout_seconds=0)
    with pytest.raises(TypeError, match="execute"):
        registry.register_executor("broken", object())  # type: ignore[arg-type]
    with pytest.raises(UnknownTaskTypeError):
        registry.resolve("missing")

    registry.freeze()
    with pytest.raises(RuntimeError, match="frozen"):
        registry.register_executor("late", SleepExecutor())
    assert registry.task_types() == ["echo"]
    assert "echo" in registry


def test_store_error_while_heartbeating_propagates(
    store: TaskStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    registry = ExecutorRegistry()
    executor = _CancelableExecutor(hold_seconds=5)
    registry.register_executor("gated", executor)
    dispatcher = _dispatcher(store, registry)
    task = _submit(store, "gated")
    original_touch = store.touch_task
    calls: list[str] = []

    def flaky_touch(*, task_id: str) -> None:
        calls.append(task_id)
        if len(calls) == 1:
            raise PersistenceError("Task store operation failed: database is locked")
        original_touch(task_id=task_id)

    monkeypatch.setattr(store, "touch_task", flaky_touch)

    with pytest.raises(PersistenceError, match="database is locked"):
        dispatcher.dispatch(task)

    assert executor.canceled == [task.task_id]
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.RUNNING
    assert stored.error_type is None
    assert store.list_attempts(task_id=task.task_id) == []


def test_timed_out_attempt_finishes_before_retry_is_committed(store: TaskStore) -> None:
    registry = ExecutorRegistry()
    executor = _StubbornExecutor(hold_seconds=0.3)
    registry.register_executor("slow", executor, timeout_seconds=0.1)
    dispatcher = _dispatcher(store, registry, timeout_grace_seconds=2)
    dispatcher.retry_manager.set_policy(
        RetryPolicy(task_type="slow", max_retries=3, base_delay_ms=0, max_delay_ms=0),
    )
    task = _submit(store, "slow")

    started = time.monotonic()
    first = dispatcher.dispatch(task)
    first_elapsed = time.monotonic() - started
    assert store.release_due_retries() == [task.task_id]
    second = dispatcher.dispatch(store.get_task(task.task_id))

    assert first.outcome == DispatchOutcome.RETRYING
    assert first.error_type == "timeout"
    assert first_elapsed >= 0.25
    assert second.outcome == DispatchOutcome.RETRYING
    assert second.attempt == 2
    assert executor.max_active == 1
    assert set(executor.canceled) == {task.task_id}


def test_executor_that_ignores_cancel_after_timeout_is_not_retried(store: TaskStore) -> None:
    registry = ExecutorRegistry()
    executor = _StubbornExecutor(hold_seconds=10)
    registry.register_executor("stuck", executor, timeout_seconds=0.05)
    dispatcher = _dispatcher(store, registry, timeout_grace_seconds=0.1)
    dispatcher.retry_manager.set_policy(RetryPolicy(task_type="stuck", max_retries=3))
    task = _submit(store, "stuck")

    try:
        result = dispatcher.dispatch(task)
    finally:
        executor.release.set()

    assert result.outcome == DispatchOutcome.FAILED
    assert result.error_type == "timeout"
    assert "did not stop after cancel" in (result.error_message or "")
    stored = store.get_task(task.task_id)
    assert stored.status == TaskStatus.FAILED
    assert stored.next_retry_at is None
    assert len(store.list_attempts(task_id=task.task_id)) == 1


def test_cancel_is_resent_until_executor_starts_listening(store: TaskStore) -> None:
    registry = ExecutorRegistry()
    registry.register_executor("sleep", _SlowStartSleepExecutor())
    dispatcher = _dispatcher(store, registry)
    task = _submit(store, "sleep", seconds=10)
    outcome: dict[str, Any] = {}

    worker = threading.Thread(target=lambda: outcome.update(result=dispatcher.dispatch(task)))
    worker.start()
    deadline = time.monotonic() + 5
    while store.get_task(task.task_id).status != TaskStatus.RUNNING:
        assert time.monotonic() < deadline
        time.sleep(0.01)
    store.request_cancel(task_id=task.task_id)
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert outcome["result"].outcome == DispatchOutcome.CANCELED


def test_sleep_executor_ignores_cancel_for_task_that_is_not_sleeping(store: TaskStore) -> None:
    executor = SleepExecutor()
    task = _submit(store, "sleep", seconds=0.05)

    executor.cancel(task.task_id)

    assert executor.execute(task) == {"slept_seconds": 0.05, "canceled": False}
