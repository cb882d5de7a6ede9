"""Orchestrator context: wires store, graph, retries, scheduler, and the worker pool."""

from __future__ import annotations

import logging
import os
import random
import signal
import socket
import time
from collections.abc import Callable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import TracebackType

from media_orchestrator.config import Settings
from media_orchestrator.errors import ExecutorError, UnknownTaskTypeError
from media_orchestrator.orchestrator.dispatcher import ExecutorDispatcher, ExecutorRegistry
from media_orchestrator.orchestrator.graph import DependencyGraph
from media_orchestrator.orchestrator.models import (
    DispatchOutcome,
    DispatchResult,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from media_orchestrator.orchestrator.repository import TaskStore
from media_orchestrator.orchestrator.retry import RetryManager
from media_orchestrator.orchestrator.scheduler import RecurrenceScheduler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EngineRunSummary:
    """Aggregate engine counters for CLI reporting."""

    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    canceled: int = 0
    lost_claims: int = 0
    skipped: int = 0
    materialized: int = 0
    schedule_skips: int = 0
    released_retries: int = 0
    recovered: int = 0
    idle_polls: int = 0

    def add_result(self, result: DispatchResult) -> None:
        if result.outcome == DispatchOutcome.LOST_CLAIM:
            self.lost_claims += 1
            return
        self.dispatched += 1
        if result.outcome == DispatchOutcome.COMPLETED:
            self.completed += 1
        elif result.outcome == DispatchOutcome.RETRYING:
            self.retried += 1
        elif result.outcome == DispatchOutcome.FAILED:
            self.failed += 1
        elif result.outcome == DispatchOutcome.CANCELED:
            self.canceled += 1
        self.skipped += len(result.skipped_dependents)

    def merge(self, other: EngineRunSummary) -> None:
        for name in self.__slots__:  # type: ignore[attr-defined]
            setattr(self, name, getattr(self, name) + getattr(other, name))


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class Orchestrator:
    """Explicit engine context; one instance per process.

    The loop thread releases due retries, ticks the scheduler, sweeps blocked
    tasks, claims ready tasks, and hands them to a bounded thread pool.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        registry: ExecutorRegistry,
        settings: Settings | None = None,
        worker_id: str | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.registry = registry
        self.worker_id = worker_id or default_worker_id()
        self.graph = DependencyGraph(
            store,
            skipped_dependency_satisfies=self.settings.orchestrator.skipped_dependency_satisfies,
        )
        self.retry_manager = RetryManager(store, self.settings.retry, rng=rng, clock=clock)
        self.scheduler = RecurrenceScheduler(store, self.settings.scheduler)
        self.dispatcher = ExecutorDispatcher(
            store=store,
            registry=registry,
            retry_manager=self.retry_manager,
            graph=self.graph,
            worker_id=self.worker_id,
            settings=self.settings.orchestrator,
            clock=clock,
        )
        registry.freeze()
        self._clock = clock
        self._pool: ThreadPoolExecutor | None = None
        self._in_flight: dict[Future[DispatchResult], str] = {}
        self._last_tick_at: float | None = None
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: ExecutorRegistry | None = None,
        *,
        init_schema: bool = True,
    ) -> Orchestrator:
        """Open the store from settings; built-in executors are used if no registry is given."""

        from media_orchestrator.executors import register_builtin_executors

        settings.validate()
        store = TaskStore.from_settings(settings)
        if init_schema:
            store.init_schema()
        return cls(
            store=store,
            registry=registry or register_builtin_executors(ExecutorRegistry()),
            settings=settings,
        )

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Wait for in-flight tasks, then release the pool and the store."""

        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
        self._in_flight.clear()
        self.store.close()

    # Task operations

    def submit_task(self, payload: TaskCreate) -> TaskView:
        """Create a task; it is skipped at once if a dependency already failed."""

        created = self.store.create_task(payload)
        statuses = self.store.dependency_statuses(created.task_id)
        for dependency_id, status in statuses.items():
            if status in self.graph.blocking:
                self.store.skip_task(
                    task_id=created.task_id,
                    reason=f"Dependency {dependency_id} did not complete",
                    details={"blocked_by": dependency_id},
                )
                break
        return self.store.get_task(created.task_id)

    def cancel_task(self, task_id: str) -> TaskView:
        """Cancel a task and skip whatever can no longer run because of it."""

        force_skip = self.settings.orchestrator.cancel_forces_skip
        previous = self.store.request_cancel(task_id=task_id, force_skip=force_skip)
        task = self.store.get_task(task_id)
        if previous == TaskStatus.RUNNING:
            try:
                entry = self.registry.resolve(task.task_type)
            except UnknownTaskTypeError:
                entry = None
            if entry is not None and task_id in self._in_flight.values():
                entry.cancel(task_id)
        if task.status == TaskStatus.SKIPPED:
            self.graph.propagate_skip(task_id)
        logger.info("Cancel requested for task %s (was %s)", task_id, previous.value)
        return task

    def resubmit_task(self, task_id: str) -> TaskView:
        """Clone a finished task (and its dependency edges) into a fresh pending task."""

        return self.store.resubmit_task(task_id=task_id)

    def prune_history(self, *, older_than_days: int | None = None) -> tuple[int, int]:
        """Delete finished tasks and attempt rows past the retention window.

        Returns ``(tasks_deleted, attempts_deleted)``.
        """

        days = (
            older_than_days
            if older_than_days is not None
            else self.settings.storage.history_retention_days
        )
        cutoff = self.store.now_fn() - timedelta(days=days)
        # Attempts go first; deleting a task cascades to its attempt rows.
        attempts_deleted = self.store.prune_retry_history(older_than=cutoff)
        tasks_deleted = self.store.prune_finished_tasks(older_than=cutoff)
        logger.info(
            "Pruned %d finished task(s) and %d attempt record(s) older than %s",
            tasks_deleted,
            attempts_deleted,
            cutoff.isoformat(),
        )
        return tasks_deleted, attempts_deleted

    def recover_interrupted_tasks(self) -> list[DispatchResult]:
        """Route running tasks left behind by a dead worker through the retry policy.

        With ``stale_running_seconds == 0`` every running task not owned by
        this engine is treated as interrupted.
        """

        stale_seconds = self.settings.orchestrator.stale_running_seconds
        stale_before: datetime | None = None
        if stale_seconds > 0:
            stale_before = self.store.now_fn() - timedelta(seconds=stale_seconds)
        owned = set(self._in_flight.values())
        results: list[DispatchResult] = []
        for task in self.store.list_running_tasks(stale_before=stale_before):
            if task.task_id in owned:
                continue
            error = ExecutorError(
                "Task was interrupted before its outcome was recorded",
                error_type="interrupted",
            )
            logger.warning("Recovering interrupted task %s (worker=%s)", task.task_id, task.worker_id)
            results.append(self.dispatcher.fail_claimed(task, error))
        return results

    # Loops

    def run_once(self) -> EngineRunSummary:
        """One maintenance pass plus one batch of ready tasks, run to completion."""

        summary = EngineRunSummary()
        self._maintenance(summary, force_tick=True)
        self._fill_slots(summary)
        if not self._in_flight:
            summary.idle_polls = 1
        self._drain(summary)
        return summary

    def run_until_idle(self, *, max_passes: int | None = None) -> EngineRunSummary:
        """Repeat passes until no task is ready, running, or waiting for a retry."""

        aggregate = EngineRunSummary()
        passes = 0
        while max_passes is None or passes < max_passes:
            passes += 1
            summary = self.run_once()
            aggregate.merge(summary)
            if summary.dispatched or summary.lost_claims or summary.released_retries:
                continue
            wait_seconds = self._seconds_until_next_retry()
            if wait_seconds is None:
                return aggregate
            self._sleep_with_stop(wait_seconds)
            if self._stop_requested:
                return aggregate
        return aggregate

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> EngineRunSummary:
        """Run until stopped by a signal, ``max_tasks`` dispatches, or idle polls run out."""

        summary = EngineRunSummary()
        consecutive_idle = 0
        poll = self.settings.orchestrator.poll_interval_seconds
        with self._signal_handlers():
            try:
                summary.recovered += len(self.recover_interrupted_tasks())
                while not self._stop_requested:
                    if max_tasks is not None and summary.dispatched >= max_tasks:
                        break
                    self._maintenance(summary, force_tick=False)
                    claimed = summary.dispatched + len(self._in_flight)
                    self._fill_slots(summary, max_new=_remaining(max_tasks, claimed))
                    if self._in_flight:
                        consecutive_idle = 0
                        wait_futures(
                            list(self._in_flight),
                            timeout=poll,
                            return_when=FIRST_COMPLETED,
                        )
                        self._collect(summary)
                        continue
                    summary.idle_polls += 1
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(poll)
            finally:
                self._drain(summary)
        if self._stop_requested:
            logger.info("Engine stopped by %s", self._stop_signal_name or "request")
        return summary

    def request_stop(self) -> None:
        self._stop_requested = True

    def _maintenance(self, summary: EngineRunSummary, *, force_tick: bool) -> None:
        summary.released_retries += len(self.store.release_due_retries())
        now = self._clock()
        interval = self.settings.scheduler.tick_interval_seconds
        if force_tick or self._last_tick_at is None or now - self._last_tick_at >= interval:
            self._last_tick_at = now
            for fire in self.scheduler.tick():
                if fire.skipped:
                    summary.schedule_skips += 1
                else:
                    summary.materialized += 1
        summary.skipped += len(self.graph.sweep_blocked())

    def _fill_slots(self, summary: EngineRunSummary, *, max_new: int | None = None) -> None:
        free = self.settings.orchestrator.max_workers - len(self._in_flight)
        if max_new is not None:
            free = min(free, max_new)
        if free <= 0:
            return
        owned = set(self._in_flight.values())
        pool = self._ensure_pool()
        for task in self.graph.get_ready_tasks(limit=free + len(owned)):
            if free <= 0:
                break
            if task.task_id in owned:
                continue
            claimed = self.dispatcher.claim(task.task_id)
            if claimed is None:
                summary.lost_claims += 1
                continue
            future = pool.submit(self.dispatcher.run_claimed, claimed)
            self._in_flight[future] = claimed.task_id
            free -= 1

    def _collect(self, summary: EngineRunSummary) -> None:
        for future in [future for future in self._in_flight if future.done()]:
            task_id = self._in_flight.pop(future)
            try:
                summary.add_result(future.result())
            except Exception:
                logger.exception("Worker crashed while running task %s", task_id)
                raise

    def _drain(self, summary: EngineRunSummary) -> None:
        if self._in_flight:
            wait_futures(list(self._in_flight))
        self._collect(summary)

    def _ensure_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.settings.orchestrator.max_workers,
                thread_name_prefix="media-orchestrator",
            )
        return self._pool

    def _seconds_until_next_retry(self) -> float | None:
        retrying = self.store.list_tasks(status=TaskStatus.RETRYING, limit=1_000)
        due = [task.next_retry_at for task in retrying if task.next_retry_at is not None]
        if not due:
            return None
        return max(0.0, (min(due) - self.store.now_fn()).total_seconds())

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_requested = True
            self._stop_signal_name = name

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _remaining(max_tasks: int | None, claimed: int) -> int | None:
    if max_tasks is None:
        return None
    return max(0, max_tasks - claimed)
