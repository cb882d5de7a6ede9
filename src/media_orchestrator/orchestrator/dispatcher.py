"""Executor registry and dispatch of a single task attempt."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol, runtime_checkable

from media_orchestrator.config import OrchestratorSettings
from media_orchestrator.errors import (
    ExecutorError,
    ExecutorTimeoutError,
    PersistenceError,
    UnknownTaskTypeError,
)
from media_orchestrator.orchestrator.generators import (
    TaskGenerator,
    complete_with_children,
    normalize_children,
)
from media_orchestrator.orchestrator.graph import DependencyGraph
from media_orchestrator.orchestrator.models import (
    ChildTaskSpec,
    DispatchOutcome,
    DispatchResult,
    ExecutionResult,
    RetryDecision,
    TaskStatus,
    TaskView,
)
from media_orchestrator.orchestrator.repository import TaskStore
from media_orchestrator.orchestrator.retry import RetryManager, error_type_name
from media_orchestrator.storage.common import dump_json

logger = logging.getLogger(__name__)


@runtime_checkable
class TaskExecutor(Protocol):
    """Runs one task. Return a payload (or ``ExecutionResult``) or raise.

    Executors may also expose ``cancel(task_id)`` for cooperative cancellation.
    They must tolerate re-execution of the same task after a crash.
    """

    def execute(self, task: TaskView) -> ExecutionResult | Any: ...


@dataclass(slots=True)
class RegistryEntry:
    task_type: str
    handler: TaskExecutor | TaskGenerator
    timeout_seconds: float | None = None
    is_generator: bool = False
    chain: bool = False

    def cancel(self, task_id: str) -> bool:
        """Forward a cancel request if the handler supports it."""

        cancel = getattr(self.handler, "cancel", None)
        if not callable(cancel):
            return False
        cancel(task_id)
        return True


class ExecutorRegistry:
    """Maps task types to executors or generators; frozen once the engine starts."""

    def __init__(self) -> None:
        self._entries: dict[str, RegistryEntry] = {}
        self._frozen = False

    def register_executor(
        self,
        task_type: str,
        executor: TaskExecutor,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        if not callable(getattr(executor, "execute", None)):
            raise TypeError(f"Executor for {task_type!r} must define execute(task).")
        self._add(RegistryEntry(task_type=task_type, handler=executor, timeout_seconds=timeout_seconds))

    def register_generator(
        self,
        task_type: str,
        generator: TaskGenerator,
        *,
        chain: bool = False,
        timeout_seconds: float | None = None,
    ) -> None:
        if not callable(getattr(generator, "expand", None)):
            raise TypeError(f"Generator for {task_type!r} must define expand(task).")
        self._add(
            RegistryEntry(
                task_type=task_type,
                handler=generator,
                timeout_seconds=timeout_seconds,
                is_generator=True,
                chain=chain,
            ),
        )

    def resolve(self, task_type: str) -> RegistryEntry:
        entry = self._entries.get(task_type)
        if entry is None:
            raise UnknownTaskTypeError(task_type)
        return entry

    def freeze(self) -> None:
        self._frozen = True

    def task_types(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._entries

    def __iter__(self) -> Iterator[RegistryEntry]:
        return iter(self._entries.values())

    def _add(self, entry: RegistryEntry) -> None:
        if self._frozen:
            raise RuntimeError("Executor registry is frozen; register handlers before starting.")
        if entry.task_type in self._entries:
            raise ValueError(f"Task type already registered: {entry.task_type!r}")
        if entry.timeout_seconds is not None and entry.timeout_seconds <= 0:
            raise ValueError(f"Timeout for {entry.task_type!r} must be > 0.")
        self._entries[entry.task_type] = entry


class ExecutorDispatcher:
    """Claims a ready task, runs its handler, and commits the outcome."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        registry: ExecutorRegistry,
        retry_manager: RetryManager,
        graph: DependencyGraph,
        worker_id: str,
        settings: OrchestratorSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.registry = registry
        self.retry_manager = retry_manager
        self.graph = graph
        self.worker_id = worker_id
        self.settings = settings or OrchestratorSettings()
        self._clock = clock

    def dispatch(self, task: TaskView) -> DispatchResult:
        """Claim and run one task in the calling thread."""

        claimed = self.claim(task.task_id)
        if claimed is None:
            return DispatchResult(task_id=task.task_id, outcome=DispatchOutcome.LOST_CLAIM)
        return self.run_claimed(claimed)

    def claim(self, task_id: str) -> TaskView | None:
        return self.store.claim_task(
            task_id=task_id,
            worker_id=self.worker_id,
            satisfied=self.graph.satisfied,
        )

    def run_claimed(self, task: TaskView) -> DispatchResult:
        """Run an already claimed (``running``) task to its next durable state."""

        started = self._clock()
        try:
            entry = self.registry.resolve(task.task_type)
        except UnknownTaskTypeError as error:
            logger.error("Task %s has no registered executor: %s", task.task_id, task.task_type)
            return self._handle_failure(task, error, self._elapsed_ms(started))

        try:
            output = self._invoke(entry, task)
        except ExecutorError as error:
            return self._handle_failure(task, error, self._elapsed_ms(started))
        except PersistenceError:
            raise
        except Exception as error:  # noqa: BLE001
            return self._handle_failure(task, ExecutorError.wrap(error), self._elapsed_ms(started))
        return self._handle_success(task, entry, output, self._elapsed_ms(started))

    def _invoke(self, entry: RegistryEntry, task: TaskView) -> Any:
        if entry.is_generator:
            generator = entry.handler

            def call() -> Any:
                return normalize_children(generator.expand(task))  # type: ignore[union-attr]

        else:
            executor = entry.handler

            def call() -> Any:
                return executor.execute(task)  # type: ignore[union-attr]

        return self._run_with_deadline(call, task=task, entry=entry)

    def _run_with_deadline(
        self,
        call: Callable[[], Any],
        *,
        task: TaskView,
        entry: RegistryEntry,
    ) -> Any:
        """Run ``call`` in a helper thread, heartbeating until it returns or times out.

        On timeout the cancel is forwarded and the thread gets
        ``timeout_grace_seconds`` to exit. The timeout is only reported once the
        thread is gone, or with ``still_running`` set when it never stops, so a
        retry can never overlap the abandoned attempt. Store errors raised while
        heartbeating propagate as they are.
        """

        outcome: dict[str, Any] = {}
        done = threading.Event()

        def target() -> None:
            try:
                outcome["value"] = call()
            except BaseException as error:  # noqa: BLE001
                outcome["error"] = error
            finally:
                done.set()

        thread = threading.Thread(
            target=target,
            name=f"executor-{task.task_type}-{task.task_id[:8]}",
            daemon=True,
        )
        thread.start()
        timeout = entry.timeout_seconds
        deadline = None if timeout is None else self._clock() + timeout
        cancel_forwarded = False
        timed_out = False
        while not done.wait(self._wait_slice(deadline)):
            if deadline is not None and self._clock() >= deadline:
                if timed_out:
                    logger.error(
                        "Executor for task %s still running %.1fs after cancel; task will not be retried",
                        task.task_id,
                        self.settings.timeout_grace_seconds,
                    )
                    raise ExecutorTimeoutError(task.task_type, timeout or 0.0, still_running=True)
                timed_out = True
                entry.cancel(task.task_id)
                deadline = self._clock() + self.settings.timeout_grace_seconds
                continue
            try:
                self.store.touch_task(task_id=task.task_id)
                cancel_requested = self.store.get_task(task.task_id).cancel_requested
            except PersistenceError:
                entry.cancel(task.task_id)
                raise
            # Re-sent every heartbeat: the executor may not have started listening yet.
            if (timed_out or cancel_requested) and entry.cancel(task.task_id) and not cancel_forwarded:
                cancel_forwarded = True
                logger.info("Forwarded cancel request to executor for task %s", task.task_id)

        if timed_out:
            raise ExecutorTimeoutError(task.task_type, timeout or 0.0)
        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("value")

    def _wait_slice(self, deadline: float | None) -> float:
        interval = max(0.01, self.settings.heartbeat_interval_seconds)
        if deadline is None:
            return interval
        return max(0.0, min(interval, deadline - self._clock()))

    def _handle_success(
        self,
        task: TaskView,
        entry: RegistryEntry,
        output: Any,
        execution_time_ms: int,
    ) -> DispatchResult:
        result = output.output if isinstance(output, ExecutionResult) else output
        if not entry.is_generator:
            try:
                dump_json(result)
            except (TypeError, ValueError) as error:
                return self._handle_failure(
                    task,
                    ExecutorError(
                        f"Executor returned a result that is not JSON serializable: {error}",
                        error_type="invalid_result",
                    ),
                    execution_time_ms,
                )

        self.retry_manager.record_attempt(task, error=None, execution_time_ms=execution_time_ms)
        current = self.store.get_task(task.task_id)
        if current.status != TaskStatus.RUNNING:
            return self._lost(task)

        if current.cancel_requested:
            if not self.store.complete_task(task_id=task.task_id, result=None):
                return self._lost(task)
            logger.info("Task %s finished after cancel request; result discarded", task.task_id)
            return DispatchResult(
                task_id=task.task_id,
                outcome=DispatchOutcome.CANCELED,
                attempt=task.attempt,
                execution_time_ms=execution_time_ms,
            )

        children: list[str] = []
        if entry.is_generator:
            specs: list[ChildTaskSpec] = output
            child_ids = complete_with_children(self.store, task, specs, chain=entry.chain)
            if child_ids is None:
                return self._lost(task)
            children = child_ids
        elif not self.store.complete_task(task_id=task.task_id, result=result):
            return self._lost(task)

        logger.info(
            "Task %s (%s) completed on attempt %d in %d ms",
            task.task_id,
            task.task_type,
            task.attempt,
            execution_time_ms,
        )
        return DispatchResult(
            task_id=task.task_id,
            outcome=DispatchOutcome.COMPLETED,
            attempt=task.attempt,
            execution_time_ms=execution_time_ms,
            children=children,
        )

    def _handle_failure(
        self,
        task: TaskView,
        error: BaseException,
        execution_time_ms: int,
    ) -> DispatchResult:
        self.retry_manager.record_attempt(task, error=error, execution_time_ms=execution_time_ms)
        error_type = error_type_name(error)
        error_message = str(error) or error_type
        current = self.store.get_task(task.task_id)
        if current.status != TaskStatus.RUNNING:
            return self._lost(task)

        if current.cancel_requested:
            if not self.store.fail_task(
                task_id=task.task_id,
                error_type=error_type,
                error_message=error_message,
            ):
                return self._lost(task)
            skipped = self.graph.propagate_skip(task.task_id)
            logger.info("Task %s failed after cancel request; not retried", task.task_id)
            return DispatchResult(
                task_id=task.task_id,
                outcome=DispatchOutcome.CANCELED,
                attempt=task.attempt,
                error_type=error_type,
                error_message=error_message,
                execution_time_ms=execution_time_ms,
                skipped_dependents=skipped,
            )

        if isinstance(error, ExecutorTimeoutError) and error.still_running:
            decision = RetryDecision(should_retry=False, delay_ms=0, reason="executor_still_running")
        else:
            policy = self.retry_manager.get_policy(task.task_type)
            decision = self.retry_manager.should_retry(task, policy, error, task.attempt)
        if decision.should_retry:
            next_retry_at = self.store.now_fn() + timedelta(milliseconds=decision.delay_ms)
            if not self.store.schedule_retry(
                task_id=task.task_id,
                error_type=error_type,
                error_message=error_message,
                delay_ms=decision.delay_ms,
                next_retry_at=next_retry_at,
            ):
                return self._lost(task)
            logger.warning(
                "Task %s (%s) attempt %d failed with %s: %s; retrying in %d ms",
                task.task_id,
                task.task_type,
                task.attempt,
                error_type,
                error_message,
                decision.delay_ms,
            )
            return DispatchResult(
                task_id=task.task_id,
                outcome=DispatchOutcome.RETRYING,
                attempt=task.attempt,
                error_type=error_type,
                error_message=error_message,
                retry_delay_ms=decision.delay_ms,
                execution_time_ms=execution_time_ms,
            )

        if not self.store.fail_task(
            task_id=task.task_id,
            error_type=error_type,
            error_message=error_message,
        ):
            return self._lost(task)
        skipped = self.graph.propagate_skip(task.task_id)
        logger.error(
            "Task %s (%s) failed permanently after %d attempt(s) (%s): %s",
            task.task_id,
            task.task_type,
            task.attempt,
            decision.reason,
            error_message,
        )
        return DispatchResult(
            task_id=task.task_id,
            outcome=DispatchOutcome.FAILED,
            attempt=task.attempt,
            error_type=error_type,
            error_message=error_message,
            execution_time_ms=execution_time_ms,
            skipped_dependents=skipped,
        )

    def fail_claimed(self, task: TaskView, error: BaseException) -> DispatchResult:
        """Record a failure for a task claimed elsewhere, e.g. one left running by a dead worker."""

        return self._handle_failure(task, error, execution_time_ms=0)

    def _lost(self, task: TaskView) -> DispatchResult:
        logger.warning("Task %s left running state before its outcome was committed", task.task_id)
        return DispatchResult(
            task_id=task.task_id,
            outcome=DispatchOutcome.LOST_CLAIM,
            attempt=task.attempt,
        )

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._clock() - started) * 1000))
