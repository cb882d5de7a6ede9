"""Small executors used for demos, smoke runs, and tests."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from media_orchestrator.errors import ExecutorError
from media_orchestrator.orchestrator.dispatcher import ExecutorRegistry
from media_orchestrator.orchestrator.models import ChildTaskSpec, ExecutionResult, TaskView


class EchoExecutor:
    """Returns the task args as its result."""

    def execute(self, task: TaskView) -> ExecutionResult:
        return ExecutionResult(output=dict(task.args))


class SleepExecutor:
    """Sleeps ``args.seconds``; wakes early when canceled.

    Cancels for a task that is not sleeping right now are ignored. The
    dispatcher keeps re-sending a pending cancel while the task runs.
    """

    def __init__(self) -> None:
        self._events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def execute(self, task: TaskView) -> dict[str, Any]:
        seconds = float(task.args.get("seconds", 1.0))
        if seconds < 0:
            raise ExecutorError(f"seconds must be >= 0, got {seconds}", error_type="invalid_args")
        event = threading.Event()
        with self._lock:
            self._events[task.task_id] = event
        try:
            canceled = event.wait(seconds)
        finally:
            with self._lock:
                self._events.pop(task.task_id, None)
        return {"slept_seconds": seconds, "canceled": canceled}

    def cancel(self, task_id: str) -> None:
        with self._lock:
            event = self._events.get(task_id)
        if event is not None:
            event.set()


class FailExecutor:
    """Raises ``args.message``; succeeds once ``attempt > args.fail_times`` when given."""

    def execute(self, task: TaskView) -> dict[str, Any]:
        fail_times = task.args.get("fail_times")
        if fail_times is not None and task.attempt > int(fail_times):
            return {"attempt": task.attempt}
        message = str(task.args.get("message", "fail executor was asked to fail"))
        error_type = task.args.get("error_type")
        if error_type:
            raise ExecutorError(message, error_type=str(error_type))
        raise RuntimeError(message)


class DirectoryListingGenerator:
    """Proposes one child task per entry of ``args.path``, sorted by name.

    ``args.kind`` selects ``dirs``, ``files`` or ``all`` entries;
    ``args.child_type`` sets the children's task type (``echo`` by default).
    """

    _KINDS = frozenset({"dirs", "files", "all"})

    def expand(self, task: TaskView) -> list[ChildTaskSpec]:
        raw_path = task.args.get("path")
        if not raw_path:
            raise ExecutorError("directory_listing requires args.path", error_type="invalid_args")
        root = Path(str(raw_path)).expanduser()
        if not root.is_dir():
            raise ExecutorError(f"Not a directory: {root}", error_type="not_found")
        kind = str(task.args.get("kind", "all"))
        if kind not in self._KINDS:
            raise ExecutorError(f"Unsupported kind: {kind!r}", error_type="invalid_args")
        child_type = str(task.args.get("child_type", "echo"))

        children: list[ChildTaskSpec] = []
        for entry in sorted(root.iterdir(), key=lambda item: item.name):
            if kind == "dirs" and not entry.is_dir():
                continue
            if kind == "files" and not entry.is_file():
                continue
            children.append(
                ChildTaskSpec(
                    task_type=child_type,
                    args={"path": str(entry), "name": entry.name},
                    description=f"Process {entry.name}",
                ),
            )
        return children


def register_builtin_executors(
    registry: ExecutorRegistry,
    *,
    chain_directory_children: bool = False,
) -> ExecutorRegistry:
    registry.register_executor("echo", EchoExecutor())
    registry.register_executor("sleep", SleepExecutor())
    registry.register_executor("fail", FailExecutor())
    registry.register_generator(
        "directory_listing",
        DirectoryListingGenerator(),
        chain=chain_directory_children,
    )
    return registry
