"""Error kinds raised by the orchestration core."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for orchestrator failures surfaced to callers."""


class NotFoundError(OrchestratorError, LookupError):
    """Reference to an unknown task, schedule, or retry policy."""

    def __init__(self, kind: str, identifier: object) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class CycleError(OrchestratorError):
    """Dependency insertion (or an existing graph) would contain a cycle."""

    def __init__(self, message: str, *, path: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.path = path


class TaskStateError(OrchestratorError):
    """Requested transition is not allowed from the task's current status."""


class UnknownTaskTypeError(OrchestratorError):
    """No executor or generator is registered for a task type."""

    def __init__(self, task_type: str) -> None:
        super().__init__(f"No executor registered for task type: {task_type!r}")
        self.task_type = task_type


class ExecutorError(OrchestratorError):
    """Failure raised or reported by an executor while running a task."""

    def __init__(self, message: str, *, error_type: str = "ExecutorError") -> None:
        super().__init__(message)
        self.error_type = error_type

    @classmethod
    def wrap(cls, error: BaseException) -> ExecutorError:
        """Wrap an arbitrary executor exception, keeping its type name."""

        if isinstance(error, ExecutorError):
            return error
        message = str(error) or error.__class__.__name__
        wrapped = cls(message, error_type=error.__class__.__name__)
        wrapped.__cause__ = error
        return wrapped


class ExecutorTimeoutError(ExecutorError):
    """Executor exceeded its per-type timeout.

    ``still_running`` is set when the executor ignored the cancel and was still
    busy after the grace period; such a task must not be run again.
    """

    def __init__(self, task_type: str, timeout_seconds: float, *, still_running: bool = False) -> None:
        message = f"Executor for {task_type!r} timed out after {timeout_seconds:g}s"
        if still_running:
            message += " and did not stop after cancel"
        super().__init__(message, error_type="timeout")
        self.timeout_seconds = timeout_seconds
        self.still_running = still_running


class InvalidCronExpressionError(OrchestratorError, ValueError):
    """Cron expression or schedule timezone cannot be evaluated."""


class PersistenceError(OrchestratorError):
    """Storage I/O failure; the logical task state was not advanced."""
