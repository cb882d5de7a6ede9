"""Domain models for the task graph, retries, and schedules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED})
LIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.RETRYING})


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class OverlapPolicy(str, Enum):
    """What a schedule does when earlier instances are still live."""

    SKIP = "skip"
    QUEUE = "queue"
    ALLOW = "allow"


class DispatchOutcome(str, Enum):
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    CANCELED = "canceled"
    LOST_CLAIM = "lost_claim"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for submitting a task."""

    task_type: str
    args: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    task_id: str | None = None
    parent_id: str | None = None
    depends_on: list[str] = field(default_factory=list)
    is_template: bool = False


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, graph, and dispatcher logic."""

    task_id: str
    task_type: str
    status: TaskStatus
    args: dict[str, Any]
    description: str
    parent_id: str | None
    template_task_id: str | None
    schedule_id: int | None
    is_template: bool
    result: Any
    error_message: str | None
    error_type: str | None
    attempt: int
    retry_delay_ms: int
    next_retry_at: datetime | None
    cancel_requested: bool
    worker_id: str | None
    heartbeat_at: datetime | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with its graph neighbourhood and event stream."""

    task: TaskView
    events: list[TaskEventView]
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ChildTaskSpec:
    """One child proposed by a generator's ``expand``."""

    task_type: str
    args: dict[str, Any] = field(default_factory=dict)
    description: str = ""


@dataclass(slots=True)
class ChildSummary:
    """Roll-up of a generator's children by status."""

    parent_id: str
    total: int
    by_status: dict[str, int] = field(default_factory=dict)

    @property
    def all_terminal(self) -> bool:
        live = sum(self.by_status.get(status.value, 0) for status in LIVE_STATUSES)
        return live == 0


@dataclass(slots=True)
class ExecutionResult:
    """Executor success payload; plain return values are wrapped into this."""

    output: Any = None


@dataclass(slots=True)
class DispatchResult:
    """What happened to one task handed to the dispatcher."""

    task_id: str
    outcome: DispatchOutcome
    attempt: int = 0
    error_type: str | None = None
    error_message: str | None = None
    retry_delay_ms: int | None = None
    execution_time_ms: int | None = None
    children: list[str] = field(default_factory=list)
    skipped_dependents: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RetryPolicy:
    """Per task-type retry behaviour."""

    task_type: str
    max_retries: int = 3
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_ms: int = 1_000
    max_delay_ms: int = 300_000
    multiplier: float = 2.0
    retryable_errors: tuple[str, ...] = ()
    non_retryable_errors: tuple[str, ...] = ()
    default_retryable: bool = True
    jitter: bool = False
    enabled: bool = True

    def validate(self) -> None:
        """Raise ``ValueError`` if the policy violates its numeric bounds."""

        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}.")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}.")
        if self.base_delay_ms > self.max_delay_ms:
            raise ValueError(
                f"base_delay_ms ({self.base_delay_ms}) must not exceed "
                f"max_delay_ms ({self.max_delay_ms}).",
            )
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}.")


@dataclass(slots=True)
class ErrorClassification:
    retryable: bool
    matched_rule: str
    matched_pattern: str | None = None


@dataclass(slots=True)
class RetryDecision:
    """Outcome of consulting the retry policy after a failed attempt."""

    should_retry: bool
    delay_ms: int
    reason: str
    classification: ErrorClassification | None = None


@dataclass(slots=True)
class RetryAttemptView:
    """Immutable record of one execution attempt."""

    attempt_id: int
    task_id: str
    attempt_number: int
    attempted_at: datetime
    error_type: str | None
    error_message: str | None
    delay_ms: int
    success: bool
    execution_time_ms: int | None


@dataclass(slots=True)
class RetryStats:
    task_id: str
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    average_delay_ms: float
    total_execution_time_ms: int


@dataclass(slots=True)
class ScheduleCreate:
    """Input payload for a recurring task; the template task is created with it."""

    task_type: str
    cron_expression: str
    args: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    timezone: str | None = None
    enabled: bool | None = None
    max_instances: int | None = None
    overlap_policy: OverlapPolicy | None = None


@dataclass(slots=True)
class ScheduleView:
    schedule_id: int
    template_task_id: str
    task_type: str
    cron_expression: str
    timezone: str
    enabled: bool
    next_run_at: datetime
    last_run_at: datetime | None
    run_count: int
    skipped_count: int
    max_instances: int
    overlap_policy: OverlapPolicy
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ScheduleFire:
    """Result of firing one due schedule."""

    schedule_id: int
    materialized_task_id: str | None
    skipped: bool
    live_instances: int
    next_run_at: datetime


@dataclass(slots=True)
class ScheduleMetrics:
    total_schedules: int
    enabled_schedules: int
    total_runs: int
    total_skipped: int
    live_instances: int
    next_run_at: datetime | None
