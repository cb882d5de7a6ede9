"""SQLModel ORM tables for the orchestration store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_ready", "status", "is_template", "created_at"),
        Index("idx_tasks_retry_due", "status", "next_retry_at"),
    )

    task_id: str = Field(primary_key=True)
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    description: str = ""
    args_json: str | None = Field(default=None, sa_column=Column(Text))
    parent_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    template_task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    schedule_id: int | None = Field(default=None, index=True)
    is_template: bool = Field(default=False)
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_type: str | None = None
    attempt: int = Field(default=0)
    retry_delay_ms: int = Field(default=0)
    next_retry_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    cancel_requested: bool = Field(default=False)
    worker_id: str | None = Field(default=None, index=True)
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskDependency(SQLModel, table=True):
    __tablename__ = "task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("task_id", "depends_on_id", name="pk_task_dependencies"),
        Index("idx_task_dependencies_depends_on", "depends_on_id"),
    )

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    depends_on_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RetryPolicyRecord(SQLModel, table=True):
    __tablename__ = "retry_policies"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_type: str = Field(sa_column=Column(Text, nullable=False, unique=True))
    max_retries: int = 3
    backoff_strategy: str = "exponential"
    base_delay_ms: int = 1_000
    max_delay_ms: int = 300_000
    multiplier: float = 2.0
    retryable_errors_json: str | None = Field(default=None, sa_column=Column(Text))
    non_retryable_errors_json: str | None = Field(default=None, sa_column=Column(Text))
    default_retryable: bool = True
    jitter: bool = False
    enabled: bool = True
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RetryHistory(SQLModel, table=True):
    __tablename__ = "retry_history"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "attempt_number", name="uq_retry_history_task_attempt"),
        Index("idx_retry_history_attempted_at", "attempted_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_number: int
    attempted_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    error_type: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    delay_ms: int = 0
    success: bool = False
    execution_time_ms: int | None = None


class TaskSchedule(SQLModel, table=True):
    __tablename__ = "task_schedules"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_schedules_due", "enabled", "next_run_at"),)

    schedule_id: int | None = Field(default=None, primary_key=True)
    template_task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    cron_expression: str
    timezone: str = "UTC"
    enabled: bool = True
    next_run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    run_count: int = 0
    skipped_count: int = 0
    max_instances: int = 1
    overlap_policy: str = "skip"
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
