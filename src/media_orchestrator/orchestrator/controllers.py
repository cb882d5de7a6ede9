"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from media_orchestrator.config import Settings
from media_orchestrator.errors import NotFoundError
from media_orchestrator.orchestrator.engine import EngineRunSummary, Orchestrator
from media_orchestrator.orchestrator.models import (
    BackoffStrategy,
    OverlapPolicy,
    RetryPolicy,
    ScheduleCreate,
    ScheduleView,
    TaskCreate,
    TaskStatus,
    TaskView,
)


@dataclass(slots=True)
class TaskSubmitCommand:
    """CLI input for task submission."""

    db_path: Path | None
    task_type: str
    args_json: str | None
    description: str
    depends_on: tuple[str, ...]
    parent_id: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    task_type: str | None
    parent_id: str | None
    limit: int
    include_templates: bool = False


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for inspect/cancel/resubmit/history operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class DependencyCommand:
    db_path: Path | None
    task_id: str
    depends_on_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for engine execution."""

    db_path: Path | None
    mode: str
    max_tasks: int | None = None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class ScheduleCreateCommand:
    """CLI input for recurring task creation."""

    db_path: Path | None
    task_type: str
    cron_expression: str
    args_json: str | None
    description: str
    timezone: str | None
    max_instances: int | None
    overlap_policy: str | None
    enabled: bool | None = None


@dataclass(slots=True)
class ScheduleUpdateCommand:
    db_path: Path | None
    schedule_id: int
    cron_expression: str | None
    timezone: str | None
    max_instances: int | None
    overlap_policy: str | None


@dataclass(slots=True)
class ScheduleRefCommand:
    db_path: Path | None
    schedule_id: int


@dataclass(slots=True)
class ScheduleListCommand:
    db_path: Path | None
    enabled_only: bool


@dataclass(slots=True)
class SchedulePreviewCommand:
    """CLI input for dry-run of upcoming fire times."""

    cron_expression: str
    timezone: str | None
    count: int


@dataclass(slots=True)
class PolicySetCommand:
    """CLI input for retry policy upsert."""

    db_path: Path | None
    task_type: str
    max_retries: int
    backoff_strategy: str
    base_delay_ms: int
    max_delay_ms: int
    multiplier: float
    retryable_errors: tuple[str, ...]
    non_retryable_errors: tuple[str, ...]
    default_retryable: bool
    jitter: bool
    enabled: bool = True


@dataclass(slots=True)
class PolicyRefCommand:
    db_path: Path | None
    task_type: str


@dataclass(slots=True)
class PolicySeedCommand:
    db_path: Path | None
    overwrite: bool


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class PruneCommand:
    db_path: Path | None
    older_than_days: int | None


class OrchestratorCliController:
    """Coordinates task, schedule, retry-policy, and worker CLI operations."""

    # Tasks

    def submit_task(self, command: TaskSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            task = orchestrator.submit_task(
                TaskCreate(
                    task_type=command.task_type,
                    args=_parse_args(command.args_json),
                    description=command.description,
                    task_id=command.task_id,
                    parent_id=command.parent_id,
                    depends_on=list(command.depends_on),
                ),
            )
        return [
            "Task submitted: "
            f"task_id={task.task_id} type={task.task_type} status={task.status.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _orchestrator(settings) as orchestrator:
            tasks = orchestrator.store.list_tasks(
                status=status_filter,
                task_type=command.task_type,
                parent_id=command.parent_id,
                include_templates=command.include_templates,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(_task_line(task))
        return lines

    def inspect_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            details = orchestrator.store.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Description: {task.description or '-'}",
            f"Args: {json.dumps(task.args, sort_keys=True)}",
            f"Attempt: {task.attempt}",
            f"Parent: {task.parent_id or '-'}",
            f"Template: {task.template_task_id or '-'}",
            f"Depends on: {', '.join(details.dependencies) or '-'}",
            f"Dependents: {', '.join(details.dependents) or '-'}",
            f"Children: {len(details.children)}",
            f"Next retry: {_format_dt(task.next_retry_at)}",
            f"Error: {_format_error(task)}",
            f"Result: {json.dumps(task.result, sort_keys=True) if task.result is not None else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            task = orchestrator.cancel_task(command.task_id)
        if task.status == TaskStatus.RUNNING:
            return [f"Cancel requested: {task.task_id} (still running)"]
        return [f"Task canceled: {task.task_id} status={task.status.value}"]

    def resubmit_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            task = orchestrator.resubmit_task(command.task_id)
        return [f"Task resubmitted: {command.task_id} -> {task.task_id}"]

    def task_history(self, command: TaskRefCommand) -> list[str]:
        """Show the attempt history and aggregated retry stats for a task."""

        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            orchestrator.store.get_task(command.task_id)
            attempts = orchestrator.retry_manager.get_retry_history(command.task_id)
            stats = orchestrator.retry_manager.get_retry_stats(command.task_id)

        lines = [
            f"Attempts: {stats.total_attempts} "
            f"succeeded={stats.successful_attempts} failed={stats.failed_attempts} "
            f"avg_delay_ms={stats.average_delay_ms:.0f} "
            f"total_execution_ms={stats.total_execution_time_ms}",
        ]
        for attempt in attempts:
            outcome = "ok" if attempt.success else f"{attempt.error_type}: {attempt.error_message}"
            lines.append(
                f"  #{attempt.attempt_number} {attempt.attempted_at.isoformat()} "
                f"delay_ms={attempt.delay_ms} "
                f"execution_ms={attempt.execution_time_ms if attempt.execution_time_ms is not None else '-'} "
                f"{outcome}",
            )
        return lines

    def add_dependency(self, command: DependencyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            added = orchestrator.graph.add_dependency(command.task_id, command.depends_on_id)
        if not added:
            return [f"Dependency already exists: {command.task_id} -> {command.depends_on_id}"]
        return [f"Dependency added: {command.task_id} -> {command.depends_on_id}"]

    def remove_dependency(self, command: DependencyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            removed = orchestrator.graph.remove_dependency(command.task_id, command.depends_on_id)
        if not removed:
            return [f"Dependency not found: {command.task_id} -> {command.depends_on_id}"]
        return [f"Dependency removed: {command.task_id} -> {command.depends_on_id}"]

    def execution_order(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            order = orchestrator.graph.get_execution_order()
        return [f"Execution order ({len(order)} tasks):", *[f"  {task_id}" for task_id in order]]

    # Worker

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            if command.mode == "loop":
                summary = orchestrator.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            else:
                recovered = len(orchestrator.recover_interrupted_tasks())
                summary = (
                    orchestrator.run_until_idle()
                    if command.mode == "until-idle"
                    else orchestrator.run_once()
                )
                summary.recovered += recovered
        return [_summary_line(summary)]

    # Schedules

    def create_schedule(self, command: ScheduleCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            schedule = orchestrator.scheduler.create_schedule(
                ScheduleCreate(
                    task_type=command.task_type,
                    cron_expression=command.cron_expression,
                    args=_parse_args(command.args_json),
                    description=command.description,
                    timezone=command.timezone,
                    enabled=command.enabled,
                    max_instances=command.max_instances,
                    overlap_policy=_parse_overlap(command.overlap_policy),
                ),
            )
        return [f"Schedule created: {_schedule_line(schedule)}"]

    def update_schedule(self, command: ScheduleUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            schedule = orchestrator.scheduler.update_schedule(
                command.schedule_id,
                cron_expression=command.cron_expression,
                timezone=command.timezone,
                max_instances=command.max_instances,
                overlap_policy=_parse_overlap(command.overlap_policy),
            )
        return [f"Schedule updated: {_schedule_line(schedule)}"]

    def set_schedule_enabled(self, command: ScheduleRefCommand, *, enabled: bool) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            schedule = orchestrator.scheduler.set_enabled(command.schedule_id, enabled)
        state = "enabled" if enabled else "disabled"
        return [f"Schedule {state}: {_schedule_line(schedule)}"]

    def delete_schedule(self, command: ScheduleRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            deleted = orchestrator.scheduler.delete_schedule(command.schedule_id)
        if not deleted:
            raise NotFoundError("schedule", command.schedule_id)
        return [f"Schedule deleted: {command.schedule_id}"]

    def list_schedules(self, command: ScheduleListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            schedules = orchestrator.scheduler.list_schedules(enabled_only=command.enabled_only)
        lines = [f"Schedules: {len(schedules)}"]
        for schedule in schedules:
            lines.append(f"  {_schedule_line(schedule)}")
        return lines

    def preview_schedule(self, command: SchedulePreviewCommand) -> list[str]:
        """Dry-run the next fire times without touching the database."""

        from media_orchestrator.orchestrator.cron import CronExpression

        settings = Settings.from_env()
        cron = CronExpression.parse(
            command.cron_expression,
            command.timezone or settings.scheduler.default_timezone,
        )
        fires = cron.preview(datetime.now(tz=cron.zone), command.count)
        lines = [f"Next {len(fires)} run(s) for '{cron.expression}' ({cron.timezone}):"]
        for fire in fires:
            lines.append(f"  {fire.isoformat()}  local={fire.astimezone(cron.zone).isoformat()}")
        return lines

    # Retry policies

    def set_policy(self, command: PolicySetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        policy = RetryPolicy(
            task_type=command.task_type,
            max_retries=command.max_retries,
            backoff_strategy=BackoffStrategy(command.backoff_strategy),
            base_delay_ms=command.base_delay_ms,
            max_delay_ms=command.max_delay_ms,
            multiplier=command.multiplier,
            retryable_errors=command.retryable_errors,
            non_retryable_errors=command.non_retryable_errors,
            default_retryable=command.default_retryable,
            jitter=command.jitter,
            enabled=command.enabled,
        )
        with _orchestrator(settings) as orchestrator:
            stored = orchestrator.retry_manager.set_policy(policy)
        return [f"Retry policy saved: {_policy_line(stored)}"]

    def list_policies(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            policies = orchestrator.retry_manager.list_policies()
        lines = [f"Retry policies: {len(policies)}"]
        for policy in policies:
            lines.append(f"  {_policy_line(policy)}")
            if policy.retryable_errors:
                lines.append(f"    retryable: {', '.join(policy.retryable_errors)}")
            if policy.non_retryable_errors:
                lines.append(f"    non-retryable: {', '.join(policy.non_retryable_errors)}")
        return lines

    def delete_policy(self, command: PolicyRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            deleted = orchestrator.retry_manager.delete_policy(command.task_type)
        if not deleted:
            raise NotFoundError("retry policy", command.task_type)
        return [f"Retry policy deleted: {command.task_type}"]

    def seed_policies(self, command: PolicySeedCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            seeded = orchestrator.retry_manager.seed_default_policies(overwrite=command.overwrite)
        if not seeded:
            return ["Retry policies already present; nothing seeded."]
        return [f"Retry policies seeded: {', '.join(seeded)}"]

    # Maintenance

    def stats(self, command: StatsCommand) -> list[str]:
        """Show task counts by status and schedule health."""

        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            counts = orchestrator.store.count_tasks_by_status()
            metrics = orchestrator.scheduler.get_metrics()
            policies = orchestrator.retry_manager.list_policies()

        total = sum(counts.values())
        lines = [
            f"Tasks: total={total} "
            + " ".join(f"{status}={count}" for status, count in counts.items()),
            f"Schedules: total={metrics.total_schedules} enabled={metrics.enabled_schedules} "
            f"runs={metrics.total_runs} skipped={metrics.total_skipped} "
            f"live_instances={metrics.live_instances} "
            f"next_run_at={_format_dt(metrics.next_run_at)}",
            f"Retry policies: {len(policies)}",
        ]
        return lines

    def prune(self, command: PruneCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            tasks_deleted, attempts_deleted = orchestrator.prune_history(
                older_than_days=command.older_than_days,
            )
        return [f"Pruned: tasks={tasks_deleted} attempts={attempts_deleted}"]


@contextmanager
def _orchestrator(settings: Settings) -> Iterator[Orchestrator]:
    orchestrator = Orchestrator.from_settings(settings)
    try:
        yield orchestrator
    finally:
        orchestrator.close()


def _parse_args(value: str | None) -> dict[str, Any]:
    if value is None or not value.strip():
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as error:
        raise ValueError(f"Task args must be valid JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("Task args must be a JSON object.")
    return parsed


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _parse_overlap(value: str | None) -> OverlapPolicy | None:
    if value is None:
        return None
    return OverlapPolicy(value.strip().lower())


def _format_dt(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _format_error(task: TaskView) -> str:
    if task.error_message is None:
        return "-"
    return f"{task.error_type or 'error'}: {task.error_message}"


def _task_line(task: TaskView) -> str:
    line = (
        f"  {task.task_id} type={task.task_type} status={task.status.value} "
        f"attempt={task.attempt} created_at={task.created_at.isoformat()}"
    )
    if task.next_retry_at is not None:
        line += f" next_retry_at={task.next_retry_at.isoformat()}"
    if task.parent_id is not None:
        line += f" parent={task.parent_id}"
    return line


def _schedule_line(schedule: ScheduleView) -> str:
    return (
        f"id={schedule.schedule_id} type={schedule.task_type} "
        f"cron='{schedule.cron_expression}' tz={schedule.timezone} "
        f"enabled={str(schedule.enabled).lower()} "
        f"policy={schedule.overlap_policy.value} max_instances={schedule.max_instances} "
        f"runs={schedule.run_count} skipped={schedule.skipped_count} "
        f"next_run_at={schedule.next_run_at.isoformat()}"
    )


def _policy_line(policy: RetryPolicy) -> str:
    return (
        f"{policy.task_type} max_retries={policy.max_retries} "
        f"backoff={policy.backoff_strategy.value} base_ms={policy.base_delay_ms} "
        f"max_ms={policy.max_delay_ms} multiplier={policy.multiplier:g} "
        f"default_retryable={str(policy.default_retryable).lower()} "
        f"jitter={str(policy.jitter).lower()} enabled={str(policy.enabled).lower()}"
    )


def _summary_line(summary: EngineRunSummary) -> str:
    return (
        "Worker summary: "
        f"dispatched={summary.dispatched} completed={summary.completed} "
        f"failed={summary.failed} retried={summary.retried} canceled={summary.canceled} "
        f"skipped={summary.skipped} materialized={summary.materialized} "
        f"schedule_skips={summary.schedule_skips} recovered={summary.recovered} "
        f"idle_polls={summary.idle_polls}"
    )
