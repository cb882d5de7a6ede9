"""CLI entrypoint for media-orchestrator."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from media_orchestrator import __version__
from media_orchestrator.errors import OrchestratorError
from media_orchestrator.orchestrator.controllers import (
    DependencyCommand,
    OrchestratorCliController,
    PolicyRefCommand,
    PolicySeedCommand,
    PolicySetCommand,
    PruneCommand,
    ScheduleCreateCommand,
    ScheduleListCommand,
    SchedulePreviewCommand,
    ScheduleRefCommand,
    ScheduleUpdateCommand,
    StatsCommand,
    TaskListCommand,
    TaskRefCommand,
    TaskSubmitCommand,
    WorkerCommand,
)

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to MEDIA_ORCH_DB_PATH).",
)
TASK_STATUSES = ["pending", "running", "completed", "failed", "retrying", "skipped"]
OVERLAP_POLICIES = ["skip", "queue", "allow"]


@click.group()
@click.version_option(version=__version__, prog_name="media-orchestrator")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def media_orchestrator(verbose: bool) -> None:
    """Local task orchestration for media pipelines."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@media_orchestrator.group()
def tasks() -> None:
    """Task submission and inspection."""


@tasks.command("submit")
@DB_PATH_OPTION
@click.option("--type", "task_type", required=True, help="Registered task type.")
@click.option("--args", "args_json", default=None, help="Task arguments as a JSON object.")
@click.option("--description", default="", help="Free-form description.")
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Task id that must complete first. Can be repeated.",
)
@click.option("--parent-id", default=None, help="Optional parent task id.")
@click.option("--task-id", default=None, help="Explicit task id (generated when omitted).")
def tasks_submit(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    args_json: str | None,
    description: str,
    depends_on: tuple[str, ...],
    parent_id: str | None,
    task_id: str | None,
) -> None:
    """Submit a task, optionally depending on other tasks."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.submit_task(
            TaskSubmitCommand(
                db_path=db_path,
                task_type=task_type,
                args_json=args_json,
                description=description,
                depends_on=depends_on,
                parent_id=parent_id,
                task_id=task_id,
            ),
        ),
    )


@tasks.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--type", "task_type", default=None, help="Optional task type filter.")
@click.option("--parent-id", default=None, help="Only children of this task.")
@click.option(
    "--include-templates",
    is_flag=True,
    default=False,
    help="Also list schedule template tasks.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(  # noqa: PLR0913
    db_path: Path | None,
    status: str | None,
    task_type: str | None,
    parent_id: str | None,
    include_templates: bool,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status,
                task_type=task_type,
                parent_id=parent_id,
                limit=limit,
                include_templates=include_templates,
            ),
        ),
    )


@tasks.command("inspect")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its graph neighbourhood and event history."""

    _emit(lambda: ORCHESTRATOR_CONTROLLER.inspect_task(TaskRefCommand(db_path, task_id)))


@tasks.command("cancel")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending, retrying, or running task."""

    _emit(lambda: ORCHESTRATOR_CONTROLLER.cancel_task(TaskRefCommand(db_path, task_id)))


@tasks.command("resubmit")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id of a finished task.")
def tasks_resubmit(db_path: Path | None, task_id: str) -> None:
    """Re-run a finished task as a new pending task."""

    _emit(lambda: ORCHESTRATOR_CONTROLLER.resubmit_task(TaskRefCommand(db_path, task_id)))


@tasks.command("history")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task id.")
def tasks_history(db_path: Path | None, task_id: str) -> None:
    """Show per-attempt retry history."""

    _emit(lambda: ORCHESTRATOR_CONTROLLER.task_history(TaskRefCommand(db_path, task_id)))


@tasks.command("depend")
@DB_PATH_OPTION
@click.option("--task-id", required=True, help="Dependent task id.")
@click.option("--on", "depends_on_id", required=True, help="Task id to wait for.")
@click.option("--remove", is_flag=True, default=False, help="Remove the edge instead.")
def tasks_depend(db_path: Path | None, task_id: str, depends_on_id: str, remove: bool) -> None:
    """Add (or remove) a dependency edge between two tasks."""

    command = DependencyCommand(db_path=db_path, task_id=task_id, depends_on_id=depends_on_id)
    if remove:
        _emit(lambda: ORCHESTRATOR_CONTROLLER.remove_dependency(command))
    else:
        _emit(lambda: ORCHESTRATOR_CONTROLLER.add_dependency(command))


@tasks.command("order")
@DB_PATH_OPTION
def tasks_order(db_path: Path | None) -> None:
    """Print a topological execution order of all tasks."""

    _emit(lambda: ORCHESTRATOR_CONTROLLER.execution_order(StatsCommand(db_path=db_path)))


@media_orchestrator.command("worker")
@DB_PATH_OPTION
@click.option(
    "--mode",
    type=click.Choice(["once", "until-idle", "loop"], case_sensitive=False),
    default="once",
    show_default=True,
    help="Run one pass, run until nothing is left to do, or loop until stopped.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for dispatched tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many consecutive idle polls.",
)
def worker(
    db_path: Path | None,
    mode: str,
    max_tasks: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the orchestration engine."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                mode=mode.lower(),
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@media_orchestrator.group()
def schedules() -> None:
    """Recurring (cron) task management."""


@schedules.command("create")
@DB_PATH_OPTION
@click.option("--type", "task_type", required=True, help="Task type to materialize.")
@click.option("--cron", "cron_expression", required=True, help="5-field cron expression.")
@click.option("--args", "args_json", default=None, help="Task arguments as a JSON object.")
@click.option("--description", default="", help="Free-form description.")
@click.option("--timezone", default=None, help="IANA timezone (defaults to settings).")
@click.option(
    "--max-instances",
    type=click.IntRange(min=1),
    default=None,
    help="Max live instances of this schedule.",
)
@click.option(
    "--overlap",
    "overlap_policy",
    type=click.Choice(OVERLAP_POLICIES, case_sensitive=False),
    default=None,
    help="What to do when earlier instances are still live.",
)
@click.option("--disabled", is_flag=True, default=False, help="Create the schedule disabled.")
def schedules_create(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    cron_expression: str,
    args_json: str | None,
    description: str,
    timezone: str | None,
    max_instances: int | None,
    overlap_policy: str | None,
    disabled: bool,
) -> None:
    """Create a recurring task."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.create_schedule(
            ScheduleCreateCommand(
                db_path=db_path,
                task_type=task_type,
                cron_expression=cron_expression,
                args_json=args_json,
                description=description,
                timezone=timezone,
                max_instances=max_instances,
                overlap_policy=overlap_policy,
                enabled=False if disabled else None,
            ),
        ),
    )


@schedules.command("update")
@DB_PATH_OPTION
@click.option("--id", "schedule_id", type=int, required=True, help="Schedule id.")
@click.option("--cron", "cron_expression", default=None, help="New cron expression.")
@click.option("--timezone", default=None, help="New IANA timezone.")
@click.option("--max-instances", type=click.IntRange(min=1), default=None)
@click.option(
    "--overlap",
    "overlap_policy",
    type=click.Choice(OVERLAP_POLICIES, case_sensitive=False),
    default=None,
)
def schedules_update(  # noqa: PLR0913
    db_path: Path | None,
    schedule_id: int,
    cron_expression: str | None,
    timezone: str | None,
    max_instances: int | None,
    overlap_policy: str | None,
) -> None:
    """Edit a schedule; the next run time is recomputed."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.update_schedule(
            ScheduleUpdateCommand(
                db_path=db_path,
                schedule_id=schedule_id,
                cron_expression=cron_expression,
                timezone=timezone,
                max_instances=max_instances,
                overlap_policy=overlap_policy,
            ),
        ),
    )


@schedules.command("list")
@DB_PATH_OPTION
@click.option("--enabled-only", is_flag=True, default=False)
def schedules_list(db_path: Path | None, enabled_only: bool) -> None:
    """List schedules."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.list_schedules(
            ScheduleListCommand(db_path=db_path, enabled_only=enabled_only),
        ),
    )


@schedules.command("enable")
@DB_PATH_OPTION
@click.option("--id", "schedule_id", type=int, required=True, help="Schedule id.")
def schedules_enable(db_path: Path | None, schedule_id: int) -> None:
    """Enable a schedule starting from its next fire time."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.set_schedule_enabled(
            ScheduleRefCommand(db_path=db_path, schedule_id=schedule_id),
            enabled=True,
        ),
    )


@schedules.command("disable")
@DB_PATH_OPTION
@click.option("--id", "schedule_id", type=int, required=True, help="Schedule id.")
def schedules_disable(db_path: Path | None, schedule_id: int) -> None:
    """Disable a schedule."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.set_schedule_enabled(
            ScheduleRefCommand(db_path=db_path, schedule_id=schedule_id),
            enabled=False,
        ),
    )


@schedules.command("delete")
@DB_PATH_OPTION
@click.option("--id", "schedule_id", type=int, required=True, help="Schedule id.")
def schedules_delete(db_path: Path | None, schedule_id: int) -> None:
    """Delete a schedule and its template task."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.delete_schedule(
            ScheduleRefCommand(db_path=db_path, schedule_id=schedule_id),
        ),
    )


@schedules.command("preview")
@click.option("--cron", "cron_expression", required=True, help="5-field cron expression.")
@click.option("--timezone", default=None, help="IANA timezone.")
@click.option("--count", type=click.IntRange(min=1, max=100), default=5, show_default=True)
def schedules_preview(cron_expression: str, timezone: str | None, count: int) -> None:
    """Print upcoming fire times for a cron expression."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.preview_schedule(
            SchedulePreviewCommand(
                cron_expression=cron_expression,
                timezone=timezone,
                count=count,
            ),
        ),
    )


@media_orchestrator.group()
def policies() -> None:
    """Per task-type retry policies."""


@policies.command("set")
@DB_PATH_OPTION
@click.option("--type", "task_type", required=True, help="Task type.")
@click.option("--max-retries", type=click.IntRange(min=0), default=3, show_default=True)
@click.option(
    "--backoff",
    "backoff_strategy",
    type=click.Choice(["fixed", "linear", "exponential"], case_sensitive=False),
    default="exponential",
    show_default=True,
)
@click.option("--base-delay-ms", type=click.IntRange(min=0), default=1000, show_default=True)
@click.option("--max-delay-ms", type=click.IntRange(min=0), default=300_000, show_default=True)
@click.option("--multiplier", type=click.FloatRange(min=1.0), default=2.0, show_default=True)
@click.option(
    "--retryable",
    "retryable_errors",
    multiple=True,
    help="Error pattern (substring or glob) that is retried. Can be repeated.",
)
@click.option(
    "--non-retryable",
    "non_retryable_errors",
    multiple=True,
    help="Error pattern (substring or glob) that is never retried. Can be repeated.",
)
@click.option(
    "--default-retryable/--default-non-retryable",
    default=True,
    show_default=True,
    help="Outcome for errors no pattern matches.",
)
@click.option("--jitter/--no-jitter", default=False, show_default=True)
@click.option("--disabled", is_flag=True, default=False, help="Store the policy with retries off.")
def policies_set(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    max_retries: int,
    backoff_strategy: str,
    base_delay_ms: int,
    max_delay_ms: int,
    multiplier: float,
    retryable_errors: tuple[str, ...],
    non_retryable_errors: tuple[str, ...],
    default_retryable: bool,
    jitter: bool,
    disabled: bool,
) -> None:
    """Create or replace the retry policy of a task type."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.set_policy(
            PolicySetCommand(
                db_path=db_path,
                task_type=task_type,
                max_retries=max_retries,
                backoff_strategy=backoff_strategy.lower(),
                base_delay_ms=base_delay_ms,
                max_delay_ms=max_delay_ms,
                multiplier=multiplier,
                retryable_errors=retryable_errors,
                non_retryable_errors=non_retryable_errors,
                default_retryable=default_retryable,
                jitter=jitter,
                enabled=not disabled,
            ),
        ),
    )


@policies.command("list")
@DB_PATH_OPTION
def policies_list(db_path: Path | None) -> None:
    """List stored retry policies."""

    _emit(lambda: ORCHESTRATOR_CONTROLLER.list_policies(StatsCommand(db_path=db_path)))


@policies.command("delete")
@DB_PATH_OPTION
@click.option("--type", "task_type", required=True, help="Task type.")
def policies_delete(db_path: Path | None, task_type: str) -> None:
    """Delete a stored policy; the configured default applies again."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.delete_policy(
            PolicyRefCommand(db_path=db_path, task_type=task_type),
        ),
    )


@policies.command("seed")
@DB_PATH_OPTION
@click.option("--overwrite", is_flag=True, default=False, help="Replace existing policies.")
def policies_seed(db_path: Path | None, overwrite: bool) -> None:
    """Store the built-in per-type policies (shell, llm, tool, youtube, batch)."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.seed_policies(
            PolicySeedCommand(db_path=db_path, overwrite=overwrite),
        ),
    )


@media_orchestrator.command("stats")
@DB_PATH_OPTION
def stats(db_path: Path | None) -> None:
    """Show task counts and schedule health."""

    _emit(lambda: ORCHESTRATOR_CONTROLLER.stats(StatsCommand(db_path=db_path)))


@media_orchestrator.command("prune")
@DB_PATH_OPTION
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention window (defaults to MEDIA_ORCH_HISTORY_RETENTION_DAYS).",
)
def prune(db_path: Path | None, older_than_days: int | None) -> None:
    """Delete finished tasks and attempt history past the retention window."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.prune(
            PruneCommand(db_path=db_path, older_than_days=older_than_days),
        ),
    )


def _emit(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    media_orchestrator()
