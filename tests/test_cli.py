from __future__ import annotations

from pathlib import Path

import allure
from click.testing import CliRunner

from media_orchestrator.main import media_orchestrator

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Command Line"),
]


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(media_orchestrator, list(args))


def test_submit_run_and_inspect_task_chain(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()

    first = _invoke(
        runner,
        "tasks", "submit", "--db-path", db_path,
        "--type", "echo", "--task-id", "ingest", "--args", '{"clip": "intro.mp4"}',
    )
    second = _invoke(
        runner,
        "tasks", "submit", "--db-path", db_path,
        "--type", "echo", "--task-id", "publish", "--depends-on", "ingest",
    )
    assert first.exit_code == 0, first.output
    assert "Task submitted: task_id=ingest type=echo status=pending" in first.output
    assert second.exit_code == 0, second.output

    order = _invoke(runner, "tasks", "order", "--db-path", db_path)
    assert order.exit_code == 0, order.output
    assert order.output.index("ingest") < order.output.index("publish")

    worker = _invoke(runner, "worker", "--db-path", db_path, "--mode", "until-idle")
    assert worker.exit_code == 0, worker.output
    assert "Worker summary: dispatched=2 completed=2 failed=0" in worker.output

    inspect = _invoke(runner, "tasks", "inspect", "--db-path", db_path, "--task-id", "publish")
    assert inspect.exit_code == 0, inspect.output
    assert "Status: completed" in inspect.output
    assert "Depends on: ingest" in inspect.output

    listed = _invoke(runner, "tasks", "list", "--db-path", db_path, "--status", "completed")
    assert "Tasks: 2" in listed.output

    stats = _invoke(runner, "stats", "--db-path", db_path)
    assert stats.exit_code == 0, stats.output
    assert "Tasks: total=2" in stats.output
    assert "completed=2" in stats.output


def test_failed_task_history_and_resubmit(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    _invoke(
        runner,
        "tasks", "submit", "--db-path", db_path, "--type", "fail", "--task-id", "probe",
        "--args", '{"message": "bad codec", "error_type": "invalid_args"}',
    )

    worker = _invoke(runner, "worker", "--db-path", db_path, "--mode", "once")
    assert "failed=1" in worker.output

    history = _invoke(runner, "tasks", "history", "--db-path", db_path, "--task-id", "probe")
    assert history.exit_code == 0, history.output
    assert "Attempts: 1 succeeded=0 failed=1" in history.output
    assert "invalid_args: bad codec" in history.output

    resubmitted = _invoke(runner, "tasks", "resubmit", "--db-path", db_path, "--task-id", "probe")
    assert resubmitted.exit_code == 0, resubmitted.output
    assert "Task resubmitted: probe -> " in resubmitted.output


def test_cancel_pending_task(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    _invoke(runner, "tasks", "submit", "--db-path", db_path, "--type", "echo", "--task-id", "t1")

    canceled = _invoke(runner, "tasks", "cancel", "--db-path", db_path, "--task-id", "t1")

    assert canceled.exit_code == 0, canceled.output
    assert "Task canceled: t1 status=skipped" in canceled.output


def test_invalid_args_json_is_reported(tmp_path: Path) -> None:
    result = _invoke(
        CliRunner(),
        "tasks", "submit", "--db-path", str(tmp_path / "cli.db"),
        "--type", "echo", "--args", "{not json",
    )

    assert result.exit_code != 0
    assert "JSON" in result.output


def test_dependency_cycle_is_rejected(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    _invoke(runner, "tasks", "submit", "--db-path", db_path, "--type", "echo", "--task-id", "a")
    _invoke(
        runner,
        "tasks", "submit", "--db-path", db_path, "--type", "echo",
        "--task-id", "b", "--depends-on", "a",
    )

    result = _invoke(runner, "tasks", "depend", "--db-path", db_path, "--task-id", "a", "--on", "b")

    assert result.exit_code != 0
    assert "cycle" in result.output


def test_schedule_lifecycle(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()

    created = _invoke(
        runner,
        "schedules", "create", "--db-path", db_path,
        "--type", "echo", "--cron", "*/15 * * * *", "--overlap", "queue", "--max-instances", "2",
    )
    assert created.exit_code == 0, created.output
    assert "Schedule created: id=1 type=echo" in created.output
    assert "policy=queue max_instances=2" in created.output

    disabled = _invoke(runner, "schedules", "disable", "--db-path", db_path, "--id", "1")
    assert "enabled=false" in disabled.output

    listed = _invoke(runner, "schedules", "list", "--db-path", db_path, "--enabled-only")
    assert "Schedules: 0" in listed.output

    deleted = _invoke(runner, "schedules", "delete", "--db-path", db_path, "--id", "1")
    assert "Schedule deleted: 1" in deleted.output
    missing = _invoke(runner, "schedules", "delete", "--db-path", db_path, "--id", "1")
    assert missing.exit_code != 0


def test_schedule_preview_and_invalid_cron() -> None:
    runner = CliRunner()

    preview = _invoke(
        runner,
        "schedules", "preview", "--cron", "0 9 * * 1-5", "--timezone", "Europe/Berlin",
        "--count", "3",
    )
    assert preview.exit_code == 0, preview.output
    assert "Next 3 run(s) for '0 9 * * 1-5' (Europe/Berlin):" in preview.output
    assert preview.output.count("local=") == 3

    invalid = _invoke(runner, "schedules", "preview", "--cron", "99 * * * *")
    assert invalid.exit_code != 0


def test_retry_policy_commands(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()

    seeded = _invoke(runner, "policies", "seed", "--db-path", db_path)
    assert seeded.exit_code == 0, seeded.output
    assert "Retry policies seeded: " in seeded.output
    again = _invoke(runner, "policies", "seed", "--db-path", db_path)
    assert "nothing seeded" in again.output

    saved = _invoke(
        runner,
        "policies", "set", "--db-path", db_path, "--type", "transcode",
        "--max-retries", "5", "--backoff", "linear", "--base-delay-ms", "200",
        "--max-delay-ms", "2000", "--non-retryable", "corrupt*",
    )
    assert saved.exit_code == 0, saved.output
    assert "transcode max_retries=5 backoff=linear base_ms=200 max_ms=2000" in saved.output

    listed = _invoke(runner, "policies", "list", "--db-path", db_path)
    assert "Retry policies: 6" in listed.output
    assert "non-retryable: corrupt*" in listed.output

    bad = _invoke(
        runner,
        "policies", "set", "--db-path", db_path, "--type", "x",
        "--base-delay-ms", "500", "--max-delay-ms", "100",
    )
    assert bad.exit_code != 0

    deleted = _invoke(runner, "policies", "delete", "--db-path", db_path, "--type", "transcode")
    assert "Retry policy deleted: transcode" in deleted.output


def test_prune_reports_counts(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()
    _invoke(runner, "tasks", "submit", "--db-path", db_path, "--type", "echo")
    _invoke(runner, "worker", "--db-path", db_path, "--mode", "until-idle")

    kept = _invoke(runner, "prune", "--db-path", db_path)
    assert "Pruned: tasks=0 attempts=0" in kept.output

    pruned = _invoke(runner, "prune", "--db-path", db_path, "--older-than-days", "0")
    assert pruned.exit_code == 0, pruned.output
    assert "Pruned: tasks=1 attempts=1" in pruned.output
