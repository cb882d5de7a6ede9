from __future__ import annotations

from pathlib import Path

import allure
import pytest

from media_orchestrator.config import (
    OrchestratorSettings,
    RetrySettings,
    SchedulerSettings,
    Settings,
    StorageSettings,
)

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()

    settings.validate()
    assert settings.orchestrator.max_workers == 4
    assert settings.retry.max_retries == 3
    assert settings.scheduler.default_overlap_policy == "skip"


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEDIA_ORCH_DB_PATH", "/tmp/media.db")
    monkeypatch.setenv("MEDIA_ORCH_MAX_WORKERS", "8")
    monkeypatch.setenv("MEDIA_ORCH_TIMEOUT_GRACE_SECONDS", "0.5")
    monkeypatch.setenv("MEDIA_ORCH_RETRY_BACKOFF", " Linear ")
    monkeypatch.setenv("MEDIA_ORCH_RETRY_JITTER", "yes")
    monkeypatch.setenv("MEDIA_ORCH_SKIPPED_DEPENDENCY_SATISFIES", "on")
    monkeypatch.setenv("MEDIA_ORCH_DEFAULT_TIMEZONE", "Europe/Berlin")
    monkeypatch.setenv("MEDIA_ORCH_SCHEDULE_OVERLAP_POLICY", "QUEUE")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/media.db")
    assert settings.orchestrator.max_workers == 8
    assert settings.orchestrator.timeout_grace_seconds == 0.5
    assert settings.orchestrator.skipped_dependency_satisfies is True
    assert settings.retry.backoff_strategy == "linear"
    assert settings.retry.jitter is True
    assert settings.scheduler.default_timezone == "Europe/Berlin"
    assert settings.scheduler.default_overlap_policy == "queue"
    settings.validate()


def test_explicit_db_path_wins_over_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEDIA_ORCH_DB_PATH", "/tmp/ignored.db")

    assert Settings.from_env(Path("chosen.db")).db_path == Path("chosen.db")


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEDIA_ORCH_CANCEL_FORCES_SKIP", "sometimes")

    with pytest.raises(ValueError, match="MEDIA_ORCH_CANCEL_FORCES_SKIP"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(storage=StorageSettings(busy_timeout_ms=0)), "BUSY_TIMEOUT_MS"),
        (Settings(storage=StorageSettings(history_retention_days=-1)), "HISTORY_RETENTION_DAYS"),
        (Settings(orchestrator=OrchestratorSettings(max_workers=0)), "MAX_WORKERS"),
        (Settings(orchestrator=OrchestratorSettings(stale_running_seconds=-5)), "STALE_RUNNING"),
        (Settings(orchestrator=OrchestratorSettings(timeout_grace_seconds=-1)), "TIMEOUT_GRACE"),
        (Settings(retry=RetrySettings(backoff_strategy="random")), "RETRY_BACKOFF"),
        (Settings(retry=RetrySettings(base_delay_ms=10, max_delay_ms=5)), "must not exceed"),
        (Settings(retry=RetrySettings(multiplier=0.5)), "RETRY_MULTIPLIER"),
        (Settings(scheduler=SchedulerSettings(tick_interval_seconds=0)), "TICK_INTERVAL"),
        (Settings(scheduler=SchedulerSettings(default_max_instances=0)), "MAX_INSTANCES"),
        (Settings(scheduler=SchedulerSettings(default_overlap_policy="drop")), "OVERLAP_POLICY"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
