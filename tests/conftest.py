"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from media_orchestrator.config import (
    OrchestratorSettings,
    RetrySettings,
    SchedulerSettings,
    Settings,
    StorageSettings,
)
from media_orchestrator.orchestrator.engine import Orchestrator
from media_orchestrator.orchestrator.repository import TaskStore


class FrozenClock:
    """Settable wall clock for stores and schedulers."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 30, tzinfo=UTC))


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[TaskStore]:
    repository = TaskStore(tmp_path / "orchestrator.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def clocked_store(tmp_path: Path, clock: FrozenClock) -> Iterator[TaskStore]:
    repository = TaskStore(tmp_path / "orchestrator.db", now_fn=clock)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Fast settings: zero backoff, short polls and heartbeats."""

    return Settings(
        db_path=tmp_path / "engine.db",
        storage=StorageSettings(busy_timeout_ms=5_000),
        orchestrator=OrchestratorSettings(
            max_workers=2,
            poll_interval_seconds=0.01,
            heartbeat_interval_seconds=0.02,
        ),
        retry=RetrySettings(base_delay_ms=0, max_delay_ms=0, multiplier=1.0),
        scheduler=SchedulerSettings(tick_interval_seconds=0.01),
    )


@pytest.fixture()
def orchestrator(settings: Settings) -> Iterator[Orchestrator]:
    engine = Orchestrator.from_settings(settings)
    try:
        yield engine
    finally:
        engine.close()
