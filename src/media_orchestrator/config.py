"""Runtime configuration for the orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_BACKOFF_STRATEGIES = frozenset({"fixed", "linear", "exponential"})
_OVERLAP_POLICIES = frozenset({"skip", "queue", "allow"})


@dataclass(slots=True)
class StorageSettings:
    """SQLite connection policy."""

    busy_timeout_ms: int = 5_000
    history_retention_days: int = 30


@dataclass(slots=True)
class OrchestratorSettings:
    """Worker pool and dependency-propagation settings."""

    max_workers: int = 4
    poll_interval_seconds: float = 1.0
    stale_running_seconds: int = 0
    skipped_dependency_satisfies: bool = False
    cancel_forces_skip: bool = False
    heartbeat_interval_seconds: float = 15.0
    timeout_grace_seconds: float = 5.0


@dataclass(slots=True)
class RetrySettings:
    """Default retry policy used for task types without a stored policy."""

    max_retries: int = 3
    backoff_strategy: str = "exponential"
    base_delay_ms: int = 1_000
    max_delay_ms: int = 300_000
    multiplier: float = 2.0
    default_retryable: bool = True
    jitter: bool = False
    policy_cache_ttl_seconds: float = 60.0


@dataclass(slots=True)
class SchedulerSettings:
    """Recurrence scheduler settings."""

    tick_interval_seconds: float = 60.0
    default_timezone: str = "UTC"
    enabled_by_default: bool = True
    default_max_instances: int = 1
    default_overlap_policy: str = "skip"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".media_orchestrator.db")
    storage: StorageSettings = field(default_factory=StorageSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("MEDIA_ORCH_DB_PATH", ".media_orchestrator.db")),
            storage=StorageSettings(
                busy_timeout_ms=int(os.getenv("MEDIA_ORCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                history_retention_days=int(
                    os.getenv("MEDIA_ORCH_HISTORY_RETENTION_DAYS", "30"),
                ),
            ),
            orchestrator=OrchestratorSettings(
                max_workers=int(os.getenv("MEDIA_ORCH_MAX_WORKERS", "4")),
                poll_interval_seconds=float(os.getenv("MEDIA_ORCH_POLL_INTERVAL_SECONDS", "1.0")),
                stale_running_seconds=int(os.getenv("MEDIA_ORCH_STALE_RUNNING_SECONDS", "0")),
                skipped_dependency_satisfies=_env_bool(
                    "MEDIA_ORCH_SKIPPED_DEPENDENCY_SATISFIES",
                    default=False,
                ),
                cancel_forces_skip=_env_bool("MEDIA_ORCH_CANCEL_FORCES_SKIP", default=False),
                heartbeat_interval_seconds=float(
                    os.getenv("MEDIA_ORCH_HEARTBEAT_INTERVAL_SECONDS", "15.0"),
                ),
                timeout_grace_seconds=float(
                    os.getenv("MEDIA_ORCH_TIMEOUT_GRACE_SECONDS", "5.0"),
                ),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("MEDIA_ORCH_RETRY_MAX_RETRIES", "3")),
                backoff_strategy=os.getenv("MEDIA_ORCH_RETRY_BACKOFF", "exponential").strip().lower(),
                base_delay_ms=int(os.getenv("MEDIA_ORCH_RETRY_BASE_DELAY_MS", "1000")),
                max_delay_ms=int(os.getenv("MEDIA_ORCH_RETRY_MAX_DELAY_MS", "300000")),
                multiplier=float(os.getenv("MEDIA_ORCH_RETRY_MULTIPLIER", "2.0")),
                default_retryable=_env_bool("MEDIA_ORCH_RETRY_DEFAULT_RETRYABLE", default=True),
                jitter=_env_bool("MEDIA_ORCH_RETRY_JITTER", default=False),
                policy_cache_ttl_seconds=float(
                    os.getenv("MEDIA_ORCH_RETRY_POLICY_CACHE_TTL_SECONDS", "60"),
                ),
            ),
            scheduler=SchedulerSettings(
                tick_interval_seconds=float(
                    os.getenv("MEDIA_ORCH_TICK_INTERVAL_SECONDS", "60"),
                ),
                default_timezone=os.getenv("MEDIA_ORCH_DEFAULT_TIMEZONE", "UTC"),
                enabled_by_default=_env_bool("MEDIA_ORCH_SCHEDULE_ENABLED_BY_DEFAULT", default=True),
                default_max_instances=int(os.getenv("MEDIA_ORCH_SCHEDULE_MAX_INSTANCES", "1")),
                default_overlap_policy=os.getenv("MEDIA_ORCH_SCHEDULE_OVERLAP_POLICY", "skip")
                .strip()
                .lower(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.storage.busy_timeout_ms <= 0:
            raise ValueError("MEDIA_ORCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.storage.history_retention_days < 0:
            raise ValueError("MEDIA_ORCH_HISTORY_RETENTION_DAYS must be >= 0.")
        if self.orchestrator.max_workers <= 0:
            raise ValueError("MEDIA_ORCH_MAX_WORKERS must be a positive integer.")
        if self.orchestrator.poll_interval_seconds < 0:
            raise ValueError("MEDIA_ORCH_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.orchestrator.stale_running_seconds < 0:
            raise ValueError("MEDIA_ORCH_STALE_RUNNING_SECONDS must be >= 0.")
        if self.orchestrator.timeout_grace_seconds < 0:
            raise ValueError("MEDIA_ORCH_TIMEOUT_GRACE_SECONDS must be >= 0.")

        retry = self.retry
        if retry.backoff_strategy not in _BACKOFF_STRATEGIES:
            raise ValueError(
                "MEDIA_ORCH_RETRY_BACKOFF must be one of "
                f"{sorted(_BACKOFF_STRATEGIES)}, got {retry.backoff_strategy!r}.",
            )
        if retry.max_retries < 0:
            raise ValueError("MEDIA_ORCH_RETRY_MAX_RETRIES must be >= 0.")
        if retry.base_delay_ms < 0:
            raise ValueError("MEDIA_ORCH_RETRY_BASE_DELAY_MS must be >= 0.")
        if retry.base_delay_ms > retry.max_delay_ms:
            raise ValueError(
                "MEDIA_ORCH_RETRY_BASE_DELAY_MS must not exceed MEDIA_ORCH_RETRY_MAX_DELAY_MS.",
            )
        if retry.multiplier < 1.0:
            raise ValueError("MEDIA_ORCH_RETRY_MULTIPLIER must be >= 1.0.")

        scheduler = self.scheduler
        if scheduler.tick_interval_seconds <= 0:
            raise ValueError("MEDIA_ORCH_TICK_INTERVAL_SECONDS must be > 0.")
        if scheduler.default_max_instances <= 0:
            raise ValueError("MEDIA_ORCH_SCHEDULE_MAX_INSTANCES must be a positive integer.")
        if scheduler.default_overlap_policy not in _OVERLAP_POLICIES:
            raise ValueError(
                "MEDIA_ORCH_SCHEDULE_OVERLAP_POLICY must be one of "
                f"{sorted(_OVERLAP_POLICIES)}, got {scheduler.default_overlap_policy!r}.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
