"""Retry policies, backoff computation, and attempt history."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable

from media_orchestrator.config import RetrySettings
from media_orchestrator.errors import UnknownTaskTypeError
from media_orchestrator.orchestrator.failure_classifier import classify_failure
from media_orchestrator.orchestrator.models import (
    BackoffStrategy,
    ErrorClassification,
    RetryAttemptView,
    RetryDecision,
    RetryPolicy,
    RetryStats,
    TaskView,
)
from media_orchestrator.orchestrator.repository import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_RETRYABLE_ERRORS: tuple[str, ...] = ("timeout", "network", "temporary", "rate_limit")
DEFAULT_NON_RETRYABLE_ERRORS: tuple[str, ...] = ("syntax", "permission", "not_found", "invalid")

_JITTER_RATIO = 0.1

DEFAULT_TASK_TYPE_POLICIES: tuple[RetryPolicy, ...] = (
    RetryPolicy(
        task_type="shell",
        max_retries=3,
        backoff_strategy=BackoffStrategy.EXPONENTIAL,
        base_delay_ms=1_000,
        max_delay_ms=60_000,
        multiplier=2.0,
        retryable_errors=("timeout", "network", "temporary"),
        non_retryable_errors=("syntax", "permission", "not_found"),
    ),
    RetryPolicy(
        task_type="llm",
        max_retries=5,
        backoff_strategy=BackoffStrategy.EXPONENTIAL,
        base_delay_ms=2_000,
        max_delay_ms=120_000,
        multiplier=2.0,
        retryable_errors=("rate_limit", "timeout", "server_error"),
        non_retryable_errors=("invalid_prompt", "quota_exceeded"),
    ),
    RetryPolicy(
        task_type="tool",
        max_retries=2,
        backoff_strategy=BackoffStrategy.LINEAR,
        base_delay_ms=500,
        max_delay_ms=30_000,
        multiplier=1.5,
        retryable_errors=("timeout", "io_error"),
        non_retryable_errors=("invalid_args", "permission_denied"),
    ),
    RetryPolicy(
        task_type="youtube",
        max_retries=4,
        backoff_strategy=BackoffStrategy.EXPONENTIAL,
        base_delay_ms=5_000,
        max_delay_ms=300_000,
        multiplier=2.5,
        retryable_errors=("network", "rate_limit", "server_error"),
        non_retryable_errors=("invalid_url", "video_unavailable"),
    ),
    RetryPolicy(
        task_type="batch",
        max_retries=1,
        backoff_strategy=BackoffStrategy.FIXED,
        base_delay_ms=10_000,
        max_delay_ms=10_000,
        multiplier=1.0,
        retryable_errors=("partial_failure",),
        non_retryable_errors=("invalid_config", "all_subtasks_failed"),
    ),
)


class RetryManager:
    """Decides whether failed attempts are retried and how long to wait.

    Policies are looked up per task type and cached for
    ``policy_cache_ttl_seconds``; edits through this manager invalidate the cache.
    """

    def __init__(
        self,
        store: TaskStore,
        settings: RetrySettings | None = None,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.settings = settings or RetrySettings()
        self._rng = rng or random.Random()
        self._clock = clock
        self._cache: dict[str, tuple[float, RetryPolicy]] = {}
        self._lock = threading.Lock()

    def default_policy(self, task_type: str) -> RetryPolicy:
        settings = self.settings
        return RetryPolicy(
            task_type=task_type,
            max_retries=settings.max_retries,
            backoff_strategy=BackoffStrategy(settings.backoff_strategy),
            base_delay_ms=settings.base_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            multiplier=settings.multiplier,
            retryable_errors=DEFAULT_RETRYABLE_ERRORS,
            non_retryable_errors=DEFAULT_NON_RETRYABLE_ERRORS,
            default_retryable=settings.default_retryable,
            jitter=settings.jitter,
        )

    def get_policy(self, task_type: str) -> RetryPolicy:
        """Stored policy for ``task_type`` or the configured default."""

        now = self._clock()
        with self._lock:
            cached = self._cache.get(task_type)
            if cached is not None and cached[0] > now:
                return cached[1]
        policy = self.store.get_retry_policy(task_type) or self.default_policy(task_type)
        with self._lock:
            self._cache[task_type] = (now + self.settings.policy_cache_ttl_seconds, policy)
        return policy

    def invalidate_cache(self, task_type: str | None = None) -> None:
        with self._lock:
            if task_type is None:
                self._cache.clear()
            else:
                self._cache.pop(task_type, None)

    def set_policy(self, policy: RetryPolicy) -> RetryPolicy:
        policy.validate()
        stored = self.store.upsert_retry_policy(policy)
        self.invalidate_cache(policy.task_type)
        logger.info("Retry policy saved for task type %s", policy.task_type)
        return stored

    def list_policies(self) -> list[RetryPolicy]:
        return self.store.list_retry_policies()

    def delete_policy(self, task_type: str) -> bool:
        deleted = self.store.delete_retry_policy(task_type)
        self.invalidate_cache(task_type)
        return deleted

    def seed_default_policies(self, *, overwrite: bool = False) -> list[str]:
        """Store the built-in per-type policies; existing rows are kept unless ``overwrite``."""

        seeded: list[str] = []
        for policy in DEFAULT_TASK_TYPE_POLICIES:
            if not overwrite and self.store.get_retry_policy(policy.task_type) is not None:
                continue
            self.set_policy(policy)
            seeded.append(policy.task_type)
        return seeded

    def classify(self, error: BaseException, policy: RetryPolicy) -> ErrorClassification:
        if isinstance(error, UnknownTaskTypeError):
            return ErrorClassification(retryable=False, matched_rule="unknown_task_type")
        return classify_failure(
            error_type=error_type_name(error),
            error_message=str(error),
            retryable_patterns=policy.retryable_errors,
            non_retryable_patterns=policy.non_retryable_errors,
            default_retryable=policy.default_retryable,
        )

    def next_delay(self, attempt_number: int, policy: RetryPolicy) -> int:
        """Backoff in milliseconds before the attempt following ``attempt_number``."""

        n = max(1, attempt_number)
        if policy.backoff_strategy == BackoffStrategy.FIXED:
            raw = float(policy.base_delay_ms)
        elif policy.backoff_strategy == BackoffStrategy.LINEAR:
            raw = float(policy.base_delay_ms * n)
        else:
            try:
                raw = policy.base_delay_ms * policy.multiplier ** (n - 1)
            except OverflowError:
                raw = float(policy.max_delay_ms)
        delay = min(raw, float(policy.max_delay_ms))
        if policy.jitter and delay > 0:
            delay *= 1.0 + self._rng.uniform(-_JITTER_RATIO, _JITTER_RATIO)
            delay = min(delay, float(policy.max_delay_ms))
        return max(0, int(round(delay)))

    def should_retry(
        self,
        task: TaskView,
        policy: RetryPolicy,
        error: BaseException,
        attempt_number: int,
    ) -> RetryDecision:
        if not policy.enabled:
            return RetryDecision(should_retry=False, delay_ms=0, reason="retries_disabled")
        classification = self.classify(error, policy)
        if not classification.retryable:
            logger.info(
                "Task %s (%s) failed with non-retryable error (%s, pattern=%s)",
                task.task_id,
                task.task_type,
                classification.matched_rule,
                classification.matched_pattern,
            )
            return RetryDecision(
                should_retry=False,
                delay_ms=0,
                reason="non_retryable",
                classification=classification,
            )
        if attempt_number > policy.max_retries:
            return RetryDecision(
                should_retry=False,
                delay_ms=0,
                reason="retries_exhausted",
                classification=classification,
            )
        return RetryDecision(
            should_retry=True,
            delay_ms=self.next_delay(attempt_number, policy),
            reason="retry_scheduled",
            classification=classification,
        )

    def record_attempt(
        self,
        task: TaskView,
        *,
        error: BaseException | None,
        execution_time_ms: int | None,
    ) -> RetryAttemptView:
        """Append the history row for the task's current attempt."""

        return self.store.record_attempt(
            task_id=task.task_id,
            attempt_number=task.attempt,
            error_type=error_type_name(error) if error is not None else None,
            error_message=str(error) if error is not None else None,
            delay_ms=task.retry_delay_ms if task.attempt > 1 else 0,
            success=error is None,
            execution_time_ms=execution_time_ms,
        )

    def get_retry_history(self, task_id: str) -> list[RetryAttemptView]:
        return self.store.list_attempts(task_id=task_id)

    def get_retry_stats(self, task_id: str) -> RetryStats:
        attempts = self.get_retry_history(task_id)
        successes = sum(1 for attempt in attempts if attempt.success)
        delays = [attempt.delay_ms for attempt in attempts]
        return RetryStats(
            task_id=task_id,
            total_attempts=len(attempts),
            successful_attempts=successes,
            failed_attempts=len(attempts) - successes,
            average_delay_ms=(sum(delays) / len(delays)) if delays else 0.0,
            total_execution_time_ms=sum(attempt.execution_time_ms or 0 for attempt in attempts),
        )


def error_type_name(error: BaseException) -> str:
    """Stable error type tag: executor-provided ``error_type`` or the class name."""

    error_type = getattr(error, "error_type", None)
    if isinstance(error_type, str) and error_type:
        return error_type
    return error.__class__.__name__
