from __future__ import annotations

import random

import allure
import pytest

from media_orchestrator.config import RetrySettings
from media_orchestrator.errors import ExecutorError, ExecutorTimeoutError, UnknownTaskTypeError
from media_orchestrator.orchestrator.models import BackoffStrategy, RetryPolicy, TaskCreate
from media_orchestrator.orchestrator.repository import TaskStore
from media_orchestrator.orchestrator.retry import (
    DEFAULT_TASK_TYPE_POLICIES,
    RetryManager,
    error_type_name,
)

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Retry Policies"),
]


class _TickingClock:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def test_exponential_backoff_doubles_until_cap(store: TaskStore) -> None:
    manager = RetryManager(store)
    policy = RetryPolicy(
        task_type="media",
        backoff_strategy=BackoffStrategy.EXPONENTIAL,
        base_delay_ms=1_000,
        max_delay_ms=30_000,
        multiplier=2.0,
    )

    delays = [manager.next_delay(attempt, policy) for attempt in range(1, 7)]

    assert delays == [1_000, 2_000, 4_000, 8_000, 16_000, 30_000]


def test_fixed_and_linear_backoff(store: TaskStore) -> None:
    manager = RetryManager(store)
    fixed = RetryPolicy(task_type="a", backoff_strategy=BackoffStrategy.FIXED, base_delay_ms=750)
    linear = RetryPolicy(
        task_type="b",
        backoff_strategy=BackoffStrategy.LINEAR,
        base_delay_ms=500,
        max_delay_ms=1_200,
    )

    assert [manager.next_delay(n, fixed) for n in (1, 2, 5)] == [750, 750, 750]
    assert [manager.next_delay(n, linear) for n in (1, 2, 3)] == [500, 1_000, 1_200]


def test_huge_attempt_numbers_stay_capped(store: TaskStore) -> None:
    manager = RetryManager(store)
    policy = RetryPolicy(task_type="a", base_delay_ms=1_000, max_delay_ms=60_000, multiplier=10.0)

    assert manager.next_delay(10_000, policy) == 60_000


def test_jitter_stays_within_ten_percent_and_cap(store: TaskStore) -> None:
    manager = RetryManager(store, rng=random.Random(7))  # noqa: S311
    policy = RetryPolicy(
        task_type="a",
        base_delay_ms=10_000,
        max_delay_ms=10_500,
        multiplier=1.0,
        jitter=True,
    )

    delays = {manager.next_delay(1, policy) for _ in range(200)}

    assert min(delays) >= 9_000
    assert max(delays) <= 10_500
    assert len(delays) > 1


def test_should_retry_until_max_retries_then_exhausts(store: TaskStore) -> None:
    manager = RetryManager(store)
    task = store.create_task(TaskCreate(task_type="media"))
    policy = RetryPolicy(task_type="media", max_retries=3, base_delay_ms=100, max_delay_ms=1_000)
    error = RuntimeError("network glitch")

    decisions = [manager.should_retry(task, policy, error, attempt) for attempt in range(1, 5)]

    assert [decision.should_retry for decision in decisions] == [True, True, True, False]
    assert [decision.delay_ms for decision in decisions[:3]] == [100, 200, 400]
    assert decisions[-1].reason == "retries_exhausted"


def test_non_retryable_errors_and_disabled_policies_fail_fast(store: TaskStore) -> None:
    manager = RetryManager(store)
    task = store.create_task(TaskCreate(task_type="media"))
    policy = RetryPolicy(task_type="media", non_retryable_errors=("invalid",))

    rejected = manager.should_retry(
        task,
        policy,
        ExecutorError("bad input", error_type="invalid_args"),
        1,
    )
    assert rejected.should_retry is False
    assert rejected.reason == "non_retryable"
    assert rejected.classification is not None
    assert rejected.classification.matched_pattern == "invalid"

    disabled = RetryPolicy(task_type="media", enabled=False)
    assert manager.should_retry(task, disabled, RuntimeError("x"), 1).reason == "retries_disabled"

    unknown = manager.should_retry(task, policy, UnknownTaskTypeError("media"), 1)
    assert unknown.should_retry is False
    assert unknown.classification is not None
    assert unknown.classification.matched_rule == "unknown_task_type"


def test_timeouts_are_retryable_under_default_policy(store: TaskStore) -> None:
    manager = RetryManager(store)
    task = store.create_task(TaskCreate(task_type="transcode"))

    decision = manager.should_retry(
        task,
        manager.get_policy("transcode"),
        ExecutorTimeoutError("transcode", 5),
        1,
    )

    assert decision.should_retry is True
    assert decision.classification is not None
    assert decision.classification.matched_pattern == "timeout"


def test_policy_lookup_falls_back_to_settings_and_caches(store: TaskStore) -> None:
    clock = _TickingClock()
    manager = RetryManager(
        store,
        RetrySettings(max_retries=7, policy_cache_ttl_seconds=30),
        clock=clock,
    )

    assert manager.get_policy("media").max_retries == 7

    store.upsert_retry_policy(RetryPolicy(task_type="media", max_retries=1))
    assert manager.get_policy("media").max_retries == 7

    clock.value = 31
    assert manager.get_policy("media").max_retries == 1


def test_set_policy_validates_and_invalidates_cache(store: TaskStore) -> None:
    manager = RetryManager(store)
    assert manager.get_policy("media").max_retries == 3

    manager.set_policy(RetryPolicy(task_type="media", max_retries=0))
    assert manager.get_policy("media").max_retries == 0

    with pytest.raises(ValueError, match="base_delay_ms"):
        manager.set_policy(RetryPolicy(task_type="media", base_delay_ms=10, max_delay_ms=5))

    assert manager.delete_policy("media") is True
    assert manager.get_policy("media").max_retries == 3


def test_seed_default_policies_keeps_existing_rows(store: TaskStore) -> None:
    manager = RetryManager(store)
    manager.set_policy(RetryPolicy(task_type="llm", max_retries=9))

    seeded = manager.seed_default_policies()

    assert "llm" not in seeded
    assert set(seeded) == {policy.task_type for policy in DEFAULT_TASK_TYPE_POLICIES} - {"llm"}
    assert manager.get_policy("llm").max_retries == 9
    assert manager.get_policy("youtube").multiplier == 2.5


def test_attempt_history_and_stats(store: TaskStore) -> None:
    manager = RetryManager(store)
    created = store.create_task(TaskCreate(task_type="media"))
    first = store.claim_task(task_id=created.task_id, worker_id="w1")
    assert first is not None
    manager.record_attempt(first, error=RuntimeError("boom"), execution_time_ms=40)
    manager.record_attempt(first, error=RuntimeError("boom again"), execution_time_ms=99)

    history = manager.get_retry_history(created.task_id)
    assert len(history) == 1
    assert history[0].attempt_number == 1
    assert history[0].error_type == "RuntimeError"
    assert history[0].delay_ms == 0

    stats = manager.get_retry_stats(created.task_id)
    assert stats.total_attempts == 1
    assert stats.failed_attempts == 1
    assert stats.total_execution_time_ms == 40


def test_error_type_name_prefers_executor_error_type() -> None:
    assert error_type_name(ExecutorError("x", error_type="rate_limit")) == "rate_limit"
    assert error_type_name(KeyError("x")) == "KeyError"
