"""Recurrence scheduler: materializes due cron schedules into pending tasks."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from media_orchestrator.config import SchedulerSettings
from media_orchestrator.errors import InvalidCronExpressionError
from media_orchestrator.orchestrator.cron import CronExpression
from media_orchestrator.orchestrator.models import (
    OverlapPolicy,
    ScheduleCreate,
    ScheduleFire,
    ScheduleMetrics,
    ScheduleView,
)
from media_orchestrator.orchestrator.repository import TaskStore

logger = logging.getLogger(__name__)


def overlap_admission(policy: OverlapPolicy, max_instances: int) -> Callable[[int], bool]:
    """Build the predicate deciding, from the live instance count, whether to materialize.

    ``queue`` always materializes and relies on start throttling; ``skip`` and
    ``allow`` refuse once ``max_instances`` instances are live.
    """

    if policy == OverlapPolicy.QUEUE:
        return lambda _live: True
    return lambda live: live < max_instances


class RecurrenceScheduler:
    """Cron schedule management and the periodic ``tick``."""

    def __init__(
        self,
        store: TaskStore,
        settings: SchedulerSettings | None = None,
        *,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or SchedulerSettings()
        self.now_fn = now_fn or store.now_fn

    def create_schedule(self, payload: ScheduleCreate) -> ScheduleView:
        """Validate the expression and persist a template task with its schedule."""

        timezone = payload.timezone or self.settings.default_timezone
        cron = CronExpression.parse(payload.cron_expression, timezone)
        max_instances = (
            payload.max_instances
            if payload.max_instances is not None
            else self.settings.default_max_instances
        )
        if max_instances <= 0:
            raise ValueError(f"max_instances must be a positive integer, got {max_instances}.")
        overlap_policy = payload.overlap_policy or OverlapPolicy(
            self.settings.default_overlap_policy,
        )
        enabled = payload.enabled if payload.enabled is not None else self.settings.enabled_by_default
        schedule = self.store.create_schedule(
            task_type=payload.task_type,
            args=payload.args,
            description=payload.description,
            cron_expression=cron.expression,
            timezone=cron.timezone,
            enabled=enabled,
            max_instances=max_instances,
            overlap_policy=overlap_policy,
            next_run_at=cron.next_after(self.now_fn()),
        )
        logger.info(
            "Schedule %s created: %s (%s) for task type %s, next run %s",
            schedule.schedule_id,
            schedule.cron_expression,
            schedule.timezone,
            schedule.task_type,
            schedule.next_run_at.isoformat(),
        )
        return schedule

    def update_schedule(
        self,
        schedule_id: int,
        *,
        cron_expression: str | None = None,
        timezone: str | None = None,
        max_instances: int | None = None,
        overlap_policy: OverlapPolicy | None = None,
    ) -> ScheduleView:
        """Edit a schedule; ``next_run_at`` is recomputed from now."""

        current = self.store.get_schedule(schedule_id)
        cron = CronExpression.parse(
            cron_expression or current.cron_expression,
            timezone or current.timezone,
        )
        values: dict[str, object] = {
            "cron_expression": cron.expression,
            "timezone": cron.timezone,
            "next_run_at": cron.next_after(self.now_fn()),
        }
        if max_instances is not None:
            if max_instances <= 0:
                raise ValueError(f"max_instances must be a positive integer, got {max_instances}.")
            values["max_instances"] = max_instances
        if overlap_policy is not None:
            values["overlap_policy"] = overlap_policy
        return self.store.update_schedule(schedule_id, **values)

    def set_enabled(self, schedule_id: int, enabled: bool) -> ScheduleView:
        """Enable or disable; enabling starts from the next fire after now."""

        current = self.store.get_schedule(schedule_id)
        values: dict[str, object] = {"enabled": enabled}
        if enabled and not current.enabled:
            cron = CronExpression(current.cron_expression, current.timezone)
            values["next_run_at"] = cron.next_after(self.now_fn())
        return self.store.update_schedule(schedule_id, **values)

    def delete_schedule(self, schedule_id: int) -> bool:
        deleted = self.store.delete_schedule(schedule_id)
        if deleted:
            logger.info("Schedule %s deleted", schedule_id)
        return deleted

    def get_schedule(self, schedule_id: int) -> ScheduleView:
        return self.store.get_schedule(schedule_id)

    def list_schedules(self, *, enabled_only: bool = False) -> list[ScheduleView]:
        return self.store.list_schedules(enabled_only=enabled_only)

    def preview_next_runs(
        self,
        expression: str,
        timezone: str | None = None,
        count: int = 5,
        *,
        after: datetime | None = None,
    ) -> list[datetime]:
        cron = CronExpression.parse(expression, timezone or self.settings.default_timezone)
        return cron.preview(after or self.now_fn(), count)

    def get_metrics(self) -> ScheduleMetrics:
        schedules = self.store.list_schedules()
        enabled = [schedule for schedule in schedules if schedule.enabled]
        return ScheduleMetrics(
            total_schedules=len(schedules),
            enabled_schedules=len(enabled),
            total_runs=sum(schedule.run_count for schedule in schedules),
            total_skipped=sum(schedule.skipped_count for schedule in schedules),
            live_instances=sum(
                self.store.count_live_instances(template_task_id=schedule.template_task_id)
                for schedule in schedules
            ),
            next_run_at=min((schedule.next_run_at for schedule in enabled), default=None),
        )

    def tick(self, now: datetime | None = None) -> list[ScheduleFire]:
        """Fire every enabled schedule whose ``next_run_at`` has passed.

        Missed fire times collapse into one fire; ``next_run_at`` always moves
        to the first fire strictly after ``now``.
        """

        now = now or self.now_fn()
        fires: list[ScheduleFire] = []
        for schedule in self.store.list_schedules(due_before=now):
            try:
                cron = CronExpression.parse(schedule.cron_expression, schedule.timezone)
            except InvalidCronExpressionError:
                logger.exception(
                    "Schedule %s can no longer be evaluated; disabling it",
                    schedule.schedule_id,
                )
                self.store.update_schedule(schedule.schedule_id, enabled=False)
                continue

            fire = self.store.fire_schedule(
                schedule_id=schedule.schedule_id,
                expected_next_run_at=schedule.next_run_at,
                next_run_at=cron.next_after(now),
                admit=overlap_admission(schedule.overlap_policy, schedule.max_instances),
            )
            if fire is None:
                logger.debug("Schedule %s was advanced by another tick", schedule.schedule_id)
                continue
            if fire.skipped:
                log = logger.warning if schedule.overlap_policy == OverlapPolicy.ALLOW else logger.info
                log(
                    "Schedule %s fire skipped: %d live instance(s), max_instances=%d, policy=%s",
                    schedule.schedule_id,
                    fire.live_instances,
                    schedule.max_instances,
                    schedule.overlap_policy.value,
                )
            else:
                logger.info(
                    "Schedule %s materialized task %s",
                    schedule.schedule_id,
                    fire.materialized_task_id,
                )
            fires.append(fire)
        return fires
