"""Five-field cron expressions evaluated in a schedule's timezone."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter  # type: ignore[import-untyped]

from media_orchestrator.errors import InvalidCronExpressionError

CRON_FIELD_COUNT = 5


def normalize_expression(expression: str) -> str:
    """Collapse whitespace and reject anything but a valid 5-field expression."""

    fields = expression.split()
    if len(fields) != CRON_FIELD_COUNT:
        raise InvalidCronExpressionError(
            f"Cron expression must have {CRON_FIELD_COUNT} fields "
            f"(minute hour day-of-month month day-of-week), got {len(fields)}: {expression!r}",
        )
    normalized = " ".join(fields)
    try:
        valid = croniter.is_valid(normalized)
    except (ValueError, KeyError, TypeError):
        valid = False
    if not valid:
        raise InvalidCronExpressionError(f"Invalid cron expression: {expression!r}")
    return normalized


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as error:
        raise InvalidCronExpressionError(f"Unknown timezone: {name!r}") from error


@dataclass(frozen=True, slots=True)
class CronExpression:
    """Validated cron expression bound to an IANA timezone.

    Day-of-month and day-of-week use OR semantics when both are restricted.
    All returned instants are timezone-aware UTC.
    """

    expression: str
    timezone: str = "UTC"

    @classmethod
    def parse(cls, expression: str, timezone: str = "UTC") -> CronExpression:
        resolve_timezone(timezone)
        return cls(expression=normalize_expression(expression), timezone=timezone)

    @property
    def zone(self) -> ZoneInfo:
        return resolve_timezone(self.timezone)

    def next_after(self, moment: datetime) -> datetime:
        """First fire time strictly after ``moment``."""

        return next(self.iter_after(moment))

    def iter_after(self, moment: datetime) -> Iterator[datetime]:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        iterator = croniter(self.expression, moment.astimezone(self.zone))
        while True:
            fire = iterator.get_next(datetime)
            yield fire.astimezone(UTC)

    def preview(self, moment: datetime, count: int) -> list[datetime]:
        if count <= 0:
            return []
        fires: list[datetime] = []
        for fire in self.iter_after(moment):
            fires.append(fire)
            if len(fires) >= count:
                break
        return fires

    def matches(self, moment: datetime) -> bool:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return bool(croniter.match(self.expression, moment.astimezone(self.zone)))
