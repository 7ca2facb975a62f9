"""Schedule validation and resolution into APScheduler triggers."""

from __future__ import annotations

import zoneinfo
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from taskmanager.errors import InvalidScheduleError
from taskmanager.scheduler.models import AtDateTime, Cron, Immediate, Interval, utcnow

if TYPE_CHECKING:
    from apscheduler.triggers.base import BaseTrigger

    from taskmanager.scheduler.models import TaskBinding

_CRON_FIELDS_5 = ("minute", "hour", "day", "month", "day_of_week")
_CRON_FIELDS_6 = ("second", *_CRON_FIELDS_5)


def _cron_fields(expression: str) -> dict[str, str]:
    """Split a 5- or 6-field cron expression into CronTrigger keyword args."""
    parts = expression.split()
    if len(parts) == 5:
        names = _CRON_FIELDS_5
    elif len(parts) == 6:
        names = _CRON_FIELDS_6
    else:
        msg = f"Cron expression must have 5 or 6 fields, got {len(parts)}: '{expression}'"
        raise InvalidScheduleError(msg)
    # "?" (no specific value) is a wildcard.
    return {name: "*" if part == "?" else part for name, part in zip(names, parts, strict=True)}


def cron_trigger(
    expression: str,
    timezone: str = "UTC",
    start_date: datetime | None = None,
) -> CronTrigger:
    """Build a CronTrigger, raising InvalidScheduleError on a malformed expression."""
    fields = _cron_fields(expression)
    try:
        return CronTrigger(timezone=timezone, start_date=start_date, **fields)
    except (ValueError, TypeError) as exc:
        msg = f"Invalid cron expression '{expression}': {exc}"
        raise InvalidScheduleError(msg) from exc


def validate_cron(expression: str) -> None:
    """Fail fast on an expression the cron parser cannot evaluate."""
    if not expression or not expression.strip():
        msg = "Cron expression must not be empty"
        raise InvalidScheduleError(msg)
    cron_trigger(expression)


def resolve_start(
    start_at: Immediate | AtDateTime | datetime | None,
    *,
    timezone: str = "UTC",
    now: datetime | None = None,
) -> datetime:
    """Resolve a requested start into an absolute UTC instant.

    ``None`` and ``Immediate`` mean now.  A past instant also means now, so
    late-arriving requests still run.  Naive datetimes are read in *timezone*.
    """
    now = now or utcnow()
    if start_at is None or isinstance(start_at, Immediate):
        return now
    instant = start_at.instant if isinstance(start_at, AtDateTime) else start_at
    if not isinstance(instant, datetime):
        msg = f"Unsupported start time: {start_at!r}"
        raise InvalidScheduleError(msg)
    if instant.tzinfo is None:
        try:
            instant = instant.replace(tzinfo=zoneinfo.ZoneInfo(timezone))
        except zoneinfo.ZoneInfoNotFoundError as exc:
            msg = f"Unknown timezone: {timezone}"
            raise InvalidScheduleError(msg) from exc
    instant = instant.astimezone(UTC)
    return max(instant, now)


def build_trigger(binding: TaskBinding, timezone: str = "UTC") -> BaseTrigger:
    """Convert a binding's schedule into an APScheduler trigger."""
    schedule = binding.schedule
    if isinstance(schedule, Interval):
        return IntervalTrigger(
            days=schedule.days,
            hours=schedule.hours,
            minutes=schedule.minutes,
            seconds=schedule.seconds,
            start_date=binding.start_at,
            timezone=timezone,
        )
    if isinstance(schedule, Cron):
        return cron_trigger(schedule.expression, timezone, start_date=binding.start_at)
    # One-shot: start_at already holds the resolved (never past-dated) instant.
    return DateTrigger(run_date=binding.start_at, timezone=timezone)


def first_fire_time(binding: TaskBinding, timezone: str = "UTC") -> datetime | None:
    """Return the first instant the binding's trigger fires at, in UTC."""
    trigger = build_trigger(binding, timezone)
    fire_time = trigger.get_next_fire_time(None, binding.start_at)
    return fire_time.astimezone(UTC) if fire_time else None
