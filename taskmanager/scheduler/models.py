"""Task identity, schedule types, and the persisted trigger binding."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from taskmanager.errors import InvalidScheduleError

# Reserved parameter key holding the serialized RetryContext.
RETRY_KEY = "_retry"


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime as a fixed-width UTC ISO 8601 string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse an ISO 8601 string, assuming UTC when no offset is present."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# -- Identity ------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class TaskKey:
    """Unique identity of one schedulable unit of work."""

    group_id: str
    task_id: str

    def __str__(self) -> str:
        return f"{self.group_id}.{self.task_id}"


# -- Schedule types ------------------------------------------------------------


@dataclass(frozen=True)
class Immediate:
    """Fire once, as soon as possible."""

    def describe(self) -> str:
        return "Immediate"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "immediate"}


@dataclass(frozen=True)
class AtDateTime:
    """Fire once at ``instant``.  A past instant fires immediately."""

    instant: datetime

    def describe(self) -> str:
        return f"At {to_iso(self.instant)}"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "at", "instant": to_iso(self.instant)}


@dataclass(frozen=True)
class Interval:
    """Fire repeatedly every ``days/hours/minutes/seconds``."""

    days: int = 0
    hours: int = 0
    minutes: int = 0
    seconds: int = 0

    def __post_init__(self) -> None:
        units = (self.days, self.hours, self.minutes, self.seconds)
        if any(unit < 0 for unit in units):
            msg = f"Interval units must be non-negative, got {units}"
            raise InvalidScheduleError(msg)
        if not any(units):
            msg = "Interval must have at least one unit greater than zero"
            raise InvalidScheduleError(msg)

    @property
    def duration(self) -> timedelta:
        return timedelta(
            days=self.days, hours=self.hours, minutes=self.minutes, seconds=self.seconds
        )

    def describe(self) -> str:
        parts = [
            f"{value}{unit}"
            for value, unit in (
                (self.days, "d"),
                (self.hours, "h"),
                (self.minutes, "m"),
                (self.seconds, "s"),
            )
            if value
        ]
        return "Every " + " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "interval",
            "days": self.days,
            "hours": self.hours,
            "minutes": self.minutes,
            "seconds": self.seconds,
        }


@dataclass(frozen=True)
class Cron:
    """Fire on a cron expression (5 fields, or 6 with leading seconds)."""

    expression: str

    def __post_init__(self) -> None:
        from taskmanager.scheduler.triggers import validate_cron

        validate_cron(self.expression)

    def describe(self) -> str:
        return f"Cron '{self.expression}'"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "cron", "expression": self.expression}


ScheduleType = Immediate | AtDateTime | Interval | Cron


def schedule_from_dict(data: dict[str, Any]) -> ScheduleType:
    """Rebuild a ScheduleType from its persisted dict form."""
    kind = data.get("type")
    if kind == "immediate":
        return Immediate()
    if kind == "at":
        return AtDateTime(instant=from_iso(data["instant"]))
    if kind == "interval":
        return Interval(
            days=data.get("days", 0),
            hours=data.get("hours", 0),
            minutes=data.get("minutes", 0),
            seconds=data.get("seconds", 0),
        )
    if kind == "cron":
        return Cron(expression=data["expression"])
    msg = f"Unknown schedule type: {kind!r}"
    raise InvalidScheduleError(msg)


def is_recurring(schedule: ScheduleType) -> bool:
    return isinstance(schedule, Interval | Cron)


# -- State ---------------------------------------------------------------------


class TaskState(str, Enum):
    """Lifecycle state of a trigger binding.  Paused is a separate flag."""

    NORMAL = "NORMAL"
    FIRING = "FIRING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETE, TaskState.ERROR)


class TaskOutcome(str, Enum):
    """Outcome of one execution attempt."""

    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


# -- Binding -------------------------------------------------------------------


@dataclass
class TaskBinding:
    """A task key bound to its consumer, schedule, and parameters.

    Attributes:
        group_id: Caller-defined group the task belongs to.
        task_id: Task identifier, unique within the group.
        consumer_type: Registry tag of the consumer that executes the task.
        schedule: When the task fires.
        start_at: Resolved first-fire instant; anchors recurring cadences.
        parameters: Consumer parameters, plus the reserved retry context.
        state: Current lifecycle state.
        paused: Whether firing is suspended.
        next_fire_at: Fire time the next execution is expected at, or None.
        runs: Number of times the task has fired.
        last_outcome: Outcome of the most recent execution.
        last_log: Error message of the most recent execution, if it failed.
        created_at: When the binding was first stored.
        revision: Identity of this stored version; a replacement gets a new one.
    """

    group_id: str
    task_id: str
    consumer_type: str
    schedule: ScheduleType
    start_at: datetime
    parameters: dict[str, Any] = field(default_factory=dict)
    state: TaskState = TaskState.NORMAL
    paused: bool = False
    next_fire_at: datetime | None = None
    runs: int = 0
    last_outcome: TaskOutcome | None = None
    last_log: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    revision: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def key(self) -> TaskKey:
        return TaskKey(self.group_id, self.task_id)

    @property
    def is_recurring(self) -> bool:
        return is_recurring(self.schedule)

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``task_bindings`` column order."""
        return (
            self.group_id,
            self.task_id,
            self.consumer_type,
            json.dumps(self.schedule.to_dict()),
            to_iso(self.start_at),
            json.dumps(self.parameters, default=str),
            self.state.value,
            int(self.paused),
            to_iso(self.next_fire_at) if self.next_fire_at else None,
            self.runs,
            self.last_outcome.value if self.last_outcome else None,
            self.last_log,
            to_iso(self.created_at),
            self.revision,
        )

    @classmethod
    def from_row(cls, row: tuple) -> TaskBinding:
        """Deserialize from a SQLite row tuple."""
        return cls(
            group_id=row[0],
            task_id=row[1],
            consumer_type=row[2],
            schedule=schedule_from_dict(json.loads(row[3])),
            start_at=from_iso(row[4]),
            parameters=json.loads(row[5]),
            state=TaskState(row[6]),
            paused=bool(row[7]),
            next_fire_at=from_iso(row[8]) if row[8] else None,
            runs=row[9],
            last_outcome=TaskOutcome(row[10]) if row[10] else None,
            last_log=row[11],
            created_at=from_iso(row[12]),
            revision=row[13],
        )


# -- Read models ---------------------------------------------------------------


@dataclass(frozen=True)
class TaskSnapshot:
    """Point-in-time view of a scheduled task, for listings and dashboards."""

    group_id: str
    task_id: str
    consumer: str
    next_fire_time: datetime | None
    state: str
    outcome: str | None
    log: str | None
    schedule: str
    runs: int
    data_map: dict[str, Any]

    @classmethod
    def from_binding(cls, binding: TaskBinding) -> TaskSnapshot:
        return cls(
            group_id=binding.group_id,
            task_id=binding.task_id,
            consumer=binding.consumer_type,
            next_fire_time=None if binding.paused else binding.next_fire_at,
            state="PAUSED" if binding.paused else binding.state.value,
            outcome=binding.last_outcome.value if binding.last_outcome else None,
            log=binding.last_log,
            schedule=binding.schedule.describe(),
            runs=binding.runs,
            data_map={k: v for k, v in binding.parameters.items() if k != RETRY_KEY},
        )


@dataclass(frozen=True)
class TaskStateChange:
    """Result of a pause or resume request."""

    previous_state: str
    current_state: str
    affected_count: int


@dataclass
class SchedulerHealth:
    """Health snapshot for external reporting."""

    is_started: bool
    is_paused: bool
    total_tasks: int
    errors: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.is_started:
            self.errors.append("SchedulerHealth. Scheduler is not started.")
