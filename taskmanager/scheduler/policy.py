"""Retry and misfire policies applied after a fire fails or runs late."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from taskmanager.scheduler.models import RETRY_KEY

if TYPE_CHECKING:
    from datetime import datetime

    from taskmanager.config import Settings
    from taskmanager.scheduler.models import TaskBinding

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryContext:
    """Retry bookkeeping carried in a task's own parameter bag.

    Backoff values are stored as seconds so the context stays JSON-friendly.
    """

    attempt: int = 0
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 300.0

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def delay(self) -> timedelta:
        """Backoff before the next attempt: ``min(base * 2**attempt, cap)``."""
        return timedelta(seconds=min(self.backoff_base * 2**self.attempt, self.backoff_cap))

    def next(self) -> RetryContext:
        return replace(self, attempt=min(self.attempt + 1, self.max_attempts))

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "backoff_base": self.backoff_base,
            "backoff_cap": self.backoff_cap,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryContext:
        return cls(
            attempt=int(data.get("attempt", 0)),
            max_attempts=int(data.get("max_attempts", 0)),
            backoff_base=float(data.get("backoff_base", 1.0)),
            backoff_cap=float(data.get("backoff_cap", 300.0)),
        )


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a binding after a failed fire.

    ``retry_at`` is set when a one-shot retry should be armed; ``gave_up`` is
    set when a one-shot task used its last attempt.  Recurring tasks get
    neither and stay on their cadence.
    """

    context: RetryContext
    retry_at: datetime | None = None
    gave_up: bool = False


class RetryPolicy:
    """Bounded exponential backoff for failed one-shot tasks.

    Args:
        max_attempts: Retries allowed after the initial attempt.
        backoff_base: Delay before the first retry.
        backoff_cap: Upper bound for any single delay.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_base: timedelta = timedelta(seconds=1),
        backoff_cap: timedelta = timedelta(minutes=5),
    ) -> None:
        if max_attempts < 0:
            msg = f"max_attempts must be >= 0, got {max_attempts}"
            raise ValueError(msg)
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            backoff_base=settings.retry_backoff_base,
            backoff_cap=settings.retry_backoff_cap,
        )

    def new_context(self, max_attempts: int | None = None) -> RetryContext:
        return RetryContext(
            attempt=0,
            max_attempts=self.max_attempts if max_attempts is None else max_attempts,
            backoff_base=self.backoff_base.total_seconds(),
            backoff_cap=self.backoff_cap.total_seconds(),
        )

    def context_of(self, binding: TaskBinding) -> RetryContext:
        """Read the binding's persisted retry context, or the default one."""
        data = binding.parameters.get(RETRY_KEY)
        if isinstance(data, dict):
            return RetryContext.from_dict(data)
        return self.new_context()

    def plan(self, binding: TaskBinding, now: datetime) -> RetryDecision:
        """Decide between a delayed one-shot retry and giving up."""
        context = self.context_of(binding)
        if binding.is_recurring:
            # Recurring triggers retry on their next regular occurrence.
            return RetryDecision(context=context)
        if context.exhausted:
            return RetryDecision(context=context, gave_up=True)
        retry_at = now + context.delay()
        logger.info(
            "Retry %d/%d for %s at %s",
            context.attempt + 1,
            context.max_attempts,
            binding.key,
            retry_at.isoformat(),
        )
        return RetryDecision(context=context.next(), retry_at=retry_at)


class MisfirePolicy:
    """Flags fires serviced later than their scheduled time by more than *threshold*.

    Lateness is measured when the engine is able to run the fire, that is
    after it obtained the task's key gate and a worker slot.
    """

    def __init__(self, threshold: timedelta = timedelta(seconds=60)) -> None:
        self.threshold = threshold

    def lateness(self, scheduled: datetime | None, now: datetime) -> timedelta:
        if scheduled is None:
            return timedelta(0)
        return max(now - scheduled, timedelta(0))

    def is_misfire(self, scheduled: datetime | None, now: datetime) -> bool:
        return self.lateness(scheduled, now) > self.threshold
