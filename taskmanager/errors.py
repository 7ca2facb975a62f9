"""Exception taxonomy for the task manager."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskmanager.scheduler.models import TaskKey


class TaskManagerError(Exception):
    """Base class for all task manager errors."""


class DuplicateTaskError(TaskManagerError):
    """A binding for the task key already exists and replace was not requested."""

    def __init__(self, key: TaskKey) -> None:
        self.key = key
        super().__init__(f"Task already scheduled: {key}")


class TaskNotFoundError(TaskManagerError):
    """An operation targeted a task key with no binding."""

    def __init__(self, key: TaskKey) -> None:
        self.key = key
        super().__init__(f"Task not found: {key}")


class InvalidScheduleError(TaskManagerError, ValueError):
    """Malformed cron expression, empty interval, or unusable start time."""


class UnknownConsumerError(TaskManagerError):
    """No consumer is registered under the requested type tag."""

    def __init__(self, consumer_type: str) -> None:
        self.consumer_type = consumer_type
        super().__init__(f"No consumer registered for type '{consumer_type}'")


class ConsumerBuildError(TaskManagerError):
    """The consumer could not build its payload from the task properties."""


class MaxRetriesExceededError(TaskManagerError):
    """A one-shot task failed on its final allowed attempt.

    Logged and audited by the engine, never raised to a caller.
    """

    def __init__(self, key: TaskKey, attempts: int, cause: BaseException) -> None:
        self.key = key
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Max retries exceeded for {key} after {attempts} attempt(s): {cause}")


class TriggerStoreUnavailable(TaskManagerError):
    """The trigger store could not be reached when the engine started."""
