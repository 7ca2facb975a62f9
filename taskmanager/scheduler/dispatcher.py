"""TaskDispatcher — schedule, cancel, and query tasks and groups."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from taskmanager.errors import TaskNotFoundError, UnknownConsumerError
from taskmanager.scheduler.models import (
    RETRY_KEY,
    AtDateTime,
    Immediate,
    TaskBinding,
    TaskKey,
    TaskSnapshot,
    is_recurring,
)
from taskmanager.scheduler.triggers import first_fire_time, resolve_start

if TYPE_CHECKING:
    from datetime import datetime

    from taskmanager.scheduler.consumer import ConsumerRegistry
    from taskmanager.scheduler.models import ScheduleType
    from taskmanager.scheduler.policy import RetryPolicy
    from taskmanager.scheduler.store import TriggerStore

logger = logging.getLogger(__name__)


class JobHooks(Protocol):
    """Live-scheduler side of dispatcher operations (implemented by the engine)."""

    async def arm(self, binding: TaskBinding) -> None: ...

    async def disarm(self, key: TaskKey) -> None: ...

    async def pause_job(self, key: TaskKey) -> None: ...

    async def resume_job(self, key: TaskKey) -> None: ...

    async def fire_now(self, key: TaskKey) -> None: ...


class TaskDispatcher:
    """Writes trigger bindings into the store and keeps live jobs in sync.

    Uniqueness of a TaskKey is enforced by the store, not here: concurrent
    ``schedule()`` calls for the same key produce one winner and
    DuplicateTaskError for the rest.

    Args:
        store: Trigger store holding the bindings.
        registry: Known consumer types.
        retry_policy: Supplies the initial retry context of new tasks.
        jobs: Live scheduler hooks; None when no engine is attached.
        timezone: Timezone for naive start datetimes and cron evaluation.
    """

    def __init__(
        self,
        store: TriggerStore,
        registry: ConsumerRegistry,
        retry_policy: RetryPolicy,
        *,
        jobs: JobHooks | None = None,
        timezone: str = "UTC",
    ) -> None:
        self._store = store
        self._registry = registry
        self._retry_policy = retry_policy
        self._jobs = jobs
        self._timezone = timezone

    # -- Scheduling ------------------------------------------------------------

    async def schedule(
        self,
        group_id: str,
        task_id: str,
        consumer_type: str,
        start_at: Immediate | AtDateTime | datetime | None = None,
        parameters: dict[str, Any] | None = None,
        schedule_type: ScheduleType | None = None,
        *,
        replace: bool = False,
        max_attempts: int | None = None,
    ) -> TaskKey:
        """Persist a new task binding and arm it.

        Without *schedule_type* the task fires once at *start_at*.  With an
        Interval or Cron schedule, *start_at* anchors the recurrence.

        Raises:
            DuplicateTaskError: The key exists and *replace* is False.
            InvalidScheduleError: The start time cannot be resolved.
            UnknownConsumerError: *consumer_type* is not registered.
        """
        group_id = str(group_id)
        if not group_id or not task_id:
            msg = "group_id and task_id must be non-empty"
            raise ValueError(msg)
        if consumer_type not in self._registry:
            raise UnknownConsumerError(consumer_type)

        if start_at is None and isinstance(schedule_type, AtDateTime | Immediate):
            start_at = schedule_type
        first = resolve_start(start_at, timezone=self._timezone)

        if schedule_type is not None and is_recurring(schedule_type):
            schedule = schedule_type
        elif start_at is None or isinstance(start_at, Immediate):
            schedule = Immediate()
        else:
            schedule = AtDateTime(instant=first)

        params = dict(parameters or {})
        params[RETRY_KEY] = self._retry_policy.new_context(max_attempts).to_dict()

        binding = TaskBinding(
            group_id=group_id,
            task_id=task_id,
            consumer_type=consumer_type,
            schedule=schedule,
            start_at=first,
            parameters=params,
        )
        binding.next_fire_at = first_fire_time(binding, self._timezone)

        await self._store.put(binding, replace=replace)
        if self._jobs is not None:
            await self._jobs.arm(binding)
        logger.info(
            "Scheduled task %s (%s, %s, first fire %s)",
            binding.key,
            consumer_type,
            schedule.describe(),
            binding.next_fire_at.isoformat() if binding.next_fire_at else "never",
        )
        return binding.key

    async def resend(self, group_id: str, task_id: str) -> None:
        """Fire an existing task once, now, without touching its schedule."""
        key = TaskKey(str(group_id), task_id)
        if await self._store.get(key) is None:
            raise TaskNotFoundError(key)
        if self._jobs is None:
            msg = "No scheduler attached; cannot resend"
            raise RuntimeError(msg)
        await self._jobs.fire_now(key)
        logger.info("Resent task %s", key)

    # -- Deletion --------------------------------------------------------------

    async def delete(self, group_id: str, task_id: str | None = None) -> int:
        """Delete one task, or the whole group when *task_id* is None.

        Deleting a missing key is a no-op returning 0.  Audit history is kept.
        """
        if task_id is None:
            return await self.delete_group(group_id)
        key = TaskKey(str(group_id), task_id)
        deleted = await self._store.delete(key)
        if self._jobs is not None:
            await self._jobs.disarm(key)
        if deleted:
            logger.info("Deleted task %s", key)
        return deleted

    async def delete_group(self, group_id: str) -> int:
        keys = await self.group_task_keys(group_id)
        deleted = await self._store.delete_group(str(group_id))
        if self._jobs is not None:
            for key in keys:
                await self._jobs.disarm(key)
        if deleted:
            logger.info("Deleted %d task(s) in group %s", deleted, group_id)
        return deleted

    async def delete_all(self) -> int:
        bindings = await self._store.query()
        deleted = await self._store.delete_all()
        if self._jobs is not None:
            for binding in bindings:
                await self._jobs.disarm(binding.key)
        logger.info("Deleted all tasks (%d)", deleted)
        return deleted

    # -- Pause / resume --------------------------------------------------------

    async def _require(self, group_id: str, task_id: str | None) -> None:
        if task_id is None:
            return
        key = TaskKey(str(group_id), task_id)
        if await self._store.get(key) is None:
            raise TaskNotFoundError(key)

    async def pause(self, group_id: str, task_id: str | None = None) -> int:
        """Pause one task, or every task in the group.  Returns how many changed."""
        await self._require(group_id, task_id)
        changed = await self._store.pause(str(group_id), task_id)
        if self._jobs is not None:
            for key in changed:
                await self._jobs.pause_job(key)
        logger.info("Paused %d task(s) in group %s", len(changed), group_id)
        return len(changed)

    async def resume(self, group_id: str, task_id: str | None = None) -> int:
        """Resume one task, or every task in the group.  Returns how many changed."""
        await self._require(group_id, task_id)
        changed = await self._store.resume(str(group_id), task_id)
        if self._jobs is not None:
            for key in changed:
                await self._jobs.resume_job(key)
        logger.info("Resumed %d task(s) in group %s", len(changed), group_id)
        return len(changed)

    # -- Queries ---------------------------------------------------------------

    async def get(self, group_id: str, task_id: str) -> TaskSnapshot | None:
        binding = await self._store.get(TaskKey(str(group_id), task_id))
        return TaskSnapshot.from_binding(binding) if binding else None

    async def all(self, group_id: str | None = None) -> list[TaskSnapshot]:
        bindings = await self._store.query(None if group_id is None else str(group_id))
        return [TaskSnapshot.from_binding(binding) for binding in bindings]

    async def groups(self) -> list[str]:
        return await self._store.groups()

    async def group_exists(self, group_id: str) -> bool:
        return bool(await self._store.query(str(group_id)))

    async def group_task_keys(self, group_id: str) -> list[TaskKey]:
        return [binding.key for binding in await self._store.query(str(group_id))]
