"""SchedulerEngine — APScheduler lifecycle, worker pool, and per-fire bookkeeping."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from datetime import UTC, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from taskmanager.errors import MaxRetriesExceededError, TriggerStoreUnavailable
from taskmanager.scheduler.consumer import ConsumerLifecycle
from taskmanager.scheduler.dispatcher import TaskDispatcher
from taskmanager.scheduler.events import ExecutionEvents, stamp
from taskmanager.scheduler.models import (
    RETRY_KEY,
    AtDateTime,
    SchedulerHealth,
    TaskKey,
    TaskOutcome,
    TaskState,
    TaskStateChange,
    utcnow,
)
from taskmanager.scheduler.policy import MisfirePolicy, RetryPolicy
from taskmanager.scheduler.triggers import build_trigger

if TYPE_CHECKING:
    from datetime import datetime

    from apscheduler.job import Job

    from taskmanager.scheduler.audit import AuditService
    from taskmanager.scheduler.consumer import ConsumerRegistry
    from taskmanager.scheduler.events import EventBus
    from taskmanager.scheduler.models import TaskBinding
    from taskmanager.scheduler.store import TriggerStore

logger = logging.getLogger(__name__)

# APScheduler must never skip a fire on its own: at most one execution per key
# runs at a time, and overlapping fires are coalesced by the key gate below.
_MAX_INSTANCES = 3


class EngineState(str, Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"


class _KeyGate:
    """Single-flight gate for one task key."""

    __slots__ = ("lock", "waiting", "waiting_regular")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.waiting = 0
        # Scheduled fires only; a queued resend never absorbs a scheduled fire.
        self.waiting_regular = 0


def _job_id(key: TaskKey) -> str:
    # Length prefix keeps ids unambiguous when group ids contain separators.
    return f"{len(key.group_id)}:{key.group_id}.{key.task_id}"


def _utc(value: datetime | None) -> datetime | None:
    return value.astimezone(UTC) if value else None


class SchedulerEngine:
    """Orchestrates trigger store, consumers, audit, and the live event stream.

    APScheduler decides *when* a task fires; the engine decides whether and
    how it runs.  Each fire passes through a per-key gate (no overlapping
    executions of one task), then a bounded worker pool, then the consumer
    lifecycle.  The outcome is folded back into the stored binding: recurring
    tasks return to NORMAL, one-shot tasks complete, retry with backoff, or
    end in ERROR once their retry budget is spent.

    Args:
        store: Durable trigger bindings.
        audit: Audit service receiving one record per execution.
        bus: Live event stream.
        registry: Consumers by task type.
        pool_size: Maximum number of concurrent executions.
        misfire_threshold: Lateness beyond which a fire is flagged as a misfire.
        retry_policy: Backoff for failed one-shot tasks.
        drain_timeout: Seconds a graceful stop waits for in-flight executions.
        timezone: IANA timezone for cron evaluation and naive datetimes.
    """

    def __init__(
        self,
        store: TriggerStore,
        audit: AuditService,
        bus: EventBus,
        registry: ConsumerRegistry,
        *,
        pool_size: int = 10,
        misfire_threshold: timedelta = timedelta(seconds=60),
        retry_policy: RetryPolicy | None = None,
        drain_timeout: float = 10.0,
        timezone: str = "UTC",
    ) -> None:
        if pool_size < 1:
            msg = f"pool_size must be >= 1, got {pool_size}"
            raise ValueError(msg)
        self._store = store
        self.audit = audit
        self.bus = bus
        self.registry = registry
        self._pool_size = pool_size
        self._drain_timeout = drain_timeout
        self._timezone = timezone
        self._retry_policy = retry_policy or RetryPolicy()
        self._misfire = MisfirePolicy(misfire_threshold)

        self.events = ExecutionEvents()
        self.events.subscribe(audit.on_execution)
        self.events.subscribe(bus.on_execution)
        self._lifecycle = ConsumerLifecycle(registry, self.events, self._retry_policy)
        self.tasks = TaskDispatcher(
            store, registry, self._retry_policy, jobs=self, timezone=timezone
        )

        self._scheduler: AsyncIOScheduler | None = None
        self._state = EngineState.STOPPED
        self._slots = asyncio.Semaphore(pool_size)
        self._gates: dict[TaskKey, _KeyGate] = {}
        self._in_flight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._state is not EngineState.STOPPED

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Load active bindings from the store, arm them, and start firing.

        Bindings whose next fire time passed while the engine was down fire
        once, immediately, and are flagged as misfires when late enough.

        Raises:
            TriggerStoreUnavailable: The store cannot be reached.
        """
        if self.running:
            return
        try:
            await self._store.ping()
            bindings = await self._store.query()
        except Exception as exc:
            msg = f"Trigger store is unavailable: {exc}"
            raise TriggerStoreUnavailable(msg) from exc

        await self.audit.start()
        self._slots = asyncio.Semaphore(self._pool_size)
        self._scheduler = AsyncIOScheduler(
            timezone=self._timezone,
            job_defaults={
                "coalesce": True,
                "misfire_grace_time": None,
                "max_instances": _MAX_INSTANCES,
            },
        )
        self._scheduler.start()
        self._state = EngineState.RUNNING

        armed = 0
        for binding in bindings:
            if binding.state.is_terminal:
                continue
            await self._add_job(binding)
            armed += 1
        logger.info(
            "Scheduler started with %d active task(s) (tz=%s, pool=%d)",
            armed,
            self._timezone,
            self._pool_size,
        )

    async def stop(self, interrupt: bool = False) -> None:
        """Stop firing, let running executions finish, and flush the audit trail.

        With *interrupt*, in-flight executions are cancelled instead of
        awaited.  Executions still running after ``drain_timeout`` are
        cancelled as well.
        """
        scheduler = self._scheduler
        if not self.running or scheduler is None:
            return
        scheduler.pause()

        pending = set(self._in_flight)
        if pending and not interrupt:
            _, pending = await asyncio.wait(pending, timeout=self._drain_timeout)
            if pending:
                logger.warning(
                    "%d execution(s) still running after %.1fs; interrupting",
                    len(pending),
                    self._drain_timeout,
                )
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        scheduler.shutdown(wait=False)
        self._scheduler = None
        self._gates.clear()
        self._state = EngineState.STOPPED
        await self.audit.stop()
        logger.info("Scheduler stopped%s", " (interrupted)" if interrupt else "")

    async def restart(self) -> None:
        await self.stop()
        await self.start()

    # -- Pause / resume --------------------------------------------------------

    async def _scope_state(self, group_id: str, task_id: str | None) -> str:
        """Displayed state shared by the tasks in scope, or MIXED when they differ."""
        states = {
            snapshot.state
            for snapshot in await self.tasks.all(group_id)
            if task_id is None or snapshot.task_id == task_id
        }
        if len(states) == 1:
            return states.pop()
        return "MIXED" if states else "NONE"

    async def pause(self, group_id: str | None = None, task_id: str | None = None) -> TaskStateChange:
        """Pause the whole scheduler, one group, or one task.

        For a group or task, the states are the tasks' displayed states
        before and after the call.
        """
        if group_id is not None:
            previous = await self._scope_state(group_id, task_id)
            changed = await self.tasks.pause(group_id, task_id)
            current = await self._scope_state(group_id, task_id)
            return TaskStateChange(previous, current, changed)

        previous_state = self._state
        if self._state is EngineState.RUNNING and self._scheduler is not None:
            self._scheduler.pause()
            self._state = EngineState.PAUSED
            logger.info("Scheduler paused")
        affected = await self._store.count() if previous_state is not self._state else 0
        return TaskStateChange(previous_state.value, self._state.value, affected)

    async def resume(self, group_id: str | None = None, task_id: str | None = None) -> TaskStateChange:
        """Resume the whole scheduler, one group, or one task.

        Occurrences that fell inside a per-task pause are skipped; the task
        continues from its next occurrence after now.
        """
        if group_id is not None:
            previous = await self._scope_state(group_id, task_id)
            changed = await self.tasks.resume(group_id, task_id)
            current = await self._scope_state(group_id, task_id)
            return TaskStateChange(previous, current, changed)

        previous_state = self._state
        if self._state is EngineState.PAUSED and self._scheduler is not None:
            self._scheduler.resume()
            self._state = EngineState.RUNNING
            logger.info("Scheduler resumed")
        affected = await self._store.count() if previous_state is not self._state else 0
        return TaskStateChange(previous_state.value, self._state.value, affected)

    # -- Health ----------------------------------------------------------------

    def is_started(self) -> bool:
        return self.running

    def is_paused(self) -> bool:
        return self._state is EngineState.PAUSED

    async def total_tasks(self) -> int:
        return await self._store.count()

    async def health(self) -> SchedulerHealth:
        errors: list[str] = []
        try:
            total = await self._store.count()
        except Exception as exc:
            logger.exception("Health check could not reach the trigger store")
            errors.append(f"SchedulerHealth. Trigger store is unavailable: {exc}")
            total = 0
        return SchedulerHealth(
            is_started=self.is_started(),
            is_paused=self.is_paused(),
            total_tasks=total,
            errors=errors,
        )

    # -- Job hooks (called by TaskDispatcher) ----------------------------------

    async def arm(self, binding: TaskBinding) -> None:
        if self._scheduler is not None:
            await self._add_job(binding)

    async def disarm(self, key: TaskKey) -> None:
        if self._scheduler is None:
            return
        with contextlib.suppress(JobLookupError):
            self._scheduler.remove_job(_job_id(key))

    async def pause_job(self, key: TaskKey) -> None:
        if self._scheduler is None:
            return
        with contextlib.suppress(JobLookupError):
            self._scheduler.pause_job(_job_id(key))

    async def resume_job(self, key: TaskKey) -> None:
        if self._scheduler is None:
            return
        try:
            job = self._scheduler.resume_job(_job_id(key))
        except JobLookupError:
            logger.debug("No live job for %s (task is finished)", key)
            return
        await self._store.set_next_fire(key, _utc(job.next_run_time) if job else None)

    async def fire_now(self, key: TaskKey) -> None:
        if self._scheduler is None:
            msg = "Scheduler is not started"
            raise RuntimeError(msg)
        self._scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=utcnow(), timezone=self._timezone),
            args=[key.group_id, key.task_id],
            kwargs={"resend": True},
            id=f"{_job_id(key)}#resend-{uuid.uuid4().hex[:8]}",
            name=f"{key} (resend)",
        )

    # -- Internal --------------------------------------------------------------

    async def _add_job(self, binding: TaskBinding) -> Job | None:
        """Create (or replace) the APScheduler job for a binding.

        The job resumes from the binding's stored next fire time, so a fire
        that came due while the engine was down runs once on start.
        """
        if self._scheduler is None:
            return None
        trigger = build_trigger(binding, self._timezone)
        if binding.paused:
            next_run_time = None
        else:
            next_run_time = binding.next_fire_at or _utc(
                trigger.get_next_fire_time(None, utcnow())
            )
            if next_run_time is None:
                logger.warning("Task %s has no future fire time; not arming", binding.key)
                return None
            if binding.next_fire_at is None:
                binding.next_fire_at = next_run_time
                await self._store.set_next_fire(binding.key, next_run_time)
        return self._scheduler.add_job(
            self._fire,
            trigger=trigger,
            id=_job_id(binding.key),
            name=str(binding.key),
            args=[binding.group_id, binding.task_id],
            next_run_time=next_run_time,
            replace_existing=True,
        )

    async def _fire(self, group_id: str, task_id: str, resend: bool = False) -> None:
        """Callback invoked by APScheduler for every fire of a task."""
        key = TaskKey(group_id, task_id)
        current = asyncio.current_task()
        if current is not None:
            self._in_flight.add(current)
        gate = self._gates.setdefault(key, _KeyGate())
        try:
            if gate.lock.locked() and gate.waiting_regular and not resend:
                logger.info("Coalesced overlapping fire of %s", key)
                return
            gate.waiting += 1
            if not resend:
                gate.waiting_regular += 1
            try:
                await gate.lock.acquire()
            finally:
                gate.waiting -= 1
                if not resend:
                    gate.waiting_regular -= 1
            try:
                async with self._slots:
                    await self._execute(key, resend=resend)
            finally:
                gate.lock.release()
        finally:
            if current is not None:
                self._in_flight.discard(current)
            if not gate.lock.locked() and not gate.waiting:
                self._gates.pop(key, None)

    async def _save(self, binding: TaskBinding) -> bool:
        """Persist *binding*'s bookkeeping.  False once it was deleted or replaced.

        Store errors are logged and do not stop the fire: the consumer still
        runs and the audit record is still written.
        """
        try:
            return await self._store.update(binding)
        except Exception:
            logger.exception("Could not persist state %s of %s", binding.state.value, binding.key)
            return True

    async def _execute(self, key: TaskKey, *, resend: bool) -> None:
        try:
            binding = await self._store.get(key)
        except Exception:
            logger.exception("Could not load fired task %s", key)
            return
        if binding is None:
            logger.warning("Fired task %s no longer exists", key)
            return
        if binding.paused and not resend:
            logger.info("Skipping fire of paused task %s", key)
            return

        now = utcnow()
        previous_state = binding.state
        if resend:
            fire_time, misfire = now, False
        else:
            fire_time = binding.next_fire_at or now
            misfire = self._misfire.is_misfire(binding.next_fire_at, now)
            job = self._scheduler.get_job(_job_id(key)) if self._scheduler else None
            binding.next_fire_at = _utc(job.next_run_time) if job else None
        if misfire:
            logger.warning(
                "Misfire: %s was due at %s and ran %.1fs late",
                key,
                fire_time.isoformat(),
                self._misfire.lateness(fire_time, now).total_seconds(),
            )

        binding.state = TaskState.FIRING
        binding.runs += 1
        if not await self._save(binding):
            logger.info("Task %s was replaced or deleted before it ran", key)
            return

        try:
            await self._lifecycle.run(binding, fire_time=fire_time, misfire=misfire)
        except Exception as exc:
            logger.exception("Task execution failed: %s", key)
            binding.state = TaskState.FAILED
            binding.last_outcome = TaskOutcome.ERROR
            binding.last_log = str(exc) or type(exc).__name__
            if not await self._save(binding):
                return
            if resend:
                binding.state = previous_state
            else:
                await self._on_failure(binding, exc)
        else:
            binding.state = TaskState.SUCCEEDED
            binding.last_outcome = TaskOutcome.SUCCESS
            binding.last_log = None
            if not await self._save(binding):
                return
            if resend:
                binding.state = previous_state
            elif binding.is_recurring:
                binding.state = TaskState.NORMAL
            else:
                binding.state = TaskState.COMPLETE
                binding.next_fire_at = None
        await self._save(binding)

    async def _on_failure(self, binding: TaskBinding, error: Exception) -> None:
        decision = self._retry_policy.plan(binding, utcnow())
        binding.parameters[RETRY_KEY] = decision.context.to_dict()

        if decision.retry_at is not None:
            binding.state = TaskState.RETRY_SCHEDULED
            binding.schedule = AtDateTime(instant=decision.retry_at)
            binding.start_at = decision.retry_at
            binding.next_fire_at = decision.retry_at
            if not await self._save(binding):
                return
            await self._add_job(binding)
            self.bus.push(
                f"{stamp()} | Retry {decision.context.attempt}/{decision.context.max_attempts} "
                f"scheduled | Group Id: {binding.group_id} | Task Id: {binding.task_id} "
                f"| At: {decision.retry_at.isoformat()}"
            )
        elif decision.gave_up:
            binding.state = TaskState.ERROR
            binding.next_fire_at = None
            logger.error(
                "%s", MaxRetriesExceededError(binding.key, decision.context.attempt + 1, error)
            )
        else:
            binding.state = TaskState.NORMAL
