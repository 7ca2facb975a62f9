"""Tests for TaskDispatcher — scheduling, deletion, pause/resume, queries."""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from taskmanager.errors import (
    DuplicateTaskError,
    InvalidScheduleError,
    TaskNotFoundError,
    UnknownConsumerError,
)
from taskmanager.scheduler.dispatcher import TaskDispatcher
from taskmanager.scheduler.models import (
    RETRY_KEY,
    AtDateTime,
    Cron,
    Immediate,
    Interval,
    TaskKey,
    utcnow,
)
from taskmanager.scheduler.store import InMemoryTriggerStore, SqliteTriggerStore


@pytest.fixture
def jobs() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def dispatcher(store, registry, retry_policy, jobs) -> TaskDispatcher:
    return TaskDispatcher(store, registry, retry_policy, jobs=jobs)


# -- schedule ------------------------------------------------------------------


async def test_schedule_immediate(dispatcher: TaskDispatcher, store, jobs) -> None:
    key = await dispatcher.schedule("g", "t", "record", parameters={"value": "X"})

    assert key == TaskKey("g", "t")
    assert await dispatcher.group_exists("g")
    snapshots = await dispatcher.all("g")
    assert len(snapshots) == 1
    assert snapshots[0].schedule == "Immediate"
    assert snapshots[0].data_map == {"value": "X"}

    binding = await store.get(key)
    assert binding.parameters[RETRY_KEY]["attempt"] == 0
    assert binding.parameters[RETRY_KEY]["max_attempts"] == 3
    assert binding.next_fire_at == binding.start_at
    jobs.arm.assert_awaited_once()


async def test_schedule_at_future_instant(dispatcher: TaskDispatcher, store) -> None:
    when = utcnow() + timedelta(hours=2)
    await dispatcher.schedule("g", "t", "record", start_at=AtDateTime(when))

    binding = await store.get(TaskKey("g", "t"))
    assert binding.schedule == AtDateTime(when)
    assert binding.next_fire_at == when


async def test_schedule_type_at_datetime_without_start(dispatcher: TaskDispatcher, store) -> None:
    when = utcnow() + timedelta(minutes=10)
    await dispatcher.schedule("g", "t", "record", schedule_type=AtDateTime(when))

    assert (await store.get(TaskKey("g", "t"))).start_at == when


async def test_schedule_past_instant_runs_now(dispatcher: TaskDispatcher, store) -> None:
    before = utcnow()
    await dispatcher.schedule("g", "t", "record", start_at=AtDateTime(before - timedelta(days=1)))

    assert (await store.get(TaskKey("g", "t"))).start_at >= before


async def test_schedule_cron(dispatcher: TaskDispatcher, store) -> None:
    await dispatcher.schedule("g", "t", "record", schedule_type=Cron("0 9 * * *"))

    binding = await store.get(TaskKey("g", "t"))
    assert binding.is_recurring
    assert binding.next_fire_at.hour == 9
    assert binding.next_fire_at > binding.start_at


async def test_schedule_interval_anchored_on_start(dispatcher: TaskDispatcher, store) -> None:
    when = utcnow() + timedelta(minutes=30)
    await dispatcher.schedule(
        "g", "t", "record", start_at=when, schedule_type=Interval(minutes=5)
    )

    binding = await store.get(TaskKey("g", "t"))
    assert binding.schedule == Interval(minutes=5)
    assert binding.next_fire_at == when


async def test_schedule_naive_start_uses_timezone(store, registry, retry_policy) -> None:
    dispatcher = TaskDispatcher(store, registry, retry_policy, timezone="America/Chicago")
    year = utcnow().year + 1
    await dispatcher.schedule("g", "t", "record", start_at=datetime(year, 1, 15, 9, 0))

    binding = await store.get(TaskKey("g", "t"))
    assert binding.start_at.hour == 15


async def test_schedule_max_attempts_override(dispatcher: TaskDispatcher, store) -> None:
    await dispatcher.schedule("g", "t", "record", max_attempts=7)

    binding = await store.get(TaskKey("g", "t"))
    assert binding.parameters[RETRY_KEY]["max_attempts"] == 7


async def test_schedule_duplicate_keeps_original(dispatcher: TaskDispatcher, store) -> None:
    await dispatcher.schedule("g", "t", "record", parameters={"value": "first"})

    with pytest.raises(DuplicateTaskError):
        await dispatcher.schedule("g", "t", "fail", parameters={"value": "second"})

    snapshot = await dispatcher.get("g", "t")
    assert snapshot.consumer == "record"
    assert snapshot.data_map == {"value": "first"}


@pytest.mark.parametrize("store_kind", ["sqlite", "memory"])
async def test_concurrent_schedule_has_one_winner(
    store_kind, tmp_path: Path, registry, retry_policy
) -> None:
    if store_kind == "sqlite":
        store = SqliteTriggerStore(db_path=tmp_path / "test.db")
        await store.ping()
    else:
        store = InMemoryTriggerStore()
    dispatcher = TaskDispatcher(store, registry, retry_policy)

    results = await asyncio.gather(
        *(
            dispatcher.schedule("g", "t", "record", parameters={"value": str(i)})
            for i in range(5)
        ),
        return_exceptions=True,
    )

    assert [r for r in results if isinstance(r, TaskKey)] == [TaskKey("g", "t")]
    assert sum(isinstance(r, DuplicateTaskError) for r in results) == 4
    assert await store.count() == 1


async def test_schedule_replace(dispatcher: TaskDispatcher) -> None:
    await dispatcher.schedule("g", "t", "record")
    await dispatcher.schedule("g", "t", "fail", replace=True)

    assert (await dispatcher.get("g", "t")).consumer == "fail"


async def test_schedule_unknown_consumer(dispatcher: TaskDispatcher) -> None:
    with pytest.raises(UnknownConsumerError):
        await dispatcher.schedule("g", "t", "nope")
    assert await dispatcher.group_exists("g") is False


@pytest.mark.parametrize(("group_id", "task_id"), [("", "t"), ("g", "")])
async def test_schedule_requires_ids(dispatcher: TaskDispatcher, group_id, task_id) -> None:
    with pytest.raises(ValueError, match="non-empty"):
        await dispatcher.schedule(group_id, task_id, "record")


async def test_schedule_invalid_start(dispatcher: TaskDispatcher) -> None:
    with pytest.raises(InvalidScheduleError):
        await dispatcher.schedule("g", "t", "record", start_at="soon")


async def test_schedule_without_engine(store, registry, retry_policy) -> None:
    dispatcher = TaskDispatcher(store, registry, retry_policy)
    await dispatcher.schedule("g", "t", "record", schedule_type=Immediate())
    assert await store.count() == 1


# -- resend --------------------------------------------------------------------


async def test_resend(dispatcher: TaskDispatcher, jobs) -> None:
    await dispatcher.schedule("g", "t", "record")
    await dispatcher.resend("g", "t")
    jobs.fire_now.assert_awaited_once_with(TaskKey("g", "t"))


async def test_resend_missing(dispatcher: TaskDispatcher) -> None:
    with pytest.raises(TaskNotFoundError):
        await dispatcher.resend("g", "missing")


# -- delete --------------------------------------------------------------------


async def test_delete_task(dispatcher: TaskDispatcher, jobs) -> None:
    await dispatcher.schedule("g", "t", "record")

    assert await dispatcher.delete("g", "t") == 1
    assert await dispatcher.get("g", "t") is None
    jobs.disarm.assert_awaited_with(TaskKey("g", "t"))


async def test_delete_missing_is_noop(dispatcher: TaskDispatcher) -> None:
    assert await dispatcher.delete("g", "missing") == 0


async def test_delete_without_task_id_removes_group(dispatcher: TaskDispatcher, jobs) -> None:
    await dispatcher.schedule("g", "a", "record")
    await dispatcher.schedule("g", "b", "record")
    await dispatcher.schedule("h", "a", "record")

    assert await dispatcher.delete("g") == 2
    assert await dispatcher.groups() == ["h"]
    assert jobs.disarm.await_count == 2


async def test_delete_all(dispatcher: TaskDispatcher) -> None:
    await dispatcher.schedule("g", "a", "record")
    await dispatcher.schedule("h", "a", "record")

    assert await dispatcher.delete_all() == 2
    assert await dispatcher.all() == []


# -- pause / resume ------------------------------------------------------------


async def test_pause_and_resume_task(dispatcher: TaskDispatcher, jobs) -> None:
    await dispatcher.schedule("g", "t", "record")

    assert await dispatcher.pause("g", "t") == 1
    assert (await dispatcher.get("g", "t")).state == "PAUSED"
    jobs.pause_job.assert_awaited_once_with(TaskKey("g", "t"))

    assert await dispatcher.resume("g", "t") == 1
    assert (await dispatcher.get("g", "t")).state == "NORMAL"
    jobs.resume_job.assert_awaited_once_with(TaskKey("g", "t"))


async def test_pause_group(dispatcher: TaskDispatcher) -> None:
    await dispatcher.schedule("g", "a", "record")
    await dispatcher.schedule("g", "b", "record")

    assert await dispatcher.pause("g") == 2
    assert await dispatcher.pause("g") == 0
    assert await dispatcher.resume("g") == 2


async def test_pause_missing_task(dispatcher: TaskDispatcher) -> None:
    with pytest.raises(TaskNotFoundError):
        await dispatcher.pause("g", "missing")


async def test_pause_empty_group_is_noop(dispatcher: TaskDispatcher) -> None:
    assert await dispatcher.pause("empty") == 0


# -- queries -------------------------------------------------------------------


async def test_group_task_keys(dispatcher: TaskDispatcher) -> None:
    await dispatcher.schedule("g", "a", "record")
    await dispatcher.schedule("g", "b", "record")

    assert sorted(await dispatcher.group_task_keys("g")) == [TaskKey("g", "a"), TaskKey("g", "b")]
    assert await dispatcher.group_task_keys("none") == []


async def test_numeric_group_ids_are_strings(dispatcher: TaskDispatcher) -> None:
    await dispatcher.schedule(42, "t", "record")
    assert await dispatcher.group_exists("42")
