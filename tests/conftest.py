"""Shared test fixtures."""

import asyncio
import inspect
import time
from datetime import timedelta

import pytest

from taskmanager.scheduler.audit import AuditService, InMemoryAuditStore
from taskmanager.scheduler.consumer import ConsumerRegistry, Payload
from taskmanager.scheduler.engine import SchedulerEngine
from taskmanager.scheduler.events import EventBus
from taskmanager.scheduler.policy import RetryPolicy
from taskmanager.scheduler.store import InMemoryTriggerStore


class ValuePayload(Payload):
    value: str = ""


class RecordingConsumer:
    """Appends each payload value to ``seen``."""

    def __init__(self) -> None:
        self.seen: list[str] = []

    def build_payload(self, properties: dict) -> ValuePayload:
        return ValuePayload.model_validate(properties)

    async def consume(self, payload: ValuePayload) -> None:
        self.seen.append(payload.value)


class FailingConsumer:
    """Always raises after counting the call."""

    def __init__(self) -> None:
        self.calls = 0

    def build_payload(self, properties: dict) -> Payload:
        return Payload.model_validate(properties)

    async def consume(self, payload: Payload) -> None:
        self.calls += 1
        msg = "boom"
        raise RuntimeError(msg)


class SlowConsumer:
    """Sleeps for ``delay`` seconds and tracks concurrency."""

    def __init__(self, delay: float = 0.3) -> None:
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.completed = 0
        self.cancelled = 0

    def build_payload(self, properties: dict) -> Payload:
        return Payload.model_validate(properties)

    async def consume(self, payload: Payload) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            self.completed += 1
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.active -= 1


@pytest.fixture
def recorder() -> RecordingConsumer:
    return RecordingConsumer()


@pytest.fixture
def failer() -> FailingConsumer:
    return FailingConsumer()


@pytest.fixture
def sleeper() -> SlowConsumer:
    return SlowConsumer()


@pytest.fixture
def registry(
    recorder: RecordingConsumer, failer: FailingConsumer, sleeper: SlowConsumer
) -> ConsumerRegistry:
    reg = ConsumerRegistry()
    reg.register("record", recorder)
    reg.register("fail", failer)
    reg.register("slow", sleeper)
    return reg


@pytest.fixture
def store() -> InMemoryTriggerStore:
    return InMemoryTriggerStore()


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def audit(audit_store: InMemoryAuditStore) -> AuditService:
    return AuditService(audit_store, node_id="test-node")


@pytest.fixture
def bus() -> EventBus:
    return EventBus(replay_size=20, subscriber_buffer=10)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        backoff_base=timedelta(milliseconds=50),
        backoff_cap=timedelta(milliseconds=200),
    )


@pytest.fixture
async def engine(store, audit, bus, registry, retry_policy):
    """An engine over in-memory stores with short thresholds.  Not started."""
    eng = SchedulerEngine(
        store=store,
        audit=audit,
        bus=bus,
        registry=registry,
        pool_size=4,
        misfire_threshold=timedelta(seconds=1),
        retry_policy=retry_policy,
        drain_timeout=2.0,
    )
    yield eng
    await eng.stop(interrupt=True)


@pytest.fixture
def eventually():
    """Poll a sync or async predicate until it is truthy or *timeout* elapses."""

    async def _eventually(predicate, timeout: float = 3.0, interval: float = 0.02) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            result = predicate()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(interval)

    return _eventually
